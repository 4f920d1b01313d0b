# Node Handlers for TokenFlow Engine
# Executes the step kinds: start, end, activity, decision, sub-process, wait

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from tokenflow.core.errors import EngineError
from tokenflow.core.process import (
    NO_PORT,
    YES_PORT,
    Port,
    PortDirection,
    ProcessDefinition,
    Step,
    StepKind,
)
from tokenflow.config import DEFAULT_MAX_CALL_DEPTH

from .error_handler import ErrorHandler
from .expression_evaluator import ConditionEvaluator
from .handler_context import HandlerContext, HandlerResult
from .token_context import (
    CallFrame,
    Cursor,
    TokenContext,
    port_param_key,
    step_param_key,
)

logger = logging.getLogger(__name__)

# Step-scoped marker of a WAIT step that suspended the token
WAITING_MARKER = "_waiting"


class StepAction(str, Enum):
    FOLLOW = "follow"      # leave ``step`` through ``exit_port``
    SUSPEND = "suspend"    # wait for an external resume at ``resume_port``
    COMPLETE = "complete"  # the token reached the end of its top-level process
    ENTERED = "entered"    # the cursor was placed directly (sub-process call)
    FAIL = "fail"          # the failure could not be routed to an error port


@dataclass
class StepResult:
    """What the engine does with a token after one step was executed."""

    action: StepAction
    definition: Optional[ProcessDefinition] = None
    step: Optional[Step] = None
    exit_port: Optional[Port] = None
    resume_port: Optional[str] = None
    error: Any = None

    @classmethod
    def follow(cls, definition: ProcessDefinition, step: Step, exit_port: Port) -> "StepResult":
        return cls(StepAction.FOLLOW, definition=definition, step=step, exit_port=exit_port)


class NodeHandlers:
    """
    Handles execution of the step kinds.

    Supports:
    - Start steps: pass entry values through to the default exit
    - End steps: complete the token or return from a sub-process
    - Activities: invoke the registered handler through a HandlerContext
    - Decisions: evaluate the expression and pick the matching exit
    - Sub-process steps: push a call frame and enter the callee
    - Wait steps: suspend until resumed from outside
    """

    def __init__(
        self,
        process_repository,
        handler_registry,
        error_handler: ErrorHandler,
        evaluator=None,
        max_call_depth: int = DEFAULT_MAX_CALL_DEPTH,
    ):
        """
        Initialize the node handlers.

        Args:
            process_repository: Source of process definitions
            handler_registry: Registry of activity handlers
            error_handler: Routes recoverable failures to error ports
            evaluator: Decision expression evaluator (default ConditionEvaluator)
            max_call_depth: Maximum sub-process nesting
        """
        self._processes = process_repository
        self._registry = handler_registry
        self._errors = error_handler
        self._evaluator = evaluator or ConditionEvaluator()
        self._max_call_depth = max_call_depth

    def execute(
        self,
        token: TokenContext,
        definition: ProcessDefinition,
        step: Step,
        entry_port: Port,
    ) -> StepResult:
        """Execute one step entered by ``entry_port``."""
        logger.debug(
            f"Token {token.id} executing {definition.qualifier}.{step.name} "
            f"({step.kind.value}) via {entry_port.name}"
        )
        if step.kind is StepKind.START:
            return self.execute_start(token, definition, step, entry_port)
        if step.kind is StepKind.END:
            return self.execute_end(token, definition, step, entry_port)
        if step.kind is StepKind.DECISION:
            return self.execute_decision(token, definition, step, entry_port)
        if step.kind is StepKind.SUBPROCESS:
            return self.execute_subprocess(token, definition, step, entry_port)
        if step.kind is StepKind.WAIT:
            return self.execute_wait(token, definition, step, entry_port)
        return self.execute_activity(token, definition, step, entry_port)

    # ==================== Start / End ====================

    def execute_start(
        self, token: TokenContext, definition: ProcessDefinition, step: Step, entry_port: Port
    ) -> StepResult:
        exit_port = definition.resolve_port(step.name, None, PortDirection.EXIT)
        self.pass_through(token, step, entry_port, exit_port)
        return StepResult.follow(definition, step, exit_port)

    def execute_end(
        self, token: TokenContext, definition: ProcessDefinition, step: Step, entry_port: Port
    ) -> StepResult:
        """
        Complete the token, or return to the calling process.

        On return the caller step is left through its exit port named like
        this end step (else its default exit), carrying this step's entry
        values by name.
        """
        if not token.call_stack:
            return StepResult(StepAction.COMPLETE, definition=definition, step=step)

        values = token.port_values(step.name, entry_port.name)
        callee_prefix = token.frame_prefix
        frame = token.pop_frame()
        token.clear_frame(callee_prefix)

        caller = self._processes.load_process(frame.process)
        caller_step = caller.get_step(frame.step)
        exit_port = caller_step.get_exit_port(step.name) or caller.resolve_port(
            caller_step.name, None, PortDirection.EXIT
        )
        token.process = str(caller.qualifier)
        token.clear_port(caller_step.name, exit_port.name)
        for param in exit_port.params:
            if param.name in values:
                token.set_param(
                    port_param_key(caller_step.name, exit_port.name, param.name),
                    values[param.name],
                )

        logger.debug(
            f"Token {token.id} returned from {frame.callee} to "
            f"{caller.qualifier}.{caller_step.name}.{exit_port.name}"
        )
        return StepResult.follow(caller, caller_step, exit_port)

    # ==================== Activity ====================

    def execute_activity(
        self, token: TokenContext, definition: ProcessDefinition, step: Step, entry_port: Port
    ) -> StepResult:
        """
        Invoke the handler of an activity step.

        Staged writes are committed only when the handler returns normally.
        """
        handler = self._registry.create(step.handler)
        context = HandlerContext(token, definition, step, entry_port)

        try:
            result = HandlerResult.coerce(handler(context))
        except EngineError:
            raise
        except Exception as e:
            return self._recover(token, definition, step, e)

        if result.is_failed:
            return self._recover(token, definition, step, result.error)

        if not result.is_handled:
            exit_port = step.default_exit_port()
            if exit_port is None:
                raise EngineError(
                    "NoDefaultExitPort",
                    f"Step {definition.qualifier}.{step.name} was not handled "
                    f"and has no default exit port",
                )
            self.pass_through(token, step, entry_port, exit_port)
            return StepResult.follow(definition, step, exit_port)

        exit_port = context.commit()
        if context.suspend_port is not None:
            return StepResult(StepAction.SUSPEND, step=step, resume_port=context.suspend_port)
        if exit_port is None:
            raise EngineError(
                "NoExitPort",
                f"Handler of {definition.qualifier}.{step.name} chose no exit port "
                f"and the step has no default exit",
            )
        return StepResult.follow(definition, step, exit_port)

    # ==================== Decision ====================

    def execute_decision(
        self, token: TokenContext, definition: ProcessDefinition, step: Step, entry_port: Port
    ) -> StepResult:
        """
        Evaluate the decision expression against process variables and the
        entry port values (the latter win on name clashes).
        """
        values = dict(token.variables)
        values.update(token.port_values(step.name, entry_port.name))

        try:
            outcome = self._evaluator.evaluate(step.expression, values)
            if isinstance(outcome, bool):
                port_name = YES_PORT if outcome else NO_PORT
            elif isinstance(outcome, str):
                port_name = outcome
            else:
                raise ValueError(
                    f"Decision produced {type(outcome).__name__}; expected bool or str"
                )
            exit_port = definition.resolve_port(step.name, port_name, PortDirection.EXIT)
        except EngineError:
            raise
        except Exception as e:
            return self._recover(token, definition, step, e)

        logger.debug(f"Decision {definition.qualifier}.{step.name} -> {exit_port.name}")
        self.pass_through(token, step, entry_port, exit_port)
        return StepResult.follow(definition, step, exit_port)

    # ==================== Sub-process ====================

    def execute_subprocess(
        self, token: TokenContext, definition: ProcessDefinition, step: Step, entry_port: Port
    ) -> StepResult:
        """
        Call another process.

        The callee is entered at its start step named like the entry port of
        this step, else at its default start step.
        """
        callee = self._processes.load_process(
            step.subprocess, default_model=definition.qualifier.model
        )
        self._registry.validate_process(callee)

        start = None
        if callee.has_step(entry_port.name):
            candidate = callee.get_step(entry_port.name)
            if candidate.kind is StepKind.START:
                start = candidate
        if start is None:
            start = callee.default_start_step()
        start_port = callee.resolve_port(start.name, None, PortDirection.ENTRY)

        values = token.port_values(step.name, entry_port.name)
        token.push_frame(
            CallFrame(
                process=str(definition.qualifier),
                step=step.name,
                port=entry_port.name,
                callee=str(callee.qualifier),
            ),
            max_depth=self._max_call_depth,
        )
        token.clear_frame(token.frame_prefix)
        token.process = str(callee.qualifier)
        for param in start_port.params:
            if param.name in values:
                token.set_param(
                    port_param_key(start.name, start_port.name, param.name), values[param.name]
                )
        token.cursor = Cursor(start.name, start_port.name)

        logger.debug(
            f"Token {token.id} called {callee.qualifier} from "
            f"{definition.qualifier}.{step.name} (depth {token.call_depth})"
        )
        return StepResult(StepAction.ENTERED, definition=callee, step=start)

    # ==================== Wait ====================

    def execute_wait(
        self, token: TokenContext, definition: ProcessDefinition, step: Step, entry_port: Port
    ) -> StepResult:
        """Suspend on first entry; pass through to the default exit once resumed."""
        marker = step_param_key(step.name, WAITING_MARKER)
        if not token.has_param(marker):
            token.set_param(marker, True)
            resume_port = step.resume_port or entry_port.name
            definition.resolve_port(step.name, resume_port, PortDirection.ENTRY)
            return StepResult(StepAction.SUSPEND, step=step, resume_port=resume_port)

        token.remove_param(marker)
        exit_port = definition.resolve_port(step.name, None, PortDirection.EXIT)
        self.pass_through(token, step, entry_port, exit_port)
        return StepResult.follow(definition, step, exit_port)

    # ==================== Helpers ====================

    def pass_through(
        self, token: TokenContext, step: Step, entry_port: Port, exit_port: Port
    ) -> None:
        """Copy entry port values by name to the declared parameters of an exit port."""
        values = token.port_values(step.name, entry_port.name)
        token.clear_port(step.name, exit_port.name)
        for param in exit_port.params:
            if param.name in values:
                token.set_param(
                    port_param_key(step.name, exit_port.name, param.name), values[param.name]
                )

    def _recover(
        self, token: TokenContext, definition: ProcessDefinition, step: Step, error: Any
    ) -> StepResult:
        error_port = self._errors.route_to_error_port(token, step, error)
        if error_port is not None:
            return StepResult.follow(definition, step, error_port)
        return StepResult(StepAction.FAIL, definition=definition, step=step, error=error)
