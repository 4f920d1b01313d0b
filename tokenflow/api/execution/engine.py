# Execution Engine for TokenFlow Engine
# Executes single tokens step by step against their process definitions

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from tokenflow.core.errors import EngineError, TokenFlowError
from tokenflow.core.process import AUTO_CONTINUE_KINDS, PortDirection, ProcessDefinition
from tokenflow.config import DEFAULT_MAX_CALL_DEPTH, DEFAULT_MAX_STEPS

from tokenflow.api.events.event_bus import ExecutionEventBus
from tokenflow.api.events.execution_events import StepExecutedEvent
from .error_handler import ErrorHandler
from .node_handlers import NodeHandlers, StepAction
from .token_context import TIMER_RESUME, WAIT_SUSPENDED, Cursor, TokenContext, TokenState
from .token_handler import TokenHandler, change_state

logger = logging.getLogger(__name__)


@dataclass
class StepOutcome:
    """
    Result of one ``step`` call.

    Attributes:
        token_id: The stepped token
        state: State of the token afterwards
        executed: Names of the steps executed (auto-continued ones included)
        exit_ports: Exit port taken by each executed step, None if it took none
        ready: Ids of other tokens made ready (spawned or resumed by a join)
    """

    token_id: str
    state: TokenState
    executed: List[str] = field(default_factory=list)
    exit_ports: List[Optional[str]] = field(default_factory=list)
    ready: List[str] = field(default_factory=list)


@dataclass
class RunResult:
    """Result of advancing a token until it blocked."""

    state: TokenState
    steps: int = 0
    ready: List[str] = field(default_factory=list)


class ExecutionEngine:
    """
    Orchestrates the execution of tokens.

    The engine moves one token at a time; it does not lock. Callers make
    sure no two threads drive the same token (see ProcessFacade).

    - ``step`` executes the step at the cursor and keeps going through
      structural, side-effect-free steps (start, decision)
    - ``run`` repeats ``step`` until the token leaves RUNNING
    """

    def __init__(
        self,
        process_repository,
        handler_registry,
        token_repository,
        evaluator=None,
        event_bus: Optional[ExecutionEventBus] = None,
        max_call_depth: int = DEFAULT_MAX_CALL_DEPTH,
        max_steps: int = DEFAULT_MAX_STEPS,
    ):
        """
        Initialize the execution engine.

        Args:
            process_repository: Source of process definitions
            handler_registry: Registry of activity handlers
            token_repository: Repository of live tokens
            evaluator: Decision expression evaluator
            event_bus: Trace event bus (a new one is created if omitted)
            max_call_depth: Maximum sub-process nesting
            max_steps: Steps a single ``run`` may execute before failing the token
        """
        self._processes = process_repository
        self._registry = handler_registry
        self._tokens = token_repository
        self._max_steps = max_steps

        self.event_bus = event_bus or ExecutionEventBus()
        self.error_handler = ErrorHandler(self.event_bus)
        self.token_handler = TokenHandler(token_repository, self.event_bus)
        self.node_handlers = NodeHandlers(
            process_repository,
            handler_registry,
            self.error_handler,
            evaluator=evaluator,
            max_call_depth=max_call_depth,
        )

    # ==================== Validation ====================

    def validate_handlers(self, definition: ProcessDefinition) -> None:
        """
        Check that every activity handler of a process is registered.

        Raises:
            ConfigurationError: If a handler is missing
        """
        self._registry.validate_process(definition)

    # ==================== Stepping ====================

    def step(self, token: TokenContext) -> StepOutcome:
        """
        Execute the step at the token's cursor.

        After a step the engine keeps going while the token is RUNNING and
        its cursor sits on a start or decision step.

        Raises:
            EngineError: If the token is not RUNNING
        """
        if token.state is not TokenState.RUNNING:
            raise EngineError(
                "TokenNotRunning", f"Token {token.id} is {token.state.value}, not RUNNING"
            )

        outcome = StepOutcome(token_id=token.id, state=token.state)
        self._execute_current(token, outcome)
        while token.state is TokenState.RUNNING and self._at_auto_continue_step(token):
            if len(outcome.executed) >= self._max_steps:
                self._fail_step_limit(token, outcome)
                break
            self._execute_current(token, outcome)

        outcome.state = token.state
        return outcome

    def run(self, token: TokenContext) -> RunResult:
        """
        Step a token until it is WAITING, COMPLETED, FAILED or CANCELLED.

        Returns:
            The final state, the number of executed steps and the tokens
            made ready on the way
        """
        result = RunResult(state=token.state)
        while token.state is TokenState.RUNNING:
            if result.steps >= self._max_steps:
                outcome = StepOutcome(token_id=token.id, state=token.state)
                self._fail_step_limit(token, outcome)
                result.ready.extend(outcome.ready)
                break
            outcome = self.step(token)
            result.steps += len(outcome.executed)
            result.ready.extend(outcome.ready)

        result.state = token.state
        logger.debug(
            f"Token {token.id} blocked in state {token.state.value} after {result.steps} step(s)"
        )
        return result

    def _execute_current(self, token: TokenContext, outcome: StepOutcome) -> None:
        step = None
        process_name = token.process or ""
        entry_name = token.cursor.port if token.cursor else None
        exit_name = None
        try:
            if token.cursor is None:
                raise EngineError("NoCursor", f"Token {token.id} has no position")
            definition = self._processes.load_process(token.process)
            step = definition.get_step(token.cursor.step)
            entry_port = definition.resolve_port(step.name, token.cursor.port, PortDirection.ENTRY)
            entry_name = entry_port.name

            result = self.node_handlers.execute(token, definition, step, entry_port)

            if result.action is StepAction.FOLLOW:
                if result.step is step:
                    exit_name = result.exit_port.name
                outcome.ready.extend(
                    self.token_handler.follow(token, result.definition, result.step, result.exit_port)
                )
            elif result.action is StepAction.SUSPEND:
                token.cursor = Cursor(step.name, result.resume_port)
                change_state(self.event_bus, token, TokenState.WAITING)
                token.wait_reason = WAIT_SUSPENDED
                if step.timer_delay is not None:
                    self._schedule_wakeup(token, step.timer_delay, result.resume_port)
                logger.info(
                    f"Token {token.id} waiting at {definition.qualifier}.{step.name}.{result.resume_port}"
                )
            elif result.action is StepAction.COMPLETE:
                change_state(self.event_bus, token, TokenState.COMPLETED)
                outcome.ready.extend(self.token_handler.on_token_finished(token))
            elif result.action is StepAction.FAIL:
                self.error_handler.fail_token(token, step, result.error)
                outcome.ready.extend(self.token_handler.on_token_finished(token))

        except TokenFlowError as e:
            self.error_handler.fail_token(token, step, e)
            outcome.ready.extend(self.token_handler.on_token_finished(token))

        step_name = step.name if step is not None else (token.cursor.step if token.cursor else "")
        outcome.executed.append(step_name)
        outcome.exit_ports.append(exit_name)
        self.event_bus.publish(
            StepExecutedEvent(
                token_id=token.id,
                process=process_name,
                step=step_name,
                entry_port=entry_name,
                exit_port=exit_name,
            )
        )

    def _schedule_wakeup(self, token: TokenContext, delay: float, port: str) -> None:
        due_at = datetime.now() + timedelta(seconds=delay)
        self._tokens.schedule_timer_job(
            TIMER_RESUME, due_at, port, token_id=token.id, priority=token.priority
        )
        logger.debug(f"Token {token.id} wakes up at {port} after {delay}s")

    def _at_auto_continue_step(self, token: TokenContext) -> bool:
        if token.cursor is None:
            return False
        try:
            definition = self._processes.load_process(token.process)
        except TokenFlowError:
            return False
        if not definition.has_step(token.cursor.step):
            return False
        return definition.get_step(token.cursor.step).kind in AUTO_CONTINUE_KINDS

    def _fail_step_limit(self, token: TokenContext, outcome: StepOutcome) -> None:
        error = EngineError(
            "StepLimitExceeded",
            f"Token {token.id} executed {self._max_steps} steps without blocking",
        )
        self.error_handler.fail_token(token, None, error)
        outcome.ready.extend(self.token_handler.on_token_finished(token))
