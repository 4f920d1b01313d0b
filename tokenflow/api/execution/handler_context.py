# Handler Context for TokenFlow Engine
# The view of a token that a step handler works with during one invocation

import logging
from typing import Any, Dict, List, Optional, Union

from tokenflow.core.errors import (
    EngineError,
    ParamTypeError,
    ProtocolError,
    StepFailure,
)
from tokenflow.core.process import (
    NO_VALUE,
    Port,
    PortDirection,
    ProcessDefinition,
    Step,
)

from .token_context import TokenContext, port_param_key, step_param_key

logger = logging.getLogger(__name__)


class HandlerResult:
    """
    Outcome of a handler invocation.

    ``HANDLED`` commits the staged writes and follows the chosen exit port.
    ``NOT_HANDLED`` asks the engine for default handling.
    ``failed(error)`` reports a failure the process may catch on its
    ``Error`` port.
    """

    HANDLED: "HandlerResult"
    NOT_HANDLED: "HandlerResult"

    def __init__(self, status: str, error: Optional[StepFailure] = None):
        self.status = status
        self.error = error

    @classmethod
    def failed(cls, error: Union[StepFailure, BaseException, str]) -> "HandlerResult":
        if isinstance(error, BaseException):
            error = StepFailure.from_exception(error)
        elif isinstance(error, str):
            error = StepFailure(code="StepFailed", message=error)
        return cls("failed", error)

    @classmethod
    def coerce(cls, value: Any) -> "HandlerResult":
        """Normalize a handler return value (bool, None or HandlerResult)."""
        if isinstance(value, HandlerResult):
            return value
        if value is None or value is True:
            return cls.HANDLED
        if value is False:
            return cls.NOT_HANDLED
        raise EngineError(
            "InvalidHandlerResult",
            f"Handler returned {type(value).__name__}; expected bool or HandlerResult",
        )

    @property
    def is_handled(self) -> bool:
        return self.status == "handled"

    @property
    def is_failed(self) -> bool:
        return self.status == "failed"

    def __repr__(self) -> str:
        if self.error is not None:
            return f"HandlerResult({self.status}, {self.error!r})"
        return f"HandlerResult({self.status})"


HandlerResult.HANDLED = HandlerResult("handled")
HandlerResult.NOT_HANDLED = HandlerResult("not_handled")


class HandlerContext:
    """
    Bound to one token and one invocation of one step.

    Reads see the committed token state plus the writes staged during this
    invocation. Nothing reaches the token until ``commit`` is called by the
    engine after the handler returned normally.

    Example:
        def double(context):
            value = context.get_param("Value")
            context.set_result("Value", value * 2)
            return True
    """

    def __init__(
        self,
        token: TokenContext,
        definition: ProcessDefinition,
        step: Step,
        entry_port: Port,
    ):
        self._token = token
        self._definition = definition
        self._step = step
        self._entry_port = entry_port

        self._results: Dict[str, Dict[str, Any]] = {}
        self._step_writes: Dict[str, Any] = {}
        self._variable_writes: Dict[str, Any] = {}
        self._exit_port: Optional[Port] = None
        self._suspend_port: Optional[str] = None

    # ==================== Identity ====================

    @property
    def token_id(self) -> str:
        return self._token.id

    @property
    def process(self) -> str:
        return str(self._definition.qualifier)

    @property
    def step_name(self) -> str:
        return self._step.name

    @property
    def step(self) -> Step:
        return self._step

    @property
    def entry_port(self) -> str:
        return self._entry_port.name

    @property
    def debugger_id(self) -> Optional[str]:
        return self._token.debugger_id

    # ==================== Reading Parameters ====================

    def get_param(self, name: str) -> Any:
        """
        Read a parameter of the active entry port, else a step-scoped one.

        Returns:
            The value, the declared default, or NO_VALUE when unset
        """
        port_param = self._entry_port.get_param(name)
        key = port_param_key(self._step.name, self._entry_port.name, name)
        if self._token.has_param(key):
            return self._token.get_param(key)
        if port_param is not None and port_param.default is not NO_VALUE:
            return port_param.default

        if self._step.get_step_param(name) is not None or name in self._step_writes:
            return self.get_step_param(name)
        return NO_VALUE

    def has_param(self, name: str) -> bool:
        return self.get_param(name) is not NO_VALUE

    def param_names(self) -> List[str]:
        names = list(self._entry_port.param_names)
        names.extend(p.name for p in self._step.step_params if p.name not in names)
        return names

    def entry_values(self) -> Dict[str, Any]:
        """All values stored on the active entry port."""
        return self._token.port_values(self._step.name, self._entry_port.name)

    # ==================== Step-scoped State ====================

    def get_step_param(self, name: str) -> Any:
        if name in self._step_writes:
            return self._step_writes[name]
        value = self._token.get_param(step_param_key(self._step.name, name))
        if value is NO_VALUE:
            declared = self._step.get_step_param(name)
            if declared is not None:
                return declared.default
        return value

    def set_step_param(self, name: str, value: Any) -> None:
        declared = self._step.get_step_param(name)
        if declared is not None and not declared.accepts(value):
            raise ParamTypeError(
                message=(
                    f"Step parameter {self._step.name}.{name} expects "
                    f"{declared.param_type}, got {type(value).__name__}"
                )
            )
        self._step_writes[name] = value

    def remove_step_param(self, name: str) -> None:
        self._step_writes[name] = NO_VALUE

    def require_step_param(self, name: str) -> Any:
        """
        Read step-scoped state that must exist, e.g. a loop cursor.

        Raises:
            ProtocolError: If nothing is stored under ``name``
        """
        value = self.get_step_param(name)
        if value is NO_VALUE:
            raise ProtocolError(
                "MissingStepState",
                f"Step {self.process}.{self._step.name} entered via "
                f"'{self._entry_port.name}' without stored '{name}'",
            )
        return value

    # ==================== Process Variables ====================

    def get_variable(self, name: str) -> Any:
        if name in self._variable_writes:
            return self._variable_writes[name]
        return self._token.get_variable(name)

    def set_variable(self, name: str, value: Any) -> None:
        self._variable_writes[name] = value

    # ==================== Results and Exit Choice ====================

    def choose_exit_port(self, name: str) -> Port:
        """
        Designate the exit port the token leaves through.

        Raises:
            ModelError: If the step has no exit port of that name
        """
        self._exit_port = self._definition.resolve_port(
            self._step.name, name, PortDirection.EXIT
        )
        return self._exit_port

    @property
    def chosen_exit_port(self) -> Optional[Port]:
        return self._exit_port

    def set_result(self, name: str, value: Any, port: Optional[str] = None) -> None:
        """
        Stage a value for a parameter of an exit port.

        Args:
            name: Parameter name
            value: Value to write
            port: Exit port name; defaults to the chosen exit port, else the
                default exit port of the step

        Raises:
            ModelError: If the exit port cannot be resolved
            EngineError: If the port declares no such parameter
            ParamTypeError: If the value does not match the declared type
        """
        if port is None and self._exit_port is not None:
            target = self._exit_port
        else:
            target = self._definition.resolve_port(self._step.name, port, PortDirection.EXIT)

        param = target.get_param(name)
        if param is None:
            raise EngineError(
                "UnknownParameter",
                f"Exit port {self._step.name}.{target.name} has no parameter '{name}'",
            )
        if not param.accepts(value):
            raise ParamTypeError(
                message=(
                    f"Parameter {self._step.name}.{target.name}.{name} expects "
                    f"{param.param_type}, got {type(value).__name__}"
                )
            )
        self._results.setdefault(target.name, {})[name] = value

    def get_result(self, name: str, port: Optional[str] = None) -> Any:
        port_name = port or (self._exit_port.name if self._exit_port else None)
        if port_name is None:
            default = self._step.default_exit_port()
            port_name = default.name if default else None
        return self._results.get(port_name, {}).get(name, NO_VALUE)

    # ==================== Suspension ====================

    def suspend(self, resume_port: Optional[str] = None) -> None:
        """
        Ask the engine to put the token into WAITING after this invocation.

        The token continues when resumed at ``resume_port`` (an entry port of
        this step; default: the step's resume port, else the current entry).
        """
        port_name = resume_port or self._step.resume_port or self._entry_port.name
        self._definition.resolve_port(self._step.name, port_name, PortDirection.ENTRY)
        self._suspend_port = port_name

    @property
    def suspend_port(self) -> Optional[str]:
        return self._suspend_port

    # ==================== Commit ====================

    def commit(self) -> Optional[Port]:
        """
        Apply staged writes to the token.

        Returns:
            The exit port to follow (chosen, else default), None when suspended
            or when the step has no usable exit
        """
        token = self._token
        for name, value in self._step_writes.items():
            key = step_param_key(self._step.name, name)
            if value is NO_VALUE:
                token.remove_param(key)
            else:
                token.set_param(key, value)
        for name, value in self._variable_writes.items():
            token.set_variable(name, value)

        exit_port = None
        if self._suspend_port is None:
            exit_port = self._exit_port or self._step.default_exit_port()

        # Values left on an exit port by an earlier visit must not leak out
        written = set(self._results)
        if exit_port is not None:
            written.add(exit_port.name)
        for port_name in written:
            token.clear_port(self._step.name, port_name)
        for port_name, values in self._results.items():
            for name, value in values.items():
                token.set_param(port_param_key(self._step.name, port_name, name), value)

        return exit_port
