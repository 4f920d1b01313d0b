# Error Handler for TokenFlow Engine
# Classifies step failures and routes them to error ports or fails the token

import logging
from typing import Any, Dict, Optional

from tokenflow.core.errors import EngineError, StepFailure, TokenFlowError
from tokenflow.core.process import EXCEPTION_PARAM, Port, Step

from tokenflow.api.events.event_bus import ExecutionEventBus
from tokenflow.api.events.execution_events import StepFailedEvent
from .token_context import TokenContext, TokenState, port_param_key
from .token_handler import change_state

logger = logging.getLogger(__name__)


def failure_record(error: Any) -> Dict[str, Any]:
    """Plain-data description of an exception or step failure."""
    if isinstance(error, StepFailure):
        return error.to_dict()
    if isinstance(error, TokenFlowError):
        return error.to_dict()
    if isinstance(error, BaseException):
        return StepFailure.from_exception(error).to_dict()
    return StepFailure(code="StepFailed", message=str(error)).to_dict()


class ErrorHandler:
    """
    Handles failures raised or reported during a step invocation.

    - EngineError (and its subclasses) can never be caught by the process:
      the token becomes FAILED at its pre-invocation position.
    - Any other failure is routed to the step's ``Error`` exit port when it
      has one, with the failure bound to the port's ``Exception`` parameter.
      The token keeps RUNNING.
    - Without an error port the token becomes FAILED with the failure
      recorded.
    """

    def __init__(self, event_bus: Optional[ExecutionEventBus] = None):
        """
        Initialize the error handler.

        Args:
            event_bus: Bus receiving StepFailedEvent notifications
        """
        self._bus = event_bus

    @staticmethod
    def is_recoverable(error: Any) -> bool:
        return not isinstance(error, EngineError)

    def route_to_error_port(
        self, token: TokenContext, step: Step, error: Any
    ) -> Optional[Port]:
        """
        Bind a recoverable failure to the error port of ``step``.

        Args:
            token: The token the step ran on
            step: The failed step
            error: Exception or StepFailure

        Returns:
            The error port to follow, or None if the step has none or the
            failure is unrecoverable
        """
        record = failure_record(error)
        port = step.error_port if self.is_recoverable(error) else None
        if port is None:
            return None

        token.clear_port(step.name, port.name)
        token.set_param(port_param_key(step.name, port.name, EXCEPTION_PARAM), record)
        logger.warning(
            f"Step {token.process}.{step.name} failed on token {token.id}, "
            f"continuing at error port: {record['code']}: {record['message']}"
        )
        self._publish(token, step, record, routed=True)
        return port

    def fail_token(self, token: TokenContext, step: Optional[Step], error: Any) -> None:
        """
        Record a failure on a token and move it to FAILED.

        The cursor is left where it was before the failing invocation.
        """
        if token.is_terminal:
            logger.warning(
                f"Token {token.id} is already {token.state.value}; not failing it with {error}"
            )
            return
        record = failure_record(error)
        step_name = step.name if step is not None else (
            token.cursor.step if token.cursor else None
        )
        record["step"] = step_name
        record["process"] = token.process
        logger.error(
            f"Token {token.id} failed at {token.process}.{step_name}: "
            f"{record['code']}: {record['message']}"
        )
        token.record_failure(record)
        if step is not None:
            self._publish(token, step, record, routed=False)
        change_state(self._bus, token, TokenState.FAILED)

    def _publish(self, token: TokenContext, step: Step, record: Dict[str, Any], routed: bool) -> None:
        if self._bus is None:
            return
        self._bus.publish(
            StepFailedEvent(
                token_id=token.id,
                process=token.process or "",
                step=step.name,
                failure=dict(record),
                routed=routed,
            )
        )
