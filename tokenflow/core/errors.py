# Error Types for TokenFlow Engine
# Typed errors for parsing, model loading and process execution

from typing import Any, Dict, Optional


class TokenFlowError(Exception):
    """
    Base class of all engine errors.

    Every error carries a short machine-readable code, a human-readable
    message and an optional root cause.
    """

    default_code = "TokenFlowError"

    def __init__(
        self,
        code: Optional[str] = None,
        message: str = "",
        cause: Optional[BaseException] = None,
    ):
        self.code = code or self.default_code
        self.message = message or self.code
        self.cause = cause
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.cause is not None:
            return f"[{self.code}] {self.message} (caused by {self.cause!r})"
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the error for recording on a token."""
        return {
            "code": self.code,
            "message": self.message,
            "error_type": type(self).__name__,
            "cause": repr(self.cause) if self.cause is not None else None,
        }


# ==================== Bad Input ====================


class QualifierParseError(TokenFlowError):
    """Raised when a qualifier string does not follow the qualifier grammar."""

    default_code = "InvalidQualifier"


class ModelError(TokenFlowError):
    """Raised when a process definition cannot be loaded or resolved."""

    default_code = "ModelError"


# ==================== Unrecoverable Engine Errors ====================


class EngineError(TokenFlowError):
    """
    Unrecoverable engine error.

    These can never be caught by process-level error handling; they always
    fail the token they occur on.
    """

    default_code = "EngineError"


class ConfigurationError(EngineError):
    """The host runtime is misconfigured (e.g. a handler is not registered)."""

    default_code = "ConfigurationError"


class ProtocolError(EngineError):
    """A step was driven in violation of its entry protocol."""

    default_code = "ProtocolError"


class ParamTypeError(EngineError):
    """A parameter value does not match its declared type."""

    default_code = "ParamTypeMismatch"


class TokenBusyError(EngineError):
    """The token is currently being advanced by another worker."""

    default_code = "TokenBusy"


# ==================== Remote Boundary ====================


class InvalidSessionError(TokenFlowError):
    """The caller's session is unknown or no longer valid."""

    default_code = "InvalidSession"


# ==================== Recoverable Step Failure ====================


class StepFailure:
    """
    A handler-reported failure that the process may catch.

    Instances are bound to the ``Exception`` parameter of a step's error
    port, so they only hold plain data.
    """

    def __init__(self, code: str, message: str = "", error_type: str = ""):
        self.code = code
        self.message = message
        self.error_type = error_type or "StepFailure"

    @classmethod
    def from_exception(cls, exc: BaseException) -> "StepFailure":
        code = getattr(exc, "code", None) or type(exc).__name__
        return cls(code=str(code), message=str(exc), error_type=type(exc).__name__)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "error_type": self.error_type,
        }

    def __eq__(self, other):
        if isinstance(other, StepFailure):
            return self.to_dict() == other.to_dict()
        return NotImplemented

    def __repr__(self) -> str:
        return f"StepFailure(code={self.code!r}, message={self.message!r})"
