# Token Context for TokenFlow Engine
# State, position and parameter values of one executing process instance

import copy
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from tokenflow.core.errors import EngineError
from tokenflow.core.process import NO_VALUE
from tokenflow.core.qualifier import OBJECT_DELIMITER, PATH_DELIMITER, join_path
from tokenflow.config import DEFAULT_MAX_CALL_DEPTH

logger = logging.getLogger(__name__)


class TokenState(str, Enum):
    """Lifecycle states of a token."""

    NEW = "NEW"
    RUNNING = "RUNNING"
    WAITING = "WAITING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {TokenState.COMPLETED, TokenState.FAILED, TokenState.CANCELLED}
)

ALLOWED_TRANSITIONS = {
    TokenState.NEW: frozenset({TokenState.RUNNING, TokenState.CANCELLED}),
    # RUNNING -> CANCELLED only for branches of a cancelled parent
    TokenState.RUNNING: frozenset(
        {TokenState.WAITING, TokenState.COMPLETED, TokenState.FAILED, TokenState.CANCELLED}
    ),
    TokenState.WAITING: frozenset(
        {TokenState.RUNNING, TokenState.FAILED, TokenState.CANCELLED}
    ),
    TokenState.COMPLETED: frozenset(),
    TokenState.FAILED: frozenset(),
    TokenState.CANCELLED: frozenset(),
}

# Why a WAITING token waits
WAIT_SUSPENDED = "suspended"
WAIT_CHILDREN = "children"

# Timer jobs: what fires and where a job stands
TIMER_RESUME = "RESUME"
TIMER_START = "START"
TIMER_SCHEDULED = "SCHEDULED"
TIMER_CLAIMED = "CLAIMED"
TIMER_FIRED = "FIRED"
TIMER_FAILED = "FAILED"
TIMER_CANCELLED = "CANCELLED"


def port_param_key(step: str, port: str, param: str) -> str:
    """Key of a port-scoped parameter: ``step.port.param``."""
    return join_path(step, port, param)


def step_param_key(step: str, param: str) -> str:
    """Key of a step-scoped parameter: ``step.param``."""
    return join_path(step, param)


@dataclass(frozen=True)
class Cursor:
    """Position of a token: a step and the entry port it is (to be) entered by."""

    step: str
    port: Optional[str] = None

    def __str__(self) -> str:
        return join_path(self.step, self.port or "")


@dataclass(frozen=True)
class CallFrame:
    """
    A sub-process call.

    Attributes:
        process: Qualifier string of the calling process
        step: Name of the calling SUBPROCESS step
        port: Entry port the calling step was entered by
        callee: Qualifier string of the called process
    """

    process: str
    step: str
    port: Optional[str]
    callee: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "process": self.process,
            "step": self.step,
            "port": self.port,
            "callee": self.callee,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CallFrame":
        return cls(
            process=data["process"],
            step=data["step"],
            port=data.get("port"),
            callee=data["callee"],
        )


@dataclass
class TokenContext:
    """
    The state of one process instance.

    Parameter values are kept in a flat map keyed by ``step.port.param`` and
    ``step.param``. While the token executes inside a sub-process every key
    is prefixed with the call path (one ``Step/`` segment per frame), so the
    callee's values never collide with the caller's.
    """

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: TokenState = TokenState.NEW
    process: Optional[str] = None
    cursor: Optional[Cursor] = None
    params: Dict[str, Any] = field(default_factory=dict)
    variables: Dict[str, Any] = field(default_factory=dict)
    call_stack: List[CallFrame] = field(default_factory=list)
    debugger_id: Optional[str] = None
    parent_id: Optional[str] = None
    child_ids: List[str] = field(default_factory=list)
    join_arrivals: Dict[str, List[str]] = field(default_factory=dict)
    wait_reason: Optional[str] = None
    failure: Optional[Dict[str, Any]] = None
    priority: int = 0
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())
    updated_at: str = field(default_factory=lambda: datetime.now().isoformat())

    # ==================== State ====================

    def transition(self, new_state: TokenState) -> TokenState:
        """
        Move the token to a new state.

        Args:
            new_state: Target state

        Returns:
            The previous state

        Raises:
            EngineError: If the transition is not allowed
        """
        old_state = self.state
        if new_state not in ALLOWED_TRANSITIONS[old_state]:
            raise EngineError(
                "InvalidStateTransition",
                f"Token {self.id} cannot go from {old_state.value} to {new_state.value}",
            )
        self.state = new_state
        if new_state is not TokenState.WAITING:
            self.wait_reason = None
        self.touch()
        logger.debug(f"Token {self.id}: {old_state.value} -> {new_state.value}")
        return old_state

    def touch(self) -> None:
        self.updated_at = datetime.now().isoformat()

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def record_failure(self, failure: Dict[str, Any]) -> None:
        self.failure = dict(failure)
        self.touch()

    # ==================== Parameters ====================

    @property
    def frame_prefix(self) -> str:
        """Key prefix of the active call frame, empty at top level."""
        return "".join(frame.step + PATH_DELIMITER for frame in self.call_stack)

    def scoped_key(self, key: str) -> str:
        return self.frame_prefix + key

    def get_param(self, key: str) -> Any:
        """Return the value stored under ``key`` in the active frame, or NO_VALUE."""
        return self.params.get(self.scoped_key(key), NO_VALUE)

    def has_param(self, key: str) -> bool:
        return self.scoped_key(key) in self.params

    def set_param(self, key: str, value: Any) -> None:
        self.params[self.scoped_key(key)] = value

    def remove_param(self, key: str) -> Any:
        return self.params.pop(self.scoped_key(key), NO_VALUE)

    def param_values(self) -> Dict[str, Any]:
        """Copy of the whole parameter map, including other frames."""
        return dict(self.params)

    def port_values(self, step: str, port: str) -> Dict[str, Any]:
        """Values of every parameter stored for one port of the active frame."""
        prefix = self.scoped_key(join_path(step, port)) + OBJECT_DELIMITER
        return {
            key[len(prefix):]: value
            for key, value in self.params.items()
            if key.startswith(prefix) and OBJECT_DELIMITER not in key[len(prefix):]
        }

    def clear_port(self, step: str, port: str) -> None:
        prefix = self.scoped_key(join_path(step, port)) + OBJECT_DELIMITER
        for key in [k for k in self.params if k.startswith(prefix)]:
            del self.params[key]

    def clear_frame(self, prefix: str) -> None:
        """Remove every parameter stored below a call-path prefix."""
        for key in [k for k in self.params if k.startswith(prefix)]:
            del self.params[key]

    # ==================== Process Variables ====================

    def get_variable(self, name: str) -> Any:
        return self.variables.get(name, NO_VALUE)

    def set_variable(self, name: str, value: Any) -> None:
        self.variables[name] = value

    # ==================== Call Stack ====================

    def push_frame(self, frame: CallFrame, max_depth: int = DEFAULT_MAX_CALL_DEPTH) -> None:
        """
        Enter a sub-process.

        Raises:
            EngineError: If the call stack would exceed ``max_depth``
        """
        if len(self.call_stack) >= max_depth:
            raise EngineError(
                "CallStackOverflow",
                f"Token {self.id} exceeded the maximum call depth of {max_depth}",
            )
        self.call_stack.append(frame)

    def pop_frame(self) -> CallFrame:
        if not self.call_stack:
            raise EngineError("CallStackEmpty", f"Token {self.id} is not in a sub-process")
        return self.call_stack.pop()

    @property
    def call_depth(self) -> int:
        return len(self.call_stack)

    # ==================== Serialization ====================

    def snapshot(self) -> "TokenContext":
        """Deep copy used to roll back a failed transaction."""
        return copy.deepcopy(self)

    def restore(self, snapshot: "TokenContext") -> None:
        """Overwrite this token in place with the values of a snapshot."""
        for name in self.__dataclass_fields__:
            setattr(self, name, copy.deepcopy(getattr(snapshot, name)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state.value,
            "process": self.process,
            "cursor": (
                {"step": self.cursor.step, "port": self.cursor.port}
                if self.cursor else None
            ),
            "params": dict(self.params),
            "variables": dict(self.variables),
            "call_stack": [frame.to_dict() for frame in self.call_stack],
            "debugger_id": self.debugger_id,
            "parent_id": self.parent_id,
            "child_ids": list(self.child_ids),
            "join_arrivals": {k: list(v) for k, v in self.join_arrivals.items()},
            "wait_reason": self.wait_reason,
            "failure": self.failure,
            "priority": self.priority,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenContext":
        cursor = data.get("cursor")
        return cls(
            id=data["id"],
            state=TokenState(data.get("state", TokenState.NEW.value)),
            process=data.get("process"),
            cursor=Cursor(cursor["step"], cursor.get("port")) if cursor else None,
            params=dict(data.get("params") or {}),
            variables=dict(data.get("variables") or {}),
            call_stack=[CallFrame.from_dict(f) for f in data.get("call_stack") or []],
            debugger_id=data.get("debugger_id"),
            parent_id=data.get("parent_id"),
            child_ids=list(data.get("child_ids") or []),
            join_arrivals={
                k: list(v) for k, v in (data.get("join_arrivals") or {}).items()
            },
            wait_reason=data.get("wait_reason"),
            failure=data.get("failure"),
            priority=int(data.get("priority") or 0),
            created_at=data.get("created_at") or datetime.now().isoformat(),
            updated_at=data.get("updated_at") or datetime.now().isoformat(),
        )
