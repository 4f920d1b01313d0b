# Execution Events for TokenFlow Engine
# Trace events published by the execution engine

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class ExecutionEvent:
    """Base class for all execution events.

    Events are published after the engine changed a token, so subscribers
    observe execution (tracing, debugging, tests) without taking part in it.
    """

    pass


@dataclass
class TokenStateChangedEvent(ExecutionEvent):
    """Fired after a token moved from one lifecycle state to another."""

    token_id: str
    old_state: str
    new_state: str
    process: Optional[str] = None


@dataclass
class StepExecutedEvent(ExecutionEvent):
    """Fired after a step was executed and the token left it.

    ``exit_port`` is None when the step suspended or ended the token.
    """

    token_id: str
    process: str
    step: str
    entry_port: Optional[str]
    exit_port: Optional[str]


@dataclass
class TokenSpawnedEvent(ExecutionEvent):
    """Fired when a fan-out exit port created a child token."""

    token_id: str
    parent_id: str
    process: str
    target: str


@dataclass
class StepFailedEvent(ExecutionEvent):
    """Fired when a step invocation failed.

    ``routed`` tells whether the failure went to the step's error port
    instead of failing the token.
    """

    token_id: str
    process: str
    step: str
    failure: Dict[str, Any] = field(default_factory=dict)
    routed: bool = False
