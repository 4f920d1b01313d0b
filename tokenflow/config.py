# TokenFlow Configuration Module
# Engine settings read from environment variables

import logging
import os
from dataclasses import dataclass
from typing import List, Optional

# Default directory for Turtle files holding definitions and tokens
DEFAULT_STORAGE_PATH = "data/tokenflow_rdf"

# Maximum nesting of sub-process calls
DEFAULT_MAX_CALL_DEPTH = 50

# Safety limit of steps executed by one advance call
DEFAULT_MAX_STEPS = 10000

# Seconds between two timer polls of the API server
DEFAULT_TIMER_POLL_INTERVAL = 1.0

# Seconds a claimed timer job stays reserved for the claiming worker
DEFAULT_TIMER_LEASE_SECONDS = 30.0


def _as_bool(value: Optional[str], default: bool = False) -> bool:
    """Parse a boolean-like environment variable value."""
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_positive_int(value: Optional[str], default: int) -> int:
    """Parse a positive integer environment variable."""
    if value is None:
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def _as_positive_float(value: Optional[str], default: float) -> float:
    """Parse a positive float environment variable."""
    if value is None:
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def _as_list(value: Optional[str]) -> List[str]:
    items: List[str] = []
    for item in (value or "").split(","):
        item = item.strip()
        if item and item not in items:
            items.append(item)
    return items


@dataclass
class EngineSettings:
    """
    Runtime settings of an engine instance.

    Attributes:
        storage_path: Directory for the Turtle files
        autosave: Write Turtle files after every successful transaction
        max_call_depth: Maximum sub-process nesting
        max_steps: Steps one advance call may execute before failing the token
        workers: Thread pool size used to execute pending tokens
        reload_on_model_reset: Re-read definitions from disk on model reset
        timer_poll_interval: Seconds between timer polls of the API server
        log_level: Logging level name
        auth_enabled: Require a session for remote model notifications
        api_keys: API keys accepted when opening sessions
    """

    storage_path: str = DEFAULT_STORAGE_PATH
    autosave: bool = False
    max_call_depth: int = DEFAULT_MAX_CALL_DEPTH
    max_steps: int = DEFAULT_MAX_STEPS
    workers: int = 4
    reload_on_model_reset: bool = False
    timer_poll_interval: float = DEFAULT_TIMER_POLL_INTERVAL
    log_level: str = "INFO"
    auth_enabled: bool = False
    api_keys: tuple = ()

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """Build settings from TOKENFLOW_* (and API auth) environment variables."""
        return cls(
            storage_path=os.environ.get("TOKENFLOW_STORAGE_PATH", DEFAULT_STORAGE_PATH),
            autosave=_as_bool(os.getenv("TOKENFLOW_AUTOSAVE"), default=False),
            max_call_depth=_as_positive_int(
                os.getenv("TOKENFLOW_MAX_CALL_DEPTH"), DEFAULT_MAX_CALL_DEPTH
            ),
            max_steps=_as_positive_int(os.getenv("TOKENFLOW_MAX_STEPS"), DEFAULT_MAX_STEPS),
            workers=_as_positive_int(os.getenv("TOKENFLOW_WORKERS"), 4),
            reload_on_model_reset=_as_bool(
                os.getenv("TOKENFLOW_RELOAD_ON_MODEL_RESET"), default=False
            ),
            timer_poll_interval=_as_positive_float(
                os.getenv("TOKENFLOW_TIMER_POLL_INTERVAL_SECONDS"), DEFAULT_TIMER_POLL_INTERVAL
            ),
            log_level=os.getenv("TOKENFLOW_LOG_LEVEL", "INFO").upper(),
            auth_enabled=_as_bool(os.getenv("AUTH_ENABLED"), default=False),
            api_keys=tuple(_as_list(os.getenv("API_KEYS"))),
        )


def configure_logging(level: str = "INFO") -> None:
    """Apply the process-wide logging configuration."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
