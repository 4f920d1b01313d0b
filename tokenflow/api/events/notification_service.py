# Notification Service for TokenFlow Engine
# Broadcasts model changes to observers and invalidates cached definitions

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from tokenflow.core.qualifier import as_qualifier

logger = logging.getLogger(__name__)


class UpdateMode(str, Enum):
    ADDED = "ADDED"
    UPDATED = "UPDATED"
    REMOVED = "REMOVED"


@dataclass
class NotificationReport:
    """
    Result of one broadcast.

    Attributes:
        event: "model_updated" or "model_reset"
        delivered: Number of observers that handled the event
        failures: One entry per observer that raised
    """

    event: str
    delivered: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class ModelObserver:
    """
    Base class for model observers.

    Observers may also be plain objects providing the two methods; only
    the methods they define are called.
    """

    def model_updated(self, qualifier, mode: UpdateMode) -> None:
        pass

    def model_reset(self) -> None:
        pass


class ModelNotificationService:
    """
    Delivers model change events to registered observers.

    Delivery is synchronous, in registration order, over a snapshot of the
    observer list taken when the broadcast starts. An observer that raises
    is logged and listed in the returned report; the remaining observers
    still receive the event.

    Before observers are notified the process cache is invalidated, so
    loads made by observers already see the new definition.
    """

    def __init__(self, process_repository, session_registry=None, reload_on_reset: bool = False):
        """
        Initialize the notification service.

        Args:
            process_repository: Repository whose cache is invalidated
            session_registry: Checks the caller session when one is given
            reload_on_reset: Re-read definitions from disk on model reset
        """
        self._processes = process_repository
        self._sessions = session_registry
        self._reload_on_reset = reload_on_reset
        self._observers: List[Any] = []
        self._lock = threading.Lock()

    # ==================== Observers ====================

    def add_observer(self, observer) -> None:
        with self._lock:
            if observer not in self._observers:
                self._observers.append(observer)
        logger.debug(f"Added model observer {observer!r}")

    def remove_observer(self, observer) -> bool:
        with self._lock:
            if observer not in self._observers:
                return False
            self._observers.remove(observer)
        logger.debug(f"Removed model observer {observer!r}")
        return True

    def observers(self) -> List[Any]:
        with self._lock:
            return list(self._observers)

    # ==================== Events ====================

    def model_updated(self, qualifier, mode: UpdateMode, session: Optional[str] = None) -> NotificationReport:
        """
        Announce that a process model was added, updated or removed.

        Raises:
            InvalidSessionError: If ``session`` is given and not valid
        """
        self._check_session(session)
        qualifier = as_qualifier(qualifier)
        mode = UpdateMode(mode)
        self._processes.invalidate(qualifier)
        logger.info(f"Model {qualifier} {mode.value.lower()}")
        return self._broadcast(
            "model_updated", lambda observer: observer.model_updated(qualifier, mode)
        )

    def model_reset(self, session: Optional[str] = None) -> NotificationReport:
        """
        Announce that all models may have changed.

        Raises:
            InvalidSessionError: If ``session`` is given and not valid
        """
        self._check_session(session)
        if self._reload_on_reset:
            self._processes.reload()
        else:
            self._processes.reset()
        logger.info("Model reset")
        return self._broadcast("model_reset", lambda observer: observer.model_reset())

    def _check_session(self, session: Optional[str]) -> None:
        if session is not None and self._sessions is not None:
            self._sessions.check_session(session)

    def _broadcast(self, event: str, deliver: Callable[[Any], None]) -> NotificationReport:
        report = NotificationReport(event=event)
        # Observers added or removed during delivery count from the next broadcast
        for observer in self.observers():
            if not hasattr(observer, event):
                continue
            try:
                deliver(observer)
                report.delivered += 1
            except Exception as e:
                logger.exception(f"Observer {observer!r} failed on {event}")
                report.failures.append(
                    {
                        "observer": repr(observer),
                        "error_type": type(e).__name__,
                        "message": str(e),
                    }
                )
        return report
