# Handler Registry for TokenFlow Engine
# Maps handler identifiers of activity steps to handler factories

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from tokenflow.core.errors import ConfigurationError
from tokenflow.core.process import ProcessDefinition, StepKind

logger = logging.getLogger(__name__)

# A handler is any callable taking a HandlerContext and returning
# True/False/None or a HandlerResult
Handler = Callable[[Any], Any]
HandlerFactory = Callable[[], Handler]


class HandlerRegistry:
    """
    Registry of step handlers.

    Activity steps name a handler id; the registry maps that id to a factory
    producing the callable invoked with the HandlerContext. Registration is
    explicit, nothing is discovered by reflection.

    Example:
        registry = HandlerRegistry()
        registry.register("Double", lambda: double_handler)
        handler = registry.create("Double")
    """

    def __init__(self):
        """Initialize an empty handler registry."""
        self._handlers: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def register(
        self,
        handler_id: str,
        factory: HandlerFactory,
        description: str = "",
    ) -> bool:
        """
        Register a handler factory.

        Args:
            handler_id: Identifier referenced by activity steps
            factory: Zero-argument callable returning the handler
            description: Human-readable description of the handler

        Returns:
            True if registered successfully
        """
        if not callable(factory):
            raise ConfigurationError(
                "InvalidHandler", f"Factory for handler '{handler_id}' is not callable"
            )
        with self._lock:
            replaced = handler_id in self._handlers
            self._handlers[handler_id] = {
                "factory": factory,
                "description": description,
                "registered_at": datetime.now().isoformat(),
            }

        if replaced:
            logger.warning(f"Replaced handler registration: {handler_id}")
        else:
            logger.info(f"Registered handler: {handler_id}")
        return True

    def register_handler(self, handler_id: str, handler: Handler, description: str = "") -> bool:
        """Register a stateless handler callable directly."""
        return self.register(handler_id, lambda: handler, description)

    def unregister(self, handler_id: str) -> bool:
        """
        Unregister a handler.

        Args:
            handler_id: The handler identifier

        Returns:
            True if unregistered, False if it didn't exist
        """
        with self._lock:
            if handler_id not in self._handlers:
                return False
            del self._handlers[handler_id]
        logger.info(f"Unregistered handler: {handler_id}")
        return True

    def exists(self, handler_id: str) -> bool:
        with self._lock:
            return handler_id in self._handlers

    def get(self, handler_id: str) -> Optional[Dict[str, Any]]:
        """Get registration info including the factory, or None."""
        with self._lock:
            return self._handlers.get(handler_id)

    def get_all(self) -> Dict[str, Any]:
        """
        Get all registered handlers.

        Returns:
            Dictionary of handler id -> info (without the factory)
        """
        with self._lock:
            return {
                handler_id: {
                    "description": info["description"],
                    "registered_at": info["registered_at"],
                }
                for handler_id, info in self._handlers.items()
            }

    def create(self, handler_id: str) -> Handler:
        """
        Produce the handler for an id.

        Raises:
            ConfigurationError: If no handler is registered under ``handler_id``
        """
        info = self.get(handler_id)
        if info is None:
            raise ConfigurationError(
                "HandlerNotFound", f"No handler registered for '{handler_id}'"
            )
        return info["factory"]()

    def missing_handlers(self, definition: ProcessDefinition) -> List[str]:
        """List the handler ids used by a process that are not registered."""
        missing = []
        for step in definition.steps:
            if step.kind is StepKind.ACTIVITY and step.handler:
                if not self.exists(step.handler) and step.handler not in missing:
                    missing.append(step.handler)
        return missing

    def validate_process(self, definition: ProcessDefinition) -> None:
        """
        Check that every activity step of a process has a registered handler.

        Raises:
            ConfigurationError: Naming the first unregistered handler
        """
        missing = self.missing_handlers(definition)
        if missing:
            raise ConfigurationError(
                "HandlerNotFound",
                f"Process {definition.qualifier} uses unregistered handler(s): "
                f"{', '.join(missing)}",
            )
