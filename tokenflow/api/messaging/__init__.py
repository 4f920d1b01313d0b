# Messaging Package for TokenFlow Engine
# Provides the activity handler registry and start request messaging

from .handler_registry import HandlerRegistry
from .message_handler import StartRequestHandler, send_start_request

__all__ = [
    "HandlerRegistry",
    "StartRequestHandler",
    "send_start_request",
]
