# Storage Package for TokenFlow Engine
# Provides RDF-based persistence for process definitions and tokens

from .base import (
    BaseStorageService,
    FLOW,
    PROC,
    TOKEN,
    OBJ,
    TIMER,
)

from .process_repository import ProcessRepository
from .token_repository import TokenRepository

__all__ = [
    "BaseStorageService",
    "FLOW",
    "PROC",
    "TOKEN",
    "OBJ",
    "TIMER",
    "ProcessRepository",
    "TokenRepository",
]
