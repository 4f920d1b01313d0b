# TokenFlow - process execution core
# Core package initialization

from .core import (
    Qualifier,
    ProcessDefinition,
    Step,
    StepKind,
    TokenFlowError,
    EngineError,
    ModelError,
)

__all__ = [
    # Core model
    'Qualifier',
    'ProcessDefinition',
    'Step',
    'StepKind',
    # Errors
    'TokenFlowError',
    'EngineError',
    'ModelError',
]

__version__ = "1.0.0"
