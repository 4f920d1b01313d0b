# Core model module
# Exports qualifiers, process graph types and error classes

from .qualifier import Qualifier, join_path
from .process import (
    NO_VALUE,
    DataLink,
    Parameter,
    ParamScope,
    Port,
    PortDirection,
    ProcessDefinition,
    Step,
    StepKind,
)
from .errors import (
    TokenFlowError,
    QualifierParseError,
    ModelError,
    EngineError,
    ConfigurationError,
    ProtocolError,
    ParamTypeError,
    TokenBusyError,
    InvalidSessionError,
    StepFailure,
)

__all__ = [
    # Qualifier
    'Qualifier',
    'join_path',
    # Process graph
    'NO_VALUE',
    'DataLink',
    'Parameter',
    'ParamScope',
    'Port',
    'PortDirection',
    'ProcessDefinition',
    'Step',
    'StepKind',
    # Errors
    'TokenFlowError',
    'QualifierParseError',
    'ModelError',
    'EngineError',
    'ConfigurationError',
    'ProtocolError',
    'ParamTypeError',
    'TokenBusyError',
    'InvalidSessionError',
    'StepFailure',
]
