# Process Graph Model for TokenFlow Engine
# Immutable definitions of processes, steps, ports and parameters

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import ModelError
from .qualifier import OBJECT_DELIMITER, Qualifier

logger = logging.getLogger(__name__)

# Well-known port and parameter names
DEFAULT_ENTRY_PORT = "In"
DEFAULT_EXIT_PORT = "Out"
ERROR_PORT = "Error"
EXCEPTION_PARAM = "Exception"
YES_PORT = "Yes"
NO_PORT = "No"


class _NoValue:
    """Marker for "no value stored", distinct from a stored None."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __repr__(self):
        return "NO_VALUE"

    def __reduce__(self):
        return (_NoValue, ())


NO_VALUE = _NoValue()


class StepKind(str, Enum):
    """Types of steps in a process graph."""

    START = "start"            # Process entry point
    END = "end"                # Process exit point / sub-process return
    ACTIVITY = "activity"      # Invokes a registered handler
    DECISION = "decision"      # Evaluates an expression to choose an exit
    SUBPROCESS = "subprocess"  # Calls another process
    WAIT = "wait"              # Suspends until resumed from outside

    @property
    def is_structural(self) -> bool:
        return self is not StepKind.ACTIVITY


# Structural steps the scheduler runs through without yielding
AUTO_CONTINUE_KINDS = frozenset({StepKind.START, StepKind.DECISION})


class PortDirection(str, Enum):
    ENTRY = "entry"
    EXIT = "exit"


class ParamScope(str, Enum):
    PORT = "port"
    STEP = "step"


PARAM_TYPES: Dict[str, Tuple[type, ...]] = {
    "any": (object,),
    "object": (object,),
    "str": (str,),
    "int": (int,),
    "float": (int, float),
    "bool": (bool,),
    "list": (list, tuple),
    "dict": (dict,),
}


@dataclass(frozen=True)
class Parameter:
    """
    A named parameter of a port or of a step.

    Attributes:
        name: Parameter name, unique within its port or step
        param_type: Declared type name (see PARAM_TYPES)
        scope: PORT for port parameters, STEP for step-scoped state
        required: Whether the value must be present on entry
        default: Value used when nothing is stored, NO_VALUE if none
    """

    name: str
    param_type: str = "any"
    scope: ParamScope = ParamScope.PORT
    required: bool = False
    default: Any = NO_VALUE

    def accepts(self, value: Any) -> bool:
        """Check a value against the declared type; None is always accepted."""
        if value is None:
            return True
        types = PARAM_TYPES.get(self.param_type, (object,))
        if self.param_type in ("int", "float") and isinstance(value, bool):
            return False
        return isinstance(value, types)


@dataclass(frozen=True)
class Port:
    """
    An entry or exit port of a step.

    Exit ports carry the control links of the graph as ``Step.Port``
    references; more than one target means fan-out.
    """

    name: str
    direction: PortDirection
    params: Tuple[Parameter, ...] = ()
    targets: Tuple[str, ...] = ()

    def get_param(self, name: str) -> Optional[Parameter]:
        for param in self.params:
            if param.name == name:
                return param
        return None

    @property
    def param_names(self) -> List[str]:
        return [param.name for param in self.params]


@dataclass(frozen=True)
class DataLink:
    """Copies a parameter value from ``source`` to ``target`` (both ``Step.Port.Param``)."""

    source: str
    target: str


@dataclass(frozen=True)
class Step:
    """
    A node in a process graph.

    Attributes:
        name: Step name, unique within its process
        kind: Step kind
        entry_ports: Entry ports (at least one)
        exit_ports: Exit ports (at least one except for END steps)
        step_params: Step-scoped parameters persisted across re-entry
        handler: Handler identifier for ACTIVITY steps
        expression: Expression for DECISION steps
        subprocess: Qualifier string of the called process for SUBPROCESS steps
        resume_port: Entry port used to resume WAIT steps
        timer_delay: Seconds after which a WAIT step resumes by itself
        join: Whether entry requires all incoming branches to arrive
        order: Position of the step within the process
    """

    name: str
    kind: StepKind
    entry_ports: Tuple[Port, ...] = ()
    exit_ports: Tuple[Port, ...] = ()
    step_params: Tuple[Parameter, ...] = ()
    handler: Optional[str] = None
    expression: Optional[str] = None
    subprocess: Optional[str] = None
    resume_port: Optional[str] = None
    timer_delay: Optional[float] = None
    join: bool = False
    order: int = 0
    description: str = ""

    def get_entry_port(self, name: str) -> Optional[Port]:
        for port in self.entry_ports:
            if port.name == name:
                return port
        return None

    def get_exit_port(self, name: str) -> Optional[Port]:
        for port in self.exit_ports:
            if port.name == name:
                return port
        return None

    def get_step_param(self, name: str) -> Optional[Parameter]:
        for param in self.step_params:
            if param.name == name:
                return param
        return None

    def default_entry_port(self) -> Optional[Port]:
        return _default_port(self.entry_ports, DEFAULT_ENTRY_PORT)

    def default_exit_port(self) -> Optional[Port]:
        """The sole exit port, else the one named ``Out``; error ports never qualify."""
        ports = tuple(p for p in self.exit_ports if p.name != ERROR_PORT)
        return _default_port(ports, DEFAULT_EXIT_PORT)

    @property
    def error_port(self) -> Optional[Port]:
        return self.get_exit_port(ERROR_PORT)


def _default_port(ports: Tuple[Port, ...], default_name: str) -> Optional[Port]:
    if len(ports) == 1:
        return ports[0]
    for port in ports:
        if port.name == default_name:
            return port
    return None


@dataclass(frozen=True)
class ProcessDefinition:
    """
    An immutable, validated process graph.

    Example:
        definition = repository.load_process(Qualifier.parse("/Sales/Order"))
        port = definition.resolve_port("Approve", "Yes", PortDirection.EXIT)
    """

    qualifier: Qualifier
    steps: Tuple[Step, ...]
    data_links: Tuple[DataLink, ...] = ()
    description: str = ""
    _index: Dict[str, Step] = field(default_factory=dict, compare=False, repr=False)

    def __post_init__(self):
        index = self._index
        index.clear()
        for step in self.steps:
            index.setdefault(step.name, step)

    @property
    def name(self) -> Optional[str]:
        return self.qualifier.item

    # ==================== Lookup ====================

    def get_step(self, name: str) -> Step:
        step = self._index.get(name)
        if step is None:
            raise ModelError(
                "StepNotFound", f"Step '{name}' not found in process {self.qualifier}"
            )
        return step

    def has_step(self, name: str) -> bool:
        return name in self._index

    def resolve_port(
        self,
        step_name: str,
        port_name: Optional[str] = None,
        direction: PortDirection = PortDirection.EXIT,
    ) -> Port:
        """
        Resolve a port of a step.

        Args:
            step_name: Name of the step
            port_name: Name of the port; None selects the implicit default port
            direction: Whether to look among entry or exit ports

        Returns:
            The resolved port

        Raises:
            ModelError: If the step or port does not exist
        """
        step = self.get_step(step_name)
        if direction is PortDirection.ENTRY:
            port = (
                step.default_entry_port()
                if port_name is None
                else step.get_entry_port(port_name)
            )
        else:
            port = (
                step.default_exit_port()
                if port_name is None
                else step.get_exit_port(port_name)
            )
        if port is None:
            label = port_name or "<default>"
            raise ModelError(
                "PortNotFound",
                f"{direction.value.capitalize()} port '{label}' not found "
                f"on step {self.qualifier}.{step_name}",
            )
        return port

    def resolve_reference(self, reference: str) -> Tuple[Step, Port]:
        """Resolve a ``Step.Port`` reference to its step and entry port."""
        step_name, _, port_name = reference.partition(OBJECT_DELIMITER)
        port = self.resolve_port(step_name, port_name or None, PortDirection.ENTRY)
        return self.get_step(step_name), port

    def start_steps(self) -> List[Step]:
        return [step for step in self.steps if step.kind is StepKind.START]

    def default_start_step(self) -> Step:
        starts = self.start_steps()
        if len(starts) == 1:
            return starts[0]
        for step in starts:
            if step.name in (DEFAULT_ENTRY_PORT, "Start"):
                return step
        raise ModelError(
            "NoDefaultStart",
            f"Process {self.qualifier} has no unique default start step",
        )

    def incoming_links(self, step_name: str, port_name: str) -> List[Tuple[str, str]]:
        """List ``(step, exit port)`` pairs with a control link into the given entry port."""
        reference = f"{step_name}{OBJECT_DELIMITER}{port_name}"
        incoming = []
        for step in self.steps:
            for port in step.exit_ports:
                for target in port.targets:
                    if target == reference:
                        incoming.append((step.name, port.name))
        return incoming

    def data_links_into(self, step_name: str, port_name: str) -> List[DataLink]:
        prefix = f"{step_name}{OBJECT_DELIMITER}{port_name}{OBJECT_DELIMITER}"
        return [link for link in self.data_links if link.target.startswith(prefix)]

    # ==================== Validation ====================

    def validate(self) -> "ProcessDefinition":
        """
        Check the referential integrity of the graph.

        Returns:
            self, for chaining

        Raises:
            ModelError: On the first integrity violation found
        """
        seen = set()
        for step in self.steps:
            if step.name in seen:
                raise ModelError(
                    "DuplicateStep",
                    f"Duplicate step name '{step.name}' in process {self.qualifier}",
                )
            seen.add(step.name)

        for step in self.steps:
            self._validate_step(step)

        for link in self.data_links:
            self._validate_param_reference(link.source, link)
            self._validate_param_reference(link.target, link)

        if not self.start_steps():
            raise ModelError(
                "NoStartStep", f"Process {self.qualifier} has no start step"
            )
        return self

    def _validate_step(self, step: Step) -> None:
        where = f"{self.qualifier}.{step.name}"
        if not step.entry_ports:
            raise ModelError("MissingPort", f"Step {where} has no entry port")
        if not step.exit_ports and step.kind is not StepKind.END:
            raise ModelError("MissingPort", f"Step {where} has no exit port")
        if step.kind is StepKind.ACTIVITY and not step.handler:
            raise ModelError("MissingHandler", f"Activity {where} names no handler")
        if step.kind is StepKind.DECISION and not step.expression:
            raise ModelError("MissingExpression", f"Decision {where} has no expression")
        if step.kind is StepKind.SUBPROCESS and not step.subprocess:
            raise ModelError("MissingSubprocess", f"Step {where} names no sub-process")
        if step.resume_port and step.get_entry_port(step.resume_port) is None:
            raise ModelError(
                "UnknownLinkTarget",
                f"Resume port '{step.resume_port}' of {where} does not exist",
            )
        if step.timer_delay is not None:
            if step.kind is not StepKind.WAIT:
                raise ModelError("InvalidTimer", f"Only wait steps take a timer, not {where}")
            if step.timer_delay < 0:
                raise ModelError("InvalidTimer", f"Timer of {where} has a negative delay")

        for port in step.exit_ports:
            for target in port.targets:
                target_step, _, target_port = target.partition(OBJECT_DELIMITER)
                if target_step not in self._index:
                    raise ModelError(
                        "UnknownLinkTarget",
                        f"Port {where}.{port.name} references unknown step '{target_step}'",
                    )
                destination = self._index[target_step]
                if target_port:
                    found = destination.get_entry_port(target_port)
                else:
                    found = destination.default_entry_port()
                if found is None:
                    raise ModelError(
                        "UnknownLinkTarget",
                        f"Port {where}.{port.name} references unknown port '{target}'",
                    )

    def _validate_param_reference(self, reference: str, link: DataLink) -> None:
        segments = reference.split(OBJECT_DELIMITER)
        if len(segments) != 3:
            raise ModelError(
                "InvalidDataLink",
                f"Data link {link.source} -> {link.target} in {self.qualifier} "
                f"must use Step.Port.Param references",
            )
        step_name, port_name, param_name = segments
        step = self._index.get(step_name)
        port = None
        if step is not None:
            port = step.get_entry_port(port_name) or step.get_exit_port(port_name)
        if port is None or port.get_param(param_name) is None:
            raise ModelError(
                "InvalidDataLink",
                f"Data link {link.source} -> {link.target} in {self.qualifier} "
                f"references unknown parameter '{reference}'",
            )
