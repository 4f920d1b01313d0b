# Process Repository for TokenFlow Engine
# Loads, caches and deploys process definitions stored as RDF

import logging
import threading
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from rdflib import Graph, Literal, RDF, RDFS
from rdflib.term import Node

from tokenflow.core.errors import ModelError
from tokenflow.core.process import (
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
from tokenflow.core.qualifier import Qualifier, as_qualifier

from .base import BaseStorageService, FLOW

logger = logging.getLogger(__name__)

QualifierLike = Union[Qualifier, str]

# Properties whose objects belong to the process resource and go with it on removal
_OWNED_PROPERTIES = (
    FLOW.step,
    FLOW.entryPort,
    FLOW.exitPort,
    FLOW.param,
    FLOW.stepParam,
    FLOW.dataLink,
)


def _text(graph: Graph, subject: Node, predicate) -> Optional[str]:
    value = graph.value(subject, predicate)
    return str(value) if value is not None else None


def _flag(graph: Graph, subject: Node, predicate) -> bool:
    value = graph.value(subject, predicate)
    if value is None:
        return False
    parsed = value.toPython()
    if isinstance(parsed, str):
        return parsed.strip().lower() in ("true", "1", "yes")
    return bool(parsed)


def _number(graph: Graph, subject: Node, predicate) -> int:
    value = graph.value(subject, predicate)
    if value is None:
        return 0
    try:
        return int(value.toPython())
    except (TypeError, ValueError):
        return 0


def _seconds(graph: Graph, subject: Node, predicate) -> Optional[float]:
    value = graph.value(subject, predicate)
    if value is None:
        return None
    try:
        return float(value.toPython())
    except (TypeError, ValueError):
        raise ModelError("InvalidDocument", f"{subject} has a non-numeric timer delay '{value}'")


class ProcessRepository:
    """
    Repository for process definitions.

    Process graphs are authored in Turtle using the ``flow:`` vocabulary::

        proc:LoopSum a flow:Process ;
            flow:model "Demo" ;
            flow:name "LoopSum" ;
            flow:step proc:LoopSum_Start .

        proc:LoopSum_Start flow:name "Start" ;
            flow:kind "start" ;
            flow:entryPort [ flow:name "In" ] ;
            flow:exitPort [ flow:name "Out" ; flow:target "Loop.In" ] .

    Loaded definitions are immutable and cached by their item qualifier
    (``/model/item``). Cached entries are only dropped through
    ``invalidate``, ``reset`` or ``reload``.
    """

    def __init__(self, base_storage: BaseStorageService):
        """
        Initialize the process repository.

        Args:
            base_storage: The base storage service providing graph access
        """
        self._storage = base_storage
        self._cache: Dict[Qualifier, ProcessDefinition] = {}
        self._lock = threading.RLock()

    @property
    def _graph(self) -> Graph:
        """Get the definitions graph."""
        return self._storage.definitions_graph

    # ==================== Deployment ====================

    def deploy(self, content: str, format: str = "turtle") -> List[Qualifier]:
        """
        Deploy every process contained in an RDF document.

        All processes of the document are built and validated before anything
        is merged, so an invalid document leaves the repository unchanged.
        Existing definitions with the same qualifier are replaced.

        Args:
            content: Serialized RDF document
            format: rdflib parser format (default "turtle")

        Returns:
            The qualifiers of the deployed processes

        Raises:
            ModelError: If the document cannot be parsed or a process is invalid
        """
        incoming = Graph()
        try:
            incoming.parse(data=content, format=format)
        except Exception as e:
            raise ModelError("InvalidDocument", f"Cannot parse process document: {e}", e)

        subjects = list(incoming.subjects(RDF.type, FLOW.Process))
        if not subjects:
            raise ModelError("InvalidDocument", "Document contains no flow:Process")

        definitions = [
            self._build_definition(incoming, subject).validate() for subject in subjects
        ]

        with self._lock:
            for definition in definitions:
                self._remove_from_graph(definition.qualifier)
            for triple in incoming:
                self._graph.add(triple)
            now = Literal(datetime.now().isoformat())
            for subject in subjects:
                self._graph.set((subject, FLOW.deployedAt, now))
            for definition in definitions:
                self.invalidate(definition.qualifier)
            self._storage.save_definitions()

        deployed = [definition.qualifier for definition in definitions]
        for qualifier in deployed:
            logger.info(f"Deployed process: {qualifier}")
        return deployed

    def remove(self, qualifier: QualifierLike) -> bool:
        """
        Remove a process definition.

        Args:
            qualifier: Qualifier of the process

        Returns:
            True if a definition was removed
        """
        key = as_qualifier(qualifier).item_qualifier()
        with self._lock:
            removed = self._remove_from_graph(key)
            self.invalidate(key)
            if removed:
                self._storage.save_definitions()
        if removed:
            logger.info(f"Removed process: {key}")
        return removed

    def _remove_from_graph(self, key: Qualifier) -> bool:
        subject = self._find_subject(key)
        if subject is None:
            return False
        for node in list(iter_owned_nodes(self._graph, subject)):
            self._graph.remove((node, None, None))
        return True

    # ==================== Loading ====================

    def load_process(
        self, qualifier: QualifierLike, default_model: Optional[str] = None
    ) -> ProcessDefinition:
        """
        Load a process definition, using the cache when possible.

        Args:
            qualifier: Qualifier of the process; the object path is ignored
            default_model: Model used when the qualifier names none

        Returns:
            The immutable process definition

        Raises:
            ModelError: If no (or no unique) process matches the qualifier
        """
        key = as_qualifier(qualifier).item_qualifier()
        if key.model is None and default_model:
            key = key.with_model(default_model)
        if key.item is None:
            raise ModelError("ProcessNotFound", f"Qualifier '{qualifier}' names no process")

        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                return cached

            subject = self._find_subject(key)
            if subject is None:
                raise ModelError("ProcessNotFound", f"Process not found: {key}")

            definition = self._build_definition(self._graph, subject).validate()
            self._cache[definition.qualifier] = definition
            if key != definition.qualifier:
                self._cache[key] = definition
            logger.debug(f"Loaded process definition {definition.qualifier}")
            return definition

    def exists(self, qualifier: QualifierLike) -> bool:
        key = as_qualifier(qualifier).item_qualifier()
        with self._lock:
            return key in self._cache or self._find_subject(key) is not None

    def _find_subject(self, key: Qualifier) -> Optional[Node]:
        matches = []
        for subject in self._graph.subjects(RDF.type, FLOW.Process):
            name = _text(self._graph, subject, FLOW.name)
            model = _text(self._graph, subject, FLOW.model)
            if name != key.item:
                continue
            if key.model is not None and model != key.model:
                continue
            matches.append(subject)

        if len(matches) > 1:
            raise ModelError(
                "AmbiguousProcess",
                f"Qualifier {key} matches {len(matches)} processes; specify the model",
            )
        return matches[0] if matches else None

    # ==================== Cache Control ====================

    def invalidate(self, qualifier: QualifierLike) -> None:
        """Drop one cached definition so the next load re-reads the graph."""
        key = as_qualifier(qualifier).item_qualifier()
        with self._lock:
            stale = [
                cached_key
                for cached_key, definition in self._cache.items()
                if cached_key == key or definition.qualifier == key
                or (key.model is None and cached_key.item == key.item)
            ]
            for cached_key in stale:
                del self._cache[cached_key]
        logger.debug(f"Invalidated cached process {key}")

    def reset(self) -> None:
        """Drop all cached definitions."""
        with self._lock:
            self._cache.clear()
        logger.info("Process definition cache reset")

    def reload(self) -> None:
        """Re-read the definitions from disk and reset the cache."""
        with self._lock:
            self._storage.reload_definitions()
            self._cache.clear()
        logger.info("Process definitions reloaded from storage")

    def cached_qualifiers(self) -> List[Qualifier]:
        with self._lock:
            return sorted({d.qualifier for d in self._cache.values()}, key=str)

    # ==================== Listing ====================

    def get(self, qualifier: QualifierLike) -> Optional[Dict[str, Any]]:
        """
        Get summary data of a process definition.

        Args:
            qualifier: Qualifier of the process

        Returns:
            Process data dictionary, or None if not found
        """
        key = as_qualifier(qualifier).item_qualifier()
        with self._lock:
            subject = self._find_subject(key)
            if subject is None:
                return None
            return self._summary(subject)

    def list_processes(self, model: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        List all deployed process definitions.

        Args:
            model: Optional filter by model name

        Returns:
            List of process data dictionaries sorted by qualifier
        """
        processes = []
        with self._lock:
            for subject in self._graph.subjects(RDF.type, FLOW.Process):
                data = self._summary(subject)
                if model and data["model"] != model:
                    continue
                processes.append(data)
        return sorted(processes, key=lambda p: p["qualifier"])

    def _summary(self, subject: Node) -> Dict[str, Any]:
        graph = self._graph
        qualifier = Qualifier(
            model=_text(graph, subject, FLOW.model), item=_text(graph, subject, FLOW.name)
        )
        return {
            "qualifier": str(qualifier),
            "model": qualifier.model,
            "name": qualifier.item,
            "description": _text(graph, subject, RDFS.comment) or "",
            "step_count": len(list(graph.objects(subject, FLOW.step))),
            "deployed_at": _text(graph, subject, FLOW.deployedAt),
        }

    # ==================== Graph to Definition ====================

    def _build_definition(self, graph: Graph, subject: Node) -> ProcessDefinition:
        name = _text(graph, subject, FLOW.name)
        if not name:
            raise ModelError("InvalidDocument", f"Process {subject} has no flow:name")
        qualifier = Qualifier(model=_text(graph, subject, FLOW.model), item=name)

        steps = sorted(
            (self._build_step(graph, node, qualifier) for node in graph.objects(subject, FLOW.step)),
            key=lambda s: (s.order, s.name),
        )
        links = []
        for node in graph.objects(subject, FLOW.dataLink):
            source = _text(graph, node, FLOW["from"])
            target = _text(graph, node, FLOW.to)
            if not source or not target:
                raise ModelError(
                    "InvalidDataLink", f"Data link in process {qualifier} needs from and to"
                )
            links.append(DataLink(source=source, target=target))

        return ProcessDefinition(
            qualifier=qualifier,
            steps=tuple(steps),
            data_links=tuple(sorted(links, key=lambda l: (l.target, l.source))),
            description=_text(graph, subject, RDFS.comment) or "",
        )

    def _build_step(self, graph: Graph, node: Node, qualifier: Qualifier) -> Step:
        name = _text(graph, node, FLOW.name)
        if not name:
            raise ModelError("InvalidDocument", f"Step {node} of {qualifier} has no flow:name")
        kind_text = (_text(graph, node, FLOW.kind) or "activity").lower()
        try:
            kind = StepKind(kind_text)
        except ValueError:
            raise ModelError(
                "InvalidDocument", f"Step {qualifier}.{name} has unknown kind '{kind_text}'"
            )

        return Step(
            name=name,
            kind=kind,
            entry_ports=self._build_ports(graph, node, FLOW.entryPort, PortDirection.ENTRY),
            exit_ports=self._build_ports(graph, node, FLOW.exitPort, PortDirection.EXIT),
            step_params=self._build_params(graph, node, FLOW.stepParam, ParamScope.STEP),
            handler=_text(graph, node, FLOW.handler),
            expression=_text(graph, node, FLOW.expression),
            subprocess=_text(graph, node, FLOW.subprocess),
            resume_port=_text(graph, node, FLOW.resumePort),
            timer_delay=_seconds(graph, node, FLOW.timerDelaySeconds),
            join=_flag(graph, node, FLOW["join"]),
            order=_number(graph, node, FLOW.order),
            description=_text(graph, node, RDFS.comment) or "",
        )

    def _build_ports(
        self, graph: Graph, node: Node, predicate, direction: PortDirection
    ) -> Tuple[Port, ...]:
        ports = []
        for port_node in graph.objects(node, predicate):
            name = _text(graph, port_node, FLOW.name)
            if not name:
                raise ModelError("MissingPort", f"Port of step {node} has no flow:name")
            targets = sorted(str(t) for t in graph.objects(port_node, FLOW.target))
            ports.append(
                (
                    _number(graph, port_node, FLOW.order),
                    Port(
                        name=name,
                        direction=direction,
                        params=self._build_params(graph, port_node, FLOW.param, ParamScope.PORT),
                        targets=tuple(targets),
                    ),
                )
            )
        ports.sort(key=lambda item: (item[0], item[1].name))
        return tuple(port for _, port in ports)

    def _build_params(
        self, graph: Graph, node: Node, predicate, scope: ParamScope
    ) -> Tuple[Parameter, ...]:
        params = []
        for param_node in graph.objects(node, predicate):
            if isinstance(param_node, Literal):
                # Short form: flow:param "Total"
                params.append((0, Parameter(name=str(param_node), scope=scope)))
                continue
            name = _text(graph, param_node, FLOW.name)
            if not name:
                raise ModelError("InvalidDocument", f"Parameter of {node} has no flow:name")
            default = graph.value(param_node, FLOW.default)
            params.append(
                (
                    _number(graph, param_node, FLOW.order),
                    Parameter(
                        name=name,
                        param_type=_text(graph, param_node, FLOW.type) or "any",
                        scope=scope,
                        required=_flag(graph, param_node, FLOW.required),
                        default=default.toPython() if default is not None else NO_VALUE,
                    ),
                )
            )
        params.sort(key=lambda item: (item[0], item[1].name))
        return tuple(param for _, param in params)


def iter_owned_nodes(graph: Graph, subject: Node) -> Iterable[Node]:
    """Yield the process resource and every node it owns (steps, ports, params, links)."""
    pending = [subject]
    seen = set()
    while pending:
        node = pending.pop()
        if node in seen:
            continue
        seen.add(node)
        yield node
        for predicate in _OWNED_PROPERTIES:
            pending.extend(graph.objects(node, predicate))
