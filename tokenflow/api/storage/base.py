# Base Storage Service for TokenFlow Engine
# Handles RDF graph management and persistence

import os
import logging
import threading
from typing import Optional
from rdflib import Graph, Namespace

logger = logging.getLogger(__name__)

# RDF Namespaces - shared across all storage modules
FLOW = Namespace("http://example.org/flow#")
PROC = Namespace("http://example.org/process/")
TOKEN = Namespace("http://example.org/token/")
OBJ = Namespace("http://example.org/object/")
TIMER = Namespace("http://example.org/timer/")

GRAPH_FILES = {
    "definitions": "definitions.ttl",
    "tokens": "tokens.ttl",
    "objects": "objects.ttl",
}


class BaseStorageService:
    """
    Base class for RDF graph management and persistence.

    Manages three separate RDF graphs:
    - definitions_graph: Process definitions (steps, ports, parameters)
    - tokens_graph: Token contexts (cursor, state, parameter values)
    - objects_graph: Business objects referenced by parameter values

    Each graph is persisted to its own Turtle file. With ``storage_path=None``
    the graphs live in memory only.
    """

    def __init__(self, storage_path: Optional[str] = "data/tokenflow_rdf"):
        """
        Initialize the base storage service.

        Args:
            storage_path: Directory path for storing RDF data files, or None
        """
        self.storage_path = storage_path
        self.lock = threading.RLock()
        if storage_path:
            os.makedirs(storage_path, exist_ok=True)

        self._definitions_graph = Graph()
        self._tokens_graph = Graph()
        self._objects_graph = Graph()

        self._load_all_graphs()

        logger.info(f"Initialized base storage at {storage_path or '<memory>'}")

    def _load_all_graphs(self) -> None:
        """Load all graphs from their respective files."""
        self._definitions_graph = self._load_graph(GRAPH_FILES["definitions"])
        self._tokens_graph = self._load_graph(GRAPH_FILES["tokens"])
        self._objects_graph = self._load_graph(GRAPH_FILES["objects"])

    def _load_graph(self, filename: str) -> Graph:
        """
        Load a graph from file if it exists.

        Args:
            filename: Name of the turtle file to load

        Returns:
            Graph containing the loaded data, or empty Graph if file doesn't exist
        """
        graph = Graph()
        graph.bind("flow", FLOW)
        graph.bind("proc", PROC)
        graph.bind("token", TOKEN)
        if not self.storage_path:
            return graph

        filepath = os.path.join(self.storage_path, filename)
        if os.path.exists(filepath):
            graph.parse(filepath, format="turtle")
            logger.info(f"Loaded graph from {filepath} ({len(graph)} triples)")

        return graph

    def _save_graph(self, graph: Graph, filename: str) -> None:
        """
        Save a graph to file.

        Args:
            graph: RDF Graph to save
            filename: Name of the turtle file to save to
        """
        if not self.storage_path:
            return
        filepath = os.path.join(self.storage_path, filename)
        graph.serialize(filepath, format="turtle")
        logger.debug(f"Saved graph to {filepath} ({len(graph)} triples)")

    def save_definitions(self) -> None:
        """Save the definitions graph to disk."""
        with self.lock:
            self._save_graph(self._definitions_graph, GRAPH_FILES["definitions"])

    def save_tokens(self) -> None:
        """Save the tokens graph to disk."""
        with self.lock:
            self._save_graph(self._tokens_graph, GRAPH_FILES["tokens"])

    def save_objects(self) -> None:
        """Save the business objects graph to disk."""
        with self.lock:
            self._save_graph(self._objects_graph, GRAPH_FILES["objects"])

    def save_all(self) -> None:
        """Save all graphs to disk."""
        self.save_definitions()
        self.save_tokens()
        self.save_objects()

    def reload_definitions(self) -> Graph:
        """
        Replace the definitions graph with the content of its Turtle file.

        Without a storage path the in-memory graph is kept as is.

        Returns:
            The current definitions graph
        """
        with self.lock:
            if self.storage_path:
                self._definitions_graph = self._load_graph(GRAPH_FILES["definitions"])
            return self._definitions_graph

    # Graph properties for controlled access

    @property
    def definitions_graph(self) -> Graph:
        """Get the process definitions graph."""
        return self._definitions_graph

    @property
    def tokens_graph(self) -> Graph:
        """Get the token contexts graph."""
        return self._tokens_graph

    @property
    def objects_graph(self) -> Graph:
        """Get the business objects graph."""
        return self._objects_graph

    def clear_all(self) -> None:
        """
        Clear all graphs and delete persisted files.

        USE WITH CAUTION - this deletes all data!
        """
        with self.lock:
            self._definitions_graph = Graph()
            self._tokens_graph = Graph()
            self._objects_graph = Graph()

            if self.storage_path:
                for filename in GRAPH_FILES.values():
                    filepath = os.path.join(self.storage_path, filename)
                    if os.path.exists(filepath):
                        os.remove(filepath)
                        logger.info(f"Deleted {filepath}")

        logger.warning("Cleared all storage data")

    def get_stats(self) -> dict:
        """
        Get statistics about the stored data.

        Returns:
            Dictionary with triple counts for each graph
        """
        return {
            "definitions_triples": len(self._definitions_graph),
            "tokens_triples": len(self._tokens_graph),
            "objects_triples": len(self._objects_graph),
            "total_triples": (
                len(self._definitions_graph)
                + len(self._tokens_graph)
                + len(self._objects_graph)
            ),
            "storage_path": self.storage_path,
        }
