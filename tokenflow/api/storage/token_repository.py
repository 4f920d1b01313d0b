# Token Repository for TokenFlow Engine
# Keeps live token contexts and their RDF snapshots, plus business objects

import json
import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

from rdflib import BNode, Graph, Literal, RDF

from tokenflow.core.errors import EngineError
from tokenflow.api.execution.token_context import (
    TIMER_CANCELLED,
    TIMER_CLAIMED,
    TIMER_FAILED,
    TIMER_FIRED,
    TIMER_SCHEDULED,
    TokenContext,
    TokenState,
)

from .base import BaseStorageService, FLOW, OBJ, TIMER, TOKEN

logger = logging.getLogger(__name__)

# Token fields stored as one triple each; the rest goes into flow:state/flow:data
_SCALAR_FIELDS = {
    "process": FLOW.process,
    "debugger_id": FLOW.debugger,
    "parent_id": FLOW.parent,
    "wait_reason": FLOW.waitReason,
    "created_at": FLOW.createdAt,
    "updated_at": FLOW.updatedAt,
}


def _to_json(value: Any, what: str) -> str:
    try:
        return json.dumps(value, sort_keys=True)
    except (TypeError, ValueError) as e:
        raise EngineError("ParamNotPersistable", f"Cannot persist {what}: {e}", e)


def _local_time(moment: datetime) -> datetime:
    # timer times are stored as naive local time
    if moment.tzinfo is not None:
        return moment.astimezone().replace(tzinfo=None)
    return moment


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return _local_time(datetime.fromisoformat(value))
    except ValueError:
        return None


class TokenRepository:
    """
    Repository for token contexts and business objects.

    Live tokens are kept in memory so that every caller works on the same
    object; each save also writes an RDF snapshot to the tokens graph:

    - token a flow:Token ; flow:state "RUNNING" ; flow:priority 0
    - token flow:cursorStep "Sum" ; flow:cursorPort "In"
    - token flow:param [ flow:key "Sum.Out.Total" ; flow:value "6" ]
    - token flow:data "{...}"  (variables, call stack, children, failure)

    Parameter values are stored as JSON literals, so they must be JSON
    serializable.
    """

    def __init__(self, base_storage: BaseStorageService, autosave: bool = False):
        """
        Initialize the token repository.

        Args:
            base_storage: The base storage service providing graph access
            autosave: Write the Turtle files after every transaction
        """
        self._storage = base_storage
        self._autosave = autosave
        self._live: Dict[str, TokenContext] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._lock = threading.RLock()

    @property
    def _graph(self) -> Graph:
        """Get the tokens graph."""
        return self._storage.tokens_graph

    @property
    def _objects(self) -> Graph:
        """Get the business objects graph."""
        return self._storage.objects_graph

    # ==================== Locks ====================

    def lock_for(self, token_id: str) -> threading.RLock:
        """Exclusive-access lock of one token."""
        with self._lock:
            lock = self._locks.get(token_id)
            if lock is None:
                lock = self._locks[token_id] = threading.RLock()
            return lock

    # ==================== Token Operations ====================

    def save_token(self, token: TokenContext) -> None:
        """
        Register a token and write its RDF snapshot.

        Raises:
            EngineError: If a parameter value cannot be serialized
        """
        params = {key: _to_json(value, f"parameter '{key}'") for key, value in token.params.items()}
        data = _to_json(
            {
                "variables": token.variables,
                "call_stack": [frame.to_dict() for frame in token.call_stack],
                "child_ids": token.child_ids,
                "join_arrivals": token.join_arrivals,
                "failure": token.failure,
            },
            f"state of token {token.id}",
        )

        with self._lock:
            self._live[token.id] = token
            uri = TOKEN[token.id]
            self._remove_triples(uri)

            self._graph.add((uri, RDF.type, FLOW.Token))
            self._graph.add((uri, FLOW.id, Literal(token.id)))
            self._graph.add((uri, FLOW.state, Literal(token.state.value)))
            self._graph.add((uri, FLOW.priority, Literal(token.priority)))
            for name, predicate in _SCALAR_FIELDS.items():
                value = getattr(token, name)
                if value is not None:
                    self._graph.add((uri, predicate, Literal(value)))
            if token.cursor is not None:
                self._graph.add((uri, FLOW.cursorStep, Literal(token.cursor.step)))
                if token.cursor.port:
                    self._graph.add((uri, FLOW.cursorPort, Literal(token.cursor.port)))
            for key, value in params.items():
                node = BNode()
                self._graph.add((uri, FLOW.param, node))
                self._graph.add((node, FLOW.key, Literal(key)))
                self._graph.add((node, FLOW.value, Literal(value)))
            self._graph.add((uri, FLOW.data, Literal(data)))

        logger.debug(f"Saved token {token.id} ({token.state.value})")

    def load_token(self, token_id: str) -> Optional[TokenContext]:
        """
        Get a token, rehydrating it from RDF if it is not live.

        Returns:
            The token, or None if not found
        """
        with self._lock:
            token = self._live.get(token_id)
            if token is not None:
                return token
            uri = TOKEN[token_id]
            if (uri, RDF.type, FLOW.Token) not in self._graph:
                return None
            token = self._from_graph(uri)
            self._live[token.id] = token
            return token

    def delete_token(self, token_id: str) -> bool:
        with self._lock:
            existed = token_id in self._live or (
                TOKEN[token_id], RDF.type, FLOW.Token
            ) in self._graph
            self._live.pop(token_id, None)
            self._locks.pop(token_id, None)
            self._remove_triples(TOKEN[token_id])
        if existed:
            logger.info(f"Deleted token {token_id}")
        return existed

    def list_tokens(self, state: Optional[TokenState] = None) -> List[TokenContext]:
        """
        List tokens, optionally filtered by state.

        Returns:
            Tokens ordered by creation time
        """
        with self._lock:
            for uri in self._graph.subjects(RDF.type, FLOW.Token):
                token_id = str(self._graph.value(uri, FLOW.id))
                if token_id not in self._live:
                    self._live[token_id] = self._from_graph(uri)
            tokens = list(self._live.values())
        if state is not None:
            tokens = [t for t in tokens if t.state is state]
        return sorted(tokens, key=lambda t: (t.created_at, t.id))

    def _remove_triples(self, uri) -> None:
        for node in list(self._graph.objects(uri, FLOW.param)):
            self._graph.remove((node, None, None))
        self._graph.remove((uri, None, None))

    def _from_graph(self, uri) -> TokenContext:
        graph = self._graph
        params = {}
        for node in graph.objects(uri, FLOW.param):
            params[str(graph.value(node, FLOW.key))] = json.loads(str(graph.value(node, FLOW.value)))
        data = json.loads(str(graph.value(uri, FLOW.data) or "{}"))

        record: Dict[str, Any] = {
            "id": str(graph.value(uri, FLOW.id)),
            "state": str(graph.value(uri, FLOW.state)),
            "priority": int(graph.value(uri, FLOW.priority).toPython()),
            "params": params,
        }
        for name, predicate in _SCALAR_FIELDS.items():
            value = graph.value(uri, predicate)
            record[name] = str(value) if value is not None else None
        step = graph.value(uri, FLOW.cursorStep)
        if step is not None:
            port = graph.value(uri, FLOW.cursorPort)
            record["cursor"] = {"step": str(step), "port": str(port) if port else None}
        record.update(data)
        return TokenContext.from_dict(record)

    # ==================== Transactions ====================

    @contextmanager
    def transaction(self, token: TokenContext) -> Iterator[TokenContext]:
        """
        Run one unit of forward progress on a token.

        On success the token is saved (and the Turtle files written when
        autosave is on). If the block raises, the token and its RDF snapshot
        are put back to their state before the block.
        """
        snapshot = token.snapshot()
        try:
            yield token
            self.save_token(token)
        except Exception:
            logger.error(f"Rolling back token {token.id} after a failed transaction")
            token.restore(snapshot)
            self.save_token(token)
            raise
        self._persist_if_autosave()

    def persist(self) -> None:
        """Write the tokens and objects graphs to their Turtle files."""
        self._storage.save_tokens()
        self._storage.save_objects()

    def storage_stats(self) -> Dict[str, Any]:
        return self._storage.get_stats()

    def _persist_if_autosave(self) -> None:
        if self._autosave:
            self.persist()

    # ==================== Timer Jobs ====================

    def schedule_timer_job(
        self,
        kind: str,
        due_at: datetime,
        target: str,
        token_id: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        priority: int = 0,
    ) -> str:
        """
        Persist a timer job for future activation.

        A still scheduled job of the same kind for the same token and target
        is moved to the new due time instead of adding a second one.

        Args:
            kind: TIMER_RESUME or TIMER_START
            due_at: When the job becomes due
            target: Entry port to resume at, or entry qualifier to start
            token_id: Token to resume (RESUME jobs)
            params: Input values passed on when the job fires
            priority: Priority of the started or resumed token

        Returns:
            The job id

        Raises:
            EngineError: If the parameters cannot be serialized
        """
        due_at = _local_time(due_at)
        payload = _to_json(params, f"parameters of timer job for {target}")
        with self._lock:
            if token_id is not None:
                for job in self.list_timer_jobs(TIMER_SCHEDULED):
                    if (job["token_id"], job["kind"], job["target"]) == (token_id, kind, target):
                        uri = TIMER[job["id"]]
                        self._graph.set((uri, FLOW.dueAt, Literal(due_at.isoformat())))
                        self._graph.set((uri, FLOW.params, Literal(payload)))
                        self._persist_if_autosave()
                        return job["id"]

            job_id = str(uuid.uuid4())
            uri = TIMER[job_id]
            self._graph.add((uri, RDF.type, FLOW.TimerJob))
            self._graph.add((uri, FLOW.id, Literal(job_id)))
            self._graph.add((uri, FLOW.timerKind, Literal(kind)))
            self._graph.add((uri, FLOW.timerStatus, Literal(TIMER_SCHEDULED)))
            self._graph.add((uri, FLOW.dueAt, Literal(due_at.isoformat())))
            self._graph.add((uri, FLOW.target, Literal(target)))
            self._graph.add((uri, FLOW.params, Literal(payload)))
            self._graph.add((uri, FLOW.priority, Literal(priority)))
            self._graph.add((uri, FLOW.createdAt, Literal(datetime.now().isoformat())))
            if token_id is not None:
                self._graph.add((uri, FLOW.forToken, Literal(token_id)))
            self._persist_if_autosave()

        logger.debug(f"Scheduled {kind} timer job {job_id} for {target} at {due_at.isoformat()}")
        return job_id

    def claim_due_timer_jobs(
        self, now: datetime, worker_id: str, lease_seconds: float
    ) -> List[Dict[str, Any]]:
        """
        Claim due timer jobs using a lease to avoid duplicate execution.

        A job claimed by another worker is only claimed again once its lease
        has run out.

        Returns:
            The claimed jobs, earliest due first
        """
        claimed = []
        now = _local_time(now)
        lease_until = now + timedelta(seconds=max(float(lease_seconds), 1.0))
        with self._lock:
            for job in self.list_timer_jobs():
                due_at = _parse_time(job["due_at"])
                if due_at and due_at > now:
                    continue
                if job["status"] == TIMER_CLAIMED:
                    leased_until = _parse_time(job["lease_until"])
                    if leased_until and leased_until > now:
                        continue
                elif job["status"] != TIMER_SCHEDULED:
                    continue

                uri = TIMER[job["id"]]
                self._graph.set((uri, FLOW.timerStatus, Literal(TIMER_CLAIMED)))
                self._graph.set((uri, FLOW.claimedBy, Literal(worker_id)))
                self._graph.set((uri, FLOW.leaseUntil, Literal(lease_until.isoformat())))
                job.update(
                    status=TIMER_CLAIMED,
                    claimed_by=worker_id,
                    lease_until=lease_until.isoformat(),
                )
                claimed.append(job)
            if claimed:
                self._persist_if_autosave()
        return sorted(claimed, key=lambda job: (job["due_at"] or "", job["id"]))

    def finalize_timer_job(
        self,
        job_id: str,
        worker_id: str,
        final_status: str,
        error_message: Optional[str] = None,
    ) -> bool:
        """
        Finalize a claimed timer job if still owned by this worker.

        Returns:
            False if the job was not claimed by ``worker_id``
        """
        if final_status not in (TIMER_FIRED, TIMER_FAILED):
            return False
        uri = TIMER[job_id]
        with self._lock:
            status = str(self._graph.value(uri, FLOW.timerStatus) or "")
            claimed_by = str(self._graph.value(uri, FLOW.claimedBy) or "")
            if status != TIMER_CLAIMED or claimed_by != worker_id:
                return False

            self._graph.set((uri, FLOW.timerStatus, Literal(final_status)))
            self._graph.set((uri, FLOW.finishedAt, Literal(datetime.now().isoformat())))
            if error_message:
                self._graph.set((uri, FLOW.lastError, Literal(error_message)))
            self._graph.remove((uri, FLOW.claimedBy, None))
            self._graph.remove((uri, FLOW.leaseUntil, None))
            self._persist_if_autosave()
        return True

    def cancel_timer_jobs(self, token_id: str) -> int:
        """Cancel the scheduled (not yet claimed) timer jobs of a token."""
        count = 0
        with self._lock:
            for job in self.list_timer_jobs(TIMER_SCHEDULED):
                if job["token_id"] == token_id:
                    self._graph.set((TIMER[job["id"]], FLOW.timerStatus, Literal(TIMER_CANCELLED)))
                    count += 1
            if count:
                self._persist_if_autosave()
        if count:
            logger.debug(f"Cancelled {count} timer job(s) of token {token_id}")
        return count

    def list_timer_jobs(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            jobs = [
                self._timer_record(uri)
                for uri in self._graph.subjects(RDF.type, FLOW.TimerJob)
            ]
        if status is not None:
            jobs = [job for job in jobs if job["status"] == status]
        return sorted(jobs, key=lambda job: (job["due_at"] or "", job["id"]))

    def _timer_record(self, uri) -> Dict[str, Any]:
        graph = self._graph

        def text(predicate) -> Optional[str]:
            value = graph.value(uri, predicate)
            return str(value) if value is not None else None

        return {
            "id": text(FLOW.id),
            "kind": text(FLOW.timerKind),
            "status": text(FLOW.timerStatus) or TIMER_SCHEDULED,
            "due_at": text(FLOW.dueAt),
            "target": text(FLOW.target),
            "token_id": text(FLOW.forToken),
            "params": json.loads(text(FLOW.params) or "null"),
            "priority": int(text(FLOW.priority) or 0),
            "claimed_by": text(FLOW.claimedBy),
            "lease_until": text(FLOW.leaseUntil),
            "last_error": text(FLOW.lastError),
        }

    # ==================== Business Objects ====================

    def save_object(self, object_id: str, data: Dict[str, Any]) -> None:
        """
        Store a business object referenced by parameter values.

        Raises:
            EngineError: If the object cannot be serialized
        """
        payload = _to_json(data, f"object '{object_id}'")
        uri = OBJ[object_id]
        with self._lock:
            self._objects.remove((uri, None, None))
            self._objects.add((uri, RDF.type, FLOW.BusinessObject))
            self._objects.add((uri, FLOW.id, Literal(object_id)))
            self._objects.add((uri, FLOW.data, Literal(payload)))
        logger.debug(f"Saved business object {object_id}")

    def load_object(self, object_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            payload = self._objects.value(OBJ[object_id], FLOW.data)
        if payload is None:
            return None
        return json.loads(str(payload))

    def delete_object(self, object_id: str) -> bool:
        uri = OBJ[object_id]
        with self._lock:
            if (uri, RDF.type, FLOW.BusinessObject) not in self._objects:
                return False
            self._objects.remove((uri, None, None))
        return True
