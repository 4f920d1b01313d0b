# Process Facade for TokenFlow Engine
# Public API to create, start, advance, resume and cancel tokens

import heapq
import itertools
import logging
import threading
import uuid
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from tokenflow.core.errors import EngineError, ParamTypeError, TokenBusyError, TokenFlowError
from tokenflow.core.process import PortDirection, ProcessDefinition
from tokenflow.core.qualifier import as_qualifier
from tokenflow.config import DEFAULT_TIMER_LEASE_SECONDS, EngineSettings

from .engine import ExecutionEngine, StepOutcome
from .token_context import (
    TIMER_FAILED,
    TIMER_FIRED,
    TIMER_RESUME,
    TIMER_START,
    WAIT_SUSPENDED,
    Cursor,
    TokenContext,
    TokenState,
    port_param_key,
)
from .token_handler import change_state

logger = logging.getLogger(__name__)


class ReadyQueue:
    """Thread-safe queue of token ids ordered by priority, then arrival."""

    def __init__(self):
        self._heap = []
        self._queued: Set[str] = set()
        self._counter = itertools.count()
        self._lock = threading.Lock()

    def put(self, token_id: str, priority: int = 0) -> bool:
        with self._lock:
            if token_id in self._queued:
                return False
            self._queued.add(token_id)
            heapq.heappush(self._heap, (-priority, next(self._counter), token_id))
            return True

    def pop(self) -> Optional[str]:
        with self._lock:
            if not self._heap:
                return None
            _, _, token_id = heapq.heappop(self._heap)
            self._queued.discard(token_id)
            return token_id

    def drain(self) -> List[str]:
        token_ids = []
        while True:
            token_id = self.pop()
            if token_id is None:
                return token_ids
            token_ids.append(token_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._heap)


class ProcessFacade:
    """
    Entry point for running processes.

    Every operation that moves a token holds that token's exclusive lock,
    so two threads never advance the same token at once while different
    tokens progress in parallel. Each ``advance_until_blocked`` runs inside
    a persistence transaction of the token repository.

    Example:
        facade = ProcessFacade(processes, registry, tokens)
        token = facade.create_token()
        facade.start_token(token, "/Demo/LoopSum", {"Collection": [1, 2, 3]})
        facade.retrieve_output_parameters(token)  # {"Total": 6}
    """

    def __init__(
        self,
        process_repository,
        handler_registry,
        token_repository,
        evaluator=None,
        event_bus=None,
        settings: Optional[EngineSettings] = None,
    ):
        """
        Initialize the process facade.

        Args:
            process_repository: Source of process definitions
            handler_registry: Registry of activity handlers
            token_repository: Repository of tokens (live cache + RDF)
            evaluator: Decision expression evaluator
            event_bus: Trace event bus shared with the engine
            settings: Engine settings (defaults apply when omitted)
        """
        self.settings = settings or EngineSettings()
        self.processes = process_repository
        self.handlers = handler_registry
        self.tokens = token_repository
        self.engine = ExecutionEngine(
            process_repository,
            handler_registry,
            token_repository,
            evaluator=evaluator,
            event_bus=event_bus,
            max_call_depth=self.settings.max_call_depth,
            max_steps=self.settings.max_steps,
        )
        self.ready_queue = ReadyQueue()
        self._running: Set[str] = set()
        self._running_lock = threading.Lock()

    @property
    def event_bus(self):
        return self.engine.event_bus

    # ==================== Token Lifecycle ====================

    def create_token(self, priority: int = 0, debugger_id: Optional[str] = None) -> TokenContext:
        """Create a NEW token with an empty parameter map."""
        token = TokenContext(priority=priority, debugger_id=debugger_id)
        self.tokens.save_token(token)
        logger.debug(f"Created token {token.id}")
        return token

    def start_token(
        self,
        token: TokenContext,
        entry_qualifier,
        input_params: Optional[Dict[str, Any]] = None,
        advance: bool = True,
    ) -> TokenState:
        """
        Position a NEW token at a start step and run it.

        Args:
            token: A token in state NEW
            entry_qualifier: ``/model/Process[.StartStep[.Port]]``
            input_params: Values for the parameters of the entry port
            advance: Run until blocked (True) or only enqueue the token

        Returns:
            The state of the token afterwards

        Raises:
            QualifierParseError: If the qualifier is malformed
            ModelError: If the process, step or port does not exist
            ConfigurationError: If a handler of the process is not registered
            EngineError: On unknown input parameters or a token not in NEW
        """
        qualifier = as_qualifier(entry_qualifier)
        with self.tokens.lock_for(token.id):
            if token.state is not TokenState.NEW:
                raise EngineError(
                    "InvalidStateTransition",
                    f"Token {token.id} was already started ({token.state.value})",
                )
            definition = self.processes.load_process(qualifier)
            self.engine.validate_handlers(definition)

            segments = qualifier.object_path_segments
            if segments:
                start_step = definition.get_step(segments[0])
            else:
                start_step = definition.default_start_step()
            port = definition.resolve_port(
                start_step.name, segments[1] if len(segments) > 1 else None, PortDirection.ENTRY
            )

            with self.tokens.transaction(token):
                self._bind_inputs(token, definition, start_step.name, port, input_params)
                token.process = str(definition.qualifier)
                token.cursor = Cursor(start_step.name, port.name)
                change_state(self.event_bus, token, TokenState.RUNNING)

        logger.info(f"Started token {token.id} at {definition.qualifier}.{start_step.name}")
        if advance:
            return self.advance_until_blocked(token)
        self.enqueue(token)
        return token.state

    def resume_token(
        self,
        token: TokenContext,
        port: Optional[str] = None,
        input_params: Optional[Dict[str, Any]] = None,
        advance: bool = True,
    ) -> TokenState:
        """
        Continue a suspended token at an entry port of its current step.

        Args:
            token: A token WAITING after a suspension
            port: Entry port to resume at (default: the port it waits at)
            input_params: Values for the parameters of that port
            advance: Run until blocked (True) or only enqueue the token

        Raises:
            EngineError: If the token is not suspended or a parameter is unknown
        """
        with self.tokens.lock_for(token.id):
            if token.state is not TokenState.WAITING or token.wait_reason != WAIT_SUSPENDED:
                raise EngineError(
                    "TokenNotSuspended",
                    f"Token {token.id} is {token.state.value} and cannot be resumed",
                )
            definition = self.processes.load_process(token.process)
            entry = definition.resolve_port(
                token.cursor.step, port or token.cursor.port, PortDirection.ENTRY
            )
            with self.tokens.transaction(token):
                # Values already on the port are kept unless new ones are given
                if input_params is not None:
                    self._bind_inputs(token, definition, token.cursor.step, entry, input_params)
                token.cursor = Cursor(token.cursor.step, entry.name)
                change_state(self.event_bus, token, TokenState.RUNNING)
            self.tokens.cancel_timer_jobs(token.id)

        logger.info(f"Resumed token {token.id} at {token.cursor}")
        if advance:
            return self.advance_until_blocked(token)
        self.enqueue(token)
        return token.state

    def cancel_token(self, token: TokenContext, reason: str = "") -> TokenState:
        """
        Cancel a NEW or WAITING token and its waiting children.

        Raises:
            TokenBusyError: If the token is RUNNING
            EngineError: If the token already terminated
        """
        lock = self.tokens.lock_for(token.id)
        if self._is_running(token.id) or not lock.acquire(blocking=False):
            raise TokenBusyError(message=f"Token {token.id} is being advanced")
        try:
            if token.state is TokenState.RUNNING:
                raise TokenBusyError(message=f"Token {token.id} is RUNNING")
            change_state(self.event_bus, token, TokenState.CANCELLED)
            token.record_failure(
                {
                    "code": "Cancelled",
                    "message": reason or "Cancelled",
                    "error_type": "Cancellation",
                }
            )
            self.tokens.save_token(token)
            self.tokens.cancel_timer_jobs(token.id)
            children = list(token.child_ids)
        finally:
            lock.release()

        logger.info(f"Cancelled token {token.id}: {reason or 'no reason given'}")
        child_reason = f"Parent {token.id} cancelled"
        for child_id in children:
            child = self.tokens.load_token(child_id)
            if child is None or child.is_terminal:
                continue
            if child.state is TokenState.RUNNING:
                self._cancel_queued_branch(child, child_reason)
                continue
            try:
                self.cancel_token(child, reason=child_reason)
            except TokenBusyError:
                logger.warning(f"Child token {child_id} is busy and was not cancelled")

        for ready_id in self.engine.token_handler.on_token_finished(token):
            self._enqueue_id(ready_id)
        return token.state

    def _cancel_queued_branch(self, child: TokenContext, reason: str) -> None:
        """
        Cancel a RUNNING branch token that no worker holds right now.

        A branch held by a worker is left alone; it is cancelled when it
        reaches the join or is next picked up.
        """
        lock = self.tokens.lock_for(child.id)
        if self._is_running(child.id) or not lock.acquire(blocking=False):
            logger.info(f"Branch token {child.id} is busy; it ends at its next pickup or join")
            return
        try:
            self.engine.token_handler.cancel_branch(child, reason)
        finally:
            lock.release()

    # ==================== Stepping ====================

    def step(self, token: TokenContext) -> StepOutcome:
        """
        Execute one step (plus auto-continued structural steps).

        Tokens made ready by the step are put on the ready queue.
        """
        with self.tokens.lock_for(token.id):
            if token.state is not TokenState.RUNNING:
                raise EngineError(
                    "TokenNotRunning", f"Token {token.id} is {token.state.value}, not RUNNING"
                )
            if self._end_orphaned_branch(token):
                return StepOutcome(token_id=token.id, state=token.state)
            outcome, ready = self._transact(token, self.engine.step)
        if outcome is None:
            outcome = StepOutcome(token_id=token.id, state=token.state, ready=ready)
        for ready_id in outcome.ready:
            self._enqueue_id(ready_id)
        return outcome

    def advance_until_blocked(self, token: TokenContext) -> TokenState:
        """
        Step a token until it is WAITING, COMPLETED, FAILED or CANCELLED.

        Branch tokens spawned on the way, and parents resumed by a join, are
        advanced in this thread as well.

        Returns:
            The state of ``token`` afterwards
        """
        self._drive([token.id])
        return token.state

    def _drive(self, token_ids: Iterable[str]) -> int:
        pending = deque(token_ids)
        advanced = 0
        while pending:
            token_id = pending.popleft()
            token = self.tokens.load_token(token_id)
            if token is None:
                logger.warning(f"Skipping unknown token {token_id}")
                continue
            ready = self._advance_one(token)
            if ready is None:
                continue
            advanced += 1
            pending.extend(ready)
        return advanced

    def _advance_one(self, token: TokenContext) -> Optional[List[str]]:
        with self.tokens.lock_for(token.id):
            if token.state is not TokenState.RUNNING:
                return None
            if self._end_orphaned_branch(token):
                return []
            result, ready = self._transact(token, self.engine.run)
            if result is not None:
                ready = result.ready
            if (
                token.state is TokenState.WAITING
                and self.engine.token_handler.parent_terminated(token)
            ):
                self.cancel_token(token, reason=f"Parent {token.parent_id} terminated")
        return ready

    def _transact(
        self, token: TokenContext, action: Callable[[TokenContext], Any]
    ) -> Tuple[Any, List[str]]:
        """
        Run ``action(token)`` inside a persistence transaction.

        An EngineError escaping the transaction (e.g. a value that cannot be
        persisted) has rolled the token back; the token then fails at the
        position it had before.

        Returns:
            The action's result and no ready ids, or None and the ids made
            ready by the failure
        """
        self._mark_running(token.id)
        try:
            with self.tokens.transaction(token):
                return action(token), []
        except EngineError as e:
            return None, self._fail_after_rollback(token, e)
        finally:
            self._unmark_running(token.id)

    def _fail_after_rollback(self, token: TokenContext, error: EngineError) -> List[str]:
        self.engine.error_handler.fail_token(token, None, error)
        self.tokens.cancel_timer_jobs(token.id)
        self.tokens.save_token(token)
        return self.engine.token_handler.on_token_finished(token)

    def _end_orphaned_branch(self, token: TokenContext) -> bool:
        """Cancel a branch token whose parent terminated while it was queued."""
        if not self.engine.token_handler.parent_terminated(token):
            return False
        self.engine.token_handler.cancel_branch(
            token, f"Parent {token.parent_id} terminated"
        )
        return True

    def _mark_running(self, token_id: str) -> None:
        with self._running_lock:
            self._running.add(token_id)

    def _unmark_running(self, token_id: str) -> None:
        with self._running_lock:
            self._running.discard(token_id)

    def _is_running(self, token_id: str) -> bool:
        with self._running_lock:
            return token_id in self._running

    # ==================== Ready Queue ====================

    def enqueue(self, token: TokenContext) -> bool:
        """Put a token on the ready queue."""
        return self.ready_queue.put(token.id, token.priority)

    def _enqueue_id(self, token_id: str) -> None:
        token = self.tokens.load_token(token_id)
        if token is not None:
            self.enqueue(token)

    def execute_pending_in_this_thread(self) -> int:
        """
        Advance every queued token in the calling thread.

        Returns:
            Number of tokens advanced
        """
        advanced = 0
        while len(self.ready_queue):
            advanced += self._drive(self.ready_queue.drain())
        return advanced

    def execute_pending(self, max_workers: Optional[int] = None) -> int:
        """
        Advance every queued token on a thread pool.

        Args:
            max_workers: Pool size (default: the configured worker count)

        Returns:
            Number of tokens advanced
        """
        advanced = 0
        workers = max_workers or self.settings.workers
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="tokenflow") as pool:
            while len(self.ready_queue):
                futures = [pool.submit(self._drive, [tid]) for tid in self.ready_queue.drain()]
                advanced += sum(future.result() for future in futures)
        return advanced

    def reset_executing_tokens(self) -> int:
        """
        Put tokens left RUNNING (e.g. by a crash) back on the ready queue.

        Returns:
            Number of tokens requeued
        """
        count = 0
        for token in self.tokens.list_tokens(TokenState.RUNNING):
            if self._is_running(token.id):
                continue
            if self.enqueue(token):
                count += 1
        if count:
            logger.warning(f"Requeued {count} token(s) left RUNNING")
        return count

    # ==================== Timers ====================

    def schedule_resume(
        self,
        token: TokenContext,
        due_at: datetime,
        port: Optional[str] = None,
        input_params: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Resume a suspended token once ``due_at`` has passed.

        Args:
            token: A token WAITING after a suspension
            due_at: When the token resumes
            port: Entry port to resume at (default: the port it waits at)
            input_params: Values for that port (None keeps the current ones)

        Returns:
            The timer job id

        Raises:
            EngineError: If the token is not suspended or the values cannot be persisted
        """
        if token.state is not TokenState.WAITING or token.wait_reason != WAIT_SUSPENDED:
            raise EngineError(
                "TokenNotSuspended",
                f"Token {token.id} is {token.state.value} and cannot be resumed",
            )
        job_id = self.tokens.schedule_timer_job(
            TIMER_RESUME,
            due_at,
            port or token.cursor.port,
            token_id=token.id,
            params=input_params,
            priority=token.priority,
        )
        logger.info(f"Token {token.id} resumes at {due_at.isoformat()} (job {job_id})")
        return job_id

    def schedule_start(
        self,
        entry_qualifier,
        due_at: datetime,
        input_params: Optional[Dict[str, Any]] = None,
        priority: int = 0,
    ) -> str:
        """
        Start a new token at a process entry once ``due_at`` has passed.

        The process and its handlers are checked now; the token is created
        when the job fires.

        Returns:
            The timer job id
        """
        qualifier = as_qualifier(entry_qualifier)
        definition = self.validate_handlers(qualifier)
        job_id = self.tokens.schedule_timer_job(
            TIMER_START,
            due_at,
            qualifier.to_string(typed=True),
            params=input_params,
            priority=priority,
        )
        logger.info(
            f"Scheduled start of {definition.qualifier} at {due_at.isoformat()} (job {job_id})"
        )
        return job_id

    def run_due_timers(
        self,
        now: Optional[datetime] = None,
        worker_id: Optional[str] = None,
        lease_seconds: float = DEFAULT_TIMER_LEASE_SECONDS,
    ) -> Dict[str, Any]:
        """
        Fire due timer jobs: resume their tokens or start new ones.

        Jobs are claimed with a lease first, so workers sharing the tokens
        graph never fire the same job twice; the claim of a worker that died
        is taken over once its lease has run out.

        Returns:
            Counts of claimed, fired and failed jobs, and the ids of the
            tokens that were started or resumed
        """
        now = now or datetime.now()
        worker_id = worker_id or f"worker-{str(uuid.uuid4())[:8]}"
        summary: Dict[str, Any] = {"claimed": 0, "fired": 0, "failed": 0, "token_ids": []}

        jobs = self.tokens.claim_due_timer_jobs(now, worker_id, lease_seconds)
        summary["claimed"] = len(jobs)
        for job in jobs:
            try:
                token = self._fire_timer_job(job)
            except TokenFlowError as e:
                logger.warning(f"Timer job {job['id']} ({job['kind']} {job['target']}) failed: {e}")
                self.tokens.finalize_timer_job(job["id"], worker_id, TIMER_FAILED, str(e))
                summary["failed"] += 1
                continue
            if self.tokens.finalize_timer_job(job["id"], worker_id, TIMER_FIRED):
                summary["fired"] += 1
                summary["token_ids"].append(token.id)

        if jobs:
            logger.info(
                f"Timers: {summary['fired']} fired, {summary['failed']} failed "
                f"(worker {worker_id})"
            )
        return summary

    def _fire_timer_job(self, job: Dict[str, Any]) -> TokenContext:
        if job["kind"] == TIMER_START:
            token = self.create_token(priority=job["priority"])
            try:
                self.start_token(token, job["target"], job["params"])
            except TokenFlowError:
                self.tokens.delete_token(token.id)
                raise
            return token

        token = self.get_token(job["token_id"] or "")
        self.resume_token(token, port=job["target"], input_params=job["params"])
        return token

    # ==================== Queries ====================

    def get_token(self, token_id: str) -> TokenContext:
        """
        Raises:
            EngineError: If the token does not exist
        """
        token = self.tokens.load_token(token_id)
        if token is None:
            raise EngineError("TokenNotFound", f"Token not found: {token_id}")
        return token

    def list_tokens(self, state: Optional[TokenState] = None) -> List[TokenContext]:
        return self.tokens.list_tokens(state)

    def retrieve_output_parameters(
        self, token: TokenContext, target: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Read the output parameters of a terminated token.

        The outputs are the values on the port the token ended at, i.e. the
        entry port of its end step.

        Args:
            token: A COMPLETED, FAILED or CANCELLED token
            target: Map to fill in place (a new dict if omitted)

        Returns:
            The filled map

        Raises:
            EngineError: If the token has not terminated
        """
        if not token.is_terminal:
            raise EngineError(
                "TokenNotCompleted",
                f"Token {token.id} is {token.state.value}; outputs are not available yet",
            )
        if target is None:
            target = {}
        if token.cursor is not None and token.cursor.port:
            target.update(token.port_values(token.cursor.step, token.cursor.port))
        return target

    def validate_handlers(self, qualifier) -> ProcessDefinition:
        """Load a process and check that all of its handlers are registered."""
        definition = self.processes.load_process(qualifier)
        self.engine.validate_handlers(definition)
        return definition

    # ==================== Helpers ====================

    def _bind_inputs(
        self,
        token: TokenContext,
        definition: ProcessDefinition,
        step_name: str,
        port,
        input_params: Optional[Dict[str, Any]],
    ) -> None:
        values = input_params or {}
        for name, value in values.items():
            param = port.get_param(name)
            if param is None:
                raise EngineError(
                    "UnknownParameter",
                    f"Entry port {definition.qualifier}.{step_name}.{port.name} "
                    f"has no parameter '{name}'",
                )
            if not param.accepts(value):
                raise ParamTypeError(
                    message=f"Parameter {step_name}.{port.name}.{name} expects "
                    f"{param.param_type}, got {type(value).__name__}"
                )
        missing = [p.name for p in port.params if p.required and p.name not in values]
        if missing:
            raise EngineError(
                "MissingParameter",
                f"Entry port {definition.qualifier}.{step_name}.{port.name} requires "
                f"{', '.join(missing)}",
            )

        token.clear_port(step_name, port.name)
        for name, value in values.items():
            token.set_param(port_param_key(step_name, port.name, name), value)
