# Token Handler for TokenFlow Engine
# Moves tokens along control links, spawns branches and joins them again

import logging
from typing import List, Optional

from tokenflow.core.errors import EngineError
from tokenflow.core.process import Port, ProcessDefinition, Step
from tokenflow.core.qualifier import OBJECT_DELIMITER, join_path

from tokenflow.api.events.event_bus import ExecutionEventBus
from tokenflow.api.events.execution_events import (
    TokenSpawnedEvent,
    TokenStateChangedEvent,
)
from .token_context import (
    WAIT_CHILDREN,
    Cursor,
    TokenContext,
    TokenState,
    port_param_key,
)

logger = logging.getLogger(__name__)


def change_state(
    bus: Optional[ExecutionEventBus], token: TokenContext, new_state: TokenState
) -> None:
    """Transition a token and publish the change."""
    old_state = token.transition(new_state)
    if new_state.is_terminal:
        logger.info(f"Token {token.id} {new_state.value.lower()} in {token.process}")
    if bus is not None:
        bus.publish(
            TokenStateChangedEvent(
                token_id=token.id,
                old_state=old_state.value,
                new_state=new_state.value,
                process=token.process,
            )
        )


class TokenHandler:
    """
    Handles token movement and flow control.

    Responsibilities:
    - Moving a token along the control link of an exit port
    - Transferring parameter values to the destination entry port
    - Spawning one child token per target of a fan-out exit port
    - Collecting children at join steps and resuming their parent
    - Settling a parent once all of its children have terminated
    """

    def __init__(self, token_repository, event_bus: Optional[ExecutionEventBus] = None):
        """
        Initialize the token handler.

        Args:
            token_repository: Repository holding live tokens and their locks
            event_bus: Bus receiving state change and spawn events
        """
        self._tokens = token_repository
        self._bus = event_bus

    # ==================== Movement ====================

    def follow(
        self,
        token: TokenContext,
        definition: ProcessDefinition,
        step: Step,
        exit_port: Port,
    ) -> List[str]:
        """
        Leave ``step`` through ``exit_port``.

        With one target the token moves; with several the token waits for
        one child per target. An exit port without targets ends the token
        there.

        Returns:
            Ids of tokens that are ready to be advanced (spawned children and
            parents resumed by a join)
        """
        targets = exit_port.targets
        if not targets:
            token.cursor = Cursor(step.name, exit_port.name)
            change_state(self._bus, token, TokenState.COMPLETED)
            return self.on_token_finished(token)

        if len(targets) == 1:
            return self.move(token, definition, step, exit_port, targets[0])

        return self.fan_out(token, definition, step, exit_port)

    def move(
        self,
        token: TokenContext,
        definition: ProcessDefinition,
        step: Step,
        exit_port: Port,
        target: str,
    ) -> List[str]:
        """Move a token to one ``Step.Port`` target."""
        destination, entry_port = definition.resolve_reference(target)
        self.transfer(token, definition, step, exit_port, destination, entry_port)
        token.cursor = Cursor(destination.name, entry_port.name)
        token.touch()
        logger.debug(
            f"Token {token.id}: {step.name}.{exit_port.name} -> {destination.name}.{entry_port.name}"
        )

        if destination.join and token.parent_id:
            return self.arrive_at_join(token, definition, destination, entry_port)
        return []

    def transfer(
        self,
        token: TokenContext,
        definition: ProcessDefinition,
        step: Step,
        exit_port: Port,
        destination: Step,
        entry_port: Port,
    ) -> None:
        """
        Fill the parameters of an entry port.

        Data links into the port are applied first; declared parameters they
        left unset are then copied by name from the exit port.
        """
        token.clear_port(destination.name, entry_port.name)
        assigned = set()

        for link in definition.data_links_into(destination.name, entry_port.name):
            if not token.has_param(link.source):
                continue
            token.set_param(link.target, token.get_param(link.source))
            assigned.add(link.target.rsplit(OBJECT_DELIMITER, 1)[-1])

        values = token.port_values(step.name, exit_port.name)
        for param in entry_port.params:
            if param.name in assigned or param.name not in values:
                continue
            token.set_param(
                port_param_key(destination.name, entry_port.name, param.name),
                values[param.name],
            )

    # ==================== Fan-out ====================

    def fan_out(
        self,
        token: TokenContext,
        definition: ProcessDefinition,
        step: Step,
        exit_port: Port,
    ) -> List[str]:
        """Put ``token`` into WAITING and spawn one child per target of the exit port."""
        change_state(self._bus, token, TokenState.WAITING)
        token.wait_reason = WAIT_CHILDREN
        token.cursor = Cursor(step.name, exit_port.name)

        ready = []
        for target in exit_port.targets:
            child = TokenContext(
                process=token.process,
                params=dict(token.params),
                variables=dict(token.variables),
                call_stack=list(token.call_stack),
                debugger_id=token.debugger_id,
                parent_id=token.id,
                priority=token.priority,
            )
            child.transition(TokenState.RUNNING)
            token.child_ids.append(child.id)
            self._tokens.save_token(child)
            logger.debug(f"Token {token.id} spawned {child.id} for {target}")
            if self._bus is not None:
                self._bus.publish(
                    TokenSpawnedEvent(
                        token_id=child.id,
                        parent_id=token.id,
                        process=token.process,
                        target=target,
                    )
                )

            with self._tokens.lock_for(child.id):
                ready.extend(self.move(child, definition, step, exit_port, target))
                self._tokens.save_token(child)
            if child.state is TokenState.RUNNING:
                ready.append(child.id)

        self._tokens.save_token(token)
        return ready

    # ==================== Join ====================

    def arrive_at_join(
        self,
        child: TokenContext,
        definition: ProcessDefinition,
        step: Step,
        entry_port: Port,
    ) -> List[str]:
        """
        Record the arrival of a branch at a join step.

        The branch ends here and its values are merged into the parent. Once
        every incoming link of the entry port has delivered a branch, the
        parent resumes at the join step.
        """
        parent = self._load_parent(child)
        key = join_path(step.name, entry_port.name)

        with self._tokens.lock_for(parent.id):
            if parent.is_terminal:
                self.cancel_branch(child, f"Parent {parent.id} is {parent.state.value}")
                return []
            arrivals = parent.join_arrivals.setdefault(key, [])
            if child.id not in arrivals:
                arrivals.append(child.id)
            parent.params.update(child.params)
            parent.variables.update(child.variables)

            change_state(self._bus, child, TokenState.COMPLETED)

            expected = len(definition.incoming_links(step.name, entry_port.name))
            logger.debug(
                f"Join {key} of token {parent.id}: {len(arrivals)}/{expected} arrived"
            )
            if len(arrivals) >= expected:
                self._release_join(parent, key)
                self._tokens.save_token(parent)
                return [parent.id]

            ready = self._settle(parent)
            self._tokens.save_token(parent)
            return ready

    def _release_join(self, parent: TokenContext, key: str) -> None:
        parent.join_arrivals.pop(key, None)
        step_name, _, port_name = key.partition(OBJECT_DELIMITER)
        parent.cursor = Cursor(step_name, port_name)
        change_state(self._bus, parent, TokenState.RUNNING)
        logger.info(f"Token {parent.id} resumes at join {key}")

    # ==================== Termination ====================

    def cancel_branch(self, child: TokenContext, reason: str) -> None:
        """End a branch token whose parent no longer waits for it."""
        if child.is_terminal:
            return
        change_state(self._bus, child, TokenState.CANCELLED)
        child.record_failure(
            {"code": "Cancelled", "message": reason, "error_type": "Cancellation"}
        )
        self._tokens.save_token(child)
        logger.info(f"Cancelled branch token {child.id}: {reason}")

    def parent_terminated(self, token: TokenContext) -> bool:
        """Whether the parent of a branch token has already terminated."""
        if not token.parent_id:
            return False
        parent = self._tokens.load_token(token.parent_id)
        return parent is not None and parent.is_terminal

    def on_token_finished(self, token: TokenContext) -> List[str]:
        """
        Let the parent of a terminated token react to it.

        Returns:
            Ids of tokens that became ready as a result
        """
        if not token.parent_id:
            return []
        parent = self._load_parent(token)
        with self._tokens.lock_for(parent.id):
            ready = self._settle(parent)
            self._tokens.save_token(parent)
        return ready

    def _settle(self, parent: TokenContext) -> List[str]:
        """Complete, fail or resume a parent whose children have all terminated."""
        if parent.state is not TokenState.WAITING or parent.wait_reason != WAIT_CHILDREN:
            return []

        children = [self._tokens.load_token(child_id) for child_id in parent.child_ids]
        if any(child is not None and not child.is_terminal for child in children):
            return []

        if parent.join_arrivals:
            # Some expected branches never reached the join
            key = sorted(parent.join_arrivals)[0]
            logger.warning(
                f"Token {parent.id}: releasing join {key} after all branches ended"
            )
            self._release_join(parent, key)
            return [parent.id]

        failed = [c.id for c in children if c is not None and c.state is TokenState.FAILED]
        if failed:
            parent.record_failure(
                {
                    "code": "ChildFailed",
                    "message": f"Branch token(s) failed: {', '.join(failed)}",
                    "error_type": "EngineError",
                    "children": failed,
                }
            )
            logger.error(f"Token {parent.id} failed: branch token(s) {failed} failed")
            change_state(self._bus, parent, TokenState.FAILED)
        else:
            completed = [c for c in children if c is not None and c.state is TokenState.COMPLETED]
            for child in completed:
                parent.params.update(child.params)
                parent.variables.update(child.variables)
            if completed:
                parent.cursor = completed[-1].cursor
            change_state(self._bus, parent, TokenState.RUNNING)
            change_state(self._bus, parent, TokenState.COMPLETED)

        return self.on_token_finished(parent)

    def _load_parent(self, token: TokenContext) -> TokenContext:
        parent = self._tokens.load_token(token.parent_id)
        if parent is None:
            raise EngineError(
                "TokenNotFound",
                f"Parent {token.parent_id} of token {token.id} does not exist",
            )
        return parent
