# Tests for the Process Facade
# Token lifecycle, suspension, branching and concurrent execution

import threading
import time
from contextlib import contextmanager

import pytest

from tokenflow.core.errors import EngineError, ModelError, ParamTypeError, TokenBusyError
from tokenflow.core.process import PortDirection
from tokenflow.api.execution.scheduler import ReadyQueue
from tokenflow.api.execution.token_context import (
    WAIT_CHILDREN,
    WAIT_SUSPENDED,
    Cursor,
    TokenState,
)


def split_parent(facade):
    """A Split token waiting for its two queued branches."""
    token = facade.create_token()
    facade.start_token(token, "/Demo/Split", {"N": 3}, advance=False)
    facade.ready_queue.drain()
    facade.step(token)
    return token


@contextmanager
def hold_lock(facade, token_id):
    """Hold the lock of a token in another thread, as a busy worker would."""
    held = threading.Event()
    release = threading.Event()

    def hold():
        with facade.tokens.lock_for(token_id):
            held.set()
            release.wait(5)

    thread = threading.Thread(target=hold)
    thread.start()
    held.wait(5)
    try:
        yield
    finally:
        release.set()
        thread.join()


class TestStartToken:
    """Tests for starting tokens."""

    def test_start_binds_entry_params(self, facade):
        token = facade.create_token()
        facade.start_token(token, "/Demo/Approval", {"Amount": 10})
        assert token.process == "/Demo/Approval"
        assert token.get_param("Hold.In.Amount") == 10

    def test_missing_required_param(self, facade):
        token = facade.create_token()
        with pytest.raises(EngineError) as excinfo:
            facade.start_token(token, "/Demo/Approval", {})
        assert excinfo.value.code == "MissingParameter"
        assert token.state == TokenState.NEW

    def test_unknown_param(self, facade):
        token = facade.create_token()
        with pytest.raises(EngineError) as excinfo:
            facade.start_token(token, "/Demo/Approval", {"Amount": 1, "Currency": "EUR"})
        assert excinfo.value.code == "UnknownParameter"

    def test_param_type_mismatch(self, facade):
        token = facade.create_token()
        with pytest.raises(ParamTypeError):
            facade.start_token(token, "/Demo/Approval", {"Amount": "lots"})

    def test_unknown_process(self, facade):
        token = facade.create_token()
        with pytest.raises(ModelError) as excinfo:
            facade.start_token(token, "/Demo/Nowhere")
        assert excinfo.value.code == "ProcessNotFound"

    def test_unregistered_handler_rejected_up_front(self, facade):
        token = facade.create_token()
        with pytest.raises(EngineError) as excinfo:
            facade.start_token(token, "/Demo/Guarded", {"Value": 1})
        assert excinfo.value.code == "HandlerNotFound"
        assert token.state == TokenState.NEW

    def test_start_twice(self, facade):
        token = facade.create_token()
        facade.start_token(token, "/Demo/LoopSum", {"Collection": [1]})
        with pytest.raises(EngineError) as excinfo:
            facade.start_token(token, "/Demo/LoopSum", {"Collection": [1]})
        assert excinfo.value.code == "InvalidStateTransition"

    def test_outputs_only_after_termination(self, facade):
        token = facade.create_token()
        facade.start_token(token, "/Demo/Approval", {"Amount": 5})
        with pytest.raises(EngineError) as excinfo:
            facade.retrieve_output_parameters(token)
        assert excinfo.value.code == "TokenNotCompleted"

    def test_outputs_fill_given_map(self, facade):
        token = facade.create_token()
        facade.start_token(token, "/Demo/LoopSum", {"Collection": [2, 2]})
        target = {"Existing": True}
        assert facade.retrieve_output_parameters(token, target) is target
        assert target == {"Existing": True, "Total": 4}

    def test_get_unknown_token(self, facade):
        with pytest.raises(EngineError) as excinfo:
            facade.get_token("does-not-exist")
        assert excinfo.value.code == "TokenNotFound"


class TestWaitAndResume:
    """Tests for suspension and resumption."""

    def test_wait_step_suspends(self, facade):
        token = facade.create_token()

        state = facade.start_token(token, "/Demo/Approval", {"Amount": 150})

        assert state == TokenState.WAITING
        assert token.wait_reason == WAIT_SUSPENDED
        assert token.cursor.step == "Hold"

    def test_resume_keeps_values(self, facade):
        token = facade.create_token()
        facade.start_token(token, "/Demo/Approval", {"Amount": 150})

        facade.resume_token(token)

        assert token.state == TokenState.COMPLETED
        assert token.cursor.step == "Big"
        assert facade.retrieve_output_parameters(token) == {"Amount": 150}

    def test_resume_with_new_values(self, facade):
        token = facade.create_token()
        facade.start_token(token, "/Demo/Approval", {"Amount": 150})

        facade.resume_token(token, input_params={"Amount": 50})

        assert token.cursor.step == "Small"
        assert facade.retrieve_output_parameters(token) == {"Amount": 50}

    def test_handler_suspends_at_other_port(self, facade):
        def ask(context):
            if context.entry_port == "In":
                context.suspend("Reply")
                return True
            context.set_result("Result", context.get_param("Answer"))
            return True

        facade.handlers.register_handler("Work", ask)
        token = facade.create_token()

        facade.start_token(token, "/Demo/Single", {"Value": "question"})
        assert token.state == TokenState.WAITING
        assert token.cursor.port == "Reply"

        facade.resume_token(token, "Reply", {"Answer": 42})
        assert facade.retrieve_output_parameters(token) == {"Result": 42}

    def test_resume_running_token(self, facade):
        token = facade.create_token()
        facade.start_token(token, "/Demo/LoopSum", {"Collection": [1]}, advance=False)
        with pytest.raises(EngineError) as excinfo:
            facade.resume_token(token)
        assert excinfo.value.code == "TokenNotSuspended"


class TestBranching:
    """Tests for fan-out, joins and child termination."""

    def test_fan_out_and_join(self, facade):
        token = facade.create_token()

        state = facade.start_token(token, "/Demo/Split", {"N": 3})

        assert state == TokenState.COMPLETED
        assert facade.retrieve_output_parameters(token) == {"Sum": 10}
        assert len(token.child_ids) == 2
        children = [facade.get_token(child_id) for child_id in token.child_ids]
        assert all(child.state == TokenState.COMPLETED for child in children)
        assert all(child.parent_id == token.id for child in children)

    def test_parent_waits_for_children(self, facade):
        token = facade.create_token()
        facade.start_token(token, "/Demo/Split", {"N": 3}, advance=False)
        facade.ready_queue.drain()

        facade.step(token)

        assert token.state == TokenState.WAITING
        assert token.wait_reason == WAIT_CHILDREN
        assert len(facade.ready_queue) == 2

    def test_parallel_branches_complete_parent(self, facade):
        token = facade.create_token()

        facade.start_token(token, "/Demo/Parallel", {"N": 3})

        assert token.state == TokenState.COMPLETED
        assert token.get_param("EndA.In.A") == 4
        assert token.get_param("EndB.In.B") == 6

    def test_child_failure_fails_parent(self, facade):
        def add_one(context):
            raise ArithmeticError("overflow")

        facade.handlers.register_handler("AddOne", add_one)
        token = facade.create_token()

        facade.start_token(token, "/Demo/Parallel", {"N": 3})

        assert token.state == TokenState.FAILED
        assert token.failure["code"] == "ChildFailed"
        failed = facade.get_token(token.failure["children"][0])
        assert failed.failure["code"] == "ArithmeticError"

    def test_join_holds_first_arrival(self, facade):
        token = facade.create_token()
        facade.start_token(token, "/Demo/Split", {"N": 3}, advance=False)
        facade.ready_queue.drain()
        facade.step(token)
        facade.ready_queue.drain()
        first, second = [facade.get_token(child_id) for child_id in token.child_ids]

        facade.step(first)

        assert first.state == TokenState.COMPLETED
        assert first.cursor == Cursor("Merge", "In")
        assert token.join_arrivals == {"Merge.In": [first.id]}
        assert token.state == TokenState.WAITING

        facade.step(second)

        assert second.state == TokenState.COMPLETED
        assert token.state == TokenState.RUNNING
        assert token.cursor == Cursor("Merge", "In")
        assert token.join_arrivals == {}
        facade.advance_until_blocked(token)
        assert token.state == TokenState.COMPLETED
        assert facade.retrieve_output_parameters(token) == {"Sum": 10}


class TestCancel:
    """Tests for cancellation."""

    def test_cancel_waiting_token(self, facade):
        token = facade.create_token()
        facade.start_token(token, "/Demo/Approval", {"Amount": 1})

        state = facade.cancel_token(token, reason="customer withdrew")

        assert state == TokenState.CANCELLED
        assert token.failure["code"] == "Cancelled"
        assert token.failure["message"] == "customer withdrew"
        assert facade.retrieve_output_parameters(token) == {"Amount": 1}

    def test_cancel_new_token(self, facade):
        token = facade.create_token()
        assert facade.cancel_token(token) == TokenState.CANCELLED

    def test_cancel_running_token(self, facade):
        token = facade.create_token()
        facade.start_token(token, "/Demo/LoopSum", {"Collection": [1]}, advance=False)
        with pytest.raises(TokenBusyError):
            facade.cancel_token(token)
        assert token.state == TokenState.RUNNING

    def test_cancel_completed_token(self, facade):
        token = facade.create_token()
        facade.start_token(token, "/Demo/LoopSum", {"Collection": [1]})
        with pytest.raises(EngineError) as excinfo:
            facade.cancel_token(token)
        assert excinfo.value.code == "InvalidStateTransition"

    def test_cancel_parent_ends_queued_branches(self, facade):
        token = split_parent(facade)
        children = [facade.get_token(child_id) for child_id in token.child_ids]
        assert all(child.state == TokenState.RUNNING for child in children)

        facade.cancel_token(token, reason="stop")

        assert token.state == TokenState.CANCELLED
        for child in children:
            assert child.state == TokenState.CANCELLED
            assert child.failure["code"] == "Cancelled"
        assert facade.execute_pending_in_this_thread() == 0

    def test_busy_branch_ends_at_pickup(self, facade):
        token = split_parent(facade)
        first, second = [facade.get_token(child_id) for child_id in token.child_ids]

        with hold_lock(facade, second.id):
            facade.cancel_token(token)

        assert first.state == TokenState.CANCELLED
        assert second.state == TokenState.RUNNING

        facade.execute_pending_in_this_thread()

        assert second.state == TokenState.CANCELLED
        assert second.failure["message"] == f"Parent {token.id} terminated"

    def test_join_ignores_cancelled_parent(self, facade):
        token = split_parent(facade)
        first, second = [facade.get_token(child_id) for child_id in token.child_ids]
        with hold_lock(facade, second.id):
            facade.cancel_token(token)
        definition = facade.processes.load_process("/Demo/Split")
        merge = definition.get_step("Merge")
        port = definition.resolve_port("Merge", "In", PortDirection.ENTRY)

        ready = facade.engine.token_handler.arrive_at_join(second, definition, merge, port)

        assert ready == []
        assert second.state == TokenState.CANCELLED
        assert token.state == TokenState.CANCELLED
        assert token.join_arrivals == {}


class TestConcurrency:
    """Tests for the ready queue and thread pool execution."""

    def test_ready_queue_order(self):
        queue = ReadyQueue()
        queue.put("low", 0)
        queue.put("high", 5)
        queue.put("second-low", 0)
        assert not queue.put("high", 5)
        assert queue.drain() == ["high", "low", "second-low"]

    def test_execute_pending_distinct_tokens(self, facade):
        tokens = []
        for size in range(1, 6):
            token = facade.create_token()
            facade.start_token(token, "/Demo/LoopSum", {"Collection": list(range(size))}, advance=False)
            tokens.append(token)

        advanced = facade.execute_pending(max_workers=3)

        assert advanced == 5
        for size, token in enumerate(tokens, start=1):
            assert token.state == TokenState.COMPLETED
            assert facade.retrieve_output_parameters(token) == {"Total": sum(range(size))}

    def test_execute_pending_in_this_thread(self, facade):
        token = facade.create_token()
        facade.start_token(token, "/Demo/Split", {"N": 1}, advance=False)

        facade.execute_pending_in_this_thread()

        assert facade.retrieve_output_parameters(token) == {"Sum": 4}

    def test_same_token_is_never_advanced_twice_at_once(self, facade):
        active = []
        overlaps = []
        calls = []

        def slow(context):
            active.append(1)
            if len(active) > 1:
                overlaps.append(True)
            calls.append(context.token_id)
            time.sleep(0.05)
            active.pop()
            context.set_result("Result", "done")

        facade.handlers.register_handler("Work", slow)
        token = facade.create_token()
        facade.start_token(token, "/Demo/Single", {"Value": 1}, advance=False)

        threads = [
            threading.Thread(target=facade.advance_until_blocked, args=(token,))
            for _ in range(2)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert token.state == TokenState.COMPLETED
        assert calls == [token.id]
        assert overlaps == []

    def test_reset_executing_tokens(self, facade):
        token = facade.create_token()
        facade.start_token(token, "/Demo/LoopSum", {"Collection": [5]}, advance=False)
        facade.ready_queue.drain()

        assert facade.reset_executing_tokens() == 1
        facade.execute_pending_in_this_thread()

        assert token.state == TokenState.COMPLETED
