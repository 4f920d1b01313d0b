# Tests for Handler Context
# Staged writes, parameter lookup and handler results

import pytest

from tokenflow.core.errors import EngineError, ModelError, ParamTypeError, ProtocolError, StepFailure
from tokenflow.core.process import NO_VALUE, PortDirection
from tokenflow.api.execution.handler_context import HandlerContext, HandlerResult
from tokenflow.api.execution.token_context import TokenContext

from conftest import LOOP_SUM_TTL, SINGLE_TTL


@pytest.fixture
def single(processes):
    processes.deploy(SINGLE_TTL)
    return processes.load_process("/Demo/Single")


def make_context(definition, token=None, step="Work", port=None):
    token = token or TokenContext(process=str(definition.qualifier))
    entry = definition.resolve_port(step, port, PortDirection.ENTRY)
    return HandlerContext(token, definition, definition.get_step(step), entry), token


class TestHandlerResult:
    """Tests for HandlerResult coercion."""

    def test_coerce_true_and_none(self):
        assert HandlerResult.coerce(True) is HandlerResult.HANDLED
        assert HandlerResult.coerce(None) is HandlerResult.HANDLED

    def test_coerce_false(self):
        assert HandlerResult.coerce(False) is HandlerResult.NOT_HANDLED

    def test_coerce_rejects_other_values(self):
        with pytest.raises(EngineError) as excinfo:
            HandlerResult.coerce("done")
        assert excinfo.value.code == "InvalidHandlerResult"

    def test_failed_from_exception(self):
        result = HandlerResult.failed(ValueError("bad input"))
        assert result.is_failed
        assert result.error == StepFailure("ValueError", "bad input", "ValueError")

    def test_failed_from_message(self):
        assert HandlerResult.failed("nope").error.code == "StepFailed"


class TestHandlerContextReads:
    """Tests for reading parameters through the handler context."""

    def test_reads_entry_port_value(self, single):
        token = TokenContext()
        token.set_param("Work.In.Value", 5)
        context, _ = make_context(single, token)
        assert context.get_param("Value") == 5
        assert context.entry_port == "In"
        assert context.entry_values() == {"Value": 5}

    def test_missing_value(self, single):
        context, _ = make_context(single)
        assert context.get_param("Value") is NO_VALUE
        assert not context.has_param("Value")

    def test_step_param_default(self, single):
        context, _ = make_context(single)
        assert context.get_param("Visits") == 0
        assert context.get_step_param("Visits") == 0

    def test_param_names(self, single):
        context, _ = make_context(single)
        assert context.param_names() == ["Value", "Visits"]

    def test_require_step_param(self, processes):
        processes.deploy(LOOP_SUM_TTL)
        definition = processes.load_process("/Demo/LoopSum")
        context, _ = make_context(definition, step="Loop", port="Continue")
        with pytest.raises(ProtocolError) as excinfo:
            context.require_step_param("Cursor")
        assert excinfo.value.code == "MissingStepState"


class TestHandlerContextWrites:
    """Tests for staged writes and commit."""

    def test_writes_are_staged_until_commit(self, single):
        context, token = make_context(single)
        context.set_result("Result", 7)
        context.set_step_param("Visits", 1)
        context.set_variable("seen", True)
        assert token.params == {}
        assert context.get_step_param("Visits") == 1

        exit_port = context.commit()
        assert exit_port.name == "Out"
        assert token.params == {"Work.Out.Result": 7, "Work.Visits": 1}
        assert token.variables == {"seen": True}

    def test_commit_clears_stale_exit_values(self, single):
        token = TokenContext()
        token.set_param("Work.Out.Result", "old")
        context, _ = make_context(single, token)
        context.commit()
        assert not token.has_param("Work.Out.Result")

    def test_unknown_result_param(self, single):
        context, _ = make_context(single)
        with pytest.raises(EngineError) as excinfo:
            context.set_result("Nope", 1)
        assert excinfo.value.code == "UnknownParameter"

    def test_step_param_type_checked(self, single):
        context, _ = make_context(single)
        with pytest.raises(ParamTypeError):
            context.set_step_param("Visits", "many")

    def test_choose_unknown_exit_port(self, single):
        context, _ = make_context(single)
        with pytest.raises(ModelError) as excinfo:
            context.choose_exit_port("Sideways")
        assert excinfo.value.code == "PortNotFound"

    def test_remove_step_param(self, single):
        token = TokenContext()
        token.set_param("Work.Visits", 3)
        context, _ = make_context(single, token)
        context.remove_step_param("Visits")
        context.commit()
        assert not token.has_param("Work.Visits")

    def test_suspend_has_no_exit(self, single):
        context, token = make_context(single)
        context.suspend("Reply")
        assert context.suspend_port == "Reply"
        assert context.commit() is None

    def test_suspend_at_unknown_port(self, single):
        context, _ = make_context(single)
        with pytest.raises(ModelError):
            context.suspend("Nowhere")
