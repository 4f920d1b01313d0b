# Tests for Process Repository
# Deployment, caching and persistence of RDF process definitions

import tempfile

import pytest

from tokenflow.core.errors import ModelError
from tokenflow.core.process import StepKind
from tokenflow.core.qualifier import Qualifier
from tokenflow.api.storage.base import BaseStorageService
from tokenflow.api.storage.process_repository import ProcessRepository

from conftest import LOOP_SUM_TTL, PREFIXES, SPLIT_TTL, SUBPROCESS_TTL, TIMED_TTL


OTHER_MODEL_TTL = PREFIXES + """
proc:OtherLoopSum a flow:Process ;
    flow:model "Other" ;
    flow:name "LoopSum" ;
    flow:step proc:OtherLoopSum_Start .

proc:OtherLoopSum_Start flow:name "Start" ;
    flow:kind "start" ;
    flow:entryPort [ flow:name "In" ] ;
    flow:exitPort [ flow:name "Out" ] .
"""

BROKEN_LINK_TTL = PREFIXES + """
proc:Broken a flow:Process ;
    flow:model "Demo" ;
    flow:name "Broken" ;
    flow:step proc:Broken_Start .

proc:Broken_Start flow:name "Start" ;
    flow:kind "start" ;
    flow:entryPort [ flow:name "In" ] ;
    flow:exitPort [ flow:name "Out" ; flow:target "Ghost.In" ] .
"""


class TestDeploy:
    """Tests for deploying process documents."""

    def test_deploy_returns_qualifiers(self, processes):
        deployed = processes.deploy(SUBPROCESS_TTL)
        assert sorted(str(q) for q in deployed) == ["/Demo/Caller", "/Demo/Doubler"]

    def test_deploy_builds_steps(self, processes):
        processes.deploy(LOOP_SUM_TTL)
        definition = processes.load_process("/Demo/LoopSum")

        assert [step.name for step in definition.steps] == ["Start", "Loop", "Sum", "End"]
        loop = definition.get_step("Loop")
        assert loop.kind == StepKind.ACTIVITY
        assert loop.handler == "Iterate"
        assert [port.name for port in loop.entry_ports] == ["In", "Continue"]
        assert loop.get_step_param("Cursor").param_type == "list"
        assert definition.get_step("Sum").kind == StepKind.ACTIVITY
        assert definition.description == "Adds up the elements of a collection"

    def test_join_flag(self, processes):
        processes.deploy(SPLIT_TTL)
        definition = processes.load_process("/Demo/Split")

        assert definition.get_step("Merge").join is True
        assert definition.get_step("A").join is False
        assert definition.get_step("Start").join is False

    def test_timer_delay(self, processes):
        processes.deploy(TIMED_TTL)
        processes.deploy(LOOP_SUM_TTL)

        assert processes.load_process("/Demo/Timed").get_step("Pause").timer_delay == 0.0
        assert processes.load_process("/Demo/LoopSum").get_step("Loop").timer_delay is None

    def test_non_numeric_timer_delay(self, processes):
        with pytest.raises(ModelError) as excinfo:
            processes.deploy(TIMED_TTL.replace("timerDelaySeconds 0", "timerDelaySeconds \"soon\""))
        assert excinfo.value.code == "InvalidDocument"

    def test_invalid_turtle(self, processes):
        with pytest.raises(ModelError) as excinfo:
            processes.deploy("this is not turtle")
        assert excinfo.value.code == "InvalidDocument"

    def test_document_without_process(self, processes):
        with pytest.raises(ModelError) as excinfo:
            processes.deploy(PREFIXES + "proc:x flow:name \"x\" .")
        assert excinfo.value.code == "InvalidDocument"

    def test_invalid_process_leaves_repository_unchanged(self, processes):
        with pytest.raises(ModelError) as excinfo:
            processes.deploy(BROKEN_LINK_TTL)
        assert excinfo.value.code == "UnknownLinkTarget"
        assert processes.list_processes() == []

    def test_redeploy_replaces_definition(self, processes):
        processes.deploy(LOOP_SUM_TTL)
        processes.deploy(LOOP_SUM_TTL.replace("flow:order 4", "flow:order 0"))

        definition = processes.load_process("/Demo/LoopSum")

        assert definition.steps[0].name == "End"
        assert len(processes.list_processes()) == 1


class TestLoad:
    """Tests for loading and caching."""

    def test_cache_returns_same_instance(self, processes):
        processes.deploy(LOOP_SUM_TTL)
        first = processes.load_process("/Demo/LoopSum")
        assert processes.load_process(Qualifier.parse("/Demo/LoopSum.Loop.In")) is first

    def test_load_without_model(self, processes):
        processes.deploy(LOOP_SUM_TTL)
        assert processes.load_process("LoopSum").qualifier == Qualifier(model="Demo", item="LoopSum")

    def test_default_model(self, processes):
        processes.deploy(SUBPROCESS_TTL)
        definition = processes.load_process("Doubler", default_model="Demo")
        assert str(definition.qualifier) == "/Demo/Doubler"

    def test_ambiguous_without_model(self, processes):
        processes.deploy(LOOP_SUM_TTL)
        processes.deploy(OTHER_MODEL_TTL)
        with pytest.raises(ModelError) as excinfo:
            processes.load_process("LoopSum")
        assert excinfo.value.code == "AmbiguousProcess"
        assert processes.load_process("/Other/LoopSum").qualifier.model == "Other"

    def test_not_found(self, processes):
        with pytest.raises(ModelError) as excinfo:
            processes.load_process("/Demo/Missing")
        assert excinfo.value.code == "ProcessNotFound"

    def test_invalidate_forces_reload(self, processes):
        processes.deploy(LOOP_SUM_TTL)
        first = processes.load_process("/Demo/LoopSum")
        processes.invalidate("/Demo/LoopSum")
        second = processes.load_process("/Demo/LoopSum")
        assert second is not first
        assert second == first

    def test_reset_clears_cache(self, processes):
        processes.deploy(SUBPROCESS_TTL)
        processes.load_process("/Demo/Caller")
        processes.load_process("/Demo/Doubler")
        assert len(processes.cached_qualifiers()) == 2
        processes.reset()
        assert processes.cached_qualifiers() == []

    def test_remove(self, processes):
        processes.deploy(SUBPROCESS_TTL)
        processes.load_process("/Demo/Doubler")

        assert processes.remove("/Demo/Doubler")
        assert not processes.exists("/Demo/Doubler")
        assert processes.exists("/Demo/Caller")
        assert not processes.remove("/Demo/Doubler")


class TestListing:
    """Tests for process summaries."""

    def test_list_and_filter(self, processes):
        processes.deploy(LOOP_SUM_TTL)
        processes.deploy(OTHER_MODEL_TTL)

        assert [p["qualifier"] for p in processes.list_processes()] == [
            "/Demo/LoopSum",
            "/Other/LoopSum",
        ]
        assert [p["model"] for p in processes.list_processes(model="Other")] == ["Other"]

    def test_get_summary(self, processes):
        processes.deploy(LOOP_SUM_TTL)
        summary = processes.get("/Demo/LoopSum")
        assert summary["name"] == "LoopSum"
        assert summary["step_count"] == 4
        assert summary["deployed_at"]
        assert processes.get("/Demo/Missing") is None


class TestPersistence:
    """Tests for definitions written to Turtle files."""

    def test_definitions_survive_restart(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            ProcessRepository(BaseStorageService(tmpdir)).deploy(LOOP_SUM_TTL)

            reopened = ProcessRepository(BaseStorageService(tmpdir))
            definition = reopened.load_process("/Demo/LoopSum")

            assert definition.get_step("Loop").handler == "Iterate"

    def test_reload_picks_up_file_changes(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            first = ProcessRepository(BaseStorageService(tmpdir))
            second = ProcessRepository(BaseStorageService(tmpdir))
            first.deploy(SUBPROCESS_TTL)
            assert not second.exists("/Demo/Caller")

            second.reload()

            assert second.exists("/Demo/Caller")
