# Tests for Handler Registry
# Registration, lookup and process validation of step handlers

import pytest

from tokenflow.core.errors import ConfigurationError
from tokenflow.api.messaging.handler_registry import HandlerRegistry

from conftest import GUARDED_TTL


class TestHandlerRegistry:
    """Tests for the HandlerRegistry class."""

    def test_register_and_create(self):
        registry = HandlerRegistry()

        def handler(context):
            return True

        assert registry.register_handler("Work", handler, "does work")
        assert registry.exists("Work")
        assert registry.create("Work") is handler
        assert registry.get_all()["Work"]["description"] == "does work"

    def test_factory_called_per_create(self):
        registry = HandlerRegistry()
        created = []

        def factory():
            created.append(object())
            return lambda context: True

        registry.register("Work", factory)
        registry.create("Work")
        registry.create("Work")
        assert len(created) == 2

    def test_non_callable_factory(self):
        with pytest.raises(ConfigurationError) as excinfo:
            HandlerRegistry().register("Work", "not callable")
        assert excinfo.value.code == "InvalidHandler"

    def test_unknown_handler(self):
        with pytest.raises(ConfigurationError) as excinfo:
            HandlerRegistry().create("Nope")
        assert excinfo.value.code == "HandlerNotFound"

    def test_unregister(self):
        registry = HandlerRegistry()
        registry.register_handler("Work", lambda context: True)
        assert registry.unregister("Work")
        assert not registry.unregister("Work")
        assert registry.get("Work") is None

    def test_validate_process(self, processes):
        processes.deploy(GUARDED_TTL)
        definition = processes.load_process("/Demo/Guarded")
        registry = HandlerRegistry()

        assert registry.missing_handlers(definition) == ["Risky"]
        with pytest.raises(ConfigurationError):
            registry.validate_process(definition)

        registry.register_handler("Risky", lambda context: True)
        registry.validate_process(definition)
