"""Tests for handler registry."""

import pytest

from jobscheduler.jobs.errors import HandlerNotFoundError
from jobscheduler.jobs.registry import HandlerRegistry


class TestHandlerRegistry:
    def test_register_handler(self):
        registry = HandlerRegistry()

        async def dummy_handler(config, ctx):
            return {"ok": True}

        registry.register("reports", "generateDaily", dummy_handler)
        assert registry.get_handler("reports", "generateDaily") == dummy_handler
        assert ("reports", "generateDaily") in registry
        assert len(registry) == 1

    def test_get_unregistered_handler_raises(self):
        registry = HandlerRegistry()
        with pytest.raises(HandlerNotFoundError) as exc_info:
            registry.get_handler("reports", "missing")
        assert str(exc_info.value) == "Handler not found: reports.missing"
        assert exc_info.value.service_name == "reports"
        assert exc_info.value.method_name == "missing"

    def test_not_found_is_a_key_error(self):
        registry = HandlerRegistry()
        with pytest.raises(KeyError):
            registry.get_handler("reports", "missing")

    def test_reregister_replaces(self):
        registry = HandlerRegistry()

        async def first(config, ctx):
            return None

        async def second(config, ctx):
            return None

        registry.register("svc", "m", first)
        registry.register("svc", "m", second)
        assert registry.get_handler("svc", "m") is second
        assert len(registry) == 1

    def test_decorator_registration(self):
        registry = HandlerRegistry()

        @registry.handler("billing", "closeMonth")
        async def close_month(config, ctx):
            pass

        assert registry.get_handler("billing", "closeMonth") == close_month
