"""
Unit tests for HandlerRegistry and ReorderBuffer.
"""

import re

import pytest

from foobot.core.dispatch.permissions import Permission
from foobot.core.dispatch.registry import HandlerRegistry, RegistryFrozenError
from foobot.core.dispatch.reorder import ReorderBuffer


async def async_handler(command, store):
    return {}


def sync_handler(command, store):
    return {}


class TestHandlerRegistry:
    def test_exact_trigger_is_normalized(self, registry):
        registration = registry.register("  PING ", async_handler, template="echo")

        assert registration.trigger == "ping"
        assert registry.match("ping") is registration
        assert registry.match("PING") is None

    def test_first_match_wins(self, registry):
        exact = registry.register("ping", async_handler, template="echo")
        registry.register(re.compile(r".+"), sync_handler, template="greeting")

        assert registry.match("ping") is exact
        assert registry.match("other").handler is sync_handler

    def test_regex_must_match_whole_name(self, registry):
        registry.register(re.compile(r"ab"), async_handler, template="echo")

        assert registry.match("ab") is not None
        assert registry.match("abc") is None

    def test_aliases_share_handler_and_permission(self, registry):
        registry.register("commands", async_handler, template="echo", permission=Permission.MODS, aliases=["help"])

        alias = registry.match("help")

        assert alias.handler is async_handler
        assert alias.permission is Permission.MODS
        assert registry.exact_names() == ["commands", "help"]

    def test_decorator_registers_and_returns_handler(self, registry):
        @registry.command("hello", template="greeting")
        async def hello(command, store):
            return {"name": command.origin.sender}

        assert registry.match("hello").handler is hello
        assert registry.match("hello").name == "hello"

    def test_is_async(self, registry):
        registry.register("a", async_handler, template="echo")
        registry.register("s", sync_handler, template="echo")

        assert registry.match("a").is_async is True
        assert registry.match("s").is_async is False

    @pytest.mark.parametrize("trigger", ["", "   ", "two words"])
    def test_invalid_string_triggers(self, registry, trigger):
        with pytest.raises(ValueError):
            registry.register(trigger, async_handler, template="echo")

    def test_non_string_non_pattern_trigger(self, registry):
        with pytest.raises(TypeError):
            registry.register(42, async_handler, template="echo")

    def test_frozen_registry_rejects_registration(self, registry):
        registry.register("ping", async_handler, template="echo")
        registry.freeze()

        with pytest.raises(RegistryFrozenError):
            registry.register("pong", async_handler, template="echo")

        assert registry.frozen is True
        assert len(registry) == 1


class TestReorderBuffer:
    def test_in_order_items_release_immediately(self):
        buffer = ReorderBuffer()

        assert buffer.push(0, "a") == ["a"]
        assert buffer.push(1, "b") == ["b"]
        assert buffer.next_expected == 2

    def test_out_of_order_items_wait_for_gap(self):
        buffer = ReorderBuffer()

        assert buffer.push(2, "c") == []
        assert buffer.push(1, "b") == []
        assert len(buffer) == 2
        assert buffer.push(0, "a") == ["a", "b", "c"]
        assert len(buffer) == 0

    def test_none_holds_slot_without_output(self):
        buffer = ReorderBuffer()
        buffer.push(1, "b")

        assert buffer.push(0, None) == ["b"]
        assert buffer.next_expected == 2

    def test_custom_start(self):
        buffer = ReorderBuffer(start=5)

        assert buffer.push(5, "x") == ["x"]

    def test_duplicate_or_released_sequence_rejected(self):
        buffer = ReorderBuffer()
        buffer.push(0, "a")
        buffer.push(2, "c")

        with pytest.raises(ValueError):
            buffer.push(0, "again")
        with pytest.raises(ValueError):
            buffer.push(2, "again")
