"""Command parsing, handler registry and dispatch."""

from foobot.core.dispatch.command import Command, CommandParser, Origin
from foobot.core.dispatch.dispatcher import (
    Dispatcher,
    DispatcherMetrics,
    RenderRequest,
    Reply,
    ReplySink,
)
from foobot.core.dispatch.permissions import Permission, is_permitted
from foobot.core.dispatch.registry import (
    Handler,
    HandlerRegistration,
    HandlerRegistry,
    RegistryFrozenError,
)
from foobot.core.dispatch.reorder import ReorderBuffer

__all__ = [
    "Command",
    "CommandParser",
    "Origin",
    "Dispatcher",
    "DispatcherMetrics",
    "RenderRequest",
    "Reply",
    "ReplySink",
    "Permission",
    "is_permitted",
    "Handler",
    "HandlerRegistration",
    "HandlerRegistry",
    "RegistryFrozenError",
    "ReorderBuffer",
]
