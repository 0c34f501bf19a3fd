"""Chat commands shipped with foobot."""

from foobot.commands.builtin import (
    BUILTIN_NAMES,
    command_key,
    command_prefix,
    register_builtin_commands,
)
from foobot.commands.expansion import ActionRegistry, default_actions, expand

__all__ = [
    "BUILTIN_NAMES",
    "command_key",
    "command_prefix",
    "register_builtin_commands",
    "ActionRegistry",
    "default_actions",
    "expand",
]
