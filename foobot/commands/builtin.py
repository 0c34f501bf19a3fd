"""
Built-in chat commands and the per-channel custom command resolver.

Built-ins
---------
- ``ping``               -> ``pong!``                              (all)
- ``addcmd <name> <response...>`` -> store a custom command        (mods)
- ``delcmd <name>``      -> remove a custom command                (mods)
- ``showcmd <name>``     -> show a custom command's response       (all)
- ``commands`` / ``help`` -> list the channel's custom commands    (all)

Anything else is looked up as a custom command stored under
``command:<channel>:<name>`` and expanded with `foobot.commands.expansion`.
The resolver is registered last, so built-ins always win.
"""

from __future__ import annotations

import re
from typing import AbstractSet, Any, Dict, Optional

from foobot.commands.expansion import ActionRegistry, default_actions, expand
from foobot.core.database.store import Store, StoreTransaction
from foobot.core.dispatch.command import Command
from foobot.core.dispatch.permissions import Permission, is_permitted
from foobot.core.dispatch.registry import HandlerRegistry
from foobot.core.exceptions import NoSuchCommandError, PermissionDeniedError
from foobot.core.logging.logger import get_logger

logger = get_logger(__name__)

KEY_NAMESPACE = "command"

BUILTIN_NAMES = frozenset({"ping", "addcmd", "delcmd", "showcmd", "commands", "help"})

CUSTOM_TRIGGER = re.compile(r"\S+")


def command_key(channel: str, trigger: str) -> str:
    return f"{KEY_NAMESPACE}:{channel}:{trigger}"


def command_prefix(channel: str) -> str:
    return f"{KEY_NAMESPACE}:{channel}:"


def register_builtin_commands(
    registry: HandlerRegistry,
    *,
    actions: Optional[ActionRegistry] = None,
    super_users: AbstractSet[str] = frozenset(),
) -> None:
    """Register built-ins followed by the catch-all custom command resolver."""
    actions = actions or default_actions()
    super_users = frozenset(super_users)

    async def ping(command: Command, store: Store) -> Dict[str, Any]:
        return {"response": await expand("{ping}", command, actions)}

    async def addcmd(command: Command, store: Store) -> Dict[str, Any]:
        if len(command.arguments) < 2:
            return {"status": "usage", "trigger": ""}

        trigger = command.arguments[0].lower()
        if trigger in BUILTIN_NAMES:
            return {"status": "builtin", "trigger": trigger}

        key = command_key(command.origin.channel, trigger)
        record = {
            "response": " ".join(command.arguments[1:]),
            "permission": Permission.ALL.value,
            "created_by": command.origin.sender,
        }

        async def create(tx: StoreTransaction) -> str:
            if await tx.get(key) is not None:
                return "exists"
            await tx.put(key, record)
            return "added"

        status = await store.run_in_transaction(create, operation_name="command.add", retry=True)
        if status == "added":
            logger.info(
                "Custom command added",
                extra={"channel": command.origin.channel, "trigger": trigger},
            )
        return {"status": status, "trigger": trigger}

    async def delcmd(command: Command, store: Store) -> Dict[str, Any]:
        if not command.arguments:
            return {"status": "usage", "trigger": ""}

        trigger = command.arguments[0].lower()
        if trigger in BUILTIN_NAMES:
            return {"status": "builtin", "trigger": trigger}

        removed = await store.delete(command_key(command.origin.channel, trigger))
        if removed:
            logger.info(
                "Custom command removed",
                extra={"channel": command.origin.channel, "trigger": trigger},
            )
        return {"status": "removed" if removed else "not_found", "trigger": trigger}

    async def showcmd(command: Command, store: Store) -> Dict[str, Any]:
        if not command.arguments:
            return {"status": "usage", "trigger": "", "response": ""}

        trigger = command.arguments[0].lower()
        if trigger in BUILTIN_NAMES:
            return {"status": "builtin", "trigger": trigger, "response": ""}

        record = await store.get(command_key(command.origin.channel, trigger))
        if record is None:
            return {"status": "not_found", "trigger": trigger, "response": ""}
        return {"status": "found", "trigger": trigger, "response": record.get("response", "")}

    async def list_commands(command: Command, store: Store) -> Dict[str, Any]:
        prefix = command_prefix(command.origin.channel)
        records = await store.scan(prefix)
        return {"commands": [key[len(prefix):] for key, _ in records]}

    async def custom_command(command: Command, store: Store) -> Optional[Dict[str, Any]]:
        record = await store.get(command_key(command.origin.channel, command.name))
        if record is None:
            raise NoSuchCommandError(command.name)

        permission = Permission.from_string(record.get("permission", Permission.ALL.value))
        if not is_permitted(permission, command.origin, super_users):
            raise PermissionDeniedError(command.name, permission.value)

        text = await expand(str(record.get("response", "")), command, actions)
        if not text.strip():
            return None
        return {"response": text}

    registry.register("ping", ping, template="custom_command")
    registry.register("addcmd", addcmd, template="command_added", permission=Permission.MODS)
    registry.register("delcmd", delcmd, template="command_removed", permission=Permission.MODS)
    registry.register("showcmd", showcmd, template="command_shown")
    registry.register("commands", list_commands, template="command_list", aliases=("help",))
    registry.register(CUSTOM_TRIGGER, custom_command, template="custom_command")
