"""
Custom command response expansion.

A stored response is plain text with optional ``{action arg ...}`` blocks.
Each block is replaced by the output of the named action. Arguments may use
variables:

- ``$$``    all command arguments, space separated
- ``$user`` the sender
- ``$N``    the N-th command argument (0-based: ``$0`` is the first)

Example: ``{ping}`` -> ``pong!``
"""

from __future__ import annotations

import inspect
from typing import Awaitable, Callable, Dict, FrozenSet, List, Optional, Sequence, Union

from foobot.core.dispatch.command import Command
from foobot.core.exceptions import HandlerError

ActionResult = Optional[str]
Action = Callable[[Sequence[str], Command], Union[ActionResult, Awaitable[ActionResult]]]

EXPANSION_ERROR = "ExecutionError"


class ActionRegistry:
    """Named actions available inside ``{...}`` blocks."""

    def __init__(self) -> None:
        self._actions: Dict[str, Action] = {}

    def register(self, name: str, action: Action) -> None:
        key = name.strip().lower()
        if not key:
            raise ValueError("action name must not be empty")
        self._actions[key] = action

    def action(self, name: str) -> Callable[[Action], Action]:
        def decorator(fn: Action) -> Action:
            self.register(name, fn)
            return fn

        return decorator

    def get(self, name: str) -> Optional[Action]:
        return self._actions.get(name.lower())

    @property
    def names(self) -> FrozenSet[str]:
        return frozenset(self._actions)


def _ping(args: Sequence[str], command: Command) -> str:
    return "pong!"


def default_actions() -> ActionRegistry:
    actions = ActionRegistry()
    actions.register("ping", _ping)
    return actions


def substitute(token: str, command: Command) -> str:
    """Resolve one action argument; tokens not starting with ``$`` are literal."""
    if not token.startswith("$"):
        return token

    var = token[1:]
    if var == "$":
        return command.raw_arguments
    if var == "user":
        return command.origin.sender
    if var.isdecimal():
        index = int(var)
        if index >= len(command.arguments):
            raise HandlerError(EXPANSION_ERROR, f"missing argument index {index}")
        return command.arguments[index]
    raise HandlerError(EXPANSION_ERROR, f"invalid variable {token}")


async def run_action(block: str, command: Command, actions: ActionRegistry) -> str:
    tokens = block.split()
    if not tokens:
        raise HandlerError(EXPANSION_ERROR, "empty action")

    name, raw_args = tokens[0], tokens[1:]
    action = actions.get(name)
    if action is None:
        raise HandlerError(EXPANSION_ERROR, f"unknown action {name}")

    args = [substitute(token, command) for token in raw_args]
    result = action(args, command)
    if inspect.isawaitable(result):
        result = await result
    return result or ""


async def expand(response: str, command: Command, actions: ActionRegistry) -> str:
    """
    Expand every ``{...}`` block in `response`.

    An unterminated block runs to the end of the text.

    Raises
    ------
    HandlerError
        ``ExecutionError`` for unknown actions, bad variables or missing
        argument indexes.
    """
    out: List[str] = []
    pos = 0
    while pos < len(response):
        start = response.find("{", pos)
        if start == -1:
            out.append(response[pos:])
            break

        out.append(response[pos:start])
        end = response.find("}", start + 1)
        if end == -1:
            block, pos = response[start + 1:], len(response)
        else:
            block, pos = response[start + 1:end], end + 1

        out.append(await run_action(block, command, actions))

    return "".join(out)
