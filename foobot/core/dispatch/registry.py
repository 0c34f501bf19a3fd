"""
Handler registry.

Handlers are registered at startup and matched in registration order: the
first registration whose trigger matches the command name wins. A trigger is
either an exact name or a compiled regular expression matched against the
whole name. The registry is frozen before the session starts; registering
afterwards is a programming error.

Handlers take ``(command, store)`` and return a render context mapping, or
None for "no reply". Coroutine functions run on the event loop; plain
functions run on a worker thread and receive a `BlockingStore`.
"""

from __future__ import annotations

import inspect
import re
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Iterator,
    List,
    Mapping,
    Optional,
    Pattern,
    Sequence,
    Union,
)

from foobot.core.dispatch.command import Command
from foobot.core.dispatch.permissions import Permission
from foobot.core.logging.logger import get_logger

logger = get_logger(__name__)

RenderContext = Mapping[str, Any]
HandlerResult = Optional[RenderContext]
Handler = Callable[[Command, Any], Union[HandlerResult, Awaitable[HandlerResult]]]
Trigger = Union[str, Pattern[str]]


class RegistryFrozenError(RuntimeError):
    pass


@dataclass(frozen=True)
class HandlerRegistration:
    trigger: Trigger
    handler: Handler = field(compare=False)
    template: str
    permission: Permission = Permission.ALL
    name: str = ""

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.handler)

    @property
    def is_exact(self) -> bool:
        return isinstance(self.trigger, str)

    def matches(self, command_name: str) -> bool:
        if isinstance(self.trigger, str):
            return self.trigger == command_name
        return self.trigger.fullmatch(command_name) is not None


class HandlerRegistry:
    """Ordered, first-match-wins handler table."""

    def __init__(self) -> None:
        self._registrations: List[HandlerRegistration] = []
        self._frozen = False

    def register(
        self,
        trigger: Trigger,
        handler: Handler,
        *,
        template: str,
        permission: Permission = Permission.ALL,
        aliases: Sequence[str] = (),
    ) -> HandlerRegistration:
        if self._frozen:
            raise RegistryFrozenError("handler registry is frozen")

        created: List[HandlerRegistration] = []
        for item in (trigger, *aliases):
            normalized = self._normalize_trigger(item)
            registration = HandlerRegistration(
                trigger=normalized,
                handler=handler,
                template=template,
                permission=permission,
                name=getattr(handler, "__name__", repr(handler)),
            )
            self._registrations.append(registration)
            created.append(registration)
            logger.debug(
                "Registered handler",
                extra={
                    "trigger": normalized if isinstance(normalized, str) else normalized.pattern,
                    "handler_name": registration.name,
                    "template": template,
                    "permission": permission.value,
                },
            )

        return created[0]

    def command(
        self,
        trigger: Trigger,
        *,
        template: str,
        permission: Permission = Permission.ALL,
        aliases: Sequence[str] = (),
    ) -> Callable[[Handler], Handler]:
        """Decorator form of `register`."""

        def decorator(handler: Handler) -> Handler:
            self.register(trigger, handler, template=template, permission=permission, aliases=aliases)
            return handler

        return decorator

    @staticmethod
    def _normalize_trigger(trigger: Trigger) -> Trigger:
        if isinstance(trigger, str):
            name = trigger.strip().lower()
            if not name or any(ch.isspace() for ch in name):
                raise ValueError(f"invalid trigger {trigger!r}")
            return name
        if isinstance(trigger, re.Pattern):
            return trigger
        raise TypeError(f"trigger must be str or compiled pattern, got {type(trigger).__name__}")

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def match(self, command_name: str) -> Optional[HandlerRegistration]:
        for registration in self._registrations:
            if registration.matches(command_name):
                return registration
        return None

    def exact_names(self) -> List[str]:
        return [r.trigger for r in self._registrations if isinstance(r.trigger, str)]

    def __iter__(self) -> Iterator[HandlerRegistration]:
        return iter(self._registrations)

    def __len__(self) -> int:
        return len(self._registrations)
