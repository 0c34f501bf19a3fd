"""
Dispatcher - Command Routing and Handler Execution

Purpose
-------
Route each parsed `Command` to the first matching handler, run it off the
session's critical path, and turn its outcome (context, error, timeout or
nothing) into chat text via the `Renderer`.

Responsibilities
----------------
- Match commands against the frozen `HandlerRegistry`
- Enforce handler permissions
- Run coroutine handlers as tasks and plain handlers on worker threads,
  bounded by `max_concurrent_handlers`
- Bound each handler by `handler_timeout`; a late result is discarded
- Convert every handler failure into a fallback template, never into a
  process failure
- Deliver replies in command order (per generation) when ordering is on
- Drop replies whose session generation is gone

Non-Responsibilities
--------------------
- Socket I/O and pacing (Session)
- Template parsing (Renderer)
- Persistence semantics (Store, handlers)

Architecture Notes
------------------
**Fallback Templates**:
- ``no_such_command``: nothing matched, or the handler raised NoSuchCommandError
- ``permission_denied``: sender lacks the handler's permission
- ``handler_error``: HandlerError / StoreError / unexpected exception
- ``handler_timeout``: handler exceeded `handler_timeout`
- ``render_error``: the chosen template could not be rendered

Their variables are checked at construction, so a fallback can never fail on
a missing variable at runtime.

**Timeouts**:
- A timed-out handler is not cancelled (threads cannot be). It keeps running
  and its eventual result is logged and dropped.

**Ordering**:
- Commands carry a per-generation `sequence`. With ordered replies, a
  `ReorderBuffer` releases replies strictly in sequence order; commands that
  produce no reply still release their slot.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import AbstractSet, Any, Callable, Dict, FrozenSet, Mapping, Optional, Set

from foobot.core.config.config import BotSettings
from foobot.core.database.store import BlockingStore, Store
from foobot.core.dispatch.command import Command, CommandParser, Origin
from foobot.core.dispatch.permissions import is_permitted
from foobot.core.dispatch.registry import HandlerRegistration, HandlerRegistry
from foobot.core.dispatch.reorder import ReorderBuffer
from foobot.core.exceptions import (
    HandlerError,
    HandlerTimeout,
    NoSuchCommandError,
    PermissionDeniedError,
    RenderError,
    StoreError,
    TemplateLoadError,
    TemplateNotFound,
)
from foobot.core.logging.logger import LogContext, get_logger
from foobot.core.render.renderer import (
    HANDLER_ERROR,
    HANDLER_TIMEOUT,
    NO_SUCH_COMMAND,
    PERMISSION_DENIED,
    RENDER_ERROR,
    Renderer,
)
from foobot.protocol.frames import ChatMessage

logger = get_logger(__name__)

BASE_VARIABLES: FrozenSet[str] = frozenset({"sender", "channel", "command", "arguments"})

FALLBACK_VARIABLES: Dict[str, FrozenSet[str]] = {
    NO_SUCH_COMMAND: BASE_VARIABLES,
    PERMISSION_DENIED: BASE_VARIABLES | {"required"},
    HANDLER_ERROR: BASE_VARIABLES | {"kind", "message"},
    HANDLER_TIMEOUT: BASE_VARIABLES | {"timeout"},
    RENDER_ERROR: BASE_VARIABLES | {"template", "kind", "reason"},
}

INTERNAL_ERROR_KIND = "InternalError"
INVALID_RESULT_KIND = "InvalidResult"
STORE_ERROR_KIND = "StoreError"


@dataclass(frozen=True)
class RenderRequest:
    """A template name plus the context to render it with."""

    template: str
    context: Mapping[str, Any]
    origin: Origin
    sequence: int = 0
    generation: int = 0


@dataclass(frozen=True)
class Reply:
    text: str
    origin: Origin
    sequence: int
    generation: int


ReplySink = Callable[[Reply], None]


@dataclass
class DispatcherMetrics:
    commands_received: int = 0
    handlers_succeeded: int = 0
    handler_errors: int = 0
    handler_timeouts: int = 0
    no_such_command: int = 0
    permission_denied: int = 0
    render_fallbacks: int = 0
    late_results_discarded: int = 0
    stale_replies_discarded: int = 0
    total_handler_ms: float = field(default=0.0)


def base_context(command: Command) -> Dict[str, Any]:
    return {
        "sender": command.origin.sender,
        "channel": command.origin.channel,
        "command": command.name,
        "arguments": list(command.arguments),
    }


class Dispatcher:
    """
    Routes commands to handlers and renders their outcome.

    Public API
    ----------
    - parse(message, sequence=, generation=) -> Optional[Command]
    - handle(command) -> Optional[RenderRequest]   (await)
    - render(request) -> Optional[str]
    - submit(command) -> asyncio.Task               (fire and deliver)
    - begin_generation(generation)
    - set_reply_sink(sink)
    - shutdown(timeout)
    """

    def __init__(
        self,
        registry: HandlerRegistry,
        renderer: Renderer,
        store: Store,
        *,
        parser: Optional[CommandParser] = None,
        handler_timeout: float = 30.0,
        max_concurrent_handlers: int = 32,
        ordered_replies: bool = True,
        super_users: AbstractSet[str] = frozenset(),
        reply_sink: Optional[ReplySink] = None,
    ) -> None:
        if handler_timeout <= 0:
            raise ValueError("handler_timeout must be positive")
        if max_concurrent_handlers < 1:
            raise ValueError("max_concurrent_handlers must be at least 1")

        self._registry = registry
        self._renderer = renderer
        self._store = store
        self._parser = parser or CommandParser()
        self._handler_timeout = handler_timeout
        self._max_concurrent = max_concurrent_handlers
        self._ordered = ordered_replies
        self._super_users = frozenset(super_users)
        self._reply_sink = reply_sink

        self._semaphore: Optional[asyncio.Semaphore] = None
        self._tasks: Set["asyncio.Task[None]"] = set()
        self._generation = 0
        self._reorder: Optional[ReorderBuffer[Reply]] = ReorderBuffer() if ordered_replies else None
        self.metrics = DispatcherMetrics()

        self._validate_templates()

    @classmethod
    def from_settings(
        cls,
        settings: BotSettings,
        registry: HandlerRegistry,
        renderer: Renderer,
        store: Store,
    ) -> "Dispatcher":
        return cls(
            registry,
            renderer,
            store,
            parser=CommandParser(settings.default_prefix, settings.channel_prefixes),
            handler_timeout=settings.handler_timeout,
            max_concurrent_handlers=settings.max_concurrent_handlers,
            ordered_replies=settings.ordered_replies,
            super_users=settings.super_users,
        )

    def _validate_templates(self) -> None:
        for name, allowed in FALLBACK_VARIABLES.items():
            template = self._renderer.get(name)
            if template is None:
                raise TemplateLoadError(name, "required template is not loaded")
            unknown = template.variables - allowed
            if unknown:
                raise TemplateLoadError(
                    name,
                    f"uses unknown variables {sorted(unknown)}; available: {sorted(allowed)}",
                )

        for registration in self._registry:
            if registration.template not in self._renderer:
                raise TemplateLoadError(
                    registration.template,
                    f"handler {registration.name!r} references a template that is not loaded",
                )

    # ========================================================================
    # Properties
    # ========================================================================

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    @property
    def ordered_replies(self) -> bool:
        return self._ordered

    def set_reply_sink(self, sink: Optional[ReplySink]) -> None:
        self._reply_sink = sink

    def begin_generation(self, generation: int) -> None:
        """Start a new session generation; replies from older ones are dropped."""
        self._generation = generation
        self._reorder = ReorderBuffer() if self._ordered else None
        logger.debug("Dispatcher generation started", extra={"generation": generation})

    def parse(self, message: ChatMessage, *, sequence: int = 0, generation: int = 0) -> Optional[Command]:
        return self._parser.parse(message, sequence=sequence, generation=generation)

    # ========================================================================
    # Handling
    # ========================================================================

    async def handle(self, command: Command) -> Optional[RenderRequest]:
        """
        Run the matching handler and return what should be rendered.

        Never raises for handler failures; returns None when the handler
        chose not to reply.
        """
        self.metrics.commands_received += 1

        registration = self._registry.match(command.name)
        if registration is None:
            return self._no_such_command(command)

        if not is_permitted(registration.permission, command.origin, self._super_users):
            return self._permission_denied(command, registration.permission.value)

        start = time.perf_counter()
        try:
            result = await self._execute(registration, command)

        except NoSuchCommandError:
            return self._no_such_command(command)

        except PermissionDeniedError as exc:
            return self._permission_denied(command, exc.required)

        except HandlerTimeout:
            self.metrics.handler_timeouts += 1
            logger.warning(
                "Handler timed out",
                extra={
                    "handler_name": registration.name,
                    "command": command.name,
                    "timeout": self._handler_timeout,
                },
            )
            return self._request(
                HANDLER_TIMEOUT, command, {"timeout": self._handler_timeout}
            )

        except HandlerError as exc:
            return self._handler_error(command, exc.kind, exc.message)

        except StoreError as exc:
            logger.error(
                "Store error in handler",
                extra={"handler_name": registration.name, "operation": exc.operation},
            )
            return self._handler_error(command, STORE_ERROR_KIND, exc.message)

        except Exception as exc:
            logger.error(
                "Unexpected handler failure",
                extra={"handler_name": registration.name, "error_type": type(exc).__name__},
                exc_info=True,
            )
            return self._handler_error(command, INTERNAL_ERROR_KIND, "internal error")

        finally:
            self.metrics.total_handler_ms += (time.perf_counter() - start) * 1000.0

        if result is None:
            self.metrics.handlers_succeeded += 1
            return None

        if not isinstance(result, Mapping):
            logger.error(
                "Handler returned a non-mapping result",
                extra={"handler_name": registration.name, "result_type": type(result).__name__},
            )
            return self._handler_error(command, INVALID_RESULT_KIND, "internal error")

        self.metrics.handlers_succeeded += 1
        return RenderRequest(
            template=registration.template,
            context={**base_context(command), **result},
            origin=command.origin,
            sequence=command.sequence,
            generation=command.generation,
        )

    async def _execute(self, registration: HandlerRegistration, command: Command) -> Any:
        if registration.is_async:
            awaitable = registration.handler(command, self._store)
        else:
            blocking = BlockingStore(self._store, asyncio.get_running_loop())
            awaitable = asyncio.to_thread(registration.handler, command, blocking)

        task = asyncio.ensure_future(awaitable)
        try:
            done, _ = await asyncio.wait({task}, timeout=self._handler_timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if task not in done:
            task.add_done_callback(self._discard_late_result)
            raise HandlerTimeout(registration.name, self._handler_timeout)

        return task.result()

    def _discard_late_result(self, task: "asyncio.Future[Any]") -> None:
        self.metrics.late_results_discarded += 1
        if task.cancelled():
            return
        exc = task.exception()
        logger.info(
            "Discarded late handler result",
            extra={"failed": exc is not None, "error_type": type(exc).__name__ if exc else None},
        )

    def _request(self, template: str, command: Command, extra: Mapping[str, Any]) -> RenderRequest:
        return RenderRequest(
            template=template,
            context={**base_context(command), **extra},
            origin=command.origin,
            sequence=command.sequence,
            generation=command.generation,
        )

    def _no_such_command(self, command: Command) -> RenderRequest:
        self.metrics.no_such_command += 1
        return self._request(NO_SUCH_COMMAND, command, {})

    def _permission_denied(self, command: Command, required: str) -> RenderRequest:
        self.metrics.permission_denied += 1
        logger.info(
            "Permission denied",
            extra={"command": command.name, "sender": command.origin.sender, "required": required},
        )
        return self._request(PERMISSION_DENIED, command, {"required": required})

    def _handler_error(self, command: Command, kind: str, message: str) -> RenderRequest:
        self.metrics.handler_errors += 1
        return self._request(HANDLER_ERROR, command, {"kind": kind, "message": message})

    # ========================================================================
    # Rendering
    # ========================================================================

    def render(self, request: RenderRequest) -> Optional[str]:
        """Render a request, falling back to ``render_error``. Empty output is None."""
        try:
            text = self._renderer.render(request.template, request.context)
        except (TemplateNotFound, RenderError) as exc:
            self.metrics.render_fallbacks += 1
            kind = exc.kind if isinstance(exc, RenderError) else "template_not_found"
            logger.warning(
                "Render failed; using fallback",
                extra={"template": request.template, "kind": kind, "error": exc.message},
            )
            context = request.context
            text = self._renderer.render(
                RENDER_ERROR,
                {
                    "sender": request.origin.sender,
                    "channel": request.origin.channel,
                    "command": context.get("command", ""),
                    "arguments": context.get("arguments", []),
                    "template": request.template,
                    "kind": kind,
                    "reason": exc.message,
                },
            )
        return text or None

    # ========================================================================
    # Worker pool & delivery
    # ========================================================================

    def submit(self, command: Command) -> "asyncio.Task[None]":
        """Run `command` in the background and deliver its reply to the sink."""
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self._max_concurrent)

        task = asyncio.create_task(
            self._run(command),
            name=f"command-{command.generation}-{command.sequence}-{command.name}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, command: Command) -> None:
        assert self._semaphore is not None
        text: Optional[str] = None
        try:
            async with self._semaphore:
                async with LogContext(
                    channel=command.origin.channel,
                    sender=command.origin.sender,
                    command=command.name,
                    generation=command.generation,
                    component="dispatcher",
                ):
                    request = await self.handle(command)
                    if request is not None:
                        text = self.render(request)
        except Exception:
            logger.error(
                "Dispatcher failed to produce a reply",
                extra={"command": command.name, "sequence": command.sequence},
                exc_info=True,
            )
        finally:
            self._deliver(command, text)

    def _deliver(self, command: Command, text: Optional[str]) -> None:
        if command.generation != self._generation:
            if text:
                self.metrics.stale_replies_discarded += 1
                logger.debug(
                    "Discarded reply from a previous session",
                    extra={"generation": command.generation, "current": self._generation},
                )
            return

        reply = (
            Reply(text=text, origin=command.origin, sequence=command.sequence, generation=command.generation)
            if text
            else None
        )

        if self._reorder is None:
            ready = [reply] if reply is not None else []
        else:
            try:
                ready = self._reorder.push(command.sequence, reply)
            except ValueError:
                logger.error("Duplicate reply slot", extra={"sequence": command.sequence})
                return

        for item in ready:
            self._emit(item)

    def _emit(self, reply: Reply) -> None:
        if self._reply_sink is None:
            logger.warning("No reply sink bound; dropping reply", extra={"channel": reply.origin.channel})
            return
        self._reply_sink(reply)

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Wait up to `timeout` for in-flight commands, then cancel the rest."""
        pending = set(self._tasks)
        if not pending:
            return

        logger.info("Waiting for in-flight commands", extra={"in_flight": len(pending)})
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.wait(still_running)
