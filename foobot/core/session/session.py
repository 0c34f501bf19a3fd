"""
Session - Connection Runner

Purpose
-------
Own the single chat connection for the life of the process: open it,
authenticate, keep it alive with heartbeats, hand inbound commands to the
Dispatcher, pace outbound replies, and reconnect with backoff when anything
goes wrong.

Responsibilities
----------------
- Drive `SessionStateMachine` with the loop clock and perform its effects
- Be the only writer to the transport (replies, heartbeats, PONGs, JOINs)
- Read frames on a dedicated task so heartbeats never wait on handlers
- Hold outbound frames in a bounded queue while not Ready; drop the oldest
  on overflow and report `BackpressureDropped`
- Pace chat replies (`outbound_send_interval`)
- Discard replies that belong to a previous connection generation

Non-Responsibilities
--------------------
- Command routing and handler execution (Dispatcher)
- Frame syntax (FrameCodec)
- Restarting after a crash (supervisor in `foobot.main`)

Architecture Notes
------------------
**Event Loop**:
- One inbox queue carries frames and read errors from the reader task plus
  wake-ups from `send()` and `stop()`. The runner waits on the inbox with a
  timeout equal to the next machine deadline or paced send, so heartbeat
  and reconnect timers fire even when nothing arrives.
- Events are tagged with the generation of the transport that produced
  them; events from an older transport are ignored.

**Teardown**:
- A transport is always closed and reported closed before the machine can
  schedule the next attempt, so two transports never coexist.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, List, NamedTuple, Optional

from foobot.core.config.config import BotSettings
from foobot.core.dispatch.command import Command
from foobot.core.dispatch.dispatcher import Dispatcher, Reply
from foobot.core.exceptions import AuthFailed, ProtocolDecodeError, TransportError
from foobot.core.logging.logger import LogContext, get_logger
from foobot.core.session.outbound import BackpressureDropped, OutboundQueue
from foobot.core.session.state import (
    ConnectionState,
    Effect,
    SessionSnapshot,
    SessionStateMachine,
)
from foobot.protocol.frames import (
    ChatMessage,
    FrameCodec,
    FrameKind,
    OutboundFrame,
    Transport,
    TransportFactory,
)

logger = get_logger(__name__)

_ANY_GENERATION = -1

_FRAME = "frame"
_ERROR = "error"
_WAKE = "wake"
_STOP = "stop"


class _Event(NamedTuple):
    kind: str
    generation: int
    payload: Any = None


@dataclass
class SessionMetrics:
    frames_received: int = 0
    frames_malformed: int = 0
    frames_sent: int = 0
    heartbeats_sent: int = 0
    times_ready: int = 0
    commands_dispatched: int = 0
    backpressure_dropped: int = 0
    replies_discarded: int = 0


class Session:
    """
    Public API
    ----------
    - run() -> runs until stop() or a fatal authentication failure (await)
    - stop() -> request graceful shutdown
    - send(frame) -> enqueue an outbound frame
    - on_frame(raw) -> decode one inbound frame; returns a Command or None
    - state / generation / snapshot() / metrics
    """

    def __init__(
        self,
        settings: BotSettings,
        dispatcher: Dispatcher,
        *,
        codec: FrameCodec,
        transport_factory: TransportFactory,
        machine: Optional[SessionStateMachine] = None,
        clock: Callable[[], float] = time.monotonic,
        on_backpressure: Optional[Callable[[BackpressureDropped], None]] = None,
    ) -> None:
        self._settings = settings
        self._dispatcher = dispatcher
        self._codec = codec
        self._transport_factory = transport_factory
        self._machine = machine or SessionStateMachine.from_settings(settings)
        self._clock = clock
        self._on_backpressure = on_backpressure

        self._outbound = OutboundQueue(settings.outbound_queue_max)
        self._control: Deque[bytes] = deque()
        self._pending_effects: List[Effect] = []
        self._inbox: Optional["asyncio.Queue[_Event]"] = None
        self._wake_pending = False
        self._transport: Optional[Transport] = None
        self._sequence = 0
        self._next_send_at = 0.0
        self._heartbeat_counter = 0

        self.metrics = SessionMetrics()
        dispatcher.set_reply_sink(self.deliver_reply)

    # ========================================================================
    # Properties
    # ========================================================================

    @property
    def state(self) -> ConnectionState:
        return self._machine.state

    @property
    def generation(self) -> int:
        return self._machine.generation

    @property
    def machine(self) -> SessionStateMachine:
        return self._machine

    @property
    def outbound_depth(self) -> int:
        return len(self._outbound)

    def snapshot(self) -> SessionSnapshot:
        return self._machine.snapshot()

    def _now(self) -> float:
        return self._clock()

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def run(self) -> None:
        """
        Connect and serve until `stop()` is called.

        Raises
        ------
        AuthFailed
            When authentication fails permanently (fatal).
        """
        self._inbox = asyncio.Queue()
        if self._machine.state is ConnectionState.SHUTTING_DOWN:
            return

        async with LogContext(component="session"):
            try:
                await self._perform(self._machine.start(self._now()))
                while self._machine.state is not ConnectionState.SHUTTING_DOWN:
                    state = self._machine.state
                    if state is ConnectionState.CONNECTING:
                        await self._connect()
                    elif state in (ConnectionState.AUTHENTICATING, ConnectionState.READY):
                        await self._serve()
                    elif state is ConnectionState.DEGRADED:
                        await self._close_transport()
                        self._machine.transport_closed(self._now())
                    else:
                        await self._wait_for_retry()
            finally:
                await self._shutdown_transport()

        if self._machine.fatal_error is not None:
            logger.critical(
                "Session stopped after a fatal error",
                extra=self._machine.fatal_error.to_dict(),
            )
            raise self._machine.fatal_error

    def stop(self) -> None:
        """Request a graceful shutdown; `run()` returns once the transport is closed."""
        self._machine.stop(self._now())
        if self._inbox is not None:
            self._inbox.put_nowait(_Event(_STOP, _ANY_GENERATION))

    async def _connect(self) -> None:
        try:
            transport = await self._transport_factory()
        except TransportError as exc:
            logger.warning("Connect failed", extra={"error": exc.message})
            await self._perform(self._machine.fail(self._now(), exc))
            return

        if self._machine.state is ConnectionState.SHUTTING_DOWN:
            await transport.close()
            return

        self._transport = transport
        await self._perform(self._machine.transport_opened(self._now()))

    async def _serve(self) -> None:
        transport = self._transport
        generation = self._machine.generation
        if transport is None:
            # Machine thinks we are connected without a transport; resync.
            await self._perform(self._machine.fail(self._now(), TransportError("serve")))
            return

        reader = asyncio.create_task(
            self._read_loop(transport, generation),
            name=f"session-reader-{generation}",
        )
        try:
            while (
                self._machine.state in (ConnectionState.AUTHENTICATING, ConnectionState.READY)
                and self._transport is transport
            ):
                event = await self._next_event(self._timeout_until(self._next_wakeup()))
                if event is not None:
                    await self._handle_event(event, generation)
                await self._perform(self._machine.tick(self._now()))
                await self._flush()
        finally:
            reader.cancel()
            await asyncio.wait({reader})

    async def _wait_for_retry(self) -> None:
        await self._next_event(self._timeout_until(self._machine.next_deadline()))
        await self._perform(self._machine.tick(self._now()))

    async def _read_loop(self, transport: Transport, generation: int) -> None:
        assert self._inbox is not None
        while True:
            try:
                raw = await transport.read_frame()
            except TransportError as exc:
                self._inbox.put_nowait(_Event(_ERROR, generation, exc))
                return
            except Exception as exc:
                logger.error(
                    "Transport reader failed unexpectedly",
                    extra={"generation": generation, "error_type": type(exc).__name__},
                    exc_info=True,
                )
                self._inbox.put_nowait(_Event(_ERROR, generation, TransportError("read", exc)))
                return
            self._inbox.put_nowait(_Event(_FRAME, generation, raw))

    # ========================================================================
    # Events
    # ========================================================================

    def _timeout_until(self, deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        return max(0.0, deadline - self._now())

    def _next_wakeup(self) -> Optional[float]:
        candidates = [self._machine.next_deadline()]
        if self._machine.state is ConnectionState.READY and self._outbound:
            candidates.append(self._next_send_at)
        present = [c for c in candidates if c is not None]
        return min(present) if present else None

    async def _next_event(self, timeout: Optional[float]) -> Optional[_Event]:
        assert self._inbox is not None
        try:
            if timeout is None:
                event = await self._inbox.get()
            else:
                event = await asyncio.wait_for(self._inbox.get(), timeout)
        except asyncio.TimeoutError:
            return None
        if event.kind == _WAKE:
            self._wake_pending = False
        return event

    async def _handle_event(self, event: _Event, generation: int) -> None:
        if event.generation not in (generation, _ANY_GENERATION):
            return

        if event.kind == _FRAME:
            command = self.on_frame(event.payload)
            await self._perform(self._drain_pending())
            if command is not None:
                self.metrics.commands_dispatched += 1
                self._dispatcher.submit(command)

        elif event.kind == _ERROR:
            error: TransportError = event.payload
            logger.warning(
                "Transport failed",
                extra={"operation": error.operation, "error": error.message, "generation": generation},
            )
            await self._perform(self._machine.fail(self._now(), error))

    def on_frame(self, raw: bytes) -> Optional[Command]:
        """
        Decode one inbound frame and update session state.

        Malformed frames are logged and skipped. Returns a `Command` when the
        frame is a chat line addressed to the bot while Ready.
        """
        self.metrics.frames_received += 1
        try:
            frame = self._codec.decode(raw)
        except ProtocolDecodeError as exc:
            self.metrics.frames_malformed += 1
            logger.warning("Skipping malformed frame", extra={"reason": exc.reason})
            return None

        now = self._now()
        kind = frame.kind

        if kind is FrameKind.PING:
            # A server PING proves the connection is alive.
            self._machine.heartbeat_acknowledged(now)
            self._control.append(self._codec.pong(frame.payload))
        elif kind is FrameKind.PONG:
            self._machine.heartbeat_acknowledged(now)
        elif kind is FrameKind.AUTH_ACK:
            self._pending_effects.extend(self._machine.authenticated(now))
        elif kind is FrameKind.AUTH_REJECTED:
            self._pending_effects.extend(
                self._machine.fail(now, AuthFailed(frame.payload or "rejected by server"))
            )
        elif kind is FrameKind.RECONNECT:
            self._pending_effects.extend(
                self._machine.fail(now, TransportError("server requested reconnect"))
            )
        elif kind is FrameKind.MESSAGE and frame.message is not None:
            return self._to_command(frame.message)

        return None

    def _to_command(self, message: ChatMessage) -> Optional[Command]:
        if self._machine.state is not ConnectionState.READY:
            return None
        if message.sender == self._settings.credentials.nickname.lower():
            return None

        command = self._dispatcher.parse(
            message,
            sequence=self._sequence,
            generation=self._machine.generation,
        )
        if command is not None:
            self._sequence += 1
        return command

    def _drain_pending(self) -> List[Effect]:
        effects, self._pending_effects = self._pending_effects, []
        return effects

    # ========================================================================
    # Effects
    # ========================================================================

    async def _perform(self, effects: List[Effect]) -> None:
        queue: Deque[Effect] = deque(effects)
        while queue:
            effect = queue.popleft()

            if effect is Effect.SEND_HANDSHAKE:
                for line in self._codec.handshake(self._settings.credentials):
                    if not await self._write(line):
                        break

            elif effect is Effect.SEND_HEARTBEAT:
                self._heartbeat_counter += 1
                self.metrics.heartbeats_sent += 1
                token = f"foobot:{self._machine.generation}:{self._heartbeat_counter}"
                await self._write(self._codec.heartbeat(token))

            elif effect is Effect.ENTER_READY:
                self._enter_ready()

            elif effect is Effect.CLOSE_TRANSPORT:
                await self._close_transport()
                self._machine.transport_closed(self._now())

            # OPEN_TRANSPORT is handled by the run loop on the Connecting state.
            queue.extend(self._drain_pending())

    def _enter_ready(self) -> None:
        generation = self._machine.generation
        self._sequence = 0
        self._dispatcher.begin_generation(generation)
        self._control.extend(self._codec.join(self._settings.channels))
        self.metrics.times_ready += 1
        logger.info(
            "Session ready",
            extra={
                "generation": generation,
                "channels": list(self._settings.channels),
                "queued_frames": len(self._outbound),
            },
        )

    async def _write(self, data: bytes) -> bool:
        transport = self._transport
        if transport is None:
            return False
        try:
            await transport.write(data)
        except TransportError as exc:
            logger.warning("Write failed", extra={"error": exc.message})
            self._pending_effects.extend(self._machine.fail(self._now(), exc))
            return False
        return True

    async def _flush(self) -> None:
        while self._control and self._transport is not None:
            if not await self._write(self._control.popleft()):
                break

        interval = self._settings.outbound_send_interval
        while (
            self._outbound
            and self._transport is not None
            and self._machine.state is ConnectionState.READY
        ):
            now = self._now()
            if now < self._next_send_at:
                break
            frame = self._outbound.pop()
            if not await self._write(self._codec.encode(frame)):
                dropped = self._outbound.push_front(frame)
                if dropped is not None:
                    self._report_drop(dropped)
                break
            self.metrics.frames_sent += 1
            self._next_send_at = now + interval

        await self._perform(self._drain_pending())

    async def _close_transport(self) -> None:
        transport, self._transport = self._transport, None
        self._control.clear()
        if transport is None:
            return
        try:
            await transport.close()
        except TransportError as exc:
            logger.debug("Error while closing transport", extra={"error": exc.message})

    async def _shutdown_transport(self) -> None:
        if self._transport is not None:
            try:
                await self._transport.write(self._codec.quit())
            except TransportError as exc:
                logger.debug("Could not send QUIT", extra={"error": exc.message})
        await self._close_transport()
        logger.info("Session closed", extra={"generation": self._machine.generation})

    # ========================================================================
    # Outbound
    # ========================================================================

    def send(self, frame: OutboundFrame) -> None:
        """
        Enqueue a frame. Written when Ready, held otherwise.

        When the queue is full the oldest frame is dropped and reported.
        """
        dropped = self._outbound.push(frame)
        if dropped is not None:
            self._report_drop(dropped)
        self._wake()

    def deliver_reply(self, reply: Reply) -> None:
        if reply.generation != self._machine.generation:
            self.metrics.replies_discarded += 1
            logger.debug(
                "Discarded reply for a closed connection",
                extra={"generation": reply.generation, "current": self._machine.generation},
            )
            return
        self.send(
            OutboundFrame(
                channel=reply.origin.channel,
                text=reply.text,
                reply_to=reply.origin.message_id,
            )
        )

    def _report_drop(self, frame: OutboundFrame) -> None:
        self.metrics.backpressure_dropped += 1
        event = BackpressureDropped(
            frame=frame,
            queue_depth=len(self._outbound),
            dropped_total=self._outbound.dropped_total,
        )
        logger.warning(
            "Outbound queue full; dropped frame",
            extra={
                "channel": frame.channel,
                "queue_max": self._outbound.maxsize,
                "dropped_total": event.dropped_total,
            },
        )
        if self._on_backpressure is not None:
            self._on_backpressure(event)

    def _wake(self) -> None:
        if self._inbox is None or self._wake_pending:
            return
        self._wake_pending = True
        self._inbox.put_nowait(_Event(_WAKE, _ANY_GENERATION))
