"""
Session State Machine

Purpose
-------
Pure connection lifecycle logic: which state the session is in, when the
next heartbeat, auth deadline or reconnect attempt is due, and what the
runner must do about it. No I/O and no clock of its own; every event takes
an explicit `now`, so the machine is driven by a virtual clock in tests.

States
------
::

    Disconnected --start/backoff elapsed--> Connecting
    Connecting --transport opened--> Authenticating
    Connecting --connect failed--> Degraded
    Authenticating --auth ack--> Ready
    Authenticating --rejected / auth timeout--> Degraded
    Ready --transport error / heartbeat timeout--> Degraded
    Degraded --transport closed--> Disconnected (backoff scheduled)
    any --stop--> ShuttingDown

Architecture Notes
------------------
- The machine returns `Effect`s; the runner performs them. A transport is
  only opened on `OPEN_TRANSPORT`, which is only emitted from Disconnected
  after the previous transport was reported closed, so at most one
  transport is live at a time.
- Each successful open increments `generation`. Work started under an older
  generation is discarded by the runner.
- Repeated authentication failures escalate to a fatal shutdown once
  `max_auth_failures` is reached (None means retry forever).
"""

from __future__ import annotations

import random
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, List, Optional

from foobot.core.config.config import BotSettings
from foobot.core.exceptions import AuthFailed, FoobotException, HeartbeatTimeout
from foobot.core.logging.logger import get_logger
from foobot.core.session.backoff import BackoffPolicy

logger = get_logger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    DEGRADED = "degraded"
    SHUTTING_DOWN = "shutting_down"


class Effect(str, Enum):
    OPEN_TRANSPORT = "open_transport"
    SEND_HANDSHAKE = "send_handshake"
    SEND_HEARTBEAT = "send_heartbeat"
    ENTER_READY = "enter_ready"
    CLOSE_TRANSPORT = "close_transport"


class InvalidTransition(RuntimeError):
    pass


@dataclass(frozen=True)
class Transition:
    source: ConnectionState
    target: ConnectionState
    at: float
    reason: Optional[str] = None


@dataclass(frozen=True)
class SessionSnapshot:
    connection_state: ConnectionState
    generation: int
    reconnect_attempt_count: int
    last_heartbeat_at: Optional[float]
    last_ack_at: Optional[float]
    next_attempt_at: Optional[float]
    degraded_reason: Optional[FoobotException]


class SessionStateMachine:
    def __init__(
        self,
        *,
        heartbeat_interval: float = 60.0,
        heartbeat_timeout: float = 10.0,
        auth_timeout: float = 10.0,
        backoff: Optional[BackoffPolicy] = None,
        max_auth_failures: Optional[int] = None,
        rng: Optional[random.Random] = None,
        history_size: int = 64,
    ) -> None:
        if heartbeat_interval <= 0 or heartbeat_timeout <= 0 or auth_timeout <= 0:
            raise ValueError("heartbeat and auth timings must be positive")

        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_timeout = heartbeat_timeout
        self.auth_timeout = auth_timeout
        self.backoff = backoff or BackoffPolicy()
        self.max_auth_failures = max_auth_failures
        self._rng = rng or random.Random()

        self._state = ConnectionState.DISCONNECTED
        self.generation = 0
        self.reconnect_attempt_count = 0
        self.auth_failures = 0
        self.last_heartbeat_at: Optional[float] = None
        self.last_ack_at: Optional[float] = None
        self.next_attempt_at: Optional[float] = None
        self.degraded_reason: Optional[FoobotException] = None
        self.fatal_error: Optional[FoobotException] = None

        self._auth_deadline: Optional[float] = None
        self._awaiting_ack_since: Optional[float] = None
        self._next_heartbeat_at: Optional[float] = None

        self.history: Deque[Transition] = deque(maxlen=history_size)

    @classmethod
    def from_settings(cls, settings: BotSettings, *, rng: Optional[random.Random] = None) -> "SessionStateMachine":
        return cls(
            heartbeat_interval=settings.heartbeat_interval,
            heartbeat_timeout=settings.heartbeat_timeout,
            auth_timeout=settings.auth_timeout,
            backoff=BackoffPolicy(
                base=settings.reconnect_backoff_base,
                maximum=settings.reconnect_backoff_max,
                jitter=settings.reconnect_jitter,
            ),
            max_auth_failures=settings.max_auth_failures,
            rng=rng,
        )

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def awaiting_heartbeat_ack(self) -> bool:
        return self._awaiting_ack_since is not None

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            connection_state=self._state,
            generation=self.generation,
            reconnect_attempt_count=self.reconnect_attempt_count,
            last_heartbeat_at=self.last_heartbeat_at,
            last_ack_at=self.last_ack_at,
            next_attempt_at=self.next_attempt_at,
            degraded_reason=self.degraded_reason,
        )

    def _enter(self, target: ConnectionState, now: float, reason: Optional[str] = None) -> None:
        source = self._state
        self._state = target
        self.history.append(Transition(source, target, now, reason))
        logger.info(
            "Session state changed",
            extra={
                "from_state": source.value,
                "to_state": target.value,
                "generation": self.generation,
                "reason": reason,
            },
        )

    def _clear_timers(self) -> None:
        self._auth_deadline = None
        self._awaiting_ack_since = None
        self._next_heartbeat_at = None

    # ========================================================================
    # Events
    # ========================================================================

    def start(self, now: float) -> List[Effect]:
        if self._state is not ConnectionState.DISCONNECTED:
            raise InvalidTransition(f"cannot start from {self._state.value}")
        self.next_attempt_at = None
        self._enter(ConnectionState.CONNECTING, now, "start")
        return [Effect.OPEN_TRANSPORT]

    def transport_opened(self, now: float) -> List[Effect]:
        if self._state is ConnectionState.SHUTTING_DOWN:
            return [Effect.CLOSE_TRANSPORT]
        if self._state is not ConnectionState.CONNECTING:
            raise InvalidTransition(f"transport opened while {self._state.value}")

        self.generation += 1
        self._auth_deadline = now + self.auth_timeout
        self._enter(ConnectionState.AUTHENTICATING, now)
        return [Effect.SEND_HANDSHAKE]

    def authenticated(self, now: float) -> List[Effect]:
        if self._state is not ConnectionState.AUTHENTICATING:
            logger.debug("Ignoring auth ack", extra={"state": self._state.value})
            return []

        self.reconnect_attempt_count = 0
        self.auth_failures = 0
        self.degraded_reason = None
        self._clear_timers()
        self._next_heartbeat_at = now + self.heartbeat_interval
        self._enter(ConnectionState.READY, now)
        return [Effect.ENTER_READY]

    def heartbeat_acknowledged(self, now: float) -> None:
        if self._state is ConnectionState.READY:
            self._awaiting_ack_since = None
            self.last_ack_at = now

    def fail(self, now: float, error: FoobotException) -> List[Effect]:
        """Report a connect, auth, transport or heartbeat failure."""
        if self._state in (
            ConnectionState.DISCONNECTED,
            ConnectionState.DEGRADED,
            ConnectionState.SHUTTING_DOWN,
        ):
            return []

        self._clear_timers()

        if isinstance(error, AuthFailed):
            self.auth_failures += 1
            limit_reached = (
                self.max_auth_failures is not None and self.auth_failures >= self.max_auth_failures
            )
            if error.fatal or limit_reached:
                self.fatal_error = error if error.fatal else AuthFailed(error.reason, fatal=True)
                self.degraded_reason = self.fatal_error
                self._enter(ConnectionState.SHUTTING_DOWN, now, "authentication failed permanently")
                return [Effect.CLOSE_TRANSPORT]

        self.degraded_reason = error
        self._enter(ConnectionState.DEGRADED, now, type(error).__name__)
        return [Effect.CLOSE_TRANSPORT]

    def transport_closed(self, now: float) -> float:
        """
        Report that the transport is fully torn down.

        From Degraded this schedules the next attempt and returns its delay.
        """
        if self._state is not ConnectionState.DEGRADED:
            return 0.0

        self.reconnect_attempt_count += 1
        delay = self.backoff.delay(self.reconnect_attempt_count, self._rng)
        self.next_attempt_at = now + delay
        self._enter(ConnectionState.DISCONNECTED, now, f"retry in {delay:.2f}s")
        return delay

    def tick(self, now: float) -> List[Effect]:
        """Advance timers: reconnect attempts, auth deadline, heartbeats."""
        if self._state is ConnectionState.DISCONNECTED:
            if self.next_attempt_at is not None and now >= self.next_attempt_at:
                self.next_attempt_at = None
                self._enter(ConnectionState.CONNECTING, now, "backoff elapsed")
                return [Effect.OPEN_TRANSPORT]
            return []

        if self._state is ConnectionState.AUTHENTICATING:
            if self._auth_deadline is not None and now >= self._auth_deadline:
                return self.fail(now, AuthFailed("authentication timed out"))
            return []

        if self._state is ConnectionState.READY:
            if self._awaiting_ack_since is not None:
                waited = now - self._awaiting_ack_since
                if waited >= self.heartbeat_timeout:
                    return self.fail(now, HeartbeatTimeout(waited))
                return []
            if self._next_heartbeat_at is not None and now >= self._next_heartbeat_at:
                self.last_heartbeat_at = now
                self._awaiting_ack_since = now
                self._next_heartbeat_at = now + self.heartbeat_interval
                return [Effect.SEND_HEARTBEAT]

        return []

    def next_deadline(self) -> Optional[float]:
        """Earliest time at which `tick` may produce an effect."""
        if self._state is ConnectionState.DISCONNECTED:
            return self.next_attempt_at
        if self._state is ConnectionState.AUTHENTICATING:
            return self._auth_deadline
        if self._state is ConnectionState.READY:
            if self._awaiting_ack_since is not None:
                return self._awaiting_ack_since + self.heartbeat_timeout
            return self._next_heartbeat_at
        return None

    def stop(self, now: float) -> List[Effect]:
        if self._state is ConnectionState.SHUTTING_DOWN:
            return []
        had_transport = self._state in (ConnectionState.AUTHENTICATING, ConnectionState.READY)
        self._clear_timers()
        self.next_attempt_at = None
        self._enter(ConnectionState.SHUTTING_DOWN, now, "stop requested")
        return [Effect.CLOSE_TRANSPORT] if had_transport else []
