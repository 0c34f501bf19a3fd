"""Connection lifecycle: state machine, backoff, outbound queue and runner."""

from foobot.core.session.backoff import BackoffPolicy
from foobot.core.session.outbound import BackpressureDropped, OutboundQueue
from foobot.core.session.session import Session, SessionMetrics
from foobot.core.session.state import (
    ConnectionState,
    Effect,
    InvalidTransition,
    SessionSnapshot,
    SessionStateMachine,
    Transition,
)

__all__ = [
    "BackoffPolicy",
    "BackpressureDropped",
    "OutboundQueue",
    "Session",
    "SessionMetrics",
    "ConnectionState",
    "Effect",
    "InvalidTransition",
    "SessionSnapshot",
    "SessionStateMachine",
    "Transition",
]
