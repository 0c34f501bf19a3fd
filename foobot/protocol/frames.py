"""
Protocol-neutral frame types and the codec/transport contracts.

The Session only speaks in these types; `foobot.protocol.irc` supplies the
concrete IRC implementation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, FrozenSet, List, Optional, Protocol, Sequence

from foobot.core.config.config import Credentials


class FrameKind(str, Enum):
    MESSAGE = "message"
    AUTH_ACK = "auth_ack"
    AUTH_REJECTED = "auth_rejected"
    PING = "ping"
    PONG = "pong"
    RECONNECT = "reconnect"
    IGNORED = "ignored"


@dataclass(frozen=True)
class ChatMessage:
    """A chat line addressed to a channel."""

    channel: str
    sender: str
    text: str
    badges: FrozenSet[str] = frozenset()
    message_id: Optional[str] = None


@dataclass(frozen=True)
class InboundFrame:
    kind: FrameKind
    message: Optional[ChatMessage] = None
    payload: str = ""


@dataclass(frozen=True)
class OutboundFrame:
    """A chat line to send; `reply_to` threads it under the original message."""

    channel: str
    text: str
    reply_to: Optional[str] = field(default=None, compare=False)


class FrameCodec(Protocol):
    def decode(self, raw: bytes) -> InboundFrame:
        """Decode one frame. Raises `ProtocolDecodeError` on malformed input."""
        ...

    def encode(self, frame: OutboundFrame) -> bytes:
        ...

    def handshake(self, credentials: Credentials) -> List[bytes]:
        ...

    def join(self, channels: Sequence[str]) -> List[bytes]:
        ...

    def heartbeat(self, token: str) -> bytes:
        ...

    def pong(self, payload: str) -> bytes:
        ...

    def quit(self) -> bytes:
        ...


class Transport(Protocol):
    async def read_frame(self) -> bytes:
        """Return the next raw frame. Raises `TransportError` on failure or EOF."""
        ...

    async def write(self, data: bytes) -> None:
        """Raises `TransportError` on failure."""
        ...

    async def close(self) -> None:
        ...


TransportFactory = Callable[[], Awaitable[Transport]]
