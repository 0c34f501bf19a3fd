"""Wire protocol: frame types, IRC codec and stream transport."""

from foobot.protocol.frames import (
    ChatMessage,
    FrameCodec,
    FrameKind,
    InboundFrame,
    OutboundFrame,
    Transport,
    TransportFactory,
)
from foobot.protocol.irc import IrcCodec, IrcLine, parse_line
from foobot.protocol.transport import StreamTransport, stream_transport_factory

__all__ = [
    "ChatMessage",
    "FrameCodec",
    "FrameKind",
    "InboundFrame",
    "OutboundFrame",
    "Transport",
    "TransportFactory",
    "IrcCodec",
    "IrcLine",
    "parse_line",
    "StreamTransport",
    "stream_transport_factory",
]
