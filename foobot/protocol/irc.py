"""
IRC codec (Twitch flavoured).

Parses IRCv3 lines (``@tags :prefix COMMAND params :trailing``) into
`InboundFrame`s and encodes `OutboundFrame`s as ``PRIVMSG`` lines.

Authentication follows the Twitch chat handshake: ``CAP REQ`` for tags and
commands, ``PASS oauth:<token>``, ``NICK <login>``. ``001`` (RPL_WELCOME) is
the acknowledgement; a ``NOTICE`` saying the login failed is a rejection.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from foobot.core.config.config import Credentials
from foobot.core.exceptions import ProtocolDecodeError
from foobot.protocol.frames import ChatMessage, FrameKind, InboundFrame, OutboundFrame

MAX_LINE_BYTES = 512
CAPABILITIES = "twitch.tv/tags twitch.tv/commands"

AUTH_FAILURE_NOTICES = (
    "login authentication failed",
    "improperly formatted auth",
    "login unsuccessful",
)

_TAG_ESCAPES = {":": ";", "s": " ", "\\": "\\", "r": "\r", "n": "\n"}


@dataclass(frozen=True)
class IrcLine:
    command: str
    params: List[str] = field(default_factory=list)
    tags: Dict[str, str] = field(default_factory=dict)
    prefix: Optional[str] = None

    @property
    def nick(self) -> Optional[str]:
        if not self.prefix:
            return None
        return self.prefix.split("!", 1)[0]

    @property
    def trailing(self) -> str:
        return self.params[-1] if self.params else ""


def _unescape_tag_value(value: str) -> str:
    out: List[str] = []
    chars = iter(value)
    for ch in chars:
        if ch == "\\":
            nxt = next(chars, "")
            out.append(_TAG_ESCAPES.get(nxt, nxt))
        else:
            out.append(ch)
    return "".join(out)


def _parse_tags(raw: str) -> Dict[str, str]:
    tags: Dict[str, str] = {}
    for item in raw.split(";"):
        if not item:
            continue
        key, _, value = item.partition("=")
        tags[key] = _unescape_tag_value(value)
    return tags


def parse_line(line: str) -> IrcLine:
    """
    Parse one IRC line (without the CRLF terminator).

    Raises
    ------
    ProtocolDecodeError
        If the line is empty or has no command.
    """
    rest = line.rstrip("\r\n")
    if not rest.strip():
        raise ProtocolDecodeError("empty line", line.encode())

    tags: Dict[str, str] = {}
    prefix: Optional[str] = None

    if rest.startswith("@"):
        raw_tags, _, rest = rest[1:].partition(" ")
        tags = _parse_tags(raw_tags)
        rest = rest.lstrip(" ")

    if rest.startswith(":"):
        prefix, _, rest = rest[1:].partition(" ")
        rest = rest.lstrip(" ")

    trailing: Optional[str] = None
    if " :" in rest:
        rest, _, trailing = rest.partition(" :")
    elif rest.startswith(":"):
        trailing, rest = rest[1:], ""

    parts = rest.split()
    if not parts:
        raise ProtocolDecodeError("missing command", line.encode())

    params = parts[1:]
    if trailing is not None:
        params.append(trailing)

    return IrcLine(command=parts[0].upper(), params=params, tags=tags, prefix=prefix)


def _badges(tags: Dict[str, str]) -> frozenset:
    raw = tags.get("badges", "")
    return frozenset(item.split("/", 1)[0] for item in raw.split(",") if item)


def _strip_action(text: str) -> str:
    if text.startswith("\x01ACTION ") and text.endswith("\x01"):
        return text[len("\x01ACTION ") : -1]
    return text


def _sanitize(text: str) -> str:
    return text.replace("\r", " ").replace("\n", " ")


def _truncate_utf8(line: str, limit: int) -> bytes:
    data = line.encode("utf-8")
    if len(data) <= limit:
        return data
    return data[:limit].decode("utf-8", "ignore").encode("utf-8")


class IrcCodec:
    """`FrameCodec` implementation for Twitch IRC."""

    def decode(self, raw: bytes) -> InboundFrame:
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolDecodeError(f"invalid utf-8: {exc.reason}", raw) from exc

        line = parse_line(text)

        if line.command == "PING":
            return InboundFrame(FrameKind.PING, payload=line.trailing)
        if line.command == "PONG":
            return InboundFrame(FrameKind.PONG, payload=line.trailing)
        if line.command == "001":
            return InboundFrame(FrameKind.AUTH_ACK, payload=line.trailing)
        if line.command == "NOTICE" and line.trailing.lower().startswith(AUTH_FAILURE_NOTICES):
            return InboundFrame(FrameKind.AUTH_REJECTED, payload=line.trailing)
        if line.command == "RECONNECT":
            return InboundFrame(FrameKind.RECONNECT)
        if line.command == "PRIVMSG":
            return InboundFrame(FrameKind.MESSAGE, message=self._chat_message(line, raw))

        return InboundFrame(FrameKind.IGNORED, payload=line.command)

    def _chat_message(self, line: IrcLine, raw: bytes) -> ChatMessage:
        if len(line.params) < 2:
            raise ProtocolDecodeError("PRIVMSG without channel and text", raw)

        sender = line.tags.get("login") or line.nick
        if not sender:
            raise ProtocolDecodeError("PRIVMSG without sender", raw)

        return ChatMessage(
            channel=line.params[0].lstrip("#").lower(),
            sender=sender.lower(),
            text=_strip_action(line.params[1]),
            badges=_badges(line.tags),
            message_id=line.tags.get("id") or None,
        )

    def encode(self, frame: OutboundFrame) -> bytes:
        line = f"PRIVMSG #{frame.channel} :{_sanitize(frame.text)}"
        if frame.reply_to:
            line = f"@reply-parent-msg-id={frame.reply_to} {line}"
        return _truncate_utf8(line, MAX_LINE_BYTES - 2) + b"\r\n"

    def handshake(self, credentials: Credentials) -> List[bytes]:
        return [
            f"CAP REQ :{CAPABILITIES}\r\n".encode(),
            f"PASS {credentials.password}\r\n".encode(),
            f"NICK {credentials.nickname}\r\n".encode(),
        ]

    def join(self, channels: Sequence[str]) -> List[bytes]:
        return [f"JOIN #{channel}\r\n".encode() for channel in channels]

    def heartbeat(self, token: str) -> bytes:
        return f"PING :{token}\r\n".encode()

    def pong(self, payload: str) -> bytes:
        return f"PONG :{_sanitize(payload)}\r\n".encode()

    def quit(self) -> bytes:
        return b"QUIT\r\n"
