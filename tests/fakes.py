"""
Test doubles for the transport layer.

`FakeTransport` plays the chat server: it answers the login handshake, acks
heartbeats, and lets tests inject lines or connection failures.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, List, Optional, Union

from foobot.core.exceptions import TransportError

SERVER = "tmi.twitch.tv"


def privmsg(
    channel: str,
    sender: str,
    text: str,
    *,
    badges: str = "",
    msg_id: str = "msg-1",
) -> str:
    tags = f"badges={badges};display-name={sender};id={msg_id};login={sender}"
    return f"@{tags} :{sender}!{sender}@{sender}.{SERVER} PRIVMSG #{channel} :{text}\r\n"


def welcome(nickname: str = "foobot") -> str:
    return f":{SERVER} 001 {nickname} :Welcome, GLHF!\r\n"


class FakeTransport:
    def __init__(
        self,
        *,
        auto_auth: bool = True,
        reject_auth: bool = False,
        auto_pong: bool = True,
    ) -> None:
        self.auto_auth = auto_auth
        self.reject_auth = reject_auth
        self.auto_pong = auto_pong
        self.inbound: "asyncio.Queue[Union[bytes, Exception]]" = asyncio.Queue()
        self.written: List[bytes] = []
        self.closed = False

    async def read_frame(self) -> bytes:
        item = await self.inbound.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def write(self, data: bytes) -> None:
        if self.closed:
            raise TransportError("write", ConnectionError("closed"))
        self.written.append(data)
        line = data.decode("utf-8").rstrip("\r\n")

        if line.startswith("NICK "):
            if self.reject_auth:
                self.feed(f":{SERVER} NOTICE * :Login authentication failed\r\n")
            elif self.auto_auth:
                self.feed(welcome(line.split(" ", 1)[1]))
        elif line.startswith("PING ") and self.auto_pong:
            token = line.split(":", 1)[1]
            self.feed(f":{SERVER} PONG {SERVER} :{token}\r\n")

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.inbound.put_nowait(TransportError("read"))

    def feed(self, line: str) -> None:
        self.inbound.put_nowait(line.encode("utf-8"))

    def drop(self) -> None:
        """Simulate the server resetting the connection."""
        self.inbound.put_nowait(TransportError("read", ConnectionResetError("reset by peer")))

    def lines(self) -> List[str]:
        return [item.decode("utf-8").rstrip("\r\n") for item in self.written]

    def privmsgs(self) -> List[str]:
        return [line for line in self.lines() if " PRIVMSG " in f" {line}"]

    def replies(self) -> List[str]:
        """Text of every PRIVMSG written, in order."""
        return [line.split(" :", 1)[1] for line in self.privmsgs()]


class FakeTransportFactory:
    """
    Creates `FakeTransport`s and records how many were open at once.

    The first `fail_first` calls raise `TransportError`.
    """

    def __init__(
        self,
        *,
        fail_first: int = 0,
        make: Optional[Callable[[], FakeTransport]] = None,
    ) -> None:
        self.fail_first = fail_first
        self.make = make or FakeTransport
        self.transports: List[FakeTransport] = []
        self.attempts: List[float] = []
        self.max_open = 0

    async def __call__(self) -> FakeTransport:
        self.attempts.append(time.monotonic())
        if len(self.attempts) <= self.fail_first:
            raise TransportError("connect", ConnectionRefusedError("refused"))

        transport = self.make()
        self.transports.append(transport)
        self.max_open = max(self.max_open, self.open_count)
        return transport

    @property
    def open_count(self) -> int:
        return sum(1 for t in self.transports if not t.closed)

    @property
    def current(self) -> FakeTransport:
        return self.transports[-1]


async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0, interval: float = 0.01) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() >= deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)
