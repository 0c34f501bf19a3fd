from __future__ import annotations

import asyncio
import functools
import ssl
from typing import Optional

from foobot.core.config.config import Endpoint
from foobot.core.exceptions import TransportError
from foobot.core.logging.logger import get_logger
from foobot.protocol.frames import TransportFactory

logger = get_logger(__name__)

# Generous upper bound for one tagged IRC line.
READ_LIMIT = 64 * 1024


class StreamTransport:
    """Line-oriented transport over asyncio streams (TCP or TLS)."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer
        self._closed = False
        self._skipping = False

    @classmethod
    async def open(
        cls,
        endpoint: Endpoint,
        *,
        timeout: float = 10.0,
        ssl_context: Optional[ssl.SSLContext] = None,
    ) -> "StreamTransport":
        context = ssl_context or (ssl.create_default_context() if endpoint.tls else None)
        logger.info("Connecting", extra={"endpoint": str(endpoint)})
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(endpoint.host, endpoint.port, ssl=context, limit=READ_LIMIT),
                timeout,
            )
        except (OSError, asyncio.TimeoutError) as exc:
            raise TransportError("connect", exc) from exc
        return cls(reader, writer)

    async def read_frame(self) -> bytes:
        """
        Return the next line. Lines longer than `READ_LIMIT` are logged and
        skipped; the stream stays usable.
        """
        while True:
            try:
                line = await self._reader.readuntil(b"\n")
            except asyncio.LimitOverrunError as exc:
                await self._discard(exc.consumed)
                continue
            except asyncio.IncompleteReadError as exc:
                raise TransportError("read") from exc
            except OSError as exc:
                raise TransportError("read", exc) from exc

            if self._skipping:
                # Tail of an oversized line.
                self._skipping = False
                continue
            return line

    async def _discard(self, count: int) -> None:
        if not self._skipping:
            logger.warning("Skipping oversized line", extra={"limit": READ_LIMIT})
        self._skipping = True
        try:
            await self._reader.readexactly(count)
        except asyncio.IncompleteReadError as exc:
            raise TransportError("read") from exc
        except OSError as exc:
            raise TransportError("read", exc) from exc

    async def write(self, data: bytes) -> None:
        if self._closed:
            raise TransportError("write", ConnectionError("transport is closed"))
        try:
            self._writer.write(data)
            await self._writer.drain()
        except OSError as exc:
            raise TransportError("write", exc) from exc

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except OSError as exc:
            logger.debug("Transport closed with error", extra={"error": str(exc)})


def stream_transport_factory(endpoint: Endpoint, *, timeout: float = 10.0) -> TransportFactory:
    return functools.partial(StreamTransport.open, endpoint, timeout=timeout)
