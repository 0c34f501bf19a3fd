from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional

from foobot.protocol.frames import OutboundFrame


@dataclass(frozen=True)
class BackpressureDropped:
    """Reported when a full outbound queue evicts a frame."""

    frame: OutboundFrame
    queue_depth: int
    dropped_total: int


class OutboundQueue:
    """
    Bounded FIFO of frames waiting to be written.

    When full, `push` evicts the oldest frame and returns it so the caller
    can report the drop.
    """

    def __init__(self, maxsize: int) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self._maxsize = maxsize
        self._frames: Deque[OutboundFrame] = deque()
        self.dropped_total = 0

    @property
    def maxsize(self) -> int:
        return self._maxsize

    def __len__(self) -> int:
        return len(self._frames)

    def __bool__(self) -> bool:
        return bool(self._frames)

    def push(self, frame: OutboundFrame) -> Optional[OutboundFrame]:
        dropped: Optional[OutboundFrame] = None
        if len(self._frames) >= self._maxsize:
            dropped = self._frames.popleft()
            self.dropped_total += 1
        self._frames.append(frame)
        return dropped

    def pop(self) -> OutboundFrame:
        return self._frames.popleft()

    def push_front(self, frame: OutboundFrame) -> Optional[OutboundFrame]:
        """Requeue a frame whose write failed; when full the newest frame is evicted."""
        dropped: Optional[OutboundFrame] = None
        if len(self._frames) >= self._maxsize:
            dropped = self._frames.pop()
            self.dropped_total += 1
        self._frames.appendleft(frame)
        return dropped

    def peek(self) -> Optional[OutboundFrame]:
        return self._frames[0] if self._frames else None
