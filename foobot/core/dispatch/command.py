from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet, Mapping, Optional, Tuple

from foobot.protocol.frames import ChatMessage

# Some chat clients append this tag character to bypass duplicate-message filters.
_INVISIBLE_SUFFIX = "\U000e0000"


@dataclass(frozen=True)
class Origin:
    """Where a command came from; replies are addressed back to it."""

    channel: str
    sender: str
    badges: FrozenSet[str] = frozenset()
    message_id: Optional[str] = None


@dataclass(frozen=True)
class Command:
    """
    A parsed, immutable request to run one handler.

    `sequence` is the position of the command in its session generation and
    fixes its reply slot when replies are ordered.
    """

    name: str
    arguments: Tuple[str, ...]
    origin: Origin
    sequence: int = 0
    generation: int = 0

    @property
    def raw_arguments(self) -> str:
        return " ".join(self.arguments)


class CommandParser:
    """
    Turn chat lines into `Command`s using per-channel prefixes.

    The command name is the first token after the prefix, lower-cased. The
    remaining whitespace-separated tokens are the arguments.
    """

    def __init__(self, default_prefix: str = "!", channel_prefixes: Optional[Mapping[str, str]] = None) -> None:
        if not default_prefix:
            raise ValueError("default_prefix must not be empty")
        self._default_prefix = default_prefix
        self._channel_prefixes = dict(channel_prefixes or {})

    def prefix_for(self, channel: str) -> str:
        return self._channel_prefixes.get(channel, self._default_prefix)

    def parse(self, message: ChatMessage, *, sequence: int = 0, generation: int = 0) -> Optional[Command]:
        """Return a `Command`, or None when the line is not addressed to the bot."""
        prefix = self.prefix_for(message.channel)
        text = message.text.replace(_INVISIBLE_SUFFIX, "").strip()
        if not text.startswith(prefix):
            return None

        tokens = text[len(prefix):].split()
        if not tokens:
            return None

        return Command(
            name=tokens[0].lower(),
            arguments=tuple(tokens[1:]),
            origin=Origin(
                channel=message.channel,
                sender=message.sender,
                badges=message.badges,
                message_id=message.message_id,
            ),
            sequence=sequence,
            generation=generation,
        )
