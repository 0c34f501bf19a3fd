"""
Unit tests for CommandParser and permission checks.
"""

import pytest

from foobot.core.dispatch.command import CommandParser, Origin
from foobot.core.dispatch.permissions import Permission, is_permitted
from foobot.protocol.frames import ChatMessage


def message(text: str, channel: str = "forsen", sender: str = "viewer", badges=frozenset()) -> ChatMessage:
    return ChatMessage(channel=channel, sender=sender, text=text, badges=frozenset(badges), message_id="m-1")


class TestCommandParser:
    def test_name_and_arguments(self):
        command = CommandParser().parse(message("!AddCmd hello  Hello  there"), sequence=4, generation=2)

        assert command.name == "addcmd"
        assert command.arguments == ("hello", "Hello", "there")
        assert command.raw_arguments == "hello Hello there"
        assert command.sequence == 4
        assert command.generation == 2

    def test_origin_copied_from_message(self):
        command = CommandParser().parse(message("!ping", badges={"moderator"}))

        assert command.origin == Origin("forsen", "viewer", frozenset({"moderator"}), "m-1")

    @pytest.mark.parametrize("text", ["ping", "hello !ping", "!", "!   ", ""])
    def test_lines_not_addressed_to_the_bot(self, text):
        assert CommandParser().parse(message(text)) is None

    def test_channel_prefix_overrides_default(self):
        parser = CommandParser("!", {"pajlada": "?"})

        assert parser.parse(message("?ping", channel="pajlada")).name == "ping"
        assert parser.parse(message("!ping", channel="pajlada")) is None
        assert parser.parse(message("!ping", channel="forsen")).name == "ping"

    def test_multi_character_prefix(self):
        parser = CommandParser("foo ")

        assert parser.parse(message("foo ping")).name == "ping"

    def test_invisible_suffix_is_ignored(self):
        command = CommandParser().parse(message("!ping \U000e0000"))

        assert command.name == "ping"
        assert command.arguments == ()

    def test_empty_default_prefix_rejected(self):
        with pytest.raises(ValueError):
            CommandParser("")


class TestPermissions:
    @pytest.mark.parametrize(
        "permission,badges,expected",
        [
            (Permission.ALL, set(), True),
            (Permission.SUBS, set(), False),
            (Permission.SUBS, {"subscriber"}, True),
            (Permission.SUBS, {"founder"}, True),
            (Permission.SUBS, {"vip"}, False),
            (Permission.SUBS, {"moderator"}, True),
            (Permission.SUBS, {"broadcaster"}, True),
            (Permission.MODS, {"vip"}, False),
            (Permission.MODS, {"subscriber"}, False),
            (Permission.MODS, {"moderator"}, True),
            (Permission.MODS, {"broadcaster"}, True),
            (Permission.SUPER, {"broadcaster"}, False),
        ],
    )
    def test_badge_levels(self, permission, badges, expected):
        origin = Origin("forsen", "viewer", frozenset(badges))

        assert is_permitted(permission, origin) is expected

    @pytest.mark.parametrize("permission", list(Permission))
    def test_super_users_pass_every_level(self, permission):
        origin = Origin("forsen", "boss")

        assert is_permitted(permission, origin, {"boss"}) is True

    def test_from_string(self):
        assert Permission.from_string(" Mods ") is Permission.MODS

        with pytest.raises(ValueError):
            Permission.from_string("admins")
