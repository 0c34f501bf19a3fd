"""
Configuration subsystem for foobot.

`Config` loads and validates environment configuration; `BotSettings` is the
immutable snapshot handed to the session, dispatcher, renderer and store.
"""

from foobot.core.config.config import (
    BotSettings,
    Config,
    Credentials,
    Endpoint,
    Environment,
)

__all__ = [
    "Config",
    "BotSettings",
    "Credentials",
    "Endpoint",
    "Environment",
]
