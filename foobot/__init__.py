"""foobot: a chat bot session and command engine."""

__version__ = "0.1.0"
