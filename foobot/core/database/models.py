from __future__ import annotations

from typing import Any, Dict

from sqlalchemy import JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from foobot.core.database.base import Base, TimestampMixin

KEY_MAX_LENGTH = 255


class RecordRow(Base, TimestampMixin):
    """
    One persisted record addressed by a handler-defined key.

    Keys are namespaced by convention (``command:<channel>:<trigger>``) so a
    prefix scan lists every record of one kind.
    """

    __tablename__ = "records"

    key: Mapped[str] = mapped_column(String(KEY_MAX_LENGTH), primary_key=True)
    value: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
