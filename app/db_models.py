"""SQLAlchemy ORM models backing the persistent caches."""

from __future__ import annotations

from typing import Any

from sqlalchemy import Integer, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base


class CachedShow(Base):
    """One Serializd rating lookup, keyed by ``<title>-<year>``."""

    __tablename__ = "cached_shows"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON)
    timestamp: Mapped[int] = mapped_column(Integer, index=True)


class CachedServer(Base):
    """Connection details for one Plex server, keyed by server id."""

    __tablename__ = "cached_servers"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON)
    timestamp: Mapped[int] = mapped_column(Integer, index=True)
