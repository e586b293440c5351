"""
tiercache Database Models

SQLAlchemy models backing the DATABASE cache level: one row per entry plus
a tag table used for tag invalidation.
"""

from sqlalchemy import Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Canonical Base class for cache models."""

    pass


class CacheEntryRecord(Base):
    """Serialized cache entry."""

    __tablename__ = "tiercache_entries"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    stored_at: Mapped[float] = mapped_column(Float, nullable=False)
    expires_at: Mapped[float] = mapped_column(Float, nullable=False, index=True)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class CacheEntryTag(Base):
    """Tag membership of a cache entry."""

    __tablename__ = "tiercache_entry_tags"

    key: Mapped[str] = mapped_column(
        String(512),
        ForeignKey("tiercache_entries.key", ondelete="CASCADE"),
        primary_key=True,
    )
    tag: Mapped[str] = mapped_column(String(100), primary_key=True)

    __table_args__ = (Index("ix_tiercache_entry_tags_tag", "tag"),)
