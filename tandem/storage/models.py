"""SQLAlchemy ORM models for the transcript store."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


# Record types
DIRECTOR_MESSAGE = "directorMessage"
ACTOR_MESSAGE = "actorMessage"
SYSTEM_BOUNDARY = "systemBoundary"
METADATA = "metadata"

RECORD_TYPES = (DIRECTOR_MESSAGE, ACTOR_MESSAGE, SYSTEM_BOUNDARY, METADATA)


class TranscriptRecord(Base):
    __tablename__ = "transcript_records"
    __table_args__ = (Index("ix_transcript_session_id", "session_id", "id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    # systemBoundary records carry {"boundary": ..., "summary": message record}
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())
