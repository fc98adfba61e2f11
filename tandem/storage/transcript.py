"""Persisted transcript: director/actor messages, compaction boundaries, metadata.

Records are appended as the run progresses (through the event bus
persister) and read back by ``--resume``. Resume restores the Director
only: the latest boundary's summary followed by every Director message
recorded after it. The Actor always starts fresh.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, select

from tandem.api.models import BoundaryMarker, Message
from tandem.events import Event
from tandem.storage.database import Database
from tandem.storage.models import (
    ACTOR_MESSAGE,
    DIRECTOR_MESSAGE,
    METADATA,
    RECORD_TYPES,
    SYSTEM_BOUNDARY,
    TranscriptRecord,
)

logger = logging.getLogger(__name__)

# Event type the orchestrator emits for records that should be persisted
TRANSCRIPT_EVENT = "transcript"


class TranscriptStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    async def append(self, session_id: str, record_type: str, payload: dict[str, Any]) -> int:
        """Append one record, returning its id."""
        if record_type not in RECORD_TYPES:
            raise ValueError(f"Unknown transcript record type: {record_type}")
        async with self.db.session() as session:
            record = TranscriptRecord(session_id=session_id, type=record_type, payload=payload)
            session.add(record)
            await session.commit()
            return record.id

    async def append_message(self, session_id: str, source: str, message: Message) -> int:
        record_type = DIRECTOR_MESSAGE if source == "director" else ACTOR_MESSAGE
        return await self.append(session_id, record_type, message.to_record())

    async def append_boundary(
        self, session_id: str, source: str, boundary: BoundaryMarker, summary: Message
    ) -> int:
        payload = {"source": source, "boundary": boundary.to_record(), "summary": summary.to_record()}
        return await self.append(session_id, SYSTEM_BOUNDARY, payload)

    async def persist(self, event: Event) -> None:
        """EventBus persister: stores ``transcript`` events, ignores the rest."""
        if event.type != TRANSCRIPT_EVENT or not event.session_id:
            return
        await self.append(event.session_id, event.data["record_type"], event.data["payload"])

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    async def load(self, session_id: str) -> list[TranscriptRecord]:
        async with self.db.session() as session:
            result = await session.execute(
                select(TranscriptRecord)
                .where(TranscriptRecord.session_id == session_id)
                .order_by(TranscriptRecord.id)
            )
            return list(result.scalars().all())

    async def latest_session(self) -> str | None:
        """Session id of the most recently written record, if any."""
        async with self.db.session() as session:
            latest = select(func.max(TranscriptRecord.id)).scalar_subquery()
            result = await session.execute(
                select(TranscriptRecord.session_id).where(TranscriptRecord.id == latest)
            )
            return result.scalar_one_or_none()

    async def restore_director_history(self, session_id: str) -> list[Message]:
        """Director messages to resume from.

        Starts at the summary of the latest Director boundary (if any);
        Actor messages and Actor boundaries are skipped.
        """
        records = await self.load(session_id)
        history: list[Message] = []
        for record in records:
            if record.type == SYSTEM_BOUNDARY and record.payload.get("source", "director") == "director":
                history = [Message.from_record(record.payload["summary"])]
            elif record.type == DIRECTOR_MESSAGE:
                history.append(Message.from_record(record.payload))
        # A crash between a tool call and its results leaves a dangling call
        while history and history[-1].tool_calls:
            history.pop()
        logger.info("Restored %d director messages from session %s", len(history), session_id)
        return history

    async def metadata(self, session_id: str) -> dict[str, Any]:
        """Merged metadata records for a session (later keys win)."""
        merged: dict[str, Any] = {}
        for record in await self.load(session_id):
            if record.type == METADATA:
                merged.update(record.payload)
        return merged
