"""Event store: append-only audit log.

Learn: Every authentication state change is recorded as an immutable
event, e.g. {type: "user.signed_in", data: {"user_id": ...}}. Services
append the event in the same transaction as the change it describes, so
the log never claims a transition that was rolled back.

The request_id bound by RequestIdMiddleware is copied into each event's
metadata, which ties an audit entry back to its log lines.
"""

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tlca.db.models import Event


class EventStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def append(
        self,
        stream_id: str,
        event_type: str,
        data: dict,
        metadata: dict | None = None,
    ) -> Event:
        """Stage an event in the current transaction and flush it."""
        meta = dict(metadata or {})
        request_id = structlog.contextvars.get_contextvars().get("request_id")
        if request_id and "request_id" not in meta:
            meta["request_id"] = request_id

        event = Event(stream_id=stream_id, type=event_type, data=data, meta=meta)
        self.db.add(event)
        await self.db.flush()
        return event

    async def read_stream(
        self, stream_id: str, after_id: int = 0, limit: int = 100
    ) -> list[Event]:
        """Events of one stream ("user:<id>"), oldest first."""
        q = (
            select(Event)
            .where(Event.stream_id == stream_id, Event.id > after_id)
            .order_by(Event.id)
            .limit(limit)
        )
        return list((await self.db.execute(q)).scalars().all())
