"""
Order Service — event store

Append-only log of order history, replayed into OrderAggregate.
Writes use optimistic locking: (aggregate_id, version) is UNIQUE, so two
requests appending on top of the same version cannot both commit. The loser
gets a constraint violation, which the command layer turns into a retry.
"""

import json
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .db import utcnow


async def append_event(
    session: AsyncSession,
    aggregate_id: str,
    aggregate_type: str,
    event_type: str,
    event_data: dict,
    expected_version: int,
) -> int:
    """
    Append an event on top of expected_version and return the new version.
    Nothing is committed here; the caller owns the transaction.
    """
    new_version = expected_version + 1
    await session.execute(
        text("""
            INSERT INTO event_store
                (id, aggregate_id, aggregate_type, event_type, event_data, version, created_at)
            VALUES
                (:id, :agg_id, :agg_type, :evt_type, :evt_data, :version, :now)
        """),
        {
            "id": str(uuid4()),
            "agg_id": aggregate_id,
            "agg_type": aggregate_type,
            "evt_type": event_type,
            "evt_data": json.dumps(event_data, default=str),
            "version": new_version,
            "now": utcnow(),
        },
    )
    return new_version


async def load_events(session: AsyncSession, aggregate_id: str) -> list[dict]:
    """All events of one aggregate, oldest first."""
    result = await session.execute(
        text("""
            SELECT event_type, event_data, version, created_at
            FROM event_store
            WHERE aggregate_id = :agg_id
            ORDER BY version ASC
        """),
        {"agg_id": aggregate_id},
    )
    return [
        {
            "event_type": row.event_type,
            "event_data": json.loads(row.event_data)
            if isinstance(row.event_data, str)
            else row.event_data,
            "version": row.version,
            "created_at": row.created_at,
        }
        for row in result.fetchall()
    ]
