"""Append-only tool event log.

``append`` is called from inside another operation's unit of work and never
commits on its own. ``query`` returns a restartable, lazily evaluated view in
newest-first order.
"""
from __future__ import annotations

from datetime import datetime
from typing import Iterator, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from crud import event_to_schema, utcnow
from models import EVENT_TYPES, ToolEvent, ToolEventIn
from orm import ToolEventORM


def append(db: Session, body: ToolEventIn, *, at: Optional[datetime] = None) -> ToolEventORM:
    if not body.tool_id:
        raise ValueError("tool event requires tool_id")
    if body.event_type not in EVENT_TYPES:
        raise ValueError(f"unknown event_type: {body.event_type}")

    e = ToolEventORM(
        tool_id=body.tool_id,
        event_type=body.event_type,
        from_location_id=body.from_location_id,
        to_location_id=body.to_location_id,
        from_person_id=body.from_person_id,
        to_person_id=body.to_person_id,
        old_status=body.old_status,
        new_status=body.new_status,
        notes=body.notes,
        user_id=body.user_id,
        created_at=at or utcnow(),
    )
    db.add(e)
    db.flush()
    return e


class EventHistory:
    """Iterable over matching events; every iteration re-runs the query."""

    def __init__(
        self,
        db: Session,
        *,
        tool_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        event_type: Optional[str] = None,
        batch_size: int = 200,
    ):
        self.db = db
        self.tool_id = tool_id
        self.start = start
        self.end = end
        self.event_type = event_type
        self.batch_size = batch_size

    def statement(self):
        stmt = select(ToolEventORM)
        if self.tool_id:
            stmt = stmt.where(ToolEventORM.tool_id == self.tool_id)
        if self.start:
            stmt = stmt.where(ToolEventORM.created_at >= self.start)
        if self.end:
            stmt = stmt.where(ToolEventORM.created_at < self.end)
        if self.event_type:
            stmt = stmt.where(ToolEventORM.event_type == self.event_type)
        return stmt.order_by(ToolEventORM.created_at.desc(), ToolEventORM.id.desc())

    def __iter__(self) -> Iterator[ToolEvent]:
        stmt = self.statement().execution_options(yield_per=self.batch_size)
        for row in self.db.execute(stmt).scalars():
            yield event_to_schema(row)

    def page(self, *, limit: int, offset: int = 0) -> list[ToolEvent]:
        rows = self.db.execute(self.statement().limit(limit).offset(offset)).scalars().all()
        return [event_to_schema(r) for r in rows]


def query(
    db: Session,
    *,
    tool_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    event_type: Optional[str] = None,
) -> EventHistory:
    return EventHistory(db, tool_id=tool_id, start=start, end=end, event_type=event_type)
