from __future__ import annotations

import math
from datetime import date, datetime, time, timezone
from typing import Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from crud import get_tool_row, utcnow
from models import TOOL_STATUSES, DamageCostEntry, DamageCostReport, ToolUsage
from orm import AssignmentORM, LocationORM, PersonORM, ToolORM

SECONDS_PER_DAY = 86400


def as_utc(value: datetime | date) -> datetime:
    # SQLite は tz を落とすので naive は UTC とみなす
    if not isinstance(value, datetime):
        value = datetime.combine(value, time.min)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def round_half_up(value: float) -> int:
    # 0.5 は切り上げ（組み込みの round は偶数丸め）
    return int(math.floor(value + 0.5))


def usage_days(periods: Iterable[tuple[datetime, Optional[datetime]]], *, now: datetime) -> float:
    """Sum of (returned_at or now) - assigned_at in days."""
    total = 0.0
    for assigned_at, returned_at in periods:
        end = as_utc(returned_at) if returned_at else now
        total += (end - as_utc(assigned_at)).total_seconds() / SECONDS_PER_DAY
    return total


def usage_percentage(total_days: float, in_inventory_since: datetime | date, *, now: datetime) -> int:
    elapsed = (now - as_utc(in_inventory_since)).total_seconds() / SECONDS_PER_DAY
    if elapsed <= 0:
        return 0
    pct = round_half_up(total_days / elapsed * 100)
    return max(0, min(100, pct))


def tool_usage(db: Session, tool_id: str, *, now: Optional[datetime] = None) -> ToolUsage:
    now = as_utc(now or utcnow())
    t = get_tool_row(db, tool_id)
    periods = db.execute(
        select(AssignmentORM.assigned_at, AssignmentORM.returned_at).where(AssignmentORM.tool_id == tool_id)
    ).all()

    total = usage_days(periods, now=now)
    return ToolUsage(
        tool_id=tool_id,
        total_usage_days=round_half_up(total),
        usage_percentage=usage_percentage(total, t.purchase_date or t.created_at, now=now),
    )


def usage_report(db: Session, *, now: Optional[datetime] = None) -> list[ToolUsage]:
    tool_ids = db.execute(select(ToolORM.id).order_by(ToolORM.name.asc())).scalars().all()
    return [tool_usage(db, tool_id, now=now) for tool_id in tool_ids]


def status_summary(db: Session) -> dict[str, int]:
    counts = dict.fromkeys(TOOL_STATUSES, 0)
    rows = db.execute(select(ToolORM.status, func.count()).group_by(ToolORM.status)).all()
    for status, n in rows:
        counts[status] = int(n)
    counts["total"] = sum(counts[s] for s in TOOL_STATUSES)
    return counts


def damage_costs(db: Session) -> DamageCostReport:
    """Price of every damaged/lost tool, charged to the holder of its most recent assignment."""
    tools = db.execute(
        select(ToolORM.id, ToolORM.purchase_price).where(ToolORM.status.in_(("damaged", "lost")))
    ).all()
    if not tools:
        return DamageCostReport(by_person=[], by_location=[], total_cost=0.0)

    prices = {tool_id: float(price or 0) for tool_id, price in tools}
    rows = db.execute(
        select(AssignmentORM.tool_id, AssignmentORM.person_id, AssignmentORM.location_id)
        .where(AssignmentORM.tool_id.in_(list(prices)))
        .order_by(AssignmentORM.assigned_at.desc(), AssignmentORM.id.desc())
    ).all()

    latest: dict[str, tuple[Optional[str], Optional[str]]] = {}
    for tool_id, person_id, location_id in rows:
        latest.setdefault(tool_id, (person_id, location_id))

    by_person: dict[str, list[float]] = {}
    by_location: dict[str, list[float]] = {}
    for tool_id, (person_id, location_id) in latest.items():
        if person_id:
            by_person.setdefault(person_id, []).append(prices[tool_id])
        if location_id:
            by_location.setdefault(location_id, []).append(prices[tool_id])

    person_names = dict(db.execute(select(PersonORM.id, PersonORM.name).where(PersonORM.id.in_(list(by_person)))).all())
    location_names = dict(
        db.execute(select(LocationORM.id, LocationORM.name).where(LocationORM.id.in_(list(by_location)))).all()
    )

    def _entries(groups: dict[str, list[float]], names: dict[str, str]) -> list[DamageCostEntry]:
        entries = [
            DamageCostEntry(id=key, name=names.get(key, "Unknown"), total=round(sum(v), 2), count=len(v))
            for key, v in groups.items()
        ]
        return sorted(entries, key=lambda e: (-e.total, e.name))

    return DamageCostReport(
        by_person=_entries(by_person, person_names),
        by_location=_entries(by_location, location_names),
        total_cost=round(sum(prices.values()), 2),
    )
