from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone

import logging
from typing import Any, Iterator, Optional
from uuid import uuid4

from sqlalchemy import select, delete, func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from errors import InvalidState, InvalidTarget, NotFound
from models import Assignment, Location, LocationIn, Person, PersonIn, Tool, ToolEvent, ToolRequest
from orm import (
    AssignmentORM,
    LocationORM,
    PersonORM,
    ToolEventORM,
    ToolORM,
    ToolRequestORM,
    UserLocationORM,
)

logger = logging.getLogger(__name__)

ALLOWED_SORTS = {
    "name": ToolORM.name,
    "serial_number": ToolORM.serial_number,
    "status": ToolORM.status,
    "purchase_date": ToolORM.purchase_date,
    "updated_at": ToolORM.updated_at,
}

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def new_id() -> str:
    return str(uuid4())

def persist(db: Session, *, commit: bool) -> None:
    if commit:
        db.commit()
    else:
        db.flush()

@contextmanager
def unit_of_work(db: Session, *, commit: bool) -> Iterator[None]:
    """
    ステータス更新・台帳更新・イベント追記を1トランザクションにまとめる。
    成功時は persist、例外時は rollback して再送出する。
    """
    try:
        yield
        persist(db, commit=commit)
    except IntegrityError as exc:
        db.rollback()
        logger.warning("integrity conflict rolled back: %s", exc.orig)
        raise InvalidState("conflicting concurrent update") from exc
    except Exception:
        db.rollback()
        raise

def compare_and_set(db: Session, model: Any, row_id: str, *, expected: dict[str, Any], values: dict[str, Any]) -> bool:
    """UPDATE ... WHERE id = :id AND <expected> : 1行更新できた時だけ True"""
    stmt = update(model).where(model.id == row_id)
    for column, value in expected.items():
        col = getattr(model, column)
        if value is None:
            stmt = stmt.where(col.is_(None))
        elif isinstance(value, (set, frozenset, tuple, list)):
            stmt = stmt.where(col.in_(list(value)))
        else:
            stmt = stmt.where(col == value)
    result = db.execute(stmt.values(**values).execution_options(synchronize_session=False))
    if result.rowcount != 1:
        return False

    # セッション内の古い値を捨てる
    cached = db.identity_map.get(db.identity_key(model, row_id))
    if cached is not None:
        db.expire(cached)
    return True


# ---------- schema conversion ----------
def tool_to_schema(t: ToolORM) -> Tool:
    return Tool(
        id=t.id,
        name=t.name,
        description=t.description,
        serial_number=t.serial_number,
        purchase_date=t.purchase_date,
        purchase_price=t.purchase_price,
        status=t.status,  # type: ignore
        location_id=t.location_id,
        person_id=t.person_id,
        created_at=t.created_at,
        updated_at=t.updated_at,
    )

def assignment_to_schema(a: AssignmentORM) -> Assignment:
    return Assignment(
        id=a.id,
        tool_id=a.tool_id,
        person_id=a.person_id,
        location_id=a.location_id,
        assigned_to=a.assigned_to,
        notes=a.notes,
        assigned_at=a.assigned_at,
        returned_at=a.returned_at,
        return_status=a.return_status,  # type: ignore
        return_condition=a.return_condition,  # type: ignore
        return_location_id=a.return_location_id,
        return_notes=a.return_notes,
        return_requested_at=a.return_requested_at,
        return_approved_by=a.return_approved_by,
        return_approved_at=a.return_approved_at,
    )

def event_to_schema(e: ToolEventORM) -> ToolEvent:
    return ToolEvent(
        id=e.id,
        tool_id=e.tool_id,
        event_type=e.event_type,  # type: ignore
        from_location_id=e.from_location_id,
        to_location_id=e.to_location_id,
        from_person_id=e.from_person_id,
        to_person_id=e.to_person_id,
        old_status=e.old_status,  # type: ignore
        new_status=e.new_status,  # type: ignore
        notes=e.notes,
        user_id=e.user_id,
        created_at=e.created_at,
    )

def request_to_schema(r: ToolRequestORM) -> ToolRequest:
    return ToolRequest(
        id=r.id,
        requester_id=r.requester_id,
        request_type=r.request_type,  # type: ignore
        tool_id=r.tool_id,
        tool_name=r.tool_name,
        destination_location_id=r.destination_location_id,
        notes=r.notes,
        status=r.status,  # type: ignore
        reviewed_by=r.reviewed_by,
        reviewed_at=r.reviewed_at,
        created_at=r.created_at,
        updated_at=r.updated_at,
    )

def _location_to_schema(l: LocationORM) -> Location:
    return Location(
        id=l.id,
        name=l.name,
        description=l.description,
        is_base_warehouse=l.is_base_warehouse,
        sort_order=l.sort_order,
        created_at=l.created_at,
        updated_at=l.updated_at,
    )

def _person_to_schema(p: PersonORM) -> Person:
    return Person(
        id=p.id,
        name=p.name,
        email=p.email,
        user_id=p.user_id,
        created_at=p.created_at,
        updated_at=p.updated_at,
    )


# ---------- Tool (read side) ----------
def serial_number_exists(db: Session, serial_number: str, exclude_tool_id: Optional[str] = None) -> bool:
    stmt = select(ToolORM).where(ToolORM.serial_number == serial_number)
    if exclude_tool_id:
        stmt = stmt.where(ToolORM.id != exclude_tool_id)
    return db.execute(stmt).first() is not None


def get_tool_row(db: Session, tool_id: str) -> ToolORM:
    row = db.get(ToolORM, tool_id)
    if not row:
        raise NotFound(f"tool {tool_id} not found")
    return row


def get_tool(db: Session, tool_id: str) -> Optional[Tool]:
    row = db.get(ToolORM, tool_id)
    return tool_to_schema(row) if row else None


def build_tools_query(q: str | None, status: str | None, location_id: str | None, person_id: str | None):
    stmt = select(ToolORM)

    if q:
        like = f"%{q}%"
        stmt = stmt.where(
            or_(
                ToolORM.name.ilike(like),
                ToolORM.serial_number.ilike(like),
                ToolORM.description.ilike(like),
            )
        )
    if status:
        stmt = stmt.where(ToolORM.status == status)

    if location_id:
        stmt = stmt.filter(ToolORM.location_id == location_id)

    if person_id:
        stmt = stmt.filter(ToolORM.person_id == person_id)

    return stmt

def tools_meta(
    db: Session,
    *,
    q: str | None,
    status: str | None,
    location_id: str | None,
    person_id: str | None,
    limit: int,
    offset: int,
) -> dict:
    total = count_tools_filtered(db, q=q, status=status, location_id=location_id, person_id=person_id)
    total_pages = max(1, (total + limit - 1) // limit)

    return {
        "total": total,
        "limit": limit,
        "offset": offset,
        "total_pages": total_pages,
    }

def count_tools_filtered(db: Session, *, q: str | None, status: str | None, location_id: str | None, person_id: str | None) -> int:
    stmt = build_tools_query(q, status, location_id, person_id)
    count_stmt = select(func.count()).select_from(stmt.subquery())
    return int(db.execute(count_stmt).scalar_one())

def list_tools_filtered(
    db: Session,
    *,
    q: str | None,
    status: str | None,
    location_id: str | None,
    person_id: str | None,
    sort: str,
    order: str,
    limit: int,
    offset: int,
) -> list[Tool]:
    stmt = build_tools_query(q, status, location_id, person_id)

    col = ALLOWED_SORTS.get(sort, ToolORM.name)
    desc = (order or "").lower() == "desc"
    stmt = stmt.order_by(col.desc() if desc else col.asc(), ToolORM.id.asc())

    stmt = stmt.limit(limit).offset(offset)
    rows = db.execute(stmt).scalars().all()
    return [tool_to_schema(t) for t in rows]


# ---------- Location ----------
def list_locations(db: Session) -> list[Location]:
    rows = db.execute(
        select(LocationORM).order_by(LocationORM.sort_order.asc(), LocationORM.name.asc())
    ).scalars().all()
    return [_location_to_schema(l) for l in rows]

def base_warehouses(db: Session) -> list[Location]:
    rows = db.execute(
        select(LocationORM)
        .where(LocationORM.is_base_warehouse.is_(True))
        .order_by(LocationORM.sort_order.asc(), LocationORM.name.asc())
    ).scalars().all()
    return [_location_to_schema(l) for l in rows]

def get_location(db: Session, location_id: str) -> Optional[Location]:
    row = db.get(LocationORM, location_id)
    return _location_to_schema(row) if row else None

def require_location(db: Session, location_id: str) -> LocationORM:
    row = db.get(LocationORM, location_id)
    if not row:
        raise InvalidTarget(f"location {location_id} does not exist")
    return row

def create_location(db: Session, body: LocationIn, *, commit: bool = True) -> Optional[Location]:
    name = (body.name or "").strip()
    if not name:
        return None
    exists = db.execute(select(LocationORM).where(LocationORM.name == name)).first()
    if exists:
        return None

    now = utcnow()
    l = LocationORM(
        id=new_id(),
        name=name,
        description=body.description,
        is_base_warehouse=body.is_base_warehouse,
        sort_order=body.sort_order,
        created_at=now,
        updated_at=now,
    )
    db.add(l)
    persist(db, commit=commit)
    return _location_to_schema(l)


def rename_location(
    db: Session,
    *,
    location_id: str,
    new_name: str,
    commit: bool = True,
) -> bool:
    new_name = (new_name or "").strip()
    if not new_name:
        return False

    l = db.get(LocationORM, location_id)
    if not l:
        return False

    dup = db.execute(
        select(LocationORM).where(LocationORM.name == new_name, LocationORM.id != location_id)
    ).first()
    if dup:
        return False

    l.name = new_name
    l.updated_at = utcnow()

    persist(db, commit=commit)
    return True


def location_in_use(db: Session, location_id: str) -> bool:
    checks = (
        select(func.count()).select_from(ToolORM).where(ToolORM.location_id == location_id),
        select(func.count()).select_from(AssignmentORM).where(
            or_(AssignmentORM.location_id == location_id, AssignmentORM.return_location_id == location_id)
        ),
        select(func.count()).select_from(ToolRequestORM).where(ToolRequestORM.destination_location_id == location_id),
        select(func.count()).select_from(ToolEventORM).where(
            or_(ToolEventORM.from_location_id == location_id, ToolEventORM.to_location_id == location_id)
        ),
    )
    return any(int(db.execute(stmt).scalar_one()) > 0 for stmt in checks)


def delete_location(db: Session, *, location_id: str, commit: bool = True) -> bool:
    l = db.get(LocationORM, location_id)
    if not l:
        return False

    # 参照されている場所は削除不可
    if location_in_use(db, location_id):
        return False

    db.execute(delete(UserLocationORM).where(UserLocationORM.location_id == location_id))
    db.execute(delete(LocationORM).where(LocationORM.id == location_id))
    persist(db, commit=commit)
    return True


# ---------- Person ----------
def list_people(db: Session) -> list[Person]:
    rows = db.execute(select(PersonORM).order_by(PersonORM.name.asc())).scalars().all()
    return [_person_to_schema(p) for p in rows]

def get_person(db: Session, person_id: str) -> Optional[Person]:
    row = db.get(PersonORM, person_id)
    return _person_to_schema(row) if row else None

def require_person(db: Session, person_id: str) -> PersonORM:
    row = db.get(PersonORM, person_id)
    if not row:
        raise InvalidTarget(f"person {person_id} does not exist")
    return row

def person_id_for_user(db: Session, user_id: str) -> Optional[str]:
    row = db.execute(select(PersonORM.id).where(PersonORM.user_id == user_id)).first()
    return row[0] if row else None

def create_person(db: Session, body: PersonIn, *, commit: bool = True) -> Optional[Person]:
    name = (body.name or "").strip()
    if not name:
        return None
    if body.user_id and person_id_for_user(db, body.user_id):
        return None

    now = utcnow()
    p = PersonORM(
        id=new_id(),
        name=name,
        email=(body.email or "").strip() or None,
        user_id=body.user_id,
        created_at=now,
        updated_at=now,
    )
    db.add(p)
    persist(db, commit=commit)
    return _person_to_schema(p)


# ---------- User locations ----------
def authorized_location_ids(db: Session, user_id: str) -> frozenset[str]:
    rows = db.execute(
        select(UserLocationORM.location_id).where(UserLocationORM.user_id == user_id)
    ).all()
    return frozenset(r[0] for r in rows)

def grant_location(
    db: Session,
    *,
    user_id: str,
    location_id: str,
    assigned_by: Optional[str] = None,
    commit: bool = True,
) -> bool:
    require_location(db, location_id)
    if location_id in authorized_location_ids(db, user_id):
        return False

    db.add(
        UserLocationORM(
            id=new_id(),
            user_id=user_id,
            location_id=location_id,
            assigned_by=assigned_by,
            assigned_at=utcnow(),
        )
    )
    persist(db, commit=commit)
    return True

def revoke_location(db: Session, *, user_id: str, location_id: str, commit: bool = True) -> bool:
    result = db.execute(
        delete(UserLocationORM).where(
            UserLocationORM.user_id == user_id,
            UserLocationORM.location_id == location_id,
        )
    )
    persist(db, commit=commit)
    return result.rowcount > 0
