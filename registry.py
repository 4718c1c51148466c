from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

import event_log
from crud import (
    compare_and_set,
    get_tool_row,
    new_id,
    require_location,
    require_person,
    serial_number_exists,
    tool_to_schema,
    unit_of_work,
    utcnow,
)
from errors import InvalidState, InvalidTarget, InvalidTransition
from models import Actor, Custody, Tool, ToolEventIn, ToolIn, ToolUpdate
from orm import AssignmentORM, LocationORM, ToolORM

logger = logging.getLogger(__name__)


def _actor_id(actor: Optional[Actor]) -> Optional[str]:
    return actor.user_id if actor else None


def open_assignment_row(db: Session, tool_id: str) -> Optional[AssignmentORM]:
    stmt = (
        select(AssignmentORM)
        .where(AssignmentORM.tool_id == tool_id, AssignmentORM.returned_at.is_(None))
        .order_by(AssignmentORM.assigned_at.desc())
        .limit(1)
    )
    return db.execute(stmt).scalars().first()


def check_holder(db: Session, location_id: Optional[str], person_id: Optional[str]) -> None:
    if location_id and person_id:
        raise InvalidTarget("a tool is held by a location or a person, not both")
    if location_id:
        require_location(db, location_id)
    if person_id:
        require_person(db, person_id)


def set_holder(tool: ToolORM, location_id: Optional[str], person_id: Optional[str]) -> None:
    tool.location_id = location_id
    tool.person_id = person_id
    tool.updated_at = utcnow()


def swap_status(db: Session, tool: ToolORM, old_status: str, new_status: str) -> None:
    """Status write guarded by the status we read; losing the race is InvalidState."""
    ok = compare_and_set(
        db,
        ToolORM,
        tool.id,
        expected={"status": old_status},
        values={"status": new_status, "updated_at": utcnow()},
    )
    if not ok:
        logger.warning("status race lost tool_id=%s expected=%s", tool.id, old_status)
        raise InvalidState(f"tool {tool.id} is no longer {old_status}")


# ---------- create / update ----------
def create_tool(db: Session, body: ToolIn, *, actor: Optional[Actor] = None, commit: bool = True) -> Tool:
    check_holder(db, body.location_id, body.person_id)
    now = utcnow()

    with unit_of_work(db, commit=commit):
        t = ToolORM(
            id=new_id(),
            name=body.name.strip(),
            description=body.description,
            serial_number=(body.serial_number or "").strip() or None,
            purchase_date=body.purchase_date,
            purchase_price=body.purchase_price,
            status="available",
            location_id=body.location_id,
            person_id=body.person_id,
            created_at=now,
            updated_at=now,
        )
        db.add(t)
        db.flush()
        event_log.append(
            db,
            ToolEventIn(
                tool_id=t.id,
                event_type="created",
                to_location_id=body.location_id,
                to_person_id=body.person_id,
                new_status="available",
                notes=body.note or "Tool created",
                user_id=_actor_id(actor),
            ),
            at=now,
        )

    logger.info("tool created tool_id=%s name=%s", t.id, t.name)
    return tool_to_schema(t)


def update_tool(db: Session, tool_id: str, body: ToolUpdate, *, actor: Optional[Actor] = None, commit: bool = True) -> Tool:
    t = get_tool_row(db, tool_id)

    data = body.model_dump(exclude_unset=True)
    changed = [k for k, v in data.items() if getattr(t, k) != v]
    if not changed:
        return tool_to_schema(t)

    with unit_of_work(db, commit=commit):
        for k in changed:
            setattr(t, k, data[k])
        t.updated_at = utcnow()
        event_log.append(
            db,
            ToolEventIn(
                tool_id=t.id,
                event_type="updated",
                notes="Updated: " + ", ".join(changed),
                user_id=_actor_id(actor),
            ),
        )

    return tool_to_schema(t)


# ---------- status ----------
def set_status(
    db: Session,
    tool_id: str,
    new_status: str,
    *,
    actor: Optional[Actor] = None,
    note: Optional[str] = None,
    commit: bool = True,
) -> Tool:
    t = get_tool_row(db, tool_id)
    old_status = t.status
    if new_status == old_status:
        return tool_to_schema(t)

    # in_use <=> 未返却の割当がある
    has_open = open_assignment_row(db, tool_id) is not None
    if new_status == "in_use" and not has_open:
        raise InvalidTransition("in_use requires an open assignment; use an assignment instead")
    if new_status != "in_use" and has_open:
        raise InvalidTransition(f"tool {tool_id} has an open assignment and cannot become {new_status}")

    with unit_of_work(db, commit=commit):
        swap_status(db, t, old_status, new_status)
        event_log.append(
            db,
            ToolEventIn(
                tool_id=tool_id,
                event_type="status_changed",
                old_status=old_status,
                new_status=new_status,
                notes=note or f"Status changed from {old_status} to {new_status}",
                user_id=_actor_id(actor),
            ),
        )

    logger.info("tool status changed tool_id=%s old=%s new=%s", tool_id, old_status, new_status)
    return tool_to_schema(t)


def return_to_service(db: Session, tool_id: str, *, actor: Optional[Actor] = None, commit: bool = True) -> Tool:
    t = get_tool_row(db, tool_id)
    if t.status == "available" and open_assignment_row(db, tool_id) is None:
        return tool_to_schema(t)
    if t.status != "maintenance":
        raise InvalidTransition(f"only tools in maintenance can return to service (status={t.status})")
    return set_status(db, tool_id, "available", actor=actor, note="Returned to service", commit=commit)


# ---------- location / person ----------
def relocate(
    db: Session,
    tool_id: str,
    *,
    location_id: Optional[str] = None,
    person_id: Optional[str] = None,
    actor: Optional[Actor] = None,
    note: Optional[str] = None,
    commit: bool = True,
) -> Tool:
    t = get_tool_row(db, tool_id)
    check_holder(db, location_id, person_id)

    from_location_id, from_person_id = t.location_id, t.person_id

    with unit_of_work(db, commit=commit):
        set_holder(t, location_id, person_id)
        event_log.append(
            db,
            ToolEventIn(
                tool_id=tool_id,
                event_type="moved",
                from_location_id=from_location_id,
                to_location_id=location_id,
                from_person_id=from_person_id,
                to_person_id=person_id,
                notes=note or "Tool moved",
                user_id=_actor_id(actor),
            ),
        )

    logger.info("tool moved tool_id=%s location=%s person=%s", tool_id, location_id, person_id)
    return tool_to_schema(t)


def current_custody(db: Session, tool_id: str) -> Custody:
    t = get_tool_row(db, tool_id)
    a = open_assignment_row(db, tool_id)
    if a:
        if a.person_id:
            kind = "person"
        elif a.assigned_to:
            kind = "user"
        else:
            kind = "location"
        return Custody(
            tool_id=tool_id,
            kind=kind,
            source="assignment",
            person_id=a.person_id,
            location_id=a.location_id,
            user_id=a.assigned_to,
            assignment_id=a.id,
        )

    if t.person_id:
        return Custody(tool_id=tool_id, kind="person", source="tool", person_id=t.person_id)
    if t.location_id:
        return Custody(tool_id=tool_id, kind="location", source="tool", location_id=t.location_id)
    return Custody(tool_id=tool_id, kind="none", source="tool")


def import_tools(db: Session, rows: list[dict[str, str]], *, actor: Optional[Actor] = None) -> dict:
    """
    rows: [{"name": "...", "serial_number": "...", "purchase_date": "YYYY-MM-DD",
            "purchase_price": "...", "location": "<location name>", "description": "...", "note": "..."}]
    """
    created = 0
    skipped = 0
    errors: list[str] = []

    try:
        for idx, r in enumerate(rows, start=1):
            name = (r.get("name") or "").strip()
            serial_number = (r.get("serial_number") or "").strip() or None
            location_name = (r.get("location") or "").strip() or None

            if not name:
                errors.append(f"row {idx}: name is empty")
                continue

            if serial_number and serial_number_exists(db, serial_number):
                skipped += 1
                continue

            try:
                purchase_date = date.fromisoformat(r["purchase_date"].strip()) if (r.get("purchase_date") or "").strip() else None
                purchase_price = float(r["purchase_price"].strip()) if (r.get("purchase_price") or "").strip() else None
            except ValueError as exc:
                errors.append(f"row {idx}: {exc}")
                continue

            location_id = None
            if location_name:
                location_id = db.execute(
                    select(LocationORM.id).where(LocationORM.name == location_name)
                ).scalar_one_or_none()
                if location_id is None:
                    errors.append(f"row {idx}: unknown location {location_name}")
                    continue

            body = ToolIn(
                name=name,
                description=(r.get("description") or "").strip() or None,
                serial_number=serial_number,
                purchase_date=purchase_date,
                purchase_price=purchase_price,
                location_id=location_id,
                note=(r.get("note") or "").strip() or "Imported from CSV",
            )
            create_tool(db, body, actor=actor, commit=False)
            created += 1
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("tool import created=%s skipped=%s errors=%s", created, skipped, len(errors))
    return {"created": created, "skipped": skipped, "errors": errors}
