from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

import event_log
from crud import (
    assignment_to_schema,
    compare_and_set,
    get_tool_row,
    new_id,
    require_location,
    require_person,
    unit_of_work,
    utcnow,
)
from errors import InvalidTarget, NotFound, ToolUnavailable
from models import Actor, Assignment, AssignmentFilter, AssignmentScope, AssignmentTarget, ToolEventIn
from orm import AssignmentORM, ToolORM
from registry import open_assignment_row, set_holder

logger = logging.getLogger(__name__)


def get_assignment_row(db: Session, assignment_id: str) -> AssignmentORM:
    row = db.get(AssignmentORM, assignment_id)
    if not row:
        raise NotFound(f"assignment {assignment_id} not found")
    return row


def get_assignment(
    db: Session,
    assignment_id: str,
    *,
    scope: Optional[AssignmentScope] = None,
) -> Optional[Assignment]:
    if scope is None:
        row = db.get(AssignmentORM, assignment_id)
    else:
        stmt = _apply_filter(select(AssignmentORM).where(AssignmentORM.id == assignment_id), None, scope)
        row = db.execute(stmt).scalars().first()
    return assignment_to_schema(row) if row else None


def get_open_assignment(db: Session, tool_id: str) -> Optional[Assignment]:
    row = open_assignment_row(db, tool_id)
    return assignment_to_schema(row) if row else None


def validate_target(db: Session, target: AssignmentTarget) -> str:
    kind = target.kind
    if kind is None:
        raise InvalidTarget("target must be a person, a location, or a user at a location")
    if target.person_id:
        require_person(db, target.person_id)
    if target.location_id:
        require_location(db, target.location_id)
    return kind


def create_assignment(
    db: Session,
    tool_id: str,
    target: AssignmentTarget,
    *,
    actor: Optional[Actor] = None,
    notes: Optional[str] = None,
    commit: bool = True,
) -> Assignment:
    t = get_tool_row(db, tool_id)
    kind = validate_target(db, target)

    if t.status != "available":
        raise ToolUnavailable(f"tool {tool_id} is {t.status}")
    if open_assignment_row(db, tool_id) is not None:
        raise ToolUnavailable(f"tool {tool_id} is already assigned")

    old_status = t.status
    from_location_id, from_person_id = t.location_id, t.person_id
    now = utcnow()

    with unit_of_work(db, commit=commit):
        if not compare_and_set(
            db,
            ToolORM,
            tool_id,
            expected={"status": "available"},
            values={"status": "in_use", "updated_at": now},
        ):
            raise ToolUnavailable(f"tool {tool_id} was taken by a concurrent assignment")

        a = AssignmentORM(
            id=new_id(),
            tool_id=tool_id,
            person_id=target.person_id if kind == "person" else None,
            location_id=target.location_id if kind != "person" else None,
            assigned_to=target.user_id if kind == "user" else None,
            notes=notes,
            assigned_at=now,
            returned_at=None,
            return_status="active",
        )
        db.add(a)
        set_holder(t, a.location_id, a.person_id)
        event_log.append(
            db,
            ToolEventIn(
                tool_id=tool_id,
                event_type="assigned",
                from_location_id=from_location_id,
                to_location_id=a.location_id,
                from_person_id=from_person_id,
                to_person_id=a.person_id,
                old_status=old_status,
                new_status="in_use",
                notes=notes or "Tool assigned",
                user_id=actor.user_id if actor else None,
            ),
            at=now,
        )

    logger.info("tool assigned tool_id=%s assignment_id=%s target=%s", tool_id, a.id, kind)
    return assignment_to_schema(a)


# ---------- read side ----------
def _apply_filter(stmt, flt: Optional[AssignmentFilter], scope: Optional[AssignmentScope]):
    if flt:
        if flt.tool_id:
            stmt = stmt.where(AssignmentORM.tool_id == flt.tool_id)
        if flt.person_id:
            stmt = stmt.where(AssignmentORM.person_id == flt.person_id)
        if flt.location_id:
            stmt = stmt.where(AssignmentORM.location_id == flt.location_id)
        if flt.assigned_to:
            stmt = stmt.where(AssignmentORM.assigned_to == flt.assigned_to)

    # scope=None は管理者（制限なし）
    if scope is not None:
        clauses = []
        if scope.user_id:
            clauses.append(AssignmentORM.assigned_to == scope.user_id)
        if scope.person_id:
            clauses.append(AssignmentORM.person_id == scope.person_id)
        if scope.location_ids:
            clauses.append(AssignmentORM.location_id.in_(sorted(scope.location_ids)))
        if not clauses:
            return stmt.where(AssignmentORM.id.is_(None))
        stmt = stmt.where(or_(*clauses))
    return stmt


def list_active(
    db: Session,
    flt: Optional[AssignmentFilter] = None,
    *,
    scope: Optional[AssignmentScope] = None,
) -> list[Assignment]:
    stmt = select(AssignmentORM).where(
        AssignmentORM.returned_at.is_(None),
        AssignmentORM.return_status == "active",
    )
    stmt = _apply_filter(stmt, flt, scope).order_by(AssignmentORM.assigned_at.desc())
    return [assignment_to_schema(a) for a in db.execute(stmt).scalars().all()]


def list_pending(
    db: Session,
    flt: Optional[AssignmentFilter] = None,
    *,
    scope: Optional[AssignmentScope] = None,
) -> list[Assignment]:
    stmt = select(AssignmentORM).where(AssignmentORM.return_status == "pending_return")
    stmt = _apply_filter(stmt, flt, scope).order_by(AssignmentORM.return_requested_at.desc())
    return [assignment_to_schema(a) for a in db.execute(stmt).scalars().all()]


def list_history(
    db: Session,
    flt: Optional[AssignmentFilter] = None,
    *,
    scope: Optional[AssignmentScope] = None,
) -> list[Assignment]:
    stmt = select(AssignmentORM).where(AssignmentORM.return_status == "returned")
    stmt = _apply_filter(stmt, flt, scope).order_by(AssignmentORM.returned_at.desc())
    return [assignment_to_schema(a) for a in db.execute(stmt).scalars().all()]


def scope_for(actor: Actor) -> Optional[AssignmentScope]:
    if actor.is_admin:
        return None
    return AssignmentScope(user_id=actor.user_id, person_id=actor.person_id, location_ids=actor.location_ids)
