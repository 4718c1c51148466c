"""Return workflow on top of an assignment.

States: ``active -> pending_return -> returned`` plus the reject edge
``pending_return -> active``. An administrator's return request skips
``pending_return`` and completes immediately. Each transition is a
compare-and-set on ``return_status`` so two concurrent approvals cannot both
succeed.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

import event_log
from crud import (
    assignment_to_schema,
    compare_and_set,
    get_tool_row,
    require_location,
    tool_to_schema,
    unit_of_work,
    utcnow,
)
from errors import InvalidState, InvalidTransition, NotesRequired, PermissionDenied
from ledger import get_assignment_row
from models import CONDITION_TO_STATUS, RETURN_TRANSITIONS, Actor, Assignment, Tool, ToolEventIn
from orm import AssignmentORM
from registry import open_assignment_row, set_holder, swap_status

logger = logging.getLogger(__name__)


def can_return_tool(actor: Actor, assignment: AssignmentORM | Assignment) -> bool:
    if actor.is_admin:
        return True
    # 人に割り当てたツールはダッシュボードの self_return で返却する
    if not assignment.location_id:
        return False
    return assignment.location_id in actor.location_ids


def _check_transition(a: AssignmentORM, to_status: str) -> None:
    if to_status not in RETURN_TRANSITIONS[a.return_status]:
        raise InvalidState(f"assignment {a.id} is {a.return_status}, cannot move to {to_status}")


def normalize_return(condition: str, return_location_id: Optional[str], notes: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    notes = (notes or "").strip() or None
    if condition != "good" and not notes:
        raise NotesRequired(f"notes are required when returning a tool as {condition}")
    # 紛失したツールに返却先はない
    if condition == "lost":
        return_location_id = None
    return return_location_id, notes


def _event_note(condition: str, notes: Optional[str]) -> str:
    return f"Returned with condition: {condition}" + (f". {notes}" if notes else "")


def _finish_return(
    db: Session,
    a: AssignmentORM,
    *,
    actor: Optional[Actor],
    condition: str,
    return_location_id: Optional[str],
    notes: Optional[str],
    at: datetime,
) -> None:
    """Tool side of a completed return: status mapping, relocation, one ``returned`` event."""
    t = get_tool_row(db, a.tool_id)
    old_status = t.status
    new_status = CONDITION_TO_STATUS[condition]
    from_location_id = a.location_id or t.location_id
    from_person_id = a.person_id or t.person_id

    swap_status(db, t, old_status, new_status)
    set_holder(t, return_location_id, None)
    event_log.append(
        db,
        ToolEventIn(
            tool_id=t.id,
            event_type="returned",
            from_location_id=from_location_id,
            to_location_id=return_location_id,
            from_person_id=from_person_id,
            old_status=old_status,
            new_status=new_status,
            notes=_event_note(condition, notes),
            user_id=actor.user_id if actor else None,
        ),
        at=at,
    )


def request_return(
    db: Session,
    assignment_id: str,
    *,
    actor: Actor,
    condition: str = "good",
    return_location_id: Optional[str] = None,
    notes: Optional[str] = None,
    commit: bool = True,
) -> Assignment:
    a = get_assignment_row(db, assignment_id)
    if a.return_status != "active":
        raise InvalidState(f"assignment {assignment_id} is {a.return_status}")
    if not can_return_tool(actor, a):
        raise PermissionDenied("not authorized to return tools for this assignment")

    return_location_id, notes = normalize_return(condition, return_location_id, notes)
    if return_location_id:
        require_location(db, return_location_id)

    now = utcnow()
    if actor.is_admin:
        _check_transition(a, "returned")
        with unit_of_work(db, commit=commit):
            ok = compare_and_set(
                db,
                AssignmentORM,
                a.id,
                expected={"return_status": "active"},
                values={
                    "return_status": "returned",
                    "returned_at": now,
                    "return_condition": condition,
                    "return_location_id": return_location_id,
                    "return_notes": notes,
                    "return_requested_at": now,
                    "return_approved_by": actor.user_id,
                    "return_approved_at": now,
                },
            )
            if not ok:
                raise InvalidState(f"assignment {assignment_id} changed concurrently")
            _finish_return(
                db,
                a,
                actor=actor,
                condition=condition,
                return_location_id=return_location_id,
                notes=notes,
                at=now,
            )
        logger.info("tool returned directly assignment_id=%s condition=%s", assignment_id, condition)
        return assignment_to_schema(a)

    _check_transition(a, "pending_return")
    with unit_of_work(db, commit=commit):
        ok = compare_and_set(
            db,
            AssignmentORM,
            a.id,
            expected={"return_status": "active"},
            values={
                "return_status": "pending_return",
                "return_requested_at": now,
                "return_condition": condition,
                "return_location_id": return_location_id,
                "return_notes": notes,
            },
        )
        if not ok:
            raise InvalidState(f"assignment {assignment_id} changed concurrently")
        event_log.append(
            db,
            ToolEventIn(
                tool_id=a.tool_id,
                event_type="updated",
                notes=f"Return requested with condition: {condition}" + (f". {notes}" if notes else ""),
                user_id=actor.user_id,
            ),
            at=now,
        )

    logger.info("return requested assignment_id=%s condition=%s", assignment_id, condition)
    return assignment_to_schema(a)


def approve_return(db: Session, assignment_id: str, *, actor: Actor, commit: bool = True) -> Assignment:
    if not actor.is_admin:
        raise PermissionDenied("only administrators can approve returns")

    a = get_assignment_row(db, assignment_id)
    _check_transition(a, "returned")
    if a.return_status != "pending_return":
        raise InvalidState(f"assignment {assignment_id} is {a.return_status}, not pending_return")

    now = utcnow()
    with unit_of_work(db, commit=commit):
        ok = compare_and_set(
            db,
            AssignmentORM,
            a.id,
            expected={"return_status": "pending_return"},
            values={
                "return_status": "returned",
                "returned_at": now,
                "return_approved_by": actor.user_id,
                "return_approved_at": now,
            },
        )
        if not ok:
            logger.warning("approve race lost assignment_id=%s", assignment_id)
            raise InvalidState(f"assignment {assignment_id} is no longer pending_return")
        _finish_return(
            db,
            a,
            actor=actor,
            condition=a.return_condition or "good",
            return_location_id=a.return_location_id,
            notes=a.return_notes,
            at=now,
        )

    logger.info("return approved assignment_id=%s by=%s", assignment_id, actor.user_id)
    return assignment_to_schema(a)


def reject_return(db: Session, assignment_id: str, *, actor: Actor, commit: bool = True) -> Assignment:
    if not actor.is_admin:
        raise PermissionDenied("only administrators can reject returns")

    a = get_assignment_row(db, assignment_id)
    _check_transition(a, "active")

    with unit_of_work(db, commit=commit):
        ok = compare_and_set(
            db,
            AssignmentORM,
            a.id,
            expected={"return_status": "pending_return"},
            values={
                "return_status": "active",
                "return_requested_at": None,
                "return_location_id": None,
                "return_condition": None,
                "return_notes": None,
            },
        )
        if not ok:
            raise InvalidState(f"assignment {assignment_id} is no longer pending_return")
        event_log.append(
            db,
            ToolEventIn(
                tool_id=a.tool_id,
                event_type="updated",
                notes="Return request rejected",
                user_id=actor.user_id,
            ),
        )

    logger.info("return rejected assignment_id=%s by=%s", assignment_id, actor.user_id)
    return assignment_to_schema(a)


def self_return(db: Session, tool_id: str, *, actor: Actor, commit: bool = True) -> Tool:
    """Holder hands a person-held tool back without the approval workflow."""
    if not actor.person_id:
        raise PermissionDenied("no person is linked to this user")

    t = get_tool_row(db, tool_id)
    a = open_assignment_row(db, tool_id)
    now = utcnow()

    if a is not None:
        if a.person_id != actor.person_id:
            raise PermissionDenied(f"tool {tool_id} is not held by this user")
        if a.return_status != "active":
            raise InvalidState(f"assignment {a.id} is {a.return_status}")
        with unit_of_work(db, commit=commit):
            ok = compare_and_set(
                db,
                AssignmentORM,
                a.id,
                expected={"return_status": "active"},
                values={
                    "return_status": "returned",
                    "returned_at": now,
                    "return_condition": "good",
                },
            )
            if not ok:
                raise InvalidState(f"assignment {a.id} changed concurrently")
            _finish_return(db, a, actor=actor, condition="good", return_location_id=None, notes=None, at=now)
        logger.info("tool self-returned tool_id=%s assignment_id=%s", tool_id, a.id)
        return tool_to_schema(t)

    if t.person_id != actor.person_id:
        raise PermissionDenied(f"tool {tool_id} is not held by this user")
    if t.status != "available":
        raise InvalidTransition(f"tool {tool_id} is {t.status} and cannot be self-returned")

    with unit_of_work(db, commit=commit):
        from_person_id = t.person_id
        set_holder(t, None, None)
        event_log.append(
            db,
            ToolEventIn(
                tool_id=tool_id,
                event_type="returned",
                from_person_id=from_person_id,
                old_status=t.status,
                new_status="available",
                notes="Returned by holder",
                user_id=actor.user_id,
            ),
            at=now,
        )

    logger.info("tool self-returned tool_id=%s", tool_id)
    return tool_to_schema(t)
