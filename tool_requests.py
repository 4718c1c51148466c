from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

import registry
from crud import (
    compare_and_set,
    get_tool_row,
    new_id,
    request_to_schema,
    require_location,
    unit_of_work,
    utcnow,
)
from errors import InvalidState, InvalidTarget, NoDestination, NotFound, PermissionDenied
from models import REQUEST_TRANSITIONS, Actor, ToolRequest, ToolRequestIn
from orm import ToolRequestORM

logger = logging.getLogger(__name__)


def get_request_row(db: Session, request_id: str) -> ToolRequestORM:
    row = db.get(ToolRequestORM, request_id)
    if not row:
        raise NotFound(f"tool request {request_id} not found")
    return row


def get_request(db: Session, request_id: str) -> Optional[ToolRequest]:
    row = db.get(ToolRequestORM, request_id)
    return request_to_schema(row) if row else None


def list_requests(
    db: Session,
    *,
    status: Optional[str] = None,
    requester_id: Optional[str] = None,
) -> list[ToolRequest]:
    stmt = select(ToolRequestORM)
    if status:
        stmt = stmt.where(ToolRequestORM.status == status)
    if requester_id:
        stmt = stmt.where(ToolRequestORM.requester_id == requester_id)
    stmt = stmt.order_by(ToolRequestORM.created_at.desc())
    return [request_to_schema(r) for r in db.execute(stmt).scalars().all()]


def _resolve_destination(db: Session, actor: Actor, destination_location_id: Optional[str]) -> str:
    if not actor.is_admin and not actor.location_ids:
        raise NoDestination("you have no authorized location to receive tools")
    if not destination_location_id:
        raise NoDestination("a destination location is required")
    if not actor.is_admin and destination_location_id not in actor.location_ids:
        raise InvalidTarget(f"location {destination_location_id} is not one of your locations")
    require_location(db, destination_location_id)
    return destination_location_id


def create_request(db: Session, body: ToolRequestIn, *, actor: Actor, commit: bool = True) -> ToolRequest:
    destination_location_id = _resolve_destination(db, actor, body.destination_location_id)

    tool_name = (body.tool_name or "").strip()
    tool_id = None
    if body.request_type == "existing":
        if not body.tool_id:
            raise InvalidTarget("an existing-tool request must reference a tool")
        tool = get_tool_row(db, body.tool_id)
        tool_id = tool.id
        tool_name = tool_name or tool.name
    elif not tool_name:
        raise InvalidTarget("a new-tool request needs a tool name")

    now = utcnow()
    r = ToolRequestORM(
        id=new_id(),
        requester_id=actor.user_id,
        request_type=body.request_type,
        tool_id=tool_id,
        tool_name=tool_name,
        destination_location_id=destination_location_id,
        notes=(body.notes or "").strip() or None,
        status="pending",
        created_at=now,
        updated_at=now,
    )
    with unit_of_work(db, commit=commit):
        db.add(r)

    logger.info("tool request created request_id=%s type=%s", r.id, r.request_type)
    return request_to_schema(r)


def cancel_request(db: Session, request_id: str, *, actor: Actor, commit: bool = True) -> bool:
    r = get_request_row(db, request_id)
    if r.requester_id != actor.user_id:
        raise PermissionDenied("only the requester can cancel a request")
    if r.status != "pending":
        raise InvalidState(f"request {request_id} is {r.status}")

    with unit_of_work(db, commit=commit):
        result = db.execute(
            delete(ToolRequestORM).where(ToolRequestORM.id == request_id, ToolRequestORM.status == "pending")
        )
        if result.rowcount != 1:
            raise InvalidState(f"request {request_id} changed concurrently")

    logger.info("tool request cancelled request_id=%s", request_id)
    return True


def _review(db: Session, request_id: str, to_status: str, *, actor: Actor, commit: bool) -> ToolRequestORM:
    if not actor.is_admin:
        raise PermissionDenied("only administrators can review tool requests")

    r = get_request_row(db, request_id)
    if to_status not in REQUEST_TRANSITIONS[r.status]:
        raise InvalidState(f"request {request_id} is {r.status}, cannot become {to_status}")

    now = utcnow()
    with unit_of_work(db, commit=commit):
        ok = compare_and_set(
            db,
            ToolRequestORM,
            request_id,
            expected={"status": r.status},
            values={"status": to_status, "reviewed_by": actor.user_id, "reviewed_at": now, "updated_at": now},
        )
        if not ok:
            raise InvalidState(f"request {request_id} changed concurrently")

    logger.info("tool request %s request_id=%s by=%s", to_status, request_id, actor.user_id)
    return r


def approve_request(db: Session, request_id: str, *, actor: Actor, commit: bool = True) -> ToolRequest:
    return request_to_schema(_review(db, request_id, "approved", actor=actor, commit=commit))


def reject_request(db: Session, request_id: str, *, actor: Actor, commit: bool = True) -> ToolRequest:
    return request_to_schema(_review(db, request_id, "rejected", actor=actor, commit=commit))


def fulfill_request(db: Session, request_id: str, *, actor: Actor, commit: bool = True) -> ToolRequest:
    if not actor.is_admin:
        raise PermissionDenied("only administrators can fulfill tool requests")

    r = get_request_row(db, request_id)
    if r.status != "approved":
        raise InvalidState(f"request {request_id} is {r.status}, not approved")

    now = utcnow()
    with unit_of_work(db, commit=commit):
        ok = compare_and_set(
            db,
            ToolRequestORM,
            request_id,
            expected={"status": "approved"},
            values={"status": "fulfilled", "updated_at": now},
        )
        if not ok:
            raise InvalidState(f"request {request_id} is no longer approved")

        # 既存ツールは届け先へ移動するだけ（割当は作らない）
        if r.tool_id:
            registry.relocate(
                db,
                r.tool_id,
                location_id=r.destination_location_id,
                actor=actor,
                note=f"Moved for tool request {request_id}",
                commit=False,
            )

    logger.info("tool request fulfilled request_id=%s tool_id=%s", request_id, r.tool_id)
    return request_to_schema(r)
