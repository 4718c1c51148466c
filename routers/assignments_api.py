from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

import ledger
import returns
from dependencies import get_actor, get_db, require_admin
from filter_helpers import blank_to_none, normalize_view
from models import Actor, Assignment, AssignmentFilter, AssignmentIn, ReturnRequestIn

router = APIRouter()

VIEWS = {
    "active": ledger.list_active,
    "pending": ledger.list_pending,
    "history": ledger.list_history,
}


@router.get("/assignments", response_model=list[Assignment])
def list_assignments_api(
    view: str = "active",
    tool_id: Optional[str] = None,
    person_id: Optional[str] = None,
    location_id: Optional[str] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    flt = AssignmentFilter(
        tool_id=blank_to_none(tool_id),
        person_id=blank_to_none(person_id),
        location_id=blank_to_none(location_id),
    )
    # 一般ユーザーは自分の割当・担当拠点のみ
    return VIEWS[normalize_view(view)](db, flt, scope=ledger.scope_for(actor))


@router.post("/assignments", response_model=Assignment, status_code=201)
def create_assignment_api(
    body: AssignmentIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    return ledger.create_assignment(db, body.tool_id, body.target, actor=actor, notes=body.notes)


@router.get("/assignments/{assignment_id}", response_model=Assignment)
def get_assignment_api(
    assignment_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    # 一覧と同じ範囲のみ参照可（範囲外は存在しない扱い）
    assignment = ledger.get_assignment(db, assignment_id, scope=ledger.scope_for(actor))
    if not assignment:
        raise HTTPException(status_code=404, detail="assignment not found")
    return assignment


@router.get("/assignments/{assignment_id}/can-return")
def can_return_api(
    assignment_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    a = ledger.get_assignment_row(db, assignment_id)
    return {"assignment_id": assignment_id, "can_return": returns.can_return_tool(actor, a)}


@router.post("/assignments/{assignment_id}/return", response_model=Assignment)
def request_return_api(
    assignment_id: str,
    body: ReturnRequestIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    return returns.request_return(
        db,
        assignment_id,
        actor=actor,
        condition=body.condition,
        return_location_id=blank_to_none(body.return_location_id),
        notes=body.notes,
    )


@router.post("/assignments/{assignment_id}/approve", response_model=Assignment)
def approve_return_api(
    assignment_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    return returns.approve_return(db, assignment_id, actor=actor)


@router.post("/assignments/{assignment_id}/reject", response_model=Assignment)
def reject_return_api(
    assignment_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    return returns.reject_return(db, assignment_id, actor=actor)
