from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

import tool_requests
from dependencies import get_actor, get_db, require_admin
from filter_helpers import normalize_request_status
from models import Actor, ToolRequest, ToolRequestIn

router = APIRouter()


@router.get("/requests", response_model=list[ToolRequest])
def list_requests_api(
    status: Optional[str] = None,
    mine: bool = False,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    requester_id = actor.user_id if (mine or not actor.is_admin) else None
    return tool_requests.list_requests(db, status=normalize_request_status(status), requester_id=requester_id)


@router.post("/requests", response_model=ToolRequest, status_code=201)
def create_request_api(
    body: ToolRequestIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    return tool_requests.create_request(db, body, actor=actor)


@router.delete("/requests/{request_id}", status_code=204)
def cancel_request_api(
    request_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    tool_requests.cancel_request(db, request_id, actor=actor)
    return None


@router.post("/requests/{request_id}/approve", response_model=ToolRequest)
def approve_request_api(
    request_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    return tool_requests.approve_request(db, request_id, actor=actor)


@router.post("/requests/{request_id}/reject", response_model=ToolRequest)
def reject_request_api(
    request_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    return tool_requests.reject_request(db, request_id, actor=actor)


@router.post("/requests/{request_id}/fulfill", response_model=ToolRequest)
def fulfill_request_api(
    request_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    return tool_requests.fulfill_request(db, request_id, actor=actor)
