from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from sqlalchemy.orm import Session

import analytics
import crud
import event_log
import registry
import returns
from csv_utils import csv_bytes_to_rows
from dependencies import get_actor, get_db, require_admin
from filter_helpers import (
    blank_to_none,
    normalize_limit,
    normalize_offset,
    normalize_order,
    normalize_sort,
    normalize_status,
)
from models import Actor, Custody, RelocateIn, StatusChangeIn, Tool, ToolEvent, ToolIn, ToolUpdate, ToolUsage, ToolsMeta

router = APIRouter()


@router.get("/tools", response_model=list[Tool])
def list_tools_api(
    q: Optional[str] = None,
    status: Optional[str] = None,
    location_id: Optional[str] = None,
    person_id: Optional[str] = None,
    sort: str = "name",
    order: str = "asc",
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    return crud.list_tools_filtered(
        db,
        q=q,
        status=normalize_status(status),
        location_id=blank_to_none(location_id),
        person_id=blank_to_none(person_id),
        sort=normalize_sort(sort),
        order=normalize_order(order),
        limit=normalize_limit(limit),
        offset=normalize_offset(offset),
    )


@router.get("/tools/meta", response_model=ToolsMeta)
def tools_meta_api(
    q: Optional[str] = None,
    status: Optional[str] = None,
    location_id: Optional[str] = None,
    person_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    meta = crud.tools_meta(
        db,
        q=q,
        status=normalize_status(status),
        location_id=blank_to_none(location_id),
        person_id=blank_to_none(person_id),
        limit=normalize_limit(limit),
        offset=normalize_offset(offset),
    )
    return ToolsMeta(**meta)


@router.post("/tools", response_model=Tool, status_code=201)
def create_tool_api(
    body: ToolIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    if body.serial_number and crud.serial_number_exists(db, body.serial_number):
        raise HTTPException(status_code=409, detail="serial_number already exists")
    return registry.create_tool(db, body, actor=actor)


@router.post("/tools/import")
async def import_tools_api(
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    data = await file.read()
    rows, err = csv_bytes_to_rows(data)
    if err:
        raise HTTPException(status_code=400, detail=err)
    return registry.import_tools(db, rows, actor=actor)


@router.get("/tools/{tool_id}", response_model=Tool)
def get_tool_api(
    tool_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    tool = crud.get_tool(db, tool_id)
    if not tool:
        raise HTTPException(status_code=404, detail="tool not found")
    return tool


@router.patch("/tools/{tool_id}", response_model=Tool)
def update_tool_api(
    tool_id: str,
    body: ToolUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    if body.serial_number and crud.serial_number_exists(db, body.serial_number, exclude_tool_id=tool_id):
        raise HTTPException(status_code=409, detail="serial_number already exists")
    return registry.update_tool(db, tool_id, body, actor=actor)


@router.post("/tools/{tool_id}/status", response_model=Tool)
def set_status_api(
    tool_id: str,
    body: StatusChangeIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    return registry.set_status(db, tool_id, body.status, actor=actor, note=body.note)


@router.post("/tools/{tool_id}/relocate", response_model=Tool)
def relocate_api(
    tool_id: str,
    body: RelocateIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    return registry.relocate(
        db,
        tool_id,
        location_id=blank_to_none(body.location_id),
        person_id=blank_to_none(body.person_id),
        actor=actor,
        note=body.note,
    )


@router.post("/tools/{tool_id}/return-to-service", response_model=Tool)
def return_to_service_api(
    tool_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    return registry.return_to_service(db, tool_id, actor=actor)


@router.post("/tools/{tool_id}/self-return", response_model=Tool)
def self_return_api(
    tool_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    return returns.self_return(db, tool_id, actor=actor)


@router.get("/tools/{tool_id}/custody", response_model=Custody)
def custody_api(
    tool_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    return registry.current_custody(db, tool_id)


@router.get("/tools/{tool_id}/events", response_model=list[ToolEvent])
def tool_events_api(
    tool_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    crud.get_tool_row(db, tool_id)
    return list(event_log.query(db, tool_id=tool_id))


@router.get("/tools/{tool_id}/usage", response_model=ToolUsage)
def tool_usage_api(
    tool_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    return analytics.tool_usage(db, tool_id)
