from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

import event_log
from csv_utils import rows_to_csv_response
from dependencies import get_actor, get_db, require_admin
from filter_helpers import (
    blank_to_none,
    normalize_event_type,
    normalize_limit,
    normalize_offset,
    parse_datetime,
)
from models import Actor, ToolEvent

router = APIRouter()


@router.get("/events", response_model=list[ToolEvent])
def list_events_api(
    tool_id: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    event_type: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    history = event_log.query(
        db,
        tool_id=blank_to_none(tool_id),
        start=parse_datetime(start),
        end=parse_datetime(end),
        event_type=normalize_event_type(event_type),
    )
    return history.page(limit=normalize_limit(limit), offset=normalize_offset(offset))


@router.get("/events/export")
def export_events_api(
    tool_id: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    event_type: Optional[str] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    history = event_log.query(
        db,
        tool_id=blank_to_none(tool_id),
        start=parse_datetime(start),
        end=parse_datetime(end),
        event_type=normalize_event_type(event_type),
    )
    # StreamingResponse は DB セッションが閉じた後に流れるので先に実体化する
    return rows_to_csv_response(list(history), filename="tool_events.csv")
