from datetime import datetime
from typing import Optional

from models import EVENT_TYPES, TOOL_STATUSES

VALID_STATUSES = set(TOOL_STATUSES)
VALID_EVENT_TYPES = set(EVENT_TYPES)
VALID_REQUEST_STATUSES = {"pending", "approved", "rejected", "fulfilled"}
VALID_ASSIGNMENT_VIEWS = {"active", "pending", "history"}
VALID_SORTS = {"name", "serial_number", "status", "purchase_date", "updated_at"}
VALID_ORDERS = {"asc", "desc"}


def blank_to_none(value: Optional[str]) -> Optional[str]:
    if value == "":
        return None
    return value


def normalize_status(status: Optional[str]) -> Optional[str]:
    if status in VALID_STATUSES:
        return status
    return None


def normalize_event_type(event_type: Optional[str]) -> Optional[str]:
    if event_type in VALID_EVENT_TYPES:
        return event_type
    return None


def normalize_request_status(status: Optional[str]) -> Optional[str]:
    if status in VALID_REQUEST_STATUSES:
        return status
    return None


def normalize_view(view: str) -> str:
    if view in VALID_ASSIGNMENT_VIEWS:
        return view
    return "active"


def normalize_sort(sort: str) -> str:
    if sort in VALID_SORTS:
        return sort
    return "name"


def normalize_order(order: str) -> str:
    if order in VALID_ORDERS:
        return order
    return "asc"


def normalize_limit(limit: int, *, min_value: int = 1, max_value: int = 500) -> int:
    if limit < min_value:
        return min_value
    if limit > max_value:
        return max_value
    return limit


def normalize_offset(offset: int) -> int:
    if offset < 0:
        return 0
    return offset


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    # "YYYY-MM-DD" or ISO datetime; 不正な値は無視
    value = blank_to_none(value)
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None
