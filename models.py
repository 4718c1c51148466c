from pydantic import BaseModel, ConfigDict, field_validator, model_validator
from typing import Optional, Literal
from datetime import date, datetime

ToolStatus = Literal["available", "in_use", "maintenance", "damaged", "lost", "retired"]
ReturnStatus = Literal["active", "pending_return", "returned"]
ReturnCondition = Literal["good", "maintenance", "damaged", "lost"]
EventType = Literal["assigned", "returned", "moved", "status_changed", "created", "updated"]
RequestType = Literal["new", "existing"]
RequestStatus = Literal["pending", "approved", "rejected", "fulfilled"]

TOOL_STATUSES: tuple[str, ...] = ("available", "in_use", "maintenance", "damaged", "lost", "retired")
EVENT_TYPES: tuple[str, ...] = ("assigned", "returned", "moved", "status_changed", "created", "updated")

# 返却ワークフローの状態遷移表
RETURN_TRANSITIONS: dict[str, frozenset[str]] = {
    "active": frozenset({"pending_return", "returned"}),
    "pending_return": frozenset({"returned", "active"}),
    "returned": frozenset(),
}

# 返却時の状態 -> ツールの新ステータス
CONDITION_TO_STATUS: dict[str, str] = {
    "good": "available",
    "maintenance": "maintenance",
    "damaged": "damaged",
    "lost": "lost",
}

REQUEST_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"approved", "rejected"}),
    "approved": frozenset({"fulfilled"}),
    "rejected": frozenset(),
    "fulfilled": frozenset(),
}


class Actor(BaseModel):
    """Acting user as supplied by the identity provider and the location-authorization store."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    is_admin: bool = False
    location_ids: frozenset[str] = frozenset()
    person_id: Optional[str] = None


# ---------- Tool ----------
class ToolIn(BaseModel):
    name: str
    description: Optional[str] = None
    serial_number: Optional[str] = None
    purchase_date: Optional[date] = None
    purchase_price: Optional[float] = None
    location_id: Optional[str] = None
    person_id: Optional[str] = None
    note: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v

class ToolUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    serial_number: Optional[str] = None
    purchase_date: Optional[date] = None
    purchase_price: Optional[float] = None

    # 明示的な null も空文字も不可（未指定は変更なし）
    @field_validator("name")
    @classmethod
    def validate_name(cls, v: Optional[str]) -> str:
        if v is None or not v.strip():
            raise ValueError("name must not be blank")
        return v.strip()

class Tool(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    serial_number: Optional[str] = None
    purchase_date: Optional[date] = None
    purchase_price: Optional[float] = None
    status: ToolStatus = "available"
    location_id: Optional[str] = None
    person_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

class ToolsMeta(BaseModel):
    total: int
    limit: int
    offset: int
    total_pages: int

class StatusChangeIn(BaseModel):
    status: ToolStatus
    note: Optional[str] = None

class RelocateIn(BaseModel):
    location_id: Optional[str] = None
    person_id: Optional[str] = None
    note: Optional[str] = None

class Custody(BaseModel):
    tool_id: str
    kind: Literal["person", "location", "user", "none"]
    source: Literal["assignment", "tool"]
    person_id: Optional[str] = None
    location_id: Optional[str] = None
    user_id: Optional[str] = None
    assignment_id: Optional[str] = None


# ---------- Assignment ----------
class AssignmentTarget(BaseModel):
    person_id: Optional[str] = None
    location_id: Optional[str] = None
    user_id: Optional[str] = None

    @property
    def kind(self) -> Optional[str]:
        if self.person_id and not self.location_id and not self.user_id:
            return "person"
        if self.location_id and not self.person_id:
            return "user" if self.user_id else "location"
        return None

class AssignmentIn(BaseModel):
    tool_id: str
    target: AssignmentTarget
    notes: Optional[str] = None

class ReturnRequestIn(BaseModel):
    condition: ReturnCondition = "good"
    return_location_id: Optional[str] = None
    notes: Optional[str] = None

class AssignmentScope(BaseModel):
    """Rows a non-administrator may list: own user/person custody or authorized locations."""
    user_id: Optional[str] = None
    person_id: Optional[str] = None
    location_ids: frozenset[str] = frozenset()

class AssignmentFilter(BaseModel):
    tool_id: Optional[str] = None
    person_id: Optional[str] = None
    location_id: Optional[str] = None
    assigned_to: Optional[str] = None

class Assignment(BaseModel):
    id: str
    tool_id: str
    person_id: Optional[str] = None
    location_id: Optional[str] = None
    assigned_to: Optional[str] = None
    notes: Optional[str] = None
    assigned_at: datetime
    returned_at: Optional[datetime] = None
    return_status: ReturnStatus = "active"
    return_condition: Optional[ReturnCondition] = None
    return_location_id: Optional[str] = None
    return_notes: Optional[str] = None
    return_requested_at: Optional[datetime] = None
    return_approved_by: Optional[str] = None
    return_approved_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_return_state(self):
        if self.return_status == "returned":
            if self.returned_at is None:
                raise ValueError("returned assignment must have returned_at")
        else:
            if self.returned_at is not None:
                raise ValueError(f"{self.return_status} assignment cannot have returned_at")
        if self.return_status == "pending_return" and self.return_condition is None:
            raise ValueError("pending_return assignment must carry a return_condition")
        if self.return_status == "active" and (
            self.return_condition or self.return_location_id or self.return_notes or self.return_requested_at
        ):
            raise ValueError("active assignment cannot carry return fields")
        return self


# ---------- Event ----------
class ToolEventIn(BaseModel):
    tool_id: str
    event_type: EventType
    from_location_id: Optional[str] = None
    to_location_id: Optional[str] = None
    from_person_id: Optional[str] = None
    to_person_id: Optional[str] = None
    old_status: Optional[ToolStatus] = None
    new_status: Optional[ToolStatus] = None
    notes: Optional[str] = None
    user_id: Optional[str] = None

class ToolEvent(ToolEventIn):
    id: int
    created_at: datetime


# ---------- Tool request ----------
class ToolRequestIn(BaseModel):
    request_type: RequestType = "existing"
    tool_id: Optional[str] = None
    tool_name: Optional[str] = None
    destination_location_id: Optional[str] = None
    notes: Optional[str] = None

class ToolRequest(BaseModel):
    id: str
    requester_id: str
    request_type: RequestType
    tool_id: Optional[str] = None
    tool_name: str
    destination_location_id: str
    notes: Optional[str] = None
    status: RequestStatus = "pending"
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


# ---------- Masters ----------
class LocationIn(BaseModel):
    name: str
    description: Optional[str] = None
    is_base_warehouse: bool = False
    sort_order: int = 0

class Location(LocationIn):
    id: str
    created_at: datetime
    updated_at: datetime

class PersonIn(BaseModel):
    name: str
    email: Optional[str] = None
    user_id: Optional[str] = None

class Person(PersonIn):
    id: str
    created_at: datetime
    updated_at: datetime


# ---------- Analytics ----------
class ToolUsage(BaseModel):
    tool_id: str
    total_usage_days: int
    usage_percentage: int

class DamageCostEntry(BaseModel):
    id: str
    name: str
    total: float
    count: int

class DamageCostReport(BaseModel):
    by_person: list[DamageCostEntry]
    by_location: list[DamageCostEntry]
    total_cost: float
