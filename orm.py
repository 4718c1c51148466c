from datetime import date, datetime
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from db import Base

class LocationORM(Base):
    __tablename__ = "locations"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_base_warehouse: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class PersonORM(Base):
    __tablename__ = "people"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False, index=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    # 認証側のユーザーIDとの紐付け（任意）
    user_id: Mapped[str | None] = mapped_column(String, nullable=True, unique=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class UserLocationORM(Base):
    __tablename__ = "user_locations"
    __table_args__ = (UniqueConstraint("user_id", "location_id", name="uq_user_locations_user_location"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    location_id: Mapped[str] = mapped_column(String, ForeignKey("locations.id"), nullable=False, index=True)
    assigned_by: Mapped[str | None] = mapped_column(String, nullable=True)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ToolORM(Base):
    __tablename__ = "tools"
    __table_args__ = (
        CheckConstraint(
            "status IN ('available', 'in_use', 'maintenance', 'damaged', 'lost', 'retired')",
            name="ck_tools_status",
        ),
        CheckConstraint(
            "location_id IS NULL OR person_id IS NULL",
            name="ck_tools_single_holder",
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    serial_number: Mapped[str | None] = mapped_column(String, nullable=True, unique=True, index=True)
    purchase_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    purchase_price: Mapped[float | None] = mapped_column(Numeric(12, 2, asdecimal=False), nullable=True)

    status: Mapped[str] = mapped_column(String, nullable=False, default="available", index=True)

    # 未割当ツールのフォールバック所在。アクティブな割当があればそちらが優先
    location_id: Mapped[str | None] = mapped_column(String, ForeignKey("locations.id"), nullable=True, index=True)
    person_id: Mapped[str | None] = mapped_column(String, ForeignKey("people.id"), nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class AssignmentORM(Base):
    __tablename__ = "tool_assignments"
    __table_args__ = (
        CheckConstraint(
            "return_status IN ('active', 'pending_return', 'returned')",
            name="ck_assignments_return_status",
        ),
        CheckConstraint(
            "return_condition IS NULL OR return_condition IN ('good', 'maintenance', 'damaged', 'lost')",
            name="ck_assignments_return_condition",
        ),
        CheckConstraint(
            "(return_status = 'returned' AND returned_at IS NOT NULL)"
            " OR (return_status != 'returned' AND returned_at IS NULL)",
            name="ck_assignments_returned_at",
        ),
        CheckConstraint(
            "return_status != 'active' OR (return_condition IS NULL AND return_requested_at IS NULL"
            " AND return_location_id IS NULL AND return_notes IS NULL)",
            name="ck_assignments_active_clean",
        ),
        CheckConstraint(
            "(person_id IS NOT NULL AND location_id IS NULL AND assigned_to IS NULL)"
            " OR (person_id IS NULL AND location_id IS NOT NULL)",
            name="ck_assignments_target",
        ),
        # 1ツールにつき未返却の割当は1件まで
        Index(
            "uq_tool_assignments_open",
            "tool_id",
            unique=True,
            sqlite_where=text("returned_at IS NULL"),
            postgresql_where=text("returned_at IS NULL"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tool_id: Mapped[str] = mapped_column(String, ForeignKey("tools.id"), nullable=False, index=True)

    person_id: Mapped[str | None] = mapped_column(String, ForeignKey("people.id"), nullable=True, index=True)
    location_id: Mapped[str | None] = mapped_column(String, ForeignKey("locations.id"), nullable=True, index=True)
    assigned_to: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    returned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    return_status: Mapped[str] = mapped_column(String, nullable=False, default="active", index=True)
    return_condition: Mapped[str | None] = mapped_column(String, nullable=True)
    return_location_id: Mapped[str | None] = mapped_column(String, ForeignKey("locations.id"), nullable=True)
    return_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    return_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    return_approved_by: Mapped[str | None] = mapped_column(String, nullable=True)
    return_approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ToolEventORM(Base):
    __tablename__ = "tool_event_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tool_id: Mapped[str] = mapped_column(String, ForeignKey("tools.id"), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String, nullable=False, index=True)

    from_location_id: Mapped[str | None] = mapped_column(String, ForeignKey("locations.id"), nullable=True)
    to_location_id: Mapped[str | None] = mapped_column(String, ForeignKey("locations.id"), nullable=True)
    from_person_id: Mapped[str | None] = mapped_column(String, ForeignKey("people.id"), nullable=True)
    to_person_id: Mapped[str | None] = mapped_column(String, ForeignKey("people.id"), nullable=True)
    old_status: Mapped[str | None] = mapped_column(String, nullable=True)
    new_status: Mapped[str | None] = mapped_column(String, nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class ToolRequestORM(Base):
    __tablename__ = "tool_requests"
    __table_args__ = (
        CheckConstraint("request_type IN ('new', 'existing')", name="ck_tool_requests_type"),
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'fulfilled')",
            name="ck_tool_requests_status",
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    requester_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    request_type: Mapped[str] = mapped_column(String, nullable=False)
    tool_id: Mapped[str | None] = mapped_column(String, ForeignKey("tools.id"), nullable=True, index=True)
    tool_name: Mapped[str] = mapped_column(String, nullable=False)
    destination_location_id: Mapped[str] = mapped_column(String, ForeignKey("locations.id"), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String, nullable=False, default="pending", index=True)
    reviewed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# イベントログは追記専用
@event.listens_for(ToolEventORM, "before_update")
def _reject_event_update(mapper, connection, target):
    raise ValueError(f"tool event {target.id} is append-only and cannot be updated")


@event.listens_for(ToolEventORM, "before_delete")
def _reject_event_delete(mapper, connection, target):
    raise ValueError(f"tool event {target.id} is append-only and cannot be deleted")
