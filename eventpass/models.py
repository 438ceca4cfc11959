"""SQLAlchemy models for EventPass."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    event,
    text,
)
from sqlalchemy.orm import Session, declarative_base, relationship, with_loader_criteria

from .utils import utcnow

Base = declarative_base()

ACTIVE_ROW = text("deleted_at IS NULL")


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return utcnow()


class SoftDeleteMixin:
    """Rows are retired by stamping ``deleted_at`` instead of being removed."""

    deleted_at = Column(DateTime, nullable=True)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def soft_delete(self, *, timestamp: datetime | None = None) -> None:
        self.deleted_at = timestamp or _now()


@event.listens_for(Session, "do_orm_execute")
def _hide_soft_deleted_rows(execute_state) -> None:
    """Scope every ORM SELECT to active rows unless ``include_deleted`` is set."""
    if (
        execute_state.is_select
        and not execute_state.is_column_load
        and not execute_state.is_relationship_load
        and not execute_state.execution_options.get("include_deleted", False)
    ):
        execute_state.statement = execute_state.statement.options(
            with_loader_criteria(
                SoftDeleteMixin,
                lambda cls: cls.deleted_at.is_(None),
                include_aliases=True,
            )
        )


class User(SoftDeleteMixin, Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    auth_uid = Column(String(128), nullable=True, unique=True)
    email = Column(String(255), nullable=True, unique=True)
    name = Column(String(120), nullable=True)
    role = Column(String(16), nullable=False, default="GUEST")
    created_at = Column(DateTime, default=_now, nullable=False)

    events = relationship("Event", back_populates="admin")
    devices = relationship("Device", back_populates="user")


class Event(SoftDeleteMixin, Base):
    __tablename__ = "events"

    id = Column(String(36), primary_key=True, default=_uuid)
    short_code = Column(String(16), nullable=False, unique=True)
    admin_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    location = Column(String(512), nullable=True)
    event_type = Column(String(32), nullable=False, default="OTHER")
    visibility = Column(String(16), nullable=False, default="PUBLIC")
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    admin = relationship("User", back_populates="events")
    schedule_items = relationship(
        "ScheduleItem",
        back_populates="event",
        order_by="ScheduleItem.order_index",
    )
    announcements = relationship(
        "Announcement",
        back_populates="event",
        order_by="desc(Announcement.created_at)",
    )
    guest_events = relationship("GuestEvent", back_populates="event")


class ScheduleItem(SoftDeleteMixin, Base):
    __tablename__ = "schedule_items"

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(String(36), ForeignKey("events.id"), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    location = Column(String(255), nullable=True)
    order_index = Column(Integer, nullable=False, default=0)
    created_by = Column(String(36), ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)

    event = relationship("Event", back_populates="schedule_items")


class Announcement(SoftDeleteMixin, Base):
    __tablename__ = "announcements"

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(String(36), ForeignKey("events.id"), nullable=False)
    sender_id = Column(String(36), ForeignKey("users.id"), nullable=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)

    event = relationship("Event", back_populates="announcements")
    sender = relationship("User")


class GuestEvent(SoftDeleteMixin, Base):
    __tablename__ = "guest_events"
    __table_args__ = (
        Index(
            "uq_guest_events_active_member",
            "user_id",
            "event_id",
            unique=True,
            sqlite_where=ACTIVE_ROW,
            postgresql_where=ACTIVE_ROW,
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    event_id = Column(String(36), ForeignKey("events.id"), nullable=False)
    status = Column(String(16), nullable=False, default="JOINED")
    joined_at = Column(DateTime, nullable=True)
    checked_in_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    user = relationship("User")
    event = relationship("Event", back_populates="guest_events")


class Device(SoftDeleteMixin, Base):
    __tablename__ = "devices"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    token = Column(String(512), nullable=False, unique=True)
    device_type = Column(String(16), nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)

    user = relationship("User", back_populates="devices")


class NotificationLog(Base):
    __tablename__ = "notification_logs"

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(String(36), ForeignKey("events.id"), nullable=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    token = Column(String(512), nullable=False)
    success = Column(Boolean, nullable=False, default=False)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
