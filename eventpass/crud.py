"""CRUD helpers for users, schedule items, announcements and devices."""

from __future__ import annotations

from datetime import datetime
from typing import Sequence

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from .config import settings
from .errors import ConflictError, NotFoundError, ValidationError
from .models import Announcement, Device, Event, GuestEvent, ScheduleItem, User
from .utils import to_naive_utc, utcnow

USER_ROLES = {"ADMIN", "GUEST"}
DEVICE_TYPES = {"IOS", "ANDROID", "WEB"}


def _now() -> datetime:
    return utcnow()


def normalize_email(email: str | None) -> str | None:
    cleaned = (email or "").strip().lower()
    return cleaned or None


def get_user(session: Session, user_id: str | None) -> User | None:
    if not user_id:
        return None
    return session.scalars(select(User).where(User.id == user_id)).first()


def require_user(session: Session, user_id: str | None) -> User:
    user = get_user(session, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


def get_user_by_email(session: Session, email: str | None) -> User | None:
    normalized = normalize_email(email)
    if not normalized:
        return None
    return session.scalars(select(User).where(User.email == normalized)).first()


def get_user_by_auth_uid(session: Session, auth_uid: str | None) -> User | None:
    if not auth_uid:
        return None
    return session.scalars(select(User).where(User.auth_uid == auth_uid)).first()


def create_user(
    session: Session,
    *,
    email: str | None,
    name: str | None,
    role: str = "GUEST",
    auth_uid: str | None = None,
) -> User:
    role = role.upper()
    if role not in USER_ROLES:
        raise ValidationError("Invalid user role")
    user = User(
        email=normalize_email(email),
        name=(name or "").strip() or None,
        role=role,
        auth_uid=auth_uid,
        created_at=_now(),
    )
    session.add(user)
    session.flush()
    return user


def ensure_user(session: Session, *, email: str | None, name: str | None) -> User:
    """Return the active user owning ``email`` or provision a new guest."""
    existing = get_user_by_email(session, email)
    if existing:
        if name and not existing.name:
            existing.name = name.strip()
            session.add(existing)
            session.flush()
        return existing
    return create_user(session, email=email, name=name)


def register_identity(
    session: Session, *, auth_uid: str, email: str | None, name: str | None
) -> User:
    """Link an external auth subject to a user row, creating one if needed.

    An email-matched row is only adopted while it has no auth subject of its
    own (guests provisioned by join or invite). An email already bound to a
    different subject raises ``ConflictError``.
    """
    user = get_user_by_auth_uid(session, auth_uid)
    claimed = get_user_by_email(session, email)
    if claimed is not None and claimed.auth_uid and claimed.auth_uid != auth_uid:
        raise ConflictError("Email is already registered to another account")
    if user is None:
        user = claimed
    elif claimed is not None and claimed.id != user.id:
        raise ConflictError("Email is already registered to another account")
    if user is None:
        return create_user(session, email=email, name=name, auth_uid=auth_uid)
    user.auth_uid = auth_uid
    if name:
        user.name = name.strip()
    if email and not user.email:
        user.email = normalize_email(email)
    session.add(user)
    session.flush()
    return user


def create_schedule_item(
    session: Session,
    *,
    event: Event,
    title: str,
    start_time: datetime,
    end_time: datetime,
    description: str | None = None,
    location: str | None = None,
    order_index: int | None = None,
    created_by: str | None = None,
) -> ScheduleItem:
    """Create a schedule item; ``start_time`` must precede ``end_time``."""
    start = to_naive_utc(start_time)
    end = to_naive_utc(end_time)
    if not (title or "").strip():
        raise ValidationError("Schedule item title is required")
    if start >= end:
        raise ValidationError(
            f'End time must be after start time for schedule item "{title}"'
        )
    if order_index is None:
        order_index = len(list_schedule_items(session, event.id))
    if order_index < 0:
        raise ValidationError("order_index must be >= 0")
    item = ScheduleItem(
        event_id=event.id,
        title=title.strip(),
        description=description,
        start_time=start,
        end_time=end,
        location=location,
        order_index=order_index,
        created_by=created_by,
        created_at=_now(),
    )
    session.add(item)
    session.flush()
    return item


def list_schedule_items(session: Session, event_id: str) -> Sequence[ScheduleItem]:
    stmt = (
        select(ScheduleItem)
        .where(ScheduleItem.event_id == event_id)
        .order_by(ScheduleItem.order_index.asc(), ScheduleItem.start_time.asc())
    )
    return session.scalars(stmt).all()


def create_announcement(
    session: Session,
    *,
    event: Event,
    title: str,
    message: str,
    sender_id: str | None = None,
) -> Announcement:
    if not (title or "").strip() or not (message or "").strip():
        raise ValidationError("Announcements need a title and a message")
    announcement = Announcement(
        event_id=event.id,
        sender_id=sender_id,
        title=title.strip(),
        message=message.strip(),
        created_at=_now(),
    )
    session.add(announcement)
    session.flush()
    return announcement


def list_recent_announcements(
    session: Session, event_id: str, *, limit: int | None = None
) -> Sequence[Announcement]:
    stmt = (
        select(Announcement)
        .where(Announcement.event_id == event_id)
        .order_by(Announcement.created_at.desc())
    )
    if limit is None:
        limit = settings.recent_announcements_limit
    if limit and limit > 0:
        stmt = stmt.limit(limit)
    return session.scalars(stmt).all()


def register_device(
    session: Session, *, user_id: str, token: str, device_type: str
) -> Device:
    """Attach a push token to a user; re-registering moves or revives it."""
    device_type = (device_type or "").strip().upper()
    if device_type not in DEVICE_TYPES:
        raise ValidationError("Invalid device type")
    cleaned = (token or "").strip()
    if not cleaned:
        raise ValidationError("Device token is required")
    stmt = (
        select(Device)
        .where(Device.token == cleaned)
        .execution_options(include_deleted=True)
    )
    device = session.scalars(stmt).first()
    if device is None:
        device = Device(
            user_id=user_id,
            token=cleaned,
            device_type=device_type,
            created_at=_now(),
        )
    else:
        device.user_id = user_id
        device.device_type = device_type
        device.deleted_at = None
    session.add(device)
    session.flush()
    return device


def device_tokens_for_event(session: Session, event_id: str) -> list[str]:
    """Push tokens of the event owner and every active guest."""
    guest_ids = select(GuestEvent.user_id).where(
        GuestEvent.event_id == event_id, GuestEvent.deleted_at.is_(None)
    )
    admin_ids = select(Event.admin_id).where(Event.id == event_id)
    stmt = (
        select(Device.token)
        .where(or_(Device.user_id.in_(guest_ids), Device.user_id.in_(admin_ids)))
        .where(Device.deleted_at.is_(None))
        .order_by(Device.created_at.asc())
    )
    return list(dict.fromkeys(session.scalars(stmt).all()))
