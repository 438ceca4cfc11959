"""Event operations: creation, updates, lookups and listings."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Sequence

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .access import authorize_event_access, authorize_event_mutation, build_visibility_filter
from .config import settings
from .crud import create_announcement, create_schedule_item, get_user
from .errors import NotFoundError, ShortCodeAllocationError, ValidationError
from .membership import invite_guest, list_guests_for_event
from .models import Announcement, Event, GuestEvent, ScheduleItem
from .shortcodes import allocate_short_code, code_exists, normalize_code
from .utils import (
    combine_date_and_clock,
    format_venue,
    looks_like_iso,
    parse_datetime,
    to_naive_utc,
    utcnow,
)
from .visibility import Identity, Visibility

logger = logging.getLogger("uvicorn.error")

EVENT_TYPES = ("WEDDING", "BIRTHDAY", "CORPORATE", "COLLEGE_FEST", "OTHER")

UPDATABLE_FIELDS = {
    "name",
    "description",
    "location",
    "venue",
    "event_type",
    "visibility",
    "start_date",
    "end_date",
}


@dataclass
class ScheduleItemInput:
    title: str
    start_time: str | datetime
    end_time: str | datetime
    description: str | None = None
    location: str | None = None
    order_index: int | None = None


@dataclass
class EventInput:
    name: str
    start_date: str | datetime
    end_date: str | datetime
    description: str | None = None
    location: str | None = None
    venue: Mapping[str, str | None] | None = None
    event_type: str | None = None
    visibility: str | None = None
    start_time: str | None = None
    end_time: str | None = None
    schedule_items: list[ScheduleItemInput] = field(default_factory=list)


def _coerce_datetime(raw: str | datetime | None, label: str) -> datetime:
    if raw is None or raw == "":
        raise ValidationError(f"{label} is required")
    try:
        return parse_datetime(raw)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid {label}: {raw!r}") from exc


def _with_clock(day: datetime, clock: str | None) -> datetime:
    if not clock:
        return day
    try:
        return combine_date_and_clock(day, clock)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


def _parse_visibility(raw: str | None) -> str:
    if not raw:
        return Visibility.PUBLIC.value
    try:
        return Visibility.parse(raw).value
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


def _parse_event_type(raw: str | None) -> str:
    if not raw:
        return "OTHER"
    normalized = raw.strip().upper()
    if normalized not in EVENT_TYPES:
        raise ValidationError(f"Invalid event type: {raw!r}")
    return normalized


def _check_range(start: datetime, end: datetime, message: str) -> None:
    if start >= end:
        raise ValidationError(message)


def _resolve_item_time(raw: str | datetime, event_day: datetime, label: str) -> datetime:
    """Schedule times are ISO timestamps or clock strings on the event's first day."""
    if isinstance(raw, datetime):
        return to_naive_utc(raw)
    cleaned = (raw or "").strip()
    if not cleaned:
        raise ValidationError(f"{label} is required")
    if looks_like_iso(cleaned):
        return _coerce_datetime(cleaned, label)
    return _with_clock(event_day, cleaned)


def _resolve_schedule(
    items: Iterable[ScheduleItemInput], event_day: datetime
) -> list[tuple[ScheduleItemInput, datetime, datetime]]:
    resolved = []
    for item in items:
        start = _resolve_item_time(item.start_time, event_day, "start_time")
        end = _resolve_item_time(item.end_time, event_day, "end_time")
        _check_range(
            start,
            end,
            f'End time must be after start time for schedule item "{item.title}"',
        )
        resolved.append((item, start, end))
    return resolved


def _insert_with_fresh_code(session: Session, **values: Any) -> Event:
    """Insert an event, drawing a new short code when the insert loses a race."""
    attempts = settings.event_create_max_attempts
    for attempt in range(1, attempts + 1):
        code = allocate_short_code(session)
        event = Event(short_code=code, **values)
        try:
            with session.begin_nested():
                session.add(event)
        except IntegrityError:
            if not code_exists(session, code):
                raise
            logger.warning(
                "Short code %s was taken at insert time (attempt %d of %d)",
                code,
                attempt,
                attempts,
            )
            continue
        return event
    raise ShortCodeAllocationError(
        f"Could not store the event with a unique short code after {attempts} attempts"
    )


def create_event(session: Session, admin_id: str, data: EventInput) -> Event:
    """Create an event and its initial schedule items in one transaction."""
    admin = get_user(session, admin_id)
    if admin is None:
        raise NotFoundError("Admin user not found")
    name = (data.name or "").strip()
    if not name:
        raise ValidationError("Event name is required")

    start = _with_clock(_coerce_datetime(data.start_date, "start_date"), data.start_time)
    end = _with_clock(_coerce_datetime(data.end_date, "end_date"), data.end_time)
    _check_range(start, end, "end_date must be after start_date")
    schedule = _resolve_schedule(data.schedule_items, start)

    now = utcnow()
    event = _insert_with_fresh_code(
        session,
        admin_id=admin.id,
        name=name,
        description=data.description,
        location=format_venue(data.venue) or data.location,
        event_type=_parse_event_type(data.event_type),
        visibility=_parse_visibility(data.visibility),
        start_date=start,
        end_date=end,
        created_at=now,
        last_modified=now,
    )
    for index, (item, item_start, item_end) in enumerate(schedule):
        create_schedule_item(
            session,
            event=event,
            title=item.title,
            description=item.description,
            start_time=item_start,
            end_time=item_end,
            location=item.location,
            order_index=item.order_index if item.order_index is not None else index,
            created_by=admin.id,
        )
    logger.info(
        "Created %s event %s (%s) with %d schedule items",
        event.visibility,
        event.id,
        event.short_code,
        len(schedule),
    )
    return event


def get_event_by_id(
    session: Session, event_id: str, identity: Identity | None
) -> Event:
    """Visible events only; hidden and missing events both read as NotFound."""
    stmt = select(Event).where(Event.id == event_id, build_visibility_filter(identity))
    event = session.scalars(stmt).first()
    if event is None:
        raise NotFoundError("Event not found")
    return event


def get_event_by_short_code(
    session: Session, code: str, identity: Identity | None = None
) -> Event:
    """Holding the code is enough for PUBLIC and UNLISTED events."""
    normalized = normalize_code(code)
    if not normalized:
        raise ValidationError("Short code is required")
    event = session.scalars(select(Event).where(Event.short_code == normalized)).first()
    if event is None:
        raise NotFoundError("Event not found")
    if event.visibility == Visibility.PRIVATE.value:
        authorize_event_access(session, event, identity)
    return event


def require_event(session: Session, event_id: str) -> Event:
    event = session.scalars(select(Event).where(Event.id == event_id)).first()
    if event is None:
        raise NotFoundError("Event not found")
    return event


def update_event(
    session: Session,
    event_id: str,
    identity: Identity | None,
    changes: Mapping[str, Any],
) -> Event:
    event = require_event(session, event_id)
    authorize_event_mutation(session, event, identity)

    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")

    start = event.start_date
    end = event.end_date
    if "start_date" in changes:
        start = _coerce_datetime(changes["start_date"], "start_date")
    if "end_date" in changes:
        end = _coerce_datetime(changes["end_date"], "end_date")
    if "start_date" in changes or "end_date" in changes:
        _check_range(start, end, "end_date must be after start_date")

    if "name" in changes:
        name = (changes["name"] or "").strip()
        if not name:
            raise ValidationError("Event name is required")
        event.name = name
    if "description" in changes:
        event.description = changes["description"]
    if "location" in changes:
        event.location = changes["location"]
    if changes.get("venue"):
        event.location = format_venue(changes["venue"]) or event.location
    if "event_type" in changes:
        event.event_type = _parse_event_type(changes["event_type"])
    if "visibility" in changes:
        event.visibility = _parse_visibility(changes["visibility"])
    event.start_date = start
    event.end_date = end
    event.last_modified = utcnow()
    session.add(event)
    session.flush()
    logger.info("Updated event %s (%s)", event.id, ", ".join(sorted(changes)))
    return event


def delete_event(session: Session, event_id: str, identity: Identity | None) -> Event:
    event = require_event(session, event_id)
    authorize_event_mutation(session, event, identity)
    event.soft_delete()
    session.add(event)
    session.flush()
    logger.info("Soft-deleted event %s (%s)", event.id, event.short_code)
    return event


def build_pagination(*, page: int, per_page: int, total_events: int) -> dict:
    total_pages = (
        max(1, (total_events + per_page - 1) // per_page) if total_events else 1
    )
    page = max(1, min(page, total_pages)) if total_events else 1
    return {
        "page": page,
        "per_page": per_page,
        "total_pages": total_pages,
        "total_events": total_events,
        "has_prev": page > 1,
        "has_next": page < total_pages and total_events > 0,
        "prev_page": page - 1 if page > 1 else None,
        "next_page": page + 1 if page < total_pages and total_events > 0 else None,
    }


def clamp_per_page(per_page: int | None) -> int:
    if not per_page or per_page < 1:
        return settings.events_per_page
    return min(per_page, settings.max_events_per_page)


def paginate_events(
    session: Session,
    *,
    filters: Iterable | None,
    order_by,
    page: int,
    per_page: int,
) -> tuple[Sequence[Event], dict]:
    filters = [condition for condition in (filters or []) if condition is not None]
    filters.append(Event.deleted_at.is_(None))
    count_stmt = select(func.count()).select_from(Event)
    for condition in filters:
        count_stmt = count_stmt.where(condition)
    total_events = session.scalar(count_stmt) or 0
    pagination = build_pagination(page=page, per_page=per_page, total_events=total_events)
    offset = (pagination["page"] - 1) * per_page if total_events else 0

    stmt = select(Event)
    if isinstance(order_by, (list, tuple)):
        stmt = stmt.order_by(*order_by)
    else:
        stmt = stmt.order_by(order_by)
    for condition in filters:
        stmt = stmt.where(condition)
    stmt = stmt.offset(offset).limit(per_page)
    return session.scalars(stmt).all(), pagination


def _event_search_clause(query: str | None):
    cleaned = (query or "").strip()
    if not cleaned:
        return None
    like = f"%{cleaned}%"
    return or_(
        Event.name.ilike(like),
        Event.description.ilike(like),
        Event.location.ilike(like),
        Event.short_code.ilike(like),
    )


def list_visible_events(
    session: Session,
    identity: Identity | None,
    *,
    page: int = 1,
    per_page: int | None = None,
    search: str | None = None,
) -> tuple[Sequence[Event], dict]:
    return paginate_events(
        session,
        filters=[build_visibility_filter(identity), _event_search_clause(search)],
        order_by=(Event.start_date.asc(), Event.id.asc()),
        page=page,
        per_page=clamp_per_page(per_page),
    )


def list_admin_events(session: Session, admin_id: str) -> Sequence[Event]:
    stmt = (
        select(Event)
        .where(Event.admin_id == admin_id)
        .order_by(Event.start_date.asc(), Event.id.asc())
    )
    return session.scalars(stmt).all()


def list_public_upcoming_events(
    session: Session,
    *,
    page: int = 1,
    per_page: int | None = None,
    now: datetime | None = None,
) -> tuple[Sequence[Event], dict]:
    now = now or utcnow()
    return paginate_events(
        session,
        filters=[
            Event.visibility == Visibility.PUBLIC.value,
            Event.start_date >= now,
        ],
        order_by=(Event.start_date.asc(), Event.id.asc()),
        page=page,
        per_page=clamp_per_page(per_page),
    )


def list_events_happening_soon(
    session: Session, *, limit: int = 5, now: datetime | None = None
) -> Sequence[Event]:
    now = now or utcnow()
    horizon = now + settings.happening_soon_window
    stmt = (
        select(Event)
        .where(
            Event.visibility == Visibility.PUBLIC.value,
            Event.start_date >= now,
            Event.start_date <= horizon,
        )
        .order_by(Event.start_date.asc())
        .limit(limit)
    )
    return session.scalars(stmt).all()


def list_calendar_events(
    session: Session,
    user_id: str,
    start: datetime | None = None,
    end: datetime | None = None,
) -> Sequence[Event]:
    """Events the user runs or belongs to, starting inside ``[start, end]``."""
    start = to_naive_utc(start) or utcnow()
    end = to_naive_utc(end) or start + timedelta(days=settings.calendar_window_days)
    _check_range(start, end, "end must be after start")
    member_of = (
        select(GuestEvent.id)
        .where(
            GuestEvent.event_id == Event.id,
            GuestEvent.user_id == user_id,
            GuestEvent.deleted_at.is_(None),
        )
        .exists()
    )
    stmt = (
        select(Event)
        .where(
            Event.start_date >= start,
            Event.start_date <= end,
            or_(Event.admin_id == user_id, member_of),
        )
        .order_by(Event.start_date.asc())
    )
    return session.scalars(stmt).all()


def list_events_by_type(
    session: Session,
    event_type: str,
    identity: Identity | None,
    *,
    limit: int = 5,
) -> Sequence[Event]:
    normalized = _parse_event_type(event_type)
    stmt = (
        select(Event)
        .where(Event.event_type == normalized, build_visibility_filter(identity))
        .order_by(Event.start_date.asc())
        .limit(limit)
    )
    return session.scalars(stmt).all()


def count_active_guests(session: Session, event_id: str) -> int:
    stmt = select(func.count(GuestEvent.id)).where(
        GuestEvent.event_id == event_id, GuestEvent.deleted_at.is_(None)
    )
    return session.scalar(stmt) or 0


def add_schedule_item(
    session: Session, event_id: str, identity: Identity | None, item: ScheduleItemInput
) -> ScheduleItem:
    event = require_event(session, event_id)
    authorize_event_mutation(session, event, identity)
    ((_, start, end),) = _resolve_schedule([item], event.start_date)
    return create_schedule_item(
        session,
        event=event,
        title=item.title,
        description=item.description,
        start_time=start,
        end_time=end,
        location=item.location,
        order_index=item.order_index,
        created_by=identity.id,
    )


def add_announcement(
    session: Session, event_id: str, identity: Identity | None, *, title: str, message: str
) -> Announcement:
    event = require_event(session, event_id)
    authorize_event_mutation(session, event, identity)
    return create_announcement(
        session, event=event, title=title, message=message, sender_id=identity.id
    )


def list_event_guests(
    session: Session, event_id: str, identity: Identity | None
) -> Sequence[GuestEvent]:
    event = require_event(session, event_id)
    authorize_event_access(session, event, identity)
    return list_guests_for_event(session, event.id)


def invite_to_event(
    session: Session,
    event_id: str,
    identity: Identity | None,
    *,
    user_id: str | None = None,
    email: str | None = None,
    name: str | None = None,
) -> tuple[GuestEvent, bool]:
    event = require_event(session, event_id)
    authorize_event_mutation(session, event, identity)
    return invite_guest(session, event, user_id=user_id, email=email, name=name)
