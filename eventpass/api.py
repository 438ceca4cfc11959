"""FastAPI application for EventPass."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
from typing import Any
import tomllib

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from .access import is_event_owner
from .config import settings
from .crud import (
    get_user_by_auth_uid,
    list_recent_announcements,
    list_schedule_items,
    register_device,
    register_identity,
)
from .database import SessionLocal
from .errors import EventPassError, ForbiddenError, LoginRequiredError
from .events import (
    EVENT_TYPES,
    EventInput,
    ScheduleItemInput,
    add_announcement,
    add_schedule_item,
    count_active_guests,
    create_event,
    delete_event,
    get_event_by_id,
    get_event_by_short_code,
    invite_to_event,
    list_admin_events,
    list_calendar_events,
    list_event_guests,
    list_events_by_type,
    list_events_happening_soon,
    list_public_upcoming_events,
    list_visible_events,
    require_event,
    update_event,
)
from .membership import (
    JoinRequest,
    get_active_membership,
    join_event,
    leave_event,
    list_memberships_for_user,
    update_guest_status,
)
from .models import Announcement, Device, Event, GuestEvent, ScheduleItem, User
from .notify import hub, push_event_notification
from .scheduler import run_in_background, start_scheduler, stop_scheduler
from .storage import init_db
from .utils import parse_datetime
from .visibility import Identity

# Use uvicorn's error logger so messages get the level prefix in the default log
# format.
logger = logging.getLogger("uvicorn.error")


def _load_app_version() -> str:
    """Return the current package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("eventpass")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project = data.get("project") or {}
            return str(project.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    if settings.enable_scheduler:
        start_scheduler()
    try:
        yield
    finally:
        stop_scheduler()


app = FastAPI(title="EventPass", version=APP_VERSION, lifespan=lifespan)


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@app.exception_handler(EventPassError)
async def eventpass_error_handler(request: Request, exc: EventPassError):
    if exc.status_code >= 500:
        logger.error(
            "%s while handling %s %s: %s",
            exc.error,
            request.method,
            request.url.path,
            exc.message,
        )
    return JSONResponse(exc.as_dict(), status_code=exc.status_code)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"detail": exc.detail}, status_code=exc.status_code)


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    raw = str(exc.orig) if getattr(exc, "orig", None) else str(exc)
    if "database is locked" in raw.lower():
        logger.error(
            "SQLite database is locked while handling %s %s",
            request.method,
            request.url.path,
        )
        detail = "The database is busy at the moment. Please try again."
        status = 503
    else:
        logger.error(
            "Operational database error on %s %s: %s",
            request.method,
            request.url.path,
            raw,
        )
        detail = "We hit a database issue. Please try again."
        status = 500
    return JSONResponse({"detail": detail}, status_code=status)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse({"detail": exc.errors()}, status_code=422)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Gracefully handle unexpected errors."""
    logger.exception(
        "Unhandled error while processing %s %s", request.method, request.url.path
    )
    return JSONResponse({"detail": "Internal server error"}, status_code=500)


def _get_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("authorization") or ""
    if not auth_header.lower().startswith("bearer "):
        return None
    token = auth_header.split(" ", 1)[1].strip()
    return token or None


def resolve_identity(db: Session, token: str | None) -> User | None:
    """Map a verified bearer subject to its active user row."""
    return get_user_by_auth_uid(db, token)


def _current_user(request: Request, db: Session) -> User | None:
    return resolve_identity(db, _get_bearer_token(request))


def _require_user(request: Request, db: Session) -> User:
    user = _current_user(request, db)
    if user is None:
        raise LoginRequiredError()
    return user


def _identity(user: User | None) -> Identity | None:
    return Identity.from_user(user) if user is not None else None


def _parse_datetime_param(name: str, raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        return parse_datetime(raw)
    except ValueError as exc:
        raise HTTPException(
            status_code=400, detail=f"Invalid {name}; use ISO8601 format"
        ) from exc


def _publish(
    db: Session,
    event_id: str,
    kind: str,
    payload: dict[str, Any],
    *,
    push: tuple[str, str] | None = None,
) -> None:
    """Commit, then fan out; listeners must never see uncommitted state."""
    db.commit()
    hub.publish(event_id, kind, payload)
    if push is not None:
        title, body = push
        run_in_background(push_event_notification, event_id, title, body, {"type": kind})


def _serialize_user(user: User | None):
    if user is None:
        return None
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role,
    }


def _serialize_schedule_item(item: ScheduleItem):
    return {
        "id": item.id,
        "event_id": item.event_id,
        "title": item.title,
        "description": item.description,
        "start_time": item.start_time.isoformat(),
        "end_time": item.end_time.isoformat(),
        "location": item.location,
        "order_index": item.order_index,
    }


def _serialize_announcement(announcement: Announcement):
    return {
        "id": announcement.id,
        "event_id": announcement.event_id,
        "sender_id": announcement.sender_id,
        "title": announcement.title,
        "message": announcement.message,
        "created_at": announcement.created_at.isoformat(),
    }


def _serialize_guest_event(
    guest_event: GuestEvent,
    *,
    include_user: bool = False,
    include_event: bool = False,
):
    payload = {
        "id": guest_event.id,
        "user_id": guest_event.user_id,
        "event_id": guest_event.event_id,
        "status": guest_event.status,
        "joined_at": guest_event.joined_at.isoformat() if guest_event.joined_at else None,
        "checked_in_at": guest_event.checked_in_at.isoformat()
        if guest_event.checked_in_at
        else None,
        "created_at": guest_event.created_at.isoformat(),
    }
    if include_user:
        payload["user"] = _serialize_user(guest_event.user)
    if include_event:
        payload["event"] = _serialize_event(guest_event.event)
    return payload


def _serialize_event(
    event: Event,
    *,
    guest_count: int | None = None,
    schedule_items: list[ScheduleItem] | None = None,
    announcements: list[Announcement] | None = None,
    membership: GuestEvent | None = None,
    is_owner: bool | None = None,
):
    payload = {
        "id": event.id,
        "short_code": event.short_code,
        "name": event.name,
        "description": event.description,
        "location": event.location,
        "event_type": event.event_type,
        "visibility": event.visibility,
        "start_date": event.start_date.isoformat(),
        "end_date": event.end_date.isoformat(),
        "admin": _serialize_user(event.admin),
        "created_at": event.created_at.isoformat(),
        "last_modified": event.last_modified.isoformat(),
    }
    if guest_count is not None:
        payload["guest_count"] = guest_count
    if schedule_items is not None:
        payload["schedule_items"] = [_serialize_schedule_item(i) for i in schedule_items]
    if announcements is not None:
        payload["announcements"] = [_serialize_announcement(a) for a in announcements]
    if is_owner is not None:
        payload["is_owner"] = is_owner
        payload["membership"] = (
            _serialize_guest_event(membership) if membership is not None else None
        )
    return payload


def _event_detail(db: Session, event: Event, user: User | None):
    identity = _identity(user)
    membership = get_active_membership(db, user.id, event.id) if user else None
    return _serialize_event(
        event,
        guest_count=count_active_guests(db, event.id),
        schedule_items=list(list_schedule_items(db, event.id)),
        announcements=list(list_recent_announcements(db, event.id)),
        membership=membership,
        is_owner=is_event_owner(event, identity),
    )


class RegisterPayload(BaseModel):
    email: str | None = None
    name: str | None = None


class VenuePayload(BaseModel):
    name: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    full_address: str | None = None


class ScheduleItemPayload(BaseModel):
    title: str
    start_time: str = Field(..., description='ISO datetime or clock time like "9:00 AM"')
    end_time: str = Field(..., description='ISO datetime or clock time like "10:30 AM"')
    description: str | None = None
    location: str | None = None
    order_index: int | None = Field(None, ge=0)

    def to_input(self) -> ScheduleItemInput:
        return ScheduleItemInput(**self.model_dump())


class EventCreatePayload(BaseModel):
    name: str
    description: str | None = None
    start_date: str = Field(..., description="ISO datetime string")
    end_date: str = Field(..., description="ISO datetime string after start_date")
    start_time: str | None = Field(None, description='Optional clock time like "9:00 AM"')
    end_time: str | None = Field(None, description='Optional clock time like "5:00 PM"')
    location: str | None = None
    venue: VenuePayload | None = None
    event_type: str | None = None
    visibility: str | None = Field(None, description="PUBLIC, UNLISTED or PRIVATE")
    schedule_items: list[ScheduleItemPayload] = Field(default_factory=list)


class EventUpdatePayload(BaseModel):
    name: str | None = None
    description: str | None = None
    start_date: str | None = Field(None, description="ISO datetime string")
    end_date: str | None = Field(None, description="ISO datetime string")
    location: str | None = None
    venue: VenuePayload | None = None
    event_type: str | None = None
    visibility: str | None = None


class AnnouncementPayload(BaseModel):
    title: str
    message: str


class InvitePayload(BaseModel):
    user_id: str | None = None
    email: str | None = None
    name: str | None = None


class JoinPayload(BaseModel):
    event_id: str | None = None
    short_code: str | None = None
    user_id: str | None = None
    email: str | None = None
    name: str | None = None


class StatusChangePayload(BaseModel):
    status: str


class DevicePayload(BaseModel):
    token: str
    device_type: str = Field(..., description="IOS, ANDROID or WEB")


@app.post("/api/v1/auth/register")
def api_register(
    payload: RegisterPayload, request: Request, db: Session = Depends(get_db)
):
    token = _get_bearer_token(request)
    if not token:
        raise LoginRequiredError()
    user = register_identity(db, auth_uid=token, email=payload.email, name=payload.name)
    return {"user": _serialize_user(user)}


@app.get("/api/v1/events")
def api_list_events(
    request: Request,
    page: int = Query(1, ge=1),
    per_page: int = Query(settings.events_per_page, ge=1),
    q: str | None = Query(None),
    db: Session = Depends(get_db),
):
    user = _current_user(request, db)
    events, pagination = list_visible_events(
        db, _identity(user), page=page, per_page=per_page, search=q
    )
    pagination["query"] = q or ""
    return {
        "events": [_serialize_event(event) for event in events],
        "pagination": pagination,
    }


@app.post("/api/v1/events", status_code=201)
def api_create_event(
    payload: EventCreatePayload, request: Request, db: Session = Depends(get_db)
):
    user = _require_user(request, db)
    data = EventInput(
        name=payload.name,
        description=payload.description,
        start_date=payload.start_date,
        end_date=payload.end_date,
        start_time=payload.start_time,
        end_time=payload.end_time,
        location=payload.location,
        venue=payload.venue.model_dump() if payload.venue else None,
        event_type=payload.event_type,
        visibility=payload.visibility,
        schedule_items=[item.to_input() for item in payload.schedule_items],
    )
    event = create_event(db, user.id, data)
    db.commit()
    return {"event": _event_detail(db, event, user)}


@app.get("/api/v1/events/mine")
def api_my_events(request: Request, db: Session = Depends(get_db)):
    user = _require_user(request, db)
    events = list_admin_events(db, user.id)
    return {
        "events": [
            _serialize_event(event, guest_count=count_active_guests(db, event.id))
            for event in events
        ]
    }


@app.get("/api/v1/events/discover")
def api_discover_events(
    page: int = Query(1, ge=1),
    per_page: int = Query(settings.events_per_page, ge=1),
    db: Session = Depends(get_db),
):
    events, pagination = list_public_upcoming_events(db, page=page, per_page=per_page)
    return {
        "events": [
            _serialize_event(event, guest_count=count_active_guests(db, event.id))
            for event in events
        ],
        "pagination": pagination,
    }


@app.get("/api/v1/events/happening-now")
def api_happening_now(
    limit: int = Query(5, ge=1, le=50), db: Session = Depends(get_db)
):
    events = list_events_happening_soon(db, limit=limit)
    return {"events": [_serialize_event(event) for event in events]}


@app.get("/api/v1/events/types")
def api_event_types():
    return {"types": list(EVENT_TYPES)}


@app.get("/api/v1/events/types/{event_type}")
def api_events_by_type(
    event_type: str,
    request: Request,
    limit: int = Query(5, ge=1, le=50),
    db: Session = Depends(get_db),
):
    user = _current_user(request, db)
    events = list_events_by_type(db, event_type, _identity(user), limit=limit)
    return {"events": [_serialize_event(event) for event in events]}


@app.get("/api/v1/events/code/{short_code}")
def api_get_event_by_code(
    short_code: str, request: Request, db: Session = Depends(get_db)
):
    user = _current_user(request, db)
    event = get_event_by_short_code(db, short_code, _identity(user))
    return {"event": _event_detail(db, event, user)}


@app.get("/api/v1/events/{event_id}")
def api_get_event(event_id: str, request: Request, db: Session = Depends(get_db)):
    user = _current_user(request, db)
    event = get_event_by_id(db, event_id, _identity(user))
    return {"event": _event_detail(db, event, user)}


@app.patch("/api/v1/events/{event_id}")
def api_update_event(
    event_id: str,
    payload: EventUpdatePayload,
    request: Request,
    db: Session = Depends(get_db),
):
    user = _current_user(request, db)
    changes = payload.model_dump(exclude_unset=True)
    event = update_event(db, event_id, _identity(user), changes)
    serialized = _serialize_event(event)
    _publish(
        db,
        event.id,
        "event_updated",
        serialized,
        push=(f"{event.name} was updated", "Check the latest event details."),
    )
    return {"event": serialized}


@app.delete("/api/v1/events/{event_id}", status_code=204)
def api_delete_event(event_id: str, request: Request, db: Session = Depends(get_db)):
    user = _current_user(request, db)
    event = delete_event(db, event_id, _identity(user))
    _publish(db, event.id, "event_deleted", {"id": event.id})
    return Response(status_code=204)


@app.post("/api/v1/events/{event_id}/schedule", status_code=201)
def api_add_schedule_item(
    event_id: str,
    payload: ScheduleItemPayload,
    request: Request,
    db: Session = Depends(get_db),
):
    user = _current_user(request, db)
    item = add_schedule_item(db, event_id, _identity(user), payload.to_input())
    serialized = _serialize_schedule_item(item)
    _publish(
        db,
        event_id,
        "schedule_updated",
        serialized,
        push=("Schedule updated", f"{item.title} was added to the schedule."),
    )
    return {"schedule_item": serialized}


@app.post("/api/v1/events/{event_id}/announcements", status_code=201)
def api_add_announcement(
    event_id: str,
    payload: AnnouncementPayload,
    request: Request,
    db: Session = Depends(get_db),
):
    user = _current_user(request, db)
    announcement = add_announcement(
        db, event_id, _identity(user), title=payload.title, message=payload.message
    )
    serialized = _serialize_announcement(announcement)
    _publish(
        db,
        event_id,
        "announcement",
        serialized,
        push=(announcement.title, announcement.message),
    )
    return {"announcement": serialized}


@app.get("/api/v1/events/{event_id}/guests")
def api_list_guests(event_id: str, request: Request, db: Session = Depends(get_db)):
    user = _current_user(request, db)
    guests = list_event_guests(db, event_id, _identity(user))
    return {
        "guests": [_serialize_guest_event(guest, include_user=True) for guest in guests]
    }


@app.post("/api/v1/events/{event_id}/invites")
def api_invite_guest(
    event_id: str,
    payload: InvitePayload,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
):
    user = _current_user(request, db)
    membership, created = invite_to_event(
        db,
        event_id,
        _identity(user),
        user_id=payload.user_id,
        email=payload.email,
        name=payload.name,
    )
    serialized = _serialize_guest_event(membership, include_user=True)
    if created:
        response.status_code = 201
        _publish(db, event_id, "guest_invited", serialized)
    return {"guest_event": serialized, "created": created}


@app.get("/api/v1/calendar")
def api_calendar(
    request: Request,
    start: str | None = Query(None),
    end: str | None = Query(None),
    db: Session = Depends(get_db),
):
    user = _require_user(request, db)
    start_dt = _parse_datetime_param("start", start)
    end_dt = _parse_datetime_param("end", end)
    events = list_calendar_events(db, user.id, start_dt, end_dt)
    payload_events = []
    for event in events:
        membership = get_active_membership(db, user.id, event.id)
        payload_events.append(
            _serialize_event(
                event,
                schedule_items=list(list_schedule_items(db, event.id)),
                membership=membership,
                is_owner=event.admin_id == user.id,
            )
        )
    return {"events": payload_events}


@app.post("/api/v1/guest-events/join")
def api_join_event(
    payload: JoinPayload,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
):
    user = _current_user(request, db)
    user_id = payload.user_id
    if user_id and (user is None or user_id != user.id):
        raise ForbiddenError("Guests can only join as themselves")
    if not (user_id or payload.email or payload.name) and user is not None:
        user_id = user.id
    result = join_event(
        db,
        JoinRequest(
            event_id=payload.event_id,
            short_code=payload.short_code,
            user_id=user_id,
            email=payload.email,
            name=payload.name,
            caller_id=user.id if user is not None else None,
        ),
    )
    serialized = _serialize_guest_event(result.membership, include_user=True)
    if result.created:
        response.status_code = 201
    if result.created or result.promoted:
        _publish(db, result.event.id, "guest_joined", serialized)
    return {
        "guest_event": serialized,
        "event": _serialize_event(
            result.event,
            schedule_items=list(result.schedule_items),
            announcements=list(result.announcements),
        ),
        "created": result.created,
    }


@app.get("/api/v1/guest-events/mine")
def api_my_memberships(request: Request, db: Session = Depends(get_db)):
    user = _require_user(request, db)
    memberships = list_memberships_for_user(db, user.id)
    return {
        "guest_events": [
            _serialize_guest_event(membership, include_event=True)
            for membership in memberships
        ]
    }


@app.patch("/api/v1/guest-events/{user_id}/{event_id}")
def api_update_guest_status(
    user_id: str,
    event_id: str,
    payload: StatusChangePayload,
    request: Request,
    db: Session = Depends(get_db),
):
    caller = _require_user(request, db)
    event = require_event(db, event_id)
    if caller.id != user_id and not is_event_owner(event, Identity.from_user(caller)):
        raise ForbiddenError("Only the guest or the event admin can change this status")
    membership = update_guest_status(db, user_id, event_id, payload.status)
    serialized = _serialize_guest_event(membership)
    _publish(db, event_id, "guest_status", serialized)
    return {"guest_event": serialized}


@app.delete("/api/v1/guest-events/{event_id}", status_code=204)
def api_leave_event(event_id: str, request: Request, db: Session = Depends(get_db)):
    user = _require_user(request, db)
    leave_event(db, user.id, event_id)
    _publish(db, event_id, "guest_left", {"user_id": user.id, "event_id": event_id})
    return Response(status_code=204)


@app.post("/api/v1/devices", status_code=201)
def api_register_device(
    payload: DevicePayload, request: Request, db: Session = Depends(get_db)
):
    user = _require_user(request, db)
    device: Device = register_device(
        db, user_id=user.id, token=payload.token, device_type=payload.device_type
    )
    return {
        "device": {
            "id": device.id,
            "token": device.token,
            "device_type": device.device_type,
        }
    }
