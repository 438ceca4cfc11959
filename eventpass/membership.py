"""Guest membership lifecycle.

A membership (``GuestEvent``) moves through ``INVITED -> JOINED ->
CHECKED_IN``. Leaving is not a status: it soft-deletes the row and freezes
whatever status it had, and a later join starts a fresh row.

``transition`` is the whole state machine. It is pure, so the service
functions below only load rows, call it, and write back what changed.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .crud import (
    ensure_user,
    get_user_by_email,
    list_recent_announcements,
    list_schedule_items,
    require_user,
)
from .errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from .models import Announcement, Event, GuestEvent, ScheduleItem, User
from .shortcodes import normalize_code
from .utils import utcnow
from .visibility import Visibility

logger = logging.getLogger("uvicorn.error")


class GuestStatus(str, enum.Enum):
    INVITED = "INVITED"
    JOINED = "JOINED"
    CHECKED_IN = "CHECKED_IN"

    @classmethod
    def parse(cls, raw: "str | GuestStatus | None") -> "GuestStatus":
        if isinstance(raw, cls):
            return raw
        try:
            return cls((raw or "").strip().upper())
        except ValueError as exc:
            raise ValidationError(f"Invalid guest status: {raw!r}") from exc


class MembershipAction(str, enum.Enum):
    INVITE = "invite"
    JOIN = "join"
    SET_STATUS = "set_status"


@dataclass(frozen=True)
class MembershipState:
    status: GuestStatus
    joined_at: datetime | None = None
    checked_in_at: datetime | None = None

    @classmethod
    def of(cls, guest_event: GuestEvent) -> "MembershipState":
        return cls(
            status=GuestStatus(guest_event.status),
            joined_at=guest_event.joined_at,
            checked_in_at=guest_event.checked_in_at,
        )


def transition(
    state: MembershipState | None,
    action: MembershipAction,
    *,
    now: datetime,
    target: GuestStatus | None = None,
) -> MembershipState:
    """Return the state after ``action``; an unchanged state means a no-op."""
    if state is None:
        if action is MembershipAction.INVITE:
            return MembershipState(GuestStatus.INVITED)
        if action is MembershipAction.JOIN:
            return MembershipState(GuestStatus.JOINED, joined_at=now)
        raise ValueError("A membership starts with an invite or a join")

    if action is MembershipAction.INVITE:
        return state

    if action is MembershipAction.JOIN:
        if state.status is GuestStatus.INVITED:
            return replace(state, status=GuestStatus.JOINED, joined_at=now)
        return state

    if target is None:
        raise ValueError("A status update needs a target status")
    if target is GuestStatus.JOINED:
        if state.status is GuestStatus.JOINED:
            return state
        return replace(state, status=GuestStatus.JOINED, joined_at=now)
    if target is GuestStatus.CHECKED_IN:
        # the first check-in time is kept on repeats
        if state.status is GuestStatus.CHECKED_IN:
            return state
        return replace(state, status=GuestStatus.CHECKED_IN, checked_in_at=now)
    return replace(state, status=target)


@dataclass(frozen=True)
class JoinRequest:
    event_id: str | None = None
    short_code: str | None = None
    user_id: str | None = None
    email: str | None = None
    name: str | None = None
    # user behind the request, if signed in
    caller_id: str | None = None


@dataclass
class JoinResult:
    membership: GuestEvent
    event: Event
    schedule_items: Sequence[ScheduleItem]
    announcements: Sequence[Announcement]
    created: bool
    promoted: bool = False


def get_active_membership(
    session: Session, user_id: str, event_id: str
) -> GuestEvent | None:
    stmt = select(GuestEvent).where(
        GuestEvent.user_id == user_id,
        GuestEvent.event_id == event_id,
        GuestEvent.deleted_at.is_(None),
    )
    return session.scalars(stmt).first()


def has_active_membership(session: Session, user_id: str, event_id: str) -> bool:
    return get_active_membership(session, user_id, event_id) is not None


def require_active_membership(
    session: Session, user_id: str, event_id: str
) -> GuestEvent:
    membership = get_active_membership(session, user_id, event_id)
    if membership is None:
        raise NotFoundError("Guest event not found")
    return membership


def _write_state(guest_event: GuestEvent, state: MembershipState) -> None:
    guest_event.status = state.status.value
    guest_event.joined_at = state.joined_at
    guest_event.checked_in_at = state.checked_in_at
    guest_event.last_modified = utcnow()


def _apply(
    session: Session,
    guest_event: GuestEvent,
    action: MembershipAction,
    *,
    target: GuestStatus | None = None,
) -> bool:
    current = MembershipState.of(guest_event)
    updated = transition(current, action, now=utcnow(), target=target)
    if updated == current:
        return False
    _write_state(guest_event, updated)
    session.add(guest_event)
    session.flush()
    logger.info(
        "Membership %s moved %s -> %s (%s)",
        guest_event.id,
        current.status.value,
        updated.status.value,
        action.value,
    )
    return True


def _insert_membership(
    session: Session, *, user_id: str, event_id: str, action: MembershipAction
) -> tuple[GuestEvent, bool]:
    """Insert a new active row; on a lost race return the winner's row.

    The partial unique index on (user_id, event_id) for active rows is the
    arbiter. The insert runs in a SAVEPOINT so losing the race leaves the
    outer transaction usable.
    """
    now = utcnow()
    state = transition(None, action, now=now)
    guest_event = GuestEvent(user_id=user_id, event_id=event_id, created_at=now)
    _write_state(guest_event, state)
    try:
        with session.begin_nested():
            session.add(guest_event)
    except IntegrityError:
        existing = get_active_membership(session, user_id, event_id)
        if existing is None:
            raise
        logger.info(
            "Concurrent membership insert for user %s on event %s; reusing %s",
            user_id,
            event_id,
            existing.id,
        )
        return existing, False
    return guest_event, True


def _resolve_event(session: Session, request: JoinRequest) -> Event:
    if request.event_id:
        stmt = select(Event).where(Event.id == request.event_id)
    elif request.short_code:
        stmt = select(Event).where(Event.short_code == normalize_code(request.short_code))
    else:
        raise ValidationError("Either event_id or short_code must be provided")
    event = session.scalars(stmt).first()
    if event is None:
        raise NotFoundError("Event not found")
    return event


def _resolve_user(
    session: Session,
    *,
    user_id: str | None,
    email: str | None,
    name: str | None,
) -> User:
    if user_id:
        return require_user(session, user_id)
    if email or name:
        return ensure_user(session, email=email, name=name)
    raise ValidationError("Either user_id or email/name must be provided")


def join_event(session: Session, request: JoinRequest) -> JoinResult:
    """Self-service join by event id or short code.

    Idempotent: an existing INVITED row is promoted, JOINED and CHECKED_IN
    rows come back untouched. Joining by the email of a signed-up account
    is only allowed for that account itself.
    """
    event = _resolve_event(session, request)
    if event.visibility == Visibility.PRIVATE.value:
        raise ForbiddenError("Event is private")
    if not request.user_id:
        claimed = get_user_by_email(session, request.email)
        if claimed is not None and claimed.auth_uid and claimed.id != request.caller_id:
            raise ConflictError("Email belongs to a registered account; sign in to join")
    user = _resolve_user(
        session, user_id=request.user_id, email=request.email, name=request.name
    )

    created = promoted = False
    membership = get_active_membership(session, user.id, event.id)
    if membership is None:
        membership, created = _insert_membership(
            session, user_id=user.id, event_id=event.id, action=MembershipAction.JOIN
        )
    if not created:
        promoted = _apply(session, membership, MembershipAction.JOIN)
    else:
        logger.info("User %s joined event %s", user.id, event.id)

    return JoinResult(
        membership=membership,
        event=event,
        schedule_items=list_schedule_items(session, event.id),
        announcements=list_recent_announcements(session, event.id),
        created=created,
        promoted=promoted,
    )


def invite_guest(
    session: Session,
    event: Event,
    *,
    user_id: str | None = None,
    email: str | None = None,
    name: str | None = None,
) -> tuple[GuestEvent, bool]:
    """Create an INVITED membership; the way guests get into private events.

    Returns the membership and whether a new row was created. Existing
    memberships are never downgraded.
    """
    user = _resolve_user(session, user_id=user_id, email=email, name=name)
    membership = get_active_membership(session, user.id, event.id)
    if membership is not None:
        return membership, False
    membership, created = _insert_membership(
        session, user_id=user.id, event_id=event.id, action=MembershipAction.INVITE
    )
    if created:
        logger.info("User %s invited to event %s", user.id, event.id)
    return membership, created


def update_guest_status(
    session: Session,
    user_id: str,
    event_id: str,
    status: str | GuestStatus,
) -> GuestEvent:
    """Explicit status change; last write wins, there is no version check."""
    target = GuestStatus.parse(status)
    membership = require_active_membership(session, user_id, event_id)
    _apply(session, membership, MembershipAction.SET_STATUS, target=target)
    return membership


def leave_event(session: Session, user_id: str, event_id: str) -> None:
    membership = require_active_membership(session, user_id, event_id)
    membership.soft_delete()
    session.add(membership)
    session.flush()
    logger.info(
        "User %s left event %s (membership %s, status %s)",
        user_id,
        event_id,
        membership.id,
        membership.status,
    )


def list_guests_for_event(session: Session, event_id: str) -> Sequence[GuestEvent]:
    stmt = (
        select(GuestEvent)
        .join(User, User.id == GuestEvent.user_id)
        .where(
            GuestEvent.event_id == event_id,
            GuestEvent.deleted_at.is_(None),
            User.deleted_at.is_(None),
        )
        .order_by(GuestEvent.joined_at.desc(), GuestEvent.created_at.desc())
    )
    return session.scalars(stmt).all()


def list_memberships_for_user(session: Session, user_id: str) -> Sequence[GuestEvent]:
    stmt = (
        select(GuestEvent)
        .join(Event, Event.id == GuestEvent.event_id)
        .where(
            GuestEvent.user_id == user_id,
            GuestEvent.deleted_at.is_(None),
            Event.deleted_at.is_(None),
        )
        .order_by(GuestEvent.joined_at.desc(), GuestEvent.created_at.desc())
    )
    return session.scalars(stmt).all()
