"""Access checks every event read or mutation goes through."""

from __future__ import annotations

from sqlalchemy.orm import Session

from .errors import ForbiddenError, LoginRequiredError
from .membership import has_active_membership
from .models import Event
from .visibility import LOGIN_REQUIRED, Identity, can_access, is_owner, visibility_clause


def build_visibility_filter(identity: Identity | None):
    """Clause scoping an event listing to what ``identity`` may read.

    Soft-deleted events are already dropped by the session-wide filter.
    """
    return visibility_clause(identity)


def is_event_owner(event: Event, identity: Identity | None) -> bool:
    return is_owner(event, identity)


def authorize_event_access(
    session: Session, event: Event, identity: Identity | None
) -> None:
    def _lookup() -> bool:
        return has_active_membership(session, identity.id, event.id)

    decision = can_access(event, identity, membership_lookup=_lookup)
    if decision:
        return
    if decision.reason == LOGIN_REQUIRED:
        raise LoginRequiredError("Login required to access this event")
    raise ForbiddenError("You do not have access to this event")


def authorize_event_mutation(
    session: Session, event: Event, identity: Identity | None
) -> None:
    """Read access first, then ownership, whatever the visibility."""
    authorize_event_access(session, event, identity)
    if identity is None:
        raise LoginRequiredError("Login required to modify this event")
    if not is_event_owner(event, identity):
        raise ForbiddenError("Only the event admin can modify this event")
