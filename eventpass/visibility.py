"""Event visibility policy.

The policy lives in one place, ``ACCESS_RULES``. Two views are derived from
it:

* ``can_access`` evaluates a single loaded event in memory;
* ``visibility_clause`` renders the same rules as a SQL predicate for list
  queries.

Both walk the same rule objects, so a change to the table changes both.
"""

from __future__ import annotations

import enum
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy import and_, false, or_, select

from .models import Event, GuestEvent, User

LOGIN_REQUIRED = "login required"
FORBIDDEN = "forbidden"


class Visibility(str, enum.Enum):
    PUBLIC = "PUBLIC"
    UNLISTED = "UNLISTED"
    PRIVATE = "PRIVATE"

    @classmethod
    def parse(cls, raw: str | None) -> "Visibility":
        normalized = (raw or "").strip().upper()
        try:
            return cls(normalized)
        except ValueError as exc:
            raise ValueError(f"Invalid visibility: {raw!r}") from exc


@dataclass(frozen=True)
class Identity:
    """The resolved caller; ``None`` stands for an anonymous request."""

    id: str
    email: str | None = None
    name: str | None = None

    @classmethod
    def from_user(cls, user: User) -> "Identity":
        return cls(id=user.id, email=user.email, name=user.name)


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: str | None = None

    def __bool__(self) -> bool:
        return self.allowed


@dataclass(frozen=True)
class AccessRule:
    visibility: Visibility
    requires_login: bool = False
    requires_relationship: bool = False


# Unlisted only needs a known identity: it hides an event from discovery,
# it does not restrict who may open it.
ACCESS_RULES: tuple[AccessRule, ...] = (
    AccessRule(Visibility.PUBLIC),
    AccessRule(Visibility.UNLISTED, requires_login=True),
    AccessRule(Visibility.PRIVATE, requires_login=True, requires_relationship=True),
)

ALLOWED = AccessDecision(True)


def rule_for(visibility: str | Visibility) -> AccessRule | None:
    for rule in ACCESS_RULES:
        if rule.visibility == visibility:
            return rule
    return None


def is_owner(event: Event, identity: Identity | None) -> bool:
    """Owner match by id, or by email against the event admin's email."""
    if identity is None:
        return False
    if identity.id and identity.id == event.admin_id:
        return True
    admin = event.admin
    admin_email = admin.email if admin is not None else None
    return bool(identity.email and admin_email and identity.email == admin_email)


def can_access(
    event: Event,
    identity: Identity | None,
    *,
    membership_lookup: Callable[[], bool] | None = None,
) -> AccessDecision:
    """Decide whether ``identity`` may see ``event``.

    ``membership_lookup`` answers "does an active membership exist" and is
    only consulted when the rule needs a relationship and the caller is not
    the owner.
    """
    rule = rule_for(event.visibility)
    if rule is None:
        return AccessDecision(False, FORBIDDEN)
    if rule.requires_login and identity is None:
        return AccessDecision(False, LOGIN_REQUIRED)
    if rule.requires_relationship:
        if is_owner(event, identity):
            return ALLOWED
        if membership_lookup is not None and membership_lookup():
            return ALLOWED
        return AccessDecision(False, FORBIDDEN)
    return ALLOWED


def _owner_clause(identity: Identity):
    clauses = [Event.admin_id == identity.id]
    if identity.email:
        clauses.append(Event.admin.has(User.email == identity.email))
    return or_(*clauses)


def _membership_clause(identity: Identity):
    return (
        select(GuestEvent.id)
        .where(
            GuestEvent.event_id == Event.id,
            GuestEvent.user_id == identity.id,
            GuestEvent.deleted_at.is_(None),
        )
        .exists()
    )


def visibility_clause(identity: Identity | None):
    """SQL predicate selecting the events ``identity`` may see."""
    branches = []
    for rule in ACCESS_RULES:
        if rule.requires_login and identity is None:
            continue
        clause = Event.visibility == rule.visibility.value
        if rule.requires_relationship:
            clause = and_(
                clause, or_(_owner_clause(identity), _membership_clause(identity))
            )
        branches.append(clause)
    if not branches:
        return false()
    return or_(*branches)
