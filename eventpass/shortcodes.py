"""Short, shareable event codes."""

from __future__ import annotations

import logging
import secrets
import string

from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import settings
from .errors import ShortCodeAllocationError
from .models import Event

logger = logging.getLogger("uvicorn.error")

SHORT_CODE_ALPHABET = string.digits + string.ascii_uppercase


def generate_code(length: int | None = None) -> str:
    """Draw a code uniformly from ``0-9A-Z``."""
    size = length or settings.short_code_length
    return "".join(secrets.choice(SHORT_CODE_ALPHABET) for _ in range(size))


def normalize_code(raw: str | None) -> str:
    return (raw or "").strip().upper()


def code_exists(session: Session, code: str) -> bool:
    """Return True if any event, soft-deleted ones included, holds ``code``."""
    stmt = (
        select(Event.id)
        .where(Event.short_code == code)
        .execution_options(include_deleted=True)
    )
    return session.scalar(stmt) is not None


def allocate_short_code(session: Session, *, max_attempts: int | None = None) -> str:
    """Return a code no stored event uses yet.

    This only narrows the race window; the unique constraint on
    ``events.short_code`` decides, and callers retry on IntegrityError.
    """
    attempts = max_attempts or settings.short_code_max_attempts
    for attempt in range(1, attempts + 1):
        code = generate_code()
        if not code_exists(session, code):
            return code
        logger.warning(
            "Short code collision on %s (attempt %d of %d)", code, attempt, attempts
        )
    raise ShortCodeAllocationError(
        f"Could not allocate a unique short code after {attempts} attempts"
    )
