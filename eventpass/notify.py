"""Realtime fan-out and push notification dispatch.

Both are fire-and-forget from the caller's point of view: a subscriber or a
push token failing never fails the mutation that triggered it.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import delete
from sqlalchemy.orm import Session

from .config import settings
from .crud import device_tokens_for_event
from .database import background_session
from .models import NotificationLog
from .utils import utcnow

logger = logging.getLogger("uvicorn.error")

Subscriber = Callable[[dict], None]


class RealtimeHub:
    """In-process channel per event id."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscriber]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_id: str, callback: Subscriber) -> None:
        with self._lock:
            self._subscribers.setdefault(event_id, []).append(callback)

    def unsubscribe(self, event_id: str, callback: Subscriber) -> None:
        with self._lock:
            callbacks = self._subscribers.get(event_id)
            if not callbacks or callback not in callbacks:
                return
            callbacks.remove(callback)
            if not callbacks:
                del self._subscribers[event_id]

    def subscriber_count(self, event_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(event_id, []))

    def publish(self, event_id: str, kind: str, payload: Mapping[str, Any]) -> int:
        """Deliver to every subscriber of ``event_id``; returns how many succeeded."""
        message = {
            "event_id": event_id,
            "type": kind,
            "payload": dict(payload),
            "sent_at": utcnow().isoformat(),
        }
        with self._lock:
            callbacks = list(self._subscribers.get(event_id, []))
        delivered = 0
        for callback in callbacks:
            try:
                callback(message)
            except Exception:
                logger.exception("Realtime subscriber failed for %s on event %s", kind, event_id)
                continue
            delivered += 1
        return delivered


@dataclass(frozen=True)
class PushResult:
    token: str
    success: bool
    error: str | None = None


class PushDispatcher(Protocol):
    def send(
        self,
        tokens: list[str],
        title: str,
        body: str,
        data: Mapping[str, str] | None = None,
    ) -> list[PushResult]: ...


class LoggingPushDispatcher:
    """Stand-in provider that records each delivery in the log."""

    def send(
        self,
        tokens: list[str],
        title: str,
        body: str,
        data: Mapping[str, str] | None = None,
    ) -> list[PushResult]:
        for token in tokens:
            logger.info("Push %r to %s...", title, token[:12])
        return [PushResult(token=token, success=True) for token in tokens]


hub = RealtimeHub()
_dispatcher: PushDispatcher = LoggingPushDispatcher()


def get_push_dispatcher() -> PushDispatcher:
    return _dispatcher


def set_push_dispatcher(dispatcher: PushDispatcher) -> None:
    global _dispatcher
    _dispatcher = dispatcher


def notify_event_guests(
    session: Session,
    event_id: str,
    title: str,
    body: str,
    data: Mapping[str, str] | None = None,
    *,
    dispatcher: PushDispatcher | None = None,
) -> list[PushResult]:
    """Push to the owner and active guests, logging one row per token."""
    tokens = device_tokens_for_event(session, event_id)
    if not tokens:
        logger.info("No device tokens for event %s; push skipped", event_id)
        return []
    dispatcher = dispatcher or _dispatcher
    payload = {"event_id": event_id, **(data or {})}
    try:
        results = dispatcher.send(tokens, title, body, payload)
    except Exception as exc:
        logger.exception("Push dispatch failed for event %s", event_id)
        results = [PushResult(token=token, success=False, error=str(exc)) for token in tokens]

    now = utcnow()
    for result in results:
        session.add(
            NotificationLog(
                event_id=event_id,
                title=title,
                message=body,
                token=result.token,
                success=result.success,
                error_message=result.error,
                created_at=now,
            )
        )
    session.flush()
    failures = sum(1 for result in results if not result.success)
    logger.info(
        "Push for event %s: %d sent, %d failed", event_id, len(results) - failures, failures
    )
    return results


def push_event_notification(
    event_id: str, title: str, body: str, data: Mapping[str, str] | None = None
) -> list[PushResult]:
    """Background entry point; owns its session."""
    with background_session() as session:
        return notify_event_guests(session, event_id, title, body, data)


def prune_notification_logs(*, now: datetime | None = None) -> int:
    cutoff = (now or utcnow()) - settings.notification_log_retention
    with background_session() as session:
        result = session.execute(
            delete(NotificationLog).where(NotificationLog.created_at < cutoff)
        )
        removed = result.rowcount or 0
    if removed:
        logger.info("Pruned %d notification log rows older than %s", removed, cutoff)
    return removed
