"""APScheduler integration."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from apscheduler.schedulers.background import BackgroundScheduler

from .config import settings
from .notify import prune_notification_logs

logger = logging.getLogger("uvicorn.error")

_scheduler: BackgroundScheduler | None = None


def start_scheduler() -> BackgroundScheduler:
    global _scheduler
    if _scheduler and _scheduler.running:
        return _scheduler
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        prune_notification_logs,
        "interval",
        hours=settings.notification_prune_hours,
        id="prune-notification-logs",
        max_instances=1,
        replace_existing=True,
    )
    scheduler.start()
    _scheduler = scheduler
    return scheduler


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        _scheduler = None


def is_running() -> bool:
    return bool(_scheduler and _scheduler.running)


def run_in_background(func: Callable[..., Any], *args: Any, **kwargs: Any) -> bool:
    """Queue a one-off job; without a running scheduler, run it now.

    Returns True when the job was queued. Inline failures are logged and
    not raised, the same as a failed scheduler job.
    """
    if is_running():
        _scheduler.add_job(func, args=args, kwargs=kwargs, misfire_grace_time=None)
        return True
    try:
        func(*args, **kwargs)
    except Exception:
        logger.exception("Inline background job %s failed", getattr(func, "__name__", func))
    return False
