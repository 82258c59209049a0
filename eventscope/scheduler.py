"""APScheduler integration."""

from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler

from .config import settings
from .database import get_session
from .guest import expire_guest_passes

logger = logging.getLogger("uvicorn.error")

_scheduler: BackgroundScheduler | None = None


def run_guest_pass_sweep() -> int:
    with get_session() as session:
        expired = expire_guest_passes(session)
    logger.info("Guest pass sweep finished: %s expired", expired)
    return expired


def start_scheduler() -> BackgroundScheduler:
    global _scheduler
    if _scheduler and _scheduler.running:
        return _scheduler
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        run_guest_pass_sweep,
        "interval",
        hours=settings.guest_pass_sweep_hours,
        id="guest-pass-sweep",
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
