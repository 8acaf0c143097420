"""
Per-key relay timers on top of APScheduler.

Each broadcaster entry owns at most one timer per purpose:
  reconnect:<key>  next upstream connect attempt
  idle:<key>       teardown after the last subscriber left

Jobs are one-shot "date" jobs registered with replace_existing=True, so arming
a timer always supersedes any earlier timer with the same id.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

log = logging.getLogger(__name__)

RECONNECT = "reconnect"
IDLE = "idle"


def job_id(purpose: str, key: str) -> str:
    return f"{purpose}:{key}"


def arm_timer(
    scheduler: AsyncIOScheduler,
    purpose: str,
    key: str,
    delay_s: float,
    func: Callable[..., Any],
    *args: Any,
) -> str:
    """Schedule `func(*args)` to run once after `delay_s` seconds."""
    jid = job_id(purpose, key)
    run_date = datetime.now(timezone.utc) + timedelta(seconds=max(delay_s, 0.0))
    scheduler.add_job(
        func,
        "date",
        run_date=run_date,
        args=list(args),
        id=jid,
        replace_existing=True,
        misfire_grace_time=None,
        max_instances=2,  # a timer callback may re-arm its own id before it returns
    )
    log.debug("Armed %s in %.1fs", jid, delay_s)
    return jid


def cancel_timer(scheduler: AsyncIOScheduler, purpose: str, key: str) -> bool:
    """Remove a pending timer. Returns False if none was armed."""
    try:
        scheduler.remove_job(job_id(purpose, key))
    except JobLookupError:
        return False
    log.debug("Cancelled %s", job_id(purpose, key))
    return True


def timer_pending(scheduler: AsyncIOScheduler, purpose: str, key: str) -> bool:
    return scheduler.get_job(job_id(purpose, key)) is not None


async def setup_scheduler() -> AsyncIOScheduler:
    """Create and start the scheduler on the running event loop."""
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.start()
    return scheduler
