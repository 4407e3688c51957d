"""Timer facility: delayed callbacks, recurring jobs and debouncing.

Jobs are described the way they are written in configuration:

* ``"every 5 minutes"``: recurring, fixed interval
* ``"in 30 seconds"`` / ``"30 seconds"``: one-shot after a delay
* ``"*/10 * * * *"``: 5-field cron expression evaluated via croniter

Every callback runs behind a catch-and-log guard: a failing job is logged and
the schedule keeps going.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from croniter import croniter

logger = logging.getLogger(__name__)

Callback = Callable[[], Awaitable[Any] | Any]

_UNIT_SECONDS = {
    "ms": 0.001,
    "millisecond": 0.001,
    "milliseconds": 0.001,
    "s": 1.0,
    "sec": 1.0,
    "secs": 1.0,
    "second": 1.0,
    "seconds": 1.0,
    "m": 60.0,
    "min": 60.0,
    "mins": 60.0,
    "minute": 60.0,
    "minutes": 60.0,
    "h": 3600.0,
    "hour": 3600.0,
    "hours": 3600.0,
    "d": 86400.0,
    "day": 86400.0,
    "days": 86400.0,
    "week": 604800.0,
    "weeks": 604800.0,
}

_PART_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*([a-z]+)")
_JOB_PATTERN = re.compile(r"^\s*(every|in)?\s*(.*?)\s*$", re.IGNORECASE)


def parse_interval(text: str) -> float:
    """Convert a human interval such as ``"5 minutes"`` or ``"1 hour and 30 minutes"``.

    Returns the interval in seconds.

    Raises
    ------
    ValueError
        If the text contains no recognised ``<number> <unit>`` part or an
        unknown unit.
    """
    normalized = text.strip().lower().replace(" and ", " ").replace(",", " ")
    parts = _PART_PATTERN.findall(normalized)
    leftover = _PART_PATTERN.sub("", normalized).strip()
    if not parts or leftover:
        raise ValueError(f"Unknown interval format: {text!r}")

    total = 0.0
    for number, unit in parts:
        if unit not in _UNIT_SECONDS:
            raise ValueError(f"Unknown interval unit {unit!r} in {text!r}")
        total += float(number) * _UNIT_SECONDS[unit]
    return total


async def _invoke(callback: Callback, label: str) -> None:
    try:
        result = callback()
        if inspect.isawaitable(result):
            await result
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception("Scheduled callback %s failed", label)


@dataclass
class TimerHandle:
    """A pending one-shot callback. ``cancel()`` is idempotent."""

    when: float
    label: str
    _handle: asyncio.TimerHandle | None = None
    _task: asyncio.Task[None] | None = None
    _on_cancel: Callable[[TimerHandle], None] | None = field(default=None, repr=False)
    cancelled: bool = False
    fired: bool = False

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        if self._on_cancel is not None:
            self._on_cancel(self)
        if self._handle is not None:
            self._handle.cancel()
        if self._task is not None and not self._task.done():
            self._task.cancel()

    @property
    def pending(self) -> bool:
        return not self.cancelled and not self.fired


@dataclass
class Job:
    """A registered job (recurring, delayed or cron)."""

    description: str
    callback: Callback
    interval: float | None = None
    cron: str | None = None
    recurring: bool = False
    _task: asyncio.Task[None] | None = field(default=None, repr=False)

    def next_delay(self, now: datetime | None = None) -> float:
        if self.cron is not None:
            anchor = now or datetime.now(UTC)
            next_run = croniter(self.cron, anchor).get_next(datetime)
            return max(0.0, (next_run - anchor).total_seconds())
        assert self.interval is not None
        return self.interval

    async def run_once(self) -> None:
        await _invoke(self.callback, self.description)

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()


class Scheduler:
    """Registers delayed and recurring callbacks on the running event loop."""

    def __init__(self) -> None:
        self._jobs: list[Job] = []
        self._timers: list[TimerHandle] = []

    # ------------------------------------------------------------------
    # One-shot timers
    # ------------------------------------------------------------------

    def call_later(self, delay: float, callback: Callback, *, label: str = "") -> TimerHandle:
        """Run *callback* once after *delay* seconds."""
        loop = asyncio.get_running_loop()
        timer = TimerHandle(when=loop.time() + delay, label=label or repr(callback))

        def _fire() -> None:
            timer.fired = True
            if timer in self._timers:
                self._timers.remove(timer)
            timer._task = loop.create_task(_invoke(callback, timer.label))

        timer._on_cancel = self._forget_timer
        timer._handle = loop.call_later(max(0.0, delay), _fire)
        self._timers.append(timer)
        return timer

    def _forget_timer(self, timer: TimerHandle) -> None:
        if timer in self._timers:
            self._timers.remove(timer)

    def pending_timers(self) -> list[TimerHandle]:
        return [t for t in self._timers if t.pending]

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def add_job(self, description: str, callback: Callback) -> Job:
        """Register *callback* according to a job description.

        Raises
        ------
        ValueError
            If the description is neither a known interval nor a valid cron
            expression.
        """
        if croniter.is_valid(description.strip()):
            job = Job(description, callback, cron=description.strip(), recurring=True)
        else:
            match = _JOB_PATTERN.match(description)
            keyword = (match.group(1) or "").lower() if match else ""
            interval = parse_interval(match.group(2) if match else description)
            job = Job(description, callback, interval=interval, recurring=keyword == "every")

        job._task = asyncio.get_running_loop().create_task(self._run_job(job))
        self._jobs.append(job)
        logger.debug("Scheduled job %r", description)
        return job

    async def _run_job(self, job: Job) -> None:
        try:
            while True:
                await asyncio.sleep(job.next_delay())
                await job.run_once()
                if not job.recurring:
                    break
        except asyncio.CancelledError:
            return
        if job in self._jobs:
            self._jobs.remove(job)

    @property
    def jobs(self) -> list[Job]:
        return list(self._jobs)

    async def stop(self) -> None:
        """Cancel all jobs and pending timers."""
        for timer in list(self._timers):
            timer.cancel()
        self._timers.clear()
        tasks = [job._task for job in self._jobs if job._task is not None]
        for job in self._jobs:
            job.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._jobs.clear()


class Debouncer:
    """Coalesce rapid repeated triggers per key into one trailing call.

    ``schedule(key, delay, action)`` cancels any pending action for the same
    key and arms a fresh timer; only the last action of a burst runs.
    """

    def __init__(self, scheduler: Scheduler) -> None:
        self._scheduler = scheduler
        self._pending: dict[Hashable, TimerHandle] = {}

    def schedule(self, key: Hashable, delay: float, action: Callback) -> TimerHandle:
        previous = self._pending.pop(key, None)
        if previous is not None:
            previous.cancel()

        async def _run() -> None:
            self._pending.pop(key, None)
            result = action()
            if inspect.isawaitable(result):
                await result

        timer = self._scheduler.call_later(delay, _run, label=f"debounce:{key}")
        self._pending[key] = timer
        return timer

    def is_pending(self, key: Hashable) -> bool:
        timer = self._pending.get(key)
        return timer is not None and timer.pending

    def cancel(self, key: Hashable) -> None:
        timer = self._pending.pop(key, None)
        if timer is not None:
            timer.cancel()

    def cancel_all(self) -> None:
        for key in list(self._pending):
            self.cancel(key)
