"""
Deferred regeneration scheduling.

Provides:
- DeferredJobRunner: protocol for the host's one-shot job runner
- APSchedulerJobRunner: runner backed by an APScheduler BackgroundScheduler
- QueuedJobRunner: tick-driven runner, jobs fire when the host calls run_due()
- RegenerationScheduler: at most one pending regeneration job per cache key
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, ClassVar, Protocol

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger

from .registry import NamedCacheRegistry

logger = logging.getLogger(__name__)

REGENERATE_JOB_NAME = "async_transients.regenerate"


@dataclass
class RegenerationJob:
    """A pending regeneration for one cache key."""

    key: str
    scheduled_at: float
    sequence: int = 0
    pending: bool = True
    dispatched_at: float | None = None
    superseded: bool = False

    @property
    def job_id(self) -> str:
        # Distinct per scheduling so a new job never shares a running job's id.
        return f"regenerate:{self.key}:{self.sequence}"


# ============================================================================
# Job runners - where deferred jobs actually execute
# ============================================================================


class DeferredJobRunner(Protocol):
    """
    Protocol for one-shot deferred job runners.

    Jobs are scheduled by name; the runner calls the callback registered for
    that name at or after run_at, with the given args.
    """

    def register(self, job_name: str, callback: Callable[..., Any]) -> None: ...

    def schedule_once(
        self,
        job_name: str,
        run_at: float,
        args: tuple = (),
        job_id: str | None = None,
    ) -> None: ...

    def cancel(self, job_id: str) -> None: ...


class APSchedulerJobRunner:
    """
    Runs deferred jobs on a BackgroundScheduler (one DateTrigger job each).
    The scheduler is started lazily on the first scheduled job.

    Example:
        runner = APSchedulerJobRunner()
        runner.register("rebuild", rebuild_report)
        runner.schedule_once("rebuild", time.time(), args=("daily",))
    """

    def __init__(self, scheduler: BackgroundScheduler | None = None):
        self._scheduler = scheduler
        self._callbacks: dict[str, Callable[..., Any]] = {}
        self._lock = threading.RLock()
        self._started = False

    def get_scheduler(self) -> BackgroundScheduler:
        """Get or create the background scheduler instance."""
        with self._lock:
            if self._scheduler is None:
                self._scheduler = BackgroundScheduler(daemon=True)
        return self._scheduler

    def start(self) -> None:
        """Start the background scheduler."""
        with self._lock:
            if not self._started:
                scheduler = self.get_scheduler()
                if not scheduler.running:
                    scheduler.start()
                self._started = True
                logger.info("Regeneration BackgroundScheduler started")

    def shutdown(self, wait: bool = True) -> None:
        """Stop the background scheduler."""
        with self._lock:
            if self._started and self._scheduler is not None:
                self._scheduler.shutdown(wait=wait)
                self._started = False
                self._scheduler = None
                logger.info("Regeneration BackgroundScheduler stopped")

    def register(self, job_name: str, callback: Callable[..., Any]) -> None:
        with self._lock:
            self._callbacks[job_name] = callback

    def schedule_once(
        self,
        job_name: str,
        run_at: float,
        args: tuple = (),
        job_id: str | None = None,
    ) -> None:
        with self._lock:
            callback = self._callbacks.get(job_name)
        if callback is None:
            raise KeyError(f"No callback registered for job: {job_name}")

        self.start()
        self.get_scheduler().add_job(
            callback,
            trigger=DateTrigger(
                run_date=datetime.fromtimestamp(run_at, tz=timezone.utc)
            ),
            args=args,
            id=job_id,
            replace_existing=job_id is not None,
            misfire_grace_time=None,
        )

    def cancel(self, job_id: str) -> None:
        with self._lock:
            if self._scheduler is None:
                return
            try:
                self._scheduler.remove_job(job_id)
            except JobLookupError:
                pass


@dataclass
class _QueuedJob:
    job_name: str
    run_at: float
    args: tuple
    job_id: str | None


class QueuedJobRunner:
    """
    Holds deferred jobs until the host sweeps them with run_due().

    This models runners driven by an external tick (a cron entry, a request
    hook, a worker loop): nothing executes until run_due() is called.
    """

    def __init__(self):
        self._callbacks: dict[str, Callable[..., Any]] = {}
        self._queue: list[_QueuedJob] = []
        self._lock = threading.Lock()

    def register(self, job_name: str, callback: Callable[..., Any]) -> None:
        with self._lock:
            self._callbacks[job_name] = callback

    def schedule_once(
        self,
        job_name: str,
        run_at: float,
        args: tuple = (),
        job_id: str | None = None,
    ) -> None:
        with self._lock:
            if job_name not in self._callbacks:
                raise KeyError(f"No callback registered for job: {job_name}")
            if job_id is not None:
                self._queue = [job for job in self._queue if job.job_id != job_id]
            self._queue.append(_QueuedJob(job_name, run_at, tuple(args), job_id))

    def cancel(self, job_id: str) -> None:
        with self._lock:
            self._queue = [job for job in self._queue if job.job_id != job_id]

    def pending_count(self) -> int:
        with self._lock:
            return len(self._queue)

    def run_due(self, now: float | None = None) -> int:
        """Run every job due at now (default: current time). Returns count run."""
        now = time.time() if now is None else now
        with self._lock:
            due = [job for job in self._queue if job.run_at <= now]
            self._queue = [job for job in self._queue if job.run_at > now]
            callbacks = dict(self._callbacks)

        for job in due:
            callbacks[job.job_name](*job.args)
        return len(due)



# ============================================================================
# RegenerationScheduler - dedup wrapper around a job runner
# ============================================================================


class RegenerationScheduler:
    """
    Schedules cache regeneration with at most one pending job per key.

    The pending check-and-set happens under a lock; the flag is cleared when
    the dispatched job finishes, whether regeneration succeeded or not.
    Caches built without an explicit scheduler share the one returned by
    shared().

    Example:
        registry = NamedCacheRegistry()
        scheduler = RegenerationScheduler(registry, QueuedJobRunner())
        cache = StaleCache("report", build_report, scheduler=scheduler).activate()
        ...
        scheduler.runner.run_due()
    """

    _shared: ClassVar[RegenerationScheduler | None] = None
    _shared_lock: ClassVar[threading.RLock] = threading.RLock()

    def __init__(
        self,
        registry: NamedCacheRegistry | None = None,
        runner: DeferredJobRunner | None = None,
        on_error: Callable[[Exception], None] | None = None,
    ):
        self.registry = registry if registry is not None else NamedCacheRegistry()
        self.runner = runner if runner is not None else APSchedulerJobRunner()
        self.on_error = on_error
        self._pending: dict[str, RegenerationJob] = {}
        self._sequence = itertools.count(1)
        self._lock = threading.Lock()
        self.runner.register(REGENERATE_JOB_NAME, self.dispatch)

    @classmethod
    def shared(cls) -> RegenerationScheduler:
        """Get or create the process-wide default scheduler."""
        with cls._shared_lock:
            if cls._shared is None:
                cls._shared = cls()
            return cls._shared

    @classmethod
    def shutdown_shared(cls, wait: bool = True) -> None:
        """Stop the default scheduler's runner and forget it."""
        with cls._shared_lock:
            scheduler, cls._shared = cls._shared, None
        if scheduler is not None and isinstance(scheduler.runner, APSchedulerJobRunner):
            scheduler.runner.shutdown(wait=wait)

    def schedule_once(self, key: str) -> bool:
        """
        Schedule an immediate one-shot regeneration for key.

        Returns:
            True if a job was scheduled, False if one was already pending.
        """
        with self._lock:
            if key in self._pending:
                logger.debug(f"Regeneration already pending: {key}")
                return False
            job = RegenerationJob(
                key=key, scheduled_at=time.time(), sequence=next(self._sequence)
            )
            self._pending[key] = job

        try:
            self.runner.schedule_once(
                REGENERATE_JOB_NAME, job.scheduled_at, args=(key,), job_id=job.job_id
            )
        except Exception:
            self._clear(job)
            raise

        logger.debug(f"Regeneration scheduled: {key}")
        return True

    def cancel(self, key: str) -> bool:
        """
        Drop the pending job for key. Returns True if one was pending.

        A job that is already running cannot be stopped: it is marked
        superseded, its result is not stored, and it stays pending until
        dispatch finishes.
        """
        with self._lock:
            job = self._pending.get(key)
            if job is None:
                return False
            if job.dispatched_at is not None:
                job.superseded = True
                logger.debug(f"Running regeneration superseded: {key}")
                return True
            del self._pending[key]
        job.pending = False
        self.runner.cancel(job.job_id)
        logger.debug(f"Regeneration cancelled: {key}")
        return True

    def is_pending(self, key: str) -> bool:
        with self._lock:
            return key in self._pending

    def is_running(self, key: str) -> bool:
        """True while a dispatched job for key is regenerating."""
        with self._lock:
            job = self._pending.get(key)
            return job is not None and job.dispatched_at is not None

    def is_superseded(self, key: str) -> bool:
        """True if the running job for key was cancelled by a newer write."""
        with self._lock:
            job = self._pending.get(key)
            return job is not None and job.superseded

    def pending_jobs(self) -> list[RegenerationJob]:
        with self._lock:
            return list(self._pending.values())

    def _clear(self, job: RegenerationJob) -> None:
        with self._lock:
            if self._pending.get(job.key) is job:
                del self._pending[job.key]
        job.pending = False

    def dispatch(self, key: str) -> Any:
        """
        Job callback: regenerate the named cache, then clear its pending flag.

        Failures are logged and passed to on_error; they never reach readers.
        """
        with self._lock:
            job = self._pending.get(key)
            if job is not None:
                job.dispatched_at = time.time()

        try:
            cache = self.registry.get(key)
        except KeyError:
            logger.warning(f"Regeneration dispatched for unknown cache: {key}")
            if job is not None:
                self._clear(job)
            return None

        try:
            start = time.time()
            value = cache.regenerate()
            duration = time.time() - start
            logger.info(f"Regenerated {key} successfully in {duration:.3f}s")
            return value
        except Exception as e:
            logger.error(f"Failed to regenerate {key}: {e}", exc_info=True)
            if self.on_error:
                try:
                    self.on_error(e)
                except Exception as err:
                    logger.error(f"Error handler failed: {err}")
            return None
        finally:
            if job is not None:
                self._clear(job)
