"""Background capture worker: poll loop, crash recovery, and graceful shutdown.

The worker owns three pieces of state: the count of executions holding a
concurrency slot, the poll task, and the executor handle. The slot counter
is only touched from the event-loop thread, which makes reserve/release
atomic with respect to polling; blocking store calls run in worker threads
via ``asyncio.to_thread``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Dict

from xsnap import metrics
from xsnap.capture import CaptureExecutor
from xsnap.errors import CaptureFailure, JobNotFound, StaleTransition, StoreUnavailable
from xsnap.retry import RetryPolicy, annotate_retry, strip_retry_annotation
from xsnap.settings import WorkerSettings
from xsnap.store import CaptureRecord, Store, utcnow

LOGGER = logging.getLogger(__name__)


class CaptureWorker:
    """Concurrency-bounded scheduler that feeds queued jobs to an executor."""

    def __init__(
        self,
        *,
        store: Store,
        executor: CaptureExecutor,
        settings: WorkerSettings,
    ) -> None:
        self.store = store
        self.executor = executor
        self.settings = settings
        self.retry_policy = RetryPolicy(
            base_delay_ms=settings.retry_base_delay_ms,
            multiplier=settings.retry_multiplier,
        )
        self._active = 0
        self._tasks: Dict[str, asyncio.Task[None]] = {}
        self._poll_task: asyncio.Task[None] | None = None
        self._poll_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._stopping = False
        self._closed = False

    # -- introspection ---------------------------------------------------

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def concurrency_limit(self) -> int:
        return self.settings.concurrency_limit

    @property
    def is_running(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def in_flight(self) -> list[str]:
        return list(self._tasks)

    # -- lifecycle -------------------------------------------------------

    async def start(self) -> None:
        """Recover orphaned jobs, then begin polling."""

        if self.is_running:
            return
        self._stopping = False
        self._closed = False
        self._stop_event.clear()
        await self.recover()
        self._poll_task = asyncio.create_task(self._poll_loop(), name="xsnap-poll")
        LOGGER.info(
            "Capture worker started (concurrency=%d, max_retries=%d, poll=%dms)",
            self.settings.concurrency_limit,
            self.settings.max_retries,
            self.settings.poll_interval_ms,
        )

    async def recover(self) -> int:
        """Reset jobs a previous process left Running back to Queued."""

        try:
            recovered = await asyncio.to_thread(self.store.reset_all_running_to_queued)
        except StoreUnavailable as exc:
            LOGGER.error("Stale job recovery failed: %s", exc)
            return 0
        if recovered:
            metrics.JOBS_RECOVERED.inc(recovered)
            LOGGER.info("Recovered %d stale running job(s)", recovered)
        return recovered

    async def shutdown(self) -> bool:
        """Stop intake, drain in-flight jobs (bounded), then close the executor.

        Returns True when every in-flight job finished inside the drain window.
        """

        if self._closed:
            return self._active == 0
        self._closed = True
        self._stopping = True
        self._stop_event.set()
        LOGGER.info("Capture worker shutting down")

        if self._poll_task is not None:
            try:
                await self._poll_task
            except Exception:  # pragma: no cover - loop swallows its own errors
                LOGGER.exception("Poll loop ended with an error")
            self._poll_task = None

        drained = await self._drain()
        if not drained:
            LOGGER.warning(
                "Drain timeout after %dms with %d job(s) still active; they will be recovered on next start",
                self.settings.shutdown_drain_timeout_ms,
                self._active,
            )
            await self._cancel_in_flight()

        try:
            await self.executor.close()
        except Exception:
            LOGGER.exception("Failed to close capture executor")
        LOGGER.info("Capture worker shutdown complete")
        return drained

    async def _drain(self) -> bool:
        deadline = time.monotonic() + self.settings.shutdown_drain_timeout_ms / 1000
        interval = self.settings.shutdown_check_interval_ms / 1000
        while self._active > 0:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            LOGGER.info("Waiting for %d active job(s) to finish", self._active)
            await asyncio.sleep(min(interval, remaining))
        return True

    async def _cancel_in_flight(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # -- poll loop -------------------------------------------------------

    async def _poll_loop(self) -> None:
        interval = self.settings.poll_interval_ms / 1000
        while not self._stopping:
            try:
                await self.poll_once()
            except Exception:
                LOGGER.exception("Poll cycle failed")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def poll_once(self) -> int:
        """Run one scheduling cycle and return how many jobs were dispatched."""

        async with self._poll_lock:
            if self._stopping:
                return 0
            try:
                await self._requeue_due_retries()
                available = self.settings.concurrency_limit - self._active
                if available <= 0:
                    return 0
                jobs = await asyncio.to_thread(self.store.claim_queued, available)
            except StoreUnavailable as exc:
                metrics.POLL_ERRORS.inc()
                LOGGER.warning("Store unavailable, skipping poll cycle: %s", exc)
                return 0

            if jobs:
                LOGGER.info("Picked up %d job(s)", len(jobs))
            dispatched = 0
            for job in jobs:
                if self._stopping:
                    break
                if await self._dispatch(job):
                    dispatched += 1
            return dispatched

    async def _requeue_due_retries(self) -> None:
        due = await asyncio.to_thread(self.store.due_retries, utcnow())
        for record in due:
            try:
                await asyncio.to_thread(
                    self.store.requeue_with_increment,
                    record.id,
                    strip_retry_annotation(record.last_error),
                )
            except (StaleTransition, JobNotFound) as exc:
                LOGGER.error("Could not requeue job %s: %s", record.id, exc)
                continue
            metrics.RETRIES_REQUEUED.inc()
            LOGGER.info("Requeued job %s for attempt %d", record.id, record.attempt_count + 2)

    async def _dispatch(self, job: CaptureRecord) -> bool:
        self._reserve_slot()
        try:
            await asyncio.to_thread(self.store.mark_running, job.id, started_at=utcnow())
        except (StaleTransition, JobNotFound, StoreUnavailable) as exc:
            LOGGER.error("Skipping job %s: %s", job.id, exc)
            self._release_slot()
            return False
        except asyncio.CancelledError:
            self._release_slot()
            raise
        task = asyncio.create_task(self._run_job(job), name=f"xsnap-capture-{job.id}")
        self._tasks[job.id] = task
        task.add_done_callback(lambda _task, job_id=job.id: self._tasks.pop(job_id, None))
        return True

    def _reserve_slot(self) -> None:
        self._active += 1
        metrics.set_active_jobs(self._active)

    def _release_slot(self) -> None:
        self._active -= 1
        metrics.set_active_jobs(self._active)

    # -- execution -------------------------------------------------------

    async def _run_job(self, job: CaptureRecord) -> None:
        started = time.perf_counter()
        try:
            LOGGER.info("Capturing %s (job %s, attempt %d)", job.target, job.id, job.attempt_count + 1)
            try:
                digests = await self.executor.execute(job.target, self.store.artifact_dir(job))
            except Exception as exc:
                await self._record_failure(job, exc, duration=time.perf_counter() - started)
            else:
                await asyncio.to_thread(
                    self.store.mark_success,
                    job.id,
                    completed_at=utcnow(),
                    result_digests=digests,
                )
                metrics.record_job_outcome(metrics.OUTCOME_SUCCESS, time.perf_counter() - started)
                LOGGER.info("Success: %s (job %s)", job.target, job.id)
        except StaleTransition as exc:
            LOGGER.error("Job %s changed underneath the worker: %s", job.id, exc)
        except (StoreUnavailable, JobNotFound) as exc:
            LOGGER.error("Could not record outcome for job %s, leaving it for recovery: %s", job.id, exc)
        except Exception as exc:
            LOGGER.exception("Unexpected error while recording outcome for job %s", job.id)
            await self._fail_terminal(job, _describe_failure(exc))
        finally:
            self._release_slot()

    async def _fail_terminal(self, job: CaptureRecord, message: str) -> None:
        try:
            await asyncio.to_thread(
                self.store.mark_failed_terminal,
                job.id,
                completed_at=utcnow(),
                error_text=message,
            )
        except (StaleTransition, StoreUnavailable, JobNotFound) as exc:
            LOGGER.error("Could not mark job %s failed, leaving it for recovery: %s", job.id, exc)
            return
        metrics.record_job_outcome(metrics.OUTCOME_FAILED)

    async def _record_failure(self, job: CaptureRecord, error: Exception, *, duration: float) -> None:
        message = _describe_failure(error)
        now = utcnow()
        if isinstance(error, CaptureFailure):
            LOGGER.warning("Failed: %s (job %s) - %s", job.target, job.id, message)
        else:
            LOGGER.error("Executor crashed on %s (job %s)", job.target, job.id, exc_info=error)

        if job.attempt_count < self.settings.max_retries:
            retry_at = _after(now, self.retry_policy, job.attempt_count)
            LOGGER.info(
                "Scheduling retry %d/%d for job %s in %dms",
                job.attempt_count + 1,
                self.settings.max_retries,
                job.id,
                self.retry_policy.delay_ms(job.attempt_count),
            )
            await asyncio.to_thread(
                self.store.mark_failed_retryable,
                job.id,
                completed_at=now,
                error_text=annotate_retry(
                    message,
                    attempt=job.attempt_count,
                    max_retries=self.settings.max_retries,
                ),
                retry_at=retry_at,
            )
            metrics.record_job_outcome(metrics.OUTCOME_RETRY, duration)
            return

        await asyncio.to_thread(
            self.store.mark_failed_terminal,
            job.id,
            completed_at=now,
            error_text=message,
        )
        metrics.record_job_outcome(metrics.OUTCOME_FAILED, duration)


def _after(now: datetime, policy: RetryPolicy, attempt: int) -> datetime:
    return now + policy.delay(attempt)


def _describe_failure(error: BaseException) -> str:
    text = str(error).strip()
    return text or type(error).__name__


__all__ = ["CaptureWorker"]
