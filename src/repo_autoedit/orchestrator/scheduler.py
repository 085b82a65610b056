"""Bounded-concurrency execution of queued jobs."""

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable

from repo_autoedit.models import Job, JobStatus, RunSummary
from repo_autoedit.orchestrator.exceptions import OrchestratorError
from repo_autoedit.orchestrator.store import JobStore

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 5
NOT_STARTED_ERROR = "Run cancelled before the job started"
NO_TERMINAL_STATUS_ERROR = "Pipeline ended without a final status"

JobRunner = Callable[[Job], Awaitable[object]]


class ConcurrencyScheduler:
    """Runs a batch of jobs with at most ``concurrency`` in flight.

    ``min(concurrency, len(job_ids))`` workers drain one shared FIFO queue.
    A worker takes the next job only after its current job has reached a
    terminal status, so the bound holds at every instant. One job's failure
    is recorded on that job and never stops the other workers.
    """

    def __init__(
        self,
        store: JobStore,
        concurrency: int = DEFAULT_CONCURRENCY,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        if concurrency < 1:
            raise OrchestratorError(f"Concurrency must be at least 1, got {concurrency}")
        self.store = store
        self.concurrency = concurrency
        self.cancel_event = cancel_event
        self.in_flight = 0
        self.peak_in_flight = 0

    async def run(self, job_ids: list[str], runner: JobRunner) -> RunSummary:
        """Process every job in ``job_ids`` and return the batch summary.

        Resolves only once each job is terminal. Jobs still queued when the
        cancel signal is observed are marked failed.
        """
        queue: deque[str] = deque(job_ids)
        worker_count = min(self.concurrency, len(queue))
        logger.info(
            "Scheduling %d job(s) across %d worker(s)", len(job_ids), worker_count
        )

        if worker_count:
            await asyncio.gather(
                *(self._worker(index, queue, runner) for index in range(worker_count))
            )

        cancelled = self._cancelled()
        if cancelled:
            for job_id in job_ids:
                if self.store.get(job_id).status == JobStatus.QUEUED:
                    self.store.fail(job_id, NOT_STARTED_ERROR)

        summary = self.store.summary(job_ids, cancelled=cancelled)
        logger.info(summary.render())
        return summary

    async def _worker(self, index: int, queue: deque[str], runner: JobRunner) -> None:
        # Emptiness check and popleft happen with no await between them.
        while queue and not self._cancelled():
            job_id = queue.popleft()
            logger.debug("Worker %d picked %s", index, job_id)
            await self._run_one(job_id, runner)

    async def _run_one(self, job_id: str, runner: JobRunner) -> None:
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            job = self.store.start(job_id)
            await runner(job)
        except Exception as exc:
            self._record_failure(job_id, exc)
        finally:
            self.in_flight -= 1

        if not self.store.get(job_id).is_terminal:
            self.store.fail(job_id, NO_TERMINAL_STATUS_ERROR)

    def _record_failure(self, job_id: str, exc: Exception) -> None:
        job = self.store.get(job_id)
        if job.is_terminal:
            logger.error(
                "Job %s raised after reaching '%s': %s", job_id, job.status.value, exc
            )
            return
        self.store.fail(job_id, str(exc) or type(exc).__name__)

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()
