"""Event-sourced job collection shared by pipelines and progress views.

The store is the single owner of canonical job state. Pipelines change a job
only through the transition methods below; every change replaces the stored
``Job`` with a new instance and emits a ``JobEvent`` carrying it, so
subscribers never see a half-updated job.
"""

import logging
from typing import Callable, Iterable

from repo_autoedit.models import (
    ACTIVE_STATUSES,
    Job,
    JobEvent,
    JobEventKind,
    JobStatus,
    RunSummary,
)
from repo_autoedit.orchestrator.exceptions import InvalidTransitionError, OrchestratorError

logger = logging.getLogger(__name__)

JobListener = Callable[[JobEvent], None]

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.GENERATING, JobStatus.FAILED}),
    JobStatus.GENERATING: frozenset(
        {JobStatus.COMMITTING, JobStatus.SKIPPED, JobStatus.FAILED}
    ),
    JobStatus.COMMITTING: frozenset({JobStatus.SUCCESS, JobStatus.FAILED}),
    JobStatus.SUCCESS: frozenset(),
    JobStatus.SKIPPED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


class JobStore:
    """Canonical, observable collection of jobs for one run."""

    def __init__(self, jobs: Iterable[Job] = ()) -> None:
        self._jobs: dict[str, Job] = {}
        self._listeners: list[JobListener] = []
        for job in jobs:
            self.add(job)

    # -- collection -------------------------------------------------------

    def add(self, job: Job) -> Job:
        """Register a new queued job.

        Raises:
            OrchestratorError: If a job with the same identity exists or the
                job is not queued.
        """
        if job.job_id in self._jobs:
            raise OrchestratorError(f"Duplicate job identity: '{job.job_id}'")
        if job.status != JobStatus.QUEUED:
            raise OrchestratorError(
                f"New job '{job.job_id}' must be queued, got '{job.status.value}'"
            )
        self._jobs[job.job_id] = job
        self._emit(JobEvent(kind=JobEventKind.CREATED, job=job))
        return job

    def get(self, job_id: str) -> Job:
        try:
            return self._jobs[job_id]
        except KeyError:
            raise OrchestratorError(f"Unknown job: '{job_id}'") from None

    def jobs(self) -> list[Job]:
        return list(self._jobs.values())

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def subscribe(self, listener: JobListener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # -- transitions ------------------------------------------------------

    def start(self, job_id: str) -> Job:
        """Move a queued job into the generating phase."""
        return self._transition(job_id, JobStatus.GENERATING, accumulated_content="", error=None)

    def append_fragment(self, job_id: str, fragment: str) -> Job:
        """Append one streamed fragment to a generating job."""
        job = self.get(job_id)
        if job.status != JobStatus.GENERATING:
            raise InvalidTransitionError(
                f"Cannot append content to job '{job_id}' in status '{job.status.value}'"
            )
        updated = job.model_copy(
            update={"accumulated_content": job.accumulated_content + fragment}
        )
        self._jobs[job_id] = updated
        self._emit(JobEvent(kind=JobEventKind.FRAGMENT, job=updated, fragment=fragment))
        return updated

    def begin_commit(self, job_id: str, final_content: str) -> Job:
        return self._transition(job_id, JobStatus.COMMITTING, final_content=final_content)

    def complete(self, job_id: str, revision_marker: str) -> Job:
        """Mark a committing job successful and announce the committed content."""
        updated = self._transition(job_id, JobStatus.SUCCESS, revision_marker=revision_marker)
        self._emit(JobEvent(kind=JobEventKind.COMMITTED, job=updated))
        return updated

    def skip(self, job_id: str) -> Job:
        return self._transition(job_id, JobStatus.SKIPPED)

    def fail(self, job_id: str, message: str) -> Job:
        logger.warning("Job %s failed: %s", job_id, message)
        return self._transition(job_id, JobStatus.FAILED, error=message)

    def resubmit(self, job_id: str) -> Job:
        """Replace a finished job with a fresh queued job of the same identity.

        Raises:
            InvalidTransitionError: If the job has not finished.
        """
        job = self.get(job_id)
        if not job.is_terminal:
            raise InvalidTransitionError(
                f"Cannot resubmit job '{job_id}' in status '{job.status.value}'"
            )
        fresh = job.model_copy(
            update={
                "status": JobStatus.QUEUED,
                "accumulated_content": "",
                "final_content": None,
                "revision_marker": None,
                "error": None,
            }
        )
        self._jobs[job_id] = fresh
        self._emit(JobEvent(kind=JobEventKind.CREATED, job=fresh))
        return fresh

    def _transition(self, job_id: str, target: JobStatus, **updates: object) -> Job:
        job = self.get(job_id)
        if target not in ALLOWED_TRANSITIONS[job.status]:
            raise InvalidTransitionError(
                f"Job '{job_id}' cannot move from '{job.status.value}' to '{target.value}'"
            )
        updated = job.model_copy(update={**updates, "status": target})
        self._jobs[job_id] = updated
        logger.debug("Job %s: %s -> %s", job_id, job.status.value, target.value)
        self._emit(JobEvent(kind=JobEventKind.STATUS, job=updated))
        return updated

    def _emit(self, event: JobEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Job listener failed on %s event", event.kind.value)

    # -- queries ----------------------------------------------------------

    def is_complete(self) -> bool:
        """True when no job is queued or being processed."""
        return not any(
            job.status == JobStatus.QUEUED or job.status in ACTIVE_STATUSES
            for job in self._jobs.values()
        )

    def in_flight(self) -> int:
        return sum(1 for job in self._jobs.values() if job.status in ACTIVE_STATUSES)

    def counts(self, job_ids: Iterable[str] | None = None) -> dict[JobStatus, int]:
        selected = self._select(job_ids)
        counts = {status: 0 for status in JobStatus}
        for job in selected:
            counts[job.status] += 1
        return counts

    def summary(
        self,
        job_ids: Iterable[str] | None = None,
        cancelled: bool = False,
    ) -> RunSummary:
        selected = self._select(job_ids)
        counts = self.counts(job.job_id for job in selected)
        return RunSummary(
            total=len(selected),
            succeeded=counts[JobStatus.SUCCESS],
            skipped=counts[JobStatus.SKIPPED],
            failed=counts[JobStatus.FAILED],
            cancelled=cancelled,
        )

    def _select(self, job_ids: Iterable[str] | None) -> list[Job]:
        if job_ids is None:
            return self.jobs()
        return [self.get(job_id) for job_id in job_ids]
