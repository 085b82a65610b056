"""Per-job pipeline: fetch, prompt, stream, normalize, compare, commit."""

import asyncio
import logging
import posixpath
import re
from enum import Enum

from repo_autoedit.gateways.completion import CompletionGateway
from repo_autoedit.gateways.exceptions import (
    CommitConflict,
    CommitError,
    FetchError,
    GenerationError,
)
from repo_autoedit.gateways.source_control import SourceControlGateway
from repo_autoedit.models import CommitResult, FileSnapshot, Job, JobKind
from repo_autoedit.orchestrator.exceptions import JobCancelledError
from repo_autoedit.orchestrator.prompts import (
    build_blueprint_file_prompt,
    build_bulk_edit_prompt,
    build_edit_prompt,
)
from repo_autoedit.orchestrator.store import JobStore

logger = logging.getLogger(__name__)

EMPTY_CONTENT_ERROR = "AI returned empty content."
CANCELLED_ERROR = "Run cancelled"
MAX_MESSAGE_INSTRUCTION = 60

_LEADING_FENCE = re.compile(r"\A\s*```[^\n`]*\n")
_TRAILING_FENCE = re.compile(r"\n?```\s*\Z")


class PipelineStrategy(str, Enum):
    """How a generated candidate becomes a commit."""

    DIFF_THEN_MAYBE_SKIP = "diff_then_maybe_skip"
    ALWAYS_COMMIT = "always_commit"


STRATEGY_BY_KIND: dict[JobKind, PipelineStrategy] = {
    JobKind.EDIT: PipelineStrategy.DIFF_THEN_MAYBE_SKIP,
    JobKind.BULK_EDIT: PipelineStrategy.DIFF_THEN_MAYBE_SKIP,
    JobKind.CREATE: PipelineStrategy.ALWAYS_COMMIT,
}


def normalize_completion(text: str) -> str:
    """Strip code fences the model may have echoed, then trim.

    >>> normalize_completion("```python\\nprint(1)\\n```")
    'print(1)'
    """
    without_leading = _LEADING_FENCE.sub("", text, count=1)
    without_trailing = _TRAILING_FENCE.sub("", without_leading, count=1)
    return without_trailing.strip()


def is_unchanged(candidate: str, original: str) -> bool:
    return candidate.strip() == original.strip()


def commit_message_for(job: Job) -> str:
    if job.kind == JobKind.CREATE:
        seed_name = posixpath.basename(job.seed_file_path or "")
        return f"[AI] Create {posixpath.basename(job.file_path)} based on {seed_name}"
    summary = job.instruction.strip().splitlines()[0] if job.instruction.strip() else ""
    if len(summary) > MAX_MESSAGE_INSTRUCTION:
        summary = summary[: MAX_MESSAGE_INSTRUCTION - 3] + "..."
    return f"[AI] Update {posixpath.basename(job.file_path)}: {summary}"


def _with_trailing_newline(candidate: str, original: str | None) -> str:
    if original is None or original.endswith("\n"):
        return candidate + "\n"
    return candidate


class JobPipeline:
    """Runs one job from the generating phase to a terminal status.

    The scheduler moves the job to ``generating`` before calling ``run``.
    Any exception raised here is recorded on the job by the scheduler.
    """

    def __init__(
        self,
        source_control: SourceControlGateway,
        completion: CompletionGateway,
        store: JobStore,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self.source_control = source_control
        self.completion = completion
        self.store = store
        self.cancel_event = cancel_event

    async def run(self, job: Job) -> Job:
        strategy = STRATEGY_BY_KIND[job.kind]
        if strategy == PipelineStrategy.ALWAYS_COMMIT:
            await self._run_create(job)
        else:
            await self._run_edit(job)
        return self.store.get(job.job_id)

    async def _run_edit(self, job: Job) -> None:
        snapshot = await self._fetch(job, job.file_path)

        if job.kind == JobKind.BULK_EDIT:
            prompt = build_bulk_edit_prompt(job.instruction, snapshot.content, job.file_path)
        else:
            prompt = build_edit_prompt(job.instruction, snapshot.content)

        candidate = await self._generate(job, prompt)
        if not candidate:
            raise GenerationError(EMPTY_CONTENT_ERROR)
        if is_unchanged(candidate, snapshot.content):
            logger.info("No changes for %s; skipping commit", job.job_id)
            self.store.skip(job.job_id)
            return

        content = _with_trailing_newline(candidate, snapshot.content)
        await self._commit(job, content, snapshot.revision_marker)

    async def _run_create(self, job: Job) -> None:
        seed_path = job.seed_file_path or job.file_path
        seed = await self._fetch(job, seed_path)
        prompt = build_blueprint_file_prompt(
            goal=job.instruction,
            seed_file_path=seed_path,
            seed_content=seed.content,
            new_file_path=job.file_path,
            description=job.description or "",
        )

        candidate = await self._generate(job, prompt)
        if not candidate:
            raise GenerationError(EMPTY_CONTENT_ERROR)

        await self._commit(job, _with_trailing_newline(candidate, None), None)

    async def _fetch(self, job: Job, path: str) -> FileSnapshot:
        self._check_cancelled()
        try:
            return await self.source_control.get_file_content(
                job.owner, job.repo, path, job.branch
            )
        except FetchError:
            raise
        except Exception as exc:
            raise FetchError(f"Failed to fetch '{path}': {exc}") from exc

    async def _generate(self, job: Job, prompt: str) -> str:
        self._check_cancelled()

        def on_fragment(fragment: str) -> None:
            self._check_cancelled()
            self.store.append_fragment(job.job_id, fragment)

        try:
            await self.completion.complete_streaming(prompt, on_fragment)
        except (GenerationError, JobCancelledError):
            raise
        except Exception as exc:
            raise GenerationError(f"AI request failed: {exc}") from exc

        return normalize_completion(self.store.get(job.job_id).accumulated_content)

    async def _commit(self, job: Job, content: str, revision_marker: str | None) -> CommitResult:
        self._check_cancelled()
        self.store.begin_commit(job.job_id, content)
        try:
            result = await self.source_control.create_or_update_file(
                job.owner,
                job.repo,
                job.branch,
                job.file_path,
                content,
                commit_message_for(job),
                revision_marker,
            )
        except (CommitConflict, CommitError):
            raise
        except Exception as exc:
            raise CommitError(f"Failed to commit '{job.file_path}': {exc}") from exc

        self.store.complete(job.job_id, result.revision_marker)
        return result

    def _check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise JobCancelledError(CANCELLED_ERROR)
