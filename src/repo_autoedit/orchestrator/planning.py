"""Expansion planning: seed files in, blueprint jobs out.

Each seed is planned independently. A seed whose content cannot be read or
whose structured plan is unusable is dropped with a warning; the run only
aborts when no seed yields a single job.
"""

import asyncio
import logging
import posixpath

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from repo_autoedit.gateways.completion import CompletionGateway
from repo_autoedit.gateways.exceptions import GatewayError
from repo_autoedit.gateways.source_control import SourceControlGateway
from repo_autoedit.models import (
    BlueprintItem,
    ExpansionPlan,
    FileTarget,
    Job,
    split_repo_full_name,
)
from repo_autoedit.orchestrator.exceptions import ExpansionAbortedError, PlanningError
from repo_autoedit.orchestrator.prompts import BLUEPRINT_SCHEMA, build_blueprint_prompt
from repo_autoedit.orchestrator.scheduler import DEFAULT_CONCURRENCY

logger = logging.getLogger(__name__)

DEFAULT_FILES_PER_SEED = 3
MAX_FILES_PER_SEED = 10
EXPANSION_ABORTED_MESSAGE = (
    "The AI architect failed to create an expansion plan. "
    "Please try a more specific goal or select different seed files."
)


class ExpansionBatch(BaseModel):
    """Jobs produced by planning, plus the per-seed failures that were skipped."""

    model_config = ConfigDict(frozen=False)

    jobs: list[Job] = Field(default_factory=list)
    seed_errors: list[str] = Field(default_factory=list)


def clamp_files_per_seed(files_per_seed: int) -> int:
    return max(1, min(files_per_seed, MAX_FILES_PER_SEED))


def resolve_blueprint_path(seed_file_path: str, item_path: str) -> str:
    """Resolve a blueprint path against the seed file's directory.

    >>> resolve_blueprint_path("src/app/main.ts", "../lib/util.ts")
    'src/lib/util.ts'

    Raises:
        PlanningError: If the path is empty, absolute, or escapes the
            repository root.
    """
    raw = item_path.strip().replace("\\", "/")
    if not raw:
        raise PlanningError("Blueprint file path is empty")
    if raw.startswith("/"):
        raise PlanningError(f"Blueprint file path must be relative: '{item_path}'")

    seed_dir = posixpath.dirname(seed_file_path)
    resolved = posixpath.normpath(posixpath.join(seed_dir, raw))
    if resolved in (".", "..") or resolved.startswith("../"):
        raise PlanningError(f"Blueprint file path escapes the repository: '{item_path}'")
    return resolved


def parse_plan(payload: object, files_per_seed: int) -> list[BlueprintItem]:
    """Validate a structured planning response and truncate it.

    Raises:
        PlanningError: If the payload does not match the blueprint schema or
            lists no files.
    """
    try:
        plan = ExpansionPlan.model_validate(payload)
    except ValidationError as exc:
        raise PlanningError(f"Unparsable expansion plan: {exc}") from exc
    if not plan.files:
        raise PlanningError("Expansion plan lists no files")
    if len(plan.files) > files_per_seed:
        logger.debug(
            "Truncating plan from %d to %d file(s)", len(plan.files), files_per_seed
        )
    return plan.files[:files_per_seed]


class ExpansionPlanner:
    """Asks the completion service for a blueprint per seed file."""

    def __init__(
        self,
        source_control: SourceControlGateway,
        completion: CompletionGateway,
        files_per_seed: int = DEFAULT_FILES_PER_SEED,
        concurrency: int = DEFAULT_CONCURRENCY,
    ):
        self.source_control = source_control
        self.completion = completion
        self.files_per_seed = clamp_files_per_seed(files_per_seed)
        self.concurrency = max(1, concurrency)

    async def plan_seed(self, seed: FileTarget, goal: str) -> list[BlueprintItem]:
        """Plan new files for one seed.

        Raises:
            PlanningError: If the seed cannot be read or the plan is unusable.
        """
        owner, repo = split_repo_full_name(seed.repo_full_name)
        try:
            snapshot = await self.source_control.get_file_content(
                owner, repo, seed.path, seed.branch
            )
        except GatewayError as exc:
            raise PlanningError(f"Could not read seed file '{seed.path}': {exc}") from exc

        prompt = build_blueprint_prompt(
            goal=goal,
            files_per_seed=self.files_per_seed,
            seed_file_path=seed.path,
            seed_content=snapshot.content,
        )
        try:
            payload = await self.completion.complete_structured(prompt, BLUEPRINT_SCHEMA)
        except GatewayError as exc:
            raise PlanningError(f"Planning request failed for '{seed.path}': {exc}") from exc

        return parse_plan(payload, self.files_per_seed)

    async def plan(self, seeds: list[FileTarget], goal: str) -> ExpansionBatch:
        """Plan every seed and flatten the results into queued create jobs.

        Job identities are unique; when two blueprints resolve to the same
        file, the first one wins.

        Raises:
            ExpansionAbortedError: If no seed produced a job.
        """
        semaphore = asyncio.Semaphore(self.concurrency)

        async def plan_one(seed: FileTarget) -> list[BlueprintItem]:
            async with semaphore:
                return await self.plan_seed(seed, goal)

        results = await asyncio.gather(
            *(plan_one(seed) for seed in seeds), return_exceptions=True
        )

        batch = ExpansionBatch()
        seen: set[str] = set()
        for seed, result in zip(seeds, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                message = f"{seed.key}: {result}"
                logger.warning("Skipping seed %s", message)
                batch.seed_errors.append(message)
                continue

            for item in result:
                try:
                    new_path = resolve_blueprint_path(seed.path, item.file_path)
                except PlanningError as exc:
                    logger.warning("Skipping blueprint item from %s: %s", seed.key, exc)
                    batch.seed_errors.append(f"{seed.key}: {exc}")
                    continue

                job = Job.for_blueprint(
                    repo_full_name=seed.repo_full_name,
                    seed_file_path=seed.path,
                    new_file_path=new_path,
                    description=item.description,
                    goal=goal,
                    branch=seed.branch,
                )
                if job.job_id in seen:
                    logger.warning("Duplicate blueprint target %s; keeping the first", job.job_id)
                    continue
                seen.add(job.job_id)
                batch.jobs.append(job)

        if not batch.jobs:
            raise ExpansionAbortedError(EXPANSION_ABORTED_MESSAGE)

        logger.info(
            "Planned %d new file(s) from %d seed(s)", len(batch.jobs), len(seeds)
        )
        return batch
