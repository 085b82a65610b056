"""Entry points that assemble and invoke a run graph."""

import asyncio
import logging
import time

from repo_autoedit.gateways.completion import CompletionGateway
from repo_autoedit.gateways.source_control import SourceControlGateway
from repo_autoedit.models import FileTarget, JobKind
from repo_autoedit.orchestrator.exceptions import OrchestratorError
from repo_autoedit.orchestrator.graph import (
    build_bulk_edit_graph,
    build_edit_graph,
    build_expansion_graph,
    enqueue_targets,
)
from repo_autoedit.orchestrator.pipeline import JobPipeline
from repo_autoedit.orchestrator.planning import DEFAULT_FILES_PER_SEED, ExpansionPlanner
from repo_autoedit.orchestrator.scheduler import DEFAULT_CONCURRENCY, ConcurrencyScheduler
from repo_autoedit.orchestrator.state import RunState, make_initial_state
from repo_autoedit.orchestrator.store import JobStore

logger = logging.getLogger(__name__)

BULK_BRANCH_PREFIX = "ai-bulk-edit/"


def default_bulk_branch_name() -> str:
    return f"{BULK_BRANCH_PREFIX}{int(time.time() * 1000)}"


def _validate_request(instruction: str, targets: list[FileTarget], what: str) -> None:
    if not instruction.strip():
        raise OrchestratorError(f"{what} cannot be empty or whitespace-only")
    if not targets:
        raise OrchestratorError("No files selected")


async def run_edit(
    source_control: SourceControlGateway,
    completion: CompletionGateway,
    targets: list[FileTarget],
    instruction: str,
    store: JobStore | None = None,
    concurrency: int = DEFAULT_CONCURRENCY,
    cancel_event: asyncio.Event | None = None,
) -> RunState:
    """Apply one instruction to each target file on its own active branch.

    Raises:
        OrchestratorError: If the instruction is blank or no file is selected.
    """
    _validate_request(instruction, targets, "Instruction")
    store = store if store is not None else JobStore()
    scheduler = ConcurrencyScheduler(store, concurrency, cancel_event)
    pipeline = JobPipeline(source_control, completion, store, cancel_event)

    job_ids = enqueue_targets(store, targets, instruction, kind=JobKind.EDIT)
    graph = build_edit_graph(scheduler, pipeline)
    state = make_initial_state("edit", instruction, targets, job_ids=job_ids)
    return await graph.ainvoke(state)


async def run_bulk_edit(
    source_control: SourceControlGateway,
    completion: CompletionGateway,
    repo_full_name: str,
    paths: list[str],
    directive: str,
    base_branch: str,
    new_branch: str | None = None,
    open_pull_request: bool = False,
    store: JobStore | None = None,
    concurrency: int = DEFAULT_CONCURRENCY,
    cancel_event: asyncio.Event | None = None,
) -> RunState:
    """Apply a directive to many files of one repository on a new branch.

    Raises:
        OrchestratorError: If the directive is blank or no file is selected.
    """
    new_branch = (new_branch or "").strip() or default_bulk_branch_name()
    targets = [
        FileTarget(repo_full_name=repo_full_name, path=path, branch=new_branch)
        for path in paths
    ]
    _validate_request(directive, targets, "Directive")
    store = store if store is not None else JobStore()
    scheduler = ConcurrencyScheduler(store, concurrency, cancel_event)
    pipeline = JobPipeline(source_control, completion, store, cancel_event)

    graph = build_bulk_edit_graph(source_control, store, scheduler, pipeline)
    state = make_initial_state(
        "bulk_edit",
        directive,
        targets,
        repo_full_name=repo_full_name,
        base_branch=base_branch,
        new_branch=new_branch,
        open_pull_request=open_pull_request,
    )
    return await graph.ainvoke(state)


async def run_expansion(
    source_control: SourceControlGateway,
    completion: CompletionGateway,
    seeds: list[FileTarget],
    goal: str,
    files_per_seed: int = DEFAULT_FILES_PER_SEED,
    store: JobStore | None = None,
    concurrency: int = DEFAULT_CONCURRENCY,
    cancel_event: asyncio.Event | None = None,
) -> RunState:
    """Plan new files from each seed, then generate and commit them.

    Raises:
        OrchestratorError: If the goal is blank or no seed is selected.
    """
    _validate_request(goal, seeds, "Goal")
    store = store if store is not None else JobStore()
    planner = ExpansionPlanner(source_control, completion, files_per_seed, concurrency)
    scheduler = ConcurrencyScheduler(store, concurrency, cancel_event)
    pipeline = JobPipeline(source_control, completion, store, cancel_event)

    graph = build_expansion_graph(planner, store, scheduler, pipeline)
    state = make_initial_state("expand", goal, seeds)
    return await graph.ainvoke(state)
