"""LangGraph run graphs for edit, bulk-edit and expansion runs.

Each graph wires the branch, planning, scheduling and pull request steps
around one ``JobStore``. Nodes never raise: failures are reported through
the accumulating ``errors`` field, and a run-level abort writes an entry
prefixed with ``ABORT_PREFIX``.
"""

import logging
from typing import Awaitable, Callable

from langgraph.graph import END, START, StateGraph

from repo_autoedit.gateways.exceptions import BranchError
from repo_autoedit.gateways.source_control import SourceControlGateway
from repo_autoedit.models import (
    BranchContext,
    FileTarget,
    Job,
    JobKind,
    JobStatus,
    RunSummary,
    split_repo_full_name,
)
from repo_autoedit.orchestrator.exceptions import GraphBuildError
from repo_autoedit.orchestrator.pipeline import JobPipeline
from repo_autoedit.orchestrator.planning import ExpansionPlanner
from repo_autoedit.orchestrator.scheduler import ConcurrencyScheduler
from repo_autoedit.orchestrator.state import RunState
from repo_autoedit.orchestrator.store import JobStore

logger = logging.getLogger(__name__)

ABORT_PREFIX = "ABORT:"
MAX_PR_TITLE_INSTRUCTION = 72

RUN_LABELS = {
    "edit": "Edit run",
    "bulk_edit": "Bulk edit",
    "expand": "Expansion",
}

AsyncNode = Callable[[RunState], Awaitable[dict]]


def enqueue_targets(
    store: JobStore,
    targets: list[FileTarget],
    instruction: str,
    kind: JobKind = JobKind.EDIT,
    branch: str | None = None,
) -> list[str]:
    """Add one queued job per target and return their identities in order.

    ``branch`` overrides each target's own branch. Targets that repeat an
    identity already in this batch are dropped.
    """
    job_ids: list[str] = []
    for target in targets:
        if target.key in job_ids:
            logger.warning("Duplicate target %s; keeping the first", target.key)
            continue
        job = Job.for_file(
            repo_full_name=target.repo_full_name,
            file_path=target.path,
            instruction=instruction,
            branch=branch or target.branch,
            kind=kind,
        )
        store.add(job)
        job_ids.append(job.job_id)
    return job_ids


def make_branch_node(source_control: SourceControlGateway, store: JobStore) -> AsyncNode:
    """Factory: returns a node that creates the bulk-edit branch, then its jobs.

    The branch is created from the base branch's head before any job is
    queued. On failure the node returns an ``ABORT:`` error and no jobs.
    """

    async def branch_node(state: RunState) -> dict:
        repo_full_name = state["repo_full_name"] or ""
        base_branch = state["base_branch"] or ""
        new_branch = state["new_branch"] or ""
        try:
            owner, repo = split_repo_full_name(repo_full_name)
            branches = await source_control.list_branches(owner, repo)
            base = next((b for b in branches if b.name == base_branch), None)
            if base is None:
                raise BranchError(f"Base branch '{base_branch}' not found in {repo_full_name}")
            if any(b.name == new_branch for b in branches):
                raise BranchError(f"Branch '{new_branch}' already exists in {repo_full_name}")

            await source_control.create_branch(owner, repo, new_branch, base.commit_sha)
        except Exception as exc:
            return {
                "errors": [f"{ABORT_PREFIX} failed to create branch '{new_branch}': {exc}"],
                "branch_context": None,
            }

        logger.info("Created branch %s from %s in %s", new_branch, base_branch, repo_full_name)
        context = BranchContext(
            repo_full_name=repo_full_name,
            branch_name=new_branch,
            base_revision_marker=base.commit_sha,
            base_branch=base_branch,
        )
        job_ids = enqueue_targets(
            store,
            state["targets"],
            state["instruction"],
            kind=JobKind.BULK_EDIT,
            branch=new_branch,
        )
        return {"branch_context": context, "job_ids": job_ids}

    return branch_node


def make_plan_node(planner: ExpansionPlanner, store: JobStore) -> AsyncNode:
    """Factory: returns a node that plans every seed and queues create jobs.

    Per-seed failures are reported in ``errors``; only a plan with no jobs
    at all aborts the run.
    """

    async def plan_node(state: RunState) -> dict:
        try:
            batch = await planner.plan(state["targets"], state["instruction"])
        except Exception as exc:
            return {"errors": [f"{ABORT_PREFIX} {exc}"], "job_ids": []}

        for job in batch.jobs:
            store.add(job)
        return {
            "errors": [f"plan_node: {message}" for message in batch.seed_errors],
            "job_ids": [job.job_id for job in batch.jobs],
        }

    return plan_node


def make_schedule_node(scheduler: ConcurrencyScheduler, pipeline: JobPipeline) -> AsyncNode:
    """Factory: returns a node that runs every queued job to a terminal status."""

    async def schedule_node(state: RunState) -> dict:
        summary = await scheduler.run(state["job_ids"], pipeline.run)
        return {"summary": summary}

    return schedule_node


def make_pull_request_node(source_control: SourceControlGateway, store: JobStore) -> AsyncNode:
    """Factory: returns a node that opens a pull request for the bulk-edit branch.

    Skipped when nothing was committed. A failure here is reported but does
    not undo the run's commits.
    """

    async def pull_request_node(state: RunState) -> dict:
        context = state["branch_context"]
        if context is None or context.base_branch is None:
            return {"errors": ["pull_request_node: no branch to open a pull request from"]}

        jobs = [store.get(job_id) for job_id in state["job_ids"]]
        committed = [job for job in jobs if job.status == JobStatus.SUCCESS]
        if not committed:
            return {"errors": ["pull_request_node: no commits on branch, skipping pull request"]}

        instruction = state["instruction"].strip().splitlines()[0]
        if len(instruction) > MAX_PR_TITLE_INSTRUCTION:
            instruction = instruction[: MAX_PR_TITLE_INSTRUCTION - 3] + "..."
        body_lines = [f"Directive: {state['instruction'].strip()}", "", "Updated files:"]
        body_lines.extend(f"- `{job.file_path}`" for job in committed)

        try:
            owner, repo = split_repo_full_name(context.repo_full_name)
            pull_request = await source_control.create_pull_request(
                owner,
                repo,
                title=f"[AI] {instruction}",
                body="\n".join(body_lines),
                head=context.branch_name,
                base=context.base_branch,
            )
        except Exception as exc:
            return {"errors": [f"pull_request_node error: {exc}"]}

        logger.info("Opened pull request #%d: %s", pull_request.number, pull_request.url)
        return {"pull_request": pull_request}

    return pull_request_node


def summarize_node(state: RunState) -> dict:
    """Attach the human-readable outcome to the run summary."""
    summary = state["summary"] or RunSummary()
    summary = summary.model_copy(
        update={"message": summary.render(RUN_LABELS.get(state["mode"], "Run"))}
    )
    return {"summary": summary}


def abort_node(state: RunState) -> dict:
    """Terminal node for run-level failures; no job was started."""
    reasons = [error for error in state["errors"] if error.startswith(ABORT_PREFIX)]
    reason = reasons[-1][len(ABORT_PREFIX):].strip() if reasons else "unknown error"
    summary = RunSummary(aborted=True, message=reason)
    logger.error(summary.render(RUN_LABELS.get(state["mode"], "Run")))
    return {"summary": summary}


def route_after_branch(state: RunState) -> str:
    return "abort" if state["branch_context"] is None else "continue"


def route_after_plan(state: RunState) -> str:
    return "continue" if state["job_ids"] else "abort"


def route_after_schedule(state: RunState) -> str:
    return "pull_request" if state["open_pull_request"] else "summarize"


def build_edit_graph(scheduler: ConcurrencyScheduler, pipeline: JobPipeline):
    """Build the multi-file edit graph.

    Edge topology:
      START -> schedule_node -> summarize_node -> END

    Jobs are queued before the graph is invoked.

    Raises:
        GraphBuildError: If graph construction fails.
    """
    try:
        graph = StateGraph(RunState)
        graph.add_node("schedule_node", make_schedule_node(scheduler, pipeline))
        graph.add_node("summarize_node", summarize_node)

        graph.add_edge(START, "schedule_node")
        graph.add_edge("schedule_node", "summarize_node")
        graph.add_edge("summarize_node", END)
        return graph.compile()
    except Exception as exc:
        raise GraphBuildError(f"Failed to build edit graph: {exc}") from exc


def build_bulk_edit_graph(
    source_control: SourceControlGateway,
    store: JobStore,
    scheduler: ConcurrencyScheduler,
    pipeline: JobPipeline,
):
    """Build the bulk-edit graph.

    Edge topology:
      START -> branch_node -> conditional -> {schedule_node, abort_node}
      schedule_node -> conditional -> {pull_request_node, summarize_node}
      pull_request_node -> summarize_node -> END
      abort_node -> END

    Raises:
        GraphBuildError: If graph construction fails.
    """
    try:
        graph = StateGraph(RunState)
        graph.add_node("branch_node", make_branch_node(source_control, store))
        graph.add_node("schedule_node", make_schedule_node(scheduler, pipeline))
        graph.add_node("pull_request_node", make_pull_request_node(source_control, store))
        graph.add_node("summarize_node", summarize_node)
        graph.add_node("abort_node", abort_node)

        graph.add_edge(START, "branch_node")
        graph.add_conditional_edges(
            "branch_node",
            route_after_branch,
            {
                "continue": "schedule_node",
                "abort": "abort_node",
            },
        )
        graph.add_conditional_edges(
            "schedule_node",
            route_after_schedule,
            {
                "pull_request": "pull_request_node",
                "summarize": "summarize_node",
            },
        )
        graph.add_edge("pull_request_node", "summarize_node")
        graph.add_edge("summarize_node", END)
        graph.add_edge("abort_node", END)
        return graph.compile()
    except Exception as exc:
        raise GraphBuildError(f"Failed to build bulk edit graph: {exc}") from exc


def build_expansion_graph(
    planner: ExpansionPlanner,
    store: JobStore,
    scheduler: ConcurrencyScheduler,
    pipeline: JobPipeline,
):
    """Build the expansion graph.

    Edge topology:
      START -> plan_node -> conditional -> {schedule_node, abort_node}
      schedule_node -> summarize_node -> END
      abort_node -> END

    Raises:
        GraphBuildError: If graph construction fails.
    """
    try:
        graph = StateGraph(RunState)
        graph.add_node("plan_node", make_plan_node(planner, store))
        graph.add_node("schedule_node", make_schedule_node(scheduler, pipeline))
        graph.add_node("summarize_node", summarize_node)
        graph.add_node("abort_node", abort_node)

        graph.add_edge(START, "plan_node")
        graph.add_conditional_edges(
            "plan_node",
            route_after_plan,
            {
                "continue": "schedule_node",
                "abort": "abort_node",
            },
        )
        graph.add_edge("schedule_node", "summarize_node")
        graph.add_edge("summarize_node", END)
        graph.add_edge("abort_node", END)
        return graph.compile()
    except Exception as exc:
        raise GraphBuildError(f"Failed to build expansion graph: {exc}") from exc
