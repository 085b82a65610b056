"""Job orchestration: store, scheduler, pipelines, planning and run graphs."""

from repo_autoedit.orchestrator.exceptions import (
    ExpansionAbortedError,
    GraphBuildError,
    InvalidTransitionError,
    JobCancelledError,
    OrchestratorError,
    PlanningError,
)
from repo_autoedit.orchestrator.graph import (
    ABORT_PREFIX,
    build_bulk_edit_graph,
    build_edit_graph,
    build_expansion_graph,
)
from repo_autoedit.orchestrator.pipeline import JobPipeline, normalize_completion
from repo_autoedit.orchestrator.planning import ExpansionPlanner, resolve_blueprint_path
from repo_autoedit.orchestrator.runner import run_bulk_edit, run_edit, run_expansion
from repo_autoedit.orchestrator.scheduler import DEFAULT_CONCURRENCY, ConcurrencyScheduler
from repo_autoedit.orchestrator.state import RunState, make_initial_state
from repo_autoedit.orchestrator.store import JobStore

__all__ = [
    "ABORT_PREFIX",
    "DEFAULT_CONCURRENCY",
    "ConcurrencyScheduler",
    "ExpansionAbortedError",
    "ExpansionPlanner",
    "GraphBuildError",
    "InvalidTransitionError",
    "JobCancelledError",
    "JobPipeline",
    "JobStore",
    "OrchestratorError",
    "PlanningError",
    "RunState",
    "build_bulk_edit_graph",
    "build_edit_graph",
    "build_expansion_graph",
    "make_initial_state",
    "normalize_completion",
    "resolve_blueprint_path",
    "run_bulk_edit",
    "run_edit",
    "run_expansion",
]
