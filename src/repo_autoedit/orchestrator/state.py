"""State definition for the run graphs."""

import operator
from typing import Annotated, Literal, TypedDict

from repo_autoedit.models import BranchContext, FileTarget, PullRequest, RunSummary

RunMode = Literal["edit", "bulk_edit", "expand"]


class RunState(TypedDict):
    """State for one edit, bulk-edit or expansion run.

    ``errors`` accumulates across nodes; every other field is overwritten.
    """

    # Input
    mode: RunMode
    instruction: str  # edit instruction, bulk directive, or expansion goal
    targets: list[FileTarget]  # files to edit, or expansion seeds

    # Bulk edit
    repo_full_name: str | None
    base_branch: str | None
    new_branch: str | None
    open_pull_request: bool
    branch_context: BranchContext | None
    pull_request: PullRequest | None

    # Execution
    job_ids: list[str]
    summary: RunSummary | None

    # Error accumulation
    errors: Annotated[list[str], operator.add]


def make_initial_state(
    mode: RunMode,
    instruction: str,
    targets: list[FileTarget],
    repo_full_name: str | None = None,
    base_branch: str | None = None,
    new_branch: str | None = None,
    open_pull_request: bool = False,
    job_ids: list[str] | None = None,
) -> RunState:
    """Create the initial state for a run graph."""
    return {
        "mode": mode,
        "instruction": instruction,
        "targets": list(targets),
        "repo_full_name": repo_full_name,
        "base_branch": base_branch,
        "new_branch": new_branch,
        "open_pull_request": open_pull_request,
        "branch_context": None,
        "pull_request": None,
        "job_ids": list(job_ids or []),
        "summary": None,
        "errors": [],
    }
