"""Data models for repo-autoedit."""

from repo_autoedit.models.job_models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    BlueprintItem,
    BranchContext,
    ExpansionPlan,
    FileSnapshot,
    FileTarget,
    Job,
    JobEvent,
    JobEventKind,
    JobKind,
    JobStatus,
    RunSummary,
    make_job_id,
    split_job_id,
    split_repo_full_name,
)
from repo_autoedit.models.repo_models import (
    Branch,
    CommitResult,
    OpenFile,
    PullRequest,
    RepoDescriptor,
    TreeNode,
    TreeNodeType,
)

__all__ = [
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "BlueprintItem",
    "Branch",
    "BranchContext",
    "CommitResult",
    "ExpansionPlan",
    "FileSnapshot",
    "FileTarget",
    "Job",
    "JobEvent",
    "JobEventKind",
    "JobKind",
    "JobStatus",
    "OpenFile",
    "PullRequest",
    "RepoDescriptor",
    "RunSummary",
    "TreeNode",
    "TreeNodeType",
    "make_job_id",
    "split_job_id",
    "split_repo_full_name",
]
