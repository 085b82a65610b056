"""Gateways to the hosted source-control API and the text-completion API."""

from repo_autoedit.gateways.completion import (
    CompletionGateway,
    LLMCompletionGateway,
    drain_stream,
)
from repo_autoedit.gateways.exceptions import (
    BranchError,
    CommitConflict,
    CommitError,
    CompletionError,
    FetchError,
    GatewayError,
    GenerationError,
    PullRequestError,
    SourceControlError,
)
from repo_autoedit.gateways.source_control import (
    GitHubGateway,
    SourceControlGateway,
    build_tree,
)

__all__ = [
    "BranchError",
    "CommitConflict",
    "CommitError",
    "CompletionError",
    "CompletionGateway",
    "FetchError",
    "GatewayError",
    "GenerationError",
    "GitHubGateway",
    "LLMCompletionGateway",
    "PullRequestError",
    "SourceControlError",
    "SourceControlGateway",
    "build_tree",
    "drain_stream",
]
