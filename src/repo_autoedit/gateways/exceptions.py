"""Exceptions raised by the source-control and completion gateways."""


class GatewayError(Exception):
    """Base exception for all gateway operations."""


class SourceControlError(GatewayError):
    """Base exception for source-control operations."""


class FetchError(SourceControlError):
    """Raised when file content, trees or repositories cannot be read."""


class CommitError(SourceControlError):
    """Raised when a file write fails for a reason other than a conflict."""


class CommitConflict(SourceControlError):
    """Raised when a write carries a stale revision marker.

    Not a CommitError subclass; conflicts and other write failures stay apart.
    """


class BranchError(SourceControlError):
    """Raised when listing or creating branches fails."""


class PullRequestError(SourceControlError):
    """Raised when a pull request cannot be created."""


class CompletionError(GatewayError):
    """Base exception for text-completion operations."""


class GenerationError(CompletionError):
    """Raised when a completion call fails or returns unusable output."""
