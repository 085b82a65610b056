"""Exceptions for orchestrator operations."""


class OrchestratorError(Exception):
    """Base exception for all orchestrator operations."""


class GraphBuildError(OrchestratorError):
    """Raised when graph construction fails."""


class InvalidTransitionError(OrchestratorError):
    """Raised when a job status change is not allowed by the state machine."""


class PlanningError(OrchestratorError):
    """Raised when a seed file's structured plan is unparsable or empty."""


class ExpansionAbortedError(OrchestratorError):
    """Raised when no seed file produced a usable plan."""


class JobCancelledError(OrchestratorError):
    """Raised inside a pipeline when the run's cancel signal is set."""
