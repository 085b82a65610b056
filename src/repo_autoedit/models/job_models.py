"""Job models for the multi-file AI edit orchestrator."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

JOB_ID_SEPARATOR = "::"


class JobStatus(str, Enum):
    """Lifecycle status of a single job.

    ``generating`` and ``committing`` are the two phases of processing.
    """

    QUEUED = "queued"
    GENERATING = "generating"
    COMMITTING = "committing"
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.SUCCESS, JobStatus.SKIPPED, JobStatus.FAILED})
ACTIVE_STATUSES = frozenset({JobStatus.GENERATING, JobStatus.COMMITTING})


class JobKind(str, Enum):
    """Which pipeline strategy a job runs under."""

    EDIT = "edit"            # instruction per file, commits to the active branch
    BULK_EDIT = "bulk_edit"  # directive per file, commits to a new branch
    CREATE = "create"        # new file from an expansion blueprint


def make_job_id(repo_full_name: str, file_path: str) -> str:
    return f"{repo_full_name}{JOB_ID_SEPARATOR}{file_path}"


def split_job_id(job_id: str) -> tuple[str, str]:
    repo_full_name, _, file_path = job_id.partition(JOB_ID_SEPARATOR)
    return repo_full_name, file_path


def split_repo_full_name(repo_full_name: str) -> tuple[str, str]:
    """Split ``owner/name`` into its two parts.

    Raises:
        ValueError: If the name is not of the form ``owner/name``.
    """
    owner, sep, name = repo_full_name.partition("/")
    if not sep or not owner or not name or "/" in name:
        raise ValueError(f"Invalid repository name: '{repo_full_name}'")
    return owner, name


class Job(BaseModel):
    """One file's AI-driven edit or creation task.

    Identity is ``(repo_full_name, file_path)``. For expansion jobs the
    ``file_path`` is the resolved new file path.
    """

    model_config = ConfigDict(frozen=True)

    job_id: str
    repo_full_name: str
    file_path: str
    kind: JobKind
    instruction: str
    branch: str  # branch read from and committed to
    status: JobStatus = JobStatus.QUEUED
    accumulated_content: str = ""  # raw streamed output, append-only while generating
    final_content: str | None = None  # normalized candidate that was committed
    revision_marker: str | None = None  # marker of the committed version
    error: str | None = None

    # Expansion only
    seed_file_path: str | None = None
    description: str | None = None
    new_file_path: str | None = None

    @property
    def owner(self) -> str:
        return split_repo_full_name(self.repo_full_name)[0]

    @property
    def repo(self) -> str:
        return split_repo_full_name(self.repo_full_name)[1]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def for_file(
        cls,
        repo_full_name: str,
        file_path: str,
        instruction: str,
        branch: str,
        kind: JobKind = JobKind.EDIT,
    ) -> "Job":
        return cls(
            job_id=make_job_id(repo_full_name, file_path),
            repo_full_name=repo_full_name,
            file_path=file_path,
            kind=kind,
            instruction=instruction,
            branch=branch,
        )

    @classmethod
    def for_blueprint(
        cls,
        repo_full_name: str,
        seed_file_path: str,
        new_file_path: str,
        description: str,
        goal: str,
        branch: str,
    ) -> "Job":
        return cls(
            job_id=make_job_id(repo_full_name, new_file_path),
            repo_full_name=repo_full_name,
            file_path=new_file_path,
            kind=JobKind.CREATE,
            instruction=goal,
            branch=branch,
            seed_file_path=seed_file_path,
            description=description,
            new_file_path=new_file_path,
        )


class FileTarget(BaseModel):
    """A selected file: an edit target or an expansion seed."""

    model_config = ConfigDict(frozen=True)

    repo_full_name: str
    path: str
    branch: str  # branch active when the run was scheduled

    @property
    def key(self) -> str:
        return make_job_id(self.repo_full_name, self.path)


class FileSnapshot(BaseModel):
    """File content at a specific revision, fetched fresh for one job."""

    model_config = ConfigDict(frozen=True)

    path: str
    content: str
    revision_marker: str


class BranchContext(BaseModel):
    """Target branch for a run's commits."""

    model_config = ConfigDict(frozen=True)

    repo_full_name: str
    branch_name: str
    base_revision_marker: str
    base_branch: str | None = None


class BlueprintItem(BaseModel):
    """A planned new file, relative to the seed file's directory."""

    model_config = ConfigDict(frozen=False, populate_by_name=True)

    file_path: str = Field(alias="filePath", min_length=1)
    description: str = Field(min_length=1)


class ExpansionPlan(BaseModel):
    """Structured planning response: an ordered list of blueprint items."""

    model_config = ConfigDict(frozen=False)

    files: list[BlueprintItem]


class JobEventKind(str, Enum):
    CREATED = "created"
    STATUS = "status"
    FRAGMENT = "fragment"
    COMMITTED = "committed"  # consumed by views of the committed file


class JobEvent(BaseModel):
    """A change to one job, carrying the job snapshot after the change."""

    model_config = ConfigDict(frozen=True)

    kind: JobEventKind
    job: Job
    fragment: str | None = None


class RunSummary(BaseModel):
    """Aggregate outcome of a run."""

    model_config = ConfigDict(frozen=False)

    total: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    cancelled: bool = False
    aborted: bool = False
    message: str = ""

    def render(self, label: str = "Run") -> str:
        if self.aborted:
            return f"{label} aborted: {self.message}" if self.message else f"{label} aborted."
        text = (
            f"{label} finished: {self.succeeded} succeeded, "
            f"{self.skipped} skipped, {self.failed} failed "
            f"({self.total} total)."
        )
        if self.cancelled:
            text += " The run was cancelled."
        return text
