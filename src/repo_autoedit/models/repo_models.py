"""Source-control records returned by the gateway."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class RepoDescriptor(BaseModel):
    model_config = ConfigDict(frozen=False)

    id: int
    name: str
    full_name: str  # "owner/name"
    owner: str
    default_branch: str


class TreeNodeType(str, Enum):
    FILE = "file"
    DIR = "dir"


class TreeNode(BaseModel):
    """A file or directory in a repository tree."""

    model_config = ConfigDict(frozen=False)

    path: str
    name: str
    type: TreeNodeType
    size: int | None = None
    children: list["TreeNode"] = Field(default_factory=list)


class Branch(BaseModel):
    model_config = ConfigDict(frozen=False)

    name: str
    commit_sha: str
    protected: bool = False


class PullRequest(BaseModel):
    model_config = ConfigDict(frozen=False)

    number: int
    url: str
    title: str = ""
    state: str = "open"


class CommitResult(BaseModel):
    """Outcome of a create-or-update file call."""

    model_config = ConfigDict(frozen=False)

    path: str
    revision_marker: str  # blob marker of the new file version
    commit_sha: str | None = None


class OpenFile(BaseModel):
    """A file currently open for viewing or editing."""

    model_config = ConfigDict(frozen=False)

    repo_full_name: str
    path: str
    content: str
    edited_content: str
    revision_marker: str
    branch: str
    default_branch: str

    @property
    def key(self) -> str:
        return f"{self.repo_full_name}::{self.path}"

    @property
    def has_changes(self) -> bool:
        return self.edited_content != self.content
