"""Session service behind the command line: repositories, selection, open files.

``Workspace`` keeps what an interactive session needs between runs: the
loaded repository trees, the current branch per repository, the file
selection and the files opened for manual editing. It launches runs through
``repo_autoedit.orchestrator.runner`` and keeps open files in step with
commits made by those runs.
"""

import asyncio
import logging

from pydantic import BaseModel, ConfigDict, Field

from repo_autoedit.gateways.completion import CompletionGateway, FragmentCallback
from repo_autoedit.gateways.exceptions import BranchError, GenerationError, PullRequestError
from repo_autoedit.gateways.source_control import SourceControlGateway
from repo_autoedit.models import (
    Branch,
    CommitResult,
    FileTarget,
    JobEvent,
    JobEventKind,
    JobStatus,
    OpenFile,
    PullRequest,
    RepoDescriptor,
    TreeNode,
    TreeNodeType,
    make_job_id,
    split_job_id,
    split_repo_full_name,
)
from repo_autoedit.orchestrator.exceptions import OrchestratorError
from repo_autoedit.orchestrator.pipeline import EMPTY_CONTENT_ERROR, normalize_completion
from repo_autoedit.orchestrator.planning import DEFAULT_FILES_PER_SEED
from repo_autoedit.orchestrator.prompts import build_edit_prompt
from repo_autoedit.orchestrator.runner import run_bulk_edit, run_edit, run_expansion
from repo_autoedit.orchestrator.scheduler import DEFAULT_CONCURRENCY
from repo_autoedit.orchestrator.state import RunState
from repo_autoedit.orchestrator.store import JobListener, JobStore

logger = logging.getLogger(__name__)


class RepoEntry(BaseModel):
    """A loaded repository and its file tree."""

    model_config = ConfigDict(frozen=False)

    repo: RepoDescriptor
    tree: list[TreeNode] = Field(default_factory=list)


def get_all_file_paths(nodes: list[TreeNode]) -> list[str]:
    """Every file path below ``nodes``, depth first, in tree order."""
    paths: list[str] = []
    for node in nodes:
        if node.type == TreeNodeType.FILE:
            paths.append(node.path)
        else:
            paths.extend(get_all_file_paths(node.children))
    return paths


def find_node(nodes: list[TreeNode], path: str) -> TreeNode | None:
    for node in nodes:
        if node.path == path:
            return node
        if node.type == TreeNodeType.DIR and path.startswith(node.path + "/"):
            return find_node(node.children, path)
    return None


class Workspace:
    """Repository browsing and run launching for one authenticated session."""

    def __init__(
        self,
        source_control: SourceControlGateway,
        completion: CompletionGateway,
        concurrency: int = DEFAULT_CONCURRENCY,
    ):
        self.source_control = source_control
        self.completion = completion
        self.concurrency = concurrency

        self.repos: dict[str, RepoEntry] = {}
        self.branches_by_repo: dict[str, list[Branch]] = {}
        self.current_branch_by_repo: dict[str, str] = {}
        self.selected: dict[str, None] = {}  # ordered set of job identities
        self.open_files: dict[str, OpenFile] = {}
        self.active_file_key: str | None = None

    # -- repositories -----------------------------------------------------

    async def load_repositories(self) -> list[RepoEntry]:
        """Load every accessible repository and its default-branch tree.

        A tree that fails to load leaves that repository with an empty tree.
        """
        repos = await self.source_control.list_repositories()

        async def load_tree(repo: RepoDescriptor) -> RepoEntry:
            entry = RepoEntry(repo=repo)
            try:
                entry.tree = await self.source_control.list_tree(
                    repo.owner, repo.name, repo.default_branch
                )
            except Exception as exc:
                logger.warning("Failed to fetch tree for %s: %s", repo.full_name, exc)
            return entry

        entries = await asyncio.gather(*(load_tree(repo) for repo in repos))
        self.repos = {entry.repo.full_name: entry for entry in entries}
        logger.info("Loaded %d repositories", len(self.repos))
        return list(entries)

    async def load_repository(
        self, repo_full_name: str, branch: str | None = None, with_tree: bool = True
    ) -> RepoEntry:
        """Load a single repository, making ``branch`` current when given."""
        owner, name = split_repo_full_name(repo_full_name)
        entry = RepoEntry(repo=await self.source_control.get_repository(owner, name))
        self.repos[entry.repo.full_name] = entry
        if branch:
            self.current_branch_by_repo[entry.repo.full_name] = branch
        if with_tree:
            await self.refresh_tree(entry.repo.full_name)
        return entry

    def repository(self, repo_full_name: str) -> RepoEntry:
        try:
            return self.repos[repo_full_name]
        except KeyError:
            raise OrchestratorError(f"Repository not loaded: '{repo_full_name}'") from None

    def current_branch(self, repo_full_name: str) -> str:
        branch = self.current_branch_by_repo.get(repo_full_name)
        return branch or self.repository(repo_full_name).repo.default_branch

    async def refresh_tree(self, repo_full_name: str) -> list[TreeNode]:
        """Reload a repository's tree from its current branch."""
        entry = self.repository(repo_full_name)
        owner, name = split_repo_full_name(repo_full_name)
        entry.tree = await self.source_control.list_tree(
            owner, name, self.current_branch(repo_full_name)
        )
        return entry.tree

    async def branches(self, repo_full_name: str, refresh: bool = False) -> list[Branch]:
        if refresh or repo_full_name not in self.branches_by_repo:
            owner, name = split_repo_full_name(repo_full_name)
            self.branches_by_repo[repo_full_name] = await self.source_control.list_branches(
                owner, name
            )
        return self.branches_by_repo[repo_full_name]

    # -- selection --------------------------------------------------------

    def select_file(self, repo_full_name: str, path: str, selected: bool = True) -> None:
        key = make_job_id(repo_full_name, path)
        if selected:
            self.selected[key] = None
        else:
            self.selected.pop(key, None)

    def select_directory(
        self, repo_full_name: str, nodes: list[TreeNode], selected: bool = True
    ) -> None:
        """Select or deselect every file below ``nodes``."""
        for path in get_all_file_paths(nodes):
            self.select_file(repo_full_name, path, selected)

    def select_path(self, repo_full_name: str, path: str, selected: bool = True) -> None:
        """Select a file, or every file of a directory, by its tree path."""
        node = find_node(self.repository(repo_full_name).tree, path)
        if node is not None and node.type == TreeNodeType.DIR:
            self.select_directory(repo_full_name, node.children, selected)
        else:
            self.select_file(repo_full_name, path, selected)

    def clear_selection(self) -> None:
        self.selected.clear()

    def selected_targets(self) -> list[FileTarget]:
        targets = []
        for key in self.selected:
            repo_full_name, path = split_job_id(key)
            targets.append(
                FileTarget(
                    repo_full_name=repo_full_name,
                    path=path,
                    branch=self.current_branch(repo_full_name),
                )
            )
        return targets

    # -- open files -------------------------------------------------------

    async def open_file(
        self, repo_full_name: str, path: str, branch: str | None = None
    ) -> OpenFile:
        """Open a file on ``branch`` (default: the repository's current branch).

        An already open file is only made active.
        """
        key = make_job_id(repo_full_name, path)
        if key in self.open_files:
            self.active_file_key = key
            return self.open_files[key]

        entry = self.repository(repo_full_name)
        await self.branches(repo_full_name)
        effective_branch = branch or self.current_branch(repo_full_name)
        self.current_branch_by_repo[repo_full_name] = effective_branch

        owner, name = split_repo_full_name(repo_full_name)
        snapshot = await self.source_control.get_file_content(owner, name, path, effective_branch)
        open_file = OpenFile(
            repo_full_name=repo_full_name,
            path=snapshot.path,
            content=snapshot.content,
            edited_content=snapshot.content,
            revision_marker=snapshot.revision_marker,
            branch=effective_branch,
            default_branch=entry.repo.default_branch,
        )
        self.open_files[key] = open_file
        self.active_file_key = key
        return open_file

    def get_open_file(self, key: str) -> OpenFile:
        try:
            return self.open_files[key]
        except KeyError:
            raise OrchestratorError(f"File is not open: '{key}'") from None

    def close_file(self, key: str) -> None:
        """Close a file; the active file moves to the previous tab."""
        keys = list(self.open_files)
        if key not in self.open_files:
            return
        index = keys.index(key)
        del self.open_files[key]
        if self.active_file_key == key:
            remaining = list(self.open_files)
            self.active_file_key = remaining[max(0, index - 1)] if remaining else None

    def set_edited_content(self, key: str, content: str) -> OpenFile:
        updated = self.get_open_file(key).model_copy(update={"edited_content": content})
        self.open_files[key] = updated
        return updated

    async def ai_edit_file(
        self, key: str, instruction: str, on_fragment: FragmentCallback | None = None
    ) -> OpenFile:
        """Stream an AI rewrite of an open file and use it as its edited content.

        Fragments go to ``on_fragment`` as they arrive. The edited content is
        replaced only once the stream finishes with a non-empty result, so a
        failed or empty completion leaves pending edits as they were. Nothing
        is committed.

        Raises:
            GenerationError: If the completion normalizes to empty content.
        """
        if not instruction.strip():
            raise OrchestratorError("Instruction cannot be empty or whitespace-only")
        open_file = self.get_open_file(key)
        prompt = build_edit_prompt(instruction, open_file.edited_content)
        fragments: list[str] = []

        def handle_fragment(fragment: str) -> None:
            fragments.append(fragment)
            if on_fragment is not None:
                on_fragment(fragment)

        await self.completion.complete_streaming(prompt, handle_fragment)
        candidate = normalize_completion("".join(fragments))
        if not candidate.strip():
            raise GenerationError(EMPTY_CONTENT_ERROR)
        return self.set_edited_content(key, candidate)

    async def commit_file(self, key: str, message: str) -> CommitResult:
        """Commit an open file's edited content, then reload it from the branch."""
        open_file = self.get_open_file(key)
        owner, name = split_repo_full_name(open_file.repo_full_name)
        result = await self.source_control.create_or_update_file(
            owner,
            name,
            open_file.branch,
            open_file.path,
            open_file.edited_content,
            message,
            open_file.revision_marker,
        )
        snapshot = await self.source_control.get_file_content(
            owner, name, open_file.path, open_file.branch
        )
        self.open_files[key] = open_file.model_copy(
            update={
                "content": snapshot.content,
                "edited_content": snapshot.content,
                "revision_marker": snapshot.revision_marker,
            }
        )
        logger.info("Committed %s on %s", key, open_file.branch)
        return result

    # -- branches ---------------------------------------------------------

    async def switch_branch(self, repo_full_name: str, branch: str) -> None:
        """Make ``branch`` current and reopen the repository's files from it."""
        self.current_branch_by_repo[repo_full_name] = branch
        to_reload = [f for f in self.open_files.values() if f.repo_full_name == repo_full_name]
        for open_file in to_reload:
            self.close_file(open_file.key)
        for open_file in to_reload:
            try:
                await self.open_file(repo_full_name, open_file.path, branch)
            except Exception as exc:
                logger.warning("Failed to reopen %s on %s: %s", open_file.key, branch, exc)

    async def create_branch(self, repo_full_name: str, new_branch: str) -> Branch:
        """Create ``new_branch`` from the head of the current branch and switch to it."""
        base_name = self.current_branch(repo_full_name)
        base = next(
            (b for b in await self.branches(repo_full_name) if b.name == base_name), None
        )
        if base is None:
            raise BranchError(f"Base branch '{base_name}' not found")

        owner, name = split_repo_full_name(repo_full_name)
        created = await self.source_control.create_branch(owner, name, new_branch, base.commit_sha)
        await self.branches(repo_full_name, refresh=True)
        self.current_branch_by_repo[repo_full_name] = new_branch
        logger.info("Created branch %s from %s", new_branch, base_name)
        return created

    async def create_pull_request(
        self, repo_full_name: str, title: str, body: str = ""
    ) -> PullRequest:
        """Open a pull request from the current branch into the default branch."""
        head = self.current_branch(repo_full_name)
        base = self.repository(repo_full_name).repo.default_branch
        if head == base:
            raise PullRequestError(
                f"Current branch '{head}' is the default branch; switch to a feature branch first"
            )
        owner, name = split_repo_full_name(repo_full_name)
        return await self.source_control.create_pull_request(owner, name, title, body, head, base)

    # -- runs -------------------------------------------------------------

    def _on_job_event(self, event: JobEvent) -> None:
        if event.kind != JobEventKind.COMMITTED:
            return
        job = event.job
        open_file = self.open_files.get(job.job_id)
        if open_file is None or open_file.branch != job.branch:
            return
        if job.final_content is None or job.revision_marker is None:
            return
        self.open_files[job.job_id] = open_file.model_copy(
            update={
                "content": job.final_content,
                "edited_content": job.final_content,
                "revision_marker": job.revision_marker,
            }
        )
        logger.debug("Refreshed open file %s after commit", job.job_id)

    def _new_store(self, listener: JobListener | None) -> JobStore:
        store = JobStore()
        store.subscribe(self._on_job_event)
        if listener is not None:
            store.subscribe(listener)
        return store

    async def start_edit(
        self,
        instruction: str,
        targets: list[FileTarget] | None = None,
        listener: JobListener | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> RunState:
        """Edit the given targets, or the current selection, on their active branches."""
        targets = targets if targets is not None else self.selected_targets()
        return await run_edit(
            self.source_control,
            self.completion,
            targets,
            instruction,
            store=self._new_store(listener),
            concurrency=self.concurrency,
            cancel_event=cancel_event,
        )

    async def start_bulk_edit(
        self,
        repo_full_name: str,
        directive: str,
        new_branch: str | None = None,
        paths: list[str] | None = None,
        open_pull_request: bool = False,
        listener: JobListener | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> RunState:
        """Apply a directive on a new branch to ``paths`` or to every file in the tree."""
        if paths is None:
            paths = get_all_file_paths(self.repository(repo_full_name).tree)
        result = await run_bulk_edit(
            self.source_control,
            self.completion,
            repo_full_name,
            paths,
            directive,
            base_branch=self.current_branch(repo_full_name),
            new_branch=new_branch,
            open_pull_request=open_pull_request,
            store=self._new_store(listener),
            concurrency=self.concurrency,
            cancel_event=cancel_event,
        )
        if result["branch_context"] is not None:
            await self.branches(repo_full_name, refresh=True)
        return result

    async def start_expansion(
        self,
        goal: str,
        files_per_seed: int = DEFAULT_FILES_PER_SEED,
        seeds: list[FileTarget] | None = None,
        listener: JobListener | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> RunState:
        """Expand from the given seeds, or the selection, then refresh changed trees."""
        if seeds is None:
            seeds = self.selected_targets()
            self.clear_selection()
        store = self._new_store(listener)
        result = await run_expansion(
            self.source_control,
            self.completion,
            seeds,
            goal,
            files_per_seed=files_per_seed,
            store=store,
            concurrency=self.concurrency,
            cancel_event=cancel_event,
        )

        modified = {
            job.repo_full_name for job in store.jobs() if job.status == JobStatus.SUCCESS
        }
        for repo_full_name in sorted(modified):
            if repo_full_name not in self.repos:
                continue
            try:
                await self.refresh_tree(repo_full_name)
            except Exception as exc:
                logger.warning("Failed to refresh tree for %s: %s", repo_full_name, exc)
        return result
