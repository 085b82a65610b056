"""Tests for the Workspace session service."""

import asyncio

import pytest

from fakes import REPO, FakeCompletion, FakeSourceControl, make_target
from repo_autoedit.gateways.exceptions import (
    BranchError,
    FetchError,
    GenerationError,
    PullRequestError,
)
from repo_autoedit.models import JobEventKind
from repo_autoedit.orchestrator.exceptions import OrchestratorError
from repo_autoedit.orchestrator.pipeline import EMPTY_CONTENT_ERROR
from repo_autoedit.workspace import Workspace, find_node, get_all_file_paths

OTHER = "acme/gadgets"


@pytest.fixture
def source_control():
    source_control = FakeSourceControl()
    source_control.add_file("README.md", "# widgets\n")
    source_control.add_file("src/a.ts", "const a = 1;\n")
    source_control.add_file("src/lib/b.ts", "const b = 2;\n")
    source_control.add_file("index.ts", "export {};\n", repo_full_name=OTHER)
    return source_control


@pytest.fixture
def workspace(source_control):
    workspace = Workspace(source_control, FakeCompletion(default="new code"))
    asyncio.run(workspace.load_repositories())
    return workspace


class TestRepositories:
    def test_load_repositories_with_trees(self, workspace):
        assert set(workspace.repos) == {REPO, OTHER}
        paths = get_all_file_paths(workspace.repository(REPO).tree)
        assert paths == ["src/lib/b.ts", "src/a.ts", "README.md"]

    def test_failed_tree_leaves_repository_empty(self, source_control):
        source_control.tree_errors[OTHER] = FetchError("500: boom")
        workspace = Workspace(source_control, FakeCompletion())

        asyncio.run(workspace.load_repositories())

        assert workspace.repository(OTHER).tree == []
        assert workspace.repository(REPO).tree != []

    def test_unknown_repository(self, workspace):
        with pytest.raises(OrchestratorError, match="not loaded"):
            workspace.repository("acme/nope")

    def test_load_single_repository_on_branch(self, source_control):
        source_control.add_file("dev.ts", "x", branch="dev")
        workspace = Workspace(source_control, FakeCompletion())

        entry = asyncio.run(workspace.load_repository(REPO, branch="dev"))

        assert workspace.current_branch(REPO) == "dev"
        assert [node.path for node in entry.tree] == ["dev.ts"]

    def test_find_node(self, workspace):
        tree = workspace.repository(REPO).tree
        assert find_node(tree, "src/lib/b.ts").name == "b.ts"
        assert find_node(tree, "src/missing.ts") is None


class TestSelection:
    def test_select_directory_path_selects_its_files(self, workspace):
        workspace.select_path(REPO, "src")
        assert [target.path for target in workspace.selected_targets()] == [
            "src/lib/b.ts",
            "src/a.ts",
        ]

    def test_deselect_directory(self, workspace):
        workspace.select_path(REPO, "src")
        workspace.select_path(REPO, "src/lib", selected=False)
        assert [target.path for target in workspace.selected_targets()] == ["src/a.ts"]

    def test_selection_spans_repositories_and_uses_current_branch(self, workspace):
        workspace.current_branch_by_repo[OTHER] = "dev"
        workspace.select_file(REPO, "README.md")
        workspace.select_file(OTHER, "index.ts")
        workspace.select_file(REPO, "README.md")

        targets = workspace.selected_targets()

        assert [(t.repo_full_name, t.branch) for t in targets] == [(REPO, "main"), (OTHER, "dev")]

    def test_clear_selection(self, workspace):
        workspace.select_file(REPO, "README.md")
        workspace.clear_selection()
        assert workspace.selected_targets() == []


class TestOpenFiles:
    def test_open_and_reopen(self, workspace, source_control):
        open_file = asyncio.run(workspace.open_file(REPO, "src/a.ts"))
        again = asyncio.run(workspace.open_file(REPO, "src/a.ts"))

        assert open_file.content == open_file.edited_content == "const a = 1;\n"
        assert open_file.default_branch == "main"
        assert again is open_file
        assert len(source_control.fetches) == 1
        assert workspace.active_file_key == f"{REPO}::src/a.ts"

    def test_close_moves_to_previous_file(self, workspace):
        for path in ("README.md", "src/a.ts", "src/lib/b.ts"):
            asyncio.run(workspace.open_file(REPO, path))
        workspace.active_file_key = f"{REPO}::src/a.ts"

        workspace.close_file(f"{REPO}::src/a.ts")

        assert workspace.active_file_key == f"{REPO}::README.md"
        workspace.close_file(f"{REPO}::README.md")
        assert workspace.active_file_key == f"{REPO}::src/lib/b.ts"
        workspace.close_file(f"{REPO}::src/lib/b.ts")
        assert workspace.active_file_key is None

    def test_ai_edit_streams_into_edited_content(self, workspace, source_control):
        workspace.completion = FakeCompletion(default=["```ts\n", "const a = 2;", "\n```"])
        asyncio.run(workspace.open_file(REPO, "src/a.ts"))
        key = f"{REPO}::src/a.ts"
        fragments = []

        open_file = asyncio.run(workspace.ai_edit_file(key, "bump a", fragments.append))

        assert open_file.edited_content == "const a = 2;"
        assert open_file.content == "const a = 1;\n"
        assert open_file.has_changes
        assert len(fragments) == 3
        assert source_control.commits == []

    def test_failed_ai_edit_keeps_pending_edits(self, workspace):
        workspace.completion = FakeCompletion(
            default=["part", GenerationError("stream dropped")]
        )
        asyncio.run(workspace.open_file(REPO, "src/a.ts"))
        key = f"{REPO}::src/a.ts"
        workspace.set_edited_content(key, "const a = 42; // manual\n")
        fragments = []

        with pytest.raises(GenerationError, match="stream dropped"):
            asyncio.run(workspace.ai_edit_file(key, "bump a", fragments.append))

        assert fragments == ["part"]
        assert workspace.get_open_file(key).edited_content == "const a = 42; // manual\n"

    def test_empty_ai_edit_is_rejected(self, workspace, source_control):
        workspace.completion = FakeCompletion(default=["```\n", "```"])
        asyncio.run(workspace.open_file(REPO, "src/a.ts"))
        key = f"{REPO}::src/a.ts"

        with pytest.raises(GenerationError, match=EMPTY_CONTENT_ERROR):
            asyncio.run(workspace.ai_edit_file(key, "bump a"))

        open_file = workspace.get_open_file(key)
        assert open_file.edited_content == "const a = 1;\n"
        assert not open_file.has_changes
        assert source_control.commits == []

    def test_ai_edit_requires_instruction(self, workspace):
        asyncio.run(workspace.open_file(REPO, "src/a.ts"))
        with pytest.raises(OrchestratorError):
            asyncio.run(workspace.ai_edit_file(f"{REPO}::src/a.ts", " "))

    def test_commit_file_refreshes_from_branch(self, workspace, source_control):
        asyncio.run(workspace.open_file(REPO, "src/a.ts"))
        key = f"{REPO}::src/a.ts"
        workspace.set_edited_content(key, "const a = 3;\n")

        asyncio.run(workspace.commit_file(key, "Update a"))

        open_file = workspace.get_open_file(key)
        assert source_control.content("src/a.ts") == "const a = 3;\n"
        assert open_file.content == "const a = 3;\n"
        assert not open_file.has_changes
        assert open_file.revision_marker == source_control.files[(REPO, "main", "src/a.ts")][1]

    def test_get_unknown_open_file(self, workspace):
        with pytest.raises(OrchestratorError, match="not open"):
            workspace.get_open_file(f"{REPO}::nope.ts")


class TestBranches:
    def test_create_branch_switches_to_it(self, workspace, source_control):
        branch = asyncio.run(workspace.create_branch(REPO, "feature/x"))

        assert branch.name == "feature/x"
        assert workspace.current_branch(REPO) == "feature/x"
        assert "feature/x" in [b.name for b in workspace.branches_by_repo[REPO]]

    def test_create_branch_from_missing_base(self, workspace):
        workspace.current_branch_by_repo[REPO] = "ghost"
        with pytest.raises(BranchError, match="'ghost' not found"):
            asyncio.run(workspace.create_branch(REPO, "feature/x"))

    def test_switch_branch_reopens_files(self, workspace, source_control):
        source_control.add_file("src/a.ts", "const a = 'dev';\n", branch="dev")
        asyncio.run(workspace.open_file(REPO, "src/a.ts"))
        asyncio.run(workspace.open_file(REPO, "README.md"))

        asyncio.run(workspace.switch_branch(REPO, "dev"))

        reopened = workspace.get_open_file(f"{REPO}::src/a.ts")
        assert reopened.branch == "dev"
        assert reopened.content == "const a = 'dev';\n"
        assert f"{REPO}::README.md" not in workspace.open_files

    def test_pull_request_refused_on_default_branch(self, workspace, source_control):
        with pytest.raises(PullRequestError, match="default branch"):
            asyncio.run(workspace.create_pull_request(REPO, "title"))
        assert source_control.pull_requests == []

    def test_pull_request_from_feature_branch(self, workspace, source_control):
        asyncio.run(workspace.create_branch(REPO, "feature/x"))
        pull_request = asyncio.run(workspace.create_pull_request(REPO, "Add x", "body"))

        assert pull_request.number == 1
        assert source_control.pull_requests[0]["head"] == "feature/x"
        assert source_control.pull_requests[0]["base"] == "main"


class TestRuns:
    def test_edit_run_refreshes_open_file(self, workspace, source_control):
        asyncio.run(workspace.open_file(REPO, "src/a.ts"))
        workspace.select_file(REPO, "src/a.ts")
        events = []

        state = asyncio.run(workspace.start_edit("rewrite", listener=events.append))

        open_file = workspace.get_open_file(f"{REPO}::src/a.ts")
        assert state["summary"].succeeded == 1
        assert open_file.content == "new code\n"
        assert open_file.revision_marker == source_control.files[(REPO, "main", "src/a.ts")][1]
        assert JobEventKind.COMMITTED in [event.kind for event in events]

    def test_commit_on_other_branch_leaves_open_file(self, workspace, source_control):
        source_control.add_file("src/a.ts", "const a = 'dev';\n", branch="dev")
        asyncio.run(workspace.open_file(REPO, "src/a.ts"))

        asyncio.run(workspace.start_edit("rewrite", [make_target("src/a.ts", branch="dev")]))

        assert workspace.get_open_file(f"{REPO}::src/a.ts").content == "const a = 1;\n"

    def test_bulk_edit_defaults_to_every_file(self, workspace, source_control):
        state = asyncio.run(workspace.start_bulk_edit(REPO, "add headers", new_branch="bulk/1"))

        assert state["summary"].total == 3
        assert {commit["branch"] for commit in source_control.commits} == {"bulk/1"}
        assert "bulk/1" in [b.name for b in workspace.branches_by_repo[REPO]]
        assert workspace.current_branch(REPO) == "main"

    def test_expansion_uses_selection_and_refreshes_tree(self, workspace, source_control):
        workspace.completion = FakeCompletion(
            default="export const c = 3;",
            structured={"const a = 1": {"files": [{"filePath": "c.ts", "description": "C"}]}},
        )
        workspace.select_file(REPO, "src/a.ts")

        state = asyncio.run(workspace.start_expansion("add c", files_per_seed=1))

        assert state["summary"].succeeded == 1
        assert workspace.selected_targets() == []
        assert "src/c.ts" in get_all_file_paths(workspace.repository(REPO).tree)

    def test_failed_jobs_do_not_refresh_tree(self, workspace, source_control):
        workspace.completion = FakeCompletion(
            default="",
            structured={"const a = 1": {"files": [{"filePath": "c.ts", "description": "C"}]}},
        )
        before = workspace.repository(REPO).tree

        state = asyncio.run(workspace.start_expansion("add c", seeds=[make_target("src/a.ts")]))

        assert state["summary"].failed == 1
        assert workspace.repository(REPO).tree is before
        assert state["job_ids"] == [f"{REPO}::src/c.ts"]
        assert source_control.content("src/c.ts") is None
