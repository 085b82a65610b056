"""Tests for expansion planning."""

import asyncio

import pytest

from fakes import REPO, FakeCompletion, FakeSourceControl, make_target
from repo_autoedit.gateways.exceptions import GenerationError
from repo_autoedit.models import JobKind, JobStatus
from repo_autoedit.orchestrator.exceptions import ExpansionAbortedError, PlanningError
from repo_autoedit.orchestrator.planning import (
    EXPANSION_ABORTED_MESSAGE,
    MAX_FILES_PER_SEED,
    ExpansionPlanner,
    clamp_files_per_seed,
    parse_plan,
    resolve_blueprint_path,
)


def plan(*paths: str) -> dict:
    return {"files": [{"filePath": path, "description": f"Create {path}"} for path in paths]}


class TestResolveBlueprintPath:
    @pytest.mark.parametrize(
        "seed,item,expected",
        [
            ("src/app/main.ts", "user.ts", "src/app/user.ts"),
            ("src/app/main.ts", "models/user.ts", "src/app/models/user.ts"),
            ("src/app/main.ts", "../lib/util.ts", "src/lib/util.ts"),
            ("src/app/main.ts", "./a/../b.ts", "src/app/b.ts"),
            ("main.ts", "lib/util.ts", "lib/util.ts"),
        ],
    )
    def test_resolves_relative_to_seed_directory(self, seed, item, expected):
        assert resolve_blueprint_path(seed, item) == expected

    def test_backslashes_in_item_path(self):
        assert resolve_blueprint_path("src/main.ts", "models\\user.ts") == "src/models/user.ts"

    @pytest.mark.parametrize("item", ["", "   ", "/etc/passwd", "../../x.ts", ".."])
    def test_rejects_unusable_paths(self, item):
        with pytest.raises(PlanningError):
            resolve_blueprint_path("src/main.ts", item)


class TestParsePlan:
    def test_truncates_to_files_per_seed(self):
        items = parse_plan(plan("a.ts", "b.ts", "c.ts", "d.ts"), 2)
        assert [item.file_path for item in items] == ["a.ts", "b.ts"]

    def test_empty_plan_rejected(self):
        with pytest.raises(PlanningError, match="no files"):
            parse_plan({"files": []}, 3)

    @pytest.mark.parametrize("payload", [{}, {"files": "a.ts"}, {"files": [{"filePath": "a.ts"}]}, None])
    def test_malformed_plan_rejected(self, payload):
        with pytest.raises(PlanningError, match="Unparsable"):
            parse_plan(payload, 3)


@pytest.mark.parametrize("value,expected", [(0, 1), (3, 3), (99, MAX_FILES_PER_SEED)])
def test_clamp_files_per_seed(value, expected):
    assert clamp_files_per_seed(value) == expected


class TestExpansionPlanner:
    def make_source_control(self, *paths: str) -> FakeSourceControl:
        source_control = FakeSourceControl()
        for path in paths:
            source_control.add_file(path, f"// seed {path}")
        return source_control

    def test_jobs_are_flattened_in_seed_order(self):
        source_control = self.make_source_control("src/a.ts", "lib/b.ts")
        completion = FakeCompletion(
            structured={
                "// seed src/a.ts": plan("a1.ts", "a2.ts"),
                "// seed lib/b.ts": plan("b1.ts"),
            }
        )
        planner = ExpansionPlanner(source_control, completion, files_per_seed=2)

        batch = asyncio.run(planner.plan([make_target("src/a.ts"), make_target("lib/b.ts")], "goal"))

        assert [job.file_path for job in batch.jobs] == ["src/a1.ts", "src/a2.ts", "lib/b1.ts"]
        assert all(job.kind == JobKind.CREATE for job in batch.jobs)
        assert all(job.status == JobStatus.QUEUED for job in batch.jobs)
        assert batch.jobs[0].seed_file_path == "src/a.ts"
        assert batch.jobs[0].description == "Create a1.ts"
        assert batch.seed_errors == []

    def test_prompt_carries_goal_count_and_seed(self):
        source_control = self.make_source_control("src/a.ts")
        completion = FakeCompletion(structured={"seed": plan("x.ts")})
        planner = ExpansionPlanner(source_control, completion, files_per_seed=4)

        asyncio.run(planner.plan([make_target("src/a.ts")], "add a REST layer"))

        prompt = completion.structured_prompts[0]
        assert "add a REST layer" in prompt
        assert "exactly 4 NEW files" in prompt
        assert "// seed src/a.ts" in prompt

    def test_failed_seeds_are_skipped(self):
        source_control = self.make_source_control("a.ts", "b.ts", "c.ts")
        source_control.fetch_errors["b.ts"] = ConnectionError("reset")
        completion = FakeCompletion(
            structured={
                "// seed a.ts": GenerationError("No tool_use block found in Claude response"),
                "// seed c.ts": plan("c1.ts"),
            }
        )
        planner = ExpansionPlanner(source_control, completion)

        batch = asyncio.run(
            planner.plan([make_target("a.ts"), make_target("b.ts"), make_target("c.ts")], "goal")
        )

        assert [job.file_path for job in batch.jobs] == ["c1.ts"]
        assert len(batch.seed_errors) == 2
        assert batch.seed_errors[0].startswith(f"{REPO}::a.ts")

    def test_all_seeds_failing_aborts(self):
        source_control = self.make_source_control("a.ts", "b.ts", "c.ts")
        completion = FakeCompletion(structured={"// seed b.ts": {"files": []}})
        planner = ExpansionPlanner(source_control, completion)

        with pytest.raises(ExpansionAbortedError) as exc_info:
            asyncio.run(
                planner.plan([make_target("a.ts"), make_target("b.ts"), make_target("c.ts")], "goal")
            )
        assert str(exc_info.value) == EXPANSION_ABORTED_MESSAGE

    def test_duplicate_targets_keep_first(self):
        source_control = self.make_source_control("src/a.ts", "src/b.ts")
        completion = FakeCompletion(
            structured={
                "// seed src/a.ts": plan("shared.ts", "a1.ts"),
                "// seed src/b.ts": plan("shared.ts"),
            }
        )
        planner = ExpansionPlanner(source_control, completion)

        batch = asyncio.run(planner.plan([make_target("src/a.ts"), make_target("src/b.ts")], "goal"))

        assert [job.file_path for job in batch.jobs] == ["src/shared.ts", "src/a1.ts"]
        assert batch.jobs[0].seed_file_path == "src/a.ts"

    def test_escaping_item_is_dropped(self):
        source_control = self.make_source_control("a.ts")
        completion = FakeCompletion(structured={"seed": plan("../outside.ts", "inside.ts")})
        planner = ExpansionPlanner(source_control, completion)

        batch = asyncio.run(planner.plan([make_target("a.ts")], "goal"))

        assert [job.file_path for job in batch.jobs] == ["inside.ts"]
        assert "escapes" in batch.seed_errors[0]

    def test_seed_branch_is_used_for_jobs(self):
        source_control = FakeSourceControl()
        source_control.add_file("a.ts", "// seed a.ts", branch="dev")
        completion = FakeCompletion(structured={"seed": plan("x.ts")})
        planner = ExpansionPlanner(source_control, completion)

        batch = asyncio.run(planner.plan([make_target("a.ts", branch="dev")], "goal"))

        assert batch.jobs[0].branch == "dev"
        assert source_control.fetches == [(REPO, "dev", "a.ts")]
