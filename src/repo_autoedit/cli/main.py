"""CLI entry point for repo-autoedit."""
import argparse
import asyncio
from dotenv import load_dotenv
import json
import os
import sys
import traceback

from repo_autoedit.gateways.exceptions import GatewayError
from repo_autoedit.logging_setup import configure_logging
from repo_autoedit.models import JobEvent, JobEventKind, JobStatus, split_repo_full_name
from repo_autoedit.orchestrator.exceptions import OrchestratorError
from repo_autoedit.orchestrator.planning import DEFAULT_FILES_PER_SEED, MAX_FILES_PER_SEED
from repo_autoedit.orchestrator.scheduler import DEFAULT_CONCURRENCY

load_dotenv()

# Exit codes
EXIT_SUCCESS = 0
EXIT_INVALID_INPUT = 1
EXIT_GATEWAY_ERROR = 2
EXIT_ORCHESTRATOR_ERROR = 3
EXIT_RUN_ABORTED = 4
EXIT_UNEXPECTED = 5
EXIT_JOBS_FAILED = 6
EXIT_KEYBOARD_INTERRUPT = 130

# Defaults
DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
MAX_CONCURRENCY = 20
RUN_COMMANDS = frozenset({"edit", "bulk-edit", "expand"})

# Abort detection prefix, matches abort_node output in graph.py
ABORT_PREFIX = "ABORT:"

# Safe keys allowed in config output (no secrets)
_SAFE_CONFIG_KEYS = frozenset({
    "command", "repo", "branch", "paths", "seeds", "instruction", "goal",
    "branch_name", "open_pr", "files_per_seed", "concurrency", "model",
    "llm_provider", "llm_fallback_provider", "allow_llm_fallback",
    "api_url", "verbose", "dry_run", "output_json",
})


def build_parser() -> argparse.ArgumentParser:
    """Build and return the argument parser."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--concurrency",
        type=int,
        default=DEFAULT_CONCURRENCY,
        help=f"Maximum jobs processed at once (default: {DEFAULT_CONCURRENCY})",
    )
    common.add_argument(
        "--model",
        type=str,
        default=DEFAULT_MODEL,
        help=f"Model ID to use (default: {DEFAULT_MODEL})",
    )
    common.add_argument(
        "--llm-provider",
        type=str,
        default="auto",
        choices=("auto", "anthropic", "openai"),
        help="LLM provider: auto (default), anthropic, or openai",
    )
    common.add_argument(
        "--llm-fallback-provider",
        type=str,
        default="",
        choices=("", "anthropic", "openai"),
        help="Optional fallback provider when the primary provider fails",
    )
    common.add_argument(
        "--allow-llm-fallback",
        action="store_true",
        help="Allow falling back to the alternate provider before any output streamed",
    )
    common.add_argument("--verbose", action="store_true", help="Enable verbose output")
    common.add_argument(
        "--dry-run", action="store_true", help="Print config and exit without running"
    )
    common.add_argument(
        "--output-json", action="store_true", help="Output results as JSON"
    )

    parser = argparse.ArgumentParser(
        prog="repo-autoedit",
        description="Concurrent AI edits, bulk edits and expansions for hosted repositories",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser(
        "repos", parents=[common], help="List repositories accessible with the token"
    )

    tree = subparsers.add_parser("tree", parents=[common], help="Print a repository's files")
    tree.add_argument("repo", type=str, help="Repository as owner/name")
    tree.add_argument("--branch", type=str, default="", help="Branch (default: repo default)")

    edit = subparsers.add_parser(
        "edit", parents=[common], help="Apply one instruction to each file on its branch"
    )
    edit.add_argument("repo", type=str, help="Repository as owner/name")
    edit.add_argument("paths", nargs="+", help="Files or directories to edit")
    edit.add_argument("-i", "--instruction", type=str, required=True, help="Edit instruction")
    edit.add_argument("--branch", type=str, default="", help="Branch (default: repo default)")

    bulk = subparsers.add_parser(
        "bulk-edit", parents=[common], help="Apply a directive on a new branch"
    )
    bulk.add_argument("repo", type=str, help="Repository as owner/name")
    bulk.add_argument("-i", "--instruction", type=str, required=True, help="Directive")
    bulk.add_argument(
        "--branch-name",
        type=str,
        default="",
        help="New branch name (default: ai-bulk-edit/<unix millis>)",
    )
    bulk.add_argument(
        "--base-branch", type=str, default="", help="Branch to start from (default: repo default)"
    )
    bulk.add_argument(
        "--path",
        dest="paths",
        action="append",
        default=[],
        help="Limit the run to this file or directory (repeatable; default: every file)",
    )
    bulk.add_argument(
        "--open-pr", action="store_true", help="Open a pull request when the run commits"
    )

    expand = subparsers.add_parser(
        "expand", parents=[common], help="Plan and create new files from seed files"
    )
    expand.add_argument("repo", type=str, help="Repository as owner/name")
    expand.add_argument("seeds", nargs="+", help="Seed files or directories")
    expand.add_argument("-g", "--goal", type=str, required=True, help="Expansion goal")
    expand.add_argument(
        "--files-per-seed",
        type=int,
        default=DEFAULT_FILES_PER_SEED,
        help=f"New files planned per seed, 1-{MAX_FILES_PER_SEED} (default: {DEFAULT_FILES_PER_SEED})",
    )
    expand.add_argument("--branch", type=str, default="", help="Branch (default: repo default)")
    return parser


def validate_args(args: argparse.Namespace) -> str | None:
    """Return an error message for invalid arguments, or None."""
    if getattr(args, "repo", None) is not None:
        try:
            split_repo_full_name(args.repo)
        except ValueError as exc:
            return str(exc)
    if not 1 <= args.concurrency <= MAX_CONCURRENCY:
        return f"--concurrency must be between 1 and {MAX_CONCURRENCY}"
    text = getattr(args, "instruction", None) or getattr(args, "goal", None)
    if args.command in RUN_COMMANDS and not (text or "").strip():
        return "Instruction cannot be empty or whitespace-only"
    files_per_seed = getattr(args, "files_per_seed", DEFAULT_FILES_PER_SEED)
    if not 1 <= files_per_seed <= MAX_FILES_PER_SEED:
        return f"--files-per-seed must be between 1 and {MAX_FILES_PER_SEED}"
    return None


def build_config(args: argparse.Namespace) -> dict:
    config = {
        key: value
        for key, value in vars(args).items()
        if key in _SAFE_CONFIG_KEYS
    }
    config["api_url"] = os.getenv("GITHUB_API_URL", "")
    return config


def create_source_control(args: argparse.Namespace):
    """Create the GitHub gateway from the environment."""
    from repo_autoedit.gateways.source_control import GitHubGateway

    return GitHubGateway(
        token=os.getenv("GITHUB_TOKEN"),
        base_url=os.getenv("GITHUB_API_URL") or None,
    )


def create_completion(args: argparse.Namespace):
    """Create the completion gateway from CLI arguments."""
    from repo_autoedit.gateways.completion import LLMCompletionGateway

    return LLMCompletionGateway(
        api_key=os.getenv("ANTHROPIC_API_KEY"),
        openai_api_key=os.getenv("OPENAI_API_KEY"),
        model=args.model,
        llm_provider=args.llm_provider,
        llm_fallback_provider=args.llm_fallback_provider or None,
        allow_fallback=bool(args.allow_llm_fallback),
    )


def make_progress_printer(stream=None):
    """Return a job listener that prints one line per status change."""
    stream = stream or sys.stderr

    def on_event(event: JobEvent) -> None:
        if event.kind != JobEventKind.STATUS:
            return
        job = event.job
        line = f"[{job.status.value:<10}] {job.job_id}"
        if job.status == JobStatus.FAILED and job.error:
            line += f" ({job.error})"
        elif job.status == JobStatus.GENERATING and job.description:
            line += f": {job.description}"
        print(line, file=stream, flush=True)

    return on_event


def format_result_json(result: dict) -> str:
    """Serialize a result dict to JSON, dumping Pydantic models."""

    def _serialize(obj):
        if hasattr(obj, "model_dump"):
            return obj.model_dump(mode="json")
        if isinstance(obj, list):
            return [_serialize(item) for item in obj]
        return obj

    prepared = {k: _serialize(v) for k, v in result.items()}
    return json.dumps(prepared, indent=2, default=str)


def print_result_human(result: dict) -> None:
    """Print a run result in human-readable format."""
    print(f"\n{'='*60}")
    print("repo-autoedit results")
    print(f"{'='*60}")

    summary = result.get("summary")
    if summary is not None:
        print(f"\n{summary.message or summary.render()}")

    context = result.get("branch_context")
    if context is not None:
        print(f"Branch: {context.branch_name} (from {context.base_branch})")

    pull_request = result.get("pull_request")
    if pull_request is not None:
        print(f"Pull request #{pull_request.number}: {pull_request.url}")

    errors = result.get("errors", [])
    if errors:
        print(f"\nErrors ({len(errors)}):")
        for err in errors:
            print(f"  - {err}")

    print(f"\n{'='*60}")


def determine_exit_code(result: dict) -> int:
    """Determine the exit code from a run result."""
    for err in result.get("errors", []):
        if str(err).startswith(ABORT_PREFIX):
            return EXIT_RUN_ABORTED
    summary = result.get("summary")
    if summary is not None and (summary.failed or summary.cancelled):
        return EXIT_JOBS_FAILED
    return EXIT_SUCCESS


def print_config_human(config: dict) -> None:
    """Print configuration in human-readable format.

    Only prints keys in the safe allowlist to prevent secret leakage.
    """
    print("\nConfiguration:")
    print(f"{'='*40}")
    for key, value in config.items():
        if key in _SAFE_CONFIG_KEYS:
            print(f"  {key}: {value}")
    print(f"{'='*40}")


def _handle_error(label: str, exc: BaseException, verbose: bool, exit_code: int) -> int:
    """Print error message to stderr and return the exit code."""
    print(f"{label}: {exc}", file=sys.stderr)
    if verbose:
        traceback.print_exc(file=sys.stderr)
    return exit_code


async def run_command(args: argparse.Namespace, source_control, completion) -> int:
    """Execute one subcommand against the given gateways and print its output."""
    from repo_autoedit.workspace import Workspace, get_all_file_paths

    workspace = Workspace(source_control, completion, concurrency=args.concurrency)

    if args.command == "repos":
        repos = await source_control.list_repositories()
        if args.output_json:
            print(json.dumps([repo.model_dump(mode="json") for repo in repos], indent=2))
        else:
            for repo in repos:
                print(f"{repo.full_name}  ({repo.default_branch})")
        return EXIT_SUCCESS

    if args.command == "tree":
        entry = await workspace.load_repository(args.repo, branch=args.branch or None)
        if args.output_json:
            print(json.dumps([node.model_dump(mode="json") for node in entry.tree], indent=2))
        else:
            for path in get_all_file_paths(entry.tree):
                print(path)
        return EXIT_SUCCESS

    printer = make_progress_printer()
    if args.command == "edit":
        entry = await workspace.load_repository(args.repo, branch=args.branch or None)
        for path in args.paths:
            workspace.select_path(entry.repo.full_name, path.strip("/"))
        result = await workspace.start_edit(args.instruction, listener=printer)
    elif args.command == "bulk-edit":
        entry = await workspace.load_repository(args.repo, branch=args.base_branch or None)
        paths = None
        if args.paths:
            for path in args.paths:
                workspace.select_path(entry.repo.full_name, path.strip("/"))
            paths = [target.path for target in workspace.selected_targets()]
        result = await workspace.start_bulk_edit(
            entry.repo.full_name,
            args.instruction,
            new_branch=args.branch_name or None,
            paths=paths,
            open_pull_request=args.open_pr,
            listener=printer,
        )
    else:
        entry = await workspace.load_repository(args.repo, branch=args.branch or None)
        for path in args.seeds:
            workspace.select_path(entry.repo.full_name, path.strip("/"))
        result = await workspace.start_expansion(
            args.goal, files_per_seed=args.files_per_seed, listener=printer
        )

    if args.output_json:
        print(format_result_json(result))
    else:
        print_result_human(result)
    return determine_exit_code(result)


async def _run_with_gateways(args: argparse.Namespace) -> int:
    source_control = create_source_control(args)
    completion = create_completion(args) if args.command in RUN_COMMANDS else None
    async with source_control:
        return await run_command(args, source_control, completion)


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point.

    Args:
        argv: Command-line arguments (defaults to sys.argv[1:]).

    Returns:
        Exit code integer.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    error = validate_args(args)
    if error is not None:
        print(f"Error: {error}", file=sys.stderr)
        return EXIT_INVALID_INPUT

    config = build_config(args)
    if args.dry_run:
        if args.output_json:
            print(json.dumps(config, indent=2))
        else:
            print_config_human(config)
        return EXIT_SUCCESS

    configure_logging(args.verbose)

    try:
        return asyncio.run(_run_with_gateways(args))

    except GatewayError as exc:
        return _handle_error("Gateway error", exc, args.verbose, EXIT_GATEWAY_ERROR)

    except OrchestratorError as exc:
        return _handle_error("Orchestrator error", exc, args.verbose, EXIT_ORCHESTRATOR_ERROR)

    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return EXIT_KEYBOARD_INTERRUPT

    except Exception as exc:
        return _handle_error("Unexpected error", exc, args.verbose, EXIT_UNEXPECTED)


if __name__ == "__main__":
    sys.exit(main())
