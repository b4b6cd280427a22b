"""CLI entry point: feature-orchestrate run|status|check."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

EXIT_COMPLETED = 0
EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 2


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="feature-orchestrate",
        description="Multi-agent feature orchestrator -- solve, review and merge issues in git worktrees",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # --- run ---
    run_parser = subparsers.add_parser("run", help="Execute a feature")
    run_parser.add_argument(
        "--project", "-p", type=str, default=".",
        help="Project directory (default: current dir)",
    )
    run_parser.add_argument("--name", "-n", type=str, required=True, help="Feature name (kebab-case)")
    run_parser.add_argument("--description", "-d", type=str, default="", help="Feature request text")
    run_parser.add_argument("--base", dest="base_branch", type=str, help="Base branch override")
    run_parser.add_argument("--parent", dest="parent_feature", type=str, help="Parent feature name")
    run_parser.add_argument(
        "--arch", action="store_true",
        help="Plan issues with an architecture agent first",
    )
    run_parser.add_argument(
        "--issues-file", type=str,
        help="JSON file with a list of issues (step_number, title, description, dependencies, reviewers)",
    )
    run_parser.add_argument(
        "--max-concurrent", dest="max_concurrent_tasks", type=int,
        help="Max issues solved at once (1-5)",
    )
    run_parser.add_argument("--model", type=str, help="Model override for solvers and reviewers")
    run_parser.add_argument(
        "--conflict-policy", dest="merge_conflict_policy", choices=["ours", "theirs", "manual"],
        help="Merge conflict resolution policy",
    )
    run_parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Verbose logging",
    )

    # --- status ---
    status_cmd = subparsers.add_parser("status", help="Show feature and issue status")
    status_cmd.add_argument(
        "--project", "-p", type=str, default=".",
        help="Project directory",
    )
    status_cmd.add_argument("name", nargs="?", help="Feature name (default: all features)")

    # --- check ---
    check_cmd = subparsers.add_parser("check", help="Check that the agent CLI is available")
    check_cmd.add_argument(
        "--project", "-p", type=str, default=".",
        help="Project directory",
    )

    args = parser.parse_args(argv)

    if args.command == "run":
        return _run(args)
    elif args.command == "status":
        return _status(args)
    return _check(args)


def _run(args: argparse.Namespace) -> int:
    from .config import load_config
    from .errors import ConfigurationError, OrchestratorError
    from .models import FeatureSpec, FeatureStatus, IssueSpec
    from .orchestrator import Orchestrator

    cli_args = {
        "project": args.project,
        "max_concurrent_tasks": args.max_concurrent_tasks,
        "model": args.model,
        "merge_conflict_policy": args.merge_conflict_policy,
        "log_level": "DEBUG" if args.verbose else None,
    }
    try:
        config = load_config(cli_args)
        issues: list[IssueSpec] = []
        if args.issues_file:
            raw = json.loads(Path(args.issues_file).read_text())
            issues = [IssueSpec.model_validate(item) for item in raw]
        spec = FeatureSpec(
            name=args.name,
            description=args.description,
            base_branch=args.base_branch,
            architecture_mode=args.arch,
            issues=issues,
            parent_feature=args.parent_feature,
        )
        orchestrator = Orchestrator(config)
        result = asyncio.run(orchestrator.run(spec))
    except (ConfigurationError, ValueError, OSError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except OrchestratorError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except KeyboardInterrupt:
        # Signal handler already cancelled the run
        return EXIT_FAILED

    print(result.model_dump_json(indent=2))
    return EXIT_COMPLETED if result.status == FeatureStatus.COMPLETED else EXIT_FAILED


def _status(args: argparse.Namespace) -> int:
    from .config import load_config
    from .errors import OrchestratorError
    from .state import StateManager
    from .tracker import LocalIssueTracker

    try:
        config = load_config({"project": args.project})
        state = StateManager(config.resolve(config.state_dir))
        features = state.list_features()
        tracker = LocalIssueTracker(state)
    except (OrchestratorError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    if args.name:
        features = [f for f in features if f.name == args.name]
        if not features:
            print(f"Unknown feature: {args.name}", file=sys.stderr)
            return EXIT_CONFIG_ERROR
    if not features:
        print("No features recorded yet.")
        return EXIT_COMPLETED

    for feature in features:
        extra = f" -- {feature.error}" if feature.error else ""
        print(f"{feature.name} [{feature.status.value}] on {feature.branch}{extra}")
        for issue in tracker.list_issues_for_feature(feature.name):
            deps = f" (deps: {', '.join(f'#{d}' for d in issue.dependencies)})" if issue.dependencies else ""
            print(
                f"  #{issue.number} step {issue.step_number}: {issue.title} "
                f"[{issue.status.value}, {issue.attempt_count}/{issue.max_attempts} attempts]{deps}"
            )
    return EXIT_COMPLETED


def _check(args: argparse.Namespace) -> int:
    from .agent import AgentInvoker
    from .config import load_config
    from .errors import OrchestratorError

    try:
        config = load_config({"project": args.project})
    except (OrchestratorError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    availability = asyncio.run(AgentInvoker(config).check_availability())
    if availability.available:
        print(f"Agent CLI available: {availability.version}")
        return EXIT_COMPLETED
    print(f"Agent CLI not available: {availability.error}", file=sys.stderr)
    return EXIT_CONFIG_ERROR


def cli_entry() -> None:
    """Entry point for pyproject.toml console_scripts."""
    sys.exit(main())
