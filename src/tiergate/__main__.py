"""tiergate CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path


# ── Default template for `tiergate init` ─────────────────────────────────────

_DEFAULT_CONFIG = """\
# .tiergate/config.yaml: tiergate pipeline configuration

project:
  name: "{project_name}"
  default_branch: {default_branch}

runners:
  shared: {{cost: 1}}
  small: {{cost: 4}}
  large: {{cost: 16}}

pipelines:
  ci:
    description: "Cheap checks first, expensive verification last"
    paths_ignore: ["docs/**", "*.md"]
    chain_on_success: true
    tiers:
      - ordinal: 1
        name: lint
        runner_class: shared
        fail_fast: stop_on_first
        timeout: 10m
        eligibility:
          events: [push, proposed_change, manual]
        jobs:
          - id: lint
            run: "echo lint"
      - ordinal: 2
        name: test
        runner_class: small
        timeout: 30m
        infra_retries: 1
        eligibility:
          events: [push, proposed_change, manual]
          skip_draft: true
        jobs:
          - id: unit
            run: "echo unit tests"
      - ordinal: 3
        name: build
        runner_class: large
        timeout: 1h
        eligibility:
          events: [push, tag, scheduled, manual]
          branches: ["{default_branch}", "release/*"]
          tags: ["v*"]
          on_upstream_success: true
        jobs:
          - id: package
            run: "echo build"
    publication:
      branches: ["{default_branch}"]
      tags: ["v*"]
      targets:
        - kind: object_store
          destination: dist
"""


def _init_project(repo_root: Path, default_branch: str) -> None:
    """Scaffold a .tiergate/ directory with a default configuration."""
    config_dir = repo_root / ".tiergate"

    if config_dir.exists():
        print(f"Error: {config_dir} already exists", file=sys.stderr)
        print("Remove it first if you want to re-initialize.", file=sys.stderr)
        sys.exit(1)

    config_dir.mkdir(parents=True)
    (config_dir / "config.yaml").write_text(
        _DEFAULT_CONFIG.format(project_name=repo_root.name, default_branch=default_branch)
    )

    print(f"Initialized tiergate project at {config_dir}")
    print()
    print("Next steps:")
    print(f"  1. Edit {config_dir / 'config.yaml'}")
    print(f"  2. Check it: tiergate validate --repo-root {repo_root}")
    print(f"  3. Run: tiergate serve --repo-root {repo_root}")


def _config_dir(repo_root: Path) -> Path:
    override = os.environ.get("TIERGATE_CONFIG_DIR", "").strip()
    return Path(override) if override else repo_root / ".tiergate"


def _load(repo_root: Path):
    from tiergate.config import ConfigError, load_config

    try:
        return load_config(_config_dir(repo_root))
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        print("Run 'tiergate init' to create one, or specify --repo-root", file=sys.stderr)
        sys.exit(1)
    except ConfigError as exc:
        print(f"Error: invalid configuration: {exc}", file=sys.stderr)
        sys.exit(1)


def _validate(args) -> None:
    config = _load(args.repo_root)
    print(f"Configuration OK: project '{config.project.name}'")
    print(f"  runner classes: {', '.join(sorted(config.runners))}")
    for name, pipeline in config.pipelines.items():
        print(f"  pipeline '{name}': {len(pipeline.tiers)} tier(s)")
        for tier in pipeline.tiers:
            print(
                f"    {tier.ordinal}. {tier.name} [{tier.runner_class}, "
                f"{tier.fail_fast.value}] {len(tier.jobs)} job(s)"
            )


async def _run_pipeline(args) -> int:
    from tiergate.config import ArtifactKind
    from tiergate.executors import CommandExecutor
    from tiergate.models import InvalidTrigger
    from tiergate.pipeline import (
        ConcurrencyController,
        JobDispatcher,
        Publisher,
        RunCoordinator,
        RunnerPool,
        RunSummary,
        RunVerdict,
        render_summary,
    )
    from tiergate.storage import FilesystemArtifactStore

    config = _load(args.repo_root)
    data_dir = (
        Path(config.runtime.data_dir)
        if config.runtime.data_dir
        else args.repo_root / ".tiergate-data"
    )
    executor = CommandExecutor(args.repo_root, log_dir=data_dir / "logs")
    coordinator = RunCoordinator(
        config,
        JobDispatcher(executor, RunnerPool(config.runners)),
        ConcurrencyController(),
        Publisher({ArtifactKind.OBJECT_STORE: FilesystemArtifactStore(data_dir / "artifacts")}),
    )
    try:
        run = await coordinator.invoke_manual(args.pipeline, args.ref, changed_paths=args.path)
    except InvalidTrigger as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    print(render_summary(RunSummary.model_validate(run.summary)))
    return 1 if run.verdict == RunVerdict.FAILED else 0


def main():
    parser = argparse.ArgumentParser(
        prog="tiergate",
        description="tiergate — cost-aware multi-tier CI pipeline orchestrator",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # tiergate init
    init_parser = subparsers.add_parser("init", help="Initialize a new tiergate project")
    init_parser.add_argument(
        "--repo-root",
        type=Path,
        default=Path.cwd(),
        help="Path to the repository root (default: current directory)",
    )
    init_parser.add_argument(
        "--default-branch",
        default="main",
        help="Default branch name (default: main)",
    )

    # tiergate validate
    validate_parser = subparsers.add_parser("validate", help="Validate .tiergate/config.yaml")
    validate_parser.add_argument(
        "--repo-root",
        type=Path,
        default=Path.cwd(),
        help="Path to the repository root (default: current directory)",
    )

    # tiergate run
    run_parser = subparsers.add_parser("run", help="Run one pipeline now, bypassing triggers")
    run_parser.add_argument("pipeline", help="Pipeline name")
    run_parser.add_argument("--ref", required=True, help="Branch, tag or commit to run against")
    run_parser.add_argument(
        "--path",
        action="append",
        default=[],
        help="Changed path for path-based job selection (repeatable)",
    )
    run_parser.add_argument(
        "--repo-root",
        type=Path,
        default=Path.cwd(),
        help="Path to the repository root (default: current directory)",
    )

    # tiergate serve
    serve_parser = subparsers.add_parser("serve", help="Start the tiergate server")
    serve_parser.add_argument(
        "--repo-root",
        type=Path,
        default=Path.cwd(),
        help="Path to the repository root (default: current directory)",
    )
    serve_parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Host to bind to (default: 0.0.0.0)",
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to bind to (default: 8000)",
    )

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "init":
        _init_project(args.repo_root, args.default_branch)
        return

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.command == "validate":
        _validate(args)
        return

    if args.command == "run":
        sys.exit(asyncio.run(_run_pipeline(args)))

    # serve: fail fast on a bad config before binding the port
    _load(args.repo_root)

    import uvicorn

    from tiergate.server import create_app

    app = create_app(repo_root=args.repo_root)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())


if __name__ == "__main__":
    main()
