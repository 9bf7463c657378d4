"""cascade CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

_DEFAULT_CONFIG = """\
# cascade.yaml — trigger engine configuration

database:
  path: cascade.db

triggers:
  external_join: true

scm:
  api_url: https://api.github.com
  default_token_env: CASCADE_SCM_TOKEN

pipelines:
  - id: 1
    name: "{name}"
    scm_uri: "github.com:12345:main"
    admins: [admin]
    jobs:
      - name: main
      - name: publish
    workflow_graph:
      nodes:
        - name: ~commit
        - name: main
        - name: publish
      edges:
        - {{src: ~commit, dest: main}}
        - {{src: main, dest: publish}}
"""


def _init_config(config_path: Path) -> None:
    if config_path.exists():
        print(f"Config already exists at {config_path}", file=sys.stderr)
        sys.exit(1)
    config_path.write_text(_DEFAULT_CONFIG.format(name=config_path.resolve().parent.name))
    print(f"Wrote {config_path}")
    print("Next: edit pipelines, then run 'cascade sync'")


async def _open(config_path: Path):
    """Load config, open the database and build the engine."""
    import aiosqlite

    from cascade.config import load_config
    from cascade.engine.lifecycle import BuildLifecycle
    from cascade.engine.orchestrator import TriggerOrchestrator
    from cascade.scm import GitHubScm
    from cascade.store.registry import TriggerRegistry

    config = load_config(config_path)
    db = await aiosqlite.connect(config.database.path)
    registry = TriggerRegistry(db)
    await registry.initialize()

    scm = GitHubScm(
        base_url=config.scm.api_url,
        tokens=config.scm.tokens,
        default_token=config.scm.default_token,
        timeout=config.scm.timeout,
    )
    await scm.start()
    orchestrator = TriggerOrchestrator(registry, BuildLifecycle(registry, scm))
    return config, db, scm, registry, orchestrator


async def _sync(args: argparse.Namespace) -> None:
    from cascade.store.sync import sync_pipelines

    config, db, scm, registry, _ = await _open(args.config)
    try:
        pipelines = await sync_pipelines(registry, config.pipelines)
        for pipeline in pipelines:
            print(f"pipeline {pipeline.id} ({pipeline.name}): {len(pipeline.workflow_graph.nodes)} nodes")
    finally:
        await scm.close()
        await db.close()


async def _trigger_next(args: argparse.Namespace) -> None:
    config, db, scm, registry, orchestrator = await _open(args.config)
    try:
        build = await registry.require_build(args.build_id)
        job = await registry.require_job(build.job_id)
        pipeline = await registry.require_pipeline(job.pipeline_id)
        results = await orchestrator.trigger_next_jobs(
            pipeline,
            job,
            build,
            build.username,
            build.scm_context,
            config.triggers.external_join,
        )
        for result in results:
            if result is None:
                print("-")
            else:
                print(f"build {result.id} job {result.job_id} event {result.event_id} {result.status.value}")
    finally:
        await scm.close()
        await db.close()


async def _trigger_event(args: argparse.Namespace) -> None:
    _, db, scm, _, orchestrator = await _open(args.config)
    try:
        event = await orchestrator.trigger_event(
            args.pipeline_id,
            args.start_from,
            args.cause or f"Started from {args.start_from}",
            args.parent_build_id,
        )
        print(f"event {event.id} pipeline {event.pipeline_id} sha {event.sha}")
    finally:
        await scm.close()
        await db.close()


def main():
    parser = argparse.ArgumentParser(
        prog="cascade",
        description="cascade — downstream build triggering for multi-pipeline workflows",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    subparsers = parser.add_subparsers(dest="command")

    def add_config_arg(p: argparse.ArgumentParser) -> None:
        p.add_argument(
            "--config",
            type=Path,
            default=Path("cascade.yaml"),
            help="Path to cascade.yaml (default: ./cascade.yaml)",
        )

    # cascade init
    init_parser = subparsers.add_parser("init", help="Write a starter cascade.yaml")
    add_config_arg(init_parser)

    # cascade sync
    sync_parser = subparsers.add_parser("sync", help="Create tables and load pipelines")
    add_config_arg(sync_parser)

    # cascade trigger-next
    next_parser = subparsers.add_parser(
        "trigger-next", help="Trigger the jobs downstream of a finished build"
    )
    add_config_arg(next_parser)
    next_parser.add_argument("--build-id", type=int, required=True)

    # cascade trigger-event
    event_parser = subparsers.add_parser("trigger-event", help="Start a new event in a pipeline")
    add_config_arg(event_parser)
    event_parser.add_argument("--pipeline-id", type=int, required=True)
    event_parser.add_argument("--start-from", required=True)
    event_parser.add_argument("--cause", default=None, help="Cause message for the event")
    event_parser.add_argument("--parent-build-id", type=int, default=None)

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "init":
        _init_config(args.config)
        return

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    from cascade.errors import CascadeError

    commands = {
        "sync": _sync,
        "trigger-next": _trigger_next,
        "trigger-event": _trigger_event,
    }
    try:
        asyncio.run(commands[args.command](args))
    except (CascadeError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
