"""Operator CLI for agentkb.

Usage::

    # Run the API (workers run in-process unless RUN_WORKERS_IN_PROCESS=false)
    python -m agentkb serve --port 8000

    # Run only the stage workers (or drain the queues once and exit)
    python -m agentkb worker
    python -m agentkb worker --once

    # Upload files for an agent and process them right here
    python -m agentkb ingest --tenant acme --agent support docs/*.md --wait

    # Status of an agent, one file, a deletion job, or the queues
    python -m agentkb status --tenant acme --agent support
    python -m agentkb status --tenant acme --agent support --file <file_id>
    python -m agentkb status --tenant acme --deletion file-deletion-<file_id>
    python -m agentkb status --queues
    python -m agentkb status --config

    # Queue deletions and purge expired deletion records
    python -m agentkb delete --tenant acme --agent support <file_id> [<file_id> ...]
    python -m agentkb purge --retention-hours 72
"""

from __future__ import annotations

import argparse
import asyncio
import mimetypes
import sys
from pathlib import Path
from typing import Any

import yaml

from agentkb.config.settings import Settings
from agentkb.utils.errors import AgentKBError

# Extensions the mimetypes registry does not know on every platform.
_EXTRA_MIME_TYPES = {
    ".md": "text/markdown",
    ".markdown": "text/markdown",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}


def _guess_mime(path: Path) -> str:
    suffix = path.suffix.lower()
    if suffix in _EXTRA_MIME_TYPES:
        return _EXTRA_MIME_TYPES[suffix]
    guessed, _ = mimetypes.guess_type(path.name)
    return guessed or "application/octet-stream"


async def _components(app_settings: Settings) -> dict[str, Any]:
    from agentkb.main import build_components, initialize_components

    components = build_components(app_settings)
    await initialize_components(components)
    return components


def _print_model(model: Any) -> None:
    print(model.model_dump_json(indent=2))


# ---------------------------------------------------------------------------
# Subcommand handlers
# ---------------------------------------------------------------------------


def _handle_serve(args: argparse.Namespace, app_settings: Settings) -> int:
    import uvicorn

    uvicorn.run(
        "agentkb.main:app",
        host=args.host or app_settings.app_host,
        port=args.port or app_settings.app_port,
        reload=args.reload,
    )
    return 0


async def _handle_worker(args: argparse.Namespace, app_settings: Settings) -> int:
    """Run the stage worker pools until interrupted, or drain once."""
    components = await _components(app_settings)

    if args.once:
        handled = await components["orchestrator"].drain(max_jobs=args.max_jobs)
        print(f"Handled {handled} job(s)")
        return 0

    supervisor = components["supervisor"]
    recovered = await supervisor.start()
    print(f"Workers running ({recovered} stalled job(s) recovered). Ctrl+C to stop.")
    try:
        await asyncio.Event().wait()
    finally:
        await supervisor.stop()
    return 0


async def _handle_ingest(args: argparse.Namespace, app_settings: Settings) -> int:
    """Upload each path for the agent, then optionally process the queues here."""
    components = await _components(app_settings)
    kb = components["kb_service"]

    await kb.register_agent(args.tenant, args.agent, name=args.agent_name or "")

    accepted: list[str] = []
    failures = 0
    for raw_path in args.paths:
        path = Path(raw_path)
        if not path.is_file():
            print(f"  skip {path}: not a file")
            failures += 1
            continue
        mime_type = args.mime or _guess_mime(path)
        try:
            file, job_id = await kb.upload_file(
                args.tenant, args.agent, path.name, path.read_bytes(), mime_type
            )
        except AgentKBError as exc:
            print(f"  rejected {path.name}: {exc.message}")
            failures += 1
            continue
        accepted.append(file.file_id)
        print(f"  queued {path.name} as {file.file_id} (job {job_id}, {mime_type})")

    if args.wait and accepted:
        handled = await components["orchestrator"].drain()
        print(f"\nProcessed {handled} job(s):")
        from agentkb.pipeline.status_aggregator import derive_file_status

        for file_id in accepted:
            file = await kb.get_file_status(args.tenant, args.agent, file_id)
            print(f"  {file.filename}: {derive_file_status(file).value}")
            for record in file.processing.ordered():
                if record.last_error:
                    print(f"    {record.stage.value}: {record.last_error}")

    agent = await kb.get_agent_status(args.tenant, args.agent)
    print(f"\nAgent {agent.agent_id}: {agent.status.value} ({agent.completed_count}/{agent.file_count} files)")
    return 1 if failures else 0


async def _handle_status(args: argparse.Namespace, app_settings: Settings) -> int:
    if args.config:
        from agentkb.config.loader import load_config

        print(yaml.safe_dump(load_config(args.config_path, settings=app_settings), sort_keys=False))
        return 0

    components = await _components(app_settings)

    if args.queues:
        from agentkb.models.jobs import QueueName

        for queue in QueueName:
            counts = await components["job_queue"].counts(queue)
            summary = ", ".join(f"{status}={count}" for status, count in counts.items())
            print(f"{queue.value:16} {summary}")
        return 0

    if not args.tenant:
        print("--tenant is required", file=sys.stderr)
        return 2

    kb = components["kb_service"]
    if args.deletion:
        _print_model(await kb.get_deletion_status(args.tenant, args.deletion))
        return 0
    if not args.agent:
        print("--agent is required", file=sys.stderr)
        return 2
    if args.file:
        from agentkb.api.schemas import FileStatusResponse

        file = await kb.get_file_status(args.tenant, args.agent, args.file)
        _print_model(FileStatusResponse.from_file(file))
        return 0

    _print_model(await kb.get_agent_status(args.tenant, args.agent))
    return 0


async def _handle_delete(args: argparse.Namespace, app_settings: Settings) -> int:
    components = await _components(app_settings)
    kb = components["kb_service"]

    report = await kb.delete_files(args.tenant, args.agent, args.file_ids)
    for item in report.items:
        if item.success:
            print(f"  {item.file_id}: {item.status.value if item.status else 'queued'} (job {item.job_id})")
        else:
            print(f"  {item.file_id}: rejected: {item.error}")

    if args.wait and report.successful:
        await components["orchestrator"].drain()
        for item in report.items:
            if item.job_id:
                job = await kb.get_deletion_status(args.tenant, item.job_id)
                print(f"  {item.job_id}: {job.status.value}")
    return 1 if report.failed else 0


async def _handle_purge(args: argparse.Namespace, app_settings: Settings) -> int:
    components = await _components(app_settings)
    result = await components["deletion"].purge_expired(args.retention_hours)
    print(f"Purged {result['jobs_purged']} deletion job(s) and {result['files_purged']} tombstone(s)")
    return 0


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m agentkb",
        description="Operate agentkb knowledge bases: serve, ingest, inspect, delete.",
    )
    subparsers = parser.add_subparsers(dest="command", help="agentkb commands")

    # -- serve --
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default=None, help="Bind address (default: APP_HOST)")
    serve_parser.add_argument("--port", type=int, default=None, help="Port (default: APP_PORT)")
    serve_parser.add_argument("--reload", action="store_true", help="Auto-reload on code changes")

    # -- worker --
    worker_parser = subparsers.add_parser("worker", help="Run the stage workers")
    worker_parser.add_argument(
        "--once", action="store_true", help="Drain the claimable jobs and exit"
    )
    worker_parser.add_argument(
        "--max-jobs", type=int, default=None, help="With --once: stop after N jobs"
    )

    # -- ingest --
    ingest_parser = subparsers.add_parser("ingest", help="Upload local files for an agent")
    ingest_parser.add_argument("--tenant", required=True)
    ingest_parser.add_argument("--agent", required=True)
    ingest_parser.add_argument("--agent-name", default=None, help="Name used if the agent is new")
    ingest_parser.add_argument("--mime", default=None, help="Force a MIME type for every file")
    ingest_parser.add_argument(
        "--wait", action="store_true", help="Process the queued jobs in this process"
    )
    ingest_parser.add_argument("paths", nargs="+", help="Files to upload")

    # -- status --
    status_parser = subparsers.add_parser("status", help="Show agent, file, deletion or queue status")
    status_parser.add_argument("--tenant", default=None)
    status_parser.add_argument("--agent", default=None)
    status_parser.add_argument("--file", default=None, help="File id")
    status_parser.add_argument("--deletion", default=None, help="Deletion job id")
    status_parser.add_argument("--queues", action="store_true", help="Job counts per queue")
    status_parser.add_argument(
        "--config", action="store_true", help="Print the effective configuration"
    )
    status_parser.add_argument("--config-path", default="config/config.yaml")

    # -- delete --
    delete_parser = subparsers.add_parser("delete", help="Queue deletion of files")
    delete_parser.add_argument("--tenant", required=True)
    delete_parser.add_argument("--agent", required=True)
    delete_parser.add_argument(
        "--wait", action="store_true", help="Run the deletion jobs in this process"
    )
    delete_parser.add_argument("file_ids", nargs="+")

    # -- purge --
    purge_parser = subparsers.add_parser(
        "purge", help="Remove finished deletion jobs and tombstones past retention"
    )
    purge_parser.add_argument(
        "--retention-hours",
        type=float,
        default=None,
        help="Override DELETION_RETENTION_HOURS",
    )

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

_ASYNC_HANDLERS = {
    "worker": _handle_worker,
    "ingest": _handle_ingest,
    "status": _handle_status,
    "delete": _handle_delete,
    "purge": _handle_purge,
}


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    app_settings = Settings()
    if args.command == "serve":
        sys.exit(_handle_serve(args, app_settings))

    try:
        exit_code = asyncio.run(_ASYNC_HANDLERS[args.command](args, app_settings))
    except AgentKBError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        exit_code = 1
    except KeyboardInterrupt:
        exit_code = 130
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
