"""
Command-line interface for nodeflow.

Usage:
    nodeflow validate workflows/orders.json
    nodeflow run workflows/orders.json --input '[{"value": 1}, {"value": 2}]'
    nodeflow resume tok_20260101_120000_ab12cd34 --payload '{"approved": true}'
    nodeflow tokens list
    nodeflow tokens delete tok_20260101_120000_ab12cd34
    nodeflow tokens prune --days 7
    nodeflow serve --port 8080

Workflows referenced by id (sub-workflows, error workflows) are loaded from
``<workflows dir>/<id>.json``; the directory defaults to the one holding the
workflow file.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from nodeflow.config import EngineConfig
from nodeflow.credentials import EnvVarCredentialProvider
from nodeflow.errors import GraphValidationError, SuspensionTokenError
from nodeflow.graph.executor import RunOutcome, WorkflowExecutor
from nodeflow.graph.model import WorkflowGraph
from nodeflow.graph.validator import validate
from nodeflow.nodes import default_registry
from nodeflow.observability import configure_logging
from nodeflow.schemas.run import RunStatus
from nodeflow.storage.binary import FilesystemBinaryProvider
from nodeflow.storage.token_store import FileTokenStore

logger = logging.getLogger(__name__)

EXIT_CODES = {
    RunStatus.SUCCESS: 0,
    RunStatus.WAITING: 0,
    RunStatus.FAILED: 1,
    RunStatus.CANCELED: 2,
}


def load_workflow(path: Path | str) -> WorkflowGraph:
    """Read a workflow definition from a JSON file."""
    return WorkflowGraph.model_validate_json(Path(path).read_text(encoding="utf-8"))


def directory_loader(directory: Path):
    """Workflow loader resolving ids to ``<directory>/<id>.json``."""

    def _load(workflow_id: str) -> WorkflowGraph | None:
        path = directory / f"{workflow_id}.json"
        if not path.exists():
            return None
        return load_workflow(path)

    return _load


def parse_json_arg(value: str | None) -> Any:
    """Inline JSON, or ``@path`` to read JSON from a file."""
    if value is None:
        return None
    if value.startswith("@"):
        value = Path(value[1:]).read_text(encoding="utf-8")
    return json.loads(value)


def outcome_summary(outcome: RunOutcome) -> dict[str, Any]:
    summary: dict[str, Any] = {
        "run_id": outcome.run_id,
        "workflow_id": outcome.workflow_id,
        "status": outcome.status.value,
        "path": outcome.path,
        "skipped": outcome.skipped,
        "execution_quality": outcome.execution_quality,
    }
    if outcome.status == RunStatus.SUCCESS:
        summary["output"] = outcome.output()
    if outcome.error is not None:
        summary["error"] = outcome.error.model_dump()
    if outcome.token is not None:
        summary["token_id"] = outcome.token.token_id
        summary["waiting_at"] = outcome.token.node
    if outcome.error_workflow_outcome is not None:
        summary["error_workflow"] = {
            "run_id": outcome.error_workflow_outcome.run_id,
            "status": outcome.error_workflow_outcome.status.value,
        }
    return summary


def build_executor(
    args: argparse.Namespace,
    workflows_dir: Path | None,
    event_bus: Any | None = None,
) -> WorkflowExecutor:
    config = EngineConfig()
    if getattr(args, "sequential", False):
        config.parallel_branches = False
    token_dir = Path(args.token_dir).expanduser() if args.token_dir else config.token_dir
    config.token_dir = token_dir
    return WorkflowExecutor(
        default_registry(),
        config=config,
        credentials=EnvVarCredentialProvider(),
        binary=FilesystemBinaryProvider(token_dir.parent / "binary"),
        workflow_loader=directory_loader(workflows_dir) if workflows_dir else None,
        event_bus=event_bus,
        token_store=FileTokenStore(token_dir),
    )


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


# === COMMANDS ===


def cmd_validate(args: argparse.Namespace) -> int:
    try:
        graph = load_workflow(args.workflow)
    except (OSError, ValueError) as e:
        print(f"Cannot read workflow: {e}", file=sys.stderr)
        return 1

    result = validate(graph, default_registry())
    if result.success:
        print(f"✓ {graph.name or graph.id}: {len(graph.nodes)} nodes, valid")
        return 0
    print(f"✗ {graph.name or graph.id} is invalid:")
    for error in result.errors:
        print(f"   • {error}")
    return 1


def cmd_run(args: argparse.Namespace) -> int:
    try:
        graph = load_workflow(args.workflow)
        items = parse_json_arg(args.input)
    except (OSError, ValueError) as e:
        print(f"Cannot read input: {e}", file=sys.stderr)
        return 1

    workflows_dir = Path(args.workflows_dir) if args.workflows_dir else Path(args.workflow).parent
    executor = build_executor(args, workflows_dir)
    try:
        outcome = asyncio.run(executor.start_run(graph, items=items, start_node=args.start_node))
    except GraphValidationError as e:
        print(f"✗ {e.message}", file=sys.stderr)
        return 1

    _print(outcome_summary(outcome))
    return EXIT_CODES[outcome.status]


def cmd_resume(args: argparse.Namespace) -> int:
    try:
        payload = parse_json_arg(args.payload)
    except (OSError, ValueError) as e:
        print(f"Cannot read payload: {e}", file=sys.stderr)
        return 1

    workflows_dir = Path(args.workflows_dir) if args.workflows_dir else None
    executor = build_executor(args, workflows_dir)

    async def _resume() -> RunOutcome:
        token = await executor.token_store.claim(args.token_id)
        return await executor.resume_run(token, payload)

    try:
        outcome = asyncio.run(_resume())
    except SuspensionTokenError as e:
        print(f"✗ {e.message}", file=sys.stderr)
        return 1

    _print(outcome_summary(outcome))
    return EXIT_CODES[outcome.status]


def cmd_tokens(args: argparse.Namespace) -> int:
    token_dir = Path(args.token_dir).expanduser() if args.token_dir else EngineConfig().token_dir
    store = FileTokenStore(token_dir)

    if args.tokens_command == "list":
        tokens = asyncio.run(store.list_tokens(workflow_id=args.workflow, run_id=args.run))
        _print([t.model_dump() for t in tokens])
        return 0

    if args.tokens_command == "delete":
        try:
            deleted = asyncio.run(store.delete(args.token_id))
        except SuspensionTokenError as e:
            print(f"✗ {e.message}", file=sys.stderr)
            return 1
        if not deleted:
            print(f"Token not found: {args.token_id}", file=sys.stderr)
            return 1
        print(f"Deleted {args.token_id}")
        return 0

    if args.tokens_command == "prune":
        count = asyncio.run(store.prune(max_age_days=args.days))
        print(f"Pruned {count} token(s)")
        return 0

    return 1


def cmd_serve(args: argparse.Namespace) -> int:
    from nodeflow.runtime.event_bus import EventBus
    from nodeflow.runtime.webhook_server import (
        WebhookResumer,
        WebhookServer,
        WebhookServerConfig,
    )

    async def _serve() -> None:
        bus = EventBus()
        workflows_dir = Path(args.workflows_dir) if args.workflows_dir else None
        executor = build_executor(args, workflows_dir, event_bus=bus)

        config = WebhookServerConfig.from_settings()
        if args.host:
            config.host = args.host
        if args.port is not None:
            config.port = args.port

        server = WebhookServer(bus, config, token_store=executor.token_store)
        resumer = WebhookResumer(executor, executor.token_store, bus)
        resumer.start()
        await server.start()
        try:
            await asyncio.Event().wait()
        finally:
            await server.stop()
            resumer.stop()
            await resumer.drain()

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        logger.info("Shutting down")
    return 0


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    validate_parser = subparsers.add_parser("validate", help="Check a workflow definition")
    validate_parser.add_argument("workflow", help="Path to a workflow JSON file")
    validate_parser.set_defaults(func=cmd_validate)

    run_parser = subparsers.add_parser("run", help="Run a workflow")
    run_parser.add_argument("workflow", help="Path to a workflow JSON file")
    run_parser.add_argument("--input", help="Trigger items as JSON, or @file")
    run_parser.add_argument("--start-node", help="Node to start from")
    run_parser.add_argument("--workflows-dir", help="Directory of workflows referenced by id")
    run_parser.add_argument(
        "--sequential", action="store_true", help="Invoke sibling nodes one at a time"
    )
    run_parser.set_defaults(func=cmd_run)

    resume_parser = subparsers.add_parser("resume", help="Resume a waiting run")
    resume_parser.add_argument("token_id", help="Suspension token id")
    resume_parser.add_argument("--payload", help="Resume payload as JSON, or @file")
    resume_parser.add_argument("--workflows-dir", help="Directory of workflows referenced by id")
    resume_parser.set_defaults(func=cmd_resume)

    tokens_parser = subparsers.add_parser("tokens", help="Manage stored suspension tokens")
    tokens_sub = tokens_parser.add_subparsers(dest="tokens_command", required=True)
    list_parser = tokens_sub.add_parser("list", help="List waiting runs")
    list_parser.add_argument("--workflow", help="Filter by workflow id")
    list_parser.add_argument("--run", help="Filter by run id")
    delete_parser = tokens_sub.add_parser("delete", help="Delete a token")
    delete_parser.add_argument("token_id")
    prune_parser = tokens_sub.add_parser("prune", help="Delete old tokens")
    prune_parser.add_argument("--days", type=int, default=7)
    tokens_parser.set_defaults(func=cmd_tokens)

    serve_parser = subparsers.add_parser("serve", help="Resume runs from webhook requests")
    serve_parser.add_argument("--host")
    serve_parser.add_argument("--port", type=int)
    serve_parser.add_argument("--workflows-dir", help="Directory of workflows referenced by id")
    serve_parser.set_defaults(func=cmd_serve)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="nodeflow",
        description="nodeflow - Run node-based workflows",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--log-format", choices=["auto", "json", "human"], default="auto")
    parser.add_argument("--token-dir", help="Directory for suspension tokens")

    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args(argv)
    configure_logging(level="DEBUG" if args.verbose else "INFO", format=args.log_format)

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
