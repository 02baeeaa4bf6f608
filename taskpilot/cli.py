"""CLI entrypoint for TaskPilot."""

from __future__ import annotations

import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Optional
from uuid import UUID

import click

from taskpilot.core.exceptions import (
    ConfigError,
    ForbiddenError,
    NotFoundError,
    StorageError,
    TaskPilotError,
)
from taskpilot.core.models import TaskStatus

# Track the most recently active execution context for graceful shutdown
_active_project_id: Optional[str] = None
_active_loop: Any = None
_tasks_processed: int = 0


def _sigint_handler(signum: int, frame: Any) -> None:
    """Handle Ctrl+C with a short summary instead of a bare traceback."""
    if _active_loop is not None and _active_loop.running:
        click.echo(click.style("\nStopping after the current task...", fg="yellow", bold=True))
        _active_loop.stop()
        return
    click.echo("\n")
    click.echo(click.style("Interrupted.", fg="yellow", bold=True))
    if _active_project_id:
        click.echo(f"  Project ID:      {_active_project_id}")
    click.echo(f"  Tasks processed: {_tasks_processed}")
    click.echo(
        "\nTask state is persisted in the database. Resume with:\n"
        f"  taskpilot run --project-id {_active_project_id or '<project-id>'}"
    )
    sys.exit(130)


def _setup_logging(verbose: bool = False) -> None:
    """Apply logging configuration from config/default.yaml."""
    from taskpilot.core.config import load_config

    try:
        config = load_config()
        level_name = config.logging.level
        fmt = config.logging.format
    except ConfigError:
        level_name = "INFO"
        fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(level=level, format=fmt, stream=sys.stderr)


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Enable verbose (DEBUG) logging.")
@click.option(
    "--config-dir",
    required=False,
    default=None,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Config directory (default: <repo>/config).",
)
@click.option("--env", required=False, default=None, help="Optional config overlay environment.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_dir: Optional[Path], env: Optional[str]) -> None:
    """TaskPilot command line interface."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["config_dir"] = config_dir
    ctx.obj["env"] = env
    _setup_logging(verbose=verbose)
    signal.signal(signal.SIGINT, _sigint_handler)


@cli.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create all tables and indexes."""
    bundle = _open_bundle(ctx, initialize_schema=True)
    try:
        click.echo("Database schema initialized.")
    finally:
        _close_bundle(bundle)


@cli.command("import-project")
@click.argument("project_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def import_project(ctx: click.Context, project_file: Path) -> None:
    """Import a project's feature/milestone/goal tree from YAML."""
    from taskpilot.orchestrator.project_tree import (
        import_project_tree,
        load_project_tree_document,
    )

    bundle = _open_bundle(ctx)
    try:
        document = load_project_tree_document(project_file)
        project = import_project_tree(bundle.repository, document)
        click.echo(f"Imported project {project.id} ({project.name})")
    except TaskPilotError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        _close_bundle(bundle)


@cli.command("run")
@click.option("--project-id", required=True, help="Project whose goals to execute.")
@click.option(
    "--max-cycles",
    required=False,
    default=None,
    type=int,
    help="Stop after this many poll cycles (default: run until interrupted).",
)
@click.pass_context
def run(ctx: click.Context, project_id: str, max_cycles: Optional[int]) -> None:
    """Run the execution loop for a project. Ctrl+C stops after the current task."""
    global _active_project_id, _active_loop, _tasks_processed

    bundle = _open_bundle(ctx)
    loop = bundle.build_loop()
    _active_project_id = project_id
    _active_loop = loop
    try:
        click.echo(f"Running project {project_id} as agent {loop.agent_id}")
        _tasks_processed = loop.run(project_id, max_cycles=max_cycles)
        _echo_json({
            "project_id": project_id,
            "tasks_processed": _tasks_processed,
            "status_counts": bundle.task_store.status_summary(project_id),
        })
    except TaskPilotError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        _active_loop = None
        _close_bundle(bundle)


@cli.command("status")
@click.option("--project-id", required=False, default=None, help="Optional project filter.")
@click.pass_context
def status(ctx: click.Context, project_id: Optional[str]) -> None:
    """Show task counts by status and the agent's last session."""
    bundle = _open_bundle(ctx)
    try:
        agent_id = bundle.config.orchestrator.agent_id
        last = bundle.session_tracker.last_for(agent_id)
        _echo_json({
            "project_id": project_id,
            "task_status_counts": bundle.task_store.status_summary(project_id),
            "agent_id": agent_id,
            "last_session": last.model_dump(mode="json") if last else None,
        })
    except StorageError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        _close_bundle(bundle)


@cli.command("tasks")
@click.option("--project-id", required=False, default=None, help="Optional project filter.")
@click.option(
    "--status",
    "status_filter",
    required=False,
    default=None,
    type=click.Choice([s.value for s in TaskStatus]),
    help="Optional status filter.",
)
@click.pass_context
def tasks(ctx: click.Context, project_id: Optional[str], status_filter: Optional[str]) -> None:
    """List tasks in queue order."""
    bundle = _open_bundle(ctx)
    try:
        rows = bundle.task_store.list(
            project_id=project_id,
            status=TaskStatus(status_filter) if status_filter else None,
        )
        _echo_json({
            "tasks": [
                {
                    "id": str(t.id),
                    "type": t.type.value,
                    "project_id": t.project_id,
                    "title": t.title,
                    "priority": t.priority,
                    "status": t.status.value,
                    "created_at": _iso(t.created_at),
                }
                for t in rows
            ],
            "count": len(rows),
        })
    finally:
        _close_bundle(bundle)


@cli.command("sessions")
@click.option("--agent-id", required=False, default=None, help="Agent (default: configured agent).")
@click.pass_context
def sessions(ctx: click.Context, agent_id: Optional[str]) -> None:
    """Show an agent's retained session snapshots, newest first."""
    bundle = _open_bundle(ctx)
    try:
        agent = agent_id or bundle.config.orchestrator.agent_id
        history = bundle.session_tracker.history_for(agent)
        _echo_json({
            "agent_id": agent,
            "sessions": [s.model_dump(mode="json") for s in history],
            "count": len(history),
        })
    finally:
        _close_bundle(bundle)


@cli.command("checkpoints")
@click.option("--project-id", required=True, help="Project whose checkpoints to list.")
@click.option("--goal-id", required=False, default=None, help="Restrict to one goal.")
@click.pass_context
def checkpoints(ctx: click.Context, project_id: str, goal_id: Optional[str]) -> None:
    """List checkpoints, newest first."""
    bundle = _open_bundle(ctx)
    try:
        if goal_id:
            rows = [
                c for c in bundle.checkpoint_store.list_by_goal(goal_id)
                if c.project_id == project_id
            ]
        else:
            rows = bundle.checkpoint_store.list_by_project(project_id)
        _echo_json({
            "project_id": project_id,
            "checkpoints": [
                {
                    "id": str(c.id),
                    "goal_id": c.goal_id,
                    "summary": c.summary,
                    "timestamp": _iso(c.timestamp),
                }
                for c in rows
            ],
            "count": len(rows),
        })
    finally:
        _close_bundle(bundle)


@cli.command("revert")
@click.option("--project-id", required=True, help="Project that owns the checkpoint.")
@click.option("--checkpoint-id", required=True, help="Checkpoint UUID to restore.")
@click.pass_context
def revert(ctx: click.Context, project_id: str, checkpoint_id: str) -> None:
    """Restore a checkpoint's artifact as a new rollback output."""
    checkpoint_uuid = _parse_uuid(checkpoint_id, "checkpoint_id")
    bundle = _open_bundle(ctx)
    try:
        output = bundle.build_loop().revert(checkpoint_uuid, project_id)
        _echo_json({
            "output_id": str(output.id),
            "project_id": output.project_id,
            "goal_id": output.goal_id,
            "source_checkpoint_id": str(output.source_checkpoint_id),
            "kind": output.kind.value,
        })
    except (NotFoundError, ForbiddenError) as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        _close_bundle(bundle)


@cli.command("skills")
@click.option("--agent-id", required=False, default=None, help="Agent (default: configured agent).")
@click.option("--goal-title", required=False, default=None, help="Preview behavior instructions.")
@click.pass_context
def skills(ctx: click.Context, agent_id: Optional[str], goal_title: Optional[str]) -> None:
    """Show per-skill accuracy, worst first, plus the memory digest."""
    bundle = _open_bundle(ctx)
    try:
        agent = agent_id or bundle.config.orchestrator.agent_id
        tracker = bundle.performance_tracker
        payload: dict[str, Any] = {
            "agent_id": agent,
            "skills": [s.model_dump(mode="json") for s in tracker.summarize(agent)],
            "memory_digest": tracker.memory_digest(agent),
        }
        if goal_title:
            payload["behavior_instructions"] = tracker.behavior_instructions(agent, goal_title)
        _echo_json(payload)
    finally:
        _close_bundle(bundle)


@cli.command("train-scan")
@click.pass_context
def train_scan(ctx: click.Context) -> None:
    """Run one training scan and enqueue retraining tasks."""
    bundle = _open_bundle(ctx)
    try:
        created = bundle.build_training_scanner().scan()
        _echo_json({
            "enqueued": [
                {
                    "task_id": str(t.id),
                    "skill_tag": t.metadata.skill_tag,
                    "agent_id": t.metadata.agent_id,
                    "current_accuracy": t.metadata.current_accuracy,
                }
                for t in created
            ],
            "count": len(created),
        })
    except StorageError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        _close_bundle(bundle)


@cli.command("train-schedule")
@click.option(
    "--interval-seconds",
    required=False,
    default=None,
    type=float,
    help="Seconds between scans (default: training.scan_interval_seconds).",
)
@click.pass_context
def train_schedule(ctx: click.Context, interval_seconds: Optional[float]) -> None:
    """Run training scans on a fixed schedule until interrupted."""
    bundle = _open_bundle(ctx)
    scanner = bundle.build_training_scanner()
    previous = signal.signal(signal.SIGINT, lambda signum, frame: scanner.stop())
    try:
        scans = scanner.run_forever(interval_seconds)
        click.echo(f"Training schedule stopped after {scans} scan(s).")
    finally:
        signal.signal(signal.SIGINT, previous)
        _close_bundle(bundle)


def _open_bundle(ctx: click.Context, initialize_schema: bool = False):
    obj = ctx.obj or {}
    factory = _load_component_factory()
    try:
        return factory.create(
            config_dir=obj.get("config_dir"),
            env=obj.get("env"),
            initialize_schema=initialize_schema,
        )
    except TaskPilotError as exc:
        raise click.ClickException(str(exc)) from exc


def _close_bundle(bundle: Any) -> None:
    _load_component_factory().close(bundle)


def _load_component_factory():
    from taskpilot.core.factory import ComponentFactory

    return ComponentFactory


def _parse_uuid(raw: Optional[str], field_name: str) -> UUID:
    if raw is None:
        raise click.ClickException(f"Missing required UUID value for {field_name}")
    try:
        return UUID(str(raw))
    except ValueError as exc:
        raise click.ClickException(f"Invalid UUID for {field_name}: {raw}") from exc


def _iso(value: Any) -> Optional[str]:
    if value is None:
        return None
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def _echo_json(payload: dict[str, Any]) -> None:
    click.echo(json.dumps(payload, indent=2, ensure_ascii=True, default=str))


def main() -> None:
    """Entry point used by the `taskpilot` console script."""
    from dotenv import load_dotenv
    load_dotenv(Path(__file__).parent.parent / ".env", override=True)
    cli(obj={})


if __name__ == "__main__":
    main()
