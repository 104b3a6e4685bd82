from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from koboldlair.analyzer import AgentDecomposer, Analyzer, MarkdownDecomposer
from koboldlair.config import LairConfig, load_config, save_config
from koboldlair.errors import LairError
from koboldlair.models import Project, ProjectStatus
from koboldlair.projects import ProjectRunSummary, ProjectService
from koboldlair.registry import ProjectRegistry
from koboldlair.workers import CommandWorker, ResilientWorker, RetryPolicy

logger = logging.getLogger(__name__)

LOG_LEVELS = ["debug", "info", "warning", "error"]


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: LairConfig
    registry: ProjectRegistry
    service: ProjectService


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _record_worker_event(event: dict[str, Any]) -> None:
    name = event.get("event")
    if name == "worker_fallback_success":
        logger.warning("Fallback worker %s succeeded", event.get("worker"))
    else:
        logger.info("Worker event %s: %s", name, event.get("error") or event.get("worker"))


def _build_worker(
    config: LairConfig, provider: str, model: str | None = None, timeout: float = 0.0
) -> ResilientWorker:
    primary = CommandWorker(config.worker.command_for(provider, model), name=provider)
    fallback = CommandWorker(config.worker.fallback_command) if config.worker.fallback_command else None
    timeout_seconds = timeout if timeout > 0 else config.worker.timeout_seconds
    policy = RetryPolicy(
        max_retries=max(0, int(config.worker.max_retries)),
        backoff_seconds=max(0.0, float(config.worker.retry_backoff_seconds)),
        timeout_seconds=max(1.0, float(timeout_seconds)),
    )
    return ResilientWorker(
        primary_name=primary.name,
        primary_worker=primary,
        fallback_name=fallback.name if fallback else None,
        fallback_worker=fallback,
        retry_policy=policy,
        event_hook=_record_worker_event,
    )


def _build_analyzer(config: LairConfig, repo_root: Path) -> Analyzer:
    wyvern = config.agents.wyvern
    provider = wyvern.provider or config.default_provider
    if provider == "markdown":
        return Analyzer(MarkdownDecomposer())
    generator = CommandWorker(config.worker.command_for(provider, wyvern.model), name="wyvern")
    return Analyzer(AgentDecomposer(lambda prompt: generator.complete(prompt, repo_root)))


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    try:
        config = load_config(config_path)
    except (TypeError, ValueError) as exc:
        raise click.ClickException(f"Invalid configuration {config_path}: {exc}") from exc
    registry = ProjectRegistry(repo_root / config.projects_path)
    service = ProjectService(
        config,
        analyzer=_build_analyzer(config, repo_root),
        worker_builder=lambda provider, model, timeout: _build_worker(
            config, provider, model, timeout
        ),
        registry=registry,
        workspace_root=repo_root,
    )
    try:
        service.load()
    except LairError as exc:
        raise click.ClickException(str(exc)) from exc
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        registry=registry,
        service=service,
    )


def _runtime_for(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    return _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))


def _parse_feature(value: str) -> dict[str, str]:
    name, _, description = value.partition(":")
    if not name.strip():
        raise click.BadParameter(f"Feature needs a name: {value!r}", param_hint="--feature")
    return {"name": name.strip(), "description": description.strip()}


def _echo_summary(summary: ProjectRunSummary) -> None:
    click.echo(f"Project: {summary.project_id} ({summary.status.value})")
    click.echo(f"Tasks: {summary.done_tasks}/{summary.total_tasks} done")
    if summary.blocked_tasks:
        click.echo(f"Blocked: {summary.blocked_tasks}")
    if summary.stopped:
        click.echo("Stopped before all work finished.")


def _describe(project: Project) -> str:
    return (
        f"{project.id:<24} {project.status.value:<24} "
        f"{project.execution_state.value:<10} v{project.specification.version}"
    )


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="warning",
    show_default=True,
)
def cli(log_level: str) -> None:
    """KoboldLair CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--provider", default=None)
@click.option("--config", "config_value", default="lair.toml", show_default=True)
def init_command(provider: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if provider:
        config.default_provider = provider
    save_config(config_path, config)
    projects_root = repo_root / config.projects_path
    projects_root.mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized KoboldLair in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Projects: {projects_root}")


@cli.command("register")
@click.argument("name")
@click.argument("spec_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--feature", "features", multiple=True, help="NAME[:DESCRIPTION]")
@click.option(
    "--workdir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory the kobolds work in.",
)
@click.option("--config", "config_value", default="lair.toml", show_default=True)
def register_command(
    name: str,
    spec_file: Path,
    features: tuple[str, ...],
    workdir: Path | None,
    config_value: str,
) -> None:
    runtime = _runtime_for(config_value)
    try:
        project = runtime.service.register_project(
            name,
            spec_file.read_text(encoding="utf-8"),
            features=[_parse_feature(value) for value in features],
            working_directory=workdir.resolve() if workdir else None,
        )
    except LairError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Registered {project.id}")


@cli.command("analyze")
@click.argument("project_id")
@click.option("--config", "config_value", default="lair.toml", show_default=True)
def analyze_command(project_id: str, config_value: str) -> None:
    runtime = _runtime_for(config_value)
    service = runtime.service
    try:
        if service.get_project(project_id).status == ProjectStatus.NEW:
            service.assign_analyzer(project_id)
        analysis = asyncio.run(service.analyze(project_id))
    except LairError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Analyzed {project_id}: {len(analysis.areas)} area(s), {analysis.total_tasks} task(s)")
    for area in analysis.areas:
        click.echo(f"  {area.name}: {len(area.tasks)} task(s)")


@cli.command("run")
@click.argument("project_id")
@click.option("--config", "config_value", default="lair.toml", show_default=True)
def run_command(project_id: str, config_value: str) -> None:
    runtime = _runtime_for(config_value)
    try:
        summary = asyncio.run(runtime.service.run(project_id))
    except LairError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_summary(summary)


@cli.command("status")
@click.argument("project_id")
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default="lair.toml", show_default=True)
def status_command(project_id: str, verbose: bool, config_value: str) -> None:
    runtime = _runtime_for(config_value)
    try:
        payload = runtime.service.status(project_id, verbose=verbose)
    except LairError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("update-spec")
@click.argument("project_id")
@click.argument("spec_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--config", "config_value", default="lair.toml", show_default=True)
def update_spec_command(project_id: str, spec_file: Path, config_value: str) -> None:
    runtime = _runtime_for(config_value)
    try:
        project = runtime.service.update_specification(
            project_id, spec_file.read_text(encoding="utf-8")
        )
    except LairError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(
        f"{project.id} specification v{project.specification.version} ({project.status.value})"
    )
    if project.pending_areas:
        click.echo(f"Changed areas: {', '.join(project.pending_areas)}")


@cli.command("pause")
@click.argument("project_id")
@click.option("--config", "config_value", default="lair.toml", show_default=True)
def pause_command(project_id: str, config_value: str) -> None:
    runtime = _runtime_for(config_value)
    try:
        runtime.service.pause(project_id)
    except LairError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Paused {project_id}.")


@cli.command("suspend")
@click.argument("project_id")
@click.option("--config", "config_value", default="lair.toml", show_default=True)
def suspend_command(project_id: str, config_value: str) -> None:
    """Hold a project until it is resumed explicitly."""
    runtime = _runtime_for(config_value)
    try:
        runtime.service.suspend(project_id)
    except LairError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Suspended {project_id}.")


@cli.command("resume")
@click.argument("project_id")
@click.option("--config", "config_value", default="lair.toml", show_default=True)
def resume_command(project_id: str, config_value: str) -> None:
    runtime = _runtime_for(config_value)
    try:
        runtime.service.resume(project_id)
    except LairError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Resumed {project_id}.")


@cli.command("list")
@click.option(
    "--status",
    "status_value",
    type=click.Choice([status.value for status in ProjectStatus]),
    default=None,
)
@click.option("--config", "config_value", default="lair.toml", show_default=True)
def list_command(status_value: str | None, config_value: str) -> None:
    runtime = _runtime_for(config_value)
    status = ProjectStatus(status_value) if status_value else None
    projects = runtime.service.list_projects(status)
    if not projects:
        click.echo("No projects registered.")
        return
    for project in projects:
        click.echo(_describe(project))
