"""Blue/green rollout CLI exposing deploy/resume/status/schema workflows."""

from __future__ import annotations

import json
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

import click

from core.config.rollout import (
    ConfigError as SettingsConfigError,
    RolloutSettings,
    export_settings_schema,
    load_rollout_settings,
    parse_cli_overrides,
)
from core.utils.logging import configure_logging
from core.utils.metrics import start_metrics_server
from deployment.errors import NoChangeError, RolloutInProgressError
from deployment.factory import build_controller, build_store
from deployment.models import RolloutOutcome, RolloutRecord
from observability.health import HealthServer


class CLIError(click.ClickException):
    """Base class for typed CLI failures with deterministic exit codes."""

    exit_code = 1


class ConfigError(CLIError):
    exit_code = 2


class ConflictError(CLIError):
    exit_code = 3


class RolloutFailedError(CLIError):
    exit_code = 4


@contextmanager
def step_logger(command: str, name: str) -> Iterator[None]:
    """Context manager emitting deterministic start/stop step logs."""

    click.echo(f"[{command}] ▶ {name}")
    start = time.perf_counter()
    try:
        yield
    except Exception:
        duration = time.perf_counter() - start
        click.echo(f"[{command}] ✖ {name} ({duration:.2f}s)", err=True)
        raise
    else:
        duration = time.perf_counter() - start
        click.echo(f"[{command}] ✓ {name} ({duration:.2f}s)")


def _load_settings(ctx: click.Context) -> RolloutSettings:
    settings = ctx.obj.get("settings")
    if settings is not None:
        return settings
    try:
        overrides = parse_cli_overrides(ctx.obj["overrides"])
        settings = load_rollout_settings(ctx.obj["config"], overrides=overrides)
    except SettingsConfigError as exc:
        raise ConfigError(str(exc)) from exc
    configure_logging(settings.log_level, use_json=settings.log_json, stream=click.get_text_stream("stderr"))
    ctx.obj["settings"] = settings
    return settings


def _summary(record: RolloutRecord) -> dict[str, Any]:
    return {
        "rollout_id": record.rollout_id,
        "application": record.application,
        "image": record.image,
        "state": record.state.value,
        "outcome": record.outcome.value,
        "active_color": (
            record.target_color if record.outcome is RolloutOutcome.SUCCEEDED else record.source_color
        ).value,
        "failure_kind": record.failure_kind,
        "failure_reason": record.failure_reason,
    }


@click.group()
@click.option(
    "--config",
    "config",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to the rollout YAML config (defaults to configs/rollout.yaml).",
)
@click.option(
    "--set",
    "overrides",
    multiple=True,
    metavar="KEY=VALUE",
    help="Override a configuration value, e.g. --set timing.bake_time=60.",
)
@click.pass_context
def cli(ctx: click.Context, config: Path | None, overrides: tuple[str, ...]) -> None:
    """Blue/green rollout controller."""

    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    ctx.obj["overrides"] = list(overrides)


@cli.command()
@click.argument("image", required=False)
@click.option(
    "--status-port",
    type=click.IntRange(0, 65535),
    default=None,
    help="Serve /healthz, /readyz and /rollout on this port while the rollout runs.",
)
@click.option(
    "--metrics-port",
    type=click.IntRange(1, 65535),
    default=None,
    help="Expose Prometheus metrics on this port.",
)
@click.pass_context
def deploy(
    ctx: click.Context, image: str | None, status_port: int | None, metrics_port: int | None
) -> None:
    """Roll IMAGE out to the inactive colour and shift production to it."""

    command = "deploy"
    settings = _load_settings(ctx)
    try:
        reference = settings.resolve_image(image)
    except SettingsConfigError as exc:
        raise ConfigError(str(exc)) from exc

    with step_logger(command, "build controller"):
        controller = build_controller(settings)
    click.echo(f"[{command}] entry point: {controller.entry_point}")

    metrics_port = metrics_port if metrics_port is not None else settings.metrics_port
    if metrics_port is not None:
        start_metrics_server(metrics_port)
        click.echo(f"[{command}] • metrics on port {metrics_port}")

    port = status_port if status_port is not None else settings.status_port
    server: HealthServer | None = None
    if port is not None:
        server = HealthServer(port=port, status_provider=controller.status)
        server.start()
        server.set_ready(True)
        click.echo(f"[{command}] • status server on port {server.port}")
    try:
        with step_logger(command, f"roll out {reference}"):
            try:
                record = controller.deploy(reference)
            except NoChangeError as exc:
                raise ConflictError(str(exc)) from exc
            except RolloutInProgressError as exc:
                raise ConflictError(
                    f"{exc}; finish it with 'bluegreen resume' or 'bluegreen resume --rollback'"
                ) from exc
    finally:
        if server is not None:
            server.shutdown()
        controller.close()

    click.echo(json.dumps(_summary(record), sort_keys=True))
    if record.outcome is not RolloutOutcome.SUCCEEDED:
        raise RolloutFailedError(
            f"rollout {record.rollout_id} ended {record.state.value}: {record.failure_reason}"
        )
    click.echo(f"[{command}] completed active={record.target_color.value} image={record.image}")


@cli.command()
@click.argument("rollout_id", required=False)
@click.option(
    "--rollback",
    is_flag=True,
    default=False,
    help="Restore the previous release instead of continuing the rollout.",
)
@click.pass_context
def resume(ctx: click.Context, rollout_id: str | None, rollback: bool) -> None:
    """Finish an interrupted rollout (the unfinished one when ROLLOUT_ID is omitted)."""

    command = "resume"
    settings = _load_settings(ctx)
    if rollout_id is None:
        pending = build_store(settings).active(settings.application)
        if pending is None:
            raise CLIError(f"no unfinished rollout for {settings.application}")
        rollout_id = pending.rollout_id

    with step_logger(command, "build controller"):
        controller = build_controller(settings)
    try:
        action = "roll back" if rollback else "continue"
        with step_logger(command, f"{action} {rollout_id}"):
            try:
                record = controller.abort(rollout_id) if rollback else controller.resume(rollout_id)
            except KeyError as exc:
                raise CLIError(f"unknown rollout '{rollout_id}'") from exc
            except RolloutInProgressError as exc:
                raise ConflictError(str(exc)) from exc
    finally:
        controller.close()

    click.echo(json.dumps(_summary(record), sort_keys=True))
    if record.outcome is not RolloutOutcome.SUCCEEDED:
        raise RolloutFailedError(
            f"rollout {record.rollout_id} ended {record.state.value}: {record.failure_reason}"
        )


@cli.command()
@click.option("--rollout-id", default=None, help="Show a specific rollout instead of the latest ones.")
@click.option("--limit", type=click.IntRange(1, 500), default=10, show_default=True)
@click.pass_context
def status(ctx: click.Context, rollout_id: str | None, limit: int) -> None:
    """Print the active release and recent rollouts as JSON."""

    settings = _load_settings(ctx)
    store = build_store(settings)
    if rollout_id is not None:
        record = store.load(rollout_id)
        if record is None:
            raise CLIError(f"unknown rollout '{rollout_id}'")
        click.echo(json.dumps(record.to_dict(), indent=2, sort_keys=True))
        return
    release = store.get_release(settings.application)
    payload = {
        "application": settings.application,
        "entry_point": settings.router.entry_point,
        "active_color": release[0].value if release else settings.active_color,
        "active_image": release[1] if release else settings.active_image,
        "rollouts": [_summary(record) for record in store.history(settings.application, limit=limit)],
    }
    click.echo(json.dumps(payload, indent=2, sort_keys=True))


@cli.command()
@click.option(
    "--output",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the JSON schema to this file instead of stdout.",
)
def schema(output: Path | None) -> None:
    """Emit the JSON schema of the rollout configuration."""

    document = export_settings_schema(output)
    if output is None:
        click.echo(json.dumps(document, indent=2, sort_keys=True))
    else:
        click.echo(f"[schema] • wrote {output}")


def main() -> None:  # pragma: no cover - console script entry point
    cli(obj={})


if __name__ == "__main__":  # pragma: no cover
    main()
