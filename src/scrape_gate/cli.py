"""Typer CLI for scrape-gate invocations."""

from __future__ import annotations

import json

import typer

from . import __version__
from .config import (
    LEASE_FILENAME,
    config_to_dict,
    init_default_config,
    load_runtime_config,
    resolve_config_path,
    resolve_state_dir,
)
from .diagnostics.events import JsonlEventLogger
from .errors import ConfigError, DiagnosticsError, LeaseError
from .logging import configure_logging
from .scheduler.orchestrator import (
    InvocationResult,
    RunStatus,
    ScheduleStatus,
    format_step_counts,
    inspect_schedule,
    run_configured_invocation,
)
from .store.lease import FileLease

app = typer.Typer(help="Adaptive run scheduler and request throttle for periodic page fetches.")

config_app = typer.Typer(help="Config commands.")
lease_app = typer.Typer(help="Run lease maintenance.")

app.add_typer(config_app, name="config")
app.add_typer(lease_app, name="lease")


@app.command("run")
def run(
    ctx: typer.Context,
    path: str | None = typer.Option(
        None, "--path", help="Optional config TOML path (defaults to platform config dir)."
    ),
    events: str | None = typer.Option(
        None, "--events", help="Append JSONL run events to this file (overrides app.events_path)."
    ),
    deadline: float | None = typer.Option(
        None,
        "--deadline",
        min=0.0,
        help="Abandon the run after this many seconds (overrides run.deadline_seconds; 0 disables).",
    ),
    as_json: bool = typer.Option(False, "--json", help="Render invocation result as JSON."),
) -> None:
    configure_logging(debug=_resolve_debug(ctx))
    try:
        event_logger = JsonlEventLogger(events) if events else None
    except DiagnosticsError as exc:
        typer.secho(f"Run failed: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(int(RunStatus.CONFIG_ERROR)) from exc

    try:
        result = run_configured_invocation(path, deadline_seconds=deadline, event_logger=event_logger)
    except KeyboardInterrupt as exc:
        typer.secho("Run interrupted; state finalized and lease released.", err=True, fg=typer.colors.YELLOW)
        raise typer.Exit(int(RunStatus.RAN_WITH_FAILURE)) from exc

    if result.status is RunStatus.CONFIG_ERROR:
        typer.secho(f"Run failed: {result.error}", err=True, fg=typer.colors.RED)
        raise typer.Exit(int(result.status))

    if as_json:
        typer.echo(json.dumps(_invocation_payload(result), indent=2, sort_keys=True))
    else:
        _echo_invocation(result)
    if result.status is not RunStatus.RAN_SUCCESSFULLY:
        raise typer.Exit(int(result.status))


@app.command("status")
def status(
    path: str | None = typer.Option(
        None, "--path", help="Optional config TOML path (defaults to platform config dir)."
    ),
    as_json: bool = typer.Option(False, "--json", help="Render schedule status as JSON."),
) -> None:
    try:
        config = load_runtime_config(path)
        schedule_status = inspect_schedule(config, config_path=path)
    except (ConfigError, LeaseError) as exc:
        typer.secho(f"Status failed: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(2) from exc

    payload = _status_payload(schedule_status)
    if as_json:
        typer.echo(json.dumps(payload, indent=2, sort_keys=True))
        return

    typer.echo(f"Now: {payload['now']}")
    typer.echo(
        f"Window: {payload['window'] or 'default'} "
        f"(interval {payload['effective_interval_minutes']} min)"
    )
    last_run = payload["last_run"]
    if last_run is None:
        typer.echo(f"Last run: none ({payload['state_error']})")
    else:
        typer.echo(
            f"Last run: {last_run['timestamp']} outcome={last_run['outcome']} "
            f"window={last_run['window'] or 'default'}"
        )
    typer.echo(f"Next eligible: {payload['next_eligible_at'] or 'now'}")
    typer.echo(f"Would run now: {'yes' if payload['would_run'] else 'no'}")
    holder = payload["lease_holder"]
    if holder is None:
        typer.echo("Lease: free")
    else:
        state = "stale" if payload["lease_stale"] else "live"
        typer.echo(f"Lease: held by {holder.get('holder_id') or 'unknown'} ({state})")


@config_app.command("init")
def config_init(
    path: str | None = typer.Option(
        None, "--path", help="Optional config TOML path (defaults to platform config dir)."
    ),
    force: bool = typer.Option(False, "--force", help="Overwrite existing config file."),
) -> None:
    try:
        written_path = init_default_config(path, force=force)
    except ConfigError as exc:
        typer.secho(f"Config init failed: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(2) from exc

    typer.echo(f"Wrote default config to {written_path}")


@config_app.command("show")
def config_show(
    path: str | None = typer.Option(
        None, "--path", help="Optional config TOML path (defaults to platform config dir)."
    ),
    as_json: bool = typer.Option(False, "--json", help="Render resolved config as JSON."),
) -> None:
    resolved_path = resolve_config_path(path)
    try:
        config = load_runtime_config(path)
    except ConfigError as exc:
        typer.secho(f"Config show failed: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(2) from exc

    payload = {
        "path": str(resolved_path),
        "state_dir": str(resolve_state_dir(config, path)),
        "config": config_to_dict(config),
    }
    if as_json:
        typer.echo(json.dumps(payload, indent=2, sort_keys=True))
        return

    typer.echo(f"Resolved config path: {payload['path']}")
    typer.echo(f"State dir: {payload['state_dir']}")
    typer.echo(f"Timezone: {config.app.timezone}")
    typer.echo(f"Default interval: {config.schedule.default_interval_minutes} min")
    for window in config.schedule.windows:
        typer.echo(
            f"- {window.name}: {window.start_time.strftime('%H:%M')}-"
            f"{window.end_time.strftime('%H:%M')} every {window.interval_minutes} min"
        )
    typer.echo(
        f"Throttle: {config.throttle.min_delay_seconds:g}-{config.throttle.max_delay_seconds:g}s"
    )
    typer.echo(f"Fetch targets: {len(config.fetch.urls)}")


@lease_app.command("clear")
def lease_clear(
    path: str | None = typer.Option(
        None, "--path", help="Optional config TOML path (defaults to platform config dir)."
    ),
    force: bool = typer.Option(False, "--force", help="Remove the lease even if its holder looks alive."),
) -> None:
    try:
        config = load_runtime_config(path)
        lease = FileLease(
            resolve_state_dir(config, path) / LEASE_FILENAME,
            stale_after_seconds=config.lease.stale_after_seconds,
        )
        holder = lease.current_holder()
        if holder is None:
            typer.echo(f"No lease at {lease.path}")
            return
        if not force and not lease.is_stale(holder):
            typer.secho(
                f"Lease clear refused: {lease.path} is held by {holder.holder_id or 'unknown'} "
                "with a recent heartbeat. Re-run with --force to remove it anyway.",
                err=True,
                fg=typer.colors.RED,
            )
            raise typer.Exit(1)
        lease.force_release()
    except (ConfigError, LeaseError) as exc:
        typer.secho(f"Lease clear failed: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(2) from exc

    typer.echo(f"Removed lease held by {holder.holder_id or 'unknown'} at {lease.path}")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show scrape-gate version and exit."),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging."),
) -> None:
    ctx.obj = {"debug": debug}
    if version:
        typer.echo(__version__)
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())


def _echo_invocation(result: InvocationResult) -> None:
    window = result.window_name or "default"
    if result.status is RunStatus.SKIPPED:
        if result.skip_reason == "interval":
            typer.echo(
                f"Skipped: window={window} interval={result.effective_interval_minutes}m "
                f"elapsed={result.elapsed_minutes or 0.0:.1f}m wait={result.wait_remaining_minutes or 0.0:.1f}m."
            )
        elif result.skip_reason == "lease_held":
            holder = result.lease_holder.get("holder_id") or "unknown"
            typer.echo(f"Skipped: run lease held by {holder} (window={window}).")
        else:
            typer.echo(f"Skipped: {result.skip_reason or 'unknown'} (window={window}).")
            if result.error:
                typer.secho(f"Lease error: {result.error}", err=True, fg=typer.colors.YELLOW)
        return

    report = result.run
    if report is None:
        return
    typer.echo(
        f"Run {result.run_id}: outcome={report.outcome.value} window={window} "
        f"interval={result.effective_interval_minutes}m duration={report.duration_seconds:.1f}s "
        f"{format_step_counts(report.step_counts)}"
    )
    for step in report.steps:
        code = step.status_code if step.status_code is not None else "-"
        typer.echo(f"- {step.outcome.value} {code} {step.name} {step.detail or ''}".rstrip())
    if report.error:
        typer.echo(f"Error: {report.error}")
    if report.state_error:
        typer.secho(f"State not saved: {report.state_error}", err=True, fg=typer.colors.YELLOW)


def _invocation_payload(result: InvocationResult) -> dict[str, object]:
    report = result.run
    return {
        "status": result.status.name.lower(),
        "exit_code": int(result.status),
        "run_id": result.run_id,
        "started_at": result.started_at.isoformat() if result.started_at else None,
        "window": result.window_name,
        "effective_interval_minutes": result.effective_interval_minutes,
        "skip_reason": result.skip_reason,
        "elapsed_minutes": result.elapsed_minutes,
        "wait_remaining_minutes": result.wait_remaining_minutes,
        "previous_run_at": result.previous_run_at.isoformat() if result.previous_run_at else None,
        "lease_holder": result.lease_holder or None,
        "run": (
            {
                "outcome": report.outcome.value,
                "duration_seconds": report.duration_seconds,
                "step_counts": report.step_counts,
                "error": report.error,
                "state_written": report.state_written,
                "state_error": report.state_error,
                "steps": [
                    {
                        "name": step.name,
                        "outcome": step.outcome.value,
                        "status_code": step.status_code,
                        "detail": step.detail,
                        "payload_bytes": step.payload_bytes,
                    }
                    for step in report.steps
                ],
            }
            if report is not None
            else None
        ),
    }


def _status_payload(schedule_status: ScheduleStatus) -> dict[str, object]:
    last_run = schedule_status.last_run
    return {
        "now": schedule_status.now.isoformat(),
        "window": schedule_status.window_name,
        "effective_interval_minutes": schedule_status.effective_interval_minutes,
        "last_run": (
            {
                "timestamp": last_run.last_run_timestamp.isoformat(),
                "window": last_run.last_window_name,
                "outcome": last_run.last_outcome.value if last_run.last_outcome else None,
                "duration_seconds": last_run.last_duration_seconds,
                "step_counts": last_run.step_counts,
                "run_id": last_run.run_id,
            }
            if last_run is not None
            else None
        ),
        "state_error": schedule_status.state_error,
        "next_eligible_at": (
            schedule_status.next_eligible_at.isoformat() if schedule_status.next_eligible_at else None
        ),
        "would_run": schedule_status.would_run,
        "lease_holder": schedule_status.lease_holder,
        "lease_stale": schedule_status.lease_stale,
    }


def _resolve_debug(ctx: typer.Context | None) -> bool:
    if ctx is None or not isinstance(ctx.obj, dict):
        return False
    return bool(ctx.obj.get("debug", False))
