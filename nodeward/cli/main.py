"""
Command-line interface for nodeward.

Usage:
    nodeward provision            Run (or resume) the provisioning steps
    nodeward markers list         Show completed steps
    nodeward markers clear STEP   Re-enable one step
    nodeward check                Health check with optional remediation
    nodeward stop                 Stop the service and stray processes
    nodeward unit                 Print the rendered unit descriptor
    nodeward logs                 Show recent audit entries

Exit codes: 0 healthy/success, 2 unhealthy, 1 usage or configuration error.
"""

import json
import sys
import time
from pathlib import Path
from typing import Optional

import click
import httpx
from pydantic import ValidationError

from nodeward import __version__
from nodeward.core.audit import AuditLogger, read_entries
from nodeward.core.config import NodewardConfig, load_config
from nodeward.core.errors import ConfigError, FatalRunError, StepExecutionError
from nodeward.core.shell import CommandRunner
from nodeward.health.probe import HealthProbe, HealthSample
from nodeward.health.remediation import EXIT_UNHEALTHY, RemediationController, RemediationDecision
from nodeward.provision.markers import MarkerStore
from nodeward.provision.orchestrator import build_orchestrator
from nodeward.provision.steps import Step
from nodeward.supervisor.systemd import SystemdSupervisor, find_processes, terminate_processes
from nodeward.supervisor.unit import UnitDescriptor


class NodewardGroup(click.Group):
    """click group whose usage errors exit 1 (2 is reserved for "unhealthy")."""

    def main(self, *args, **kwargs):
        if kwargs.pop("standalone_mode", True) is False:
            return super().main(*args, standalone_mode=False, **kwargs)
        try:
            result = super().main(*args, standalone_mode=False, **kwargs)
        except click.ClickException as e:
            e.show()
            sys.exit(1)
        except click.Abort:
            click.echo("Aborted!", err=True)
            sys.exit(1)
        sys.exit(result if isinstance(result, int) else 0)


def _load_config_or_exit(config_path: Optional[Path]) -> NodewardConfig:
    """Load config with user-friendly Pydantic validation errors."""
    try:
        return load_config(config_path)
    except ValidationError as e:
        click.echo("Configuration errors:", err=True)
        for error in e.errors():
            loc = " -> ".join(str(x) for x in error["loc"])
            click.echo(f"  {loc}: {error['msg']}", err=True)
        raise SystemExit(1)
    except (ConfigError, FileNotFoundError) as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    except (OSError, ValueError) as e:
        click.echo(f"Error: cannot read configuration: {e}", err=True)
        raise SystemExit(1)


def _runner(ctx, cfg: NodewardConfig) -> CommandRunner:
    return ctx.obj.get("runner") or CommandRunner(default_timeout=cfg.steps.timeout)


def _supervisor(ctx, cfg: NodewardConfig, runner: CommandRunner, audit: Optional[AuditLogger] = None):
    return ctx.obj.get("supervisor") or SystemdSupervisor(cfg.service.unit_name, runner, audit=audit)


def _resume_command(config: Optional[str]) -> str:
    return f"nodeward provision --config {config}" if config else "nodeward provision"


def _print_sample(sample: HealthSample) -> None:
    click.echo(f"Health: {sample.label} (score {sample.score}/3)")
    for name, value in sample.signals.items():
        mark = "ok" if value else "FAIL"
        reason = sample.reasons.get(name)
        click.echo(f"  {name:<18} {mark}" + (f"  ({reason})" if reason else ""))


@click.group(cls=NodewardGroup)
@click.version_option(version=__version__)
@click.pass_context
def cli(ctx):
    """nodeward - provision and supervise a node service."""
    ctx.ensure_object(dict)


# ----------------------------------------------------------------------
# provision
# ----------------------------------------------------------------------


@cli.command()
@click.option("--config", "-c", type=click.Path(), help="Config file path")
@click.pass_context
def provision(ctx, config: str):
    """Run pending provisioning steps in order."""
    config_path = Path(config) if config else None
    cfg = _load_config_or_exit(config_path)

    def on_step(event: str, step: Step) -> None:
        if event == "skip":
            click.echo(f"{step.label} already done, skipping")
        elif event == "start":
            click.echo(f"{step.label} running...")
        elif event == "complete":
            click.echo(f"{step.label} done")
        elif event == "failed":
            click.echo(f"{step.label} FAILED", err=True)

    runner = _runner(ctx, cfg)
    audit = AuditLogger(cfg.run_log_path, retention_days=cfg.audit.retention_days)
    orchestrator = build_orchestrator(
        cfg,
        runner=runner,
        supervisor=_supervisor(ctx, cfg, runner, audit),
        source=ctx.obj.get("source"),
        audit=audit,
        on_step=on_step,
        sleep=ctx.obj.get("sleep") or time.sleep,
    )

    click.echo(f"Provisioning {len(cfg.steps.order)} steps (state: {cfg.state_dir})")
    report = orchestrator.run()

    click.echo()
    if report.ok:
        click.echo(f"Provisioning complete: {len(report.executed)} executed, {len(report.skipped)} skipped.")
        return

    error = report.error
    click.echo(f"Provisioning halted: {error}", err=True)
    if isinstance(error, StepExecutionError) and error.output_tail:
        click.echo("Last output:", err=True)
        for line in error.output_tail.splitlines():
            click.echo(f"  {line}", err=True)
    if isinstance(error, FatalRunError):
        click.echo(f"Logs: {cfg.run_log_path}", err=True)
        click.echo(f"Completed steps are kept; resume with: {_resume_command(config)}", err=True)
    raise SystemExit(1)


# ----------------------------------------------------------------------
# markers
# ----------------------------------------------------------------------


@cli.group()
def markers():
    """Inspect or reset step completion markers."""


@markers.command("list")
@click.option("--config", "-c", type=click.Path(), help="Config file path")
def markers_list(config: str):
    """Show each configured step and whether it is done."""
    cfg = _load_config_or_exit(Path(config) if config else None)
    store = MarkerStore(cfg.markers_dir)

    for i, step_id in enumerate(cfg.steps.order, start=1):
        info = store.get(step_id)
        if info:
            when = info.completed_at or "unknown time"
            click.echo(f"[{i:02d}] {step_id:<20} done  {when}")
        else:
            click.echo(f"[{i:02d}] {step_id:<20} pending")

    extra = [m for m in store.list() if m.step_id not in cfg.steps.order]
    for info in extra:
        click.echo(f"     {info.step_id:<20} done  (not in step order)")


@markers.command("clear")
@click.argument("step")
@click.option("--config", "-c", type=click.Path(), help="Config file path")
def markers_clear(step: str, config: str):
    """Delete the marker of STEP so the next provision run re-executes it."""
    cfg = _load_config_or_exit(Path(config) if config else None)
    store = MarkerStore(cfg.markers_dir)

    try:
        removed = store.clear(step)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    if removed:
        click.echo(f"Cleared marker for '{step}'; it will run on the next provision.")
    else:
        click.echo(f"No marker for '{step}'.")


# ----------------------------------------------------------------------
# check / stop
# ----------------------------------------------------------------------


@cli.command()
@click.option("--config", "-c", type=click.Path(), help="Config file path")
@click.option("--status", "show_status", is_flag=True, help="Show supervisor status")
@click.option("--logs", "log_lines", type=click.IntRange(min=1), help="Show the last N service log lines")
@click.option("--health", "run_health", is_flag=True, help="Sample health (default when no other option)")
@click.option("--autorestart", is_flag=True, help="Restart once when unhealthy and verify")
@click.option("--restart", "force_restart", is_flag=True, help="Restart now and verify")
@click.pass_context
def check(
    ctx,
    config: str,
    show_status: bool,
    log_lines: Optional[int],
    run_health: bool,
    autorestart: bool,
    force_restart: bool,
):
    """Check the service; exit 0 healthy, 2 unhealthy."""
    cfg = _load_config_or_exit(Path(config) if config else None)
    runner = _runner(ctx, cfg)
    health_audit = AuditLogger(cfg.health_log_path, retention_days=cfg.audit.retention_days)
    supervisor = _supervisor(ctx, cfg, runner, health_audit)

    if show_status:
        click.echo(supervisor.status_text())
        click.echo()

    if log_lines:
        click.echo(supervisor.logs(log_lines))
        click.echo()

    informational_only = (show_status or log_lines) and not (run_health or autorestart or force_restart)
    if informational_only:
        return

    http_client = ctx.obj.get("http_client")
    owns_client = http_client is None
    if owns_client:
        http_client = httpx.Client(timeout=cfg.health.timeout)

    try:
        probe = HealthProbe(
            supervisor,
            runner=runner,
            url=cfg.health.url,
            http_client=http_client,
            process_pattern=cfg.service.process_pattern,
            fallback_paths=cfg.health.fallback_paths,
            threshold=cfg.health.threshold,
            audit=health_audit,
        )
        controller = RemediationController(
            supervisor,
            probe,
            settle_seconds=cfg.health.settle_seconds,
            verify_timeout=cfg.health.verify_timeout,
            poll_interval=cfg.health.poll_interval,
            sleep=ctx.obj.get("sleep") or time.sleep,
            audit=health_audit,
        )

        sample = probe.sample()
        _print_sample(sample)

        if force_restart:
            decision = RemediationDecision.RESTART
        else:
            decision = controller.evaluate(sample, auto_remediate=autorestart)

        if decision is RemediationDecision.RESTART:
            click.echo(f"Restarting {supervisor.unit_name}...")
        outcome = controller.apply(decision, sample)
    finally:
        if owns_client:
            http_client.close()

    if outcome.resample is not None:
        _print_sample(outcome.resample)
    click.echo(outcome.detail)
    if outcome.exit_code != 0:
        click.echo(f"Health log: {cfg.health_log_path}", err=True)
    raise SystemExit(outcome.exit_code)


@cli.command()
@click.option("--config", "-c", type=click.Path(), help="Config file path")
@click.option("--wait", "wait_seconds", type=click.IntRange(min=0), default=20, help="Seconds to wait for exit")
@click.pass_context
def stop(ctx, config: str, wait_seconds: int):
    """Stop the service and kill stray node processes."""
    cfg = _load_config_or_exit(Path(config) if config else None)
    runner = _runner(ctx, cfg)
    audit = AuditLogger(cfg.run_log_path, retention_days=cfg.audit.retention_days)
    supervisor = _supervisor(ctx, cfg, runner, audit)
    sleep = ctx.obj.get("sleep") or time.sleep

    click.echo(f"Stopping {supervisor.unit_name}...")
    result = supervisor.stop()
    if not result.ok:
        click.echo(f"  stop returned {result.returncode}; continuing")

    stopped = supervisor.wait_stopped(wait_seconds, sleep=sleep)
    if not stopped:
        click.echo(f"  main process still present after {wait_seconds}s")

    strays = find_processes(cfg.service.process_pattern, runner)
    if strays:
        click.echo(f"  stray processes: {', '.join(str(p) for p in strays)}")
        kill = ctx.obj.get("kill")
        forced = terminate_processes(strays, sleep=sleep, **({"kill": kill} if kill else {}))
        for pid in forced:
            click.echo(f"  pid {pid} did not exit on SIGTERM; killed")
        audit.log("service", "stop", {"strays": strays, "forced": forced})

    if not stopped:
        raise SystemExit(EXIT_UNHEALTHY)
    click.echo("Stopped.")
    click.echo(f"To start again: systemctl enable --now {supervisor.unit_name}")


# ----------------------------------------------------------------------
# unit / logs
# ----------------------------------------------------------------------


@cli.command()
@click.option("--config", "-c", type=click.Path(), help="Config file path")
def unit(config: str):
    """Print the unit descriptor that provisioning writes."""
    cfg = _load_config_or_exit(Path(config) if config else None)
    try:
        descriptor = UnitDescriptor.from_config(cfg.service)
    except ValidationError as e:
        click.echo(f"Error: invalid unit descriptor: {e}", err=True)
        raise SystemExit(1)
    click.echo(descriptor.render(), nl=False)


@cli.command()
@click.option("--config", "-c", type=click.Path(), help="Config file path")
@click.option("--health", "health_log", is_flag=True, help="Read the health log instead of the run log")
@click.option("--category", help="Only entries of this category")
@click.option("--limit", "-n", type=click.IntRange(min=1), default=20, help="Maximum entries")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON lines")
@click.option("--prune", is_flag=True, help="Drop entries older than audit.retention_days from both logs")
def logs(config: str, health_log: bool, category: Optional[str], limit: int, as_json: bool, prune: bool):
    """Show recent audit entries, newest first."""
    cfg = _load_config_or_exit(Path(config) if config else None)

    if prune:
        if cfg.audit.retention_days == 0:
            click.echo("Retention is disabled (audit.retention_days: 0); nothing pruned.")
            return
        for log_path in (cfg.run_log_path, cfg.health_log_path):
            removed = AuditLogger(log_path, retention_days=cfg.audit.retention_days).prune()
            click.echo(f"Pruned {removed} entries from {log_path}")
        return

    path = cfg.health_log_path if health_log else cfg.run_log_path

    entries = read_entries(path, category=category, limit=limit)
    if not entries:
        click.echo(f"No entries in {path}")
        return

    for entry in entries:
        if as_json:
            click.echo(json.dumps(entry, default=str))
            continue
        details = entry.get("details") or {}
        summary = ", ".join(f"{k}={v}" for k, v in details.items() if not isinstance(v, (dict, list)))
        click.echo(f"{entry.get('ts', '?')}  {entry.get('category')}/{entry.get('action')}  {summary}")


if __name__ == "__main__":
    cli()
