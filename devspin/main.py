"""
devspin — CLI entrypoint.

Usage:
    devspin start [PATH] [--dry-run] [--only a,b] [--skip a,b] [--env FILE]
    devspin stop NAME
    devspin status [NAME]
    devspin list
"""

from __future__ import annotations

import json
import sys
import threading
from pathlib import Path

import click

from devspin import __version__
from devspin.core.observability import logging_config


def _split(value: str | None) -> list[str] | None:
    if value is None:
        return None
    return [part.strip() for part in value.split(",") if part.strip()]


def _fail(message: str) -> None:
    click.echo(f"error: {message}", err=True)
    sys.exit(1)


def _orchestrator(ctx: click.Context):
    from devspin.core.engine.controller import get_orchestrator

    orch = ctx.obj.get("orchestrator")
    if orch is None:
        orch = ctx.obj["orchestrator"] = get_orchestrator()
    return orch


@click.group()
@click.version_option(version=__version__, prog_name="devspin")
@click.option("--verbose", "-v", is_flag=True, help="Log lifecycle transitions.")
@click.option("--quiet", "-q", is_flag=True, help="Only log errors.")
@click.option("--debug", is_flag=True, help="Log every probe attempt.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, quiet: bool, debug: bool) -> None:
    """devspin — start, supervise and stop a project's dev services."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose

    # ── Logging setup (once, at process start) ──────────────────
    logging_config.configure(debug=debug, verbose=verbose, quiet=quiet)


@cli.command()
@click.argument("target", required=False)
@click.option("--dry-run", is_flag=True, help="Print the start plan without starting anything.")
@click.option("--only", default=None, help="Comma-separated services to start (plus their dependencies).")
@click.option("--skip", default=None, help="Comma-separated services to leave out.")
@click.option(
    "--env", "env_file", default=None,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Env file to use instead of the project's env_file.",
)
@click.option("--foreground", "-f", is_flag=True, help="Keep supervising until Ctrl-C, then stop.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def start(
    ctx: click.Context,
    target: str | None,
    dry_run: bool,
    only: str | None,
    skip: str | None,
    env_file: Path | None,
    foreground: bool,
    as_json: bool,
) -> None:
    """Start a project.

    TARGET is a devspin.yaml file, a directory holding one, or the name
    of a previously started project. Defaults to searching upward from
    the current directory.

    Examples:

        devspin start

        devspin start ./shop --only api

        devspin start --dry-run --skip frontend

        devspin start --env .env.staging
    """
    from devspin.core.config.loader import load_project, locate_project
    from devspin.core.engine.reports import StartOptions
    from devspin.core.errors import DevspinError

    orch = _orchestrator(ctx)
    verbose = ctx.obj.get("verbose", False)

    try:
        project = load_project(locate_project(_known_project_dir(orch, target)))
    except DevspinError as e:
        _fail(e.cause)
        return
    if env_file is not None:
        project.env_file = str(env_file.resolve())

    report = orch.start_project(
        project,
        StartOptions(dry_run=dry_run, only=_split(only), skip=_split(skip), verbose=verbose),
    )

    if as_json:
        click.echo(json.dumps(report.to_dict(verbose=verbose), indent=2))
    else:
        _print_start(report)

    if not report.ok:
        sys.exit(1)

    if foreground and not dry_run:
        _run_foreground(orch, project.name, as_json)


def _known_project_dir(orch, target: str | None) -> str | Path | None:
    """Map a project name with a stored run record to its directory."""
    if target is None or Path(target).exists():
        return target
    from devspin.core.errors import DevspinError

    try:
        record = orch.store.load(target)
    except DevspinError:
        return target
    return record.config_path or target


def _print_start(report) -> None:
    label = "[dry-run] " if report.dry_run else ""
    click.echo(f"{label}{report.project}: {report.status}")
    for index, stage in enumerate(report.stages):
        click.echo(f"  stage {index}: {', '.join(stage)}")
    for service, ports in report.planned_ports.items():
        click.echo(f"  {service} ports: {', '.join(str(p) for p in ports)}")

    if report.failure:
        f = report.failure
        click.echo(f"  failed: {f['service'] or '-'} at {f['stage']}: {f['cause']}")
        for action in report.rollback:
            click.echo(f"  rollback: {action}")
        if report.unattempted:
            click.echo(f"  not attempted: {', '.join(report.unattempted)}")
    for warning in report.warnings:
        click.echo(f"  warning: {warning}")


def _run_foreground(orch, name: str, as_json: bool) -> None:
    click.echo(f"Supervising {name}; press Ctrl-C to stop.")
    done = threading.Event()
    try:
        crashed = orch.supervise(name, done)
        for state in crashed:
            click.echo(f"  {state.service} crashed (exit code {state.exit_code})")
    except KeyboardInterrupt:
        done.set()
    report = orch.stop_project(name)
    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        _print_stop(report)
    if not report.ok:
        sys.exit(1)


@cli.command()
@click.argument("name")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def stop(ctx: click.Context, name: str, as_json: bool) -> None:
    """Stop a running project, dependents first."""
    report = _orchestrator(ctx).stop_project(name)

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        _print_stop(report)

    if not report.ok:
        sys.exit(1)


def _print_stop(report) -> None:
    if report.error:
        click.echo(f"{report.project}: {report.error['cause']}")
        return
    click.echo(f"{report.project}: {report.status}")
    for line in report.stopped:
        click.echo(f"  {line}")
    for failure in report.failed:
        click.echo(f"  could not stop {failure['service']}: {failure['cause']}")
    if report.released_ports:
        click.echo(f"  released ports: {', '.join(str(p) for p in report.released_ports)}")
    for warning in report.warnings:
        click.echo(f"  warning: {warning}")


@cli.command()
@click.argument("name", required=False)
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(ctx: click.Context, name: str | None, as_json: bool) -> None:
    """Show what is running (one project, or all of them)."""
    from devspin.core.errors import DevspinError
    from devspin.core.observability.health import summarize

    try:
        result = _orchestrator(ctx).status(name)
    except DevspinError as e:
        _fail(e.cause)
        return

    records = result if isinstance(result, list) else [result]

    if as_json:
        payload = [
            {"record": r.model_dump(mode="json"), "health": summarize(r).to_dict()}
            for r in records
        ]
        click.echo(json.dumps(payload if name is None else payload[0], indent=2))
        return

    if not records:
        click.echo("No projects running.")
        return

    for record in records:
        health = summarize(record)
        click.echo(f"{record.project} ({record.phase}): {health.status}")
        for svc in health.services:
            pid = svc.details.get("pid")
            pid_label = f" pid {pid}" if pid else ""
            click.echo(f"  {svc.name}: {svc.details['state']}{pid_label}  {svc.message}")
            rec = record.services[svc.name]
            if rec.leases:
                click.echo(f"    ports: {', '.join(str(l.value) for l in rec.leases)}")


@cli.command("list")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def list_cmd(ctx: click.Context, as_json: bool) -> None:
    """List projects with a run record."""
    names = _orchestrator(ctx).list_projects()

    if as_json:
        click.echo(json.dumps(names))
        return
    for name in names:
        click.echo(name)


if __name__ == "__main__":
    cli()
