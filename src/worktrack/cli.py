"""Command-line interface for the tracking daemon."""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

import typer

from .errors import AlreadyRunning, TrackerError
from .models import IssueRelationship, OutcomeType

app = typer.Typer(help="Local activity and work-session tracker.")
session_app = typer.Typer(help="Manage externally identified sessions.")
work_item_app = typer.Typer(help="Register work items.")
app.add_typer(session_app, name="session")
app.add_typer(work_item_app, name="work-item")

_state: dict[str, Any] = {"socket": None}


@app.callback(no_args_is_help=True)
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logs."),
    socket_path: Optional[Path] = typer.Option(
        None, "--socket", path_type=Path, help="Control socket of the daemon."
    ),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    _state["socket"] = socket_path


def _call(command: str, **args: Any) -> None:
    from .client import DaemonClient

    try:
        with DaemonClient(_state["socket"]) as client:
            result = client.call(command, **args)
    except TrackerError as exc:
        typer.echo(f"{exc.kind}: {exc.message}", err=True)
        raise typer.Exit(code=1) from exc
    typer.echo(json.dumps(result, indent=2, sort_keys=True))


@app.command()
def daemon(
    db_path: Optional[Path] = typer.Option(
        None, "--db", path_type=Path, help="Location of the SQLite store."
    ),
    config_path: Optional[Path] = typer.Option(
        None, "--config", path_type=Path, help="TOML file with a [daemon] table."
    ),
    pid_path: Optional[Path] = typer.Option(
        None, "--pid-file", path_type=Path, help="Single-instance marker file."
    ),
    sample_seconds: Optional[float] = typer.Option(
        None, "--interval", min=0.1, help="Sampling interval in seconds."
    ),
    idle_seconds: Optional[float] = typer.Option(
        None, "--idle-threshold", min=1.0, help="Seconds without input before counting as idle."
    ),
    session_timeout: Optional[float] = typer.Option(
        None, "--session-timeout", min=1.0, help="Idle seconds after which a session ends."
    ),
) -> None:
    """Run the tracking daemon in the foreground."""
    from .server_runner import run_daemon

    def _seconds(value: Optional[float]) -> Optional[timedelta]:
        return timedelta(seconds=value) if value is not None else None

    overrides = {
        "sample_interval": _seconds(sample_seconds),
        "idle_threshold": _seconds(idle_seconds),
        "session_timeout": _seconds(session_timeout),
    }
    try:
        run_daemon(
            db_path=db_path,
            socket_path=_state["socket"],
            pid_path=pid_path,
            config_path=config_path,
            overrides=overrides,
        )
    except AlreadyRunning as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from exc
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc


@app.command()
def status() -> None:
    """Show the current session, span and daemon health."""
    _call("status")


@app.command()
def start() -> None:
    """Start tracking (no-op if a session is already active)."""
    _call("start")


@app.command()
def stop(reason: Optional[str] = typer.Option(None, "--reason")) -> None:
    """End the current session and disable auto-start."""
    _call("stop", reason=reason)


@app.command()
def pause() -> None:
    _call("pause")


@app.command()
def resume() -> None:
    _call("resume")


@app.command("work-on")
def work_on(work_item_id: str = typer.Argument(..., help="Registered work item id.")) -> None:
    """Attribute time from now on to a work item."""
    _call("work-on", work_item_id=work_item_id)


@app.command("work-off")
def work_off() -> None:
    _call("work-off")


@app.command()
def shutdown() -> None:
    """Ask the daemon to exit cleanly."""
    _call("shutdown")


@work_item_app.command("add")
def work_item_add(
    issue_id: str,
    system: str = typer.Option("manual", "--system"),
    project: Optional[str] = typer.Option(None, "--project"),
) -> None:
    _call("work-item.add", issue_id=issue_id, system=system, project=project)


@session_app.command("start")
def session_start(
    session_id: str,
    project: Optional[str] = typer.Option(None, "--project"),
) -> None:
    """Start (or confirm) a session with an externally chosen id."""
    _call("session.start", id=session_id, project=project)


@session_app.command("end")
def session_end(
    session_id: str,
    reason: Optional[str] = typer.Option(None, "--reason"),
) -> None:
    _call("session.end", id=session_id, reason=reason)


@session_app.command("link")
def session_link(
    session_id: str,
    issue_id: str,
    system: str = typer.Option("manual", "--system"),
    relationship: IssueRelationship = typer.Option(
        IssueRelationship.WORKED_ON, "--relationship", case_sensitive=False
    ),
) -> None:
    """Link an issue to a session; links only ever escalate."""
    _call(
        "session.link",
        id=session_id,
        issue_id=issue_id,
        system=system,
        relationship=relationship.value,
    )


@session_app.command("outcome")
def session_outcome(
    session_id: str,
    outcome_type: OutcomeType = typer.Argument(..., case_sensitive=False),
    description: str = typer.Argument(...),
    reference: Optional[str] = typer.Option(None, "--ref", help="Commit sha, issue or PR id."),
) -> None:
    """Record an outcome; repeating the same type and reference is a no-op."""
    _call(
        "session.outcome",
        id=session_id,
        type=outcome_type.value,
        description=description,
        reference=reference,
    )
