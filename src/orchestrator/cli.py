"""Account Factory Orchestrator CLI (afo).

Operator tooling around the orchestrator service. The service owns the
state file; commands here only read it, and hand requests to the service
through the requests directory.

Usage:
    afo validate request.yaml        # Schema-check a request file
    afo submit request.yaml          # Check and queue a request file
    afo list --state Failed          # Show requests
    afo events --request-id req-...  # Show a request's history
    afo withdraw req-...             # Withdraw an unfinished request
    afo run                          # Run the orchestrator service
"""

from __future__ import annotations

import json
import shutil
from pathlib import Path

import click

from .errors import RequestNotFoundError
from .events import EventKind, EventLog
from .lifecycle import RequestState
from .main import events_path_for
from .main import run as run_service
from .spec_loader import SpecLoadError, load_request
from .store import RequestStore

STATE_FILE_OPTION = click.option(
    "--state-file",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="STATE_FILE",
    required=True,
    help="Orchestrator state file (env: STATE_FILE).",
)
REQUESTS_DIR_OPTION = click.option(
    "--requests-dir",
    type=click.Path(file_okay=False, exists=True, path_type=Path),
    envvar="REQUESTS_DIR",
    required=True,
    help="Directory watched by the orchestrator (env: REQUESTS_DIR).",
)
JSON_OPTION = click.option("--json", "as_json", is_flag=True, help="Print JSON lines.")


def open_store(state_file: Path) -> RequestStore:
    """Load the state file read-only (an absent file is an empty store)."""
    try:
        return RequestStore.open_readonly(state_file)
    except RuntimeError as e:
        raise click.ClickException(str(e)) from e


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="afo")
def cli() -> None:
    """Account Factory Orchestrator CLI (afo).

    \b
    Quick Start:
        afo validate request.yaml   # Check a request file
        afo submit request.yaml     # Queue it for the orchestrator
        afo list                    # Watch it progress
    """
    pass


@cli.command()
@click.argument("request_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def validate(request_file: Path) -> None:
    """Schema-check REQUEST_FILE without submitting it."""
    try:
        spec = load_request(request_file)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    params = spec.control_tower_parameters
    click.secho(f"✓ {request_file} is a valid account request", fg="green")
    click.echo(f"  Email:          {params.account_email}")
    click.echo(f"  Name:           {params.account_name}")
    click.echo(f"  OU:             {params.managed_organizational_unit}")
    click.echo(f"  Mode:           {spec.mode.value}")
    click.echo(f"  Customizations: {spec.account_customizations_name}")


@cli.command()
@click.argument("request_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@REQUESTS_DIR_OPTION
@STATE_FILE_OPTION
def submit(request_file: Path, requests_dir: Path, state_file: Path) -> None:
    """Check REQUEST_FILE and copy it into the requests directory.

    The email is checked against the current state so that an obvious
    duplicate is caught before the orchestrator records a rejection.
    """
    try:
        spec = load_request(request_file)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    email = spec.control_tower_parameters.account_email
    store = open_store(state_file)
    if store.email_in_use(email):
        raise click.ClickException(f"Account email already in use: {email}")

    target = requests_dir / request_file.name
    if target.exists():
        raise click.ClickException(f"A request file named {target.name} is already queued")

    shutil.copyfile(request_file, target)
    click.secho(f"✓ Queued {request_file.name} for {email}", fg="green")


@cli.command("list")
@STATE_FILE_OPTION
@click.option(
    "--state",
    "states",
    multiple=True,
    type=click.Choice([s.value for s in RequestState]),
    help="Only show requests in this state (repeatable).",
)
@click.option("--email", default=None, help="Only show requests for this account email.")
@JSON_OPTION
def list_requests(
    state_file: Path, states: tuple[str, ...], email: str | None, as_json: bool
) -> None:
    """Show account requests."""
    store = open_store(state_file)
    wanted = [RequestState(s) for s in states] or None
    requests = store.list(states=wanted, email=email)

    if as_json:
        for request in requests:
            click.echo(json.dumps(request.to_dict()))
        return

    if not requests:
        click.echo("No requests found.")
        return

    for request in requests:
        line = (
            f"{request.id}  {request.state.value:<12}  {request.account_email:<32}  "
            f"{request.account_id or '-':<12}"
        )
        if request.failure_reason:
            line += f"  {request.failure_reason}"
        color = {RequestState.MANAGED: "green", RequestState.FAILED: "red"}.get(request.state)
        click.secho(line, fg=color)


@cli.command()
@STATE_FILE_OPTION
@click.option("--request-id", default=None, help="Only show events of this request.")
@click.option("--account-id", default=None, help="Only show events of this account.")
@click.option(
    "--kind",
    type=click.Choice([k.value for k in EventKind]),
    default=None,
    help="Only show events of this kind.",
)
@JSON_OPTION
def events(
    state_file: Path,
    request_id: str | None,
    account_id: str | None,
    kind: str | None,
    as_json: bool,
) -> None:
    """Show the lifecycle event log."""
    path = events_path_for(state_file)
    if path is None or not path.exists():
        click.echo("No events recorded.")
        return

    log = EventLog(path)
    selected = log.events(
        request_id=request_id,
        kind=EventKind(kind) if kind else None,
        account_id=account_id,
    )
    for event in selected:
        if as_json:
            click.echo(json.dumps(event.to_dict()))
            continue
        transition = ""
        if event.to_state is not None:
            start = event.from_state.value if event.from_state else "-"
            transition = f"{start} -> {event.to_state.value}"
        click.echo(
            f"{event.sequence:>5}  {event.timestamp.isoformat()}  {event.request_id}  "
            f"{event.kind.value:<16}  {transition:<28}  {event.detail}"
        )


@cli.command()
@click.argument("request_id")
@STATE_FILE_OPTION
def withdraw(request_id: str, state_file: Path) -> None:
    """Withdraw an unfinished request by removing its request file.

    The orchestrator notices the removal on its next sweep, stops the
    request and marks it Failed with reason "withdrawn".
    """
    store = open_store(state_file)
    try:
        request = store.get(request_id)
    except RequestNotFoundError as e:
        raise click.ClickException(str(e)) from e

    if request.is_terminal:
        raise click.ClickException(f"Request {request_id} is already {request.state.value}")
    if not request.source:
        raise click.ClickException(f"Request {request_id} was not submitted from a file")

    source = Path(request.source)
    if source.exists():
        source.unlink()
    click.secho(f"✓ Withdrawal of {request_id} requested (removed {source.name})", fg="yellow")


@cli.command()
def run() -> None:
    """Run the orchestrator service (configured from the environment)."""
    run_service()


if __name__ == "__main__":
    cli()
