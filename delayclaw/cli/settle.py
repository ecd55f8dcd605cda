"""
delayclaw settle / delayclaw watch

    delayclaw settle AI101 2025-11-02            Settle one flight
    delayclaw settle AI101 2025-11-02 --format json
    delayclaw watch                              One sweep over all Active policies
    delayclaw watch --interval 300               Sweep every 5 minutes until interrupted

Exit codes:
    0  every policy reached an expected outcome
    1  at least one policy failed or stayed unresolved
    2  settings, keypair or precondition error
"""

import sys
import time
from typing import List, Optional

import click

from delayclaw.cli._common import (
    EXIT_FAILED,
    EXIT_OK,
    EXIT_USAGE,
    bad,
    echo_json,
    emit_error,
    format_option,
    get_context,
    ok,
    row,
    run_guarded,
    warn,
)
from delayclaw.core.exceptions import ConfigurationError, DelayClawError, ValidationError
from delayclaw.core.time import validate_date
from delayclaw.settlement.engine import FlightSettlementReport, FlightState


def _print_report(report: FlightSettlementReport) -> None:
    click.echo()
    click.echo(row("Flight", f"{report.flight_number}  {report.date}"))
    if report.error:
        click.echo(row("Error", bad(report.error)))
        return

    state = report.state.value if report.state else "unknown"
    painted = ok(state) if report.state is FlightState.SETTLED else warn(state)
    click.echo(row("State", painted))
    if not report.outcomes:
        click.echo(row("Policies", "none linked"))
    for outcome in report.outcomes:
        label  = f"Policy {outcome.policy_id}"
        status = bad(outcome.outcome.value) if outcome.failed else outcome.outcome.value
        detail = f"{status}  {outcome.reason}"
        if outcome.signature:
            detail += f"  tx={outcome.signature}"
        click.echo(row(label, detail))
    if report.write_back_error:
        click.echo(row("Write-back", warn(report.write_back_error)))


def _finish(reports: List[FlightSettlementReport], fmt: str) -> None:
    if fmt == "json":
        echo_json({"reports": [r.to_dict() for r in reports]})
    else:
        for report in reports:
            _print_report(report)
        click.echo()
    sys.exit(EXIT_FAILED if any(r.failed for r in reports) else EXIT_OK)


@click.command(name="settle")
@click.argument("flight_number")
@click.argument("date")
@format_option
@click.pass_context
def settle_command(ctx: click.Context, flight_number: str, date: str, fmt: str) -> None:
    """
    Settle every policy linked to FLIGHT_NUMBER on DATE (YYYY-MM-DD).
    """
    try:
        validate_date(date)
    except ValidationError as exc:
        raise click.BadParameter(exc.message, param_hint="DATE")

    report = run_guarded(
        fmt, lambda: get_context(ctx).orchestrator().settle_flight(flight_number, date)
    )
    _finish([report], fmt)


@click.command(name="watch")
@click.option(
    "--interval",
    type=float,
    default=None,
    metavar="SECONDS",
    help="Repeat the sweep every SECONDS. Default: a single sweep.",
)
@format_option
@click.pass_context
def watch_command(ctx: click.Context, interval: Optional[float], fmt: str) -> None:
    """
    Scan the program for Active policies and settle their flights.
    """
    orchestrator = run_guarded(fmt, lambda: get_context(ctx).orchestrator())

    if interval is None:
        _finish(run_guarded(fmt, orchestrator.watch), fmt)

    while True:
        try:
            reports = orchestrator.watch()
        except ConfigurationError as exc:
            emit_error(str(exc), fmt)
            sys.exit(EXIT_USAGE)
        except DelayClawError as exc:
            emit_error(f"Sweep failed, retrying in {interval:g}s: {exc}", fmt)
        else:
            if fmt == "json":
                echo_json({"reports": [r.to_dict() for r in reports]})
            else:
                for report in reports:
                    _print_report(report)
        time.sleep(interval)
