"""
Flight metadata commands.

    delayclaw show-flight AI101 2025-11-02
    delayclaw register-pnr --flight AI101 --date 2025-11-02 --pnr ABC123 --name "A. Traveller"
    delayclaw update-departure --flight AI101 --departure 2025-11-02T10:30:00Z [--settle]

update-departure reads FLIGHT_NUMBER, ACTUAL_DEPARTURE_UNIX /
ACTUAL_DEPARTURE_ISO and FLIGHT_UPDATE_API_KEY when the options are
omitted. Without any departure time it uses the current time.
"""

import sys
from typing import Any, Dict, Optional

import click

from delayclaw.cli._common import (
    EXIT_FAILED,
    EXIT_OK,
    EXIT_USAGE,
    echo_json,
    emit_error,
    format_option,
    get_context,
    get_settings,
    ok,
    row,
    run_guarded,
)
from delayclaw.cli.settle import _finish
from delayclaw.core.time import unix_now
from delayclaw.gateway.service import ServiceResponse


def _respond(response: ServiceResponse, fmt: str) -> None:
    """Print a service response and exit with the matching code."""
    if not response.ok:
        emit_error(response.body.get("error", "failed"), fmt, status=response.status)
        sys.exit(EXIT_USAGE if response.status in (400, 401) else EXIT_FAILED)
    if fmt == "json":
        echo_json(response.body)
    else:
        click.echo()
        for key, value in response.body.items():
            if key == "pnrs":
                continue
            click.echo(row(key, value))
        for pnr in response.body.get("pnrs", []):
            passenger = pnr.get("passenger", {}).get("fullName", "")
            click.echo(row(
                f"PNR {pnr['pnr']}",
                f"policy={pnr.get('policyId')}  {passenger}  "
                f"{pnr.get('payout_status', '')}".rstrip(),
            ))
        click.echo()


@click.command(name="show-flight")
@click.argument("flight_number")
@click.argument("date")
@format_option
@click.pass_context
def show_flight_command(ctx: click.Context, flight_number: str, date: str, fmt: str) -> None:
    """Show the stored record for FLIGHT_NUMBER on DATE."""
    service = run_guarded(fmt, lambda: get_context(ctx, require_signer=False).flight_service())
    _respond(service.get_flight(flight_number, date), fmt)


@click.command(name="register-pnr")
@click.option("--flight", "flight_number", required=True, help="Flight number, e.g. AI101.")
@click.option("--date", required=True, help="Flight date, YYYY-MM-DD.")
@click.option("--departure", default=None, help="Scheduled departure, unix seconds or ISO-8601.")
@click.option("--origin", default=None)
@click.option("--destination", default=None)
@click.option("--pnr", default=None, help="6-character booking reference.")
@click.option("--name", "full_name", default=None, help="Passenger full name.")
@click.option("--seat", default=None)
@click.option("--email", default=None)
@click.option("--policy-id", type=int, default=None, help="Link the PNR to this policy.")
@click.option("--wallet", default=None, help="Policyholder wallet address.")
@click.option("--notes", default=None)
@format_option
@click.pass_context
def register_pnr_command(
    ctx:           click.Context,
    flight_number: str,
    date:          str,
    departure:     Optional[str],
    origin:        Optional[str],
    destination:   Optional[str],
    pnr:           Optional[str],
    full_name:     Optional[str],
    seat:          Optional[str],
    email:         Optional[str],
    policy_id:     Optional[int],
    wallet:        Optional[str],
    notes:         Optional[str],
    fmt:           str,
) -> None:
    """Create or update a flight record, optionally adding a PNR."""
    body: Dict[str, Any] = {
        "flight_number":  flight_number,
        "date":           date,
        "departure_unix": departure,
        "origin":         origin,
        "destination":    destination,
        "pnr":            pnr,
        "policyId":       policy_id,
        "wallet":         wallet,
        "notes":          notes,
    }
    if full_name:
        body["passenger"] = {
            k: v for k, v in {"fullName": full_name, "seat": seat, "email": email}.items() if v
        }
    service = run_guarded(fmt, lambda: get_context(ctx, require_signer=False).flight_service())
    _respond(service.register(body), fmt)


@click.command(name="update-departure")
@click.option("--flight", "flight_number", default=None, help="Flight number. Default: FLIGHT_NUMBER.")
@click.option("--departure", default=None, help="Actual departure, unix seconds or ISO-8601.")
@click.option("--date", default=None, help="Flight date. Default: inferred from the departure time.")
@click.option("--api-key", default=None, help="Update key. Default: FLIGHT_UPDATE_API_KEY.")
@click.option("--settle", "settle_after", is_flag=True, default=False,
              help="Settle the flight's policies right after recording the departure.")
@format_option
@click.pass_context
def update_departure_command(
    ctx:           click.Context,
    flight_number: Optional[str],
    departure:     Optional[str],
    date:          Optional[str],
    api_key:       Optional[str],
    settle_after:  bool,
    fmt:           str,
) -> None:
    """Record a flight's actual departure time and compute its delay."""
    settings      = run_guarded(fmt, get_settings, ctx)
    flight_number = flight_number or settings.flight_number
    departure     = departure or settings.departure_time
    api_key       = api_key or settings.update_api_key
    if not flight_number:
        emit_error("FLIGHT_NUMBER is required", fmt)
        sys.exit(EXIT_USAGE)
    if departure is None:
        departure = unix_now()
        click.echo(f"No departure time provided, using current time {departure}", err=True)

    context = run_guarded(fmt, get_context, ctx, require_signer=settle_after)
    body = {"flight_number": flight_number, "actual_departure_unix": departure}
    if date:
        body["date"] = date
    response = context.flight_service().update_departure(body, api_key)

    if not settle_after or not response.ok:
        _respond(response, fmt)
        sys.exit(EXIT_OK)

    if fmt == "human":
        click.echo(ok(f"\n  {response.body['message']}"))
    report = run_guarded(
        fmt,
        context.orchestrator().settle_flight,
        flight_number,
        response.body["date"],
    )
    _finish([report], fmt)
