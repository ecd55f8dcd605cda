"""
delayclaw/cli/__init__.py

DelayClaw CLI: root Click command group.

Registered in pyproject.toml as:

    [project.scripts]
    delayclaw = "delayclaw.cli:cli"

Adding a new command:
    1. Create delayclaw/cli/your_command.py with a @click.command()
    2. Import it here
    3. cli.add_command(your_command)
"""

from typing import Optional

import click

from delayclaw.cli._common import configure_logging
from delayclaw.cli.admin import (
    close_config_command,
    create_products_command,
    deposit_command,
    init_config_command,
    pause_command,
    show_config_command,
    show_policy_command,
    unpause_command,
)
from delayclaw.cli.flight import (
    register_pnr_command,
    show_flight_command,
    update_departure_command,
)
from delayclaw.cli.journal import verify_journal_command
from delayclaw.cli.settle import settle_command, watch_command


@click.group()
@click.version_option(package_name="delayclaw")
@click.option(
    "--settings", "settings_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    envvar="DELAYCLAW_SETTINGS",
    help="YAML settings file. Environment variables override it.",
)
@click.option("-v", "--verbose", count=True, help="-v for info logs, -vv for debug.")
@click.pass_context
def cli(ctx: click.Context, settings_path: Optional[str], verbose: int) -> None:
    """
    DelayClaw: flight-delay insurance settlement.

    \b
    Settlement:
      settle FLIGHT DATE       Settle every policy on one flight
      watch                    Sweep all Active policies

    \b
    Flight metadata:
      show-flight              Show a flight record
      register-pnr             Create/update a flight record and PNR
      update-departure         Record actual departure, compute delay

    \b
    Administration:
      show-config, show-policy, init-config, create-products,
      deposit, pause, unpause, close-config, verify-journal
    """
    configure_logging(verbose)
    obj = ctx.ensure_object(dict)
    obj.setdefault("settings_path", settings_path)


cli.add_command(settle_command)
cli.add_command(watch_command)
cli.add_command(show_flight_command)
cli.add_command(register_pnr_command)
cli.add_command(update_departure_command)
cli.add_command(show_config_command)
cli.add_command(show_policy_command)
cli.add_command(init_config_command)
cli.add_command(create_products_command)
cli.add_command(deposit_command)
cli.add_command(pause_command)
cli.add_command(unpause_command)
cli.add_command(close_config_command)
cli.add_command(verify_journal_command)
