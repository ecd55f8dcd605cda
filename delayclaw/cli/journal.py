"""
delayclaw verify-journal: settlement journal verification.

Exit codes:
    0  journal valid (chain, data hashes, signatures)
    1  journal tampered or corrupted
    2  file missing
"""

import sys
from pathlib import Path

import click

from delayclaw.cli._common import (
    EXIT_FAILED,
    EXIT_OK,
    EXIT_USAGE,
    bad,
    echo_json,
    emit_error,
    format_option,
    ok,
    row,
)
from delayclaw.core.exceptions import JournalError
from delayclaw.settlement.journal import SettlementJournal


@click.command(name="verify-journal")
@click.argument("journal", type=click.Path(exists=False))
@format_option
def verify_journal_command(journal: str, fmt: str) -> None:
    """Verify a settlement JOURNAL file."""
    path = Path(journal)
    if not path.exists():
        emit_error(f"Journal not found: {journal}", fmt)
        sys.exit(EXIT_USAGE)

    try:
        stats = SettlementJournal(path).get_stats()
    except JournalError as exc:
        if fmt == "json":
            echo_json({"journal": str(path), "valid": False, "error": str(exc)})
        else:
            click.echo()
            click.echo(row("Journal", str(path)))
            click.echo(row("Status", bad(f"INVALID  {exc}")))
            click.echo()
        sys.exit(EXIT_FAILED)

    if fmt == "json":
        echo_json({"journal": str(path), "valid": True, **stats})
    else:
        click.echo()
        click.echo(row("Journal", str(path)))
        click.echo(row("Status", ok("valid")))
        click.echo(row("Entries", stats["total_entries"]))
        for entry_type, count in sorted(stats["by_type"].items()):
            click.echo(row(f"  {entry_type}", count))
        click.echo()
    sys.exit(EXIT_OK)
