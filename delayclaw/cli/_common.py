"""
delayclaw/cli/_common.py

Shared plumbing for CLI commands: settings and context loading, output
formatting, error emission.

Exit codes (shell-scriptable):
    0  success
    1  operation rejected, or at least one policy failed
    2  usage or configuration error (bad settings, missing keypair, ...)
"""

import json
import logging
import sys
from typing import Any, Optional

import click

from delayclaw.core.exceptions import ConfigurationError, DelayClawError
from delayclaw.core.settings import Settings
from delayclaw.runtime.context import SettlementContext

EXIT_OK     = 0
EXIT_FAILED = 1
EXIT_USAGE  = 2

format_option = click.option(
    "--format", "fmt",
    type=click.Choice(["human", "json"], case_sensitive=False),
    default="human",
    show_default=True,
    help="Output format: human (default) or json (automation).",
)


# ── ANSI color ────────────────────────────────────────────────────────────────

class _Color:
    """Auto-disables when stdout is not a TTY."""

    @staticmethod
    def _on() -> bool:
        return sys.stdout.isatty()

    @classmethod
    def green(cls, s: str) -> str:
        return f"\033[32m{s}\033[0m" if cls._on() else s

    @classmethod
    def red(cls, s: str) -> str:
        return f"\033[31m{s}\033[0m" if cls._on() else s

    @classmethod
    def yellow(cls, s: str) -> str:
        return f"\033[33m{s}\033[0m" if cls._on() else s

    @classmethod
    def dim(cls, s: str) -> str:
        return f"\033[2m{s}\033[0m" if cls._on() else s


def row(label: str, value: Any) -> str:
    return f"  {_Color.dim(f'{label:<18}')}  {value}"


# ── Logging ───────────────────────────────────────────────────────────────────

def configure_logging(verbose: int) -> None:
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(
        level=  level,
        format= "%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        stream= sys.stderr,
    )


# ── Settings / context ────────────────────────────────────────────────────────

def get_settings(ctx: click.Context) -> Settings:
    obj = ctx.ensure_object(dict)
    if "settings" not in obj and obj.get("context") is not None:
        obj["settings"] = obj["context"].settings
    if "settings" not in obj:
        path = obj.get("settings_path")
        obj["settings"] = Settings.from_yaml(path) if path else Settings.from_env()
    return obj["settings"]


def get_context(ctx: click.Context, require_signer: bool = True) -> SettlementContext:
    """Context for this invocation. Tests inject one through obj['context']."""
    obj = ctx.ensure_object(dict)
    context = obj.get("context")
    if context is None:
        context = SettlementContext.from_settings(
            get_settings(ctx), require_signer=require_signer
        )
        obj["context"] = context
        ctx.call_on_close(context.close)
    elif require_signer and context.signer is None:
        raise ConfigurationError("This command requires an admin keypair (ADMIN_KEYPAIR)")
    return context


def run_guarded(fmt: str, func, *args, **kwargs):
    """
    Call func, mapping setup failures onto exit code 2 and other
    DelayClaw errors onto exit code 1.
    """
    try:
        return func(*args, **kwargs)
    except (ConfigurationError, FileNotFoundError) as exc:
        emit_error(str(exc), fmt)
        sys.exit(EXIT_USAGE)
    except ValueError as exc:
        # Unreadable keypair files surface as ValueError.
        emit_error(str(exc), fmt)
        sys.exit(EXIT_USAGE)
    except DelayClawError as exc:
        emit_error(str(exc), fmt)
        sys.exit(EXIT_FAILED)


# ── Output ────────────────────────────────────────────────────────────────────

def echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def emit_error(msg: str, fmt: str, status: Optional[int] = None) -> None:
    """Emit error in the correct format. Never raises."""
    if fmt == "json":
        payload = {"error": msg}
        if status is not None:
            payload["status"] = status
        click.echo(json.dumps(payload))
    else:
        click.echo(_Color.red(f"\n  ERROR: {msg}\n"), err=True)


def ok(msg: str) -> str:
    return _Color.green(msg)


def warn(msg: str) -> str:
    return _Color.yellow(msg)


def bad(msg: str) -> str:
    return _Color.red(msg)
