"""
Program administration commands.

    delayclaw show-config
    delayclaw show-policy 42
    delayclaw init-config --usdc-mint <MINT>
    delayclaw create-products catalog.yaml [--update]
    delayclaw deposit 250.00
    delayclaw pause | unpause
    delayclaw close-config

Every write is one transaction signed by ADMIN_KEYPAIR and submitted
with the same bounded retry policy as settlement.
"""

import sys
from typing import List, Optional

import click

from delayclaw.cli._common import (
    EXIT_OK,
    echo_json,
    format_option,
    get_context,
    ok,
    row,
    run_guarded,
    warn,
)
from delayclaw.core.catalog import format_amount, load_product_catalog, parse_amount
from delayclaw.core.exceptions import NotFoundError
from delayclaw.core.models import AccountKind, Config, Policy, Product
from delayclaw.ledger.addresses import as_pubkey, associated_token_address
from delayclaw.runtime.context import SettlementContext

# Oracle program recorded in Config at initialization.
DEFAULT_ORACLE_PROGRAM = "SW1TCH7qEPTdLsDHRgPuMQjbQxKdH2aBStViMFnt64f"


def _fetch(context: SettlementContext, kind: AccountKind, address, label: str):
    raw = context.rpc.get_account_info(address)
    if raw is None:
        raise NotFoundError(f"{label} not found", {"address": str(address)})
    return context.codec.decode(kind, raw)


def _submit(context: SettlementContext, instruction) -> str:
    return context.submitter.submit([instruction], context.signer)


def _config_dict(config: Config, address) -> dict:
    return {
        "address":         str(address),
        "layout":          "legacy" if config.is_legacy else "current",
        "admin":           str(config.admin),
        "usdc_mint":       str(config.usdc_mint),
        "oracle_program":  str(config.oracle_program),
        "risk_pool_vault": str(config.risk_pool_vault) if config.risk_pool_vault else None,
        "paused":          config.paused,
    }


def _policy_dict(policy: Policy, product: Optional[Product]) -> dict:
    out = {
        "id":              policy.id,
        "policyholder":    str(policy.policyholder),
        "product_id":      policy.product_id,
        "flight_number":   policy.flight_number,
        "departure_time":  policy.departure_time,
        "premium_paid":    format_amount(policy.premium_paid),
        "coverage_amount": format_amount(policy.coverage_amount),
        "status":          str(policy.status),
        "created_at":      policy.created_at,
        "paid_at":         policy.paid_at,
    }
    if product is not None:
        out["delay_threshold_minutes"] = product.delay_threshold_minutes
        out["claim_deadline"]          = policy.claim_deadline(product)
    return out


def _print(data: dict, fmt: str) -> None:
    if fmt == "json":
        echo_json(data)
        return
    click.echo()
    for key, value in data.items():
        click.echo(row(key, value))
    click.echo()


# ── Read-only ─────────────────────────────────────────────────────────────────

@click.command(name="show-config")
@format_option
@click.pass_context
def show_config_command(ctx: click.Context, fmt: str) -> None:
    """Show the program Config account."""
    def run() -> dict:
        context = get_context(ctx, require_signer=False)
        address = context.deriver.config().address
        return _config_dict(_fetch(context, AccountKind.CONFIG, address, "Config"), address)

    _print(run_guarded(fmt, run), fmt)


@click.command(name="show-policy")
@click.argument("policy_id", type=int)
@format_option
@click.pass_context
def show_policy_command(ctx: click.Context, policy_id: int, fmt: str) -> None:
    """Show one Policy account and its claim deadline."""
    def run() -> dict:
        context = get_context(ctx, require_signer=False)
        policy  = _fetch(context, AccountKind.POLICY, context.deriver.policy(policy_id).address,
                         f"Policy {policy_id}")
        product_address = context.deriver.product(policy.product_id).address
        raw = context.rpc.get_account_info(product_address)
        product = context.codec.decode(AccountKind.PRODUCT, raw) if raw is not None else None
        return _policy_dict(policy, product)

    _print(run_guarded(fmt, run), fmt)


# ── Writes ────────────────────────────────────────────────────────────────────

@click.command(name="init-config")
@click.option("--usdc-mint", required=True, help="USDC mint address.")
@click.option("--oracle-program", default=DEFAULT_ORACLE_PROGRAM, show_default=True)
@format_option
@click.pass_context
def init_config_command(ctx: click.Context, usdc_mint: str, oracle_program: str, fmt: str) -> None:
    """Create the Config account with the signer as admin."""
    def run() -> dict:
        context = get_context(ctx)
        admin   = context.signer.pubkey
        instruction = context.builder.initialize(
            payer=          admin,
            admin=          admin,
            usdc_mint=      as_pubkey(usdc_mint),
            oracle_program= as_pubkey(oracle_program),
        )
        return {"config": str(context.deriver.config().address), "signature": _submit(context, instruction)}

    _print(run_guarded(fmt, run), fmt)


@click.command(name="create-products")
@click.argument("catalog", type=click.Path(exists=True, dir_okay=False))
@click.option("--update", is_flag=True, default=False,
              help="Update products that already exist instead of skipping them.")
@format_option
@click.pass_context
def create_products_command(ctx: click.Context, catalog: str, update: bool, fmt: str) -> None:
    """Create (or update) every product listed in a YAML CATALOG."""
    def run() -> List[dict]:
        context  = get_context(ctx)
        products = load_product_catalog(catalog)
        config_address = context.deriver.config().address
        if context.rpc.get_account_info(config_address) is None:
            raise NotFoundError("Config not initialized; run init-config first")

        results = []
        for product in products:
            exists = context.rpc.get_account_info(
                context.deriver.product(product.id).address
            ) is not None
            if exists and not update:
                results.append({"id": product.id, "label": product.label, "action": "skipped"})
                continue
            build = context.builder.update_product if exists else context.builder.create_product
            instruction = build(
                context.signer.pubkey,
                product.id,
                delay_threshold_minutes= product.delay_threshold_minutes,
                coverage_amount=         product.coverage_amount,
                premium_rate_bps=        product.premium_rate_bps,
                claim_window_hours=      product.claim_window_hours,
            )
            results.append({
                "id":        product.id,
                "label":     product.label,
                "action":    "updated" if exists else "created",
                "signature": _submit(context, instruction),
            })
        return results

    results = run_guarded(fmt, run)
    if fmt == "json":
        echo_json({"products": results})
    else:
        click.echo()
        for result in results:
            action = warn(result["action"]) if result["action"] == "skipped" else ok(result["action"])
            click.echo(row(f"Product {result['id']}", f"{action}  {result['label']}"))
        click.echo()
    sys.exit(EXIT_OK)


@click.command(name="deposit")
@click.argument("amount")
@format_option
@click.pass_context
def deposit_command(ctx: click.Context, amount: str, fmt: str) -> None:
    """Deposit AMOUNT USDC from the signer into the risk pool."""
    def run() -> dict:
        units   = parse_amount(amount)
        context = get_context(ctx)
        config  = _fetch(context, AccountKind.CONFIG, context.deriver.config().address, "Config")
        vault   = context.orchestrator().resolve_vault(config)
        user    = context.signer.pubkey
        instruction = context.builder.deposit_liquidity(
            user=              user,
            user_usdc_account= associated_token_address(user, config.usdc_mint),
            risk_pool_vault=   vault,
            amount=            units,
        )
        return {
            "amount":          format_amount(units),
            "risk_pool_vault": str(vault),
            "signature":       _submit(context, instruction),
        }

    _print(run_guarded(fmt, run), fmt)


def _set_pause(ctx: click.Context, paused: bool, fmt: str) -> None:
    def run() -> dict:
        context = get_context(ctx)
        instruction = context.builder.set_pause_status(context.signer.pubkey, paused)
        return {"paused": paused, "signature": _submit(context, instruction)}

    _print(run_guarded(fmt, run), fmt)


@click.command(name="pause")
@format_option
@click.pass_context
def pause_command(ctx: click.Context, fmt: str) -> None:
    """Pause the program. Payouts are deferred while paused."""
    _set_pause(ctx, True, fmt)


@click.command(name="unpause")
@format_option
@click.pass_context
def unpause_command(ctx: click.Context, fmt: str) -> None:
    """Resume the program."""
    _set_pause(ctx, False, fmt)


@click.command(name="close-config")
@click.confirmation_option(prompt="Close the Config account? It must be re-initialized afterwards.")
@format_option
@click.pass_context
def close_config_command(ctx: click.Context, fmt: str) -> None:
    """Close the Config account, e.g. to migrate off the legacy layout."""
    def run() -> dict:
        context = get_context(ctx)
        instruction = context.builder.close_config(context.signer.pubkey)
        return {"closed": str(context.deriver.config().address), "signature": _submit(context, instruction)}

    _print(run_guarded(fmt, run), fmt)
