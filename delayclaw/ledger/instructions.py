"""
Instruction envelopes for the insurance program.

Each builder returns a solders Instruction with the account list in the
exact order the program declares it. Builders never touch the network;
every address they need is either passed in or derived.
"""

from typing import List, Optional, Union

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from delayclaw.core.exceptions import AddressError, ValidationError
from delayclaw.ledger.addresses import (
    SYSTEM_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    AddressDeriver,
    as_pubkey,
)
from delayclaw.ledger.codec import AccountCodec


def _meta(pubkey: Pubkey, signer: bool = False, writable: bool = False) -> AccountMeta:
    return AccountMeta(pubkey=pubkey, is_signer=signer, is_writable=writable)


def _require(name: str, value: Optional[Union[Pubkey, str]]) -> Pubkey:
    if value is None:
        raise ValidationError(f"{name} is required")
    try:
        return as_pubkey(value)
    except AddressError as exc:
        raise ValidationError(f"{name} is not a valid address", {"value": value}) from exc


class InstructionBuilder:
    """
    Builds program instructions.

    Usage:
        builder = InstructionBuilder(deriver)
        ix = builder.process_payout(policy_id=42, delay_minutes=90, ...)
    """

    def __init__(self, deriver: AddressDeriver, codec: Optional[AccountCodec] = None):
        self.deriver = deriver
        self.codec   = codec or AccountCodec()

    @property
    def program_id(self) -> Pubkey:
        return self.deriver.program_id

    def _instruction(self, name: str, args: dict, accounts: List[AccountMeta]) -> Instruction:
        return Instruction(
            program_id= self.program_id,
            data=       self.codec.encode(name, args),
            accounts=   accounts,
        )

    # ── Admin ─────────────────────────────────────────────────

    def initialize(
        self,
        payer:          Pubkey,
        admin:          Pubkey,
        usdc_mint:      Pubkey,
        oracle_program: Pubkey,
    ) -> Instruction:
        payer = _require("payer", payer)
        return self._instruction(
            "initialize",
            {
                "admin":          _require("admin", admin),
                "usdc_mint":      _require("usdc_mint", usdc_mint),
                "oracle_program": _require("oracle_program", oracle_program),
            },
            [
                _meta(self.deriver.config().address, writable=True),
                _meta(payer, signer=True, writable=True),
                _meta(SYSTEM_PROGRAM_ID),
            ],
        )

    def _product_terms(
        self,
        name:                    str,
        admin:                   Pubkey,
        product_id:              int,
        delay_threshold_minutes: int,
        coverage_amount:         int,
        premium_rate_bps:        int,
        claim_window_hours:      int,
    ) -> Instruction:
        admin = _require("admin", admin)
        if premium_rate_bps > 10_000:
            raise ValidationError(
                "premium_rate_bps cannot exceed 10000", {"value": premium_rate_bps}
            )
        try:
            product = self.deriver.product(product_id).address
        except AddressError as exc:
            raise ValidationError(str(exc)) from exc
        return self._instruction(
            name,
            {
                "id":                      product_id,
                "delay_threshold_minutes": delay_threshold_minutes,
                "coverage_amount":         coverage_amount,
                "premium_rate_bps":        premium_rate_bps,
                "claim_window_hours":      claim_window_hours,
            },
            [
                _meta(self.deriver.config().address, writable=True),
                _meta(product, writable=True),
                _meta(admin, signer=True, writable=True),
                _meta(SYSTEM_PROGRAM_ID),
            ],
        )

    def create_product(self, admin: Pubkey, product_id: int, **terms) -> Instruction:
        """terms: delay_threshold_minutes, coverage_amount, premium_rate_bps, claim_window_hours"""
        return self._product_terms("create_product", admin, product_id, **terms)

    def update_product(self, admin: Pubkey, product_id: int, **terms) -> Instruction:
        return self._product_terms("update_product", admin, product_id, **terms)

    def set_pause_status(self, admin: Pubkey, paused: bool) -> Instruction:
        return self._instruction(
            "set_pause_status",
            {"paused": paused},
            [
                _meta(self.deriver.config().address, writable=True),
                _meta(_require("admin", admin), signer=True, writable=True),
            ],
        )

    def close_config(self, admin: Pubkey) -> Instruction:
        """Close the Config account so it can be re-created in the current layout."""
        return self._instruction(
            "close_config",
            {},
            [
                _meta(self.deriver.config().address, writable=True),
                _meta(_require("admin", admin), signer=True, writable=True),
            ],
        )

    # ── Liquidity ─────────────────────────────────────────────

    def deposit_liquidity(
        self,
        user:              Pubkey,
        user_usdc_account: Pubkey,
        risk_pool_vault:   Pubkey,
        amount:            int,
    ) -> Instruction:
        user = _require("user", user)
        if isinstance(amount, int) and amount <= 0:
            raise ValidationError("amount must be positive", {"amount": amount})
        return self._instruction(
            "deposit_liquidity",
            {"amount": amount},
            [
                _meta(self.deriver.config().address, writable=True),
                _meta(self.deriver.liquidity_provider(user).address, writable=True),
                _meta(_require("risk_pool_vault", risk_pool_vault), writable=True),
                _meta(_require("user_usdc_account", user_usdc_account), writable=True),
                _meta(user, signer=True, writable=True),
                _meta(TOKEN_PROGRAM_ID),
                _meta(SYSTEM_PROGRAM_ID),
            ],
        )

    def withdraw_liquidity(
        self,
        admin:             Pubkey,
        user:              Pubkey,
        user_usdc_account: Pubkey,
        risk_pool_vault:   Pubkey,
        amount:            int,
    ) -> Instruction:
        user = _require("user", user)
        if isinstance(amount, int) and amount <= 0:
            raise ValidationError("amount must be positive", {"amount": amount})
        return self._instruction(
            "withdraw_liquidity",
            {"amount": amount},
            [
                _meta(self.deriver.config().address, writable=True),
                _meta(self.deriver.liquidity_provider(user).address, writable=True),
                _meta(_require("risk_pool_vault", risk_pool_vault), writable=True),
                _meta(_require("user_usdc_account", user_usdc_account), writable=True),
                _meta(user, writable=True),
                _meta(_require("admin", admin), signer=True, writable=True),
                _meta(TOKEN_PROGRAM_ID),
            ],
        )

    # ── Settlement ────────────────────────────────────────────

    def process_payout(
        self,
        admin:                    Pubkey,
        policy_id:                int,
        product_id:               int,
        delay_minutes:            int,
        risk_pool_vault:          Pubkey,
        policyholder_usdc_account: Pubkey,
    ) -> Instruction:
        """
        Pay out a policy. The program re-checks status, threshold and pause
        flag; this builder only lays out the accounts.
        """
        if delay_minutes is None or delay_minutes < 0:
            raise ValidationError("delay_minutes must be a non-negative int")
        try:
            product = self.deriver.product(product_id).address
            policy  = self.deriver.policy(policy_id).address
        except AddressError as exc:
            raise ValidationError(str(exc)) from exc
        return self._instruction(
            "process_payout",
            {"policy_id": policy_id, "delay_minutes": delay_minutes},
            [
                _meta(self.deriver.config().address, writable=True),
                _meta(product, writable=True),
                _meta(policy, writable=True),
                _meta(_require("risk_pool_vault", risk_pool_vault), writable=True),
                _meta(
                    _require("policyholder_usdc_account", policyholder_usdc_account),
                    writable=True,
                ),
                _meta(_require("admin", admin), signer=True, writable=True),
                _meta(TOKEN_PROGRAM_ID),
            ],
        )

    def expire_policy(self, admin: Pubkey, policy_id: int) -> Instruction:
        try:
            policy = self.deriver.policy(policy_id).address
        except AddressError as exc:
            raise ValidationError(str(exc)) from exc
        return self._instruction(
            "expire_policy",
            {"policy_id": policy_id},
            [
                _meta(self.deriver.config().address),
                _meta(policy, writable=True),
                _meta(_require("admin", admin), signer=True),
            ],
        )

