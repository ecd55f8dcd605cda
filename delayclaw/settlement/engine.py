"""
Payout orchestration.

Reconciles a flight's reported departure with the on-ledger state of
every policy linked to it, and submits the settlement transaction each
policy needs.

Per flight key (flight_number, date):

    PENDING     actual departure not reported yet; nothing submitted
    EVALUATED   policies scanned, at least one not yet terminal on-ledger
    SETTLED     every linked policy is PaidOut or Expired

Key contracts:
    - At most one payout per policy. The program refuses a non-Active
      policy; in-process, ClaimRegistry keeps two workers off the same
      policy; and the policy is re-read before every resubmission.
    - A ConfirmationTimeout is never resent blindly. The policy is
      re-read first, and an ambiguity that survives max_resubmits is
      reported UNRESOLVED.
    - Per-policy failures become PolicyOutcome records. One bad policy
      never aborts the batch.
    - Missing Config, or a signer that is not the Config admin, is a
      precondition failure for the whole batch.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import base58
from solders.instruction import Instruction
from solders.pubkey import Pubkey

from delayclaw.core.crypto import Ed25519KeyManager
from delayclaw.core.exceptions import (
    BroadcastTimeout,
    ConfigurationError,
    ConfirmationTimeout,
    DecodeError,
    DelayClawError,
    ExecutionFailed,
    NotFoundError,
    RpcError,
    RpcTransportError,
    SimulationRejected,
    ValidationError,
)
from delayclaw.core.models import (
    AccountKind,
    Config,
    Entity,
    FlightRecord,
    Policy,
    PolicyStatus,
    Product,
)
from delayclaw.core.time import unix_now, utc_date
from delayclaw.gateway.base import FlightMetadataGateway
from delayclaw.ledger.addresses import AddressDeriver, as_pubkey, associated_token_address
from delayclaw.ledger.codec import ACCOUNT_DISCRIMINATORS, AccountCodec
from delayclaw.ledger.instructions import InstructionBuilder
from delayclaw.ledger.rpc import LedgerRpcClient
from delayclaw.ledger.submitter import TransactionSubmitter
from delayclaw.settlement.claims import ClaimRegistry
from delayclaw.settlement.evaluator import Decision, Evaluation, evaluate
from delayclaw.settlement.journal import SettlementJournal

logger = logging.getLogger(__name__)


class FlightState(Enum):
    PENDING   = "pending"
    EVALUATED = "evaluated"
    SETTLED   = "settled"


class Outcome(Enum):
    PAID_OUT        = "paid_out"
    EXPIRED         = "expired"
    ALREADY_SETTLED = "already_settled"
    INELIGIBLE      = "ineligible"
    NOT_EVALUABLE   = "not_evaluable"
    DUPLICATE       = "duplicate"
    DEFERRED        = "deferred"
    FAILED          = "failed"
    UNRESOLVED      = "unresolved"
    NOT_FOUND       = "not_found"
    DECODE_FAILED   = "decode_failed"


TERMINAL_OUTCOMES = frozenset({Outcome.PAID_OUT, Outcome.EXPIRED, Outcome.ALREADY_SETTLED})
FAILED_OUTCOMES   = frozenset({
    Outcome.FAILED,
    Outcome.UNRESOLVED,
    Outcome.NOT_FOUND,
    Outcome.DECODE_FAILED,
})
# Outcomes that say nothing new about a PNR and are not written back.
_TRANSIENT_OUTCOMES = frozenset({Outcome.DUPLICATE, Outcome.DEFERRED})


@dataclass(frozen=True)
class PolicyOutcome:
    policy_id:     int
    outcome:       Outcome
    reason:        str = ""
    signature:     Optional[str] = None
    delay_minutes: Optional[int] = None

    @property
    def terminal(self) -> bool:
        return self.outcome in TERMINAL_OUTCOMES

    @property
    def failed(self) -> bool:
        return self.outcome in FAILED_OUTCOMES

    def to_dict(self) -> dict:
        return {
            "policy_id":     self.policy_id,
            "outcome":       self.outcome.value,
            "reason":        self.reason,
            "signature":     self.signature,
            "delay_minutes": self.delay_minutes,
        }


@dataclass
class FlightSettlementReport:
    flight_number: str
    date:          str
    state:         Optional[FlightState] = None
    outcomes:      List[PolicyOutcome] = field(default_factory=list)
    error:         Optional[str] = None
    write_back_error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None or any(o.failed for o in self.outcomes)

    def to_dict(self) -> dict:
        return {
            "flight_number":    self.flight_number,
            "date":             self.date,
            "state":            self.state.value if self.state else None,
            "outcomes":         [o.to_dict() for o in self.outcomes],
            "error":            self.error,
            "write_back_error": self.write_back_error,
        }


class PayoutOrchestrator:
    """
    Settles flights against the ledger.

    All collaborators are injected; see SettlementContext for the
    production wiring.
    """

    def __init__(
        self,
        rpc:             LedgerRpcClient,
        submitter:       TransactionSubmitter,
        signer:          Ed25519KeyManager,
        deriver:         AddressDeriver,
        gateway:         FlightMetadataGateway,
        codec:           Optional[AccountCodec] = None,
        claims:          Optional[ClaimRegistry] = None,
        journal:         Optional[SettlementJournal] = None,
        risk_pool_vault: Optional[Pubkey] = None,
        max_resubmits:   int = 2,
        batch_timeout:   float = 120.0,
        conflict_retries: int = 5,
        max_workers:     int = 4,
        clock:           Callable[[], int] = unix_now,
        monotonic:       Callable[[], float] = time.monotonic,
    ):
        self.rpc              = rpc
        self.submitter        = submitter
        self.signer           = signer
        self.deriver          = deriver
        self.gateway          = gateway
        self.codec            = codec or AccountCodec()
        self.builder          = InstructionBuilder(deriver, self.codec)
        self.claims           = claims or ClaimRegistry()
        self.journal          = journal
        self.risk_pool_vault  = as_pubkey(risk_pool_vault) if risk_pool_vault else None
        self.max_resubmits    = max_resubmits
        self.batch_timeout    = batch_timeout
        self.conflict_retries = conflict_retries
        self.max_workers      = max_workers
        self.clock            = clock
        self.monotonic        = monotonic

    # ── Ledger reads ──────────────────────────────────────────

    def _load(self, kind: AccountKind, address: Pubkey, label: str) -> Entity:
        raw = self.rpc.get_account_info(address)
        if raw is None:
            raise NotFoundError(f"{label} account not found", {"address": str(address)})
        return self.codec.decode(kind, raw)

    def load_config(self) -> Config:
        return self._load(AccountKind.CONFIG, self.deriver.config().address, "Config")

    def load_product(self, product_id: int) -> Product:
        return self._load(
            AccountKind.PRODUCT, self.deriver.product(product_id).address, f"Product {product_id}"
        )

    def load_policy(self, policy_id: int) -> Policy:
        return self._load(
            AccountKind.POLICY, self.deriver.policy(policy_id).address, f"Policy {policy_id}"
        )

    def resolve_vault(self, config: Config) -> Pubkey:
        """Explicit setting, else the legacy Config vault, else the admin's USDC account."""
        if self.risk_pool_vault is not None:
            return self.risk_pool_vault
        if config.risk_pool_vault is not None:
            return config.risk_pool_vault
        return associated_token_address(config.admin, config.usdc_mint)

    def _check_preconditions(self) -> Config:
        config = self.load_config()
        if config.admin != self.signer.pubkey:
            raise ConfigurationError(
                "Signer is not the program admin",
                {"admin": str(config.admin), "signer": str(self.signer.pubkey)},
            )
        return config

    # ── Public API ────────────────────────────────────────────

    def settle_flight(self, flight_number: str, date: str) -> FlightSettlementReport:
        """
        Settle every policy linked to one flight record.

        Raises NotFoundError when the flight record or Config is absent,
        ConfigurationError when the signer cannot settle.
        """
        deadline = self.monotonic() + self.batch_timeout
        record   = self.gateway.get_flight_record(flight_number, date)
        config   = self._check_preconditions()
        report   = FlightSettlementReport(flight_number, date)

        policy_ids = record.policy_ids()
        logger.info(
            "Settling %s on %s: %d linked policies", flight_number, date, len(policy_ids)
        )

        if record.actual_departure_unix is None:
            report.state = FlightState.PENDING
            report.outcomes = [
                PolicyOutcome(pid, Outcome.NOT_EVALUABLE, "actual departure not reported")
                for pid in policy_ids
            ]
        elif config.paused:
            logger.warning("Program is paused; deferring %s/%s", flight_number, date)
            report.outcomes = [
                PolicyOutcome(pid, Outcome.DEFERRED, "program paused") for pid in policy_ids
            ]
        else:
            products: Dict[int, Product] = {}
            for pid in policy_ids:
                if self.monotonic() > deadline:
                    report.outcomes.append(
                        PolicyOutcome(pid, Outcome.DEFERRED, "batch deadline reached")
                    )
                    continue
                report.outcomes.append(self._settle_policy(pid, record, config, products))

        if report.state is None:
            all_terminal = all(o.terminal for o in report.outcomes)
            report.state = FlightState.SETTLED if all_terminal else FlightState.EVALUATED

        self._write_back(report)
        self._journal(report)
        logger.info(
            "Flight %s/%s %s: %s",
            flight_number, date, report.state.value,
            ", ".join(f"{o.policy_id}={o.outcome.value}" for o in report.outcomes) or "no policies",
        )
        return report

    def settle_many(self, keys: Iterable[Tuple[str, str]]) -> List[FlightSettlementReport]:
        """Settle several flights concurrently. One failing flight never stops the others."""
        keys = list(dict.fromkeys(keys))
        if not keys:
            return []
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(keys))) as pool:
            futures = [(key, pool.submit(self.settle_flight, *key)) for key in keys]
            reports = []
            for (flight_number, date), future in futures:
                try:
                    reports.append(future.result())
                except DelayClawError as exc:
                    logger.error("Flight %s/%s not settled: %s", flight_number, date, exc)
                    reports.append(
                        FlightSettlementReport(flight_number, date, error=str(exc))
                    )
        return reports

    def scan_active_policies(self) -> Dict[Tuple[str, str], List[Policy]]:
        """
        All Active policies on the program, grouped by flight key.

        The date is the UTC date of the policy's scheduled departure, the
        same partition the flight store uses.
        """
        discriminator = ACCOUNT_DISCRIMINATORS[AccountKind.POLICY]
        filters = [{
            "memcmp": {
                "offset": 0,
                "bytes":  base58.b58encode(discriminator).decode("ascii"),
            }
        }]
        grouped: Dict[Tuple[str, str], List[Policy]] = {}
        for address, raw in self.rpc.get_program_accounts(self.deriver.program_id, filters):
            try:
                policy = self.codec.decode(AccountKind.POLICY, raw)
            except DecodeError as exc:
                logger.warning("Skipping undecodable policy account %s: %s", address, exc)
                continue
            if not policy.is_active:
                continue
            key = (policy.flight_number, utc_date(policy.departure_time))
            grouped.setdefault(key, []).append(policy)
        return grouped

    def watch(self) -> List[FlightSettlementReport]:
        """One sweep: settle every flight that has an Active policy."""
        keys = sorted(self.scan_active_policies())
        logger.info("Watch sweep found %d flights with active policies", len(keys))
        return self.settle_many(keys)

    # ── Per-policy settlement ─────────────────────────────────

    def _settle_policy(
        self,
        policy_id: int,
        record:    FlightRecord,
        config:    Config,
        products:  Dict[int, Product],
    ) -> PolicyOutcome:
        if self.claims.is_settled(policy_id):
            return PolicyOutcome(policy_id, Outcome.ALREADY_SETTLED, "settled earlier in this process")

        with self.claims.claim(policy_id) as claim:
            if claim is None:
                if self.claims.is_settled(policy_id):
                    return PolicyOutcome(policy_id, Outcome.ALREADY_SETTLED, "settled earlier in this process")
                return PolicyOutcome(policy_id, Outcome.DUPLICATE, "settlement already in progress")
            try:
                outcome = self._attempt(policy_id, record, config, products)
            except NotFoundError as exc:
                outcome = PolicyOutcome(policy_id, Outcome.NOT_FOUND, str(exc))
            except DecodeError as exc:
                outcome = PolicyOutcome(policy_id, Outcome.DECODE_FAILED, f"{exc.kind.value}: {exc}")
            except (RpcError, RpcTransportError, ValidationError) as exc:
                outcome = PolicyOutcome(policy_id, Outcome.FAILED, str(exc))
            except DelayClawError as exc:
                outcome = PolicyOutcome(policy_id, Outcome.FAILED, f"{type(exc).__name__}: {exc}")

            if outcome.terminal:
                claim.mark_settled()
            if outcome.failed:
                logger.error("Policy %d: %s (%s)", policy_id, outcome.outcome.value, outcome.reason)
            return outcome

    def _attempt(
        self,
        policy_id: int,
        record:    FlightRecord,
        config:    Config,
        products:  Dict[int, Product],
    ) -> PolicyOutcome:
        policy = self.load_policy(policy_id)
        if policy.flight_number != record.flight_number:
            return PolicyOutcome(
                policy_id, Outcome.FAILED,
                f"policy covers flight {policy.flight_number}, not {record.flight_number}",
            )

        product = products.get(policy.product_id)
        if product is None:
            product = products[policy.product_id] = self.load_product(policy.product_id)

        evaluation = evaluate(
            policy,
            product,
            scheduled= record.scheduled_departure_unix,
            actual=    record.actual_departure_unix,
            now=       self.clock(),
        )
        logger.debug("Policy %d evaluated: %s", policy_id, evaluation.reason)

        if evaluation.decision is Decision.NOT_ACTIVE:
            return PolicyOutcome(policy_id, Outcome.ALREADY_SETTLED, evaluation.reason)
        if evaluation.decision is Decision.NOT_EVALUABLE:
            return PolicyOutcome(policy_id, Outcome.NOT_EVALUABLE, evaluation.reason)
        if evaluation.decision is Decision.INELIGIBLE:
            return PolicyOutcome(
                policy_id, Outcome.INELIGIBLE, evaluation.reason,
                delay_minutes=evaluation.delay_minutes,
            )

        if evaluation.decision is Decision.ELIGIBLE:
            instruction = self.builder.process_payout(
                admin=                     self.signer.pubkey,
                policy_id=                 policy.id,
                product_id=                policy.product_id,
                delay_minutes=             evaluation.delay_minutes,
                risk_pool_vault=           self.resolve_vault(config),
                policyholder_usdc_account= associated_token_address(
                    policy.policyholder, config.usdc_mint
                ),
            )
            return self._submit(policy_id, instruction, PolicyStatus.PAID_OUT, evaluation)

        instruction = self.builder.expire_policy(admin=self.signer.pubkey, policy_id=policy.id)
        return self._submit(policy_id, instruction, PolicyStatus.EXPIRED, evaluation)

    def _submit(
        self,
        policy_id:   int,
        instruction: Instruction,
        target:      PolicyStatus,
        evaluation:  Evaluation,
    ) -> PolicyOutcome:
        """
        Submit, re-reading the policy before every resubmission.

        Returns the success outcome for target, ALREADY_SETTLED when the
        policy reached another terminal state, FAILED on a definite
        rejection, or UNRESOLVED when a sent transaction was never
        confirmed and the policy is still Active.
        """
        success    = Outcome.PAID_OUT if target is PolicyStatus.PAID_OUT else Outcome.EXPIRED
        delay      = evaluation.delay_minutes
        last_sig: Optional[str] = None
        last_error = ""

        def classify(policy: Policy) -> PolicyOutcome:
            if policy.status is target and last_sig is not None:
                return PolicyOutcome(policy_id, success, "confirmed on re-read", last_sig, delay)
            return PolicyOutcome(
                policy_id, Outcome.ALREADY_SETTLED, f"policy already {policy.status}",
                delay_minutes=delay,
            )

        for attempt in range(self.max_resubmits + 1):
            if attempt:
                current = self.load_policy(policy_id)
                if not current.is_active:
                    return classify(current)
                logger.info("Policy %d still Active, resubmitting (attempt %d)", policy_id, attempt + 1)
            try:
                signature = self.submitter.submit([instruction], self.signer)
            except ConfirmationTimeout as exc:
                last_sig   = exc.signature
                last_error = str(exc)
                logger.warning("Policy %d: confirmation timed out for %s", policy_id, exc.signature)
                continue
            except BroadcastTimeout as exc:
                last_error = str(exc)
                logger.warning("Policy %d: broadcast failed: %s", policy_id, exc)
                continue
            except (SimulationRejected, ExecutionFailed) as exc:
                current = self.load_policy(policy_id)
                if not current.is_active:
                    return classify(current)
                return PolicyOutcome(policy_id, Outcome.FAILED, str(exc), exc.signature, delay)

            logger.info("Policy %d %s: %s", policy_id, success.value, signature)
            return PolicyOutcome(policy_id, success, evaluation.reason, signature, delay)

        current = self.load_policy(policy_id)
        if not current.is_active:
            return classify(current)
        if last_sig is not None:
            return PolicyOutcome(
                policy_id, Outcome.UNRESOLVED,
                f"transaction {last_sig} unconfirmed and policy still Active",
                last_sig, delay,
            )
        return PolicyOutcome(policy_id, Outcome.FAILED, last_error, None, delay)

    # ── Reporting ─────────────────────────────────────────────

    def _write_back(self, report: FlightSettlementReport) -> None:
        """Record outcomes on the flight's PNRs. Failure is logged, not raised."""

        def mutate(current: Optional[FlightRecord]) -> Optional[FlightRecord]:
            if current is None:
                raise NotFoundError("Flight record disappeared during settlement")
            before = current.to_dict()
            now    = self.clock()
            for outcome in report.outcomes:
                if outcome.outcome in _TRANSIENT_OUTCOMES:
                    continue
                for pnr in current.records_for_policy(outcome.policy_id):
                    if outcome.outcome is Outcome.ALREADY_SETTLED and pnr.payout_status in (
                        Outcome.PAID_OUT.value, Outcome.EXPIRED.value,
                    ):
                        continue
                    pnr.payout_status = outcome.outcome.value
                    if outcome.signature:
                        pnr.payout_tx_sig = outcome.signature
            if current.settlement_state != FlightState.SETTLED.value:
                current.settlement_state = report.state.value
            if current.to_dict() == before:
                return None
            for pnr in current.pnrs:
                if pnr.policy_id is not None:
                    pnr.updated_at = now
            current.updated_at = now
            return current

        try:
            self.gateway.update_with_retry(
                report.flight_number, report.date, mutate, max_attempts=self.conflict_retries
            )
        except DelayClawError as exc:
            report.write_back_error = str(exc)
            logger.error(
                "Could not record outcomes on %s/%s: %s",
                report.flight_number, report.date, exc,
            )

    def _journal(self, report: FlightSettlementReport) -> None:
        if self.journal is None:
            return
        for outcome in report.outcomes:
            if outcome.signature is None and not outcome.failed:
                continue
            self.journal.append_outcome(report.flight_number, report.date, outcome.to_dict())
