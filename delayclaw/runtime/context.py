"""
Runtime context for DelayClaw.

One object owns every long-lived collaborator, built once from Settings.
Nothing in the library reads the environment or holds module-level
singletons; commands and tests construct a context and pass it down.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from delayclaw.core.crypto import Ed25519KeyManager, load_signer
from delayclaw.core.exceptions import ConfigurationError
from delayclaw.core.models import AccountKind
from delayclaw.core.settings import Settings
from delayclaw.gateway.base import FlightMetadataGateway
from delayclaw.gateway.github import GitHubFlightGateway
from delayclaw.gateway.service import FlightService
from delayclaw.ledger.addresses import AddressDeriver
from delayclaw.ledger.codec import AccountCodec
from delayclaw.ledger.instructions import InstructionBuilder
from delayclaw.ledger.rpc import LedgerRpcClient
from delayclaw.ledger.submitter import TransactionSubmitter
from delayclaw.settlement.claims import ClaimRegistry
from delayclaw.settlement.engine import PayoutOrchestrator
from delayclaw.settlement.journal import SettlementJournal

logger = logging.getLogger(__name__)


@dataclass
class SettlementContext:
    """Wired collaborators for one process."""

    settings:  Settings
    rpc:       LedgerRpcClient
    gateway:   FlightMetadataGateway
    deriver:   AddressDeriver
    codec:     AccountCodec
    builder:   InstructionBuilder
    submitter: TransactionSubmitter
    claims:    ClaimRegistry = field(default_factory=ClaimRegistry)
    signer:    Optional[Ed25519KeyManager] = None
    journal:   Optional[SettlementJournal] = None

    @classmethod
    def from_settings(
        cls,
        settings:     Settings,
        signer:       Optional[Ed25519KeyManager] = None,
        gateway:      Optional[FlightMetadataGateway] = None,
        rpc:          Optional[LedgerRpcClient] = None,
        require_signer: bool = True,
        sleep:        Optional[Callable[[float], None]] = None,
    ) -> "SettlementContext":
        """
        Build a context. Read-only commands pass require_signer=False and
        get a context without a signer or journal.
        """
        if signer is None and require_signer:
            signer = load_signer(settings.admin_keypair_path)

        rpc = rpc or LedgerRpcClient(
            settings.rpc_url,
            timeout=    settings.http_timeout,
            commitment= settings.commitment,
        )
        deriver = AddressDeriver(settings.program_id)
        codec   = AccountCodec()

        submitter_kwargs = {} if sleep is None else {"sleep": sleep}
        journal = None
        if settings.journal_path and signer is not None:
            journal = SettlementJournal(settings.journal_path, signer)

        context = cls(
            settings=  settings,
            rpc=       rpc,
            gateway=   gateway or GitHubFlightGateway.from_settings(settings),
            deriver=   deriver,
            codec=     codec,
            builder=   InstructionBuilder(deriver, codec),
            submitter= TransactionSubmitter.from_settings(rpc, settings, **submitter_kwargs),
            signer=    signer,
            journal=   journal,
        )
        logger.debug("Context ready: %r", context)
        return context

    def orchestrator(self) -> PayoutOrchestrator:
        if self.signer is None:
            raise ConfigurationError("Settlement requires an admin keypair (ADMIN_KEYPAIR)")
        return PayoutOrchestrator(
            rpc=              self.rpc,
            submitter=        self.submitter,
            signer=           self.signer,
            deriver=          self.deriver,
            gateway=          self.gateway,
            codec=            self.codec,
            claims=           self.claims,
            journal=          self.journal,
            risk_pool_vault=  self.settings.risk_pool_vault,
            max_resubmits=    self.settings.max_resubmits,
            batch_timeout=    self.settings.batch_timeout,
            conflict_retries= self.settings.store_conflict_retries,
            max_workers=      self.settings.max_workers,
        )

    def flight_service(self) -> FlightService:
        def lookup(policy_id: int):
            raw = self.rpc.get_account_info(self.deriver.policy(policy_id).address)
            return self.codec.decode(AccountKind.POLICY, raw) if raw is not None else None

        return FlightService(
            self.gateway,
            api_key=          self.settings.update_api_key,
            policy_lookup=    lookup,
            conflict_retries= self.settings.store_conflict_retries,
        )

    def close(self) -> None:
        self.rpc.close()
        close = getattr(self.gateway, "close", None)
        if close is not None:
            close()

    def __repr__(self) -> str:
        return (
            f"SettlementContext("
            f"program={self.settings.program_id!r}, "
            f"rpc={self.settings.rpc_url!r}, "
            f"signer={self.signer!r})"
        )
