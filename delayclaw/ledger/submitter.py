"""
Transaction submission with bounded retries.

    submit(instructions, signer) -> signature

Stages and their failure types:

    blockhash + broadcast   transport failures retried up to
                            max_broadcast_attempts, then BroadcastTimeout.
                            Preflight rejection is SimulationRejected.
    confirmation polling    up to max_confirmation_polls with exponential
                            backoff. A landed transaction carrying a program
                            error is ExecutionFailed. No status in time is
                            ConfirmationTimeout, which carries the signature:
                            the outcome is unknown until ledger state is
                            re-read.
"""

import logging
import time
from typing import Callable, List, Optional, Sequence

from solders.instruction import Instruction
from solders.message import Message
from solders.signature import Signature
from solders.transaction import Transaction

from delayclaw.core.crypto import Ed25519KeyManager
from delayclaw.core.exceptions import (
    BroadcastTimeout,
    ConfirmationTimeout,
    ExecutionFailed,
    RpcError,
    RpcTransportError,
    SimulationRejected,
    ValidationError,
)
from delayclaw.ledger.rpc import (
    NODE_UNHEALTHY,
    SEND_TRANSACTION_PREFLIGHT_FAILURE,
    LedgerRpcClient,
)

logger = logging.getLogger(__name__)

_COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}


def backoff_delay(attempt: int, base: float, maximum: float) -> float:
    """Exponential backoff: base * 2**attempt, capped at maximum."""
    return min(maximum, base * (2 ** attempt))


class TransactionSubmitter:
    """
    Signs, broadcasts and confirms transactions.

    The sleep function is injectable so tests run without waiting.
    """

    def __init__(
        self,
        rpc:                    LedgerRpcClient,
        max_broadcast_attempts: int = 3,
        max_confirmation_polls: int = 8,
        backoff_base:           float = 0.5,
        backoff_max:            float = 8.0,
        commitment:             str = "confirmed",
        sleep:                  Callable[[float], None] = time.sleep,
    ):
        self.rpc                    = rpc
        self.max_broadcast_attempts = max_broadcast_attempts
        self.max_confirmation_polls = max_confirmation_polls
        self.backoff_base           = backoff_base
        self.backoff_max            = backoff_max
        self.commitment             = commitment
        self._sleep                 = sleep

    @classmethod
    def from_settings(cls, rpc: LedgerRpcClient, settings, sleep=time.sleep) -> "TransactionSubmitter":
        return cls(
            rpc,
            max_broadcast_attempts= settings.max_broadcast_attempts,
            max_confirmation_polls= settings.max_confirmation_polls,
            backoff_base=           settings.backoff_base,
            backoff_max=            settings.backoff_max,
            commitment=             settings.commitment,
            sleep=                  sleep,
        )

    # ── Public ────────────────────────────────────────────────

    def submit(
        self,
        instructions: Sequence[Instruction],
        signer:       Ed25519KeyManager,
        commitment:   Optional[str] = None,
    ) -> str:
        """Broadcast and confirm. Returns the base58 signature."""
        if not instructions:
            raise ValidationError("At least one instruction is required")
        commitment = commitment or self.commitment
        if commitment not in _COMMITMENT_RANK:
            raise ValidationError(f"Unknown commitment '{commitment}'")

        signature = self._broadcast(list(instructions), signer, commitment)
        self._await_confirmation(signature, commitment)
        return signature

    # ── Internals ─────────────────────────────────────────────

    def build_transaction(
        self,
        instructions: List[Instruction],
        signer:       Ed25519KeyManager,
        blockhash,
    ) -> Transaction:
        """Legacy transaction with the signer as sole signer and fee payer."""
        message   = Message.new_with_blockhash(instructions, signer.pubkey, blockhash)
        signature = Signature.from_bytes(signer.sign_raw(bytes(message)))
        return Transaction.populate(message, [signature])

    def _broadcast(
        self,
        instructions: List[Instruction],
        signer:       Ed25519KeyManager,
        commitment:   str,
    ) -> str:
        last_error: Optional[Exception] = None

        for attempt in range(self.max_broadcast_attempts):
            if attempt:
                self._sleep(backoff_delay(attempt - 1, self.backoff_base, self.backoff_max))
            try:
                blockhash   = self.rpc.get_latest_blockhash(commitment)
                transaction = self.build_transaction(instructions, signer, blockhash)
                signature   = self.rpc.send_transaction(bytes(transaction), commitment)
            except RpcTransportError as exc:
                last_error = exc
                logger.warning(
                    "Broadcast attempt %d/%d failed: %s",
                    attempt + 1, self.max_broadcast_attempts, exc,
                )
                continue
            except RpcError as exc:
                if exc.code == SEND_TRANSACTION_PREFLIGHT_FAILURE:
                    if _blockhash_expired(exc):
                        last_error = exc
                        logger.warning("Blockhash expired before broadcast, rebuilding")
                        continue
                    raise SimulationRejected(
                        exc.message,
                        details={"logs": _simulation_logs(exc)},
                    ) from exc
                if exc.code == NODE_UNHEALTHY:
                    last_error = exc
                    logger.warning("Node unhealthy on attempt %d: %s", attempt + 1, exc)
                    continue
                raise SimulationRejected(exc.message, details={"code": exc.code}) from exc

            logger.info("Broadcast accepted: %s", signature)
            return signature

        raise BroadcastTimeout(
            f"Transaction not broadcast after {self.max_broadcast_attempts} attempts",
            details={"last_error": str(last_error)},
        )

    def _await_confirmation(self, signature: str, commitment: str) -> None:
        wanted = _COMMITMENT_RANK[commitment]

        for poll in range(self.max_confirmation_polls):
            self._sleep(backoff_delay(poll, self.backoff_base, self.backoff_max))
            try:
                statuses = self.rpc.get_signature_statuses([signature])
            except (RpcTransportError, RpcError) as exc:
                logger.warning("Status poll %d for %s failed: %s", poll + 1, signature, exc)
                continue

            status = statuses[0] if statuses else None
            if status is None:
                continue
            if status.get("err") is not None:
                raise ExecutionFailed(
                    "Transaction failed on the ledger",
                    signature=signature,
                    details={"err": status["err"]},
                )
            level = _COMMITMENT_RANK.get(status.get("confirmationStatus") or "", -1)
            if level >= wanted:
                logger.info("Confirmed %s at %s", signature, status.get("confirmationStatus"))
                return

        raise ConfirmationTimeout(
            f"No {commitment} status after {self.max_confirmation_polls} polls",
            signature=signature,
        )


def _blockhash_expired(exc: RpcError) -> bool:
    data = exc.data if isinstance(exc.data, dict) else {}
    return data.get("err") == "BlockhashNotFound" or "Blockhash not found" in exc.message


def _simulation_logs(exc: RpcError) -> List[str]:
    if isinstance(exc.data, dict):
        return list(exc.data.get("logs") or [])
    return []
