"""
Synchronous ledger node client over solana-py.

Only the calls the settlement pipeline needs are wrapped. Account data
comes back as raw bytes; decoding belongs to AccountCodec. Signature
statuses are flattened to plain dicts so the submitter never touches
solders response types.

Failure mapping:
    node answered with an error object  -> RpcError(code, message, data)
    connection / timeout / HTTP status  -> RpcTransportError
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.api import Client
from solana.rpc.core import RPCException
from solana.rpc.types import MemcmpOpts, TxOpts
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.rpc.errors import NodeUnhealthyMessage, SendTransactionPreflightFailureMessage
from solders.signature import Signature
from solders.transaction_status import TransactionConfirmationStatus, TransactionErrorFieldless

from delayclaw.core.exceptions import RpcError, RpcTransportError, ValidationError

logger = logging.getLogger(__name__)

# JSON-RPC error codes the node uses for transaction submission.
SEND_TRANSACTION_PREFLIGHT_FAILURE = -32002
NODE_UNHEALTHY                     = -32005

PubkeyLike = Union[Pubkey, str]

_CONFIRMATION_LEVELS = (
    (TransactionConfirmationStatus.Processed, "processed"),
    (TransactionConfirmationStatus.Confirmed, "confirmed"),
    (TransactionConfirmationStatus.Finalized, "finalized"),
)


class LedgerRpcClient:
    """
    Usage:
        with LedgerRpcClient("https://api.devnet.solana.com") as rpc:
            raw = rpc.get_account_info(address)
    """

    def __init__(
        self,
        url:        str,
        timeout:    float = 15.0,
        commitment: str = "confirmed",
        client:     Optional[Client] = None,
    ):
        self.url        = url
        self.commitment = commitment
        self._client    = client or Client(url, commitment=commitment, timeout=timeout)

    # ── Transport ─────────────────────────────────────────────

    def call(self, method: str, fn, *args, **kwargs) -> Any:
        """Invoke one solana-py method and translate its failures."""
        try:
            return fn(*args, **kwargs)
        except RPCException as exc:
            raise _rpc_error(method, exc) from exc
        except (SolanaRpcException, httpx.HTTPError) as exc:
            raise RpcTransportError(
                f"{method} failed: {exc}", {"url": self.url}
            ) from exc

    def close(self) -> None:
        """Nothing to release; solana-py's sync client owns its session."""

    def __enter__(self) -> "LedgerRpcClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ── Accounts ──────────────────────────────────────────────

    def get_account_info(
        self,
        address:    PubkeyLike,
        commitment: Optional[str] = None,
    ) -> Optional[bytes]:
        """Raw account data, or None when the account does not exist."""
        resp = self.call(
            "getAccountInfo",
            self._client.get_account_info,
            _pubkey(address),
            commitment= commitment or self.commitment,
            encoding=   "base64",
        )
        return _account_data(resp.value)

    def get_multiple_accounts(
        self,
        addresses:  Sequence[PubkeyLike],
        commitment: Optional[str] = None,
    ) -> List[Optional[bytes]]:
        resp = self.call(
            "getMultipleAccounts",
            self._client.get_multiple_accounts,
            [_pubkey(a) for a in addresses],
            commitment= commitment or self.commitment,
            encoding=   "base64",
        )
        return [_account_data(v) for v in resp.value or []]

    def get_program_accounts(
        self,
        program_id: PubkeyLike,
        filters:    Optional[List[Dict[str, Any]]] = None,
        commitment: Optional[str] = None,
    ) -> List[Tuple[Pubkey, bytes]]:
        """
        Filters use the node's JSON shape: {"dataSize": n} or
        {"memcmp": {"offset": n, "bytes": <base58>}}.
        """
        resp = self.call(
            "getProgramAccounts",
            self._client.get_program_accounts,
            _pubkey(program_id),
            commitment= commitment or self.commitment,
            encoding=   "base64",
            filters=    [_filter(f) for f in filters or []] or None,
        )
        return [(item.pubkey, bytes(item.account.data)) for item in resp.value or []]

    # ── Transactions ──────────────────────────────────────────

    def get_latest_blockhash(self, commitment: Optional[str] = None) -> Hash:
        resp = self.call(
            "getLatestBlockhash",
            self._client.get_latest_blockhash,
            commitment or self.commitment,
        )
        if resp.value is None:
            raise RpcTransportError("getLatestBlockhash returned no blockhash")
        return resp.value.blockhash

    def send_transaction(
        self,
        raw_transaction: bytes,
        commitment:      Optional[str] = None,
        skip_preflight:  bool = False,
    ) -> str:
        """Broadcast a signed transaction. Returns its base58 signature."""
        opts = TxOpts(
            skip_confirmation=    True,
            skip_preflight=       skip_preflight,
            preflight_commitment= commitment or self.commitment,
        )
        resp = self.call(
            "sendTransaction",
            self._client.send_raw_transaction,
            raw_transaction,
            opts=opts,
        )
        return str(resp.value)

    def get_signature_statuses(
        self,
        signatures: Sequence[str],
    ) -> List[Optional[Dict[str, Any]]]:
        """One status dict (or None if unknown to the node) per signature."""
        resp = self.call(
            "getSignatureStatuses",
            self._client.get_signature_statuses,
            [Signature.from_string(s) for s in signatures],
            search_transaction_history=True,
        )
        return [_status(s) for s in resp.value or []]


def _pubkey(value: PubkeyLike) -> Pubkey:
    return value if isinstance(value, Pubkey) else Pubkey.from_string(value)


def _filter(spec: Dict[str, Any]) -> Union[int, MemcmpOpts]:
    if "dataSize" in spec:
        return int(spec["dataSize"])
    memcmp = spec.get("memcmp")
    if not memcmp:
        raise ValidationError("Unsupported account filter", {"filter": spec})
    return MemcmpOpts(offset=memcmp["offset"], bytes=memcmp["bytes"])


def _account_data(account) -> Optional[bytes]:
    if account is None:
        return None
    return bytes(account.data)


def _transaction_error(err) -> Any:
    if err is None:
        return None
    if isinstance(err, TransactionErrorFieldless):
        return str(err).rsplit(".", 1)[-1]
    return str(err)


def _confirmation_name(value) -> Optional[str]:
    for level, name in _CONFIRMATION_LEVELS:
        if value == level:
            return name
    return None


def _status(status) -> Optional[Dict[str, Any]]:
    if status is None:
        return None
    return {
        "slot":               status.slot,
        "confirmations":      status.confirmations,
        "err":                _transaction_error(status.err),
        "confirmationStatus": _confirmation_name(status.confirmation_status),
    }


def _rpc_error(method: str, exc: RPCException) -> RpcError:
    error   = exc.args[0] if exc.args else None
    message = getattr(error, "message", None) or str(exc)

    if isinstance(error, SendTransactionPreflightFailureMessage):
        result = error.data
        return RpcError(
            code=    SEND_TRANSACTION_PREFLIGHT_FAILURE,
            message= f"{method}: {message}",
            data=    {
                "err":  _transaction_error(result.err),
                "logs": list(result.logs or []),
            },
        )
    if isinstance(error, NodeUnhealthyMessage):
        return RpcError(code=NODE_UNHEALTHY, message=f"{method}: {message}")

    logger.debug("Unmapped %s error: %r", method, error)
    return RpcError(
        code=    int(getattr(error, "code", 0) or 0),
        message= f"{method}: {message}",
    )
