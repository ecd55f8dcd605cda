"""
DelayClaw Ledger Access

Everything that touches the on-chain program: address derivation,
account and instruction encoding, JSON-RPC transport and transaction
submission.
"""

from delayclaw.ledger.addresses import AddressDeriver, DerivedAddress
from delayclaw.ledger.codec import AccountCodec, LegacyLayoutWarning
from delayclaw.ledger.instructions import InstructionBuilder
from delayclaw.ledger.rpc import LedgerRpcClient
from delayclaw.ledger.submitter import TransactionSubmitter

__all__ = [
    "AddressDeriver",
    "DerivedAddress",
    "AccountCodec",
    "LegacyLayoutWarning",
    "InstructionBuilder",
    "LedgerRpcClient",
    "TransactionSubmitter",
]
