"""
delayclaw/__init__.py

DelayClaw: parametric flight-delay insurance settlement.

A policy pays its fixed coverage amount when the flight it names departs
at least the product's threshold late, and expires once the claim window
has passed. DelayClaw reads policies from the on-chain program, reads
actual departure times from the flight metadata store, and submits the
payout or expiry instruction with bounded retries.
"""

__version__ = "0.1.0"

from delayclaw.core.exceptions import DelayClawError
from delayclaw.core.models import (
    Config,
    FlightRecord,
    PassengerNamedRecord,
    Policy,
    PolicyStatus,
    Product,
)
from delayclaw.core.settings import Settings
from delayclaw.ledger.addresses import AddressDeriver
from delayclaw.ledger.codec import AccountCodec
from delayclaw.settlement.engine import Outcome, PayoutOrchestrator
from delayclaw.settlement.evaluator import Decision, evaluate

__all__ = [
    # Ledger entities
    "Config",
    "Product",
    "Policy",
    "PolicyStatus",
    # Flight metadata
    "FlightRecord",
    "PassengerNamedRecord",
    # Settlement
    "PayoutOrchestrator",
    "Outcome",
    "Decision",
    "evaluate",
    # Ledger access
    "AddressDeriver",
    "AccountCodec",
    # Config and errors
    "Settings",
    "DelayClawError",
]
