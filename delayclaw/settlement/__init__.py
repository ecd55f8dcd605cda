"""
DelayClaw Settlement

Turns an observed departure into a payout or an expiry:

- evaluator  pure eligibility decision per policy
- claims     at most one in-flight settlement per policy
- engine     per-flight orchestration, retries, write-back
- journal    signed, hash-chained record of settlement outcomes

Settlement never decides on stale state: every resubmission is
preceded by a fresh read of the policy.
"""

from delayclaw.settlement.claims import ClaimRegistry
from delayclaw.settlement.engine import (
    FlightSettlementReport,
    FlightState,
    Outcome,
    PayoutOrchestrator,
    PolicyOutcome,
)
from delayclaw.settlement.journal import SettlementJournal

__all__ = [
    "ClaimRegistry",
    "FlightSettlementReport",
    "FlightState",
    "Outcome",
    "PayoutOrchestrator",
    "PolicyOutcome",
    "SettlementJournal",
]
