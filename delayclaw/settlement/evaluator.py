"""
Delay evaluation for a single policy.

Pure function of its inputs; no I/O, no clock reads. The orchestrator
passes `now` in so that evaluation is reproducible.

Decision order:
    1. Policy not Active              -> NOT_ACTIVE   (terminal, no-op)
    2. No actual departure yet        -> NOT_EVALUABLE
    3. Claim window elapsed           -> EXPIRE       (regardless of delay)
    4. delay >= threshold             -> ELIGIBLE
    5. otherwise                      -> INELIGIBLE
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from delayclaw.core.models import Policy, Product


class Decision(Enum):
    NOT_ACTIVE    = "not_active"
    NOT_EVALUABLE = "not_evaluable"
    EXPIRE        = "expire"
    ELIGIBLE      = "eligible"
    INELIGIBLE    = "ineligible"


@dataclass(frozen=True)
class Evaluation:
    decision:      Decision
    delay_minutes: Optional[int]
    threshold:     int
    reason:        str


def delay_minutes(scheduled: int, actual: int) -> int:
    """Whole minutes late; early or on-time departures count as 0."""
    return max(0, (actual - scheduled) // 60)


def evaluate(
    policy:    Policy,
    product:   Product,
    scheduled: Optional[int],
    actual:    Optional[int],
    now:       int,
) -> Evaluation:
    threshold = product.delay_threshold_minutes

    if not policy.is_active:
        return Evaluation(
            Decision.NOT_ACTIVE, None, threshold,
            f"policy already {policy.status}",
        )

    if actual is None:
        return Evaluation(
            Decision.NOT_EVALUABLE, None, threshold,
            "actual departure not reported",
        )

    if scheduled is None:
        scheduled = policy.departure_time
    delay = delay_minutes(scheduled, actual)

    deadline = policy.claim_deadline(product)
    if now > deadline:
        return Evaluation(
            Decision.EXPIRE, delay, threshold,
            f"claim window closed at {deadline}",
        )

    if delay >= threshold:
        return Evaluation(
            Decision.ELIGIBLE, delay, threshold,
            f"delayed {delay} min, threshold {threshold} min",
        )
    return Evaluation(
        Decision.INELIGIBLE, delay, threshold,
        f"delayed {delay} min, below threshold {threshold} min",
    )
