"""
Per-policy claim registry.

At most one worker in this process may be settling a given policy id.
A claim is taken before the policy is re-read and released when the
attempt ends, unless the settlement was confirmed: confirmed policies
stay claimed for the life of the process so that duplicate triggers
short-circuit without another ledger read.

This is an in-process guard only. Cross-process safety comes from the
program itself refusing to pay a policy that is no longer Active.
"""

import threading
from contextlib import contextmanager
from typing import Iterator, Set


class ClaimRegistry:
    def __init__(self):
        self._lock     = threading.Lock()
        self._inflight: Set[int] = set()
        self._settled:  Set[int] = set()

    def try_claim(self, policy_id: int) -> bool:
        """Take the claim. False if another worker holds it or it is settled."""
        with self._lock:
            if policy_id in self._inflight or policy_id in self._settled:
                return False
            self._inflight.add(policy_id)
            return True

    def release(self, policy_id: int, settled: bool = False) -> None:
        with self._lock:
            self._inflight.discard(policy_id)
            if settled:
                self._settled.add(policy_id)

    def is_settled(self, policy_id: int) -> bool:
        with self._lock:
            return policy_id in self._settled

    def in_flight(self) -> Set[int]:
        with self._lock:
            return set(self._inflight)

    @contextmanager
    def claim(self, policy_id: int) -> Iterator["_Claim"]:
        """
        Context manager form. Yields a handle; call handle.mark_settled()
        to keep the claim after exit. Yields None when the claim is taken.
        """
        if not self.try_claim(policy_id):
            yield None
            return
        handle = _Claim()
        try:
            yield handle
        finally:
            self.release(policy_id, settled=handle.settled)


class _Claim:
    def __init__(self):
        self.settled = False

    def mark_settled(self) -> None:
        self.settled = True
