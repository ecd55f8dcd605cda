"""
In-memory flight store. Used by tests and for dry runs.

Revisions are hash-chained: each write's revision is the canonical hash
of the stored document together with the revision it replaced, so two
writes of identical content still produce distinct revisions.
"""

import threading
from typing import Dict, List, Optional, Tuple

from delayclaw.core.canonical import canonical_hash
from delayclaw.core.exceptions import GatewayConflict, NotFoundError
from delayclaw.core.models import FlightRecord
from delayclaw.gateway.base import FlightMetadataGateway


class InMemoryFlightGateway(FlightMetadataGateway):

    def __init__(self):
        self._lock = threading.Lock()
        self._records: Dict[Tuple[str, str], Tuple[dict, str]] = {}
        self.writes = 0

    def get_flight_record(self, flight_number: str, date: str) -> FlightRecord:
        with self._lock:
            stored = self._records.get((flight_number, date))
        if stored is None:
            raise NotFoundError(
                "Flight record not found",
                {"flight_number": flight_number, "date": date},
            )
        document, revision = stored
        return FlightRecord.from_dict(document, revision=revision)

    def upsert_flight_record(
        self,
        record:            FlightRecord,
        expected_revision: Optional[str],
    ) -> str:
        key      = (record.flight_number, record.date)
        document = record.to_dict()
        with self._lock:
            stored  = self._records.get(key)
            current = stored[1] if stored else None
            if current != expected_revision:
                raise GatewayConflict(
                    "Flight record changed since it was read",
                    {"expected": expected_revision, "current": current},
                )
            revision = canonical_hash({"record": document, "previous": current})
            self._records[key] = (document, revision)
            self.writes += 1
        return revision

    def keys(self) -> List[Tuple[str, str]]:
        with self._lock:
            return sorted(self._records)
