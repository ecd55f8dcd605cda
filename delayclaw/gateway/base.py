"""
Flight metadata gateway contract.

A gateway stores one FlightRecord per (flight_number, date) and exposes
optimistic concurrency through an opaque revision token:

    get_flight_record(flight, date)            -> FlightRecord (revision set)
                                                  NotFoundError if absent
    upsert_flight_record(record, expected)     -> new revision
                                                  GatewayConflict if the stored
                                                  revision is not `expected`

expected_revision=None means "create": the record must not exist yet.
"""

import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional

from delayclaw.core.exceptions import GatewayConflict, NotFoundError
from delayclaw.core.models import FlightRecord

logger = logging.getLogger(__name__)


class FlightMetadataGateway(ABC):

    @abstractmethod
    def get_flight_record(self, flight_number: str, date: str) -> FlightRecord:
        ...

    @abstractmethod
    def upsert_flight_record(
        self,
        record:            FlightRecord,
        expected_revision: Optional[str],
    ) -> str:
        ...

    def find_flight_record(self, flight_number: str, date: str) -> Optional[FlightRecord]:
        """get_flight_record, but None instead of NotFoundError."""
        try:
            return self.get_flight_record(flight_number, date)
        except NotFoundError:
            return None

    def update_with_retry(
        self,
        flight_number: str,
        date:          str,
        mutate:        Callable[[Optional[FlightRecord]], Optional[FlightRecord]],
        max_attempts:  int = 5,
    ) -> Optional[FlightRecord]:
        """
        Read-modify-write loop.

        mutate receives a fresh copy of the stored record (or None when
        absent) and returns the record to store, or None to write nothing.
        On GatewayConflict the record is re-read and mutate runs again.
        Returns the stored record with its new revision.
        """
        for attempt in range(max_attempts):
            current  = self.find_flight_record(flight_number, date)
            expected = current.revision if current is not None else None
            updated  = mutate(current.copy() if current is not None else None)
            if updated is None:
                return current
            try:
                updated.revision = self.upsert_flight_record(updated, expected)
                return updated
            except GatewayConflict:
                logger.info(
                    "Conflict writing %s/%s (attempt %d/%d), re-reading",
                    flight_number, date, attempt + 1, max_attempts,
                )
        raise GatewayConflict(
            f"Gave up writing {flight_number}/{date} after {max_attempts} conflicts",
            {"flight_number": flight_number, "date": date},
        )
