"""
Flight metadata service.

Transport-agnostic implementation of the three flight endpoints:

    GET  /flight/{number}/{date}      get_flight(...)
    POST /flight/register             register(body)
    POST /flight/update-departure     update_departure(body, api_key)

Every call returns a ServiceResponse carrying an HTTP-equivalent status
and a JSON-serialisable body. Failures never raise out of the service;
they come back as {"error": "..."} with status 400, 401, 404, 409 or 500.

All writes go through the gateway's read-modify-write retry loop.
"""

import hmac
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from delayclaw.core.exceptions import (
    DelayClawError,
    GatewayConflict,
    GatewayError,
    NotFoundError,
    ValidationError,
)
from delayclaw.core.models import (
    NOT_AVAILABLE,
    FlightRecord,
    Passenger,
    PassengerNamedRecord,
    Policy,
    check_flight_number,
    normalize_pnr,
)
from delayclaw.core.time import parse_departure, previous_date, unix_now, utc_date, validate_date
from delayclaw.gateway.base import FlightMetadataGateway
from delayclaw.settlement.evaluator import delay_minutes

logger = logging.getLogger(__name__)

UNAUTHORIZED_MESSAGE = (
    "Unauthorized. Valid API key required in x-api-key header "
    "or Authorization: Bearer <key>"
)

FLIGHT_STATUSES = ("scheduled", "departed", "landed", "cancelled", "unknown")


@dataclass
class ServiceResponse:
    status: int
    body:   Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @classmethod
    def error(cls, status: int, message: str) -> "ServiceResponse":
        return cls(status, {"error": message})


def extract_api_key(headers: Mapping[str, str]) -> Optional[str]:
    """API key from x-api-key, falling back to Authorization: Bearer."""
    lowered = {k.lower(): v for k, v in headers.items()}
    if lowered.get("x-api-key"):
        return lowered["x-api-key"]
    auth = lowered.get("authorization") or ""
    if auth.startswith("Bearer "):
        return auth[len("Bearer "):].strip() or None
    return None


class FlightService:
    """
    Args:
        gateway:          flight store
        api_key:          key required by update_departure; None rejects every call
        policy_lookup:    optional policy_id -> Policy, used by register to
                          fill in the policyholder
        conflict_retries: read-modify-write attempts per write
        clock:            unix seconds source
    """

    def __init__(
        self,
        gateway:          FlightMetadataGateway,
        api_key:          Optional[str] = None,
        policy_lookup:    Optional[Callable[[int], Optional[Policy]]] = None,
        conflict_retries: int = 5,
        clock:            Callable[[], int] = unix_now,
    ):
        self.gateway          = gateway
        self.api_key          = api_key
        self.policy_lookup    = policy_lookup
        self.conflict_retries = conflict_retries
        self.clock            = clock

    # ── GET /flight/{number}/{date} ───────────────────────────

    def get_flight(self, flight_number: str, date: str) -> ServiceResponse:
        try:
            validate_date(date)
            record = self.gateway.get_flight_record(flight_number, date)
        except ValidationError as exc:
            return ServiceResponse.error(400, exc.message)
        except NotFoundError:
            return ServiceResponse.error(404, "Flight not found")
        except GatewayError as exc:
            return ServiceResponse.error(500, str(exc))

        now  = self.clock()
        body = record.to_dict()
        hint = _status_hint(record, now)
        for pnr in body["pnrs"]:
            pnr["status_hint"] = hint
        body["as_of"] = now
        return ServiceResponse(200, body)

    # ── POST /flight/register ─────────────────────────────────

    def register(self, body: Mapping[str, Any]) -> ServiceResponse:
        body = body or {}
        flight_number = body.get("flight_number")
        date          = body.get("date")
        if not flight_number or not date:
            return ServiceResponse.error(400, "flight_number and date are required")

        try:
            check_flight_number(flight_number)
            validate_date(date)
            fields   = self._flight_fields(body)
            incoming = self._incoming_pnr(body)
        except ValidationError as exc:
            return ServiceResponse.error(400, exc.message)

        def mutate(current: Optional[FlightRecord]) -> FlightRecord:
            now = self.clock()
            if current is None:
                current = FlightRecord(flight_number=flight_number, date=date, created_at=now)
            for attr, value in fields.items():
                setattr(current, attr, value)
            if "actual_departure_unix" in fields and "delay_minutes" not in fields:
                current.delay_minutes = _delay(current)
            if incoming is not None:
                pnr = incoming()
                if current.find_pnr(pnr.pnr) is None and pnr.passenger is None:
                    raise ValidationError("passenger.fullName is required for a new PNR")
                current.merge_pnr(pnr, now)
            current.updated_at = now
            return current

        _, response = self._write(flight_number, date, mutate)
        if response is not None:
            return response
        out: Dict[str, Any] = {"ok": True, "flight_number": flight_number, "date": date}
        if body.get("pnr"):
            out["pnr"] = str(body["pnr"]).upper()
        return ServiceResponse(200, out)

    def _flight_fields(self, body: Mapping[str, Any]) -> Dict[str, Any]:
        fields: Dict[str, Any] = {}
        if body.get("departure_unix") is not None:
            fields["scheduled_departure_unix"] = parse_departure(body["departure_unix"])
        if body.get("actual_departure_unix") is not None:
            fields["actual_departure_unix"] = parse_departure(body["actual_departure_unix"])
        for attr in ("origin", "destination"):
            if body.get(attr):
                fields[attr] = body[attr]
        if body.get("status") is not None:
            if body["status"] not in FLIGHT_STATUSES:
                raise ValidationError(f"status must be one of {', '.join(FLIGHT_STATUSES)}")
            fields["status"] = body["status"]
        if body.get("delay_minutes") is not None:
            try:
                fields["delay_minutes"] = int(body["delay_minutes"])
            except (TypeError, ValueError):
                raise ValidationError("delay_minutes must be an integer")
        return fields

    def _incoming_pnr(self, body: Mapping[str, Any]) -> Optional[Callable[[], PassengerNamedRecord]]:
        """Validate the PNR part of a register body; returns a factory."""
        if not body.get("pnr"):
            return None
        pnr       = normalize_pnr(body["pnr"])
        passenger = Passenger.from_dict(body["passenger"]) if body.get("passenger") else None

        policy_id = body.get("policyId")
        if policy_id == NOT_AVAILABLE:
            policy_id = None
        if policy_id is not None:
            if isinstance(policy_id, bool) or not str(policy_id).isdigit():
                raise ValidationError("policyId must be a non-negative integer")
            policy_id = int(policy_id)
        policyholder = self._lookup_policyholder(policy_id) if policy_id is not None else None

        def build() -> PassengerNamedRecord:
            return PassengerNamedRecord(
                pnr=              pnr,
                passenger=        passenger,
                policy_id=        policy_id,
                policyholder=     policyholder,
                wallet=           body.get("wallet"),
                nft_metadata_url= body.get("nft_metadata_url"),
                notes=            body.get("notes"),
            )
        return build

    def _lookup_policyholder(self, policy_id: int) -> Optional[str]:
        if self.policy_lookup is None:
            return None
        try:
            policy = self.policy_lookup(policy_id)
        except DelayClawError as exc:
            logger.warning("Could not load policy %d for registration: %s", policy_id, exc)
            return None
        return str(policy.policyholder) if policy is not None else None

    # ── POST /flight/update-departure ─────────────────────────

    def update_departure(
        self,
        body:    Mapping[str, Any],
        api_key: Optional[str],
    ) -> ServiceResponse:
        if not self.api_key or not api_key or not hmac.compare_digest(
            api_key.encode(), self.api_key.encode()
        ):
            return ServiceResponse.error(401, UNAUTHORIZED_MESSAGE)

        body = body or {}
        flight_number = body.get("flight_number")
        raw_actual    = body.get("actual_departure_unix", body.get("actual_departure_iso"))
        if not flight_number or raw_actual in (None, ""):
            return ServiceResponse.error(
                400, "flight_number and actual_departure_unix are required"
            )
        try:
            actual = parse_departure(raw_actual)
            date   = body.get("date")
            candidates = [validate_date(date)] if date else [utc_date(actual), previous_date(utc_date(actual))]
        except ValidationError as exc:
            return ServiceResponse.error(400, exc.message)

        try:
            date = next(
                (d for d in candidates if self.gateway.find_flight_record(flight_number, d)),
                None,
            )
        except DelayClawError as exc:
            return ServiceResponse.error(500, str(exc))
        if date is None:
            return ServiceResponse.error(404, "Flight not found")

        def mutate(current: Optional[FlightRecord]) -> FlightRecord:
            if current is None:
                raise NotFoundError("Flight not found")
            current.actual_departure_unix = actual
            current.delay_minutes         = _delay(current)
            current.status                = "departed"
            current.updated_at            = self.clock()
            return current

        stored, response = self._write(flight_number, date, mutate)
        if response is not None:
            return response

        delay = stored.delay_minutes
        logger.info("Flight %s on %s departed, delay %s min", flight_number, date, delay)
        return ServiceResponse(200, {
            "ok":            True,
            "flight_number": flight_number,
            "date":          date,
            "delay_minutes": delay,
            "message": (
                f"Updated flight {flight_number} with actual departure. "
                f"Delay: {delay if delay is not None else 'unknown'} minutes"
            ),
        })

    # ── Shared ────────────────────────────────────────────────

    def _write(
        self,
        flight_number: str,
        date:          str,
        mutate:        Callable[[Optional[FlightRecord]], FlightRecord],
    ) -> Tuple[Optional[FlightRecord], Optional[ServiceResponse]]:
        """Run the retry loop. Returns (stored record, None) or (None, error response)."""
        try:
            stored = self.gateway.update_with_retry(
                flight_number, date, mutate, max_attempts=self.conflict_retries
            )
        except ValidationError as exc:
            return None, ServiceResponse.error(400, exc.message)
        except NotFoundError:
            return None, ServiceResponse.error(404, "Flight not found")
        except GatewayConflict as exc:
            return None, ServiceResponse.error(409, exc.message)
        except DelayClawError as exc:
            logger.error("Flight store write failed for %s/%s: %s", flight_number, date, exc)
            return None, ServiceResponse.error(500, str(exc))
        return stored, None


def _delay(record: FlightRecord) -> Optional[int]:
    if record.scheduled_departure_unix is None or record.actual_departure_unix is None:
        return None
    return delay_minutes(record.scheduled_departure_unix, record.actual_departure_unix)


def _status_hint(record: FlightRecord, now: int) -> str:
    scheduled = record.scheduled_departure_unix
    if isinstance(scheduled, int) and now > scheduled:
        if record.actual_departure_unix:
            return "departure passed; check delay for payout"
        return "departure passed; waiting for actual departure time"
    return "upcoming or unknown"
