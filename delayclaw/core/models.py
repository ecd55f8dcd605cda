"""
delayclaw/core/models.py

DelayClaw Data Model

Two families of records live here.

LEDGER ENTITIES: decoded program accounts, one frozen dataclass per
account kind. Each carries a KIND tag so a decoded account is a tagged
variant, never an open-ended dict:

    Config              program-wide settings, current or legacy layout
    Product             insurance product terms, keyed by id
    Policy              one purchased policy, keyed by id
    LiquidityProvider   per-depositor liquidity bookkeeping

FLIGHT METADATA: the documents held by the external flight store:

    FlightRecord            one flight on one calendar date
    PassengerNamedRecord    one PNR linked to a flight (and maybe a policy)
    Passenger               passenger details, display only

Amounts are integers in 6-decimal fixed point (1 USDC = 1_000_000).
"""

import copy
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, ClassVar, Dict, List, Optional, Union

from solders.pubkey import Pubkey

from delayclaw.core.exceptions import ValidationError


FIXED_POINT_SCALE = 1_000_000
BASIS_POINTS      = 10_000

PNR_LENGTH        = 6
MAX_FLIGHT_NUMBER = 20

# Placeholder used by the flight store for policy fields not yet known.
NOT_AVAILABLE = "NA"


# ─────────────────────────────────────────────────────────────
# Ledger entities
# ─────────────────────────────────────────────────────────────

class AccountKind(Enum):
    CONFIG             = "Config"
    PRODUCT            = "Product"
    POLICY             = "Policy"
    LIQUIDITY_PROVIDER = "LiquidityProvider"


class PolicyStatus(IntEnum):
    """
    Borsh enum tag order is fixed: Active=0, PaidOut=1, Expired=2.
    Status only moves forward; PaidOut and Expired are terminal.
    """
    ACTIVE   = 0
    PAID_OUT = 1
    EXPIRED  = 2

    @property
    def is_terminal(self) -> bool:
        return self is not PolicyStatus.ACTIVE

    def __str__(self) -> str:
        return {0: "Active", 1: "PaidOut", 2: "Expired"}[self.value]


@dataclass(frozen=True)
class Config:
    """Program configuration. risk_pool_vault is only present in the legacy layout."""

    KIND: ClassVar[AccountKind] = AccountKind.CONFIG

    admin:           Pubkey
    usdc_mint:       Pubkey
    oracle_program:  Pubkey
    paused:          bool
    bump:            int
    risk_pool_vault: Optional[Pubkey] = None

    @property
    def is_legacy(self) -> bool:
        return self.risk_pool_vault is not None


@dataclass(frozen=True)
class Product:
    KIND: ClassVar[AccountKind] = AccountKind.PRODUCT

    id:                      int
    delay_threshold_minutes: int
    coverage_amount:         int
    premium_rate_bps:        int
    claim_window_hours:      int
    active:                  bool = True
    bump:                    int  = 0
    # Display only; never written to the ledger.
    label:                   str  = field(default="", compare=False)

    def required_premium(self) -> int:
        """Minimum premium the program accepts for this product."""
        return self.coverage_amount * self.premium_rate_bps // BASIS_POINTS


@dataclass(frozen=True)
class Policy:
    KIND: ClassVar[AccountKind] = AccountKind.POLICY

    id:              int
    policyholder:    Pubkey
    product_id:      int
    flight_number:   str
    departure_time:  int
    premium_paid:    int
    coverage_amount: int
    status:          PolicyStatus
    created_at:      int
    paid_at:         Optional[int] = None
    bump:            int = 0

    @property
    def is_active(self) -> bool:
        return self.status is PolicyStatus.ACTIVE

    def claim_deadline(self, product: Product) -> int:
        """Last unix second at which a claim may still be settled."""
        return self.created_at + product.claim_window_hours * 3600


@dataclass(frozen=True)
class LiquidityProvider:
    KIND: ClassVar[AccountKind] = AccountKind.LIQUIDITY_PROVIDER

    provider:        Pubkey
    total_deposited: int
    total_withdrawn: int
    active_deposit:  int
    bump:            int = 0


Entity = Union[Config, Product, Policy, LiquidityProvider]

ENTITY_TYPES: Dict[AccountKind, type] = {
    AccountKind.CONFIG:             Config,
    AccountKind.PRODUCT:            Product,
    AccountKind.POLICY:             Policy,
    AccountKind.LIQUIDITY_PROVIDER: LiquidityProvider,
}


# ─────────────────────────────────────────────────────────────
# Flight metadata
# ─────────────────────────────────────────────────────────────

def _na(value: Any) -> Any:
    return NOT_AVAILABLE if value is None else value


def _from_na(value: Any) -> Any:
    return None if value in (None, NOT_AVAILABLE) else value


def check_flight_number(flight_number: str) -> str:
    """Flight numbers are stored as a bounded string on the Policy account."""
    if not isinstance(flight_number, str) or not flight_number:
        raise ValidationError("flight_number is required")
    if len(flight_number.encode("utf-8")) > MAX_FLIGHT_NUMBER:
        raise ValidationError(
            f"flight_number exceeds {MAX_FLIGHT_NUMBER} bytes",
            {"flight_number": flight_number},
        )
    return flight_number


def normalize_pnr(pnr: str) -> str:
    if not isinstance(pnr, str) or len(pnr) != PNR_LENGTH:
        raise ValidationError(f"PNR must be exactly {PNR_LENGTH} characters")
    return pnr.upper()


@dataclass
class Passenger:
    full_name:     str
    date_of_birth: Optional[str] = None
    document_id:   Optional[str] = None
    seat:          Optional[str] = None
    email:         Optional[str] = None
    phone:         Optional[str] = None

    _WIRE = {
        "full_name":     "fullName",
        "date_of_birth": "dateOfBirth",
        "document_id":   "documentId",
        "seat":          "seat",
        "email":         "email",
        "phone":         "phone",
    }

    def to_dict(self) -> Dict[str, Any]:
        return {
            wire: getattr(self, attr)
            for attr, wire in self._WIRE.items()
            if getattr(self, attr) is not None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Passenger":
        if not isinstance(data, dict) or not data.get("fullName"):
            raise ValidationError("passenger.fullName is required")
        return cls(**{attr: data.get(wire) for attr, wire in cls._WIRE.items()})


@dataclass
class PassengerNamedRecord:
    pnr:              str
    passenger:        Passenger
    policy_id:        Optional[int] = None
    policyholder:     Optional[str] = None
    wallet:           Optional[str] = None
    nft_metadata_url: Optional[str] = None
    notes:            Optional[str] = None
    payout_status:    Optional[str] = None
    payout_tx_sig:    Optional[str] = None
    created_at:       Optional[int] = None
    updated_at:       Optional[int] = None

    def __post_init__(self):
        self.pnr = normalize_pnr(self.pnr)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "pnr":              self.pnr,
            "policyId":         _na(self.policy_id),
            "policyholder":     _na(self.policyholder),
            "wallet":           _na(self.wallet),
            "passenger":        self.passenger.to_dict(),
            "nft_metadata_url": _na(self.nft_metadata_url),
            "created_at":       self.created_at,
            "updated_at":       self.updated_at,
        }
        if self.notes is not None:
            data["notes"] = self.notes
        if self.payout_status is not None:
            data["payout_status"] = self.payout_status
        if self.payout_tx_sig is not None:
            data["payout_tx_sig"] = self.payout_tx_sig
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PassengerNamedRecord":
        policy_id = _from_na(data.get("policyId"))
        return cls(
            pnr=              data["pnr"],
            passenger=        Passenger.from_dict(data.get("passenger") or {}),
            policy_id=        int(policy_id) if policy_id is not None else None,
            policyholder=     _from_na(data.get("policyholder")),
            wallet=           _from_na(data.get("wallet")),
            nft_metadata_url= _from_na(data.get("nft_metadata_url")),
            notes=            data.get("notes"),
            payout_status=    data.get("payout_status"),
            payout_tx_sig=    data.get("payout_tx_sig"),
            created_at=       data.get("created_at"),
            updated_at=       data.get("updated_at"),
        )


@dataclass
class FlightRecord:
    """
    One flight on one date. Merged, never deleted while a linked policy
    is still Active. revision is the store's concurrency token and is not
    part of the document.
    """

    flight_number:            str
    date:                     str
    scheduled_departure_unix: Optional[int] = None
    actual_departure_unix:    Optional[int] = None
    origin:                   Optional[str] = None
    destination:              Optional[str] = None
    status:                   str = "scheduled"
    delay_minutes:            Optional[int] = None
    settlement_state:         Optional[str] = None
    pnrs:                     List[PassengerNamedRecord] = field(default_factory=list)
    created_at:               Optional[int] = None
    updated_at:               Optional[int] = None
    revision:                 Optional[str] = field(default=None, compare=False)

    _OPTIONAL = (
        "scheduled_departure_unix",
        "actual_departure_unix",
        "origin",
        "destination",
        "delay_minutes",
        "settlement_state",
    )

    # ── Queries ───────────────────────────────────────────────

    def policy_ids(self) -> List[int]:
        """Linked policy ids in PNR order, each once."""
        seen: List[int] = []
        for record in self.pnrs:
            if record.policy_id is not None and record.policy_id not in seen:
                seen.append(record.policy_id)
        return seen

    def find_pnr(self, pnr: str) -> Optional[PassengerNamedRecord]:
        pnr = pnr.upper()
        for record in self.pnrs:
            if record.pnr == pnr:
                return record
        return None

    def records_for_policy(self, policy_id: int) -> List[PassengerNamedRecord]:
        return [r for r in self.pnrs if r.policy_id == policy_id]

    # ── Mutation ──────────────────────────────────────────────

    def merge_pnr(self, incoming: PassengerNamedRecord, now: int) -> PassengerNamedRecord:
        """
        Add or update a PNR.

        An existing PNR keeps its policy fields unless the incoming record
        supplies them; passenger details are replaced when supplied.
        """
        existing = self.find_pnr(incoming.pnr)
        if existing is None:
            incoming.created_at = incoming.created_at or now
            incoming.updated_at = now
            self.pnrs.append(incoming)
            return incoming

        for attr in (
            "policy_id",
            "policyholder",
            "wallet",
            "nft_metadata_url",
            "notes",
            "payout_status",
            "payout_tx_sig",
        ):
            value = getattr(incoming, attr)
            if value is not None:
                setattr(existing, attr, value)
        if incoming.passenger is not None:
            existing.passenger = incoming.passenger
        existing.updated_at = now
        return existing

    def copy(self) -> "FlightRecord":
        return copy.deepcopy(self)

    # ── Serialization ─────────────────────────────────────────

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "flight_number": self.flight_number,
            "date":          self.date,
            "status":        self.status,
        }
        for attr in self._OPTIONAL:
            value = getattr(self, attr)
            if value is not None:
                data[attr] = value
        data["pnrs"]       = [p.to_dict() for p in self.pnrs]
        data["created_at"] = self.created_at
        data["updated_at"] = self.updated_at
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], revision: Optional[str] = None) -> "FlightRecord":
        try:
            return cls(
                flight_number=            data["flight_number"],
                date=                     data["date"],
                scheduled_departure_unix= data.get("scheduled_departure_unix"),
                actual_departure_unix=    data.get("actual_departure_unix"),
                origin=                   data.get("origin"),
                destination=              data.get("destination"),
                status=                   data.get("status") or "scheduled",
                delay_minutes=            data.get("delay_minutes"),
                settlement_state=         data.get("settlement_state"),
                pnrs=                     [PassengerNamedRecord.from_dict(p) for p in data.get("pnrs") or []],
                created_at=               data.get("created_at"),
                updated_at=               data.get("updated_at"),
                revision=                 revision,
            )
        except KeyError as exc:
            raise ValidationError(f"Flight record is missing field {exc}")
