"""
Shared fixtures.

The default world: one program with an initialized Config whose admin
is the test signer, product 1 (60 min threshold, 100 USDC, 24 h claim
window) and an empty in-memory flight store.
"""

import pytest
from solders.pubkey import Pubkey

from delayclaw.core.crypto import Ed25519KeyManager
from delayclaw.core.models import (
    Config,
    FlightRecord,
    Passenger,
    PassengerNamedRecord,
    Policy,
    PolicyStatus,
    Product,
)
from delayclaw.gateway.memory import InMemoryFlightGateway
from delayclaw.ledger.addresses import AddressDeriver
from delayclaw.ledger.codec import AccountCodec
from delayclaw.ledger.submitter import TransactionSubmitter
from delayclaw.settlement.claims import ClaimRegistry
from delayclaw.settlement.engine import PayoutOrchestrator
from tests.helpers.fake_ledger import FakeLedger

PROGRAM_ID = "H8713ke9JBR9uHkahFMP15482LH2XkMdjNvmyEwRzeaX"
USDC_MINT  = Pubkey.from_string("4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU")
ORACLE     = Pubkey.from_string("SW1TCH7qEPTdLsDHRgPuMQjbQxKdH2aBStViMFnt64f")

# 2025-11-02T10:00:00Z
T0     = 1_762_077_600
FLIGHT = "AI101"
DATE   = "2025-11-02"


class Clock:
    """Settable unix clock."""

    def __init__(self, now: int):
        self.now = now

    def __call__(self) -> int:
        return self.now


def make_product(**overrides) -> Product:
    terms = dict(
        id=                      1,
        delay_threshold_minutes= 60,
        coverage_amount=         100_000_000,
        premium_rate_bps=        120,
        claim_window_hours=      24,
    )
    terms.update(overrides)
    return Product(**terms)


def make_policy(policy_id: int = 42, **overrides) -> Policy:
    fields = dict(
        id=              policy_id,
        policyholder=    Pubkey.new_unique(),
        product_id=      1,
        flight_number=   FLIGHT,
        departure_time=  T0,
        premium_paid=    1_200_000,
        coverage_amount= 100_000_000,
        status=          PolicyStatus.ACTIVE,
        created_at=      T0 - 3600,
    )
    fields.update(overrides)
    return Policy(**fields)


def make_record(*policy_ids, actual=None, flight=FLIGHT, date=DATE, scheduled=T0) -> FlightRecord:
    pnrs = [
        PassengerNamedRecord(
            pnr=       f"PNR{pid:03d}"[-6:],
            passenger= Passenger(full_name=f"Traveller {pid}"),
            policy_id= pid,
        )
        for pid in policy_ids
    ]
    return FlightRecord(
        flight_number=            flight,
        date=                     date,
        scheduled_departure_unix= scheduled,
        actual_departure_unix=    actual,
        pnrs=                     pnrs,
        created_at=               T0 - 86400,
        updated_at=               T0 - 86400,
    )


@pytest.fixture
def signer():
    return Ed25519KeyManager.generate()


@pytest.fixture
def deriver():
    return AddressDeriver(PROGRAM_ID)


@pytest.fixture
def codec():
    return AccountCodec()


@pytest.fixture
def clock():
    return Clock(T0 + 5400 + 600)


@pytest.fixture
def ledger(deriver, signer, clock):
    fake = FakeLedger(deriver, clock=clock)
    fake.put_config(Config(
        admin=          signer.pubkey,
        usdc_mint=      USDC_MINT,
        oracle_program= ORACLE,
        paused=         False,
        bump=           deriver.config().bump,
    ))
    fake.put_product(make_product())
    return fake


@pytest.fixture
def gateway():
    return InMemoryFlightGateway()


@pytest.fixture
def submitter(ledger):
    return TransactionSubmitter(
        ledger,
        max_broadcast_attempts= 3,
        max_confirmation_polls= 2,
        sleep=                  lambda seconds: None,
    )


@pytest.fixture
def claims():
    return ClaimRegistry()


@pytest.fixture
def make_orchestrator(ledger, submitter, signer, deriver, gateway, claims, clock):
    def build(**overrides):
        kwargs = dict(
            rpc=       ledger,
            submitter= submitter,
            signer=    signer,
            deriver=   deriver,
            gateway=   gateway,
            claims=    claims,
            clock=     clock,
        )
        kwargs.update(overrides)
        return PayoutOrchestrator(**kwargs)
    return build


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()
