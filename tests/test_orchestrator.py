"""
tests/test_orchestrator.py

End-to-end settlement against the fake ledger and in-memory flight store.
"""

import threading

import pytest
from solders.pubkey import Pubkey

from delayclaw.core.crypto import Ed25519KeyManager
from delayclaw.core.exceptions import ConfigurationError, NotFoundError
from delayclaw.core.models import Config, PolicyStatus
from delayclaw.ledger.addresses import associated_token_address
from delayclaw.settlement.claims import ClaimRegistry
from delayclaw.settlement.engine import FlightState, Outcome
from delayclaw.settlement.journal import SettlementJournal
from tests.conftest import DATE, FLIGHT, ORACLE, T0, USDC_MINT, make_policy, make_product, make_record

DELAYED = T0 + 5400   # 90 minutes late
ON_TIME = T0 + 1200   # 20 minutes late


def _outcomes(report):
    return {o.policy_id: o.outcome for o in report.outcomes}


@pytest.fixture
def delayed_flight(ledger, gateway):
    ledger.put_policy(make_policy(42))
    gateway.upsert_flight_record(make_record(42, actual=DELAYED), None)


# ── Happy path ────────────────────────────────────────────────────────────────

class TestPayout:

    def test_delayed_flight_pays_out(self, orchestrator, ledger, gateway, delayed_flight):
        report = orchestrator.settle_flight(FLIGHT, DATE)

        outcome = report.outcomes[0]
        assert outcome.outcome is Outcome.PAID_OUT
        assert outcome.delay_minutes == 90
        assert outcome.signature
        assert report.state is FlightState.SETTLED
        assert not report.failed

        policy = ledger.policy(42)
        assert policy.status is PolicyStatus.PAID_OUT
        assert policy.paid_at == T0 + 6000
        name, fields = ledger.applied[0]
        assert name == "process_payout"
        assert fields == {"policy_id": 42, "delay_minutes": 90}

    def test_outcome_written_back(self, orchestrator, gateway, delayed_flight):
        report = orchestrator.settle_flight(FLIGHT, DATE)
        record = gateway.get_flight_record(FLIGHT, DATE)
        pnr = record.records_for_policy(42)[0]
        assert pnr.payout_status == "paid_out"
        assert pnr.payout_tx_sig == report.outcomes[0].signature
        assert record.settlement_state == "settled"
        assert report.write_back_error is None


class TestIdempotence:

    def test_second_run_is_a_no_op(self, orchestrator, ledger, delayed_flight):
        orchestrator.settle_flight(FLIGHT, DATE)
        report = orchestrator.settle_flight(FLIGHT, DATE)
        assert _outcomes(report) == {42: Outcome.ALREADY_SETTLED}
        assert report.state is FlightState.SETTLED
        assert ledger.sent_names().count("process_payout") == 1

    def test_fresh_process_rereads_ledger(self, make_orchestrator, ledger, delayed_flight):
        make_orchestrator().settle_flight(FLIGHT, DATE)
        report = make_orchestrator(claims=ClaimRegistry()).settle_flight(FLIGHT, DATE)
        assert _outcomes(report) == {42: Outcome.ALREADY_SETTLED}
        assert ledger.sent_names().count("process_payout") == 1

    def test_already_settled_keeps_paid_out_on_pnr(self, make_orchestrator, gateway, delayed_flight):
        make_orchestrator().settle_flight(FLIGHT, DATE)
        make_orchestrator(claims=ClaimRegistry()).settle_flight(FLIGHT, DATE)
        pnr = gateway.get_flight_record(FLIGHT, DATE).records_for_policy(42)[0]
        assert pnr.payout_status == "paid_out"

    def test_concurrent_triggers_pay_once(self, make_orchestrator, ledger, delayed_flight):
        orchestrator = make_orchestrator()
        reports = []
        barrier  = threading.Barrier(4)

        def run():
            barrier.wait()
            reports.append(orchestrator.settle_flight(FLIGHT, DATE))

        threads = [threading.Thread(target=run) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(reports) == 4
        outcomes = [r.outcomes[0].outcome for r in reports]
        assert outcomes.count(Outcome.PAID_OUT) == 1
        assert set(outcomes) <= {Outcome.PAID_OUT, Outcome.DUPLICATE, Outcome.ALREADY_SETTLED}
        assert ledger.applied_names().count("process_payout") == 1


# ── Decisions ─────────────────────────────────────────────────────────────────

class TestDecisions:

    def test_below_threshold_is_ineligible(self, orchestrator, ledger, gateway):
        ledger.put_policy(make_policy(42))
        gateway.upsert_flight_record(make_record(42, actual=ON_TIME), None)
        report = orchestrator.settle_flight(FLIGHT, DATE)
        assert report.outcomes[0].outcome is Outcome.INELIGIBLE
        assert report.outcomes[0].delay_minutes == 20
        assert report.state is FlightState.EVALUATED
        assert ledger.sent == []
        pnr = gateway.get_flight_record(FLIGHT, DATE).records_for_policy(42)[0]
        assert pnr.payout_status == "ineligible"

    def test_updated_product_terms_apply_to_existing_policies(self, orchestrator, ledger, gateway):
        ledger.put_policy(make_policy(42))
        ledger.put_product(make_product(delay_threshold_minutes=120))
        gateway.upsert_flight_record(make_record(42, actual=DELAYED), None)
        report = orchestrator.settle_flight(FLIGHT, DATE)
        assert report.outcomes[0].outcome is Outcome.INELIGIBLE
        assert report.outcomes[0].delay_minutes == 90
        assert ledger.sent == []

    def test_no_departure_is_pending(self, orchestrator, ledger, gateway):
        ledger.put_policy(make_policy(42))
        gateway.upsert_flight_record(make_record(42), None)
        report = orchestrator.settle_flight(FLIGHT, DATE)
        assert report.state is FlightState.PENDING
        assert _outcomes(report) == {42: Outcome.NOT_EVALUABLE}
        assert ledger.sent == []

    def test_window_elapsed_expires(self, orchestrator, ledger, gateway, clock):
        clock.now = T0 + 30 * 3600
        ledger.put_policy(make_policy(42))
        gateway.upsert_flight_record(make_record(42, actual=DELAYED), None)
        report = orchestrator.settle_flight(FLIGHT, DATE)
        assert _outcomes(report) == {42: Outcome.EXPIRED}
        assert report.state is FlightState.SETTLED
        assert ledger.applied_names() == ["expire_policy"]
        assert ledger.policy(42).status is PolicyStatus.EXPIRED

    def test_ineligible_policy_expires_later(self, orchestrator, ledger, gateway, clock):
        ledger.put_policy(make_policy(42))
        gateway.upsert_flight_record(make_record(42, actual=ON_TIME), None)
        orchestrator.settle_flight(FLIGHT, DATE)
        clock.now = T0 + 23 * 3600 + 1
        report = orchestrator.settle_flight(FLIGHT, DATE)
        assert _outcomes(report) == {42: Outcome.EXPIRED}

    def test_paused_program_defers(self, orchestrator, ledger, delayed_flight):
        config = ledger.config()
        ledger.put_config(Config(**{**config.__dict__, "paused": True}))
        report = orchestrator.settle_flight(FLIGHT, DATE)
        assert _outcomes(report) == {42: Outcome.DEFERRED}
        assert report.state is FlightState.EVALUATED
        assert not report.failed
        assert ledger.sent == []

    def test_scheduled_time_falls_back_to_policy(self, orchestrator, ledger, gateway):
        ledger.put_policy(make_policy(42))
        gateway.upsert_flight_record(make_record(42, actual=DELAYED, scheduled=None), None)
        report = orchestrator.settle_flight(FLIGHT, DATE)
        assert report.outcomes[0].outcome is Outcome.PAID_OUT

    def test_wrong_flight_on_policy_fails(self, orchestrator, ledger, gateway):
        ledger.put_policy(make_policy(42, flight_number="6E202"))
        gateway.upsert_flight_record(make_record(42, actual=DELAYED), None)
        report = orchestrator.settle_flight(FLIGHT, DATE)
        assert _outcomes(report) == {42: Outcome.FAILED}
        assert ledger.sent == []


# ── Preconditions ─────────────────────────────────────────────────────────────

class TestPreconditions:

    def test_missing_flight(self, orchestrator):
        with pytest.raises(NotFoundError):
            orchestrator.settle_flight(FLIGHT, DATE)

    def test_missing_config(self, orchestrator, ledger, deriver, delayed_flight):
        del ledger.accounts[deriver.config().address]
        with pytest.raises(NotFoundError):
            orchestrator.settle_flight(FLIGHT, DATE)

    def test_signer_must_be_admin(self, make_orchestrator, delayed_flight):
        with pytest.raises(ConfigurationError):
            make_orchestrator(signer=Ed25519KeyManager.generate()).settle_flight(FLIGHT, DATE)

    def test_batch_deadline_defers_remaining(self, make_orchestrator, ledger, gateway):
        for pid in (1, 2):
            ledger.put_policy(make_policy(pid))
        gateway.upsert_flight_record(make_record(1, 2, actual=DELAYED), None)
        ticks = iter([0.0] + [1.0] * 10)
        orchestrator = make_orchestrator(batch_timeout=0.5, monotonic=lambda: next(ticks))
        report = orchestrator.settle_flight(FLIGHT, DATE)
        assert _outcomes(report) == {1: Outcome.DEFERRED, 2: Outcome.DEFERRED}


# ── Isolation ─────────────────────────────────────────────────────────────────

class TestBatchIsolation:

    def test_bad_policies_do_not_stop_the_batch(self, orchestrator, ledger, gateway, deriver):
        ledger.put_policy(make_policy(42))
        ledger.put_raw(deriver.policy(7).address, b"\x00" * 40)
        gateway.upsert_flight_record(make_record(9, 7, 42, actual=DELAYED), None)

        report = orchestrator.settle_flight(FLIGHT, DATE)

        assert _outcomes(report) == {
            9:  Outcome.NOT_FOUND,
            7:  Outcome.DECODE_FAILED,
            42: Outcome.PAID_OUT,
        }
        assert report.failed
        assert report.state is FlightState.EVALUATED

    def test_settle_many_reports_missing_flights(self, orchestrator, delayed_flight):
        reports = orchestrator.settle_many([(FLIGHT, DATE), ("ZZ9", DATE), (FLIGHT, DATE)])
        assert [r.flight_number for r in reports] == [FLIGHT, "ZZ9"]
        assert reports[0].outcomes[0].outcome is Outcome.PAID_OUT
        assert reports[1].error
        assert reports[1].failed

    def test_write_back_failure_is_reported(self, make_orchestrator, ledger, gateway, delayed_flight):
        class ReadOnly:
            def get_flight_record(self, flight_number, date):
                return gateway.get_flight_record(flight_number, date)

            def update_with_retry(self, *args, **kwargs):
                raise NotFoundError("store offline")

        report = make_orchestrator(gateway=ReadOnly()).settle_flight(FLIGHT, DATE)
        assert report.outcomes[0].outcome is Outcome.PAID_OUT
        assert report.write_back_error == "store offline"


# ── Submission ambiguity ──────────────────────────────────────────────────────

class TestSubmission:

    def test_late_confirmation_resolved_by_reread(self, orchestrator, ledger, delayed_flight):
        ledger.hold_confirmations = 1
        report = orchestrator.settle_flight(FLIGHT, DATE)
        assert _outcomes(report) == {42: Outcome.PAID_OUT}
        assert ledger.sent_names() == ["process_payout"]
        assert report.outcomes[0].signature

    def test_dropped_transaction_is_resubmitted(self, orchestrator, ledger, delayed_flight):
        ledger.drop_next = 1
        report = orchestrator.settle_flight(FLIGHT, DATE)
        assert _outcomes(report) == {42: Outcome.PAID_OUT}
        assert ledger.sent_names() == ["process_payout", "process_payout"]
        assert ledger.applied_names() == ["process_payout"]

    def test_never_confirmed_is_unresolved(self, orchestrator, ledger, gateway, delayed_flight):
        ledger.drop_next = 10
        report = orchestrator.settle_flight(FLIGHT, DATE)
        outcome = report.outcomes[0]
        assert outcome.outcome is Outcome.UNRESOLVED
        assert outcome.signature
        assert len(ledger.sent) == 3
        assert ledger.policy(42).status is PolicyStatus.ACTIVE
        assert report.failed

    def test_transport_failures_recover(self, orchestrator, ledger, delayed_flight):
        ledger.transport_failures = 4
        report = orchestrator.settle_flight(FLIGHT, DATE)
        assert _outcomes(report) == {42: Outcome.PAID_OUT}

    def test_simulation_rejection_fails(self, orchestrator, ledger, delayed_flight):
        ledger.reject_next = 1
        report = orchestrator.settle_flight(FLIGHT, DATE)
        assert _outcomes(report) == {42: Outcome.FAILED}
        assert ledger.policy(42).status is PolicyStatus.ACTIVE

    def test_execution_failure_fails(self, orchestrator, ledger, delayed_flight):
        ledger.fail_execution = 1
        report = orchestrator.settle_flight(FLIGHT, DATE)
        outcome = report.outcomes[0]
        assert outcome.outcome is Outcome.FAILED
        assert outcome.signature

    def test_failed_policy_retried_on_next_run(self, orchestrator, ledger, delayed_flight):
        ledger.reject_next = 1
        orchestrator.settle_flight(FLIGHT, DATE)
        report = orchestrator.settle_flight(FLIGHT, DATE)
        assert _outcomes(report) == {42: Outcome.PAID_OUT}


# ── Watch ─────────────────────────────────────────────────────────────────────

class TestWatch:

    def test_scan_groups_active_policies_by_flight(self, orchestrator, ledger):
        ledger.put_policy(make_policy(1))
        ledger.put_policy(make_policy(2))
        ledger.put_policy(make_policy(3, flight_number="6E202", departure_time=T0 + 86400))
        ledger.put_policy(make_policy(4, status=PolicyStatus.PAID_OUT))

        grouped = orchestrator.scan_active_policies()

        assert set(grouped) == {(FLIGHT, DATE), ("6E202", "2025-11-03")}
        assert sorted(p.id for p in grouped[(FLIGHT, DATE)]) == [1, 2]

    def test_watch_settles_every_flight(self, orchestrator, ledger, gateway):
        ledger.put_policy(make_policy(1))
        ledger.put_policy(make_policy(2, flight_number="6E202"))
        gateway.upsert_flight_record(make_record(1, actual=DELAYED), None)
        gateway.upsert_flight_record(make_record(2, flight="6E202", actual=ON_TIME), None)

        reports = {r.flight_number: r for r in orchestrator.watch()}

        assert _outcomes(reports[FLIGHT]) == {1: Outcome.PAID_OUT}
        assert _outcomes(reports["6E202"]) == {2: Outcome.INELIGIBLE}


# ── Journal and vault ─────────────────────────────────────────────────────────

class TestJournalAndVault:

    def test_signed_outcomes_are_journaled(self, make_orchestrator, signer, tmp_path, delayed_flight):
        path = tmp_path / "settlements.jsonl"
        make_orchestrator(journal=SettlementJournal(path, signer)).settle_flight(FLIGHT, DATE)

        reopened = SettlementJournal(path)
        entries  = reopened.outcomes_for_policy(42)
        assert len(entries) == 1
        assert entries[0].data["outcome"] == "paid_out"
        assert entries[0].data["flight_number"] == FLIGHT

    def test_quiet_outcomes_are_not_journaled(self, make_orchestrator, ledger, gateway, signer, tmp_path):
        ledger.put_policy(make_policy(42))
        gateway.upsert_flight_record(make_record(42, actual=ON_TIME), None)
        journal = SettlementJournal(tmp_path / "j.jsonl", signer)
        make_orchestrator(journal=journal).settle_flight(FLIGHT, DATE)
        assert journal.get_all_entries() == []

    def test_vault_precedence(self, make_orchestrator, signer):
        explicit = Pubkey.new_unique()
        legacy   = Pubkey.new_unique()
        current  = Config(signer.pubkey, USDC_MINT, ORACLE, False, 255)
        old      = Config(signer.pubkey, USDC_MINT, ORACLE, False, 255, risk_pool_vault=legacy)

        assert make_orchestrator(risk_pool_vault=explicit).resolve_vault(old) == explicit
        assert make_orchestrator().resolve_vault(old) == legacy
        assert make_orchestrator().resolve_vault(current) == associated_token_address(
            signer.pubkey, USDC_MINT
        )
