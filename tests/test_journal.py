"""
tests/test_journal.py

Settlement journal: signed, hash-chained, tamper-evident.
"""

import json
import threading

import pytest

from delayclaw.core.crypto import Ed25519KeyManager
from delayclaw.core.exceptions import JournalError
from delayclaw.settlement.journal import SettlementJournal


@pytest.fixture
def path(tmp_path):
    return tmp_path / "journal.jsonl"


def _outcome(policy_id=42, outcome="paid_out"):
    return {"policy_id": policy_id, "outcome": outcome, "signature": "5abc", "reason": "", "delay_minutes": 90}


class TestAppend:

    def test_first_entry_links_to_genesis(self, path, signer):
        journal = SettlementJournal(path, signer)
        entry = journal.append_outcome("AI101", "2025-11-02", _outcome())
        assert entry.index == 0
        assert entry.previous_hash == SettlementJournal.GENESIS_HASH
        assert entry.signer == str(signer.pubkey)
        assert entry.data["flight_number"] == "AI101"

    def test_chain_links(self, path, signer):
        journal = SettlementJournal(path, signer)
        first  = journal.append("note", {"n": 1})
        second = journal.append("note", {"n": 2})
        assert second.previous_hash == first.compute_hash()

    def test_reload_verifies_and_extends(self, path, signer):
        SettlementJournal(path, signer).append_outcome("AI101", "2025-11-02", _outcome(1))
        reopened = SettlementJournal(path, signer)
        reopened.append_outcome("AI101", "2025-11-02", _outcome(2))
        assert [e.index for e in SettlementJournal(path).get_all_entries()] == [0, 1]

    def test_read_only_without_key(self, path, signer):
        SettlementJournal(path, signer).append("note", {})
        with pytest.raises(JournalError):
            SettlementJournal(path).append("note", {})

    def test_queries(self, path, signer):
        journal = SettlementJournal(path, signer)
        journal.append_outcome("AI101", "2025-11-02", _outcome(1))
        journal.append_outcome("AI101", "2025-11-02", _outcome(2, "expired"))
        journal.append("note", {"text": "manual"})
        assert len(journal.outcomes_for_policy(2)) == 1
        stats = journal.get_stats()
        assert stats["total_entries"] == 3
        assert stats["by_type"] == {"settlement": 2, "note": 1}

    def test_concurrent_appends_keep_chain(self, path, signer):
        journal = SettlementJournal(path, signer)

        def write():
            for i in range(10):
                journal.append("note", {"i": i})

        threads = [threading.Thread(target=write) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert SettlementJournal(path).get_stats()["total_entries"] == 30


class TestTamperDetection:

    def _lines(self, path):
        return [json.loads(line) for line in path.read_text().splitlines()]

    def _write(self, path, lines):
        path.write_text("".join(json.dumps(line) + "\n" for line in lines))

    def _journal(self, path, signer, n=3):
        journal = SettlementJournal(path, signer)
        for i in range(n):
            journal.append_outcome("AI101", "2025-11-02", _outcome(i))

    def test_edited_data(self, path, signer):
        self._journal(path, signer)
        lines = self._lines(path)
        lines[1]["data"]["outcome"] = "failed"
        self._write(path, lines)
        with pytest.raises(JournalError, match="Data hash"):
            SettlementJournal(path)

    def test_removed_entry(self, path, signer):
        self._journal(path, signer)
        lines = self._lines(path)
        del lines[1]
        self._write(path, lines)
        with pytest.raises(JournalError):
            SettlementJournal(path)

    def test_resigned_by_other_key(self, path, signer):
        self._journal(path, signer, n=1)
        lines = self._lines(path)
        lines[0]["signer"] = str(Ed25519KeyManager.generate().pubkey)
        self._write(path, lines)
        with pytest.raises(JournalError, match="signature"):
            SettlementJournal(path)

    def test_garbage_line(self, path, signer):
        self._journal(path, signer, n=1)
        with open(path, "a") as f:
            f.write("{not json\n")
        with pytest.raises(JournalError, match="line 2"):
            SettlementJournal(path)
