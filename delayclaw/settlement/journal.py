"""
Settlement journal: append-only, hash-chained, signed JSONL.

Every settlement attempt the orchestrator finishes is appended here, so
an operator can reconstruct which transactions were sent for which
policy without trusting the flight store.

Entry chaining:
    entry_hash     = sha256(JCS({index, previous_hash, timestamp,
                                 entry_type, data_hash, signer}))
    previous_hash  = entry_hash of the prior entry, GENESIS_HASH for the first
    signature      = Ed25519 over bytes.fromhex(entry_hash), base64url

Verification needs only the file: each entry names its signer.
"""

import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from delayclaw.core.canonical import canonical_hash
from delayclaw.core.crypto import Ed25519KeyManager
from delayclaw.core.exceptions import JournalError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JournalEntry:
    """A single entry in the journal"""
    index:         int
    previous_hash: str
    timestamp:     str
    entry_type:    str
    data:          dict
    data_hash:     str
    signer:        str
    signature:     str

    def to_dict(self) -> dict:
        return {
            "index":         self.index,
            "previous_hash": self.previous_hash,
            "timestamp":     self.timestamp,
            "entry_type":    self.entry_type,
            "data":          self.data,
            "data_hash":     self.data_hash,
            "signer":        self.signer,
            "signature":     self.signature,
        }

    @staticmethod
    def from_dict(data: dict) -> "JournalEntry":
        return JournalEntry(
            index=         data["index"],
            previous_hash= data["previous_hash"],
            timestamp=     data["timestamp"],
            entry_type=    data["entry_type"],
            data=          data["data"],
            data_hash=     data["data_hash"],
            signer=        data["signer"],
            signature=     data["signature"],
        )

    def compute_hash(self) -> str:
        """Hash of this entry for chaining. Excludes the signature."""
        return canonical_hash({
            "index":         self.index,
            "previous_hash": self.previous_hash,
            "timestamp":     self.timestamp,
            "entry_type":    self.entry_type,
            "data_hash":     self.data_hash,
            "signer":        self.signer,
        })


class SettlementJournal:
    """
    Append-only settlement journal.

    Loading an existing file verifies it; a tampered or truncated
    journal raises JournalError instead of being extended.
    """

    GENESIS_HASH = "0" * 64

    def __init__(
        self,
        path:        Union[str, Path],
        key_manager: Optional[Ed25519KeyManager] = None,
    ):
        self.path        = Path(path)
        self.key_manager = key_manager
        self.entries: List[JournalEntry] = []
        self._lock = threading.Lock()

        if self.path.exists():
            self._load()
            self.verify_or_raise()

    # ── Append ────────────────────────────────────────────────

    def append(self, entry_type: str, data: Dict[str, Any]) -> JournalEntry:
        if self.key_manager is None:
            raise JournalError("Journal opened read-only; no signing key")

        with self._lock:
            unsigned = JournalEntry(
                index=         len(self.entries),
                previous_hash= self.entries[-1].compute_hash() if self.entries else self.GENESIS_HASH,
                timestamp=     datetime.now(timezone.utc).isoformat(),
                entry_type=    entry_type,
                data=          data,
                data_hash=     canonical_hash(data),
                signer=        str(self.key_manager.pubkey),
                signature=     "",
            )
            signature = self.key_manager.sign(bytes.fromhex(unsigned.compute_hash()))
            entry = JournalEntry(**{**unsigned.to_dict(), "signature": signature})

            self._write_entry(entry)
            self.entries.append(entry)
            return entry

    def append_outcome(self, flight_number: str, date: str, outcome: Dict[str, Any]) -> JournalEntry:
        return self.append(
            "settlement",
            {"flight_number": flight_number, "date": date, **outcome},
        )

    # ── Queries ───────────────────────────────────────────────

    def get_all_entries(self) -> List[JournalEntry]:
        with self._lock:
            return self.entries.copy()

    def get_entries_by_type(self, entry_type: str) -> List[JournalEntry]:
        return [e for e in self.get_all_entries() if e.entry_type == entry_type]

    def outcomes_for_policy(self, policy_id: int) -> List[JournalEntry]:
        return [
            e for e in self.get_entries_by_type("settlement")
            if e.data.get("policy_id") == policy_id
        ]

    def get_stats(self) -> dict:
        entries = self.get_all_entries()
        type_counts: Dict[str, int] = {}
        for entry in entries:
            type_counts[entry.entry_type] = type_counts.get(entry.entry_type, 0) + 1
        return {
            "total_entries":    len(entries),
            "by_type":          type_counts,
            "first_entry_time": entries[0].timestamp if entries else None,
            "last_entry_time":  entries[-1].timestamp if entries else None,
        }

    # ── Verification ──────────────────────────────────────────

    def verify_or_raise(self) -> None:
        """Check chain linkage, data hashes and signatures."""
        entries = self.entries
        for i, entry in enumerate(entries):
            if entry.index != i:
                raise JournalError(f"Index gap at position {i}", {"found": entry.index})

            expected_prev = entries[i - 1].compute_hash() if i else self.GENESIS_HASH
            if entry.previous_hash != expected_prev:
                raise JournalError(
                    f"Chain break at index {i}",
                    {"expected": expected_prev, "found": entry.previous_hash},
                )

            if canonical_hash(entry.data) != entry.data_hash:
                raise JournalError(f"Data hash mismatch at index {i}")

            if not Ed25519KeyManager.verify_detached(
                bytes.fromhex(entry.compute_hash()), entry.signature, entry.signer
            ):
                raise JournalError(f"Invalid signature at index {i}")

    # ── Storage ───────────────────────────────────────────────

    def _write_entry(self, entry: JournalEntry) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry.to_dict(), ensure_ascii=False) + "\n")
                f.flush()
                os.fsync(f.fileno())
        except OSError as exc:
            raise JournalError(f"Failed to write journal entry: {exc}") from exc

    def _load(self) -> None:
        self.entries = []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                for line_num, line in enumerate(f, 1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        self.entries.append(JournalEntry.from_dict(json.loads(line)))
                    except (json.JSONDecodeError, KeyError, TypeError) as exc:
                        raise JournalError(f"Invalid entry at line {line_num}: {exc}")
        except OSError as exc:
            raise JournalError(f"Failed to load journal: {exc}") from exc
        logger.debug("Loaded %d journal entries from %s", len(self.entries), self.path)
