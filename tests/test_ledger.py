"""
Unit Tests for the Airdrop Ledger

Tests cover:
1. Loading (missing, malformed, legacy files)
2. Idempotency (one award per recipient)
3. Persistence round trip
4. Persist failure keeps the in-memory award
"""

import json
import os
import stat
from datetime import datetime, timezone

import pytest

from lp_airdrop.ledger import (
    AlreadyRecordedError,
    Ledger,
    LedgerEntry,
    LedgerPersistError,
)


OWNER = "0xC36442b4a4522E871399CD717aBDD847Ab11FE88"
OTHER = "0x1111111111111111111111111111111111111111"
TX_HASH = "0x" + "ab" * 32
AMOUNT = 100 * 10**18


class TestLoad:
    """Tests for reading the ledger file."""

    def test_missing_file_is_empty(self, tmp_path):
        """A ledger that was never written has no recipients."""
        ledger = Ledger.load(str(tmp_path / "airdrop_state.json"))

        assert len(ledger) == 0
        assert not ledger.has_paid(OWNER)
        assert ledger.load_error is None

    def test_malformed_file_is_empty(self, tmp_path):
        """Unparseable content starts an empty ledger and reports why."""
        path = tmp_path / "airdrop_state.json"
        path.write_text("{not json")

        ledger = Ledger.load(str(path))

        assert len(ledger) == 0
        assert not ledger.has_paid(OWNER)
        assert ledger.load_error is not None

    def test_wrong_shape_is_empty(self, tmp_path):
        """Entries missing required fields are treated like corruption."""
        path = tmp_path / "airdrop_state.json"
        path.write_text(json.dumps({"recipients": {OWNER: {"address": OWNER}}}))

        ledger = Ledger.load(str(path))

        assert len(ledger) == 0
        assert ledger.load_error is not None

    def test_lowercase_keys_are_canonicalised(self, tmp_path):
        """Files with lowercase addresses still block those recipients."""
        path = tmp_path / "airdrop_state.json"
        path.write_text(json.dumps({
            "recipients": {
                OWNER.lower(): {
                    "address": OWNER.lower(),
                    "timestamp": "2024-05-01T12:00:00+00:00",
                    "amount": str(AMOUNT),
                    "tx_hash": TX_HASH,
                },
            },
        }))

        ledger = Ledger.load(str(path))

        assert ledger.has_paid(OWNER)
        assert ledger.get(OWNER).recipient == OWNER


class TestRecord:
    """Tests for recording awards."""

    def test_record_then_has_paid(self, tmp_path):
        """A recorded recipient is paid, others are not."""
        ledger = Ledger.load(str(tmp_path / "airdrop_state.json"))

        entry = ledger.record(OWNER, AMOUNT, TX_HASH)

        assert entry.recipient == OWNER
        assert entry.amount == AMOUNT
        assert entry.tx_reference == TX_HASH
        assert entry.awarded_at.tzinfo is not None
        assert ledger.has_paid(OWNER)
        assert not ledger.has_paid(OTHER)

    def test_address_case_does_not_matter(self, tmp_path):
        """Lookups and records use the checksum form."""
        ledger = Ledger.load(str(tmp_path / "airdrop_state.json"))

        ledger.record(OWNER.lower(), AMOUNT, TX_HASH)

        assert ledger.has_paid(OWNER)
        assert OWNER.lower() in ledger

    def test_second_record_is_rejected(self, tmp_path):
        """Recording the same recipient twice raises and keeps the first entry."""
        ledger = Ledger.load(str(tmp_path / "airdrop_state.json"))
        ledger.record(OWNER, AMOUNT, TX_HASH)

        with pytest.raises(AlreadyRecordedError):
            ledger.record(OWNER.lower(), 1, "0xdeadbeef")

        assert len(ledger) == 1
        assert ledger.get(OWNER).tx_reference == TX_HASH
        assert ledger.get(OWNER).amount == AMOUNT


class TestPersistence:
    """Tests for writing the ledger file."""

    def test_round_trip(self, tmp_path):
        """A fresh instance sees exactly what was recorded."""
        path = str(tmp_path / "airdrop_state.json")
        awarded_at = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        Ledger.load(path).record(OWNER, AMOUNT, TX_HASH, awarded_at=awarded_at)

        reloaded = Ledger.load(path)

        assert reloaded.has_paid(OWNER)
        assert reloaded.get(OWNER) == LedgerEntry(OWNER, AMOUNT, TX_HASH, awarded_at)

    def test_file_format(self, tmp_path):
        """Amounts are decimal strings and timestamps ISO-8601 UTC."""
        path = tmp_path / "airdrop_state.json"
        awarded_at = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        Ledger.load(str(path)).record(OWNER, AMOUNT, TX_HASH, awarded_at=awarded_at)

        data = json.loads(path.read_text())

        assert data == {
            "recipients": {
                OWNER: {
                    "address": OWNER,
                    "timestamp": "2024-05-01T12:00:00+00:00",
                    "amount": "100000000000000000000",
                    "tx_hash": TX_HASH,
                },
            },
        }

    def test_no_temp_files_left_behind(self, tmp_path):
        """Saving replaces the file and cleans up after itself."""
        ledger = Ledger.load(str(tmp_path / "airdrop_state.json"))
        ledger.record(OWNER, AMOUNT, TX_HASH)
        ledger.record(OTHER, AMOUNT, "0x01")

        assert os.listdir(tmp_path) == ["airdrop_state.json"]
        assert len(Ledger.load(str(tmp_path / "airdrop_state.json"))) == 2

    def test_persist_failure_keeps_entry_in_memory(self, tmp_path):
        """A failed write is reported, but the recipient stays paid."""
        ledger = Ledger.load(str(tmp_path / "missing-dir" / "airdrop_state.json"))

        with pytest.raises(LedgerPersistError):
            ledger.record(OWNER, AMOUNT, TX_HASH)

        assert ledger.has_paid(OWNER)
        with pytest.raises(AlreadyRecordedError):
            ledger.record(OWNER, AMOUNT, TX_HASH)


class TestLegacyFiles:
    """Tests for state files written by earlier versions of the watcher."""

    def test_chrono_timestamps_load(self, tmp_path):
        """Nanosecond fractions and a Z suffix still block the recipient."""
        path = tmp_path / "airdrop_state.json"
        path.write_text(json.dumps({
            "recipients": {
                OWNER.lower(): {
                    "address": OWNER.lower(),
                    "timestamp": "2024-05-01T12:00:00.123456789Z",
                    "amount": str(AMOUNT),
                    "tx_hash": TX_HASH,
                },
            },
        }))

        ledger = Ledger.load(str(path))

        assert ledger.load_error is None
        assert ledger.has_paid(OWNER)
        assert ledger.get(OWNER).awarded_at == datetime(
            2024, 5, 1, 12, 0, 0, 123456, tzinfo=timezone.utc,
        )

    def test_naive_timestamps_are_utc(self, tmp_path):
        """Hand-edited entries without an offset compare with aware ones."""
        path = tmp_path / "airdrop_state.json"
        path.write_text(json.dumps({
            "recipients": {
                OWNER: {
                    "address": OWNER,
                    "timestamp": "2024-05-01T12:00:00",
                    "amount": str(AMOUNT),
                    "tx_hash": TX_HASH,
                },
                OTHER: {
                    "address": OTHER,
                    "timestamp": "2024-05-02T12:00:00+00:00",
                    "amount": str(AMOUNT),
                    "tx_hash": "0x01",
                },
            },
        }))

        ledger = Ledger.load(str(path))

        assert ledger.get(OWNER).awarded_at.tzinfo is not None
        ordered = sorted(ledger.entries, key=lambda e: e.awarded_at)
        assert [e.recipient for e in ordered] == [OWNER, OTHER]


@pytest.mark.skipif(os.name == "nt", reason="POSIX file modes")
class TestFileMode:
    def test_existing_mode_is_kept(self, tmp_path):
        """Rewriting the ledger does not tighten its permissions."""
        path = tmp_path / "airdrop_state.json"
        path.write_text(json.dumps({"recipients": {}}))
        os.chmod(path, 0o644)

        Ledger.load(str(path)).record(OWNER, AMOUNT, TX_HASH)

        assert stat.S_IMODE(os.stat(path).st_mode) == 0o644

    def test_new_file_follows_umask(self, tmp_path):
        """A first save gets the mode a plain open() would have given."""
        path = tmp_path / "airdrop_state.json"
        old_umask = os.umask(0o022)
        try:
            Ledger.load(str(path)).record(OWNER, AMOUNT, TX_HASH)
        finally:
            os.umask(old_umask)

        assert stat.S_IMODE(os.stat(path).st_mode) == 0o644
