"""Durable record of which addresses already received the airdrop."""

import json
import os
import re
import stat
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone

from web3 import Web3


DEFAULT_LEDGER_PATH = "airdrop_state.json"


class LedgerError(Exception):
    pass


class AlreadyRecordedError(LedgerError):
    """A second award was recorded for an address that is already paid."""


class LedgerPersistError(LedgerError):
    """The ledger file could not be written. The in-memory entry is kept."""


def canonical(address: str) -> str:
    return Web3.to_checksum_address(address)


# chrono writes nanoseconds and a Z suffix, e.g. 2024-05-01T12:00:00.123456789Z
_FRACTION = re.compile(r"(\.\d{6})\d+")


def parse_timestamp(value: str) -> datetime:
    """ISO-8601 -> aware datetime. Naive values are taken as UTC."""
    value = value.strip()
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    value = _FRACTION.sub(r"\1", value, count=1)
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class LedgerEntry:
    recipient: str
    amount: int
    tx_reference: str
    awarded_at: datetime

    def to_dict(self) -> dict:
        return {
            "address": self.recipient,
            "timestamp": self.awarded_at.isoformat(),
            "amount": str(self.amount),
            "tx_hash": self.tx_reference,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LedgerEntry":
        return cls(
            recipient=canonical(data["address"]),
            amount=int(data["amount"]),
            tx_reference=str(data["tx_hash"]),
            awarded_at=parse_timestamp(data["timestamp"]),
        )


class Ledger:
    """Append-only mapping of recipient -> LedgerEntry backed by a JSON file.

    The whole file is rewritten after every award, through a temp file in
    the same directory and os.replace(), so a reader never sees a partial
    write.
    """

    def __init__(self, path: str = DEFAULT_LEDGER_PATH,
                 entries: dict[str, LedgerEntry] | None = None):
        self.path = path
        self._entries: dict[str, LedgerEntry] = dict(entries or {})
        # Set by load() when an existing file could not be parsed.
        self.load_error: str | None = None

    @classmethod
    def load(cls, path: str = DEFAULT_LEDGER_PATH) -> "Ledger":
        """Read the ledger file. Missing or unreadable -> empty ledger."""
        ledger = cls(path)
        if not os.path.exists(path):
            return ledger
        try:
            with open(path) as f:
                data = json.load(f)
            for raw in (data.get("recipients") or {}).values():
                entry = LedgerEntry.from_dict(raw)
                ledger._entries[entry.recipient] = entry
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            ledger._entries.clear()
            ledger.load_error = f"{type(e).__name__}: {e}"
        return ledger

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, recipient: str) -> bool:
        return self.has_paid(recipient)

    @property
    def entries(self) -> list[LedgerEntry]:
        return list(self._entries.values())

    def get(self, recipient: str) -> LedgerEntry | None:
        return self._entries.get(canonical(recipient))

    def has_paid(self, recipient: str) -> bool:
        return canonical(recipient) in self._entries

    def record(self, recipient: str, amount: int, tx_reference: str,
               awarded_at: datetime | None = None) -> LedgerEntry:
        """Add an award and persist the ledger.

        Raises AlreadyRecordedError if the recipient is already paid (nothing
        changes), or LedgerPersistError if the write failed (the entry stays
        in memory).
        """
        key = canonical(recipient)
        if key in self._entries:
            raise AlreadyRecordedError(f"{key} already received an airdrop")
        entry = LedgerEntry(
            recipient=key,
            amount=int(amount),
            tx_reference=tx_reference,
            awarded_at=awarded_at or datetime.now(timezone.utc),
        )
        self._entries[key] = entry
        self.save()
        return entry

    def _file_mode(self) -> int:
        try:
            return stat.S_IMODE(os.stat(self.path).st_mode)
        except FileNotFoundError:
            umask = os.umask(0)
            os.umask(umask)
            return 0o666 & ~umask

    def save(self):
        data = {"recipients": {k: e.to_dict() for k, e in self._entries.items()}}
        directory = os.path.dirname(os.path.abspath(self.path))
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                prefix=".airdrop-", suffix=".tmp", dir=directory,
            )
            with os.fdopen(fd, "w") as f:
                # mkstemp creates 0600; keep the mode the ledger file already has
                os.chmod(tmp_path, self._file_mode())
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise LedgerPersistError(f"Failed to save {self.path}: {e}") from e
