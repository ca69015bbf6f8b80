"""
Operator journal.

Every payment, envelope and approval step is appended to a JSONL file. Each
line is signed with HMAC-SHA256 over the previous line's hash plus its own
canonical body, so editing, reordering or dropping a line breaks the chain
and is reported on the next read.
"""

from __future__ import annotations

import fcntl
import hashlib
import hmac
import json
import os
import secrets
import time
from collections import Counter
from contextlib import contextmanager
from dataclasses import asdict, dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any, IO, Iterator, Optional

from .errors import JournalIntegrityError
from .storage import ensure_private_dir, ensure_private_file


JOURNAL_HMAC_KEY_ENV = "TONPAY_JOURNAL_HMAC_KEY"

_CHAIN_FIELDS = ("prev_hash", "event_hash")


class EventType(str, Enum):
    ENVELOPE_CREATED = "envelope_created"
    ENVELOPE_AGENT_ASSIGNED = "envelope_agent_assigned"
    ENVELOPE_RESERVED = "envelope_reserved"
    ENVELOPE_ROLLED_BACK = "envelope_rolled_back"
    FACILITATOR_DECISION = "facilitator_decision"
    FACILITATOR_FAILED = "facilitator_failed"
    PAYMENT_SUBMITTED = "payment_submitted"
    PAYMENT_FAILED = "payment_failed"
    APPROVAL_DETECTED = "approval_detected"
    APPROVAL_NOTIFIED = "approval_notified"
    APPROVAL_APPROVED = "approval_approved"
    APPROVAL_REJECTED = "approval_rejected"
    APPROVAL_FAILED = "approval_failed"
    DECISION_DENIED = "decision_denied"


@dataclass
class JournalEvent:
    event_type: str
    timestamp: float
    request_id: Optional[str] = None
    approval_id: Optional[str] = None
    envelope_id: Optional[str] = None
    actor: Optional[str] = None
    amount_nano: Optional[str] = None
    target: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    def body(self) -> dict[str, Any]:
        """The signed part of the event: everything except the chain fields."""
        return {
            k: v for k, v in asdict(self).items() if v is not None and k not in _CHAIN_FIELDS
        }

    def to_json(self) -> str:
        d = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(d, separators=(",", ":"))

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "JournalEvent":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in d.items() if k in known})

    def matches(
        self,
        request_id: Optional[str],
        approval_id: Optional[str],
        event_type: Optional[EventType],
    ) -> bool:
        if request_id and self.request_id != request_id:
            return False
        if approval_id and self.approval_id != approval_id:
            return False
        if event_type and self.event_type != event_type.value:
            return False
        return True


class EventJournal:
    """Append-only, hash-chained event log shared by the CLI and the poll loop."""

    def __init__(self, path: Path, key_path: Path):
        self.path = Path(path)
        self.key_path = Path(key_path)
        ensure_private_dir(self.path.parent)
        ensure_private_dir(self.key_path.parent)
        ensure_private_file(self.path)
        self._key = self._signing_key()

    def _signing_key(self) -> bytes:
        from_env = os.getenv(JOURNAL_HMAC_KEY_ENV)
        if from_env:
            return from_env.encode()
        if self.key_path.exists():
            stored = self.key_path.read_bytes().strip()
            if stored:
                return stored
        ensure_private_file(self.key_path)
        generated = secrets.token_hex(32).encode()
        self.key_path.write_bytes(generated)
        return generated

    def _sign(self, prev_hash: str, body: dict[str, Any]) -> str:
        canonical = json.dumps(body, sort_keys=True, separators=(",", ":"))
        return hmac.new(self._key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256).hexdigest()

    @contextmanager
    def _append_lock(self) -> Iterator[IO[str]]:
        with open(self.path, "a") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                yield f
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)

    def _lines(self) -> Iterator[dict[str, Any]]:
        with open(self.path, "r") as f:
            for line in f:
                if line.strip():
                    yield json.loads(line)

    def _tail_hash(self) -> str:
        tail = ""
        for raw in self._lines():
            tail = raw.get("event_hash") or ""
        return tail

    def _verified(self) -> Iterator[JournalEvent]:
        expected_prev = ""
        for raw in self._lines():
            event = JournalEvent.from_dict(raw)
            prev_hash = event.prev_hash or ""
            if prev_hash != expected_prev:
                raise JournalIntegrityError("Journal chain broken: previous hash mismatch")
            if not hmac.compare_digest(self._sign(prev_hash, event.body()), event.event_hash or ""):
                raise JournalIntegrityError("Journal chain broken: event hash mismatch")
            expected_prev = event.event_hash or ""
            yield event

    def log(
        self,
        event_type: EventType,
        request_id: Optional[str] = None,
        approval_id: Optional[str] = None,
        envelope_id: Optional[str] = None,
        actor: Optional[str] = None,
        amount_nano: Optional[int] = None,
        target: Optional[str] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> JournalEvent:
        event = JournalEvent(
            event_type=event_type.value,
            timestamp=time.time(),
            request_id=request_id,
            approval_id=approval_id,
            envelope_id=envelope_id,
            actor=actor,
            amount_nano=None if amount_nano is None else str(amount_nano),
            target=target,
            success=success,
            reason=reason,
            details=details,
        )
        with self._append_lock() as f:
            # Re-read the tail under the lock; another process may have appended.
            prev_hash = self._tail_hash()
            event.prev_hash = prev_hash or None
            event.event_hash = self._sign(prev_hash, event.body())
            f.write(event.to_json() + "\n")
            f.flush()
            os.fsync(f.fileno())
        return event

    def read_events(
        self,
        request_id: Optional[str] = None,
        approval_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[JournalEvent]:
        """Verify the whole chain and return matching events, oldest first.

        ``limit`` keeps only the newest matches; 0 returns all of them.
        """
        if not self.path.exists():
            return []
        events = [e for e in self._verified() if e.matches(request_id, approval_id, event_type)]
        return events[-limit:] if limit > 0 else events

    def summary(self) -> dict:
        events = self.read_events(limit=0)
        return {
            "total_events": len(events),
            "by_type": dict(Counter(e.event_type for e in events)),
            "failures": sum(1 for e in events if not e.success),
            "last_event": events[-1].to_json() if events else None,
        }
