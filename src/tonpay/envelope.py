"""
Shared budget envelopes for multi-agent spending.

An envelope is a fixed budget with a rolling window. Several agents can be
assigned to one envelope; each spend reserves budget up front and is rolled
back if the downstream payment does not go through.

All functions operate on an ``EnvelopeBook`` handed in by the caller and
never touch storage themselves.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional

from .errors import (
    BudgetExceededError,
    InvalidArgumentError,
    InvariantViolationError,
    NotFoundError,
    UnauthorizedError,
)


def _now_seconds() -> int:
    return int(time.time())


@dataclass(frozen=True)
class Envelope:
    """A shared, time-windowed spending budget."""

    envelope_id: str
    total_budget_nano: int
    spent_in_window_nano: int
    window_seconds: int
    window_started_at: int
    created_at: str
    agent_ids: tuple[str, ...] = ()

    @property
    def remaining_nano(self) -> int:
        return self.total_budget_nano - self.spent_in_window_nano

    @property
    def window_ends_at(self) -> int:
        return self.window_started_at + self.window_seconds

    def window_expired(self, now: int) -> bool:
        return now >= self.window_ends_at

    def to_dict(self) -> dict:
        return {
            "id": self.envelope_id,
            "totalBudgetNano": str(self.total_budget_nano),
            "spentInWindowNano": str(self.spent_in_window_nano),
            "periodSeconds": self.window_seconds,
            "windowStartedAt": self.window_started_at,
            "createdAt": self.created_at,
            "agentIds": list(self.agent_ids),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Envelope":
        return cls(
            envelope_id=str(d["id"]),
            total_budget_nano=int(d["totalBudgetNano"]),
            spent_in_window_nano=int(d["spentInWindowNano"]),
            window_seconds=int(d["periodSeconds"]),
            window_started_at=int(d["windowStartedAt"]),
            created_at=str(d["createdAt"]),
            agent_ids=tuple(str(a) for a in d.get("agentIds", [])),
        )


@dataclass
class EnvelopeBook:
    """Persisted envelope ledger state."""

    envelopes: dict[str, Envelope] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"envelopes": {eid: env.to_dict() for eid, env in self.envelopes.items()}}

    @classmethod
    def from_dict(cls, d: Any) -> "EnvelopeBook":
        raw = (d or {}).get("envelopes", {})
        return cls(envelopes={eid: Envelope.from_dict(v) for eid, v in raw.items()})


@dataclass(frozen=True)
class Allowance:
    envelope: Envelope
    remaining_nano: int


def _require(book: EnvelopeBook, envelope_id: str) -> Envelope:
    envelope = book.envelopes.get(envelope_id)
    if envelope is None:
        raise NotFoundError(f"Envelope {envelope_id} not found")
    return envelope


def _normalize_window(envelope: Envelope, now: int) -> Envelope:
    if envelope.window_expired(now):
        return replace(envelope, window_started_at=now, spent_in_window_nano=0)
    return envelope


def create_envelope(
    book: EnvelopeBook,
    envelope_id: str,
    total_budget_nano: int,
    window_seconds: int,
    now: Optional[int] = None,
) -> Envelope:
    """Create a new envelope with an empty window starting now."""
    if not envelope_id or not envelope_id.strip():
        raise InvalidArgumentError("envelope_id is required")
    if total_budget_nano <= 0:
        raise InvalidArgumentError("total_budget_nano must be greater than 0")
    if window_seconds <= 0:
        raise InvalidArgumentError("window_seconds must be greater than 0")
    if envelope_id in book.envelopes:
        raise InvalidArgumentError(f"Envelope {envelope_id} already exists")

    current = _now_seconds() if now is None else now
    envelope = Envelope(
        envelope_id=envelope_id,
        total_budget_nano=int(total_budget_nano),
        spent_in_window_nano=0,
        window_seconds=int(window_seconds),
        window_started_at=current,
        created_at=datetime.fromtimestamp(current, tz=timezone.utc).isoformat(),
    )
    book.envelopes[envelope_id] = envelope
    return envelope


def assign_agent(book: EnvelopeBook, envelope_id: str, agent_id: str) -> Envelope:
    """Authorize an agent to spend from an envelope. Assigning twice is a no-op."""
    envelope = _require(book, envelope_id)
    if not agent_id or not agent_id.strip():
        raise InvalidArgumentError("agent_id is required")
    if agent_id in envelope.agent_ids:
        return envelope
    updated = replace(envelope, agent_ids=envelope.agent_ids + (agent_id,))
    book.envelopes[envelope_id] = updated
    return updated


def get_allowance(book: EnvelopeBook, envelope_id: str, now: Optional[int] = None) -> Allowance:
    """Return remaining budget, resetting the window first if it has elapsed."""
    envelope = _require(book, envelope_id)
    normalized = _normalize_window(envelope, _now_seconds() if now is None else now)
    book.envelopes[envelope_id] = normalized
    return Allowance(envelope=normalized, remaining_nano=normalized.remaining_nano)


def reserve_budget(
    book: EnvelopeBook,
    envelope_id: str,
    agent_id: str,
    amount_nano: int,
    now: Optional[int] = None,
) -> Allowance:
    """Provisionally debit an envelope on behalf of an assigned agent."""
    if amount_nano <= 0:
        raise InvalidArgumentError("amount_nano must be greater than 0")

    # The book is only touched once every check has passed.
    envelope = _normalize_window(_require(book, envelope_id), _now_seconds() if now is None else now)
    if agent_id not in envelope.agent_ids:
        raise UnauthorizedError(f"Agent {agent_id} is not assigned to envelope {envelope_id}")
    if amount_nano > envelope.remaining_nano:
        raise BudgetExceededError(envelope_id, amount_nano, envelope.remaining_nano)

    updated = replace(envelope, spent_in_window_nano=envelope.spent_in_window_nano + amount_nano)
    book.envelopes[envelope_id] = updated
    return Allowance(envelope=updated, remaining_nano=updated.remaining_nano)


def rollback_reservation(book: EnvelopeBook, envelope_id: str, amount_nano: int) -> Envelope:
    """Return a reservation to the envelope after a failed payment."""
    if amount_nano <= 0:
        raise InvalidArgumentError("amount_nano must be greater than 0")
    envelope = _require(book, envelope_id)
    next_spent = envelope.spent_in_window_nano - amount_nano
    if next_spent < 0:
        raise InvariantViolationError(
            f"Cannot rollback {amount_nano} nano from envelope {envelope_id} "
            f"with spent {envelope.spent_in_window_nano} nano"
        )
    updated = replace(envelope, spent_in_window_nano=next_spent)
    book.envelopes[envelope_id] = updated
    return updated
