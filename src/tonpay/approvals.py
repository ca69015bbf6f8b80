"""
Approval lifecycle for over-limit payments.

Each approval request emitted by the contract becomes one record that moves
from ``pending`` to exactly one of ``approved``, ``rejected`` or ``failed``
and never changes again. Records and the seen-transaction set are kept in
one state object so they are always persisted together.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .audit import RequestAuditLog, iso_timestamp
from .errors import InvalidArgumentError, InvalidStateError, NotFoundError


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass(frozen=True)
class PendingApproval:
    """An approval request detected on chain, not yet recorded."""

    approval_id: str
    amount_nano: int
    target: str
    tx_lt: str
    tx_hash: str


@dataclass
class ApprovalRecord:
    approval_id: str
    amount_nano: int
    target: str
    tx_lt: str
    tx_hash: str
    status: ApprovalStatus
    created_at: str
    request_id: Optional[str] = None
    resolved_at: Optional[str] = None
    resolved_by: Optional[str] = None
    owner_wallet: Optional[str] = None
    submit_error: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status == ApprovalStatus.PENDING

    def as_pending(self) -> PendingApproval:
        return PendingApproval(
            approval_id=self.approval_id,
            amount_nano=self.amount_nano,
            target=self.target,
            tx_lt=self.tx_lt,
            tx_hash=self.tx_hash,
        )

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "id": self.approval_id,
            "amount": str(self.amount_nano),
            "target": self.target,
            "txLt": self.tx_lt,
            "txHashHex": self.tx_hash,
            "status": self.status.value,
            "createdAt": self.created_at,
            "requestId": self.request_id,
            "resolvedAt": self.resolved_at,
            "resolvedBy": self.resolved_by,
            "ownerWallet": self.owner_wallet,
            "submitError": self.submit_error,
        }
        return {k: v for k, v in d.items() if v is not None}

    @classmethod
    def from_dict(cls, d: dict) -> "ApprovalRecord":
        return cls(
            approval_id=str(d["id"]),
            amount_nano=int(d["amount"]),
            target=str(d["target"]),
            tx_lt=str(d["txLt"]),
            tx_hash=str(d["txHashHex"]),
            status=ApprovalStatus(d["status"]),
            created_at=str(d["createdAt"]),
            request_id=d.get("requestId"),
            resolved_at=d.get("resolvedAt"),
            resolved_by=d.get("resolvedBy"),
            owner_wallet=d.get("ownerWallet"),
            submit_error=d.get("submitError"),
        )


@dataclass
class ApprovalState:
    """Approval records plus the seen-transaction set."""

    approvals: dict[str, ApprovalRecord] = field(default_factory=dict)
    seen_transactions: set[str] = field(default_factory=set)

    def to_dict(self) -> dict:
        return {
            "approvals": {aid: r.to_dict() for aid, r in self.approvals.items()},
            "seenTransactions": sorted(self.seen_transactions),
        }

    @classmethod
    def from_dict(cls, d: Any) -> "ApprovalState":
        d = d or {}
        return cls(
            approvals={
                aid: ApprovalRecord.from_dict(raw) for aid, raw in d.get("approvals", {}).items()
            },
            seen_transactions=set(d.get("seenTransactions", [])),
        )

    def get(self, approval_id: str) -> Optional[ApprovalRecord]:
        return self.approvals.get(approval_id)

    def require(self, approval_id: str) -> ApprovalRecord:
        record = self.approvals.get(approval_id)
        if record is None:
            raise NotFoundError(f"Approval request {approval_id} not found")
        return record

    def list(self, status: Optional[ApprovalStatus] = None) -> list[ApprovalRecord]:
        records = [r for r in self.approvals.values() if status is None or r.status == status]
        records.sort(key=lambda r: (int(r.tx_lt), r.approval_id))
        return records

    def pending(self) -> list[ApprovalRecord]:
        return self.list(ApprovalStatus.PENDING)

    def upsert_new(
        self,
        approval: PendingApproval,
        audit_log: RequestAuditLog,
        contract_address: str,
        now: Optional[float] = None,
    ) -> tuple[ApprovalRecord, bool]:
        """Record a newly detected approval request.

        Returns ``(record, created)``. An approval id that is already known
        is left untouched, whatever its status.
        """
        existing = self.approvals.get(approval.approval_id)
        if existing is not None:
            return existing, False

        request_id = audit_log.claim(approval, contract_address, now=now)
        record = ApprovalRecord(
            approval_id=approval.approval_id,
            amount_nano=approval.amount_nano,
            target=approval.target,
            tx_lt=approval.tx_lt,
            tx_hash=approval.tx_hash,
            status=ApprovalStatus.PENDING,
            created_at=iso_timestamp(now),
            request_id=request_id,
        )
        self.approvals[approval.approval_id] = record
        return record, True

    def resolve(
        self,
        approval_id: str,
        status: ApprovalStatus,
        actor: str,
        *,
        owner_wallet: Optional[str] = None,
        submit_error: Optional[str] = None,
        now: Optional[float] = None,
    ) -> ApprovalRecord:
        """Move a pending approval to a terminal status."""
        status = ApprovalStatus(status)
        if status == ApprovalStatus.PENDING:
            raise InvalidArgumentError("Cannot resolve an approval back to pending")
        record = self.require(approval_id)
        if not record.is_pending:
            raise InvalidStateError(
                f"Request already {record.status.value}.",
                status=record.status.value,
            )

        record.status = status
        record.resolved_at = iso_timestamp(now)
        record.resolved_by = actor
        if owner_wallet is not None:
            record.owner_wallet = owner_wallet
        if submit_error is not None:
            record.submit_error = submit_error
        return record
