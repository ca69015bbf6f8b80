"""
Request audit log and approval correlation.

Every payment the coordinator submits gets a request audit record. When the
contract later emits an approval request, the record is linked to the
approval by contract address, target and exact amount, because the chain
payload does not carry the client request id. Two indistinguishable
requests in flight at once can therefore be attributed to each other.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from .errors import InvalidArgumentError, InvalidStateError

if TYPE_CHECKING:
    from .approvals import PendingApproval


class RequestAuditStatus(str, Enum):
    SUBMITTED = "submitted"
    APPROVAL_PENDING = "approval_pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    FAILED = "failed"


TERMINAL_REQUEST_STATUSES = frozenset(
    {RequestAuditStatus.APPROVED, RequestAuditStatus.REJECTED, RequestAuditStatus.FAILED}
)


def iso_timestamp(now: Optional[float] = None) -> str:
    current = time.time() if now is None else now
    return datetime.fromtimestamp(current, tz=timezone.utc).isoformat()


@dataclass
class RequestAuditRecord:
    """Audit entry for one submitted payment request."""

    request_id: str
    contract_address: str
    target_address: str
    amount_in_ton: str
    amount_nano: int
    created_at: str
    status: RequestAuditStatus = RequestAuditStatus.SUBMITTED
    approval_expected: bool = False
    consumed_by_approval_id: Optional[str] = None
    status_updated_at: Optional[str] = None
    facilitator_reference: Optional[str] = None
    facilitator_note: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_REQUEST_STATUSES

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "requestId": self.request_id,
            "contractAddress": self.contract_address,
            "targetAddress": self.target_address,
            "amountInTon": self.amount_in_ton,
            "amountNano": str(self.amount_nano),
            "createdAt": self.created_at,
            "status": self.status.value,
            "approvalExpected": self.approval_expected,
            "consumedByApprovalId": self.consumed_by_approval_id,
            "statusUpdatedAt": self.status_updated_at,
            "facilitatorReference": self.facilitator_reference,
            "facilitatorNote": self.facilitator_note,
        }
        return {k: v for k, v in d.items() if v is not None}

    @classmethod
    def from_dict(cls, d: dict) -> "RequestAuditRecord":
        return cls(
            request_id=str(d["requestId"]),
            contract_address=str(d["contractAddress"]),
            target_address=str(d["targetAddress"]),
            amount_in_ton=str(d["amountInTon"]),
            amount_nano=int(d["amountNano"]),
            created_at=str(d["createdAt"]),
            status=RequestAuditStatus(d.get("status", "submitted")),
            approval_expected=bool(d.get("approvalExpected", False)),
            consumed_by_approval_id=d.get("consumedByApprovalId"),
            status_updated_at=d.get("statusUpdatedAt"),
            facilitator_reference=d.get("facilitatorReference"),
            facilitator_note=d.get("facilitatorNote"),
        )


@dataclass
class RequestAuditLog:
    """Ordered request audit records, oldest first."""

    records: list[RequestAuditRecord] = field(default_factory=list)

    def to_list(self) -> list[dict]:
        return [r.to_dict() for r in self.records]

    @classmethod
    def from_list(cls, raw: Any) -> "RequestAuditLog":
        return cls(records=[RequestAuditRecord.from_dict(r) for r in (raw or [])])

    def append(self, record: RequestAuditRecord) -> None:
        if self.find(record.request_id) is not None:
            raise InvalidArgumentError(f"Request {record.request_id} already recorded")
        self.records.append(record)

    def find(self, request_id: str) -> Optional[RequestAuditRecord]:
        for record in reversed(self.records):
            if record.request_id == request_id:
                return record
        return None

    def claim(
        self,
        approval: "PendingApproval",
        contract_address: str,
        now: Optional[float] = None,
    ) -> Optional[str]:
        """Link the newest unconsumed matching record to ``approval``.

        Returns the claimed request id, or None when nothing matches.
        """
        for record in reversed(self.records):
            if record.consumed_by_approval_id or record.is_terminal:
                continue
            if record.contract_address != contract_address:
                continue
            if record.target_address != approval.target:
                continue
            if record.amount_nano != approval.amount_nano:
                continue

            record.consumed_by_approval_id = approval.approval_id
            record.status = RequestAuditStatus.APPROVAL_PENDING
            record.status_updated_at = iso_timestamp(now)
            return record.request_id
        return None

    def advance(
        self,
        request_id: Optional[str],
        status: RequestAuditStatus,
        now: Optional[float] = None,
    ) -> Optional[RequestAuditRecord]:
        """Move a record to a terminal status.

        Unknown request ids are ignored: the audit trail never blocks payment
        execution.
        """
        status = RequestAuditStatus(status)
        if status not in TERMINAL_REQUEST_STATUSES:
            raise InvalidArgumentError(f"Cannot advance request audit to {status.value}")
        if not request_id:
            return None
        record = self.find(request_id)
        if record is None:
            return None
        if record.is_terminal:
            raise InvalidStateError(
                f"Request {request_id} already {record.status.value}",
                status=record.status.value,
            )
        record.status = status
        record.status_updated_at = iso_timestamp(now)
        return record
