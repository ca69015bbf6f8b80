"""Detect approval requests in contract transactions, once per transaction."""

from __future__ import annotations

from typing import AbstractSet, Iterable, Optional

from .approvals import ApprovalState, ApprovalStatus, PendingApproval
from .chain import ChainTransaction, decode_approval_request


def approval_id_for(lt: int | str, tx_hash: str) -> str:
    """Stable approval id: the same transaction always maps to the same id."""
    return f"{lt}-{tx_hash[:8]}"


def parse_approval(tx: ChainTransaction, seen: AbstractSet[str]) -> Optional[PendingApproval]:
    if tx.hash in seen:
        return None
    for message in tx.out_messages:
        try:
            payload = decode_approval_request(message.body)
        except ValueError:
            continue
        return PendingApproval(
            approval_id=approval_id_for(tx.lt, tx.hash),
            amount_nano=payload.amount_nano,
            target=payload.target,
            tx_lt=str(tx.lt),
            tx_hash=tx.hash,
        )
    return None


def detect_new_approvals(
    transactions: Iterable[ChainTransaction],
    seen: AbstractSet[str],
) -> list[PendingApproval]:
    found: list[PendingApproval] = []
    batch_ids: set[str] = set()
    for tx in transactions:
        approval = parse_approval(tx, seen)
        if approval is not None and approval.approval_id not in batch_ids:
            batch_ids.add(approval.approval_id)
            found.append(approval)
    return found


def mark_seen(state: ApprovalState, transactions: Iterable[ChainTransaction]) -> int:
    """Add every transaction hash to the seen set. Returns how many were new."""
    before = len(state.seen_transactions)
    state.seen_transactions.update(tx.hash for tx in transactions)
    return len(state.seen_transactions) - before


def needs_bootstrap(state: ApprovalState) -> bool:
    has_pending = any(r.status == ApprovalStatus.PENDING for r in state.approvals.values())
    return not state.seen_transactions and not has_pending
