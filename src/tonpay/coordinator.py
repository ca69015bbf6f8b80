"""
Payment coordinator.

The coordinator is the single owner of persisted state: the envelope
ledger, the approval state (records plus seen transactions) and the request
audit log. Every operation re-reads the documents it needs under their file
locks and under a process-wide re-entrant lock, so decisions are never made
on cached state.

Flow for an agent payment:
1. Optional envelope reservation (rolled back on any later failure)
2. Optional facilitator decision (may override target and amount)
3. Remaining contract allowance read, audit record written
4. Submission through the agent wallet

Over-limit payments come back from the contract as approval requests. The
poll cycle records them, links them to their audit record and asks a human
through the approval channel. The human's decision is executed through the
owner wallet.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional

from .approvals import ApprovalRecord, ApprovalState, ApprovalStatus
from .audit import RequestAuditLog, RequestAuditRecord, RequestAuditStatus, iso_timestamp
from .chain import ChainClient, SubmitReceipt, WalletCredentials
from .config import Settings
from .detector import detect_new_approvals, mark_seen, needs_bootstrap
from .envelope import (
    Allowance,
    Envelope,
    EnvelopeBook,
    assign_agent,
    create_envelope,
    get_allowance,
    reserve_budget,
    rollback_reservation,
)
from .errors import (
    ChainSubmissionError,
    ConfigurationError,
    FacilitatorUnavailableError,
    InvalidArgumentError,
    InvalidStateError,
    NotFoundError,
    TonPayError,
    UnauthorizedError,
)
from .facilitator import FacilitatorClient, FacilitatorDecision, FacilitatorRequest
from .journal import EventJournal, EventType
from .money import nano_to_ton, positive_ton_to_nano
from .storage import JsonDocument
from .telegram import APPROVE, REJECT, ApprovalChannel, DecisionAction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentOutcome:
    """Result of a submitted agent payment."""

    request_id: str
    contract_address: str
    target_address: str
    amount_nano: int
    approval_expected: bool
    remaining_allowance_nano: int
    receipt: SubmitReceipt
    decision: Optional[FacilitatorDecision] = None
    envelope_id: Optional[str] = None
    envelope_remaining_nano: Optional[int] = None

    @property
    def amount_in_ton(self) -> str:
        return nano_to_ton(self.amount_nano)


class Coordinator:
    """Serializes every state mutation of the payment system."""

    def __init__(
        self,
        settings: Settings,
        chain: ChainClient,
        *,
        agent_wallet: Optional[WalletCredentials] = None,
        owner_wallet: Optional[WalletCredentials] = None,
        channel: Optional[ApprovalChannel] = None,
        facilitator: Optional[FacilitatorClient] = None,
        journal: Optional[EventJournal] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.chain = chain
        self.channel = channel
        self.facilitator = facilitator
        self.journal = journal
        self._agent_wallet = agent_wallet
        self._owner_wallet = owner_wallet
        self._clock = clock
        self._lock = threading.RLock()

        self._envelopes: JsonDocument[EnvelopeBook] = JsonDocument(
            settings.envelopes_path,
            load=EnvelopeBook.from_dict,
            dump=lambda book: book.to_dict(),
            empty=EnvelopeBook,
        )
        self._approvals: JsonDocument[ApprovalState] = JsonDocument(
            settings.approvals_path,
            load=ApprovalState.from_dict,
            dump=lambda state: state.to_dict(),
            empty=ApprovalState,
        )
        self._audit: JsonDocument[RequestAuditLog] = JsonDocument(
            settings.audit_path,
            load=RequestAuditLog.from_list,
            dump=lambda log: log.to_list(),
            empty=RequestAuditLog,
        )

    # ── helpers ──────────────────────────────────────────────────

    def _now(self) -> float:
        return self._clock()

    def _contract(self, contract_address: Optional[str] = None) -> str:
        address = contract_address or self.settings.contract_address
        if not address:
            raise ConfigurationError("Contract address is not configured (set CONTRACT_ADDRESS)")
        return address

    def _record(self, event_type: EventType, **kwargs: Any) -> None:
        """Append to the operator journal. Journal failures are logged, never raised."""
        if self.journal is None:
            return
        try:
            self.journal.log(event_type, **kwargs)
        except Exception:
            logger.exception("Failed to journal %s event", event_type.value)

    @staticmethod
    def _detail(exc: BaseException) -> str:
        return str(exc) or exc.__class__.__name__

    # ── allowance and agent payments ─────────────────────────────

    def get_allowance(self, contract_address: Optional[str] = None) -> int:
        """Remaining contract allowance in nano."""
        contract = self._contract(contract_address)
        try:
            return int(self.chain.get_remaining_allowance(contract))
        except TonPayError:
            raise
        except Exception as e:
            raise ChainSubmissionError(f"Failed to read remaining allowance: {self._detail(e)}") from e

    def execute_payment(
        self,
        target: str,
        amount_in_ton: str,
        *,
        contract_address: Optional[str] = None,
        request_id: Optional[str] = None,
        facilitator_context: Any = None,
    ) -> PaymentOutcome:
        with self._lock:
            request = self._new_request(
                target, amount_in_ton, contract_address, request_id, facilitator_context
            )
            decision = self._consult_facilitator(request)
            return self._submit(request, decision)

    def _new_request(
        self,
        target: str,
        amount_in_ton: str,
        contract_address: Optional[str],
        request_id: Optional[str],
        facilitator_context: Any,
    ) -> FacilitatorRequest:
        if not target or not target.strip():
            raise InvalidArgumentError("target is required")
        positive_ton_to_nano(amount_in_ton)
        request_id = (request_id or "").strip() or f"req-{uuid.uuid4()}"
        if self._audit.read().find(request_id) is not None:
            raise InvalidArgumentError(f"Request {request_id} already recorded")
        return FacilitatorRequest(
            request_id=request_id,
            contract_address=self._contract(contract_address),
            target_address=target.strip(),
            amount_in_ton=str(amount_in_ton).strip(),
            context=facilitator_context,
        )

    def _consult_facilitator(self, request: FacilitatorRequest) -> Optional[FacilitatorDecision]:
        if self.facilitator is None:
            return None
        try:
            decision = self.facilitator.decide(request)
        except FacilitatorUnavailableError as e:
            self._record(
                EventType.FACILITATOR_FAILED,
                request_id=request.request_id,
                target=request.target_address,
                success=False,
                reason=str(e),
            )
            raise
        if decision is not None:
            self._record(
                EventType.FACILITATOR_DECISION,
                request_id=request.request_id,
                target=decision.target_address,
                amount_nano=decision.amount_nano,
                details={"reference": decision.reference, "note": decision.note},
            )
        return decision

    def _submit(
        self,
        request: FacilitatorRequest,
        decision: Optional[FacilitatorDecision],
    ) -> PaymentOutcome:
        wallet = self._agent_wallet
        if wallet is None:
            raise ConfigurationError("Agent wallet is not configured (set TONPAY_AGENT_KEY)")

        target = decision.target_address if decision else request.target_address
        amount_in_ton = decision.amount_in_ton if decision else request.amount_in_ton
        amount_nano = positive_ton_to_nano(amount_in_ton)
        contract = request.contract_address

        remaining = self.get_allowance(contract)
        approval_expected = amount_nano > remaining

        # The audit record exists before the chain call so a concurrent poll
        # can always correlate the approval request it produces.
        with self._audit.transaction() as audit_log:
            audit_log.append(
                RequestAuditRecord(
                    request_id=request.request_id,
                    contract_address=contract,
                    target_address=target,
                    amount_in_ton=amount_in_ton,
                    amount_nano=amount_nano,
                    created_at=iso_timestamp(self._now()),
                    status=(
                        RequestAuditStatus.APPROVAL_PENDING
                        if approval_expected
                        else RequestAuditStatus.SUBMITTED
                    ),
                    approval_expected=approval_expected,
                    facilitator_reference=decision.reference if decision else None,
                    facilitator_note=decision.note if decision else None,
                )
            )

        try:
            receipt = self.chain.submit_payment(wallet, contract, amount_nano, target)
        except Exception as e:
            detail = self._detail(e)
            with self._audit.transaction() as audit_log:
                audit_log.advance(request.request_id, RequestAuditStatus.FAILED, now=self._now())
            self._record(
                EventType.PAYMENT_FAILED,
                request_id=request.request_id,
                amount_nano=amount_nano,
                target=target,
                success=False,
                reason=detail,
            )
            logger.warning("Payment %s failed on submission: %s", request.request_id, detail)
            raise ChainSubmissionError(f"Payment submission failed: {detail}") from e

        self._record(
            EventType.PAYMENT_SUBMITTED,
            request_id=request.request_id,
            actor=receipt.wallet_address,
            amount_nano=amount_nano,
            target=target,
            details={"approval_expected": approval_expected, "tx_hash": receipt.tx_hash},
        )
        logger.info(
            "Payment %s submitted: %s nano to %s (approval expected: %s)",
            request.request_id,
            amount_nano,
            target,
            approval_expected,
        )
        return PaymentOutcome(
            request_id=request.request_id,
            contract_address=contract,
            target_address=target,
            amount_nano=amount_nano,
            approval_expected=approval_expected,
            remaining_allowance_nano=remaining,
            receipt=receipt,
            decision=decision,
        )

    # ── envelopes ────────────────────────────────────────────────

    def create_envelope(self, envelope_id: str, total_budget_nano: int, window_seconds: int) -> Envelope:
        with self._lock, self._envelopes.transaction() as book:
            envelope = create_envelope(
                book, envelope_id, total_budget_nano, window_seconds, now=int(self._now())
            )
        self._record(
            EventType.ENVELOPE_CREATED,
            envelope_id=envelope_id,
            amount_nano=total_budget_nano,
            details={"window_seconds": window_seconds},
        )
        return envelope

    def assign_agent(self, envelope_id: str, agent_id: str) -> Envelope:
        with self._lock, self._envelopes.transaction() as book:
            envelope = assign_agent(book, envelope_id, agent_id)
        self._record(EventType.ENVELOPE_AGENT_ASSIGNED, envelope_id=envelope_id, actor=agent_id)
        return envelope

    def envelope_allowance(self, envelope_id: str) -> Allowance:
        with self._lock, self._envelopes.transaction() as book:
            return get_allowance(book, envelope_id, now=int(self._now()))

    def list_envelopes(self) -> list[Envelope]:
        book = self._envelopes.read()
        return [book.envelopes[eid] for eid in sorted(book.envelopes)]

    def _reserve(self, envelope_id: str, agent_id: str, amount_nano: int, request_id: str) -> Allowance:
        with self._envelopes.transaction() as book:
            allowance = reserve_budget(book, envelope_id, agent_id, amount_nano, now=int(self._now()))
        self._record(
            EventType.ENVELOPE_RESERVED,
            envelope_id=envelope_id,
            request_id=request_id,
            actor=agent_id,
            amount_nano=amount_nano,
        )
        return allowance

    def _rollback(self, envelope_id: str, amount_nano: int, request_id: str) -> None:
        with self._envelopes.transaction() as book:
            rollback_reservation(book, envelope_id, amount_nano)
        self._record(
            EventType.ENVELOPE_ROLLED_BACK,
            envelope_id=envelope_id,
            request_id=request_id,
            amount_nano=amount_nano,
        )

    def execute_envelope_payment(
        self,
        envelope_id: str,
        agent_id: str,
        target: str,
        amount_in_ton: str,
        *,
        contract_address: Optional[str] = None,
        request_id: Optional[str] = None,
        facilitator_context: Any = None,
    ) -> PaymentOutcome:
        """Pay from a shared envelope.

        Budget is reserved before anything leaves the process. If the
        facilitator changes the amount, the reservation is swapped for the
        new amount. Any failure after reserving returns the reservation.
        """
        with self._lock:
            request = self._new_request(
                target, amount_in_ton, contract_address, request_id, facilitator_context
            )
            amount_nano = positive_ton_to_nano(request.amount_in_ton)
            self._reserve(envelope_id, agent_id, amount_nano, request.request_id)
            reserved = amount_nano

            try:
                decision = self._consult_facilitator(request)
                final_nano = decision.amount_nano if decision else amount_nano
                if final_nano != reserved:
                    self._rollback(envelope_id, reserved, request.request_id)
                    reserved = 0
                    self._reserve(envelope_id, agent_id, final_nano, request.request_id)
                    reserved = final_nano
                outcome = self._submit(request, decision)
            except Exception:
                if reserved:
                    try:
                        self._rollback(envelope_id, reserved, request.request_id)
                    except TonPayError:
                        logger.exception(
                            "Rollback of %s nano on envelope %s failed for request %s",
                            reserved,
                            envelope_id,
                            request.request_id,
                        )
                raise

            allowance = self.envelope_allowance(envelope_id)
            return replace(
                outcome,
                envelope_id=envelope_id,
                envelope_remaining_nano=allowance.remaining_nano,
            )

    # ── approval detection ───────────────────────────────────────

    def bootstrap(self) -> int:
        """On first run, mark recent history as seen without notifying anyone.

        Returns the number of transactions marked.
        """
        with self._lock:
            contract = self._contract()
            if not needs_bootstrap(self._approvals.read()):
                return 0
            transactions = self.chain.get_recent_transactions(
                contract, self.settings.bootstrap_history_limit
            )
            with self._approvals.transaction() as state:
                if not needs_bootstrap(state):
                    return 0
                marked = mark_seen(state, transactions)
        logger.info("Bootstrap marked %d historical transactions as seen", marked)
        return marked

    def poll_once(self) -> list[ApprovalRecord]:
        """Run one detection cycle. Returns the newly created approval records."""
        with self._lock:
            contract = self._contract()
            transactions = self.chain.get_recent_transactions(
                contract, self.settings.recent_transactions_limit
            )
            created: list[ApprovalRecord] = []
            with self._approvals.transaction() as state, self._audit.transaction() as audit_log:
                for approval in detect_new_approvals(transactions, state.seen_transactions):
                    record, is_new = state.upsert_new(approval, audit_log, contract, now=self._now())
                    if is_new:
                        created.append(record)
                mark_seen(state, transactions)

            for record in created:
                self._record(
                    EventType.APPROVAL_DETECTED,
                    approval_id=record.approval_id,
                    request_id=record.request_id,
                    amount_nano=record.amount_nano,
                    target=record.target,
                )
                self._notify(record)
            return created

    def _notify(self, record: ApprovalRecord) -> None:
        recipient = self.settings.approver_chat_id
        if self.channel is None or not recipient:
            logger.warning(
                "Approval %s is pending but no approval channel is configured", record.approval_id
            )
            return
        try:
            self.channel.send_approval_prompt(
                recipient,
                record.approval_id,
                record.amount_nano,
                record.target,
                request_id=record.request_id,
            )
        except Exception as e:
            # The record is already persisted as pending; it stays actionable from the CLI.
            logger.error("Failed to notify approver about %s: %s", record.approval_id, e)
            self._record(
                EventType.APPROVAL_NOTIFIED,
                approval_id=record.approval_id,
                success=False,
                reason=self._detail(e),
            )
            return
        self._record(EventType.APPROVAL_NOTIFIED, approval_id=record.approval_id, actor=recipient)

    # ── human decisions ──────────────────────────────────────────

    def _ensure_authorized(self, conversation: str) -> None:
        expected = self.settings.approver_chat_id
        if not expected or str(conversation) != str(expected):
            raise UnauthorizedError("Unauthorized chat")

    @staticmethod
    def _require_pending(state: ApprovalState, approval_id: str) -> ApprovalRecord:
        record = state.require(approval_id)
        if not record.is_pending:
            raise InvalidStateError(
                f"Request already {record.status.value}.", status=record.status.value
            )
        return record

    def _advance_audit(
        self,
        audit_log: RequestAuditLog,
        request_id: Optional[str],
        status: RequestAuditStatus,
    ) -> None:
        try:
            audit_log.advance(request_id, status, now=self._now())
        except InvalidStateError as e:
            # The approval outcome is authoritative; the audit record keeps its first terminal status.
            logger.warning("Audit record %s not advanced to %s: %s", request_id, status.value, e)

    def approve(self, approval_id: str, actor: str, conversation: str) -> ApprovalRecord:
        """Execute a pending approval through the owner wallet."""
        with self._lock:
            self._ensure_authorized(conversation)
            wallet = self._owner_wallet
            if wallet is None:
                raise ConfigurationError("Owner wallet is not configured (set TONPAY_OWNER_KEY)")
            contract = self._contract()

            failure: Optional[Exception] = None
            # The approval document stays locked across the submission so no
            # other writer can act on the same record concurrently.
            with self._approvals.transaction() as state:
                record = self._require_pending(state, approval_id)
                try:
                    receipt = self.chain.submit_payment(
                        wallet, contract, record.amount_nano, record.target
                    )
                except Exception as e:
                    failure = e

                with self._audit.transaction() as audit_log:
                    if failure is None:
                        self._advance_audit(audit_log, record.request_id, RequestAuditStatus.APPROVED)
                        resolved = state.resolve(
                            approval_id,
                            ApprovalStatus.APPROVED,
                            actor,
                            owner_wallet=receipt.wallet_address,
                            now=self._now(),
                        )
                    else:
                        self._advance_audit(audit_log, record.request_id, RequestAuditStatus.FAILED)
                        resolved = state.resolve(
                            approval_id,
                            ApprovalStatus.FAILED,
                            actor,
                            submit_error=self._detail(failure),
                            now=self._now(),
                        )

        if failure is not None:
            self._record(
                EventType.APPROVAL_FAILED,
                approval_id=approval_id,
                request_id=resolved.request_id,
                actor=actor,
                amount_nano=resolved.amount_nano,
                target=resolved.target,
                success=False,
                reason=resolved.submit_error,
            )
            logger.error("Owner submission for %s failed: %s", approval_id, resolved.submit_error)
            raise ChainSubmissionError(
                f"Owner submission failed for {approval_id}: {resolved.submit_error}"
            ) from failure

        self._record(
            EventType.APPROVAL_APPROVED,
            approval_id=approval_id,
            request_id=resolved.request_id,
            actor=actor,
            amount_nano=resolved.amount_nano,
            target=resolved.target,
            details={"owner_wallet": resolved.owner_wallet},
        )
        logger.info("Approval %s approved by %s", approval_id, actor)
        return resolved

    def reject(self, approval_id: str, actor: str, conversation: str) -> ApprovalRecord:
        with self._lock:
            self._ensure_authorized(conversation)
            with self._approvals.transaction() as state, self._audit.transaction() as audit_log:
                record = self._require_pending(state, approval_id)
                self._advance_audit(audit_log, record.request_id, RequestAuditStatus.REJECTED)
                resolved = state.resolve(
                    approval_id, ApprovalStatus.REJECTED, actor, now=self._now()
                )

        self._record(
            EventType.APPROVAL_REJECTED,
            approval_id=approval_id,
            request_id=resolved.request_id,
            actor=actor,
            amount_nano=resolved.amount_nano,
            target=resolved.target,
        )
        logger.info("Approval %s rejected by %s", approval_id, actor)
        return resolved

    def handle_decision(self, action: DecisionAction) -> Optional[ApprovalRecord]:
        """Apply a channel decision and answer the human. Errors are reported, not raised."""
        verb = "approve" if action.kind == APPROVE else "reject"
        try:
            if action.kind == APPROVE:
                record = self.approve(action.approval_id, action.actor, action.conversation)
                self._answer(action, "Request approved.")
                self._say(
                    action.conversation,
                    f"✅ Approved and submitted by owner wallet {record.owner_wallet}. "
                    f"Ref: {action.approval_id}",
                )
                return record
            if action.kind == REJECT:
                record = self.reject(action.approval_id, action.actor, action.conversation)
                self._answer(action, "Request rejected.")
                self._say(action.conversation, f"❌ Rejected request {action.approval_id}")
                return record
            self._answer(action, "Unknown action.")
            return None
        except UnauthorizedError as e:
            logger.warning(
                "Denied %s of %s from conversation %s", verb, action.approval_id, action.conversation
            )
            self._record(
                EventType.DECISION_DENIED,
                approval_id=action.approval_id,
                actor=action.actor,
                success=False,
                reason=str(e),
            )
            self._answer(action, str(e))
        except InvalidStateError as e:
            self._answer(action, str(e))
        except NotFoundError:
            self._answer(action, "Approval request not found or already handled.")
        except TonPayError as e:
            self._answer(action, "Approval failed." if action.kind == APPROVE else "Reject failed.")
            self._say(action.conversation, f"❌ Failed to {verb} request: {e}")
        except Exception:
            logger.exception("Unexpected error handling %s of %s", verb, action.approval_id)
            self._answer(action, "Approval failed." if action.kind == APPROVE else "Reject failed.")
            self._say(
                action.conversation,
                f"❌ Failed to {verb} request {action.approval_id}: internal error, check coordinator logs",
            )
        return None

    def process_channel_actions(self) -> int:
        """Pull pending decisions from the channel and handle them. Returns the count."""
        poll = getattr(self.channel, "poll_actions", None)
        if poll is None:
            return 0
        actions = poll()
        for action in actions:
            self.handle_decision(action)
        return len(actions)

    def _answer(self, action: DecisionAction, text: str) -> None:
        if self.channel is None:
            return
        try:
            self.channel.acknowledge(action, text)
        except Exception as e:
            logger.warning("Failed to acknowledge %s: %s", action.approval_id, e)

    def _say(self, conversation: str, text: str) -> None:
        if self.channel is None:
            return
        try:
            self.channel.reply(conversation, text)
        except Exception as e:
            logger.warning("Failed to reply to %s: %s", conversation, e)

    # ── operator views ───────────────────────────────────────────

    def list_approvals(self, status: Optional[ApprovalStatus] = None) -> list[ApprovalRecord]:
        return self._approvals.read().list(status)

    def get_approval(self, approval_id: str) -> ApprovalRecord:
        return self._approvals.read().require(approval_id)

    def list_requests(self) -> list[RequestAuditRecord]:
        return list(self._audit.read().records)
