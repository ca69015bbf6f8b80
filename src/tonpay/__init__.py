"""
TonPay — Off-chain coordinator for policy-bounded agent payments.

The contract enforces a spending ceiling; the coordinator deduplicates chain
events, escalates over-limit payments to a human, keeps a request audit log
and manages shared multi-agent budget envelopes.
"""

__version__ = "0.1.0"

from .approvals import ApprovalRecord, ApprovalState, ApprovalStatus, PendingApproval
from .audit import RequestAuditLog, RequestAuditRecord, RequestAuditStatus
from .chain import ChainClient, ChainTransaction, OutMessage, SubmitReceipt, WalletCredentials
from .config import Settings
from .coordinator import Coordinator, PaymentOutcome
from .envelope import Allowance, Envelope, EnvelopeBook
from .facilitator import FacilitatorClient, FacilitatorConfig, FacilitatorDecision, FacilitatorRequest
from .journal import EventJournal, EventType
from .local_chain import LocalSpendingContract
from .monitor import PollLoop
from .telegram import ApprovalChannel, DecisionAction, TelegramChannel

__all__ = [
    "ApprovalRecord", "ApprovalState", "ApprovalStatus", "PendingApproval",
    "RequestAuditLog", "RequestAuditRecord", "RequestAuditStatus",
    "ChainClient", "ChainTransaction", "OutMessage", "SubmitReceipt", "WalletCredentials",
    "Settings", "Coordinator", "PaymentOutcome",
    "Allowance", "Envelope", "EnvelopeBook",
    "FacilitatorClient", "FacilitatorConfig", "FacilitatorDecision", "FacilitatorRequest",
    "EventJournal", "EventType", "LocalSpendingContract", "PollLoop",
    "ApprovalChannel", "DecisionAction", "TelegramChannel",
]
