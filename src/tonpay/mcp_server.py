"""
MCP server exposing agent payments to an AI agent over stdio.

Tools:
    get_allowance             Remaining allowance on the spending-limit contract
    execute_m2m_payment       Agent payment through the contract
    execute_envelope_payment  Payment drawn from a shared budget envelope

Tool errors propagate to FastMCP, which reports them to the client as
tool errors. Stdout carries the protocol, so logs go to stderr.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional

from mcp.server.fastmcp import FastMCP

from .cli import build_coordinator
from .config import Settings
from .coordinator import Coordinator, PaymentOutcome
from .errors import TonPayError
from .money import format_ton, nano_to_ton

logger = logging.getLogger(__name__)

SERVER_NAME = "ton-pay-402"
OVER_LIMIT_NOTE = (
    " Payment is above allowance; contract should emit ApprovalRequest for Telegram workflow."
)


def describe_outcome(outcome: PaymentOutcome) -> str:
    text = (
        f"Submitted ExecutePayment from agent wallet {outcome.receipt.wallet_address} "
        f"for {outcome.amount_in_ton} TON to {outcome.target_address} "
        f"on contract {outcome.contract_address}. Request: {outcome.request_id}."
    )
    if outcome.approval_expected:
        text += OVER_LIMIT_NOTE
    if outcome.envelope_id is not None:
        text += (
            f" Envelope {outcome.envelope_id} has "
            f"{format_ton(outcome.envelope_remaining_nano or 0)} remaining."
        )
    return text


class PaymentTools:
    """Tool handlers bound to one coordinator."""

    def __init__(self, coordinator: Coordinator):
        self.coordinator = coordinator

    def get_allowance(self, contract_address: Optional[str] = None) -> str:
        """Get the remaining allowance from a TonPay402 contract."""
        remaining = self.coordinator.get_allowance(contract_address)
        return f"Remaining allowance: {nano_to_ton(remaining)} TON"

    def execute_m2m_payment(
        self,
        target_address: str,
        amount_in_ton: str,
        contract_address: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> str:
        """Execute an autonomous payment to a target address within allowed limits.

        Amounts are decimal TON strings, e.g. '0.5'. Payments above the
        remaining allowance are still submitted and wait for owner approval.
        """
        outcome = self.coordinator.execute_payment(
            target_address,
            amount_in_ton,
            contract_address=contract_address,
            request_id=request_id,
        )
        return describe_outcome(outcome)

    def execute_envelope_payment(
        self,
        envelope_id: str,
        agent_id: str,
        target_address: str,
        amount_in_ton: str,
        request_id: Optional[str] = None,
    ) -> str:
        """Pay from a shared budget envelope the agent is assigned to."""
        outcome = self.coordinator.execute_envelope_payment(
            envelope_id,
            agent_id,
            target_address,
            amount_in_ton,
            request_id=request_id,
        )
        return describe_outcome(outcome)


def build_server(tools: PaymentTools) -> FastMCP:
    server = FastMCP(SERVER_NAME)
    server.add_tool(tools.get_allowance, name="get_allowance")
    server.add_tool(tools.execute_m2m_payment, name="execute_m2m_payment")
    server.add_tool(tools.execute_envelope_payment, name="execute_envelope_payment")
    return server


def main() -> None:
    level = (os.environ.get("TONPAY_LOG_LEVEL") or "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    try:
        coordinator = build_coordinator(Settings.from_env())
    except (TonPayError, ValueError, RuntimeError) as exc:
        logger.error("Failed to load configuration: %s", exc)
        sys.exit(1)
    logger.info("Starting %s MCP server on stdio", SERVER_NAME)
    build_server(PaymentTools(coordinator)).run()


if __name__ == "__main__":
    main()
