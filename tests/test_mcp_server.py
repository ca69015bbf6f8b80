"""Tests for the MCP tool handlers."""

import asyncio

import pytest

from tonpay.errors import BudgetExceededError, InvalidArgumentError
from tonpay.mcp_server import PaymentTools, build_server


TON = 1_000_000_000
TARGET = "0:merchant"


@pytest.fixture
def tools(env):
    return PaymentTools(env.coordinator())


def test_get_allowance(tools):
    assert tools.get_allowance() == "Remaining allowance: 1 TON"


def test_get_allowance_for_explicit_contract(tools, env):
    assert tools.get_allowance(env.contract) == "Remaining allowance: 1 TON"


def test_payment_within_limit(tools, env):
    text = tools.execute_m2m_payment(TARGET, "0.4", request_id="req-1")

    assert text == (
        f"Submitted ExecutePayment from agent wallet {env.agent.address} for 0.4 TON "
        f"to {TARGET} on contract {env.contract}. Request: req-1."
    )
    assert tools.get_allowance() == "Remaining allowance: 0.6 TON"


def test_payment_over_limit_mentions_approval(tools):
    text = tools.execute_m2m_payment(TARGET, "2")
    assert text.endswith("contract should emit ApprovalRequest for Telegram workflow.")


def test_envelope_payment_reports_remaining_budget(tools, env):
    coordinator = tools.coordinator
    coordinator.create_envelope("ops", TON, 3600)
    coordinator.assign_agent("ops", "bot-1")

    text = tools.execute_envelope_payment("ops", "bot-1", TARGET, "0.25")

    assert "for 0.25 TON" in text
    assert text.endswith("Envelope ops has 0.75 TON remaining.")
    with pytest.raises(BudgetExceededError):
        tools.execute_envelope_payment("ops", "bot-1", TARGET, "0.8")


def test_errors_propagate(tools):
    with pytest.raises(InvalidArgumentError):
        tools.execute_m2m_payment(TARGET, "abc")
    assert tools.coordinator.list_requests() == []


def test_server_registers_payment_tools(tools):
    server = build_server(tools)
    names = {tool.name for tool in asyncio.run(server.list_tools())}
    assert names == {"get_allowance", "execute_m2m_payment", "execute_envelope_payment"}
