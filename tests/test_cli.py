"""CLI flow tests against the local contract."""

import re

import pytest
from click.testing import CliRunner
from eth_account import Account

from tonpay.cli import main


class Cli:
    def __init__(self, tmp_path):
        self.runner = CliRunner()
        self.owner = Account.create()
        self.agent = Account.create()
        self.env = {
            "HOME": str(tmp_path),
            "TONPAY_HOME": str(tmp_path / "home"),
            "TONPAY_SECRETS_DIR": str(tmp_path / "secrets"),
            "TONPAY_OWNER_KEY": self.owner.key.hex(),
            "TONPAY_AGENT_KEY": self.agent.key.hex(),
            "TELEGRAM_CHAT_ID": "4242",
            "TELEGRAM_BOT_TOKEN": "",
            "X402_FACILITATOR_URL": "",
            "CONTRACT_ADDRESS": "",
        }

    def __call__(self, *args):
        return self.runner.invoke(main, list(args), env=self.env)

    def deploy(self, limit="1"):
        result = self("local", "deploy", "--daily-limit", limit)
        assert result.exit_code == 0, result.output
        address = re.search(r"Contract deployed: (\S+)", result.output).group(1)
        self.env["CONTRACT_ADDRESS"] = address
        return address


@pytest.fixture
def cli(tmp_path):
    return Cli(tmp_path)


def test_allowance_requires_contract(cli):
    result = cli("allowance")
    assert result.exit_code == 1
    assert "CONTRACT_ADDRESS" in result.output


def test_payment_within_limit(cli):
    cli.deploy()

    result = cli("pay", "0:merchant", "0.4", "--request-id", "req-1")
    assert result.exit_code == 0, result.output
    assert "✅ Payment submitted" in result.output
    assert "0.4 TON" in result.output

    result = cli("allowance")
    assert "Remaining allowance: 0.6 TON" in result.output

    result = cli("requests")
    assert "req-1 [submitted] 0.4 TON → 0:merchant" in result.output


def test_invalid_amount_fails(cli):
    cli.deploy()
    result = cli("pay", "0:merchant", "0")
    assert result.exit_code == 1
    assert "Payment failed" in result.output


def test_over_limit_approval_flow(cli):
    cli.deploy()

    result = cli("pay", "0:merchant", "2", "--request-id", "req-big")
    assert result.exit_code == 0, result.output
    assert "owner approval requested" in result.output

    result = cli("poll")
    assert result.exit_code == 0, result.output
    approval_id = re.search(r"New approval request (\S+):", result.output).group(1)

    result = cli("poll")
    assert "No new approval requests." in result.output

    result = cli("approvals", "list", "--status", "pending")
    assert approval_id in result.output
    assert "req=req-big" in result.output

    result = cli("approve", approval_id, "--chat-id", "999")
    assert result.exit_code == 1
    assert "Unauthorized chat" in result.output

    result = cli("approve", approval_id)
    assert result.exit_code == 0, result.output
    assert "Approved and submitted by owner wallet" in result.output
    assert cli.owner.address in result.output

    result = cli("reject", approval_id)
    assert result.exit_code == 1
    assert "Request already approved." in result.output

    result = cli("approvals", "show", approval_id)
    assert '"status": "approved"' in result.output

    result = cli("requests")
    assert "req-big [approved]" in result.output
    assert approval_id in result.output

    result = cli("journal", "--approval-id", approval_id)
    assert "approval_approved" in result.output


def test_envelope_commands(cli):
    cli.deploy()

    result = cli("envelope", "create", "ops", "--budget", "1", "--window", "3600")
    assert result.exit_code == 0, result.output
    assert cli("envelope", "assign", "ops", "bot-1").exit_code == 0

    result = cli("envelope", "pay", "ops", "--agent", "bot-1", "--target", "0:merchant", "--amount", "0.25")
    assert result.exit_code == 0, result.output
    assert "Envelope:  ops (0.75 TON remaining)" in result.output

    result = cli("envelope", "pay", "ops", "--agent", "bot-2", "--target", "0:merchant", "--amount", "0.25")
    assert result.exit_code == 1
    assert "not assigned" in result.output

    result = cli("envelope", "show", "ops")
    assert "Remaining: 0.75 TON" in result.output
    assert "bot-1" in result.output

    result = cli("envelope", "show")
    assert "ops: 1 TON / 3600s" in result.output


def test_whitelist_command(cli):
    cli.deploy()
    result = cli("local", "whitelist", "0:trusted")
    assert result.exit_code == 0, result.output

    assert cli("pay", "0:trusted", "5").exit_code == 0
    assert "Remaining allowance: 1 TON" in cli("allowance").output


def test_run_requires_bot_token(cli):
    cli.deploy()
    result = cli("run")
    assert result.exit_code == 1
    assert "TELEGRAM_BOT_TOKEN" in result.output


@pytest.mark.parametrize("command", ["requests", "journal"])
def test_limit_must_be_positive(cli, command):
    cli.deploy()
    cli("pay", "0:merchant", "0.1")

    result = cli(command, "--limit", "0")

    assert result.exit_code == 2
    assert "--limit" in result.output


def test_pay_rejects_out_of_range_amount(cli):
    cli.deploy()
    result = cli("pay", "0:merchant", "1e30")
    assert result.exit_code == 1
    assert "out of range" in result.output
    assert "No payment requests found." in cli("requests").output
