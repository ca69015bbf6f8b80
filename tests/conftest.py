"""Shared fixtures: a local contract, wallets and a recording approval channel."""

from pathlib import Path

import pytest
from eth_account import Account

from tonpay.chain import WalletCredentials
from tonpay.config import Settings
from tonpay.coordinator import Coordinator
from tonpay.journal import EventJournal
from tonpay.local_chain import LocalSpendingContract


TON = 1_000_000_000
CHAT_ID = "4242"
TARGET = "0:merchant"


class RecordingChannel:
    """Approval channel that remembers everything sent through it."""

    def __init__(self):
        self.prompts = []
        self.acks = []
        self.replies = []
        self.pending_actions = []
        self.fail_prompts = False

    def send_approval_prompt(self, recipient, approval_id, amount_nano, target, request_id=None):
        if self.fail_prompts:
            raise RuntimeError("telegram down")
        self.prompts.append(
            {
                "recipient": recipient,
                "approval_id": approval_id,
                "amount_nano": amount_nano,
                "target": target,
                "request_id": request_id,
            }
        )

    def poll_actions(self):
        actions, self.pending_actions = self.pending_actions, []
        return actions

    def acknowledge(self, action, text):
        self.acks.append((action.approval_id, text))

    def reply(self, conversation, text):
        self.replies.append((conversation, text))


class Env:
    """Everything needed to build coordinators against one state directory."""

    def __init__(self, tmp_path: Path):
        self.owner = WalletCredentials(Account.create())
        self.agent = WalletCredentials(Account.create())
        self.chain = LocalSpendingContract(tmp_path / "chain.json")
        self.contract = self.chain.deploy(self.owner.address, self.agent.address, 1 * TON)
        self.settings = Settings(
            home=tmp_path / "home",
            secrets_dir=tmp_path / "secrets",
            contract_address=self.contract,
            approver_chat_id=CHAT_ID,
        )
        self.channel = RecordingChannel()
        self.journal = EventJournal(self.settings.journal_path, self.settings.journal_key_path)

    def coordinator(self, chain=None, **kwargs) -> Coordinator:
        kwargs.setdefault("agent_wallet", self.agent)
        kwargs.setdefault("owner_wallet", self.owner)
        kwargs.setdefault("channel", self.channel)
        kwargs.setdefault("journal", self.journal)
        return Coordinator(self.settings, chain or self.chain, **kwargs)


@pytest.fixture
def env(tmp_path):
    return Env(tmp_path)
