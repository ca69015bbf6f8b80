"""Tests for the local stand-in spending-limit contract."""

import pytest
from eth_account import Account

from tonpay.chain import WalletCredentials, decode_approval_request
from tonpay.errors import ChainSubmissionError, NotFoundError
from tonpay.local_chain import DAY_SECONDS, LocalSpendingContract


OWNER = WalletCredentials(Account.create())
AGENT = WalletCredentials(Account.create())
STRANGER = WalletCredentials(Account.create())
TON = 1_000_000_000


class Clock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def chain(tmp_path, clock):
    return LocalSpendingContract(tmp_path / "chain.json", clock=clock)


@pytest.fixture
def contract(chain):
    return chain.deploy(OWNER.address, AGENT.address, 1 * TON)


def test_agent_within_limit_transfers(chain, contract):
    receipt = chain.submit_payment(AGENT, contract, TON // 2, "0:dest")
    assert receipt.wallet_address == AGENT.address
    assert chain.get_remaining_allowance(contract) == TON // 2

    [tx] = chain.get_recent_transactions(contract, 10)
    assert tx.hash == receipt.tx_hash
    with pytest.raises(ValueError):
        decode_approval_request(tx.out_messages[0].body)


def test_agent_over_limit_emits_approval_request(chain, contract):
    chain.submit_payment(AGENT, contract, 2 * TON, "0:dest")

    assert chain.get_remaining_allowance(contract) == TON
    [tx] = chain.get_recent_transactions(contract, 10)
    payload = decode_approval_request(tx.out_messages[0].body)
    assert payload.amount_nano == 2 * TON
    assert payload.target == "0:dest"


def test_owner_spend_bypasses_limit(chain, contract):
    receipt = chain.submit_payment(OWNER, contract, 5 * TON, "0:dest")
    assert receipt.wallet_address == OWNER.address
    assert chain.get_remaining_allowance(contract) == TON


def test_whitelisted_target_bypasses_limit(chain, contract):
    chain.update_whitelist(OWNER, contract, "0:trusted", True)
    chain.submit_payment(AGENT, contract, 3 * TON, "0:trusted")
    [tx] = chain.get_recent_transactions(contract, 1)
    with pytest.raises(ValueError):
        decode_approval_request(tx.out_messages[0].body)
    assert chain.get_remaining_allowance(contract) == TON


def test_only_owner_updates_whitelist(chain, contract):
    with pytest.raises(ChainSubmissionError, match="Only the contract owner"):
        chain.update_whitelist(AGENT, contract, "0:trusted", True)


def test_unknown_sender_rejected(chain, contract):
    with pytest.raises(ChainSubmissionError, match="Unauthorized sender"):
        chain.submit_payment(STRANGER, contract, 1, "0:dest")
    assert chain.get_recent_transactions(contract, 10) == []


def test_unknown_contract(chain):
    with pytest.raises(NotFoundError):
        chain.get_remaining_allowance("0:missing")


def test_daily_period_rolls(chain, contract, clock):
    chain.submit_payment(AGENT, contract, TON, "0:dest")
    assert chain.get_remaining_allowance(contract) == 0
    clock.now += DAY_SECONDS
    assert chain.get_remaining_allowance(contract) == TON


def test_recent_transactions_newest_first_and_limited(chain, contract):
    receipts = [chain.submit_payment(AGENT, contract, 1, "0:dest") for _ in range(3)]
    recent = chain.get_recent_transactions(contract, 2)
    assert [tx.hash for tx in recent] == [receipts[2].tx_hash, receipts[1].tx_hash]
    assert recent[0].lt > recent[1].lt
