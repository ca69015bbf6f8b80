"""Tests for environment settings and key resolution."""

import subprocess
from pathlib import Path

import pytest

from tonpay.config import Settings, resolve_private_key
from tonpay.errors import InvalidArgumentError
from tonpay.facilitator_auth import BearerKeyAuth


def test_defaults(tmp_path):
    settings = Settings.from_env({"TONPAY_HOME": str(tmp_path)})
    assert settings.home == tmp_path
    assert settings.network == "testnet"
    assert settings.poll_interval_seconds == 10.0
    assert settings.bootstrap_history_limit == 20
    assert settings.contract_address is None
    assert not settings.facilitator_config().enabled
    assert settings.approvals_path == tmp_path / "approval-state.json"


def test_overrides(tmp_path):
    settings = Settings.from_env(
        {
            "TONPAY_HOME": str(tmp_path / "h"),
            "TONPAY_SECRETS_DIR": str(tmp_path / "s"),
            "TON_NETWORK": "mainnet",
            "CONTRACT_ADDRESS": " 0:abc ",
            "TELEGRAM_CHAT_ID": "4242",
            "APPROVAL_POLL_INTERVAL_MS": "2500",
            "X402_FACILITATOR_URL": "https://f.local",
            "X402_FACILITATOR_API_KEY": "key",
            "X402_FACILITATOR_TIMEOUT_MS": "500",
            "X402_FACILITATOR_RETRY_ATTEMPTS": "2",
            "TONPAY_LOG_LEVEL": "debug",
        }
    )
    assert settings.contract_address == "0:abc"
    assert settings.approver_chat_id == "4242"
    assert settings.poll_interval_seconds == 2.5
    assert settings.journal_key_path == tmp_path / "s" / "journal_hmac.key"
    assert settings.log_level == "DEBUG"

    config = settings.facilitator_config()
    assert config.enabled
    assert config.network == "mainnet"
    assert config.timeout_seconds == 0.5
    assert config.retry_attempts == 2
    assert isinstance(config.auth, BearerKeyAuth)


@pytest.mark.parametrize(
    "name,value",
    [
        ("APPROVAL_POLL_INTERVAL_MS", "soon"),
        ("APPROVAL_POLL_INTERVAL_MS", "0"),
        ("X402_FACILITATOR_RETRY_ATTEMPTS", "-1"),
    ],
)
def test_invalid_numbers(name, value):
    with pytest.raises(InvalidArgumentError, match=name):
        Settings.from_env({name: value})


def test_resolve_hex_key():
    key = "ab" * 32
    assert resolve_private_key(key) == "0x" + key
    assert resolve_private_key("0x" + key) == "0x" + key
    with pytest.raises(ValueError):
        resolve_private_key("0x1234")


def test_resolve_op_reference(monkeypatch):
    calls = []

    def fake_run(args, **kwargs):
        calls.append(args)
        return subprocess.CompletedProcess(args, 0, stdout="cd" * 32 + "\n", stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)
    assert resolve_private_key("op://vault/agent/key") == "0x" + "cd" * 32
    assert calls == [["op", "read", "op://vault/agent/key"]]


def test_resolve_op_reference_failure(monkeypatch):
    monkeypatch.setattr(
        subprocess,
        "run",
        lambda args, **kwargs: subprocess.CompletedProcess(args, 1, stdout="", stderr="not signed in"),
    )
    with pytest.raises(RuntimeError, match="not signed in"):
        resolve_private_key("op://vault/agent/key")


def test_default_home_under_user_home(monkeypatch, tmp_path):
    monkeypatch.setenv("HOME", str(tmp_path))
    settings = Settings.from_env({})
    assert settings.home == Path(tmp_path) / ".tonpay"
