"""
Environment-driven settings.

Every value has a dataclass default; ``Settings.from_env`` overlays whatever
is set in the environment. Paths are resolved when ``from_env`` is called so
a changed ``TONPAY_HOME`` takes effect without re-importing anything.
"""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from .errors import InvalidArgumentError
from .facilitator import DEFAULT_TIMEOUT_SECONDS, FacilitatorConfig
from .facilitator_auth import build_facilitator_auth


TONPAY_HOME_ENV = "TONPAY_HOME"
TONPAY_SECRETS_DIR_ENV = "TONPAY_SECRETS_DIR"

DEFAULT_POLL_INTERVAL_MS = 10_000
DEFAULT_BOOTSTRAP_HISTORY_LIMIT = 20
DEFAULT_RECENT_TRANSACTIONS_LIMIT = 10


def default_home() -> Path:
    return Path.home() / ".tonpay"


def default_secrets_dir() -> Path:
    return Path.home() / ".tonpay-secrets"


@dataclass
class Settings:
    home: Path = field(default_factory=default_home)
    secrets_dir: Path = field(default_factory=default_secrets_dir)
    network: str = "testnet"
    contract_address: Optional[str] = None
    approver_chat_id: Optional[str] = None
    telegram_bot_token: Optional[str] = None
    agent_key: Optional[str] = None
    owner_key: Optional[str] = None
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_MS / 1000.0
    bootstrap_history_limit: int = DEFAULT_BOOTSTRAP_HISTORY_LIMIT
    recent_transactions_limit: int = DEFAULT_RECENT_TRANSACTIONS_LIMIT
    facilitator_url: Optional[str] = None
    facilitator_api_key: Optional[str] = None
    facilitator_jwt_key_id: Optional[str] = None
    facilitator_jwt_secret: Optional[str] = None
    facilitator_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    facilitator_retry_attempts: int = 0
    facilitator_retry_backoff_ms: int = 0
    log_level: str = "WARNING"

    @property
    def envelopes_path(self) -> Path:
        return self.home / "envelopes.json"

    @property
    def approvals_path(self) -> Path:
        return self.home / "approval-state.json"

    @property
    def audit_path(self) -> Path:
        return self.home / "request-audit.json"

    @property
    def journal_path(self) -> Path:
        return self.home / "journal.jsonl"

    @property
    def journal_key_path(self) -> Path:
        return self.secrets_dir / "journal_hmac.key"

    @property
    def local_chain_path(self) -> Path:
        return self.home / "local-chain.json"

    def facilitator_config(self) -> FacilitatorConfig:
        return FacilitatorConfig(
            url=self.facilitator_url,
            network=self.network,
            timeout_seconds=self.facilitator_timeout_seconds,
            retry_attempts=self.facilitator_retry_attempts,
            retry_backoff_ms=self.facilitator_retry_backoff_ms,
            auth=build_facilitator_auth(
                api_key=self.facilitator_api_key,
                jwt_key_id=self.facilitator_jwt_key_id,
                jwt_key_secret=self.facilitator_jwt_secret,
            ),
        )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        settings = cls()

        home = _get(env, TONPAY_HOME_ENV)
        if home:
            settings.home = Path(home).expanduser()
        secrets_dir = _get(env, TONPAY_SECRETS_DIR_ENV)
        if secrets_dir:
            settings.secrets_dir = Path(secrets_dir).expanduser()

        settings.network = _get(env, "TON_NETWORK") or settings.network
        settings.contract_address = _get(env, "CONTRACT_ADDRESS")
        settings.approver_chat_id = _get(env, "TELEGRAM_CHAT_ID")
        settings.telegram_bot_token = _get(env, "TELEGRAM_BOT_TOKEN")
        settings.agent_key = _get(env, "TONPAY_AGENT_KEY")
        settings.owner_key = _get(env, "TONPAY_OWNER_KEY")

        poll_ms = _int(env, "APPROVAL_POLL_INTERVAL_MS", DEFAULT_POLL_INTERVAL_MS, minimum=1)
        settings.poll_interval_seconds = poll_ms / 1000.0
        settings.bootstrap_history_limit = _int(
            env, "BOOTSTRAP_HISTORY_LIMIT", DEFAULT_BOOTSTRAP_HISTORY_LIMIT, minimum=0
        )
        settings.recent_transactions_limit = _int(
            env, "TONPAY_RECENT_TRANSACTIONS_LIMIT", DEFAULT_RECENT_TRANSACTIONS_LIMIT, minimum=1
        )

        settings.facilitator_url = _get(env, "X402_FACILITATOR_URL")
        settings.facilitator_api_key = _get(env, "X402_FACILITATOR_API_KEY")
        settings.facilitator_jwt_key_id = _get(env, "X402_FACILITATOR_JWT_KEY_ID")
        settings.facilitator_jwt_secret = _get(env, "X402_FACILITATOR_JWT_SECRET")
        timeout_ms = _int(
            env, "X402_FACILITATOR_TIMEOUT_MS", int(DEFAULT_TIMEOUT_SECONDS * 1000), minimum=1
        )
        settings.facilitator_timeout_seconds = timeout_ms / 1000.0
        settings.facilitator_retry_attempts = _int(env, "X402_FACILITATOR_RETRY_ATTEMPTS", 0, minimum=0)
        settings.facilitator_retry_backoff_ms = _int(
            env, "X402_FACILITATOR_RETRY_BACKOFF_MS", 0, minimum=0
        )

        settings.log_level = (_get(env, "TONPAY_LOG_LEVEL") or settings.log_level).upper()
        return settings


def _get(env: Mapping[str, str], name: str) -> Optional[str]:
    value = env.get(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _int(env: Mapping[str, str], name: str, default: int, minimum: int) -> int:
    raw = _get(env, name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise InvalidArgumentError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise InvalidArgumentError(f"{name} must be >= {minimum}, got {value}")
    return value


def resolve_private_key(key_input: str) -> str:
    """Accept a hex private key or an ``op://`` 1Password reference."""
    candidate = key_input.strip()
    if candidate.startswith("op://"):
        result = subprocess.run(
            ["op", "read", candidate],
            capture_output=True,
            text=True,
            timeout=10,
        )
        if result.returncode != 0:
            raise RuntimeError(f"Failed to read key from 1Password reference: {result.stderr.strip()}")
        candidate = result.stdout.strip()

    if candidate.startswith("0x"):
        candidate = candidate[2:]
    if len(candidate) != 64:
        raise ValueError("Private key must be a 32-byte hex string or valid op:// reference")
    int(candidate, 16)
    return "0x" + candidate
