"""
Chain client abstractions for the spending-limit contract.

The coordinator only needs three things from the chain: recent
transactions of the contract, a way to submit a signed payment call, and
the contract's remaining allowance. Everything else about the chain is the
client's business.
"""

from __future__ import annotations

import json
import struct
from dataclasses import dataclass
from typing import Any, Protocol

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount


OP_APPROVAL_REQUEST = 0x41505251
OP_TRANSFER = 0x5452464E

_HEADER = struct.Struct(">IQH")


@dataclass(frozen=True)
class OutMessage:
    """An outbound message emitted by a contract transaction."""

    body: bytes
    destination: str | None = None


@dataclass(frozen=True)
class ChainTransaction:
    """A contract transaction as seen by the poller."""

    lt: int
    hash: str
    out_messages: tuple[OutMessage, ...] = ()
    now: int = 0


@dataclass(frozen=True)
class ApprovalRequestPayload:
    amount_nano: int
    target: str


@dataclass(frozen=True)
class SubmitReceipt:
    """Returned once the chain client has accepted a submission."""

    wallet_address: str
    tx_hash: str | None = None
    lt: int | None = None


@dataclass(frozen=True)
class SignedCall:
    payload: dict[str, Any]
    signer: str
    signature: str

    @property
    def canonical(self) -> str:
        return canonical_call(self.payload)


def canonical_call(payload: dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


class WalletCredentials:
    """Signing wallet for contract calls. The key never leaves this object."""

    __slots__ = ("_account",)

    def __init__(self, account: LocalAccount):
        self._account = account

    @classmethod
    def from_private_key(cls, private_key: str) -> "WalletCredentials":
        return cls(Account.from_key(private_key))

    @property
    def address(self) -> str:
        return self._account.address

    def sign_call(self, payload: dict[str, Any]) -> SignedCall:
        message = encode_defunct(text=canonical_call(payload))
        signed = self._account.sign_message(message)
        return SignedCall(
            payload=dict(payload),
            signer=self._account.address,
            signature=bytes(signed.signature).hex(),
        )

    def __repr__(self) -> str:
        return f"WalletCredentials(address={self.address})"


def recover_signer(call: SignedCall) -> str:
    """Return the address that actually produced ``call.signature``."""
    message = encode_defunct(text=call.canonical)
    return Account.recover_message(message, signature=bytes.fromhex(call.signature))


class ChainClient(Protocol):
    def get_recent_transactions(self, address: str, limit: int) -> list[ChainTransaction]: ...

    def submit_payment(
        self,
        wallet: WalletCredentials,
        contract_address: str,
        amount_nano: int,
        target: str,
    ) -> SubmitReceipt: ...

    def get_remaining_allowance(self, contract_address: str) -> int: ...


def _encode(op: int, amount_nano: int, target: str) -> bytes:
    target_bytes = target.encode("utf-8")
    return _HEADER.pack(op, int(amount_nano), len(target_bytes)) + target_bytes


def encode_approval_request(amount_nano: int, target: str) -> bytes:
    return _encode(OP_APPROVAL_REQUEST, amount_nano, target)


def encode_transfer(amount_nano: int, target: str) -> bytes:
    return _encode(OP_TRANSFER, amount_nano, target)


def decode_approval_request(body: bytes) -> ApprovalRequestPayload:
    """Strictly decode an approval-request body.

    Raises ValueError for anything that is not exactly one well-formed
    approval request.
    """
    if len(body) < _HEADER.size:
        raise ValueError("payload too short")
    op, amount_nano, target_len = _HEADER.unpack_from(body)
    if op != OP_APPROVAL_REQUEST:
        raise ValueError(f"unexpected opcode 0x{op:08x}")
    raw_target = body[_HEADER.size:]
    if len(raw_target) != target_len:
        raise ValueError("target length mismatch")
    target = raw_target.decode("utf-8")
    if not target:
        raise ValueError("empty target")
    if amount_nano <= 0:
        raise ValueError("amount must be positive")
    return ApprovalRequestPayload(amount_nano=amount_nano, target=target)
