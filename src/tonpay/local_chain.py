"""File-backed stand-in for the spending-limit contract.

``LocalSpendingContract`` implements the ``ChainClient`` protocol with the
same observable behavior the coordinator relies on from the real contract:
agent spends within the daily limit are transferred, over-limit agent spends
emit an approval request instead, owner spends always go through, and
whitelisted targets bypass the limit. It is meant for local development and
tests.
"""

from __future__ import annotations

import hashlib
import logging
import time
from pathlib import Path
from typing import Any, Callable, Optional

from .chain import (
    ChainTransaction,
    OutMessage,
    SubmitReceipt,
    WalletCredentials,
    canonical_call,
    encode_approval_request,
    encode_transfer,
    recover_signer,
)
from .errors import ChainSubmissionError, NotFoundError
from .storage import JsonDocument

logger = logging.getLogger(__name__)

DAY_SECONDS = 86_400


def _empty_state() -> dict[str, Any]:
    return {"contracts": {}, "transactions": {}, "nextLt": 1}


class LocalSpendingContract:
    """Local chain adapter holding any number of spending-limit contracts."""

    def __init__(self, path: Path, clock: Callable[[], float] = time.time):
        self._doc: JsonDocument[dict[str, Any]] = JsonDocument(
            path,
            load=lambda raw: {**_empty_state(), **raw},
            dump=lambda state: state,
            empty=_empty_state,
        )
        self._clock = clock

    @property
    def path(self) -> Path:
        return self._doc.path

    def _now(self) -> int:
        return int(self._clock())

    def deploy(self, owner: str, agent: str, daily_limit_nano: int) -> str:
        """Register a new contract and return its address."""
        if daily_limit_nano <= 0:
            raise ValueError("daily_limit_nano must be greater than 0")
        with self._doc.transaction() as state:
            seed = f"{owner.lower()}:{agent.lower()}:{daily_limit_nano}:{state['nextLt']}"
            address = "0:" + hashlib.sha256(seed.encode()).hexdigest()
            state["contracts"][address] = {
                "owner": owner,
                "agent": agent,
                "dailyLimitNano": str(daily_limit_nano),
                "spentTodayNano": "0",
                "periodStartedAt": self._now(),
                "whitelist": [],
            }
            state["transactions"][address] = []
            state["nextLt"] += 1
        logger.info("Local contract deployed: %s (owner %s, agent %s)", address, owner, agent)
        return address

    def update_whitelist(
        self,
        owner_wallet: WalletCredentials,
        contract_address: str,
        target: str,
        allowed: bool,
    ) -> None:
        call = owner_wallet.sign_call(
            {
                "op": "update_whitelist",
                "contract": contract_address,
                "target": target,
                "allowed": bool(allowed),
            }
        )
        with self._doc.transaction() as state:
            contract = self._contract(state, contract_address)
            if recover_signer(call).lower() != contract["owner"].lower():
                raise ChainSubmissionError("Only the contract owner can update the whitelist")
            whitelist = set(contract["whitelist"])
            if allowed:
                whitelist.add(target)
            else:
                whitelist.discard(target)
            contract["whitelist"] = sorted(whitelist)

    def get_remaining_allowance(self, contract_address: str) -> int:
        state = self._doc.read()
        contract = self._contract(state, contract_address)
        self._roll_period(contract)
        return int(contract["dailyLimitNano"]) - int(contract["spentTodayNano"])

    def get_recent_transactions(self, address: str, limit: int) -> list[ChainTransaction]:
        state = self._doc.read()
        self._contract(state, address)
        recent = list(reversed(state["transactions"][address]))[: max(0, int(limit))]
        return [
            ChainTransaction(
                lt=int(raw["lt"]),
                hash=raw["hash"],
                now=int(raw.get("now", 0)),
                out_messages=tuple(
                    OutMessage(body=bytes.fromhex(m["body"]), destination=m.get("destination"))
                    for m in raw.get("outMessages", [])
                ),
            )
            for raw in recent
        ]

    def submit_payment(
        self,
        wallet: WalletCredentials,
        contract_address: str,
        amount_nano: int,
        target: str,
    ) -> SubmitReceipt:
        if amount_nano <= 0:
            raise ChainSubmissionError("Payment amount must be greater than 0")
        call = wallet.sign_call(
            {
                "op": "execute_payment",
                "contract": contract_address,
                "amount": str(amount_nano),
                "target": target,
            }
        )
        with self._doc.transaction() as state:
            contract = self._contract(state, contract_address)
            sender = recover_signer(call).lower()
            is_owner = sender == contract["owner"].lower()
            is_agent = sender == contract["agent"].lower()
            if not (is_owner or is_agent):
                raise ChainSubmissionError(f"Unauthorized sender {call.signer}")

            self._roll_period(contract)
            remaining = int(contract["dailyLimitNano"]) - int(contract["spentTodayNano"])
            if is_owner or target in contract["whitelist"]:
                out = OutMessage(body=encode_transfer(amount_nano, target), destination=target)
            elif amount_nano <= remaining:
                contract["spentTodayNano"] = str(int(contract["spentTodayNano"]) + amount_nano)
                out = OutMessage(body=encode_transfer(amount_nano, target), destination=target)
            else:
                out = OutMessage(body=encode_approval_request(amount_nano, target), destination=None)

            lt = int(state["nextLt"])
            state["nextLt"] = lt + 1
            tx_hash = hashlib.sha256(
                f"{contract_address}:{lt}:{canonical_call(call.payload)}:{call.signature}".encode()
            ).hexdigest()
            state["transactions"][contract_address].append(
                {
                    "lt": lt,
                    "hash": tx_hash,
                    "now": self._now(),
                    "outMessages": [{"destination": out.destination, "body": out.body.hex()}],
                }
            )

        logger.debug("Local payment tx %s (lt %d) from %s", tx_hash, lt, call.signer)
        return SubmitReceipt(wallet_address=call.signer, tx_hash=tx_hash, lt=lt)

    def _contract(self, state: dict[str, Any], address: str) -> dict[str, Any]:
        contract: Optional[dict[str, Any]] = state["contracts"].get(address)
        if contract is None:
            raise NotFoundError(f"Contract not found: {address}")
        return contract

    def _roll_period(self, contract: dict[str, Any]) -> None:
        now = self._now()
        if now >= int(contract["periodStartedAt"]) + DAY_SECONDS:
            contract["periodStartedAt"] = now
            contract["spentTodayNano"] = "0"
