"""
x402 facilitator client.

The facilitator is an optional external decision service consulted before a
payment goes on chain. It may accept the request as is, override the target
or amount, or reject it outright. Transport faults are retried with linear
backoff; rejections and malformed responses are final.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

from .errors import (
    FacilitatorRejectedError,
    FacilitatorUnavailableError,
    InvalidArgumentError,
)
from .facilitator_auth import FacilitatorAuth
from .money import positive_ton_to_nano

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 15.0
DEFAULT_REJECTION_REASON = "Facilitator rejected the payment request"
ERROR_PREFIX = "x402 facilitator integration failed: "


@dataclass
class FacilitatorConfig:
    url: Optional[str] = None
    network: str = "testnet"
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    retry_attempts: int = 0
    retry_backoff_ms: int = 0
    auth: Optional[FacilitatorAuth] = None

    @property
    def enabled(self) -> bool:
        return bool(self.url and self.url.strip())


@dataclass(frozen=True)
class FacilitatorRequest:
    request_id: str
    contract_address: str
    target_address: str
    amount_in_ton: str
    context: Any = None

    def to_payload(self, network: str) -> dict[str, Any]:
        return {
            "requestId": self.request_id,
            "network": network,
            "contractAddress": self.contract_address,
            "targetAddress": self.target_address,
            "amountInTon": self.amount_in_ton,
            "context": self.context,
        }


@dataclass(frozen=True)
class FacilitatorDecision:
    """Authoritative target and amount for a payment."""

    target_address: str
    amount_in_ton: str
    reference: Optional[str] = None
    note: Optional[str] = None

    @property
    def amount_nano(self) -> int:
        return positive_ton_to_nano(self.amount_in_ton)


class _FatalResponse(Exception):
    """Response that must not be retried."""


class FacilitatorClient:
    """Calls the facilitator with a per-attempt timeout and bounded retries."""

    def __init__(
        self,
        config: FacilitatorConfig,
        http: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if config.retry_attempts < 0:
            raise ValueError("retry_attempts must be >= 0")
        if config.retry_backoff_ms < 0:
            raise ValueError("retry_backoff_ms must be >= 0")
        self.config = config
        self._owns_http = http is None
        self._http = http or httpx.Client(timeout=config.timeout_seconds)
        self._sleep = sleep

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    def __enter__(self) -> "FacilitatorClient":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def decide(self, request: FacilitatorRequest) -> Optional[FacilitatorDecision]:
        """Ask the facilitator for a decision.

        Returns None when no facilitator URL is configured. Raises
        ``FacilitatorRejectedError`` on an explicit rejection and
        ``FacilitatorUnavailableError`` for every other failure.
        """
        if not self.config.enabled:
            return None

        url = self.config.url.strip()
        payload = request.to_payload(self.config.network)
        max_attempts = self.config.retry_attempts + 1
        last_error = "no attempt made"

        for attempt in range(max_attempts):
            if attempt > 0:
                delay_ms = attempt * self.config.retry_backoff_ms
                logger.info(
                    "Retrying facilitator request %s (attempt %d/%d) after %d ms: %s",
                    request.request_id,
                    attempt + 1,
                    max_attempts,
                    delay_ms,
                    last_error,
                )
                if delay_ms:
                    self._sleep(delay_ms / 1000.0)

            try:
                # Fresh per attempt; signed tokens are short-lived.
                headers = self._headers(url)
            except (ValueError, TypeError) as e:
                raise FacilitatorUnavailableError(
                    f"{ERROR_PREFIX}Failed to build auth headers: {e}"
                ) from e

            try:
                response = self._http.post(
                    url,
                    json=payload,
                    headers=headers,
                    timeout=self.config.timeout_seconds,
                )
            except httpx.TimeoutException as e:
                last_error = f"Facilitator request timed out: {e}"
                continue
            except httpx.HTTPError as e:
                last_error = f"Facilitator request failed: {e}"
                continue

            if not response.is_success:
                body = response.text or "no response body"
                last_error = f"Facilitator error {response.status_code}: {body}"
                continue

            try:
                decision = _parse_decision(response.text, request)
            except FacilitatorRejectedError:
                logger.warning("Facilitator rejected request %s", request.request_id)
                raise
            except _FatalResponse as e:
                raise FacilitatorUnavailableError(f"{ERROR_PREFIX}{e}") from None

            logger.info(
                "Facilitator accepted request %s: %s TON to %s",
                request.request_id,
                decision.amount_in_ton,
                decision.target_address,
            )
            return decision

        logger.warning(
            "Facilitator unavailable for request %s after %d attempts: %s",
            request.request_id,
            max_attempts,
            last_error,
        )
        raise FacilitatorUnavailableError(f"{ERROR_PREFIX}{last_error}")

    def _headers(self, url: str) -> dict[str, str]:
        headers = {"content-type": "application/json"}
        if self.config.auth is not None:
            headers.update(self.config.auth.headers("POST", url))
        return headers


def _optional_str(body: dict[str, Any], key: str) -> Optional[str]:
    value = body.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise _FatalResponse(f"Facilitator response has invalid {key} type")
    return value


def _parse_decision(raw_body: str, request: FacilitatorRequest) -> FacilitatorDecision:
    if not raw_body.strip():
        body: Any = {}
    else:
        try:
            body = json.loads(raw_body)
        except json.JSONDecodeError:
            raise _FatalResponse("Facilitator response is not valid JSON") from None
    if not isinstance(body, dict):
        raise _FatalResponse("Facilitator response must be a JSON object")

    accepted = body.get("accepted", True)
    if not isinstance(accepted, bool):
        raise _FatalResponse("Facilitator response has invalid accepted type")
    if not accepted:
        reason = body.get("reason")
        if not isinstance(reason, str) or not reason.strip():
            reason = DEFAULT_REJECTION_REASON
        raise FacilitatorRejectedError(reason)

    target = _optional_str(body, "targetAddress")
    amount = _optional_str(body, "amountInTon")
    if target is not None and not target.strip():
        raise _FatalResponse("Facilitator response has empty targetAddress")
    if amount is not None:
        try:
            positive_ton_to_nano(amount)
        except InvalidArgumentError as e:
            raise _FatalResponse(f"Facilitator response has invalid amountInTon: {e}") from None

    return FacilitatorDecision(
        target_address=target if target is not None else request.target_address,
        amount_in_ton=amount if amount is not None else request.amount_in_ton,
        reference=_optional_str(body, "reference"),
        note=_optional_str(body, "note"),
    )
