"""Human approval channel abstractions and the Telegram Bot API adapter."""

from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import httpx

from .errors import ChannelDeliveryError
from .money import format_ton

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"

APPROVE = "approve"
REJECT = "reject"


@dataclass(frozen=True)
class DecisionAction:
    """A human's approve/reject choice as delivered by the channel."""

    kind: str
    approval_id: str
    actor: str
    conversation: str
    callback_id: Optional[str] = None


class ApprovalChannel(Protocol):
    def send_approval_prompt(
        self,
        recipient: str,
        approval_id: str,
        amount_nano: int,
        target: str,
        request_id: Optional[str] = None,
    ) -> Any: ...

    def acknowledge(self, action: DecisionAction, text: str) -> None: ...

    def reply(self, conversation: str, text: str) -> None: ...


def parse_callback_data(data: str) -> Optional[tuple[str, str]]:
    """Split ``approve:<id>`` / ``reject:<id>`` into (kind, approval_id)."""
    kind, sep, approval_id = (data or "").partition(":")
    if not sep or kind not in (APPROVE, REJECT) or not approval_id:
        return None
    return kind, approval_id


def render_approval_prompt(
    approval_id: str,
    amount_nano: int,
    target: str,
    request_id: Optional[str] = None,
) -> str:
    lines = [
        "⚠️ <b>AI Agent Alert</b>",
        "Over-limit payment request detected.",
        f"Amount: <b>{html.escape(format_ton(amount_nano))}</b>",
        f"Target: <code>{html.escape(target)}</code>",
        f"Ref: <code>{html.escape(approval_id)}</code>",
    ]
    if request_id:
        lines.append(f"Request ID: <code>{html.escape(request_id)}</code>")
    return "\n".join(lines)


class TelegramChannel:
    """Approval prompts and decisions over the Telegram Bot HTTP API."""

    def __init__(
        self,
        bot_token: str,
        http: Optional[httpx.Client] = None,
        api_base: str = TELEGRAM_API_BASE,
        timeout_seconds: float = 10.0,
    ):
        if not bot_token or not bot_token.strip():
            raise ValueError("Telegram bot token is required")
        self._base_url = f"{api_base.rstrip('/')}/bot{bot_token.strip()}"
        self._owns_http = http is None
        self._http = http or httpx.Client(timeout=timeout_seconds)
        self._offset: Optional[int] = None

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    def _call(self, method: str, payload: dict[str, Any]) -> Any:
        try:
            response = self._http.post(f"{self._base_url}/{method}", json=payload)
        except httpx.HTTPError as e:
            raise ChannelDeliveryError(f"Telegram {method} failed: {e}") from e
        try:
            body = response.json()
        except ValueError:
            raise ChannelDeliveryError(
                f"Telegram {method} returned non-JSON response ({response.status_code})"
            ) from None
        if not isinstance(body, dict) or not body.get("ok"):
            description = body.get("description") if isinstance(body, dict) else None
            raise ChannelDeliveryError(
                f"Telegram {method} error {response.status_code}: {description or 'unknown error'}"
            )
        return body.get("result")

    def send_approval_prompt(
        self,
        recipient: str,
        approval_id: str,
        amount_nano: int,
        target: str,
        request_id: Optional[str] = None,
    ) -> Optional[int]:
        result = self._call(
            "sendMessage",
            {
                "chat_id": recipient,
                "text": render_approval_prompt(approval_id, amount_nano, target, request_id),
                "parse_mode": "HTML",
                "reply_markup": {
                    "inline_keyboard": [
                        [
                            {"text": "✅ Approve", "callback_data": f"{APPROVE}:{approval_id}"},
                            {"text": "❌ Reject", "callback_data": f"{REJECT}:{approval_id}"},
                        ]
                    ]
                },
            },
        )
        return result.get("message_id") if isinstance(result, dict) else None

    def poll_actions(self) -> list[DecisionAction]:
        """Fetch pending button presses since the last call."""
        payload: dict[str, Any] = {"timeout": 0, "allowed_updates": ["callback_query"]}
        if self._offset is not None:
            payload["offset"] = self._offset
        updates = self._call("getUpdates", payload) or []

        actions: list[DecisionAction] = []
        for update in updates:
            update_id = update.get("update_id")
            if isinstance(update_id, int):
                self._offset = max(self._offset or 0, update_id + 1)
            query = update.get("callback_query")
            if not isinstance(query, dict):
                continue
            parsed = parse_callback_data(str(query.get("data") or ""))
            if parsed is None:
                logger.debug("Ignoring callback with unexpected data: %r", query.get("data"))
                continue
            chat = (query.get("message") or {}).get("chat") or {}
            actions.append(
                DecisionAction(
                    kind=parsed[0],
                    approval_id=parsed[1],
                    actor=str((query.get("from") or {}).get("id", "unknown")),
                    conversation=str(chat.get("id", "")),
                    callback_id=str(query.get("id")) if query.get("id") is not None else None,
                )
            )
        return actions

    def acknowledge(self, action: DecisionAction, text: str) -> None:
        if not action.callback_id:
            return
        self._call("answerCallbackQuery", {"callback_query_id": action.callback_id, "text": text})

    def reply(self, conversation: str, text: str) -> None:
        self._call("sendMessage", {"chat_id": conversation, "text": text})
