"""
End-to-end demo: agent payments, facilitator pricing and owner approval
against the local stand-in contract.
"""

import tempfile
import threading
import time
from pathlib import Path

import httpx
import uvicorn
from eth_account import Account

from facilitator_server import API_KEY, app
from tonpay import Coordinator, Settings
from tonpay.chain import WalletCredentials
from tonpay.facilitator import FacilitatorClient, FacilitatorConfig
from tonpay.facilitator_auth import BearerKeyAuth
from tonpay.journal import EventJournal
from tonpay.local_chain import LocalSpendingContract
from tonpay.money import format_ton, ton_to_nano

CHAT_ID = "demo-chat"
FACILITATOR_URL = "http://127.0.0.1:8402/decide"


class ConsoleChannel:
    """Prints approval prompts instead of sending them to Telegram."""

    def send_approval_prompt(self, recipient, approval_id, amount_nano, target, request_id=None):
        print(f"   📨 To {recipient}: approve {format_ton(amount_nano)} → {target}? Ref: {approval_id}")

    def acknowledge(self, action, text):
        print(f"   ↩️  {text}")

    def reply(self, conversation, text):
        print(f"   💬 {text}")


def run_server():
    uvicorn.run(app, host="127.0.0.1", port=8402, log_level="error")


def wait_for_server():
    for _ in range(50):
        try:
            httpx.get("http://127.0.0.1:8402/")
            return
        except httpx.HTTPError:
            time.sleep(0.1)
    raise SystemExit("Facilitator did not start")


def main():
    print("🚀 TonPay E2E Demo — Local Contract")
    print("=" * 40)
    print()

    print("1️⃣  Starting facilitator...")
    threading.Thread(target=run_server, daemon=True).start()
    wait_for_server()
    print("   ✅ Facilitator running on :8402")
    print()

    home = Path(tempfile.mkdtemp(prefix="tonpay-demo-"))
    owner = WalletCredentials(Account.create())
    agent = WalletCredentials(Account.create())
    chain = LocalSpendingContract(home / "local-chain.json")

    print("2️⃣  Deploying contract with a 1 TON daily limit...")
    contract = chain.deploy(owner.address, agent.address, ton_to_nano("1"))
    print(f"   Contract: {contract}")
    print()

    settings = Settings(
        home=home,
        secrets_dir=home / "secrets",
        contract_address=contract,
        approver_chat_id=CHAT_ID,
    )
    facilitator = FacilitatorClient(
        FacilitatorConfig(url=FACILITATOR_URL, auth=BearerKeyAuth(API_KEY), retry_attempts=1)
    )
    coordinator = Coordinator(
        settings,
        chain,
        agent_wallet=agent,
        owner_wallet=owner,
        channel=ConsoleChannel(),
        facilitator=facilitator,
        journal=EventJournal(settings.journal_path, settings.journal_key_path),
    )

    print("3️⃣  Paying for /weather (facilitator sets the price)...")
    outcome = coordinator.execute_payment(
        "0:placeholder", "0.01", facilitator_context={"resource": "/weather"}
    )
    print(f"   ✅ {format_ton(outcome.amount_nano)} → {outcome.target_address}")
    print(f"   Remaining allowance: {format_ton(coordinator.get_allowance())}")
    print()

    print("4️⃣  Paying for /forecast (over the daily limit)...")
    outcome = coordinator.execute_payment(
        "0:placeholder", "0.01", facilitator_context={"resource": "/forecast"}
    )
    print(f"   ⏳ {format_ton(outcome.amount_nano)} submitted, approval expected: {outcome.approval_expected}")
    [record] = coordinator.poll_once()
    print()

    print("5️⃣  Owner approves...")
    approved = coordinator.approve(record.approval_id, "demo-owner", CHAT_ID)
    print(f"   ✅ Submitted by owner wallet {approved.owner_wallet}")
    print()

    print("📜 Journal:")
    for event in coordinator.journal.read_events():
        print(f"   {event.event_type} {event.request_id or event.approval_id or event.envelope_id or ''}")

    facilitator.close()


if __name__ == "__main__":
    main()
