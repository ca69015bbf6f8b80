"""
Minimal x402 facilitator for local testing.

Prices known resources, rejects requests from unknown ones and accepts
everything else as sent.
"""

from typing import Any, Optional

import uvicorn
from fastapi import FastAPI, Header
from pydantic import BaseModel

app = FastAPI()

API_KEY = "local-facilitator-key"
MERCHANT = "0:merchant"

PRICES = {
    "/weather": "0.3",
    "/forecast": "2.5",
}


class DecideRequest(BaseModel):
    requestId: str
    network: str
    contractAddress: str
    targetAddress: str
    amountInTon: str
    context: Optional[Any] = None


@app.get("/")
async def root():
    return {"status": "ok"}


@app.post("/decide")
async def decide(body: DecideRequest, authorization: Optional[str] = Header(default=None)):
    if authorization != f"Bearer {API_KEY}":
        return {"accepted": False, "reason": "Invalid facilitator credentials"}

    resource = (body.context or {}).get("resource") if isinstance(body.context, dict) else None
    if resource is None:
        return {"accepted": True, "reference": f"pass-{body.requestId}"}
    if resource not in PRICES:
        return {"accepted": False, "reason": f"Unknown resource {resource}"}
    return {
        "accepted": True,
        "targetAddress": MERCHANT,
        "amountInTon": PRICES[resource],
        "reference": f"priced-{body.requestId}",
        "note": f"priced {resource}",
    }


if __name__ == "__main__":
    uvicorn.run(app, host="127.0.0.1", port=8402)
