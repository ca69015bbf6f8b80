"""
Facilitator authentication helpers.

Provides:
1. Static API key auth (``Authorization: Bearer <key>``)
2. Short-lived JWT auth, minted fresh for every request and bound to the
   request's method, host and path
3. A builder that picks one of the two from configuration values
"""

from __future__ import annotations

import base64
import binascii
import random
import time
from typing import Optional, Protocol, Union
from urllib.parse import urlparse

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519

DEFAULT_JWT_ISSUER = "tonpay"
DEFAULT_JWT_AUDIENCE = ["x402_facilitator"]

SigningKey = Union[ec.EllipticCurvePrivateKey, ed25519.Ed25519PrivateKey, str]


class FacilitatorAuth(Protocol):
    def headers(self, method: str, url: str) -> dict[str, str]: ...


class BearerKeyAuth:
    """Sends a static API key as a bearer token."""

    def __init__(self, api_key: str):
        if not api_key or not api_key.strip():
            raise ValueError("Facilitator API key is required")
        self._api_key = api_key.strip()

    def headers(self, method: str, url: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}"}

    def __repr__(self) -> str:
        return "BearerKeyAuth(api_key=***)"


class JwtFacilitatorAuth:
    """Mints a signed JWT for every facilitator request."""

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        *,
        issuer: str = DEFAULT_JWT_ISSUER,
        audience: Optional[list[str]] = None,
        expires_in_seconds: int = 120,
    ):
        if not key_id:
            raise ValueError("Facilitator JWT key ID is required")
        if not key_secret:
            raise ValueError("Facilitator JWT key secret is required")

        key, algorithm = parse_signing_key(key_secret)
        self._key_id = key_id
        self._key = key
        self._algorithm = algorithm
        self._issuer = issuer
        self._audience = list(audience or DEFAULT_JWT_AUDIENCE)
        self._expires_in_seconds = expires_in_seconds

    @property
    def algorithm(self) -> str:
        return self._algorithm

    def headers(self, method: str, url: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token(method, url)}"}

    def token(self, method: str, url: str) -> str:
        parsed = urlparse(url)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"Invalid facilitator URL: {url}")

        now = int(time.time())
        claims = {
            "sub": self._key_id,
            "iss": self._issuer,
            "aud": self._audience,
            "nbf": now,
            "exp": now + self._expires_in_seconds,
            "uris": [f"{method.upper()} {parsed.netloc}{parsed.path or '/'}"],
        }
        return jwt.encode(
            claims,
            self._key,
            algorithm=self._algorithm,
            headers={
                "kid": self._key_id,
                "typ": "JWT",
                "nonce": _nonce(),
            },
        )

    def __repr__(self) -> str:
        return f"JwtFacilitatorAuth(key_id={self._key_id}, algorithm={self._algorithm})"


def build_facilitator_auth(
    *,
    api_key: Optional[str] = None,
    jwt_key_id: Optional[str] = None,
    jwt_key_secret: Optional[str] = None,
) -> Optional[FacilitatorAuth]:
    """JWT auth wins over a static key when both are configured."""
    if jwt_key_id or jwt_key_secret:
        return JwtFacilitatorAuth(jwt_key_id or "", jwt_key_secret or "")
    if api_key and api_key.strip():
        return BearerKeyAuth(api_key)
    return None


def parse_signing_key(key_data: str) -> tuple[SigningKey, str]:
    """Detect the key type: PEM EC key, base64 Ed25519 key, or shared secret."""
    # Unquoted env vars often carry literal '\n' sequences.
    if "\\n" in key_data:
        key_data = key_data.replace("\\n", "\n")

    if "-----BEGIN" in key_data:
        try:
            key = serialization.load_pem_private_key(key_data.encode("utf-8"), password=None)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid PEM facilitator signing key: {e}") from e
        if isinstance(key, ec.EllipticCurvePrivateKey):
            return key, "ES256"
        if isinstance(key, ed25519.Ed25519PrivateKey):
            return key, "EdDSA"
        raise ValueError("PEM facilitator signing key must be an EC or Ed25519 key")

    try:
        decoded = base64.b64decode(key_data, validate=True)
    except (binascii.Error, ValueError):
        decoded = b""
    if len(decoded) == 64:
        return ed25519.Ed25519PrivateKey.from_private_bytes(decoded[:32]), "EdDSA"

    return key_data, "HS256"


def _nonce() -> str:
    return "".join(random.choices("0123456789", k=16))
