"""Client for the external identity verifier.

``verify(token)`` asks the gateway who owns a bearer token.  An explicit
401/403 means the token is invalid and yields ``None``; transport failures
and other statuses raise :class:`CredentialError`.
"""
from __future__ import annotations

import logging
import os

import httpx

from ideapilot.schemas import Profile

log = logging.getLogger(__name__)

_TIMEOUT = 10.0


class CredentialError(Exception):
    """The identity verifier could not be reached or answered unexpectedly."""


def default_identity_url() -> str | None:
    url = os.environ.get("IDENTITY_URL")
    if url:
        return url
    base = os.environ.get("GATEWAY_BASE_URL")
    return f"{base.rstrip('/')}/auth/user" if base else None


class IdentityVerifier:
    def __init__(self, url: str | None = None, timeout: float = _TIMEOUT):
        self.url = url or default_identity_url()
        self.timeout = timeout

    async def verify(self, token: str) -> Profile | None:
        if not token:
            return None
        if not self.url:
            raise CredentialError("No identity verifier configured (set IDENTITY_URL or GATEWAY_BASE_URL)")
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout)) as client:
                resp = await client.get(self.url, headers={"Authorization": f"Bearer {token}"})
        except httpx.HTTPError as exc:
            raise CredentialError(f"Identity verifier unreachable: {exc}") from exc

        if resp.status_code in (401, 403):
            return None
        if resp.status_code >= 400:
            raise CredentialError(f"Identity verifier returned HTTP {resp.status_code}")

        try:
            data = resp.json()
        except ValueError as exc:
            raise CredentialError("Identity verifier returned a non-JSON body") from exc
        user = data.get("user", data) if isinstance(data, dict) else {}
        try:
            return Profile(
                id=str(user.get("id") or user["user_id"]),
                email=user.get("email", ""),
                credits=float(user.get("credits") or 0),
                payment_method=user.get("payment_method") or user.get("paymentMethod") or "credits",
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise CredentialError(f"Identity verifier returned an unexpected profile: {data!r}") from exc
