"""
Current-user identity for the sync engine.

The engine only needs to know whether someone is signed in before it starts
a cycle. Providers are plain async callables returning an Identity or None.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

IdentityProvider = Callable[[], Awaitable["Identity | None"]]


@dataclass(frozen=True)
class Identity:
    """An authenticated user."""

    user_id: str
    email: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)


def static_identity(identity: Identity | None) -> IdentityProvider:
    """Provider that always returns the same identity (or always None)."""

    async def provider() -> Identity | None:
        return identity

    return provider


class RestIdentityProvider:
    """
    Resolves the signed-in user from a hosted auth service.

    Issues ``GET <base_url>/auth/v1/user`` with the session's access token.
    Any non-200 answer or transport failure means "no user".
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        access_token: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.access_token = access_token
        self._transport = transport

    async def __call__(self) -> Identity | None:
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=15.0) as client:
                response = await client.get(
                    f"{self.base_url}/auth/v1/user",
                    headers={
                        "apikey": self.api_key,
                        "Authorization": f"Bearer {self.access_token}",
                    },
                )
        except httpx.HTTPError:
            return None

        if response.status_code != 200:
            return None

        try:
            data = response.json()
        except ValueError:
            return None
        if not isinstance(data, dict):
            return None
        user_id = data.get("id")
        if not user_id:
            return None
        return Identity(
            user_id=str(user_id),
            email=data.get("email"),
            metadata=data.get("user_metadata") or {},
        )
