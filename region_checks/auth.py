from __future__ import annotations

import asyncio
from typing import Protocol


class IdTokenProvider(Protocol):
    async def fetch(self, audience: str) -> str: ...


def _fetch_id_token_sync(audience: str) -> str:
    # google-auth is imported lazily so the probe endpoint can run without credentials configured.
    import google.auth.transport.requests
    import google.oauth2.id_token

    request = google.auth.transport.requests.Request()
    return google.oauth2.id_token.fetch_id_token(request, audience)


class GoogleIdTokenProvider:
    """Identity tokens for the ambient service account, scoped to one endpoint URL."""

    async def fetch(self, audience: str) -> str:
        return await asyncio.to_thread(_fetch_id_token_sync, audience)
