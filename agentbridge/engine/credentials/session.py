"""Active session tier: reuse the last credential the gate resolved."""
from __future__ import annotations

from ..models import Credential, CredentialSource
from .base import CredentialResolver


class CredentialCache:
    """Holds the most recently resolved credential for one gate.

    Expired credentials are dropped on read, never handed out.
    """

    def __init__(self) -> None:
        self._credential: Credential | None = None

    def get(self) -> Credential | None:
        credential = self._credential
        if credential is not None and credential.is_expired():
            self._credential = None
            return None
        return credential

    def store(self, credential: Credential) -> None:
        self._credential = credential

    def invalidate(self) -> None:
        self._credential = None


class SessionTokenResolver(CredentialResolver):
    source = CredentialSource.SESSION

    def __init__(self, cache: CredentialCache, timeout_seconds: float = 1.0) -> None:
        super().__init__(timeout_seconds)
        self._cache = cache

    async def resolve(self, scopes: list[str]) -> Credential | None:
        # The cached credential keeps the source it was resolved from so the
        # supervisor injects it under the right environment variable.
        return self._cache.get()
