"""Environment-supplied API key tier."""
from __future__ import annotations

import os
import time
from collections.abc import Mapping

from ..models import Credential, CredentialSource
from .base import CredentialResolver


class ApiKeyResolver(CredentialResolver):
    source = CredentialSource.APIKEY

    def __init__(
        self,
        env_var: str = "GEMINI_API_KEY",
        *,
        ttl_seconds: float = 3600.0,
        timeout_seconds: float = 1.0,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(timeout_seconds)
        self._env_var = env_var
        self._ttl = ttl_seconds
        self._environ = environ

    async def resolve(self, scopes: list[str]) -> Credential | None:
        environ = self._environ if self._environ is not None else os.environ
        key = (environ.get(self._env_var) or "").strip()
        if not key:
            return None
        return Credential(
            source=CredentialSource.APIKEY,
            token=key,
            expiry=time.monotonic() + self._ttl,
        )
