"""Interactive consent tier, delegated to the host."""
from __future__ import annotations

from ..config import ConsentCallback
from ..errors import AuthenticationError
from ..models import Credential, CredentialSource
from .base import CredentialResolver


class ConsentResolver(CredentialResolver):
    source = CredentialSource.OAUTH

    def __init__(
        self,
        callback: ConsentCallback | None,
        timeout_seconds: float = 300.0,
    ) -> None:
        super().__init__(timeout_seconds)
        self._callback = callback

    async def resolve(self, scopes: list[str]) -> Credential | None:
        if self._callback is None:
            raise AuthenticationError("no interactive consent handler configured")
        credential = await self._callback(list(scopes))
        if credential is None:
            return None
        if not isinstance(credential, Credential) or not credential.token:
            raise AuthenticationError("consent handler returned no usable token")
        return credential
