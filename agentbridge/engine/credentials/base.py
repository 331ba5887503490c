"""Abstract base for credential resolution tiers.

Each tier wraps one way of obtaining a token (cached session, API key,
application default credentials, host consent flow). CredentialGate
tries them in order until one produces a Credential.
"""
from __future__ import annotations

import abc

from ..models import Credential, CredentialSource


class CredentialResolver(abc.ABC):
    """One tier of the credential resolution chain."""

    source: CredentialSource

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds

    @property
    def name(self) -> str:
        return self.source.value

    @abc.abstractmethod
    async def resolve(self, scopes: list[str]) -> Credential | None:
        """Return a credential, or None when this tier has nothing to offer.

        Raise AuthenticationError for a hard failure (the gate records
        it and moves on to the next tier either way).
        """
