"""Application Default Credentials tier.

Looks for the ADC file the way the Google tooling does:
GOOGLE_APPLICATION_CREDENTIALS first, then the gcloud well-known path.
The token handed to the agent is the file path; the CLI performs its
own exchange with it.
"""
from __future__ import annotations

import asyncio
import json
import os
import time
from collections.abc import Mapping
from pathlib import Path

from ..errors import AuthenticationError
from ..models import Credential, CredentialSource
from .base import CredentialResolver

WELL_KNOWN_ADC_PATH = Path("~/.config/gcloud/application_default_credentials.json")


class AdcResolver(CredentialResolver):
    source = CredentialSource.ADC

    def __init__(
        self,
        path: str | Path | None = None,
        *,
        ttl_seconds: float = 3600.0,
        timeout_seconds: float = 5.0,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(timeout_seconds)
        self._path = Path(path).expanduser() if path else None
        self._ttl = ttl_seconds
        self._environ = environ

    def candidate_path(self) -> Path:
        if self._path is not None:
            return self._path
        environ = self._environ if self._environ is not None else os.environ
        explicit = environ.get("GOOGLE_APPLICATION_CREDENTIALS")
        if explicit:
            return Path(explicit).expanduser()
        return WELL_KNOWN_ADC_PATH.expanduser()

    async def resolve(self, scopes: list[str]) -> Credential | None:
        path = self.candidate_path()
        return await asyncio.to_thread(self._load, path)

    def _load(self, path: Path) -> Credential | None:
        if not path.is_file():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise AuthenticationError(f"unreadable ADC file {path}: {exc}") from exc
        if not isinstance(data, dict) or not data.get("type"):
            raise AuthenticationError(f"ADC file {path} has no credential type")
        return Credential(
            source=CredentialSource.ADC,
            token=str(path),
            expiry=time.monotonic() + self._ttl,
        )
