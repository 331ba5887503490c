"""CredentialGate: ordered fallback over credential resolution tiers.

Tiers are tried in sequence (session → API key → ADC → host consent);
the first one that yields a credential wins. Each tier has its own
timeout, clipped to the caller's deadline, and the whole walk is
cancellable through the operation's CancelToken.
"""
from __future__ import annotations

import asyncio
import dataclasses
import time
from collections.abc import Sequence

from ..cancellation import CancelToken
from ..config import ConsentCallback, EngineConfig
from ..correlation import CorrelatedLogger, LogSink
from ..errors import AuthenticationError, OperationCancelledError
from ..models import Credential
from .adc import AdcResolver
from .api_key import ApiKeyResolver
from .base import CredentialResolver
from .consent import ConsentResolver
from .session import CredentialCache, SessionTokenResolver


class CredentialGate:
    def __init__(
        self,
        resolvers: Sequence[CredentialResolver],
        *,
        cache: CredentialCache | None = None,
        ttl_seconds: float = 3600.0,
        sink: LogSink | None = None,
    ) -> None:
        self._resolvers = list(resolvers)
        self._cache = cache or CredentialCache()
        self._ttl = ttl_seconds
        self._sink = sink

    @property
    def resolvers(self) -> list[CredentialResolver]:
        return list(self._resolvers)

    def invalidate(self) -> None:
        """Forget the cached session credential."""
        self._cache.invalidate()

    async def resolve(
        self,
        scopes: Sequence[str],
        *,
        log: CorrelatedLogger,
        deadline: float | None = None,
        cancel: CancelToken | None = None,
        force: bool = False,
    ) -> Credential:
        """Walk the tiers and return the first credential found.

        ``force`` drops the cached session credential first so the
        chain re-resolves from the next tier down.
        """
        cancel = cancel or CancelToken()
        scopes = list(scopes)
        if force:
            self._cache.invalidate()
            log.info("Credential re-resolution forced; session cache cleared")

        attempts: list[tuple[str, str]] = []
        for resolver in self._resolvers:
            timeout = resolver.timeout_seconds
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    attempts.append((resolver.name, "operation deadline reached"))
                    log.warning(
                        "Credential resolution stopped at tier %s: deadline reached",
                        resolver.name,
                    )
                    raise AuthenticationError("deadline reached", attempts)
                timeout = min(timeout, remaining)

            log.debug("Trying credential tier %s (timeout %.1fs)", resolver.name, timeout)
            try:
                credential = await cancel.race(resolver.resolve(scopes), timeout=timeout)
            except OperationCancelledError:
                log.info("Credential resolution cancelled at tier %s", resolver.name)
                raise
            except asyncio.TimeoutError:
                attempts.append((resolver.name, f"timed out after {timeout:.1f}s"))
                log.warning("Credential tier %s timed out", resolver.name)
                continue
            except AuthenticationError as exc:
                attempts.append((resolver.name, exc.reason))
                log.warning("Credential tier %s failed", resolver.name, detail=exc.reason)
                continue
            except Exception as exc:
                attempts.append((resolver.name, f"{type(exc).__name__}: {exc}"))
                log.warning(
                    "Credential tier %s raised unexpectedly", resolver.name,
                    detail=f"{type(exc).__name__}: {exc}",
                )
                continue

            if credential is None:
                attempts.append((resolver.name, "not available"))
                log.debug("Credential tier %s has nothing to offer", resolver.name)
                continue

            credential = self._bounded(credential)
            if self._sink is not None:
                self._sink.register_secret(credential.token)
            self._cache.store(credential)
            log.info(
                "Credential resolved via tier %s (source=%s)",
                resolver.name, credential.source.value,
            )
            return credential

        log.error(
            "All %d credential tiers failed", len(self._resolvers),
            detail="; ".join(f"{src}: {why}" for src, why in attempts),
        )
        raise AuthenticationError("no credential tier succeeded", attempts)

    def _bounded(self, credential: Credential) -> Credential:
        """Cap the credential's lifetime at the configured TTL."""
        limit = time.monotonic() + self._ttl
        if credential.expiry is None or credential.expiry > limit:
            return dataclasses.replace(credential, expiry=limit)
        return credential


def build_credential_gate(
    config: EngineConfig,
    *,
    consent_callback: ConsentCallback | None = None,
    sink: LogSink | None = None,
) -> CredentialGate:
    """Standard four-tier gate built from EngineConfig."""
    cache = CredentialCache()
    resolvers: list[CredentialResolver] = [
        SessionTokenResolver(cache, timeout_seconds=config.session_timeout_seconds),
        ApiKeyResolver(
            config.api_key_env,
            ttl_seconds=config.credential_ttl_seconds,
            timeout_seconds=config.api_key_timeout_seconds,
        ),
        AdcResolver(
            config.adc_path,
            ttl_seconds=config.credential_ttl_seconds,
            timeout_seconds=config.adc_timeout_seconds,
        ),
        ConsentResolver(
            consent_callback, timeout_seconds=config.consent_timeout_seconds,
        ),
    ]
    return CredentialGate(
        resolvers,
        cache=cache,
        ttl_seconds=config.credential_ttl_seconds,
        sink=sink,
    )
