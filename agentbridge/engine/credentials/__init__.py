"""Credential resolution tiers and the gate that orders them."""
from .base import CredentialResolver
from .session import CredentialCache, SessionTokenResolver
from .api_key import ApiKeyResolver
from .adc import AdcResolver
from .consent import ConsentResolver
from .gate import CredentialGate, build_credential_gate

__all__ = [
    "CredentialResolver",
    "CredentialCache",
    "SessionTokenResolver",
    "ApiKeyResolver",
    "AdcResolver",
    "ConsentResolver",
    "CredentialGate",
    "build_credential_gate",
]
