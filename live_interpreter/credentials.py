"""
Credential providers.

The core only ever asks ``get_credential()``; where the secret lives
(user input, persisted slot, environment) is up to the provider.
"""

import logging
import os
from typing import Optional, Protocol, Sequence

from .config import CREDENTIAL_ENV_VARS, Config

logger = logging.getLogger(__name__)


class CredentialProvider(Protocol):
    def get_credential(self) -> Optional[str]:
        ...


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def mask_secret(secret: Optional[str]) -> str:
    """Render a credential safely for diagnostics ("abcd…(39 chars)")."""
    if not secret:
        return "<unset>"
    return f"{secret[:4]}…({len(secret)} chars)"


class StaticCredentialProvider:
    """Credential held in memory, e.g. typed in by the user."""

    def __init__(self, value: Optional[str] = None):
        self._value = value

    def set(self, value: Optional[str]):
        self._value = value

    def get_credential(self) -> Optional[str]:
        return _clean(self._value)

    def __repr__(self):
        return f"StaticCredentialProvider({mask_secret(_clean(self._value))})"


class EnvCredentialProvider:
    """Process-level default read from environment variables."""

    def __init__(self, names: Sequence[str] = CREDENTIAL_ENV_VARS):
        self.names = tuple(names)

    def get_credential(self) -> Optional[str]:
        for name in self.names:
            value = _clean(os.getenv(name))
            if value:
                logger.debug(f"Credential taken from ${name}")
                return value
        return None


class ChainedCredentialProvider:
    """First provider returning a non-blank credential wins."""

    def __init__(self, *providers: CredentialProvider):
        self.providers = providers

    def get_credential(self) -> Optional[str]:
        for provider in self.providers:
            value = _clean(provider.get_credential())
            if value:
                return value
        return None


def provider_from_config(config: Config, explicit: Optional[str] = None) -> ChainedCredentialProvider:
    """
    Build the default lookup order: explicit key, configured key, environment.

    Args:
        config: Loaded configuration
        explicit: Key supplied by the user for this run (optional)
    """
    return ChainedCredentialProvider(
        StaticCredentialProvider(explicit),
        StaticCredentialProvider(config.api_key),
        EnvCredentialProvider(),
    )
