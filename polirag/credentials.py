"""Credential sources consumed by the sync authentication stage.

The sync never looks inside credentials; it only passes them to the
ingestion source and tells the provider which ones worked.
"""
import os
from dataclasses import dataclass, field
from typing import Optional, Protocol

import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class Credentials:
    """Username and secret for the course platform."""

    username: str
    secret: str = field(repr=False)


class CredentialProvider(Protocol):
    def cached(self) -> Optional[Credentials]:
        """Previously working credentials, if any."""
        ...

    def external(self) -> Optional[Credentials]:
        """Credentials supplied from outside (environment, prompt)."""
        ...

    def remember(self, credentials: Credentials) -> None:
        """Store credentials that were accepted."""
        ...

    def forget(self) -> None:
        ...


def _first_env(*names: str) -> Optional[str]:
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return None


class EnvCredentialProvider:
    """Reads credentials from the environment and caches them in memory."""

    USER_VARS = ("POLIRAG_USER", "POLIFORMAT_USER", "POLIFORMAT_DNI")
    SECRET_VARS = ("POLIRAG_PIN", "POLIFORMAT_PIN", "POLIFORMAT_PASSWORD")

    def __init__(self, cached: Optional[Credentials] = None):
        self._cached = cached

    def cached(self) -> Optional[Credentials]:
        """Credentials from the last successful login in this process."""
        return self._cached

    def external(self) -> Optional[Credentials]:
        """Read credentials from the environment.

        The first non-empty variable of USER_VARS and of SECRET_VARS wins.

        Returns:
            Credentials, or None unless both a user and a secret are set
        """
        username = _first_env(*self.USER_VARS)
        secret = _first_env(*self.SECRET_VARS)
        if username and secret:
            return Credentials(username=username, secret=secret)
        return None

    def remember(self, credentials: Credentials) -> None:
        """Keep credentials that were accepted for the next sync.

        Args:
            credentials: Credentials the source just accepted
        """
        self._cached = credentials
        logger.info("credentials_cached", username=credentials.username)

    def forget(self) -> None:
        """Drop cached credentials after the source rejected them."""
        self._cached = None
        logger.info("cached_credentials_cleared")
