"""Domain-level contracts for persisting OAuth token material."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Mapping, Optional, Protocol

ACCESS_TOKEN_KEY = "fitbit.accessToken"
REFRESH_TOKEN_KEY = "fitbit.refreshToken"
EXPIRES_AT_KEY = "fitbit.expiresAt"

TOKEN_KEYS = (ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, EXPIRES_AT_KEY)


class SecretStore(Protocol):
    """Key-value store for secrets such as OAuth tokens."""

    def get(self, key: str) -> Optional[str]:
        """Return the stored value, or ``None`` if absent."""

    def set(self, key: str, value: str) -> None:
        """Persist ``value`` under ``key``."""

    def set_many(self, values: Mapping[str, str]) -> None:
        """Persist every pair in ``values`` together; none are stored if the write fails."""

    def clear(self, keys: Iterable[str]) -> None:
        """Delete every key in ``keys``; missing keys are ignored."""


@dataclass(frozen=True)
class TokenSet:
    """Access/refresh token pair with its authoritative expiry."""

    access_token: str
    refresh_token: str
    expires_at: datetime

    def is_fresh(self, now: datetime, margin: timedelta) -> bool:
        return self.expires_at > now + margin

    @classmethod
    def load(cls, store: SecretStore) -> Optional["TokenSet"]:
        """Read the three token fields; any missing or unparsable field means not connected."""
        access = store.get(ACCESS_TOKEN_KEY)
        refresh = store.get(REFRESH_TOKEN_KEY)
        expires_text = store.get(EXPIRES_AT_KEY)
        if not access or not refresh or not expires_text:
            return None
        try:
            expires_at = datetime.fromisoformat(expires_text)
        except ValueError:
            return None
        if expires_at.tzinfo is None:
            return None
        return cls(access_token=access, refresh_token=refresh, expires_at=expires_at)

    def save(self, store: SecretStore) -> None:
        # All three fields are stored together or not at all.
        store.set_many(
            {
                REFRESH_TOKEN_KEY: self.refresh_token,
                ACCESS_TOKEN_KEY: self.access_token,
                EXPIRES_AT_KEY: self.expires_at.isoformat(),
            }
        )


__all__ = [
    "ACCESS_TOKEN_KEY",
    "EXPIRES_AT_KEY",
    "REFRESH_TOKEN_KEY",
    "SecretStore",
    "TOKEN_KEYS",
    "TokenSet",
]
