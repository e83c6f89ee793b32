"""Fitbit OAuth2 (PKCE) credential lifecycle.

Obtains a token set through an interactive authorization-code flow, persists
it in a :class:`~fitbit_sync.domain.token_storage.SecretStore`, and hands out
an access token that is valid for at least another minute, refreshing it
transparently when needed.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Protocol, Type
from urllib.parse import urlencode

import requests
from pydantic import SecretStr

from fitbit_sync.config import settings
from fitbit_sync.domain.exceptions import (
    AuthError,
    AuthExchangeFailed,
    NotConnected,
    RefreshFailed,
    StateStoreError,
)
from fitbit_sync.domain.token_storage import TOKEN_KEYS, SecretStore, TokenSet
from fitbit_sync.infrastructure import log_utils

VERIFIER_ALPHABET = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789-._~"
VERIFIER_LENGTH = 64
REFRESH_MARGIN = timedelta(seconds=60)


def _unwrap_secret(value):
    if isinstance(value, SecretStr):
        return value.get_secret_value()
    return value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_code_verifier(length: int = VERIFIER_LENGTH) -> str:
    """Random PKCE verifier drawn from the unreserved URL characters."""
    return "".join(secrets.choice(VERIFIER_ALPHABET) for _ in range(length))


def derive_code_challenge(verifier: str) -> str:
    """S256 challenge: unpadded base64url of the verifier's SHA-256 digest."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


@dataclass(frozen=True)
class PendingAuthorization:
    """State for one authorize attempt, carried explicitly into the code exchange."""

    verifier: str
    challenge: str
    state: str
    redirect_uri: str
    authorize_url: str


class InteractiveAuthorizer(Protocol):
    """Host facility that shows the consent page and returns the authorization code."""

    def begin(self, url: str, redirect_uri: str, state: str) -> str:
        """Present ``url`` and return the ``code`` delivered to ``redirect_uri``."""


class FitbitAuthManager:
    """Owns the Fitbit token set: authorize, persist, refresh, clear."""

    def __init__(
        self,
        secret_store: SecretStore,
        *,
        authorizer: Optional[InteractiveAuthorizer] = None,
        client_secret: Optional[str | SecretStr] = None,
        authorize_url: Optional[str] = None,
        token_url: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        scopes: Optional[str] = None,
        request_timeout: Optional[float] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = secret_store
        self.authorizer = authorizer
        self._client_secret = _unwrap_secret(client_secret)
        self.authorize_url = authorize_url or settings.FITBIT_AUTHORIZE_URL
        self.token_url = token_url or settings.FITBIT_TOKEN_URL
        self.redirect_uri = redirect_uri or settings.FITBIT_REDIRECT_URI
        self.scopes = scopes or settings.FITBIT_SCOPES
        self._request_timeout = request_timeout or settings.FITBIT_REQUEST_TIMEOUT
        self._clock = clock
        self._refresh_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------
    @property
    def token_set(self) -> Optional[TokenSet]:
        return TokenSet.load(self._store)

    @property
    def is_connected(self) -> bool:
        return self.token_set is not None

    # ------------------------------------------------------------------
    # Authorization code flow
    # ------------------------------------------------------------------
    def begin_authorization(self, client_id: str) -> PendingAuthorization:
        verifier = generate_code_verifier()
        challenge = derive_code_challenge(verifier)
        state = secrets.token_urlsafe(16)
        params = {
            "response_type": "code",
            "client_id": client_id,
            "redirect_uri": self.redirect_uri,
            "scope": self.scopes,
            "code_challenge": challenge,
            "code_challenge_method": "S256",
            "state": state,
        }
        return PendingAuthorization(
            verifier=verifier,
            challenge=challenge,
            state=state,
            redirect_uri=self.redirect_uri,
            authorize_url=f"{self.authorize_url}?{urlencode(params)}",
        )

    def complete_authorization(self, pending: PendingAuthorization, code: str, client_id: str) -> TokenSet:
        """Exchange ``code`` for a token set using the verifier from ``pending``, then persist it."""
        if not code:
            raise AuthExchangeFailed("Authorization did not return a code.")
        body = {
            "client_id": client_id,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": pending.redirect_uri,
            "code_verifier": pending.verifier,
        }
        tokens = self._perform_token_request(body, context="code exchange", failure=AuthExchangeFailed)
        self._persist(tokens)
        log_utils.info("Connected to Fitbit; token set stored.")
        return tokens

    def authorize(self, client_id: str) -> TokenSet:
        """Run the full interactive flow and return the stored token set."""
        if not client_id:
            raise AuthExchangeFailed("FITBIT_CLIENT_ID is not configured.")
        if self.authorizer is None:
            raise AuthExchangeFailed("No interactive authorizer is available.")

        pending = self.begin_authorization(client_id)
        log_utils.info("Starting Fitbit authorization.")
        try:
            code = self.authorizer.begin(pending.authorize_url, pending.redirect_uri, pending.state)
        except AuthError:
            raise
        except Exception as exc:
            log_utils.error(f"Interactive Fitbit authorization failed: {exc}")
            raise AuthExchangeFailed(f"Interactive authorization failed: {exc}") from exc
        return self.complete_authorization(pending, code, client_id)

    # ------------------------------------------------------------------
    # Token access and refresh
    # ------------------------------------------------------------------
    def valid_access_token(self, client_id: str) -> str:
        """Return an access token valid for at least the refresh margin.

        Concurrent callers that all observe an expiring token trigger a single
        refresh; the others wait and receive the refreshed token.
        """
        with self._refresh_lock:
            current = self.token_set
            if current is None:
                raise NotConnected("Not connected to Fitbit")
            if current.is_fresh(self._clock(), REFRESH_MARGIN):
                return current.access_token
            log_utils.info("Fitbit access token expired or near expiry, refreshing.")
            return self._refresh_locked(current, client_id).access_token

    def refresh_tokens(self, client_id: str) -> TokenSet:
        """Force a refresh regardless of the current expiry."""
        with self._refresh_lock:
            current = self.token_set
            if current is None:
                raise NotConnected("Not connected to Fitbit")
            return self._refresh_locked(current, client_id)

    def clear_tokens(self) -> None:
        self._store.clear(TOKEN_KEYS)
        log_utils.info("Fitbit tokens cleared.")

    def _refresh_locked(self, current: TokenSet, client_id: str) -> TokenSet:
        body = {
            "client_id": client_id,
            "grant_type": "refresh_token",
            "refresh_token": current.refresh_token,
        }
        refreshed = self._perform_token_request(body, context="token refresh", failure=RefreshFailed)
        self._persist(refreshed)
        log_utils.info(f"Refreshed Fitbit access token; valid until {refreshed.expires_at.isoformat()}.")
        return refreshed

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------
    def _perform_token_request(
        self,
        body: Dict[str, str],
        *,
        context: str,
        failure: Type[AuthExchangeFailed] | Type[RefreshFailed],
    ) -> TokenSet:
        auth = (body["client_id"], self._client_secret) if self._client_secret else None
        try:
            response = requests.post(
                self.token_url,
                data=body,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                auth=auth,
                timeout=self._request_timeout,
            )
        except requests.exceptions.RequestException as exc:
            log_utils.error(f"Fitbit {context} request failed: {exc}")
            raise failure(f"Fitbit {context} request failed: {exc}") from exc

        if not 200 <= response.status_code < 300:
            log_utils.error(f"Fitbit {context} rejected with HTTP {response.status_code}.")
            raise failure(f"Fitbit {context} failed with HTTP {response.status_code}", status_code=response.status_code)

        try:
            payload = response.json()
            access_token = str(payload["access_token"])
            refresh_token = str(payload["refresh_token"])
            expires_in = int(payload["expires_in"])
        except (ValueError, KeyError, TypeError) as exc:
            log_utils.error(f"Fitbit {context} returned an unusable payload: {exc}")
            raise failure(f"Invalid response from Fitbit during {context}.") from exc

        return TokenSet(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=self._clock() + timedelta(seconds=expires_in),
        )

    def _persist(self, tokens: TokenSet) -> None:
        try:
            tokens.save(self._store)
        except StateStoreError:
            log_utils.error("Could not store the new Fitbit token set; previous tokens left unchanged.")
            raise


__all__ = [
    "FitbitAuthManager",
    "InteractiveAuthorizer",
    "PendingAuthorization",
    "REFRESH_MARGIN",
    "derive_code_challenge",
    "generate_code_verifier",
]
