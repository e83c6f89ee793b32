import threading
import time
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest
import requests

from fitbit_sync.domain.exceptions import AuthExchangeFailed, NotConnected, RefreshFailed, StateStoreError
from fitbit_sync.domain.token_storage import (
    ACCESS_TOKEN_KEY,
    EXPIRES_AT_KEY,
    REFRESH_TOKEN_KEY,
    TokenSet,
)
from fitbit_sync.infrastructure import fitbit_auth
from fitbit_sync.infrastructure.fitbit_auth import (
    VERIFIER_ALPHABET,
    FitbitAuthManager,
    derive_code_challenge,
    generate_code_verifier,
)

NOW = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class RecordingPost:
    def __init__(self, response=None, delay=0.0):
        self.response = response or FakeResponse(
            payload={"access_token": "new-access", "refresh_token": "new-refresh", "expires_in": 28800}
        )
        self.delay = delay
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, url, data=None, headers=None, auth=None, timeout=None):
        with self._lock:
            self.calls.append({"url": url, "data": dict(data or {}), "auth": auth, "timeout": timeout})
        if self.delay:
            time.sleep(self.delay)
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


def _store_tokens(store, expires_at, access="old-access", refresh="old-refresh"):
    TokenSet(access_token=access, refresh_token=refresh, expires_at=expires_at).save(store)


def _manager(store, **kwargs):
    kwargs.setdefault("clock", lambda: NOW)
    kwargs.setdefault("token_url", "https://api.fitbit.test/oauth2/token")
    return FitbitAuthManager(store, **kwargs)


def test_pkce_challenge_matches_rfc7636_vector():
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"

    assert derive_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def test_generated_verifier_shape():
    verifier = generate_code_verifier()

    assert len(verifier) == 64
    assert set(verifier) <= set(VERIFIER_ALPHABET)
    assert generate_code_verifier() != verifier


def test_begin_authorization_builds_pkce_url(secret_store):
    manager = _manager(secret_store, redirect_uri="http://127.0.0.1:8189/callback", scopes="weight sleep")

    pending = manager.begin_authorization("client-123")

    params = parse_qs(urlparse(pending.authorize_url).query)
    assert params["client_id"] == ["client-123"]
    assert params["code_challenge"] == [derive_code_challenge(pending.verifier)]
    assert params["code_challenge_method"] == ["S256"]
    assert params["state"] == [pending.state]
    assert params["scope"] == ["weight sleep"]


def test_fresh_token_is_returned_without_refresh(monkeypatch, secret_store):
    post = RecordingPost()
    monkeypatch.setattr(fitbit_auth.requests, "post", post)
    _store_tokens(secret_store, NOW + timedelta(seconds=3600))

    token = _manager(secret_store).valid_access_token("client-123")

    assert token == "old-access"
    assert post.calls == []


def test_token_inside_margin_triggers_one_refresh(monkeypatch, secret_store):
    post = RecordingPost()
    monkeypatch.setattr(fitbit_auth.requests, "post", post)
    _store_tokens(secret_store, NOW + timedelta(seconds=30))

    token = _manager(secret_store).valid_access_token("client-123")

    assert token == "new-access"
    assert len(post.calls) == 1
    assert post.calls[0]["data"] == {
        "client_id": "client-123",
        "grant_type": "refresh_token",
        "refresh_token": "old-refresh",
    }
    assert secret_store.get(REFRESH_TOKEN_KEY) == "new-refresh"
    assert datetime.fromisoformat(secret_store.get(EXPIRES_AT_KEY)) == NOW + timedelta(seconds=28800)


def test_concurrent_callers_share_one_refresh(monkeypatch, secret_store):
    post = RecordingPost(delay=0.05)
    monkeypatch.setattr(fitbit_auth.requests, "post", post)
    _store_tokens(secret_store, NOW - timedelta(seconds=1))
    manager = _manager(secret_store)

    tokens = []
    threads = [threading.Thread(target=lambda: tokens.append(manager.valid_access_token("c"))) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(post.calls) == 1
    assert tokens == ["new-access"] * 5


def test_missing_tokens_raise_not_connected(secret_store):
    with pytest.raises(NotConnected):
        _manager(secret_store).valid_access_token("client-123")


def test_partial_token_set_counts_as_not_connected(secret_store):
    secret_store.set(ACCESS_TOKEN_KEY, "a")
    secret_store.set(REFRESH_TOKEN_KEY, "r")
    secret_store.set(EXPIRES_AT_KEY, "not-a-date")

    manager = _manager(secret_store)

    assert manager.token_set is None
    assert not manager.is_connected


def test_refresh_rejection_raises_refresh_failed(monkeypatch, secret_store):
    monkeypatch.setattr(fitbit_auth.requests, "post", RecordingPost(FakeResponse(400, {"errors": []})))
    _store_tokens(secret_store, NOW - timedelta(minutes=5))

    with pytest.raises(RefreshFailed) as excinfo:
        _manager(secret_store).valid_access_token("client-123")

    assert excinfo.value.status_code == 400
    assert secret_store.get(ACCESS_TOKEN_KEY) == "old-access"


def test_refresh_transport_error_raises_refresh_failed(monkeypatch, secret_store):
    monkeypatch.setattr(fitbit_auth.requests, "post", RecordingPost(requests.ConnectionError("offline")))
    _store_tokens(secret_store, NOW - timedelta(minutes=5))

    with pytest.raises(RefreshFailed):
        _manager(secret_store).valid_access_token("client-123")


def test_refresh_with_unusable_payload(monkeypatch, secret_store):
    monkeypatch.setattr(fitbit_auth.requests, "post", RecordingPost(FakeResponse(200, {"access_token": "x"})))
    _store_tokens(secret_store, NOW - timedelta(minutes=5))

    with pytest.raises(RefreshFailed):
        _manager(secret_store).valid_access_token("client-123")


class StubAuthorizer:
    def __init__(self, code="auth-code", error=None):
        self.code = code
        self.error = error
        self.seen = None

    def begin(self, url, redirect_uri, state):
        self.seen = (url, redirect_uri, state)
        if self.error:
            raise self.error
        return self.code


def test_authorize_exchanges_code_with_verifier(monkeypatch, secret_store):
    post = RecordingPost()
    monkeypatch.setattr(fitbit_auth.requests, "post", post)
    authorizer = StubAuthorizer()
    manager = _manager(secret_store, authorizer=authorizer, redirect_uri="http://127.0.0.1:8189/callback")

    tokens = manager.authorize("client-123")

    body = post.calls[0]["data"]
    assert body["grant_type"] == "authorization_code"
    assert body["code"] == "auth-code"
    challenge = parse_qs(urlparse(authorizer.seen[0]).query)["code_challenge"][0]
    assert derive_code_challenge(body["code_verifier"]) == challenge
    assert tokens.access_token == "new-access"
    assert manager.is_connected


def test_authorize_failure_of_interactive_step(monkeypatch, secret_store):
    monkeypatch.setattr(fitbit_auth.requests, "post", RecordingPost())
    manager = _manager(secret_store, authorizer=StubAuthorizer(error=RuntimeError("browser closed")))

    with pytest.raises(AuthExchangeFailed):
        manager.authorize("client-123")

    assert not manager.is_connected


def test_code_exchange_rejected(monkeypatch, secret_store):
    monkeypatch.setattr(fitbit_auth.requests, "post", RecordingPost(FakeResponse(401, {})))
    manager = _manager(secret_store, authorizer=StubAuthorizer())

    with pytest.raises(AuthExchangeFailed):
        manager.authorize("client-123")


def test_client_secret_sent_as_basic_auth(monkeypatch, secret_store):
    post = RecordingPost()
    monkeypatch.setattr(fitbit_auth.requests, "post", post)
    _store_tokens(secret_store, NOW)

    _manager(secret_store, client_secret="shh").refresh_tokens("client-123")

    assert post.calls[0]["auth"] == ("client-123", "shh")


def test_clear_tokens_is_idempotent(secret_store):
    _store_tokens(secret_store, NOW + timedelta(hours=1))
    manager = _manager(secret_store)

    manager.clear_tokens()
    manager.clear_tokens()

    assert secret_store.values == {}
    with pytest.raises(NotConnected):
        manager.valid_access_token("client-123")


def test_failed_token_persistence_keeps_previous_pair(monkeypatch, secret_store):
    monkeypatch.setattr(fitbit_auth.requests, "post", RecordingPost())
    _store_tokens(secret_store, NOW + timedelta(seconds=30))
    before = dict(secret_store.values)
    secret_store.fail_writes = StateStoreError("Cannot write Fitbit tokens to tokens.json: disk full")

    with pytest.raises(StateStoreError):
        _manager(secret_store).valid_access_token("client-123")

    assert secret_store.values == before
