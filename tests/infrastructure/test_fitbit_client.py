from datetime import date

import pytest
import requests

from fitbit_sync.domain.exceptions import RemoteAPIError
from fitbit_sync.infrastructure import fitbit_client
from fitbit_sync.infrastructure.fitbit_client import FitbitAPIClient, iter_date_chunks


class FakeResponse:
    def __init__(self, payload=None, status_code=200):
        self._payload = payload
        self.status_code = status_code

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class StubAuth:
    def __init__(self):
        self.calls = 0

    def valid_access_token(self, client_id):
        self.calls += 1
        return f"token-{self.calls}"


@pytest.fixture
def client():
    return FitbitAPIClient(StubAuth(), "client-123", base_url="https://api.fitbit.test", request_timeout=5)


def _route(monkeypatch, responses):
    calls = []

    def fake_get(url, headers=None, timeout=None):
        calls.append({"url": url, "headers": headers, "timeout": timeout})
        for suffix, response in responses.items():
            if url.endswith(suffix):
                if isinstance(response, Exception):
                    raise response
                return response
        return FakeResponse({}, 404)

    monkeypatch.setattr(fitbit_client.requests, "get", fake_get)
    return calls


def test_chunks_cover_range_without_overlap():
    chunks = list(iter_date_chunks(date(2024, 1, 1), date(2024, 3, 5), 31))

    assert chunks == [
        (date(2024, 1, 1), date(2024, 1, 31)),
        (date(2024, 2, 1), date(2024, 3, 2)),
        (date(2024, 3, 3), date(2024, 3, 5)),
    ]
    assert list(iter_date_chunks(date(2024, 1, 2), date(2024, 1, 1), 31)) == []


def test_weight_logs_fetched_with_bearer_token(monkeypatch, client):
    calls = _route(
        monkeypatch,
        {
            "/1/user/-/body/log/weight/date/2024-03-03/2024-03-10.json": FakeResponse(
                {"weight": [{"logId": 42, "date": "2024-03-09", "time": "07:15:00", "weight": 80.2, "fat": 21.5}]}
            )
        },
    )

    logs = client.fetch_weight_logs(date(2024, 3, 3), date(2024, 3, 10))

    assert [log.log_id for log in logs] == [42]
    assert calls[0]["headers"] == {"Authorization": "Bearer token-1", "Accept": "application/json"}
    assert calls[0]["timeout"] == 5


def test_weight_range_is_split_into_31_day_chunks(monkeypatch, client):
    calls = _route(
        monkeypatch,
        {
            "2024-01-01/2024-01-31.json": FakeResponse({"weight": []}),
            "2024-02-01/2024-02-10.json": FakeResponse(
                {"weight": [{"logId": 1, "date": "2024-02-05", "time": "07:00:00", "weight": 80}]}
            ),
        },
    )

    logs = client.fetch_weight_logs(date(2024, 1, 1), date(2024, 2, 10))

    assert len(calls) == 2
    assert len(logs) == 1


def test_steps_and_calories_series(monkeypatch, client):
    _route(
        monkeypatch,
        {
            "/activities/steps/date/2024-03-09/2024-03-10.json": FakeResponse(
                {"activities-steps": [{"dateTime": "2024-03-09", "value": "8123"}]}
            ),
            "/activities/calories/date/2024-03-09/2024-03-10.json": FakeResponse(
                {"activities-calories": [{"dateTime": "2024-03-09", "value": "2450"}]}
            ),
        },
    )

    steps = client.fetch_daily_steps(date(2024, 3, 9), date(2024, 3, 10))
    calories = client.fetch_daily_calories(date(2024, 3, 9), date(2024, 3, 10))

    assert steps[0].value == "8123"
    assert calories[0].numeric_value() == 2450.0


def test_resting_heart_rate_for_day(monkeypatch, client):
    _route(
        monkeypatch,
        {
            "/activities/heart/date/2024-03-09/1d.json": FakeResponse(
                {"activities-heart": [{"dateTime": "2024-03-09", "value": {"restingHeartRate": 58}}]}
            ),
            "/activities/heart/date/2024-03-10/1d.json": FakeResponse(
                {"activities-heart": [{"dateTime": "2024-03-10", "value": {"heartRateZones": []}}]}
            ),
        },
    )

    value = client.fetch_resting_heart_rate(date(2024, 3, 9))

    assert (value.date_time, value.value) == ("2024-03-09", "58")
    assert client.fetch_resting_heart_rate(date(2024, 3, 10)) is None


def test_sleep_logs_parsed(monkeypatch, client):
    _route(
        monkeypatch,
        {
            "/1.2/user/-/sleep/date/2024-03-03/2024-03-10.json": FakeResponse(
                {"sleep": [{"logId": 9, "startTime": "2024-03-09T23:00:00.000", "endTime": "2024-03-10T06:30:00.000"}]}
            )
        },
    )

    logs = client.fetch_sleep_logs(date(2024, 3, 3), date(2024, 3, 10))

    assert logs[0].log_id == 9


def test_non_2xx_raises_remote_api_error_with_path(monkeypatch, client):
    _route(monkeypatch, {"2024-03-10.json": FakeResponse({"errors": []}, 429)})

    with pytest.raises(RemoteAPIError) as excinfo:
        client.fetch_daily_steps(date(2024, 3, 9), date(2024, 3, 10))

    assert excinfo.value.status_code == 429
    assert excinfo.value.path == "/1/user/-/activities/steps/date/2024-03-09/2024-03-10.json"
    assert excinfo.value.path in str(excinfo.value)


def test_transport_error_raises_remote_api_error(monkeypatch, client):
    _route(monkeypatch, {"2024-03-10.json": requests.Timeout("slow")})

    with pytest.raises(RemoteAPIError):
        client.fetch_sleep_logs(date(2024, 3, 9), date(2024, 3, 10))


def test_invalid_json_raises_remote_api_error(monkeypatch, client):
    _route(monkeypatch, {"2024-03-10.json": FakeResponse(ValueError("not json"))})

    with pytest.raises(RemoteAPIError):
        client.fetch_daily_calories(date(2024, 3, 9), date(2024, 3, 10))


def test_malformed_entry_raises_remote_api_error(monkeypatch, client):
    _route(monkeypatch, {"2024-03-10.json": FakeResponse({"weight": [{"date": "2024-03-09"}]})})

    with pytest.raises(RemoteAPIError):
        client.fetch_weight_logs(date(2024, 3, 9), date(2024, 3, 10))


def test_each_request_asks_for_a_valid_token(monkeypatch, client):
    calls = _route(
        monkeypatch,
        {"1d.json": FakeResponse({"activities-heart": []})},
    )

    client.fetch_resting_heart_rate(date(2024, 3, 9))
    client.fetch_resting_heart_rate(date(2024, 3, 10))

    assert [call["headers"]["Authorization"] for call in calls] == ["Bearer token-1", "Bearer token-2"]
