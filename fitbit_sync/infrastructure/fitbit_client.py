"""Fitbit Web API client: read-only access to the user's body, activity and sleep data."""

from __future__ import annotations

from datetime import date, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Tuple, TypeVar

import requests

from fitbit_sync.config import settings
from fitbit_sync.domain.exceptions import RemoteAPIError
from fitbit_sync.domain.metrics import DailyValue, SleepLog, WeightLog
from fitbit_sync.infrastructure.log_utils import log_message

# Largest date range each endpoint accepts in one call.
WEIGHT_RANGE_DAYS = 31
SLEEP_RANGE_DAYS = 100

T = TypeVar("T")


class AccessTokenProvider(Protocol):
    def valid_access_token(self, client_id: str) -> str:
        ...


def iter_date_chunks(start: date, end: date, max_days: int) -> Iterator[Tuple[date, date]]:
    """Split ``[start, end]`` into consecutive inclusive ranges of at most ``max_days`` days."""
    if end < start:
        return
    chunk_start = start
    while chunk_start <= end:
        chunk_end = min(chunk_start + timedelta(days=max_days - 1), end)
        yield chunk_start, chunk_end
        chunk_start = chunk_end + timedelta(days=1)


class FitbitAPIClient:
    """A client for the Fitbit Web API.

    Every request asks ``auth`` for a currently valid access token, so token
    refreshes happen transparently between calls.
    """

    def __init__(
        self,
        auth: AccessTokenProvider,
        client_id: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        request_timeout: Optional[float] = None,
    ) -> None:
        self._auth = auth
        self.client_id = client_id if client_id is not None else settings.FITBIT_CLIENT_ID
        self.base_url = (base_url or settings.FITBIT_API_BASE_URL).rstrip("/")
        self._request_timeout = request_timeout or settings.FITBIT_REQUEST_TIMEOUT

    # ------------------------------------------------------------------
    # Public fetchers
    # ------------------------------------------------------------------
    def fetch_weight_logs(self, start: date, end: date) -> List[WeightLog]:
        logs: List[WeightLog] = []
        for chunk_start, chunk_end in iter_date_chunks(start, end, WEIGHT_RANGE_DAYS):
            path = f"/1/user/-/body/log/weight/date/{chunk_start.isoformat()}/{chunk_end.isoformat()}.json"
            payload = self._request(path)
            logs.extend(self._parse_list(path, payload, "weight", WeightLog.from_payload))
        return logs

    def fetch_daily_steps(self, start: date, end: date) -> List[DailyValue]:
        path = f"/1/user/-/activities/steps/date/{start.isoformat()}/{end.isoformat()}.json"
        return self._parse_list(path, self._request(path), "activities-steps", DailyValue.from_payload)

    def fetch_daily_calories(self, start: date, end: date) -> List[DailyValue]:
        path = f"/1/user/-/activities/calories/date/{start.isoformat()}/{end.isoformat()}.json"
        return self._parse_list(path, self._request(path), "activities-calories", DailyValue.from_payload)

    def fetch_resting_heart_rate(self, day: date) -> Optional[DailyValue]:
        """Resting heart rate for ``day``; ``None`` when Fitbit has not computed one."""
        path = f"/1/user/-/activities/heart/date/{day.isoformat()}/1d.json"
        payload = self._request(path)
        entries = payload.get("activities-heart")
        if not isinstance(entries, list):
            raise RemoteAPIError(path, "missing 'activities-heart'")
        if not entries:
            return None
        first = entries[0] if isinstance(entries[0], dict) else {}
        value = first.get("value") if isinstance(first.get("value"), dict) else {}
        resting = value.get("restingHeartRate")
        if resting is None:
            return None
        return DailyValue(date_time=str(first.get("dateTime") or day.isoformat()), value=str(resting))

    def fetch_sleep_logs(self, start: date, end: date) -> List[SleepLog]:
        logs: List[SleepLog] = []
        for chunk_start, chunk_end in iter_date_chunks(start, end, SLEEP_RANGE_DAYS):
            path = f"/1.2/user/-/sleep/date/{chunk_start.isoformat()}/{chunk_end.isoformat()}.json"
            payload = self._request(path)
            logs.extend(self._parse_list(path, payload, "sleep", SleepLog.from_payload))
        return logs

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _request(self, path: str) -> Dict[str, Any]:
        access_token = self._auth.valid_access_token(self.client_id)
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }
        url = f"{self.base_url}{path}"
        try:
            response = requests.get(url, headers=headers, timeout=self._request_timeout)
        except requests.exceptions.RequestException as exc:
            log_message(f"Fitbit request to {path} failed: {exc}", "ERROR")
            raise RemoteAPIError(path, str(exc)) from exc

        if not 200 <= response.status_code < 300:
            log_message(f"Fitbit returned HTTP {response.status_code} for {path}.", "ERROR")
            raise RemoteAPIError(path, status_code=response.status_code)

        try:
            payload = response.json()
        except ValueError as exc:
            log_message(f"Failed to parse Fitbit response for {path} as JSON: {exc}", "ERROR")
            raise RemoteAPIError(path, "invalid JSON", status_code=response.status_code) from exc

        if not isinstance(payload, dict):
            raise RemoteAPIError(path, "unexpected response shape", status_code=response.status_code)
        log_message(f"Fetched {path}.", "DEBUG")
        return payload

    @staticmethod
    def _parse_list(
        path: str,
        payload: Dict[str, Any],
        key: str,
        parse: Callable[[Dict[str, Any]], T],
    ) -> List[T]:
        items = payload.get(key)
        if not isinstance(items, list):
            raise RemoteAPIError(path, f"missing '{key}'")
        try:
            return [parse(item) for item in items]
        except (KeyError, TypeError, ValueError) as exc:
            raise RemoteAPIError(path, f"malformed '{key}' entry: {exc}") from exc


__all__ = ["FitbitAPIClient", "SLEEP_RANGE_DAYS", "WEIGHT_RANGE_DAYS", "iter_date_chunks"]
