"""
Fitbit provider.

Fitbit authenticates the refresh call with HTTP Basic client credentials and
rotates the refresh token on every refresh; the previous one stops working
as soon as the new one is issued.
"""

from datetime import date
from typing import Any

import httpx

from app.infrastructure.observability.logging import get_logger
from app.services.providers.base import ProviderAdapter

logger = get_logger(__name__)

FITBIT_TOKEN_URL = "https://api.fitbit.com/oauth2/token"
FITBIT_API_URL = "https://api.fitbit.com"


class FitbitAdapter(ProviderAdapter):
    name = "fitbit"
    token_url = FITBIT_TOKEN_URL

    def _refresh_request(self, refresh_token: str) -> tuple[dict[str, str], httpx.Auth | None]:
        return (
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            httpx.BasicAuth(self.client_id, self.client_secret),
        )

    def _resolve_refresh_token(self, payload: dict, previous: str) -> str:
        rotated = payload.get("refresh_token")
        if not rotated:
            logger.warning("Fitbit refresh response did not rotate refresh token")
            return previous
        return rotated

    async def fetch_data(self, access_token: str, start: date, end: date) -> dict[str, Any]:
        async with self._client() as client:
            if start == end:
                day = start.isoformat()
                activity = await self._get_json(
                    client, f"{FITBIT_API_URL}/1/user/-/activities/date/{day}.json", access_token
                )
                sleep = await self._get_json(
                    client, f"{FITBIT_API_URL}/1.2/user/-/sleep/date/{day}.json", access_token
                )
                summary = activity.get("summary", {})
                steps_by_day = {day: int(summary.get("steps", 0))}
                active_minutes = int(summary.get("veryActiveMinutes", 0)) + int(
                    summary.get("fairlyActiveMinutes", 0)
                )
                calories = int(summary.get("caloriesOut", 0))
            else:
                span = f"{start.isoformat()}/{end.isoformat()}"
                steps = await self._get_json(
                    client,
                    f"{FITBIT_API_URL}/1/user/-/activities/steps/date/{span}.json",
                    access_token,
                )
                sleep = await self._get_json(
                    client, f"{FITBIT_API_URL}/1.2/user/-/sleep/date/{span}.json", access_token
                )
                steps_by_day = {
                    item["dateTime"]: int(item.get("value", 0))
                    for item in steps.get("activities-steps", [])
                }
                active_minutes = None
                calories = None

        sleep_minutes = sum(
            int(entry.get("minutesAsleep", 0))
            for entry in sleep.get("sleep", [])
            if entry.get("isMainSleep", True)
        )

        data: dict[str, Any] = {
            "steps": sum(steps_by_day.values()),
            "steps_by_day": steps_by_day,
            "sleep_minutes": sleep_minutes,
        }
        if active_minutes is not None:
            data["active_minutes"] = active_minutes
        if calories is not None:
            data["calories"] = calories
        return data
