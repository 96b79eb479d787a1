"""
Google providers: Gmail, Google Calendar and Google Tasks.

All three share one OAuth client and token endpoint. Google sends the client
credentials in the form body and normally does not rotate refresh tokens.
"""

from datetime import date
from typing import Any

import httpx

from app.services.providers.base import ProviderAdapter, window_bounds

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GMAIL_API_URL = "https://gmail.googleapis.com/gmail/v1/users/me"
CALENDAR_API_URL = "https://www.googleapis.com/calendar/v3"
TASKS_API_URL = "https://tasks.googleapis.com/tasks/v1"


class GoogleAdapter(ProviderAdapter):
    token_url = GOOGLE_TOKEN_URL

    def _refresh_request(self, refresh_token: str) -> tuple[dict[str, str], httpx.Auth | None]:
        return (
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
            None,
        )


class GmailAdapter(GoogleAdapter):
    name = "gmail"

    async def _count(self, client: httpx.AsyncClient, access_token: str, query: str) -> int:
        payload = await self._get_json(
            client,
            f"{GMAIL_API_URL}/messages",
            access_token,
            params={"q": query, "maxResults": 500},
        )
        return int(payload.get("resultSizeEstimate") or len(payload.get("messages", [])))

    async def fetch_data(self, access_token: str, start: date, end: date) -> dict[str, Any]:
        start_dt, end_dt = window_bounds(start, end)
        span = f"after:{int(start_dt.timestamp())} before:{int(end_dt.timestamp())}"

        async with self._client() as client:
            received = await self._count(client, access_token, f"in:inbox {span}")
            sent = await self._count(client, access_token, f"in:sent {span}")
            unread = await self._count(client, access_token, f"is:unread in:inbox {span}")

        return {"received": received, "sent": sent, "unread": unread}


class GoogleCalendarAdapter(GoogleAdapter):
    name = "google-calendar"

    async def fetch_data(self, access_token: str, start: date, end: date) -> dict[str, Any]:
        start_dt, end_dt = window_bounds(start, end)

        async with self._client() as client:
            payload = await self._get_json(
                client,
                f"{CALENDAR_API_URL}/calendars/primary/events",
                access_token,
                params={
                    "timeMin": start_dt.isoformat(),
                    "timeMax": end_dt.isoformat(),
                    "singleEvents": "true",
                    "orderBy": "startTime",
                    "maxResults": 250,
                },
            )

        events = []
        for item in payload.get("items", []):
            if item.get("status") == "cancelled":
                continue
            events.append(
                {
                    "title": item.get("summary", ""),
                    "start": (item.get("start") or {}).get("dateTime")
                    or (item.get("start") or {}).get("date"),
                    "end": (item.get("end") or {}).get("dateTime")
                    or (item.get("end") or {}).get("date"),
                    "attendees": len(item.get("attendees", [])),
                }
            )

        return {"event_count": len(events), "events": events}


class GoogleTasksAdapter(GoogleAdapter):
    name = "google-tasks"

    async def fetch_data(self, access_token: str, start: date, end: date) -> dict[str, Any]:
        start_dt, end_dt = window_bounds(start, end)
        completed = 0
        open_tasks = 0

        async with self._client() as client:
            lists = await self._get_json(client, f"{TASKS_API_URL}/users/@me/lists", access_token)
            task_lists = lists.get("items", [])

            for task_list in task_lists:
                tasks = await self._get_json(
                    client,
                    f"{TASKS_API_URL}/lists/{task_list['id']}/tasks",
                    access_token,
                    params={
                        "showCompleted": "true",
                        "showHidden": "true",
                        "completedMin": start_dt.isoformat(),
                        "completedMax": end_dt.isoformat(),
                    },
                )
                for task in tasks.get("items", []):
                    if task.get("status") == "completed":
                        completed += 1
                    else:
                        open_tasks += 1

        return {"task_lists": len(task_lists), "completed": completed, "open": open_tasks}
