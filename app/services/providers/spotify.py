"""
Spotify provider.

Basic client auth on refresh. Spotify only sometimes returns a new refresh
token; when it does not, the existing one stays valid.
"""

from collections import Counter
from datetime import date, datetime
from typing import Any

import httpx

from app.services.providers.base import ProviderAdapter, window_bounds

SPOTIFY_TOKEN_URL = "https://accounts.spotify.com/api/token"
SPOTIFY_API_URL = "https://api.spotify.com/v1"


def _parse_played_at(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class SpotifyAdapter(ProviderAdapter):
    name = "spotify"
    token_url = SPOTIFY_TOKEN_URL

    def _refresh_request(self, refresh_token: str) -> tuple[dict[str, str], httpx.Auth | None]:
        return (
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            httpx.BasicAuth(self.client_id, self.client_secret),
        )

    async def fetch_data(self, access_token: str, start: date, end: date) -> dict[str, Any]:
        start_dt, end_dt = window_bounds(start, end)

        async with self._client() as client:
            payload = await self._get_json(
                client,
                f"{SPOTIFY_API_URL}/me/player/recently-played",
                access_token,
                params={"limit": 50, "after": int(start_dt.timestamp() * 1000)},
            )

        plays = [
            item
            for item in payload.get("items", [])
            if item.get("played_at") and _parse_played_at(item["played_at"]) < end_dt
        ]

        artists: Counter[str] = Counter()
        total_ms = 0
        for item in plays:
            track = item.get("track") or {}
            total_ms += int(track.get("duration_ms", 0))
            for artist in track.get("artists", []):
                if artist.get("name"):
                    artists[artist["name"]] += 1

        return {
            "tracks_played": len(plays),
            "listening_minutes": total_ms // 60000,
            "top_artists": [name for name, _ in artists.most_common(3)],
        }
