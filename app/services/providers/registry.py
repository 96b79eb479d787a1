"""
Provider adapter registry.

Maps provider names to configured adapters. Callers ask for an adapter by
the name stored on the token row; unknown names raise UnsupportedProviderError.
"""

from app.config import Settings, settings
from app.models.domain.token_domain import Provider, RefreshedToken
from app.services.providers.base import ProviderAdapter, UnsupportedProviderError
from app.services.providers.fitbit import FitbitAdapter
from app.services.providers.google import (
    GmailAdapter,
    GoogleCalendarAdapter,
    GoogleTasksAdapter,
)
from app.services.providers.spotify import SpotifyAdapter


class ProviderRegistry:
    def __init__(self, adapters: dict[str, ProviderAdapter]):
        self._adapters = dict(adapters)

    @classmethod
    def from_settings(cls, config: Settings = settings, **adapter_kwargs) -> "ProviderRegistry":
        """Build every adapter from app settings. Extra kwargs reach each adapter (transport, clock)."""
        common = {
            "timeout": config.PROVIDER_HTTP_TIMEOUT,
            "max_retries": config.PROVIDER_MAX_RETRIES,
            **adapter_kwargs,
        }
        google = (config.GOOGLE_CLIENT_ID, config.GOOGLE_CLIENT_SECRET)
        return cls(
            {
                Provider.FITBIT.value: FitbitAdapter(
                    config.FITBIT_CLIENT_ID, config.FITBIT_CLIENT_SECRET, **common
                ),
                Provider.GMAIL.value: GmailAdapter(*google, **common),
                Provider.GOOGLE_CALENDAR.value: GoogleCalendarAdapter(*google, **common),
                Provider.GOOGLE_TASKS.value: GoogleTasksAdapter(*google, **common),
                Provider.SPOTIFY.value: SpotifyAdapter(
                    config.SPOTIFY_CLIENT_ID, config.SPOTIFY_CLIENT_SECRET, **common
                ),
            }
        )

    @property
    def providers(self) -> list[str]:
        return list(self._adapters)

    def supports(self, provider: str) -> bool:
        return provider in self._adapters

    def get(self, provider: str) -> ProviderAdapter:
        try:
            return self._adapters[provider]
        except KeyError:
            raise UnsupportedProviderError(
                f"Unsupported provider: {provider}", provider
            ) from None

    async def refresh(self, provider: str, refresh_token: str) -> RefreshedToken:
        """Refresh one token through the provider's adapter."""
        return await self.get(provider).refresh(refresh_token)


_registry: ProviderRegistry | None = None


def get_provider_registry() -> ProviderRegistry:
    global _registry
    if _registry is None:
        _registry = ProviderRegistry.from_settings()
    return _registry
