from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional

from gatehouse.config import Settings
from gatehouse.logging import get_logger
from gatehouse.service.errors import ProviderNotConfiguredError
from gatehouse.storage.models import Provider

logger = get_logger(__name__)

GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
FACEBOOK_GRAPH_URL = "https://graph.facebook.com"

_EXTERNAL_PROVIDERS = (Provider.GOOGLE, Provider.FACEBOOK)


@dataclass(frozen=True)
class ProviderConfig:
    client_id: str
    endpoint: str


class ProviderRegistry:
    """Provider -> client configuration, built once at startup.

    ``register`` is last-write-wins: a sign-in already holding the previous
    ``ProviderConfig`` finishes with it. The registry is passed by reference
    to the verifier rather than living at module level.
    """

    def __init__(self) -> None:
        self._configs: Dict[Provider, ProviderConfig] = {}
        self._lock = threading.Lock()

    def register(self, provider: Provider, config: ProviderConfig) -> None:
        provider = Provider(provider)
        if provider not in _EXTERNAL_PROVIDERS:
            raise ValueError(f"not an external provider: {provider!r}")
        if not config.client_id:
            raise ValueError("provider client_id must be set")
        with self._lock:
            replaced = provider in self._configs
            self._configs[provider] = config
        logger.info(
            "provider_registered",
            provider=provider.name.lower(),
            replaced=replaced,
        )

    def get(self, provider: Provider) -> Optional[ProviderConfig]:
        with self._lock:
            return self._configs.get(provider)

    def require(self, provider: Provider) -> ProviderConfig:
        config = self.get(provider)
        if config is None:
            raise ProviderNotConfiguredError(
                detail={"provider": getattr(provider, "name", str(provider))}
            )
        return config

    def registered(self) -> FrozenSet[Provider]:
        with self._lock:
            return frozenset(self._configs)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderRegistry":
        registry = cls()
        if settings.oauth_google_client_id:
            registry.register(
                Provider.GOOGLE,
                ProviderConfig(settings.oauth_google_client_id, GOOGLE_TOKENINFO_URL),
            )
        if settings.oauth_facebook_client_id:
            registry.register(
                Provider.FACEBOOK,
                ProviderConfig(settings.oauth_facebook_client_id, FACEBOOK_GRAPH_URL),
            )
        return registry
