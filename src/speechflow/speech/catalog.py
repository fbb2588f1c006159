"""
VoiceCatalog - cached list of available voice models.

The list is fetched through the gateway (with retries) and kept in the
persistent store for five minutes. Any failure yields an empty list so
a catalog outage never blocks synthesis.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from speechflow.core.config import Defaults
from speechflow.core.logging import error, get_logger, verbose
from speechflow.speech.gateway import SpeechGateway
from speechflow.speech.retry import RetryOrchestrator
from speechflow.storage.store import PersistentStore

_LOG = get_logger("speechflow.catalog")

CATALOG_KEY = "voice_models_cache"


class VoiceCatalog:

    def __init__(
        self,
        gateway: SpeechGateway,
        store: PersistentStore,
        retry: Optional[RetryOrchestrator] = None,
        ttl_s: float = Defaults.CATALOG_CACHE_TTL_S,
    ):
        self._gateway = gateway
        self._store = store
        self._retry = retry or RetryOrchestrator()
        self.ttl_s = ttl_s
        self.last_fetch_from_network = False

    async def models(self, force_refresh: bool = False) -> List[Dict[str, Any]]:
        self.last_fetch_from_network = False
        if not force_refresh:
            cached = self._store.get(CATALOG_KEY)
            if isinstance(cached, list):
                verbose(_LOG, "catalog_cache_hit", count=len(cached))
                return cached

        try:
            models = await self._retry.run(self._gateway.voice_models)
        except Exception as e:
            error(_LOG, "catalog_fetch_failed", error=str(e))
            return []

        self.last_fetch_from_network = True
        self._store.set(CATALOG_KEY, models, max_age=self.ttl_s)
        return models

    def invalidate(self) -> None:
        self._store.remove(CATALOG_KEY)
