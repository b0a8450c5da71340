"""Public imaging-collection lookup over a cached TCIA-style catalog.

The archive exposes no per-term query endpoint, so the full collection list is
fetched once through `CatalogCache` and filtered locally.
"""

from __future__ import annotations

import httpx

from synapse_agent.config import AdapterSettings
from synapse_agent.knowledge.base import (
    KnowledgeAdapter,
    LookupFailureKind,
    LookupResult,
    catalog_key,
)
from synapse_agent.knowledge.cache import CatalogCache


class PublicCollectionAdapter(KnowledgeAdapter):
    name = "Public Imaging Archive"
    cache_key = "tcia-collections"

    def __init__(
        self,
        settings: AdapterSettings,
        catalog_cache: CatalogCache,
        client: httpx.Client | None = None,
        *,
        top_n: int = 3,
    ) -> None:
        self.settings = settings
        self.catalog_cache = catalog_cache
        self.client = client or httpx.Client(timeout=settings.http_timeout_seconds)
        self.top_n = top_n

    def search(self, term: str) -> LookupResult:
        collections = self.catalog_cache.get(self.cache_key, self._fetch_catalog).entries
        if not collections:
            return LookupResult.fail(
                term, LookupFailureKind.NOT_FOUND, f"the {self.name} returned an empty catalog"
            )

        needle = catalog_key(term)
        matches = [name for name in collections if needle in catalog_key(name)]
        if not matches:
            return LookupResult.fail(
                term,
                LookupFailureKind.NOT_FOUND,
                f"no public collections in the {self.name} directly match; "
                "a manual portal search may be required",
            )

        top = ", ".join(matches[: self.top_n])
        return LookupResult.ok(
            term,
            f'Found {len(matches)} collection(s) in the {self.name} related to "{term}". '
            f"Top matches include: {top}.",
        )

    def _fetch_catalog(self) -> list[str]:
        response = self.client.get(f"{self.settings.tcia_base_url}/query/getCollectionValues")
        response.raise_for_status()
        return [
            str(item["Collection"])
            for item in response.json()
            if isinstance(item, dict) and item.get("Collection")
        ]
