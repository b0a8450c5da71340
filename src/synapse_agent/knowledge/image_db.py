"""Visual-example lookup against an Open-i style image search API."""

from __future__ import annotations

import httpx

from synapse_agent.config import AdapterSettings
from synapse_agent.knowledge.base import (
    KnowledgeAdapter,
    LookupFailureKind,
    LookupResult,
    rank_by_relevance,
)


class MedicalImageDatabaseAdapter(KnowledgeAdapter):
    name = "Medical Image Database"

    def __init__(self, settings: AdapterSettings, client: httpx.Client | None = None) -> None:
        self.settings = settings
        self.client = client or httpx.Client(timeout=settings.http_timeout_seconds)

    def search(self, term: str) -> LookupResult:
        response = self.client.get(
            f"{self.settings.openi_base_url}/search",
            params={"query": term, "it": "x,y", "format": "json", "m": 1, "n": 10},
            headers={"Accept": "application/json"},
        )
        response.raise_for_status()
        data = response.json()
        images = data.get("list") or []
        if not images:
            return LookupResult.fail(
                term, LookupFailureKind.NOT_FOUND, f"no relevant images found in the {self.name}"
            )

        top = rank_by_relevance(term, images, lambda image: str(image.get("caption", "")))
        captions = "; ".join(
            f'an image with caption: "{_clip(str(image.get("caption", "")))}"' for image in top
        )
        total = data.get("count", len(images))
        return LookupResult.ok(
            term,
            f'Found {total} images in the {self.name} related to "{term}". '
            f"Top results include: {captions}.",
        )


def _clip(text: str, max_length: int = 100) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."
