"""Anatomical atlas lookup (IMAIOS e-Anatomy style API)."""

from __future__ import annotations

import logging

import httpx

from synapse_agent.config import AdapterSettings
from synapse_agent.knowledge.base import (
    KnowledgeAdapter,
    LookupFailureKind,
    LookupResult,
    describe_missing_config,
    strip_html,
)

logger = logging.getLogger(__name__)


class AnatomyAtlasAdapter(KnowledgeAdapter):
    name = "Anatomy Atlas"

    def __init__(self, settings: AdapterSettings, client: httpx.Client | None = None) -> None:
        self.settings = settings
        self.client = client or httpx.Client(timeout=settings.http_timeout_seconds)

    def search(self, term: str) -> LookupResult:
        api_key = self.settings.imaios_api_key
        if not api_key:
            return LookupResult.fail(
                term,
                LookupFailureKind.MISCONFIGURED,
                describe_missing_config(self.name, ["IMAIOS_API_KEY"]),
            )

        headers = {"Authorization": f"ApiKey {api_key}"}
        base = self.settings.imaios_base_url
        response = self.client.get(
            f"{base}/search", params={"text": term, "sources": "e-anatomy"}, headers=headers
        )
        response.raise_for_status()
        results = response.json().get("search_results") or []
        if not results:
            return LookupResult.fail(
                term, LookupFailureKind.NOT_FOUND, f"no anatomical structures found in the {self.name}"
            )

        top = results[0]
        detail = self.client.get(f"{base}/anatomical-structures/{top['id']}", headers=headers)
        if detail.status_code >= 400:
            # Summary of the search hits is still useful without the detail page.
            names = ", ".join(str(item.get("name", "")) for item in results[:3])
            return LookupResult.ok(
                term,
                f'Found {len(results)} results in the {self.name} for "{term}". '
                f"Top results include: {names}.",
            )

        payload = detail.json()
        description = strip_html(str(payload.get("description") or ""))
        name = str(payload.get("name") or top.get("name", term))
        if not description:
            return LookupResult.ok(
                term,
                f'Found anatomical structure "{name}" for "{term}" in the {self.name}, '
                "but no detailed description is available.",
            )
        return LookupResult.ok(
            term, f'From the {self.name}, regarding "{term}" ({name}): {description}'
        )
