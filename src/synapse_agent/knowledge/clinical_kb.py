"""Clinical terminology lookup against a Radiopaedia-style article API."""

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


class ClinicalKnowledgeBaseAdapter(KnowledgeAdapter):
    """Searches articles, then fetches the synopsis of the top hit."""

    name = "Clinical Knowledge Base"

    def __init__(self, settings: AdapterSettings, client: httpx.Client | None = None) -> None:
        self.settings = settings
        self.client = client or httpx.Client(timeout=settings.http_timeout_seconds)

    def search(self, term: str) -> LookupResult:
        api_key = self.settings.radiopaedia_api_key
        if not api_key:
            return LookupResult.fail(
                term,
                LookupFailureKind.MISCONFIGURED,
                describe_missing_config(self.name, ["RADIOPAEDIA_API_KEY"]),
            )

        headers = {"Authorization": api_key}
        base = self.settings.radiopaedia_base_url
        logger.info("Searching %s for %r", self.name, term)
        response = self.client.get(
            f"{base}/search", params={"q": term, "scope": "articles"}, headers=headers
        )
        response.raise_for_status()
        articles = response.json().get("articles") or []
        if not articles:
            return LookupResult.fail(
                term, LookupFailureKind.NOT_FOUND, f"no article found on the {self.name}"
            )

        top = articles[0]
        title = str(top.get("title", term))
        article = self.client.get(f"{base}/articles/{top['id']}", headers=headers)
        if article.status_code >= 400:
            logger.error("%s article fetch failed with status %s", self.name, article.status_code)
            return LookupResult.ok(
                term,
                f'The {self.name} has an article titled "{title}" for "{term}", '
                "but its details could not be fetched.",
            )

        synopsis = strip_html(str(article.json().get("synopsis") or ""))
        if not synopsis:
            return LookupResult.ok(
                term,
                f'The {self.name} has an article titled "{title}" for "{term}", '
                "but no synopsis is available.",
            )
        return LookupResult.ok(
            term, f'From the {self.name}, regarding "{term}" ({title}): {synopsis}'
        )
