"""Institutional project registry lookup (XNAT-style, session authenticated)."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TypeVar

import httpx

from synapse_agent.config import AdapterSettings
from synapse_agent.knowledge.base import (
    KnowledgeAdapter,
    LookupFailureKind,
    LookupResult,
    UnauthorizedError,
    describe_missing_config,
)
from synapse_agent.knowledge.cache import SessionCache

logger = logging.getLogger(__name__)

T = TypeVar("T")

_UNAUTHORIZED = {401, 403}


class ProjectRegistryAdapter(KnowledgeAdapter):
    name = "Project Registry"
    cache_key = "xnat-session"

    def __init__(
        self,
        settings: AdapterSettings,
        session_cache: SessionCache,
        client: httpx.Client | None = None,
    ) -> None:
        self.settings = settings
        self.session_cache = session_cache
        self.client = client or httpx.Client(timeout=settings.http_timeout_seconds)

    def search(self, term: str) -> LookupResult:
        if not (self.settings.xnat_host and self.settings.xnat_user and self.settings.xnat_password):
            return LookupResult.fail(
                term,
                LookupFailureKind.MISCONFIGURED,
                describe_missing_config(self.name, ["XNAT_HOST", "XNAT_USER", "XNAT_PASS"]),
            )

        projects = self.with_session(self._list_projects)
        matches = [
            project
            for project in projects
            if any(
                term in str(project.get(key) or "").lower()
                for key in ("name", "description", "ID")
            )
        ]
        if not matches:
            return LookupResult.fail(
                term, LookupFailureKind.NOT_FOUND, f"no projects in the {self.name} match"
            )

        top = "; ".join(f'"{p.get("name")}" (ID: {p.get("ID")})' for p in matches[:3])
        return LookupResult.ok(
            term,
            f'Found {len(matches)} projects in the {self.name} related to "{term}". '
            f"Top results include: {top}.",
        )

    def with_session(self, operation: Callable[[str], T]) -> T:
        """Run `operation(token)`, reauthenticating exactly once on rejection."""
        session = self.session_cache.acquire(self.cache_key, self._authenticate)
        try:
            return operation(session.token)
        except UnauthorizedError:
            logger.info("%s session rejected; reauthenticating once", self.name)
            self.session_cache.invalidate(self.cache_key, session.token)

        session = self.session_cache.acquire(self.cache_key, self._authenticate)
        return operation(session.token)

    def _authenticate(self) -> str:
        response = self.client.post(
            f"{self.settings.xnat_host}/data/JSESSION",
            auth=(self.settings.xnat_user or "", self.settings.xnat_password or ""),
        )
        if response.status_code in _UNAUTHORIZED:
            raise UnauthorizedError(f"authentication failed with status {response.status_code}")
        response.raise_for_status()
        token = response.text.strip()
        if not token:
            raise ValueError("authentication returned an empty session id")
        return token

    def _list_projects(self, token: str) -> list[dict]:
        response = self.client.get(
            f"{self.settings.xnat_host}/data/projects",
            params={"format": "json"},
            headers={"Cookie": f"JSESSIONID={token}"},
        )
        if response.status_code in _UNAUTHORIZED:
            raise UnauthorizedError(f"project listing returned {response.status_code}")
        response.raise_for_status()
        return list(response.json()["ResultSet"]["Result"])
