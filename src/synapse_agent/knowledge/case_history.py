"""Precedent lookup over reviewed diagnoses in the diagnosis store."""

from __future__ import annotations

from synapse_agent.knowledge.base import KnowledgeAdapter, LookupFailureKind, LookupResult
from synapse_agent.lifecycle.store import DiagnosisStore
from synapse_agent.types import DiagnosisStatus

_VERIFIED = (DiagnosisStatus.REVIEWED, DiagnosisStatus.APPROVED)


class CaseHistoryAdapter(KnowledgeAdapter):
    name = "Internal Case History"

    def __init__(self, store: DiagnosisStore, *, limit: int = 3) -> None:
        self.store = store
        self.limit = limit

    def search(self, term: str) -> LookupResult:
        cases = self.store.search(term, statuses=_VERIFIED, limit=self.limit)
        if not cases:
            return LookupResult.fail(
                term, LookupFailureKind.NOT_FOUND, f"no similar cases in the {self.name}"
            )
        impressions = "; ".join(f'"{case.result.primary_suggestion}"' for case in cases)
        return LookupResult.ok(
            term,
            f'Found {len(cases)} similar case(s) for "{term}" in the {self.name}. '
            f"Impressions include: {impressions}.",
        )
