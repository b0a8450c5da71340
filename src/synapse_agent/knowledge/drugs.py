"""Pharmaceutical lookup against a local formulary."""

from __future__ import annotations

from dataclasses import dataclass

from synapse_agent.knowledge.base import KnowledgeAdapter, LookupFailureKind, LookupResult


@dataclass(frozen=True, slots=True)
class DrugEntry:
    generic_name: str
    brand_names: tuple[str, ...]
    indications: str


DEFAULT_FORMULARY: dict[str, DrugEntry] = {
    "aspirin": DrugEntry(
        "Aspirin",
        ("Bayer", "Ecotrin"),
        "Pain relief, anti-inflammatory, antiplatelet agent for cardiovascular disease prevention.",
    ),
    "metformin": DrugEntry(
        "Metformin", ("Glucophage", "Fortamet"), "Treatment of type 2 diabetes mellitus."
    ),
    "atorvastatin": DrugEntry(
        "Atorvastatin",
        ("Lipitor",),
        "To lower cholesterol and reduce the risk of cardiovascular events.",
    ),
    "semaglutide": DrugEntry(
        "Semaglutide",
        ("Ozempic", "Wegovy", "Rybelsus"),
        "Treatment of type 2 diabetes and chronic weight management.",
    ),
    "amiodarone": DrugEntry(
        "Amiodarone",
        ("Cordarone", "Pacerone"),
        "Ventricular arrhythmias; associated with pulmonary toxicity on chest imaging.",
    ),
    "methotrexate": DrugEntry(
        "Methotrexate",
        ("Trexall", "Otrexup"),
        "Rheumatoid arthritis, psoriasis and some malignancies; may cause pneumonitis.",
    ),
}


class DrugFormularyAdapter(KnowledgeAdapter):
    """Matches a generic name contained in the query or an exact brand name."""

    name = "Pharmaceutical Database"

    def __init__(self, formulary: dict[str, DrugEntry] | None = None) -> None:
        self.formulary = formulary or DEFAULT_FORMULARY

    def search(self, term: str) -> LookupResult:
        for key, entry in self.formulary.items():
            brands = {brand.lower() for brand in entry.brand_names}
            if key in term or term in brands:
                return LookupResult.ok(
                    term,
                    f'Found drug info for "{term}": {entry.generic_name} '
                    f"(Brand(s): {', '.join(entry.brand_names)}). "
                    f"Primary Indication: {entry.indications}",
                )
        return LookupResult.fail(
            term, LookupFailureKind.NOT_FOUND, f"no entry in the {self.name}"
        )
