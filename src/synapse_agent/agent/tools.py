"""Knowledge tools exposed to the model during a reasoning pass."""

from __future__ import annotations

from dataclasses import dataclass

import httpx
from pydantic import BaseModel, Field

from synapse_agent.agent.registry import ToolDispatcher, ToolSpec
from synapse_agent.config import AdapterSettings
from synapse_agent.knowledge.anatomy import AnatomyAtlasAdapter
from synapse_agent.knowledge.base import KnowledgeAdapter
from synapse_agent.knowledge.cache import CatalogCache, SessionCache
from synapse_agent.knowledge.case_history import CaseHistoryAdapter
from synapse_agent.knowledge.clinical_kb import ClinicalKnowledgeBaseAdapter
from synapse_agent.knowledge.drugs import DrugFormularyAdapter
from synapse_agent.knowledge.image_db import MedicalImageDatabaseAdapter
from synapse_agent.knowledge.imaging_archive import PublicCollectionAdapter
from synapse_agent.knowledge.projects import ProjectRegistryAdapter
from synapse_agent.lifecycle.store import DiagnosisStore

CLINICAL_TERM_TOOL = "search_clinical_knowledge_base"
CHAT_TOOLS = (CLINICAL_TERM_TOOL,)


class TermInput(BaseModel):
    term: str = Field(min_length=1, max_length=200, description="The term to look up.")


class CaseSearchInput(BaseModel):
    search_term: str = Field(
        min_length=1,
        max_length=200,
        description='Diagnostic term to search the case history for (e.g. "Pneumothorax").',
    )


class DrugInput(BaseModel):
    drug_name: str = Field(
        min_length=1, max_length=200, description="Brand or generic name of the drug."
    )


@dataclass(slots=True)
class KnowledgeAdapters:
    clinical_kb: KnowledgeAdapter
    anatomy: KnowledgeAdapter
    image_db: KnowledgeAdapter
    collections: KnowledgeAdapter
    projects: KnowledgeAdapter
    drugs: KnowledgeAdapter
    case_history: KnowledgeAdapter


def build_adapters(
    settings: AdapterSettings,
    store: DiagnosisStore,
    *,
    session_cache: SessionCache,
    catalog_cache: CatalogCache,
    client: httpx.Client | None = None,
) -> KnowledgeAdapters:
    http = client or httpx.Client(timeout=settings.http_timeout_seconds)
    return KnowledgeAdapters(
        clinical_kb=ClinicalKnowledgeBaseAdapter(settings, http),
        anatomy=AnatomyAtlasAdapter(settings, http),
        image_db=MedicalImageDatabaseAdapter(settings, http),
        collections=PublicCollectionAdapter(settings, catalog_cache, http),
        projects=ProjectRegistryAdapter(settings, session_cache, http),
        drugs=DrugFormularyAdapter(),
        case_history=CaseHistoryAdapter(store),
    )


def register_knowledge_tools(dispatcher: ToolDispatcher, adapters: KnowledgeAdapters) -> None:
    """Register the diagnostic tool set.

    Tools:
    - `find_case_examples`: precedents from reviewed internal cases.
    - `search_clinical_knowledge_base`: definitions of radiological terms.
    - `search_anatomy_atlas`: anatomical location definitions.
    - `search_medical_image_database`: visual examples of a finding.
    - `search_public_research_datasets`: public imaging collections (oncology).
    - `search_project_registry`: institutional imaging projects.
    - `search_drug_info`: generic/brand names and indications of a drug.
    """

    dispatcher.register(
        ToolSpec(
            name="find_case_examples",
            description=(
                "Searches the internal, expert-verified case history for similar past "
                "cases. Use this to find precedents for your initial findings."
            ),
            args_schema=CaseSearchInput,
            handler=lambda data: adapters.case_history.lookup(data.search_term),
            source="case_history",
            term_field="search_term",
        )
    )
    dispatcher.register(
        ToolSpec(
            name=CLINICAL_TERM_TOOL,
            description=(
                "Looks up the definition and context of a radiological term such as "
                '"Pneumothorax" or "Atelectasis" in the clinical knowledge base.'
            ),
            args_schema=TermInput,
            handler=lambda data: adapters.clinical_kb.lookup(data.term),
            source="clinical_knowledge_base",
            mandatory=True,
        )
    )
    dispatcher.register(
        ToolSpec(
            name="search_anatomy_atlas",
            description=(
                "Looks up a precise anatomical definition for a location such as "
                '"periventricular" or "cerebellum".'
            ),
            args_schema=TermInput,
            handler=lambda data: adapters.anatomy.lookup(data.term),
            source="anatomy_atlas",
        )
    )
    dispatcher.register(
        ToolSpec(
            name="search_medical_image_database",
            description=(
                "Searches a public medical image database for visual examples of a "
                "radiological finding, to visually confirm a diagnosis."
            ),
            args_schema=TermInput,
            handler=lambda data: adapters.image_db.lookup(data.term),
            source="medical_image_database",
        )
    )
    dispatcher.register(
        ToolSpec(
            name="search_public_research_datasets",
            description=(
                "Searches public research archives for imaging collections relevant to "
                'a cancer type or finding (e.g. "Lung Adenocarcinoma", "GBM").'
            ),
            args_schema=TermInput,
            handler=lambda data: adapters.collections.lookup(data.term),
            source="public_research_datasets",
        )
    )
    dispatcher.register(
        ToolSpec(
            name="search_project_registry",
            description=(
                "Searches the institutional imaging project registry for projects "
                "related to a term."
            ),
            args_schema=TermInput,
            handler=lambda data: adapters.projects.lookup(data.term),
            source="project_registry",
        )
    )
    dispatcher.register(
        ToolSpec(
            name="search_drug_info",
            description=(
                "Looks up generic/brand names and indications of a drug mentioned in "
                "the history or implicated by a finding."
            ),
            args_schema=DrugInput,
            handler=lambda data: adapters.drugs.lookup(data.drug_name),
            source="drug_database",
            term_field="drug_name",
        )
    )
