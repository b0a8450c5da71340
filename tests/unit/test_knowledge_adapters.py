import httpx
import pytest

from synapse_agent.agent.schema import ReasoningResult, ReasoningTrace
from synapse_agent.config import AdapterSettings
from synapse_agent.knowledge.anatomy import AnatomyAtlasAdapter
from synapse_agent.knowledge.base import catalog_key, normalize_term, rank_by_relevance
from synapse_agent.knowledge.cache import CatalogCache, SessionCache
from synapse_agent.knowledge.case_history import CaseHistoryAdapter
from synapse_agent.knowledge.clinical_kb import ClinicalKnowledgeBaseAdapter
from synapse_agent.knowledge.drugs import DrugFormularyAdapter
from synapse_agent.knowledge.image_db import MedicalImageDatabaseAdapter
from synapse_agent.knowledge.imaging_archive import PublicCollectionAdapter
from synapse_agent.knowledge.projects import ProjectRegistryAdapter
from synapse_agent.lifecycle.store import DiagnosisRecord, InMemoryDiagnosisStore
from synapse_agent.types import DiagnosisStatus

SETTINGS = AdapterSettings(
    radiopaedia_api_key="rp-key",
    imaios_api_key="im-key",
    xnat_host="https://xnat.test",
    xnat_user="reader",
    xnat_password="secret",
)

PROJECTS = {
    "ResultSet": {
        "Result": [
            {"ID": "PTX01", "name": "Pneumothorax Triage", "description": "Chest trauma"},
            {"ID": "NEURO", "name": "Glioma Atlas", "description": "Brain tumours"},
        ]
    }
}


def _client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


def _unreachable(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("connection refused", request=request)


def test_normalization_helpers() -> None:
    assert normalize_term("  Tension   Pneumothorax ") == "tension pneumothorax"
    assert catalog_key("Lung-PET-CT Dx") == "lungpetctdx"


def test_rank_by_relevance_is_stable_for_ties() -> None:
    captions = ["chest normal", "left pneumothorax", "tension pneumothorax", "knee", "another"]

    ranked = rank_by_relevance("tension pneumothorax", captions, lambda item: item)

    assert ranked == ["tension pneumothorax", "left pneumothorax", "chest normal"]


@pytest.mark.parametrize(
    "adapter",
    [
        ClinicalKnowledgeBaseAdapter(SETTINGS, _client(_unreachable)),
        AnatomyAtlasAdapter(SETTINGS, _client(_unreachable)),
        MedicalImageDatabaseAdapter(SETTINGS, _client(_unreachable)),
        PublicCollectionAdapter(SETTINGS, CatalogCache(), _client(_unreachable)),
        ProjectRegistryAdapter(SETTINGS, SessionCache(), _client(_unreachable)),
    ],
)
def test_unreachable_upstream_yields_descriptive_string(adapter) -> None:
    output = adapter.lookup("  Pneumothorax ")

    assert output
    assert "pneumothorax" in output
    assert "[upstream_error]" in output


def _json_list(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json=[{"id": 1}])


def _projects_without_objects(request: httpx.Request) -> httpx.Response:
    if request.method == "POST":
        return httpx.Response(200, text="session-token")
    return httpx.Response(200, json={"ResultSet": {"Result": ["PTX01", 7]}})


@pytest.mark.parametrize(
    "adapter",
    [
        ClinicalKnowledgeBaseAdapter(SETTINGS, _client(_json_list)),
        AnatomyAtlasAdapter(SETTINGS, _client(_json_list)),
        MedicalImageDatabaseAdapter(SETTINGS, _client(_json_list)),
        ProjectRegistryAdapter(SETTINGS, SessionCache(), _client(_projects_without_objects)),
    ],
)
def test_malformed_upstream_payload_yields_failure_string(adapter) -> None:
    output = adapter.lookup("Pneumothorax")

    assert "[upstream_error]" in output
    assert "pneumothorax" in output
    assert "unexpected response" in output


def test_unconfigured_adapters_explain_missing_settings() -> None:
    bare = AdapterSettings()

    for adapter in (
        ClinicalKnowledgeBaseAdapter(bare, _client(_unreachable)),
        AnatomyAtlasAdapter(bare, _client(_unreachable)),
        ProjectRegistryAdapter(bare, SessionCache(), _client(_unreachable)),
    ):
        output = adapter.lookup("Pneumothorax")
        assert "[misconfigured]" in output
        assert "pneumothorax" in output


def test_blank_term_is_invalid_input() -> None:
    output = DrugFormularyAdapter().lookup("   ")

    assert output.startswith("[invalid_input]")


def test_clinical_knowledge_base_returns_synopsis() -> None:
    seen: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path.endswith("/search"):
            return httpx.Response(200, json={"articles": [{"id": 12, "title": "Pneumothorax"}]})
        return httpx.Response(200, json={"synopsis": "<p>Air in the pleural space.</p>"})

    output = ClinicalKnowledgeBaseAdapter(SETTINGS, _client(_handler)).lookup("Pneumothorax")

    assert output == (
        'From the Clinical Knowledge Base, regarding "pneumothorax" (Pneumothorax): '
        "Air in the pleural space."
    )
    assert seen[0].url.params["q"] == "pneumothorax"
    assert seen[0].headers["Authorization"] == "rp-key"
    assert seen[1].url.path.endswith("/articles/12")


def test_clinical_knowledge_base_upstream_status_is_reported() -> None:
    output = ClinicalKnowledgeBaseAdapter(
        SETTINGS, _client(lambda request: httpx.Response(500))
    ).lookup("Atelectasis")

    assert output.startswith("[upstream_error]")
    assert "atelectasis" in output
    assert "500" in output


def test_anatomy_atlas_falls_back_to_search_hits() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/search"):
            return httpx.Response(
                200,
                json={"search_results": [{"id": 7, "name": "Lateral ventricle"}, {"id": 8, "name": "Corpus callosum"}]},
            )
        return httpx.Response(404)

    output = AnatomyAtlasAdapter(SETTINGS, _client(_handler)).lookup("Periventricular")

    assert 'Found 2 results in the Anatomy Atlas for "periventricular"' in output
    assert "Lateral ventricle, Corpus callosum" in output


def test_image_database_ranks_and_limits_results() -> None:
    images = [
        {"caption": "Chest radiograph normal"},
        {"caption": "Left pneumothorax with collapse"},
        {"caption": "Tension pneumothorax chest radiograph"},
        {"caption": "Knee MRI"},
    ]
    client = _client(lambda request: httpx.Response(200, json={"count": 40, "list": images}))

    output = MedicalImageDatabaseAdapter(SETTINGS, client).lookup("Tension Pneumothorax")

    assert output.startswith('Found 40 images in the Medical Image Database related to "tension pneumothorax"')
    assert output.index("Tension pneumothorax chest") < output.index("Left pneumothorax")
    assert output.index("Left pneumothorax") < output.index("Chest radiograph normal")
    assert "Knee MRI" not in output


def test_collection_catalog_fetched_once_and_matched_locally() -> None:
    fetches: list[httpx.Request] = []
    catalog = [
        {"Collection": "LIDC-IDRI"},
        {"Collection": "TCGA-LUAD"},
        {"Collection": "CPTAC-LUAD"},
        {"Collection": "TCGA-GBM"},
        {"Collection": "Lung-PET-CT-Dx"},
    ]

    def _handler(request: httpx.Request) -> httpx.Response:
        fetches.append(request)
        return httpx.Response(200, json=catalog)

    adapter = PublicCollectionAdapter(SETTINGS, CatalogCache(), _client(_handler))

    luad = adapter.lookup("LUAD")
    pet = adapter.lookup("Lung PET")
    missing = adapter.lookup("Pancreas")

    assert len(fetches) == 1
    assert "TCGA-LUAD, CPTAC-LUAD" in luad
    assert "Lung-PET-CT-Dx" in pet
    assert missing.startswith("[not_found]")
    assert "pancreas" in missing


def test_collection_matches_capped_at_three() -> None:
    catalog = [{"Collection": name} for name in ("TCGA-LUAD", "TCGA-LUSC", "TCGA-GBM", "TCGA-BRCA")]
    adapter = PublicCollectionAdapter(
        SETTINGS, CatalogCache(), _client(lambda request: httpx.Response(200, json=catalog))
    )

    output = adapter.lookup("tcga")

    assert "Found 4 collection(s)" in output
    assert "TCGA-LUAD, TCGA-LUSC, TCGA-GBM." in output
    assert "TCGA-BRCA" not in output


class _XnatServer:
    def __init__(self, *, reject_tokens: set[str]) -> None:
        self.reject_tokens = reject_tokens
        self.logins = 0
        self.listings = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/data/JSESSION":
            self.logins += 1
            return httpx.Response(200, text=f"session-{self.logins}")
        self.listings += 1
        token = request.headers.get("Cookie", "").removeprefix("JSESSIONID=")
        if token in self.reject_tokens:
            return httpx.Response(401)
        return httpx.Response(200, json=PROJECTS)


def test_project_registry_reauthenticates_once_on_rejection() -> None:
    server = _XnatServer(reject_tokens={"session-1"})
    cache = SessionCache()
    adapter = ProjectRegistryAdapter(SETTINGS, cache, _client(server))

    output = adapter.lookup("Pneumothorax")

    assert "Pneumothorax Triage" in output
    assert "(ID: PTX01)" in output
    assert server.logins == 2
    assert server.listings == 2
    assert cache.peek("xnat-session").token == "session-2"


def test_project_registry_second_rejection_is_a_failure_string() -> None:
    server = _XnatServer(reject_tokens={"session-1", "session-2"})
    adapter = ProjectRegistryAdapter(SETTINGS, SessionCache(), _client(server))

    output = adapter.lookup("Pneumothorax")

    assert output.startswith("[unauthorized]")
    assert "pneumothorax" in output
    assert server.logins == 2
    assert server.listings == 2


def test_project_registry_reuses_cached_session() -> None:
    server = _XnatServer(reject_tokens=set())
    adapter = ProjectRegistryAdapter(SETTINGS, SessionCache(), _client(server))

    adapter.lookup("glioma")
    adapter.lookup("pneumothorax")

    assert server.logins == 1
    assert server.listings == 2


def test_drug_lookup_matches_brand_and_generic_names() -> None:
    adapter = DrugFormularyAdapter()

    assert "Semaglutide" in adapter.lookup("Ozempic")
    assert "Amiodarone" in adapter.lookup("amiodarone hydrochloride")
    assert adapter.lookup("unobtainium").startswith("[not_found]")


def _record(record_id: str, primary: str, status: DiagnosisStatus) -> DiagnosisRecord:
    result = ReasoningResult(
        primary_suggestion=primary,
        secondary_findings="None.",
        reasoning=ReasoningTrace(observations=["X-ray-specific approach."], justification="Seen."),
    )
    return DiagnosisRecord(id=record_id, result=result, status=status, created_at=f"2026-01-0{record_id}")


def test_case_history_only_uses_reviewed_cases() -> None:
    store = InMemoryDiagnosisStore()
    store.put(_record("1", "Tension pneumothorax", DiagnosisStatus.APPROVED))
    store.put(_record("2", "Small pneumothorax", DiagnosisStatus.PENDING))
    store.put(_record("3", "Pneumothorax, left apical", DiagnosisStatus.REVIEWED))

    output = CaseHistoryAdapter(store).lookup("Pneumothorax")

    assert output.startswith('Found 2 similar case(s) for "pneumothorax"')
    assert "Small pneumothorax" not in output
    assert CaseHistoryAdapter(store).lookup("glioma").startswith("[not_found]")
