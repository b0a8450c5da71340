"""FastAPI entrypoint for diagnosis, chat and review endpoints."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, ValidationError

from synapse_agent.agent.fallback import DeterministicModelBackend
from synapse_agent.agent.invoker import ModelBackend, ModelInvoker
from synapse_agent.agent.pipeline import ReasoningPipeline
from synapse_agent.agent.planner import LangChainModelBackend, openai_chat_factory
from synapse_agent.agent.registry import ToolDispatcher
from synapse_agent.agent.schema import ChatRequest, ReasoningRequest
from synapse_agent.agent.stream import StreamAggregator
from synapse_agent.agent.tools import build_adapters, register_knowledge_tools
from synapse_agent.config import AdapterSettings, CacheConfig, InvokerConfig, ModelSettings
from synapse_agent.knowledge.cache import CatalogCache, SessionCache
from synapse_agent.lifecycle.service import (
    DiagnosisLifecycle,
    DiagnosisNotFoundError,
    InvalidStatusError,
    TerminalStatusError,
)
from synapse_agent.lifecycle.store import (
    DiagnosisRecord,
    DiagnosisStore,
    InMemoryDiagnosisStore,
    SqliteDiagnosisStore,
)
from synapse_agent.obs.logging import set_request_id, setup_logging
from synapse_agent.speech.synthesis import (
    OpenAISpeechSynthesizer,
    SilentSpeechSynthesizer,
    SpeechSynthesizer,
)

logger = logging.getLogger(__name__)


class StatusUpdateRequest(BaseModel):
    status: str = Field(min_length=1)
    reviewer: str = Field(min_length=1)


@dataclass(slots=True)
class Services:
    """Everything a request handler needs, built once per application."""

    dispatcher: ToolDispatcher
    invoker: ModelInvoker
    pipeline: ReasoningPipeline
    aggregator: StreamAggregator
    lifecycle: DiagnosisLifecycle
    adapter_settings: AdapterSettings
    model_mode: str


def build_services(
    *,
    backend: ModelBackend | None = None,
    synthesizer: SpeechSynthesizer | None = None,
    store: DiagnosisStore | None = None,
    adapter_settings: AdapterSettings | None = None,
    models: ModelSettings | None = None,
    invoker_config: InvokerConfig | None = None,
    cache_config: CacheConfig | None = None,
    http_client: httpx.Client | None = None,
) -> Services:
    """Wire the orchestrator from explicit arguments, falling back to the environment."""
    adapter_settings = adapter_settings or AdapterSettings.from_env()
    models = models or ModelSettings.from_env()
    invoker_config = invoker_config or InvokerConfig()

    if store is None:
        db_path = os.getenv("SYNAPSE_DB_PATH")
        store = SqliteDiagnosisStore(db_path) if db_path else InMemoryDiagnosisStore()

    openai_configured = bool(os.getenv("OPENAI_API_KEY"))
    if backend is None:
        if openai_configured:
            backend = LangChainModelBackend(
                openai_chat_factory(invoker_config.call_timeout_seconds),
                max_tool_rounds=models.max_tool_rounds,
            )
        else:
            backend = DeterministicModelBackend()
    if synthesizer is None:
        synthesizer = OpenAISpeechSynthesizer() if openai_configured else SilentSpeechSynthesizer()
    model_mode = "deterministic" if isinstance(backend, DeterministicModelBackend) else "langchain"

    cache_config = cache_config or CacheConfig()
    adapters = build_adapters(
        adapter_settings,
        store,
        session_cache=SessionCache(cache_config),
        catalog_cache=CatalogCache(cache_config),
        client=http_client,
    )
    dispatcher = ToolDispatcher()
    register_knowledge_tools(dispatcher, adapters)

    invoker = ModelInvoker(backend, dispatcher, invoker_config)
    pipeline = ReasoningPipeline(invoker=invoker, dispatcher=dispatcher, models=models)
    aggregator = StreamAggregator(
        invoker=invoker, pipeline=pipeline, synthesizer=synthesizer, models=models
    )
    return Services(
        dispatcher=dispatcher,
        invoker=invoker,
        pipeline=pipeline,
        aggregator=aggregator,
        lifecycle=DiagnosisLifecycle(store),
        adapter_settings=adapter_settings,
        model_mode=model_mode,
    )


def record_to_dict(record: DiagnosisRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "status": record.status.value,
        "patient_id": record.patient_id,
        "created_at": record.created_at,
        "reviewer": record.reviewer,
        "reviewed_at": record.reviewed_at,
        "result": record.result.model_dump(mode="json"),
    }


def create_app(services: Services | None = None) -> FastAPI:
    services = services or build_services()

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        # Logging is configured when the server starts, not on import.
        setup_logging(use_json=os.getenv("SYNAPSE_LOG_JSON", "1") != "0")
        yield

    app = FastAPI(title="Synapse Diagnostic Agent", version="0.1.0", lifespan=lifespan)
    app.state.services = services

    @app.middleware("http")
    async def assign_request_id(request: Request, call_next: Any) -> Any:
        request_id = set_request_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.get("/health")
    def health() -> dict[str, Any]:
        settings = services.adapter_settings
        return {
            "status": "ok",
            "model_mode": services.model_mode,
            "tools": [spec.name for spec in services.dispatcher.specs()],
            "adapters_configured": {
                "clinical_knowledge_base": settings.radiopaedia_api_key is not None,
                "anatomy_atlas": settings.imaios_api_key is not None,
                "project_registry": settings.xnat_host is not None,
            },
        }

    @app.post("/diagnose")
    def diagnose(request: ReasoningRequest) -> dict[str, Any]:
        result = services.pipeline.run(request)
        if result.degraded:
            return {"record": None, "result": result.model_dump(mode="json")}
        record = services.lifecycle.create(result, patient_id=request.patient_id)
        return {"record": record_to_dict(record), "result": result.model_dump(mode="json")}

    @app.post("/chat")
    def chat(request: ChatRequest) -> StreamingResponse:
        def _ndjson() -> Iterator[str]:
            for chunk in services.aggregator.stream(request):
                yield json.dumps(chunk.to_dict()) + "\n"

        return StreamingResponse(_ndjson(), media_type="application/x-ndjson")

    @app.get("/diagnoses/stats")
    def diagnosis_stats() -> dict[str, Any]:
        return dict(services.lifecycle.stats())

    @app.get("/diagnoses/{record_id}")
    def diagnosis_detail(record_id: str) -> dict[str, Any]:
        try:
            record = services.lifecycle.get(record_id)
        except DiagnosisNotFoundError as exc:
            raise HTTPException(status_code=404, detail=f"Diagnosis not found: {record_id}") from exc
        return record_to_dict(record)

    @app.patch("/diagnoses/{record_id}/status")
    def update_status(record_id: str, request: StatusUpdateRequest) -> dict[str, Any]:
        try:
            record = services.lifecycle.set_status(record_id, request.status, request.reviewer)
        except DiagnosisNotFoundError as exc:
            raise HTTPException(status_code=404, detail=f"Diagnosis not found: {record_id}") from exc
        except InvalidStatusError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except TerminalStatusError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return record_to_dict(record)

    @app.get("/patients/{patient_id}/diagnoses")
    def patient_diagnoses(patient_id: str) -> dict[str, Any]:
        records = services.lifecycle.list_by_patient(patient_id)
        return {"items": [record_to_dict(record) for record in records]}

    @app.post("/lookup/{tool_name}")
    def lookup(tool_name: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            spec = services.dispatcher.get(tool_name)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=f"Unknown tool: {tool_name}") from exc
        try:
            term, summary = spec.invoke(payload)
        except ValidationError as exc:
            detail = exc.errors(include_url=False, include_context=False)
            raise HTTPException(status_code=422, detail=detail) from exc
        return {"tool": spec.name, "source": spec.source, "term": term, "summary": summary}

    return app


app = create_app()
