import threading
from collections.abc import Iterator

from pydantic import BaseModel

from synapse_agent.agent.fallback import DeterministicModelBackend
from synapse_agent.agent.invoker import ModelInvoker
from synapse_agent.agent.pipeline import ReasoningPipeline
from synapse_agent.agent.registry import ToolDispatcher, ToolPass
from synapse_agent.agent.schema import ChatMessage, ChatRequest, MediaReference, ReasoningResult
from synapse_agent.agent.stream import StreamAggregator, format_diagnosis
from synapse_agent.agent.tools import KnowledgeAdapters, register_knowledge_tools
from synapse_agent.config import GenerationParams, InvokerConfig, ModelSettings
from synapse_agent.knowledge.base import KnowledgeAdapter, LookupResult
from synapse_agent.types import ModelOutput, ModelOutputChunk, ModelPrompt


class StaticAdapter(KnowledgeAdapter):
    def __init__(self, name: str) -> None:
        self.name = name

    def search(self, term: str) -> LookupResult:
        return LookupResult.ok(term, f'{self.name} says "{term}" is air in the pleural space.')


class RecordingSynthesizer:
    def __init__(self) -> None:
        self.texts: list[str] = []

    def synthesize(self, text: str) -> str | None:
        self.texts.append(text)
        return f"data:audio/wav;base64,{len(self.texts)}"


class BrokenSynthesizer:
    def synthesize(self, text: str) -> str | None:
        raise RuntimeError("speech quota exceeded")


class ChatBackend:
    """Streams a tool call followed by text deltas; diagnosis calls return findings."""

    def __init__(self) -> None:
        self.closed = threading.Event()
        self.produced = 0

    def generate(
        self,
        prompt: ModelPrompt,
        model_id: str,
        tools: ToolPass | None,
        params: GenerationParams,
        output_schema: type[BaseModel] | None = None,
    ) -> ModelOutput:
        return ModelOutput(
            text="",
            structured={
                "primary_suggestion": "Pneumothorax",
                "secondary_findings": "Subcutaneous emphysema.",
                "measurements": [{"structure": "Pleural gap", "value": "1.8 cm"}],
                "reasoning": {
                    "observations": ["X-ray-specific approach. Pleural line visible."],
                    "justification": "Matches the knowledge base definition.",
                },
            },
        )

    def generate_stream(
        self,
        prompt: ModelPrompt,
        model_id: str,
        tools: ToolPass | None,
        params: GenerationParams,
    ) -> Iterator[ModelOutputChunk]:
        try:
            assert tools is not None
            tools.execute("search_clinical_knowledge_base", {"term": "pneumothorax"})
            yield ModelOutputChunk(tool_invocation=tools.invocations[-1], model_id=model_id)
            for delta in ("According to the Clinical Knowledge Base, ", "pneumothorax is ", "air."):
                self.produced += 1
                yield ModelOutputChunk(text_delta=delta, model_id=model_id)
        finally:
            self.closed.set()


def _aggregator(backend, synthesizer) -> StreamAggregator:
    dispatcher = ToolDispatcher()
    adapter = StaticAdapter("Clinical Knowledge Base")
    register_knowledge_tools(
        dispatcher,
        KnowledgeAdapters(
            clinical_kb=adapter,
            anatomy=adapter,
            image_db=adapter,
            collections=adapter,
            projects=adapter,
            drugs=adapter,
            case_history=adapter,
        ),
    )
    invoker = ModelInvoker(backend, dispatcher, InvokerConfig(backoff_seconds=0), sleep=lambda _: None)
    models = ModelSettings(diagnosis_models=["pro"], chat_models=["flash"])
    pipeline = ReasoningPipeline(invoker=invoker, dispatcher=dispatcher, models=models)
    return StreamAggregator(
        invoker=invoker, pipeline=pipeline, synthesizer=synthesizer, models=models
    )


def _chat(text: str = "What is a pneumothorax?") -> ChatRequest:
    return ChatRequest(messages=[ChatMessage(role="user", text=text)])


def test_text_chat_streams_tool_then_text_then_audio() -> None:
    synthesizer = RecordingSynthesizer()

    chunks = list(_aggregator(ChatBackend(), synthesizer).stream(_chat()))

    assert [chunk.kind for chunk in chunks] == ["tool", "text", "text", "text", "audio"]
    assert chunks[0].tool.name == "search_clinical_knowledge_base"
    assert "".join(chunk.text for chunk in chunks if chunk.kind == "text") == (
        "According to the Clinical Knowledge Base, pneumothorax is air."
    )
    assert synthesizer.texts == ["According to the Clinical Knowledge Base, pneumothorax is air."]
    assert chunks[-1].audio_url == "data:audio/wav;base64,1"


def test_closing_consumer_stops_model_stream() -> None:
    backend = ChatBackend()
    synthesizer = RecordingSynthesizer()
    stream = _aggregator(backend, synthesizer).stream(_chat())

    assert next(stream).kind == "tool"
    assert next(stream).kind == "text"
    stream.close()

    assert backend.closed.is_set()
    assert backend.produced == 1
    assert synthesizer.texts == []


def test_media_request_emits_single_response_chunk() -> None:
    synthesizer = RecordingSynthesizer()
    request = ChatRequest(
        messages=[ChatMessage(role="user", text="Please review this scan.")],
        media=MediaReference(uri="data:image/png;base64,AAAA", modality="XR"),
    )

    chunks = list(_aggregator(ChatBackend(), synthesizer).stream(request))

    assert len(chunks) == 1
    chunk = chunks[0]
    assert chunk.kind == "response"
    assert chunk.result is not None
    assert "**Primary Suggestion:** Pneumothorax" in chunk.text
    assert "- Pleural gap: 1.8 cm" in chunk.text
    assert "side panel" in chunk.text
    assert chunk.audio_url == "data:audio/wav;base64,1"
    assert chunk.to_dict()["result"]["primary_suggestion"] == "Pneumothorax"


def test_audio_failure_does_not_drop_response() -> None:
    chunks = list(_aggregator(ChatBackend(), BrokenSynthesizer()).stream(_chat()))

    assert chunks[-1].kind == "audio"
    assert chunks[-1].audio_url is None


class InterruptedBackend(ChatBackend):
    def generate_stream(
        self,
        prompt: ModelPrompt,
        model_id: str,
        tools: ToolPass | None,
        params: GenerationParams,
    ) -> Iterator[ModelOutputChunk]:
        yield ModelOutputChunk(text_delta="Pneumothorax is ", model_id=model_id)
        raise RuntimeError("connection reset")


def test_interrupted_stream_ends_with_error_and_no_audio() -> None:
    synthesizer = RecordingSynthesizer()

    chunks = list(_aggregator(InterruptedBackend(), synthesizer).stream(_chat()))

    assert [chunk.kind for chunk in chunks] == ["text", "error"]
    assert chunks[0].text == "Pneumothorax is "
    assert "connection reset" in chunks[-1].text
    assert synthesizer.texts == []


def test_unavailable_models_yield_only_an_error() -> None:
    class Unreachable(ChatBackend):
        def generate_stream(self, prompt, model_id, tools, params):
            raise RuntimeError("overloaded")

    chunks = list(_aggregator(Unreachable(), RecordingSynthesizer()).stream(_chat()))

    assert [chunk.kind for chunk in chunks] == ["error"]


def test_offline_backend_answers_from_knowledge_base() -> None:
    synthesizer = RecordingSynthesizer()

    chunks = list(
        _aggregator(DeterministicModelBackend(), synthesizer).stream(_chat("What is a pneumothorax?"))
    )

    assert chunks[0].kind == "tool"
    assert chunks[0].tool.term == "pneumothorax"
    text = "".join(chunk.text for chunk in chunks if chunk.kind == "text")
    assert 'Clinical Knowledge Base says "pneumothorax"' in text
    assert chunks[-1].kind == "audio"


def test_offline_backend_degrades_media_requests() -> None:
    request = ChatRequest(
        messages=[ChatMessage(role="user", text="Scan attached.")],
        media=MediaReference(uri="data:image/png;base64,AAAA"),
    )

    chunks = list(_aggregator(DeterministicModelBackend(), RecordingSynthesizer()).stream(request))

    assert chunks[0].result.degraded
    assert chunks[0].text == format_diagnosis(chunks[0].result)
    assert "couldn't analyze the scan" in chunks[0].text


def _diagnosis(**overrides) -> ReasoningResult:
    base = {
        "primary_suggestion": "Tension pneumothorax",
        "secondary_findings": "Mediastinal shift to the right.",
        "measurements": [{"structure": "Apical pleural gap", "value": "3.2 cm"}],
        "reasoning": {
            "observations": ["X-ray-specific approach. Pleural line."],
            "justification": "Pleural line with shift.",
        },
    }
    return ReasoningResult.model_validate({**base, **overrides})


def test_format_diagnosis_shows_confidence_differentials_and_urgent_banner() -> None:
    text = format_diagnosis(
        _diagnosis(
            confidence=0.873,
            differential_diagnoses=[
                {"diagnosis": "Skin fold artifact", "probability": 0.1},
                {"diagnosis": "Bullous emphysema", "probability": 0.2},
            ],
            clinical_correlation={"urgency": "emergent"},
        )
    )

    assert "**Primary Suggestion:** Tension pneumothorax (Confidence: 87.3%)" in text
    assert "**Differential Diagnoses:**\n- Bullous emphysema (20%)\n- Skin fold artifact (10%)" in text
    assert "**URGENT**: This case requires immediate clinical attention." in text
    assert text.index("**Key Measurements:**") < text.index("**URGENT**")


def test_format_diagnosis_asks_to_confirm_understated_urgency() -> None:
    text = format_diagnosis(
        _diagnosis(
            clinical_correlation={"urgency": "routine"},
            critical_findings=["pneumothorax"],
            urgency_review_required=True,
        )
    )

    assert "URGENT" not in text
    assert "Critical finding (pneumothorax)" in text
    assert "Differential Diagnoses" not in text
    assert "Confidence" not in text


def test_format_diagnosis_routine_case_has_no_urgency_note() -> None:
    text = format_diagnosis(
        _diagnosis(primary_suggestion="Subsegmental atelectasis", secondary_findings="None.")
    )

    assert "URGENT" not in text
    assert "Critical finding" not in text
    assert text.endswith("the side panel for your review.")
