"""Chat stream aggregation: text, tool activity, then spoken audio."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import closing
from dataclasses import asdict, dataclass
from typing import Any, Literal

from synapse_agent.agent.invoker import ModelInvoker
from synapse_agent.agent.pipeline import ReasoningPipeline
from synapse_agent.agent.schema import (
    ChatRequest,
    MediaReference,
    ModelCallSpec,
    ReasoningRequest,
    ReasoningResult,
)
from synapse_agent.agent.tools import CHAT_TOOLS
from synapse_agent.config import GenerationParams, ModelSettings
from synapse_agent.obs.tracing import estimate_token_count
from synapse_agent.speech.synthesis import SpeechSynthesizer
from synapse_agent.types import ModelPrompt, PromptMessage, ToolInvocation

logger = logging.getLogger(__name__)

CHAT_SYSTEM_PROMPT = """
You are Synapse, an expert radiologist co-pilot assisting human radiologists.
Answer questions, research terms and explain findings. Be concise, accurate and
professional. When you use a tool, cite the source, for example "According to the
Clinical Knowledge Base...". If asked for something outside your role, such as giving
medical advice directly to a patient, politely decline and explain that you assist
medical professionals.
""".strip()

ChunkKind = Literal["text", "tool", "audio", "response", "error"]


@dataclass(frozen=True, slots=True)
class StreamChunk:
    kind: ChunkKind
    text: str = ""
    tool: ToolInvocation | None = None
    audio_url: str | None = None
    result: ReasoningResult | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind}
        if self.text:
            payload["text"] = self.text
        if self.tool is not None:
            payload["tool"] = asdict(self.tool)
        if self.kind in ("audio", "response"):
            payload["audio_url"] = self.audio_url
        if self.result is not None:
            payload["result"] = self.result.model_dump(mode="json")
        return payload


def build_chat_prompt(request: ChatRequest) -> ModelPrompt:
    messages = tuple(PromptMessage(role=item.role, text=item.text) for item in request.messages)
    return ModelPrompt(system=CHAT_SYSTEM_PROMPT, messages=messages)


def format_diagnosis(result: ReasoningResult) -> str:
    """Conversational rendering of a structured diagnosis."""
    if result.degraded:
        return (
            "I couldn't analyze the scan right now. "
            f"{result.secondary_findings} Please try again shortly."
        )
    if result.measurements:
        measurements = "\n".join(
            f"- {item.structure}: {item.value}" for item in result.measurements
        )
    else:
        measurements = "No specific measurements taken."
    primary = result.primary_suggestion
    if result.confidence is not None:
        primary += f" (Confidence: {result.confidence * 100:.1f}%)"

    sections = [
        "I've analyzed the scan. Here's what I found:",
        f"**Primary Suggestion:** {primary}",
    ]
    if result.differential_diagnoses:
        differentials = "\n".join(
            f"- {item.diagnosis} ({item.probability * 100:.0f}%)"
            for item in result.differential_diagnoses
        )
        sections.append(f"**Differential Diagnoses:**\n{differentials}")
    sections.append(f"**Potential Areas of Interest:** {result.secondary_findings}")
    sections.append(f"**Key Measurements:**\n{measurements}")
    if result.urgency == "emergent":
        sections.append("**URGENT**: This case requires immediate clinical attention.")
    elif result.urgency_review_required:
        sections.append(
            f"**Note**: Critical finding ({', '.join(result.critical_findings)}) reported "
            "without emergent urgency. Please confirm the urgency."
        )
    sections.append(
        "I've also attached my detailed reasoning and the knowledge base lookups to "
        "the side panel for your review."
    )
    return "\n\n".join(sections)


class StreamAggregator:
    """Turns a chat request into an ordered stream of `StreamChunk`s.

    Text-only turns stream model output as it is generated and finish with an
    audio chunk. Turns with media run the reasoning pipeline and emit a single
    response chunk. Closing the returned generator stops the model stream.
    """

    def __init__(
        self,
        *,
        invoker: ModelInvoker,
        pipeline: ReasoningPipeline,
        synthesizer: SpeechSynthesizer,
        models: ModelSettings | None = None,
        params: GenerationParams | None = None,
    ) -> None:
        self.invoker = invoker
        self.pipeline = pipeline
        self.synthesizer = synthesizer
        self.models = models or ModelSettings()
        self.params = params or GenerationParams()

    def stream(self, request: ChatRequest) -> Iterator[StreamChunk]:
        if request.media is not None:
            yield self._respond_with_diagnosis(request, request.media)
            return

        spec = ModelCallSpec(candidates=self.models.chat_models, params=self.params)
        parts: list[str] = []
        model_stream = self.invoker.invoke_streaming(spec, build_chat_prompt(request), CHAT_TOOLS)
        with closing(model_stream) as chunks:
            for chunk in chunks:
                if chunk.tool_invocation is not None:
                    yield StreamChunk(kind="tool", tool=chunk.tool_invocation)
                if chunk.text_delta:
                    parts.append(chunk.text_delta)
                    yield StreamChunk(kind="text", text=chunk.text_delta)
                if chunk.error:
                    logger.warning(
                        "Chat stream ended with an error after %d text chunks", len(parts)
                    )
                    # The error marker is always the last chunk; partial text is not spoken.
                    yield StreamChunk(kind="error", text=chunk.error)
                    return

        full_text = "".join(parts).strip()
        logger.info("Chat response streamed (~%d tokens)", estimate_token_count(full_text))
        if full_text:
            yield StreamChunk(kind="audio", audio_url=self._speak(full_text))

    def _respond_with_diagnosis(self, request: ChatRequest, media: MediaReference) -> StreamChunk:
        reasoning_request = ReasoningRequest(
            media=(media,),
            is_dicom=media.mime_type == "application/dicom",
            patient_id=request.patient_id,
        )
        result = self.pipeline.run(reasoning_request)
        text = format_diagnosis(result)
        return StreamChunk(
            kind="response",
            text=text,
            audio_url=self._speak(text),
            result=result,
        )

    def _speak(self, text: str) -> str | None:
        try:
            return self.synthesizer.synthesize(text)
        except Exception:  # noqa: BLE001 - a response without audio is still a response
            logger.exception("Speech synthesis failed for a %d-character response", len(text))
            return None
