"""Deterministic fallback backend when no external model is configured."""

from __future__ import annotations

import re
from collections.abc import Iterator

from pydantic import BaseModel

from synapse_agent.agent.invoker import ModelUnavailableError
from synapse_agent.agent.registry import ToolPass
from synapse_agent.agent.tools import CLINICAL_TERM_TOOL
from synapse_agent.config import GenerationParams
from synapse_agent.types import ModelOutput, ModelOutputChunk, ModelPrompt

_QUESTION_PREFIX = re.compile(
    r"^(what\s+is|what\s+are|define|explain|tell\s+me\s+about|describe)\s+(an?\s+|the\s+)?",
    re.IGNORECASE,
)
_SENTENCE = re.compile(r"(?<=[.!?])\s+")


class DeterministicModelBackend:
    """Backend that answers conversational questions from the clinical knowledge base.

    It keeps the `ModelBackend` contract so the rest of the stack runs
    unchanged in local/offline environments where `OPENAI_API_KEY` is not
    configured. Image interpretation needs a real multimodal model, so
    structured diagnosis requests fail and the invoker degrades gracefully.
    """

    model_id = "offline-deterministic"

    def generate(
        self,
        prompt: ModelPrompt,
        model_id: str,
        tools: ToolPass | None,
        params: GenerationParams,
        output_schema: type[BaseModel] | None = None,
    ) -> ModelOutput:
        del params  # deterministic output ignores sampling.
        if output_schema is not None:
            raise ModelUnavailableError("no multimodal model is configured")
        answer = _answer(prompt, tools)
        return ModelOutput(
            text=answer,
            tool_invocations=tools.invocations if tools is not None else [],
            model_id=model_id,
        )

    def generate_stream(
        self,
        prompt: ModelPrompt,
        model_id: str,
        tools: ToolPass | None,
        params: GenerationParams,
    ) -> Iterator[ModelOutputChunk]:
        del params
        answer = _answer(prompt, tools)
        if tools is not None:
            for invocation in tools.invocations:
                yield ModelOutputChunk(tool_invocation=invocation, model_id=model_id)
        for sentence in _SENTENCE.split(answer):
            if sentence:
                yield ModelOutputChunk(text_delta=sentence + " ", model_id=model_id)


def extract_subject(question: str) -> str:
    subject = _QUESTION_PREFIX.sub("", question.strip())
    return subject.rstrip("?!. ").strip() or question.strip()


def _answer(prompt: ModelPrompt, tools: ToolPass | None) -> str:
    question = prompt.last_user_text.strip()
    if not question:
        return "Please ask a question about a radiological finding or term."
    if tools is None or (tools.allowed is not None and CLINICAL_TERM_TOOL not in tools.allowed):
        return (
            "I can only answer from the clinical knowledge base while offline, "
            "and it is not available for this conversation."
        )

    subject = extract_subject(question)
    reference = tools.execute(CLINICAL_TERM_TOOL, {"term": subject})
    return f"Here is what the clinical knowledge base says. {reference}"
