"""Model invocation with candidate fallback, bounded retries and timeouts."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import closing
from typing import Protocol

from pydantic import BaseModel, ValidationError

from synapse_agent.agent.registry import ToolDispatcher, ToolPass
from synapse_agent.agent.schema import ModelCallSpec
from synapse_agent.config import GenerationParams, InvokerConfig
from synapse_agent.types import ModelOutput, ModelOutputChunk, ModelPrompt

logger = logging.getLogger(__name__)

UNAVAILABLE_MESSAGE = (
    "The AI model is currently unavailable or overloaded. Please try again later."
)


class ModelBackend(Protocol):
    def generate(
        self,
        prompt: ModelPrompt,
        model_id: str,
        tools: ToolPass | None,
        params: GenerationParams,
        output_schema: type[BaseModel] | None = None,
    ) -> ModelOutput: ...

    def generate_stream(
        self,
        prompt: ModelPrompt,
        model_id: str,
        tools: ToolPass | None,
        params: GenerationParams,
    ) -> Iterator[ModelOutputChunk]: ...


class ModelUnavailableError(RuntimeError):
    """Raised by a backend that cannot serve the requested call at all."""


class ModelInvoker:
    """Calls an ordered list of candidate models until one succeeds.

    A raise, a timeout or schema-invalid output is a soft failure: it is logged
    and the next candidate is tried. A full pass over the candidates is retried
    after a fixed backoff, up to `InvokerConfig.max_attempts` passes. When
    every pass fails the caller receives a degraded `ModelOutput` instead of an
    exception.
    """

    def __init__(
        self,
        backend: ModelBackend,
        dispatcher: ToolDispatcher,
        config: InvokerConfig | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.backend = backend
        self.dispatcher = dispatcher
        self.config = config or InvokerConfig()
        self._sleep = sleep

    def invoke(
        self,
        spec: ModelCallSpec,
        prompt: ModelPrompt,
        tools: Sequence[str] | None = None,
    ) -> ModelOutput:
        soft_failures: list[str] = []
        for attempt in range(1, self.config.max_attempts + 1):
            for model_id in spec.candidates:
                try:
                    return self._call_candidate(spec, prompt, tools, model_id, soft_failures)
                except Exception as exc:  # noqa: BLE001 - every candidate error is a soft failure
                    reason = _describe_failure(exc)
                    soft_failures.append(f"{model_id} (attempt {attempt}): {reason}")
                    logger.warning(
                        "Model %s failed on attempt %d/%d: %s",
                        model_id,
                        attempt,
                        self.config.max_attempts,
                        reason,
                    )
            if attempt < self.config.max_attempts:
                logger.info(
                    "All %d candidates failed; retrying in %.1fs",
                    len(spec.candidates),
                    self.config.backoff_seconds,
                )
                self._sleep(self.config.backoff_seconds)

        logger.error(
            "Model invocation exhausted after %d attempts (%d soft failures)",
            self.config.max_attempts,
            len(soft_failures),
        )
        return ModelOutput(
            text=UNAVAILABLE_MESSAGE,
            degraded=True,
            soft_failures=soft_failures,
        )

    def invoke_streaming(
        self,
        spec: ModelCallSpec,
        prompt: ModelPrompt,
        tools: Sequence[str] | None = None,
    ) -> Iterator[ModelOutputChunk]:
        """Stream from the first candidate that produces output.

        A candidate failing before its first chunk is skipped; a failure after
        output started ends the stream with an error chunk.
        """
        for model_id in spec.candidates:
            emitted = False
            try:
                with self.dispatcher.active_pass(tools) as tool_pass:
                    stream = self.backend.generate_stream(
                        prompt,
                        model_id,
                        tool_pass if tools is not None else None,
                        spec.params,
                    )
                    with closing(stream):
                        for chunk in stream:
                            emitted = True
                            yield chunk
                return
            except Exception as exc:  # noqa: BLE001 - stream errors become soft failures or markers
                reason = _describe_failure(exc)
                if emitted:
                    logger.warning("Stream from %s broke mid-response: %s", model_id, reason)
                    yield ModelOutputChunk(
                        error=f"The response was interrupted: {reason}", model_id=model_id
                    )
                    return
                logger.warning("Model %s failed before streaming: %s", model_id, reason)

        logger.error("No streaming candidate succeeded among %s", spec.candidates)
        yield ModelOutputChunk(error=UNAVAILABLE_MESSAGE)

    def _call_candidate(
        self,
        spec: ModelCallSpec,
        prompt: ModelPrompt,
        tools: Sequence[str] | None,
        model_id: str,
        soft_failures: list[str],
    ) -> ModelOutput:
        # One worker per call: the timeout covers only this call's own run time,
        # and a hung call never holds up another request.
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="model-call")
        with self.dispatcher.active_pass(tools) as tool_pass:
            try:
                future = executor.submit(
                    self.backend.generate,
                    prompt,
                    model_id,
                    tool_pass if tools is not None else None,
                    spec.params,
                    spec.output_schema,
                )
                try:
                    output = future.result(timeout=self.config.call_timeout_seconds)
                except FutureTimeoutError:
                    logger.warning(
                        "Abandoning %s call after %.1fs", model_id, self.config.call_timeout_seconds
                    )
                    raise TimeoutError(
                        f"no response within {self.config.call_timeout_seconds:.0f}s"
                    ) from None
            finally:
                executor.shutdown(wait=False)
            structured = spec.validate_output(output.structured)
            invocations = tool_pass.invocations

        return ModelOutput(
            text=output.text,
            structured=structured,
            tool_invocations=invocations,
            model_id=model_id,
            soft_failures=list(soft_failures),
        )


def _describe_failure(exc: Exception) -> str:
    if isinstance(exc, ValidationError):
        return f"schema validation failed ({exc.error_count()} errors)"
    return f"{type(exc).__name__}: {exc}"
