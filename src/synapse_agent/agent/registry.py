"""Tool dispatcher built on Pydantic v2 input contracts."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from typing import Any

from langchain_core.tools import StructuredTool
from pydantic import BaseModel, ConfigDict

from synapse_agent.obs.tracing import Timer
from synapse_agent.types import ToolInvocation

logger = logging.getLogger(__name__)


class ToolSpec(BaseModel):
    """Declarative tool specification for registration and validation.

    Each tool wraps exactly one knowledge source; `term_field` names the input
    field recorded as the looked-up term in the trace.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str
    args_schema: type[BaseModel]
    handler: Callable[[BaseModel], str]
    source: str
    term_field: str = "term"
    mandatory: bool = False

    def invoke(self, payload: dict[str, Any]) -> tuple[str, str]:
        data = self.args_schema.model_validate(payload)
        term = str(getattr(data, self.term_field, ""))
        return term, self.handler(data)


class InactivePassError(RuntimeError):
    """Raised when a tool is invoked outside an active reasoning pass."""


class ToolPass:
    """Handle for one active reasoning pass.

    Invocations are kept sorted by dispatch sequence, so tools run from
    several threads still produce a deterministic trace.
    """

    def __init__(
        self, dispatcher: "ToolDispatcher", allowed: Sequence[str] | None = None
    ) -> None:
        self._dispatcher = dispatcher
        self.allowed = tuple(allowed) if allowed is not None else None
        self._lock = threading.Lock()
        self._invocations: list[ToolInvocation] = []
        self._next_sequence = 0
        self.active = True

    @property
    def invocations(self) -> list[ToolInvocation]:
        with self._lock:
            return list(self._invocations)

    def execute(self, name: str, payload: dict[str, Any]) -> str:
        spec = self._dispatcher.get(name)
        if self.allowed is not None and name not in self.allowed:
            raise KeyError(f"Tool not available in this pass: {name}")
        with self._lock:
            if not self.active:
                raise InactivePassError(f"Tool {name!r} invoked after its pass closed")
            sequence = self._next_sequence
            self._next_sequence += 1

        with Timer() as timer:
            term, output = spec.invoke(payload)

        invocation = ToolInvocation(
            sequence=sequence,
            name=spec.name,
            source=spec.source,
            term=term,
            summary=output,
            started_at=timer.started_at,
            latency_ms=timer.elapsed_ms,
        )
        with self._lock:
            if self.active:
                self._invocations.append(invocation)
                self._invocations.sort(key=lambda item: item.sequence)
        logger.info(
            "Tool %s (#%d) term=%r finished in %.1f ms",
            spec.name,
            sequence,
            term,
            timer.elapsed_ms,
        )
        return output

    def as_langchain_tools(self) -> list[StructuredTool]:
        tools: list[StructuredTool] = []
        for spec in self._dispatcher.specs():
            if self.allowed is not None and spec.name not in self.allowed:
                continue
            tools.append(
                StructuredTool.from_function(
                    name=spec.name,
                    description=spec.description,
                    args_schema=spec.args_schema,
                    func=self._build_function(spec),
                )
            )
        return tools

    def close(self) -> None:
        with self._lock:
            self.active = False

    def _build_function(self, spec: ToolSpec) -> Callable[..., str]:
        def _callable(**kwargs: Any) -> str:
            return self.execute(spec.name, kwargs)

        return _callable


class ToolDispatcher:
    """Stores tool specs and opens reasoning passes over them."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._tools:
            raise ValueError(f"Tool already registered: {spec.name}")
        self._tools[spec.name] = spec

    def get(self, name: str) -> ToolSpec:
        spec = self._tools.get(name)
        if spec is None:
            raise KeyError(f"Unknown tool: {name}")
        return spec

    def specs(self) -> list[ToolSpec]:
        return list(self._tools.values())

    def source_of(self, name: str) -> str:
        return self.get(name).source

    def mandatory_tools(self) -> list[str]:
        return [spec.name for spec in self._tools.values() if spec.mandatory]

    @contextmanager
    def active_pass(self, allowed: Sequence[str] | None = None) -> Iterator[ToolPass]:
        tool_pass = ToolPass(self, allowed)
        try:
            yield tool_pass
        finally:
            tool_pass.close()
