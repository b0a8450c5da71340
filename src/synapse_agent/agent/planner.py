"""LangChain-based model backend with a tool-calling loop."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from typing import Any

from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)
from pydantic import BaseModel

from synapse_agent.agent.registry import ToolPass
from synapse_agent.config import GenerationParams
from synapse_agent.types import ModelOutput, ModelOutputChunk, ModelPrompt

logger = logging.getLogger(__name__)

ChatModelFactory = Callable[[str, GenerationParams], Any]

_SYNTHESIS_INSTRUCTION = (
    "Using your observations and every tool result above, produce the final "
    "structured result now. Do not call further tools."
)


def openai_chat_factory(timeout_seconds: float = 120.0) -> ChatModelFactory:
    """Build `ChatOpenAI` clients; retries are left to the model invoker."""

    def _factory(model_id: str, params: GenerationParams) -> Any:
        from langchain_openai import ChatOpenAI

        return ChatOpenAI(
            model=model_id,
            temperature=params.temperature,
            max_tokens=params.max_output_tokens,
            top_p=params.top_p,
            timeout=timeout_seconds,
            max_retries=0,
        )

    return _factory


class LangChainModelBackend:
    """Drives a LangChain chat model through tool rounds and structured output."""

    def __init__(self, chat_model_factory: ChatModelFactory, *, max_tool_rounds: int = 8) -> None:
        self._factory = chat_model_factory
        self.max_tool_rounds = max_tool_rounds

    def generate(
        self,
        prompt: ModelPrompt,
        model_id: str,
        tools: ToolPass | None,
        params: GenerationParams,
        output_schema: type[BaseModel] | None = None,
    ) -> ModelOutput:
        llm = self._factory(model_id, params)
        messages = _to_langchain_messages(prompt)
        lc_tools = tools.as_langchain_tools() if tools is not None else []

        text = ""
        if lc_tools:
            runnable = llm.bind_tools(lc_tools)
            by_name = {tool.name: tool for tool in lc_tools}
            for _ in range(self.max_tool_rounds):
                response = runnable.invoke(messages)
                messages.append(response)
                text = _content_text(response.content)
                tool_calls = getattr(response, "tool_calls", None) or []
                if not tool_calls:
                    break
                for call in tool_calls:
                    messages.append(_run_tool_call(by_name, call))
        elif output_schema is None:
            response = llm.invoke(messages)
            text = _content_text(response.content)

        structured = None
        if output_schema is not None:
            messages.append(HumanMessage(content=_SYNTHESIS_INSTRUCTION))
            structured = llm.with_structured_output(output_schema).invoke(messages)

        return ModelOutput(
            text=text,
            structured=structured,
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
        llm = self._factory(model_id, params)
        messages = _to_langchain_messages(prompt)
        lc_tools = tools.as_langchain_tools() if tools is not None else []
        runnable = llm.bind_tools(lc_tools) if lc_tools else llm
        by_name = {tool.name: tool for tool in lc_tools}

        for _ in range(self.max_tool_rounds):
            gathered = None
            for chunk in runnable.stream(messages):
                delta = _content_text(chunk.content)
                if delta:
                    yield ModelOutputChunk(text_delta=delta, model_id=model_id)
                gathered = chunk if gathered is None else gathered + chunk
            if gathered is None:
                return
            messages.append(gathered)
            tool_calls = getattr(gathered, "tool_calls", None) or []
            if not tool_calls or tools is None:
                return
            for call in tool_calls:
                before = len(tools.invocations)
                messages.append(_run_tool_call(by_name, call))
                for invocation in tools.invocations[before:]:
                    yield ModelOutputChunk(tool_invocation=invocation, model_id=model_id)


def _run_tool_call(by_name: dict[str, Any], call: dict[str, Any]) -> ToolMessage:
    tool = by_name.get(call.get("name", ""))
    if tool is None:
        output = f"Unknown tool: {call.get('name')}"
    else:
        output = str(tool.invoke(call.get("args", {})))
    return ToolMessage(content=output, tool_call_id=call.get("id") or "")


def _to_langchain_messages(prompt: ModelPrompt) -> list[BaseMessage]:
    messages: list[BaseMessage] = [SystemMessage(content=prompt.system)]
    for message in prompt.messages:
        if message.role == "assistant":
            messages.append(AIMessage(content=message.text))
            continue
        if not message.media_uris:
            messages.append(HumanMessage(content=message.text))
            continue
        content: list[str | dict[str, Any]] = [{"type": "text", "text": message.text}]
        for uri in message.media_uris:
            content.append({"type": "image_url", "image_url": {"url": uri}})
        messages.append(HumanMessage(content=content))
    return messages


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and "text" in item:
                parts.append(str(item["text"]))
            elif isinstance(item, str):
                parts.append(item)
        return "".join(parts)
    return str(content or "")
