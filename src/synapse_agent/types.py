"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class DiagnosisStatus(str, Enum):
    """Wire-level review status of a stored diagnosis."""

    PENDING = "pending"
    REVIEWED = "reviewed"
    APPROVED = "approved"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (DiagnosisStatus.APPROVED, DiagnosisStatus.REJECTED)


@dataclass(frozen=True, slots=True)
class ToolInvocation:
    """One dispatched tool call, recorded in the reasoning trace."""

    sequence: int
    name: str
    source: str
    term: str
    summary: str
    started_at: float
    latency_ms: float


@dataclass(slots=True)
class ModelOutput:
    """Result of a blocking model call.

    `degraded` is set when every candidate failed; `text` then carries the
    unavailability message shown to the caller.
    """

    text: str
    structured: Any | None = None
    tool_invocations: list[ToolInvocation] = field(default_factory=list)
    model_id: str | None = None
    degraded: bool = False
    soft_failures: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class ModelOutputChunk:
    """Incremental piece of a streamed model call."""

    text_delta: str = ""
    tool_invocation: ToolInvocation | None = None
    error: str | None = None
    model_id: str | None = None


@dataclass(frozen=True, slots=True)
class CachedSession:
    adapter: str
    token: str
    expires_at: float

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


@dataclass(frozen=True, slots=True)
class CachedCollection:
    adapter: str
    entries: tuple[Any, ...]
    fetched_at: float


@dataclass(frozen=True, slots=True)
class PromptMessage:
    role: str
    text: str
    media_uris: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ModelPrompt:
    """System instruction plus role-tagged conversation sent to the model."""

    system: str
    messages: tuple[PromptMessage, ...]

    @property
    def last_user_text(self) -> str:
        for message in reversed(self.messages):
            if message.role == "user":
                return message.text
        return ""
