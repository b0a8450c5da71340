"""Request and result schemas validated with Pydantic v2."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from synapse_agent.config import GenerationParams
from synapse_agent.types import ToolInvocation

ModalityCode = Literal["CT", "MR", "XR", "US", "XA", "UNKNOWN"]


class MediaReference(BaseModel):
    """Opaque media handle plus the declared mime type and modality."""

    model_config = ConfigDict(frozen=True)

    uri: str = Field(min_length=1)
    mime_type: str = Field(default="image/png", min_length=1)
    modality: ModalityCode = "UNKNOWN"


class ReasoningRequest(BaseModel):
    """Caller input for one diagnostic reasoning pass."""

    model_config = ConfigDict(frozen=True)

    media: tuple[MediaReference, ...] = Field(min_length=1)
    media_type: Literal["image", "video"] = "image"
    region_of_interest: dict[str, Any] | None = None
    is_dicom: bool = False
    patient_id: str | None = None
    clinical_history: str | None = None


class Measurement(BaseModel):
    structure: str = Field(min_length=1)
    value: str = Field(min_length=1)


class ReasoningTrace(BaseModel):
    observations: list[str] = Field(min_length=1)
    justification: str

    @field_validator("observations")
    @classmethod
    def _observations_not_blank(cls, value: list[str]) -> list[str]:
        cleaned = [item.strip() for item in value if item and item.strip()]
        if not cleaned:
            raise ValueError("observations must contain at least one non-empty entry")
        return cleaned

    @field_validator("justification")
    @classmethod
    def _justification_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("justification must not be empty")
        return value.strip()


Urgency = Literal["routine", "urgent", "emergent"]

# Findings below this confidence are rejected like any other invalid output.
MIN_CONFIDENCE = 0.3


class DifferentialDiagnosis(BaseModel):
    diagnosis: str = Field(min_length=1)
    probability: float = Field(ge=0.0, le=1.0)
    supporting_features: list[str] = Field(default_factory=list)
    excluding_features: list[str] = Field(default_factory=list)


class ClinicalCorrelation(BaseModel):
    urgency: Urgency = Field(description="Clinical urgency level based on the findings.")
    recommended_follow_up: list[str] = Field(default_factory=list)
    clinical_questions: list[str] = Field(default_factory=list)


class DiagnosticFindings(BaseModel):
    """Structured output the model must produce at the synthesis step."""

    primary_suggestion: str = Field(
        description="One specific, formally named radiological diagnosis."
    )
    confidence: float | None = Field(
        default=None,
        ge=0.0,
        le=1.0,
        description="Certainty in the primary suggestion, from 0.0 to 1.0.",
    )
    differential_diagnoses: list[DifferentialDiagnosis] = Field(
        default_factory=list,
        description="Alternative diagnoses ranked by probability.",
    )
    secondary_findings: str = Field(
        description="Other relevant or incidental findings in precise terminology."
    )
    measurements: list[Measurement] = Field(default_factory=list)
    clinical_correlation: ClinicalCorrelation | None = None
    reasoning: ReasoningTrace

    @field_validator("primary_suggestion", "secondary_findings")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("field must not be empty")
        return value.strip()

    @field_validator("confidence")
    @classmethod
    def _confident_enough(cls, value: float | None) -> float | None:
        if value is not None and value < MIN_CONFIDENCE:
            raise ValueError(f"diagnostic confidence too low: {value * 100:.1f}%")
        return value

    @field_validator("differential_diagnoses")
    @classmethod
    def _ranked(cls, value: list[DifferentialDiagnosis]) -> list[DifferentialDiagnosis]:
        return sorted(value, key=lambda item: item.probability, reverse=True)

    @property
    def urgency(self) -> Urgency | None:
        return self.clinical_correlation.urgency if self.clinical_correlation else None


class LookupRecord(BaseModel):
    term: str
    summary: str


class ReasoningResult(DiagnosticFindings):
    """Accepted output of a reasoning pass, enriched with the tool trace."""

    lookups: dict[str, list[LookupRecord]] = Field(default_factory=dict)
    tool_invocations: list[ToolInvocation] = Field(default_factory=list)
    strategy: str | None = None
    model_id: str | None = None
    degraded: bool = False
    missing_mandatory_tools: list[str] = Field(default_factory=list)
    critical_findings: list[str] = Field(default_factory=list)
    urgency_review_required: bool = False

    @classmethod
    def unavailable(cls, message: str) -> "ReasoningResult":
        """Schema-valid placeholder returned when every model candidate failed."""
        return cls(
            primary_suggestion="Diagnostic suggestion unavailable",
            secondary_findings=message,
            reasoning=ReasoningTrace(
                observations=["No observations could be generated."],
                justification=message,
            ),
            degraded=True,
        )


class ModelCallSpec(BaseModel):
    """Candidate models, generation parameters and declared output schema."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    candidates: list[str] = Field(min_length=1)
    params: GenerationParams = Field(default_factory=GenerationParams)
    output_schema: type[BaseModel] | None = None

    def validate_output(self, raw: Any) -> BaseModel | None:
        """Coerce raw model output into the declared schema.

        Raises `pydantic.ValidationError` (or `ValueError` for a missing
        payload) when a required field is absent or empty.
        """
        if self.output_schema is None:
            return None
        if raw is None:
            raise ValueError("model returned no structured output")
        if isinstance(raw, BaseModel):
            raw = raw.model_dump()
        return self.output_schema.model_validate(raw)


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    text: str


class ChatRequest(BaseModel):
    """Conversation turn; attaching media routes it through the diagnostic pipeline."""

    messages: list[ChatMessage] = Field(min_length=1)
    media: MediaReference | None = None
    patient_id: str | None = None
