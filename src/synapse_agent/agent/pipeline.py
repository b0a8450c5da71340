"""Single-pass diagnostic reasoning pipeline."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import IntEnum

from synapse_agent.agent.invoker import ModelInvoker
from synapse_agent.agent.registry import ToolDispatcher
from synapse_agent.agent.schema import (
    DiagnosticFindings,
    LookupRecord,
    ModelCallSpec,
    ReasoningRequest,
    ReasoningResult,
)
from synapse_agent.config import GenerationParams, ModelSettings
from synapse_agent.obs.tracing import Timer
from synapse_agent.types import ModelPrompt, PromptMessage, ToolInvocation

logger = logging.getLogger(__name__)

CRITICAL_KEYWORDS = ("hemorrhage", "pneumothorax", "aortic dissection", "stroke", "fracture")

DIAGNOSIS_SYSTEM_PROMPT = """
You are an expert radiologist assistant. Produce a precise, logical and consistent
preliminary analysis of a radiology study by following these steps in order.

1) Modality-specific analysis:
- Apply the analysis approach named in the request and state that approach at the
  start of your first observation, before any finding.
- CT-specific approach: tissue densities (Hounsfield units), windowing (bone vs. lung
  windows) and slice-to-slice continuity.
- MRI-specific approach: signal intensities per sequence (T1, T2, FLAIR), contrast
  enhancement patterns and diffusion restriction.
- X-ray-specific approach: opacities, lucencies, bone alignment and soft tissue signs;
  be mindful of growth plates in pediatric patients.
- video-based approach: treat the study as fluoroscopy or angiography; analyze
  dynamic movement, flow of contrast material and change over time.

2) Initial observations:
- If a region of interest is provided, describe it first and make it the primary
  focus of the analysis.
- Then describe the rest of the study systematically, stating what is normal before
  identifying any abnormality. Use formal radiological terminology.

3) Tool-based research:
- Use `find_case_examples` to look for precedents among expert-verified cases.
- You MUST use `search_clinical_knowledge_base` to define every key radiological
  finding you identified.
- Use `search_medical_image_database` to find visual examples of key findings.
- You MUST use `search_anatomy_atlas` for findings qualified by an anatomical
  location (e.g. "periventricular", "juxtacortical").
- You MUST use `search_public_research_datasets` when a finding may be oncologic
  (e.g. a nodule or mass).
- You MUST use `search_drug_info` when a drug is mentioned in the history or the
  findings suggest a condition commonly treated with medication.
- Use `search_project_registry` when institutional imaging projects may be relevant.

4) Justification and conclusion:
- The primary suggestion MUST be one specific, formally named radiological
  diagnosis, not a description (e.g. "Pancreatic adenocarcinoma", not "pancreatic mass").
- List other relevant or incidental findings as secondary findings.
- Provide an estimated measurement for every clinically significant structure or
  abnormality.
- Give a confidence score from 0.0 to 1.0 for the primary suggestion and rank any
  differential diagnoses by probability with their supporting features.
- Set the clinical urgency to routine, urgent or emergent. Critical findings such as
  hemorrhage, pneumothorax, aortic dissection, stroke or fracture are emergent.
- The justification MUST integrate the visual findings with the tool results used.

Do not use creative or speculative language.
""".strip()


class PipelineStage(IntEnum):
    MODALITY_BRANCH = 1
    INITIAL_OBSERVATION = 2
    TOOL_RESEARCH = 3
    SYNTHESIS = 4
    DONE = 5


@dataclass(frozen=True, slots=True)
class ModalityStrategy:
    label: str
    focus: str


CT_STRATEGY = ModalityStrategy(
    "CT-specific approach", "tissue densities, windowing and slice-to-slice continuity"
)
MRI_STRATEGY = ModalityStrategy(
    "MRI-specific approach", "signal intensities per sequence, enhancement and diffusion"
)
XRAY_STRATEGY = ModalityStrategy(
    "X-ray-specific approach", "opacities, lucencies, bone alignment and soft tissue signs"
)
VIDEO_STRATEGY = ModalityStrategy(
    "video-based approach", "dynamic movement, contrast flow and change over time"
)


def select_strategy(request: ReasoningRequest) -> ModalityStrategy:
    """Pick the analysis approach; undeclared still-image modalities read as X-ray."""
    if request.media_type == "video":
        return VIDEO_STRATEGY
    modality = request.media[0].modality
    if modality == "CT":
        return CT_STRATEGY
    if modality == "MR":
        return MRI_STRATEGY
    return XRAY_STRATEGY


def build_diagnosis_prompt(
    request: ReasoningRequest,
    strategy: ModalityStrategy,
    mandatory_tools: list[str],
) -> ModelPrompt:
    lines = [
        f"Radiology media ({request.media_type}): {len(request.media)} frame(s) attached.",
        f"Analysis approach: {strategy.label} (focus on {strategy.focus}).",
    ]
    if request.is_dicom:
        lines.append("The study was converted from DICOM for display.")
    if request.region_of_interest:
        lines.append(
            "A region of interest has been pre-identified. Describe and analyze it "
            "first, then the rest of the study. Region of interest: "
            + json.dumps(request.region_of_interest, sort_keys=True)
        )
    if request.clinical_history:
        lines.append(f"Clinical history: {request.clinical_history.strip()}")
    if mandatory_tools:
        lines.append("Required lookups: " + ", ".join(f"`{name}`" for name in mandatory_tools))

    message = PromptMessage(
        role="user",
        text="\n".join(lines),
        media_uris=tuple(item.uri for item in request.media),
    )
    return ModelPrompt(system=DIAGNOSIS_SYSTEM_PROMPT, messages=(message,))


@dataclass(slots=True)
class _StageTracker:
    current: PipelineStage = PipelineStage.MODALITY_BRANCH
    visited: list[PipelineStage] = field(
        default_factory=lambda: [PipelineStage.MODALITY_BRANCH]
    )

    def advance(self, stage: PipelineStage) -> None:
        if stage <= self.current:
            raise RuntimeError(f"Pipeline cannot move from {self.current.name} to {stage.name}")
        self.current = stage
        self.visited.append(stage)


class ReasoningPipeline:
    """Runs one modality-aware reasoning pass and assembles the final result."""

    def __init__(
        self,
        *,
        invoker: ModelInvoker,
        dispatcher: ToolDispatcher,
        models: ModelSettings | None = None,
        params: GenerationParams | None = None,
    ) -> None:
        self.invoker = invoker
        self.dispatcher = dispatcher
        self.models = models or ModelSettings()
        self.params = params or GenerationParams()
        self.last_stages: list[PipelineStage] = []

    def run(self, request: ReasoningRequest) -> ReasoningResult:
        tracker = _StageTracker()
        with Timer() as timer:
            strategy = select_strategy(request)
            mandatory = self.dispatcher.mandatory_tools()

            tracker.advance(PipelineStage.INITIAL_OBSERVATION)
            prompt = build_diagnosis_prompt(request, strategy, mandatory)

            tracker.advance(PipelineStage.TOOL_RESEARCH)
            spec = ModelCallSpec(
                candidates=self.models.diagnosis_models,
                params=self.params,
                output_schema=DiagnosticFindings,
            )
            output = self.invoker.invoke(
                spec, prompt, tools=[item.name for item in self.dispatcher.specs()]
            )

            tracker.advance(PipelineStage.SYNTHESIS)
            if output.degraded or output.structured is None:
                result = ReasoningResult.unavailable(output.text)
            else:
                result = self._assemble(output.structured, output.tool_invocations, strategy)
                result.model_id = output.model_id
                result.missing_mandatory_tools = _missing(mandatory, output.tool_invocations)
                if result.missing_mandatory_tools:
                    logger.warning(
                        "Reasoning pass skipped mandatory tools: %s",
                        ", ".join(result.missing_mandatory_tools),
                    )
            result.strategy = strategy.label
            tracker.advance(PipelineStage.DONE)

        self.last_stages = list(tracker.visited)
        logger.info(
            "Reasoning pass finished in %.1f ms (%s, %d tool calls, degraded=%s)",
            timer.elapsed_ms,
            strategy.label,
            len(result.tool_invocations),
            result.degraded,
        )
        return result

    def _assemble(
        self,
        findings: DiagnosticFindings,
        invocations: list[ToolInvocation],
        strategy: ModalityStrategy,
    ) -> ReasoningResult:
        data = findings.model_dump()
        observations = data["reasoning"]["observations"]
        if strategy.label.lower() not in observations[0].lower():
            observations[0] = f"Applying the {strategy.label}. {observations[0]}"

        lookups: dict[str, list[LookupRecord]] = {}
        for invocation in invocations:
            lookups.setdefault(invocation.source, []).append(
                LookupRecord(term=invocation.term, summary=invocation.summary)
            )

        critical = critical_keywords(findings)
        review_urgency = bool(critical) and findings.urgency != "emergent"
        if review_urgency:
            logger.warning(
                "Critical finding (%s) reported with urgency=%s",
                ", ".join(critical),
                findings.urgency or "unset",
            )
        return ReasoningResult(
            **data,
            lookups=lookups,
            tool_invocations=invocations,
            critical_findings=critical,
            urgency_review_required=review_urgency,
        )


def critical_keywords(findings: DiagnosticFindings) -> list[str]:
    """Critical-finding keywords named in the primary or secondary findings."""
    text = f"{findings.primary_suggestion} {findings.secondary_findings}".lower()
    return [keyword for keyword in CRITICAL_KEYWORDS if keyword in text]


def _missing(mandatory: list[str], invocations: list[ToolInvocation]) -> list[str]:
    used = {invocation.name for invocation in invocations}
    return [name for name in mandatory if name not in used]
