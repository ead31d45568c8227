"""Classify a free-form change request into a restart decision for the pipeline."""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .config import AgentLoopConfig, ContextConfig
from .context import ContextAssembler, excerpt, output_text
from .errors import InputError
from .persistence.store import WorkflowStore
from .phases import phase_name
from .schemas import (
    LAST_PHASE_INDEX,
    PHASE_COUNT,
    ChangeImpactAnalysis,
    ChangeIntent,
    PhaseStateRecord,
    PhaseStatus,
)
from .stages import string_list
from .structured import JsonContract, StructuredOutputValidator

logger = logging.getLogger(__name__)

CLASSIFIER_ROLE = (
    "You analyse change requests against a nine-phase product-requirements pipeline "
    "(phases are numbered 0 to 8). Decide the intent of the change, the earliest phase "
    "that must be re-run, and every phase whose output the change affects. Prefer the "
    "latest phase that still produces a correct result: copy edits rarely need to go "
    "back further than the phase that owns the text, while scope changes usually "
    "restart requirement extraction."
)

CHANGE_CONTRACT = JsonContract(
    name="change_impact_analysis",
    schema={
        "type": "object",
        "additionalProperties": False,
        "required": [
            "intent",
            "recommendedStartStep",
            "impactedSteps",
            "reason",
            "risks",
            "conflicts",
            "actionPlan",
            "summary",
        ],
        "properties": {
            "intent": {"type": "string", "enum": [item.value for item in ChangeIntent]},
            "recommendedStartStep": {"type": "integer", "minimum": 0, "maximum": LAST_PHASE_INDEX},
            "impactedSteps": {
                "type": "array",
                "items": {"type": "integer", "minimum": 0, "maximum": LAST_PHASE_INDEX},
            },
            "reason": {"type": "string"},
            "risks": {"type": "array", "items": {"type": "string"}},
            "conflicts": {"type": "array", "items": {"type": "string"}},
            "actionPlan": {"type": "array", "items": {"type": "string"}},
            "summary": {"type": "string"},
        },
    },
)


def clamp_step(value: Any, default: int = 0) -> int:
    try:
        step = int(value)
    except (TypeError, ValueError):
        return default
    return max(0, min(LAST_PHASE_INDEX, step))


def normalize_intent(value: Any) -> ChangeIntent:
    key = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
    if key in ChangeIntent._value2member_map_:
        return ChangeIntent(key)
    return ChangeIntent.FEATURE_ADJUSTMENT


def normalize_steps(values: Any) -> List[int]:
    if not isinstance(values, (list, tuple)):
        values = [values] if values is not None else []
    steps = set()
    for value in values:
        try:
            steps.add(max(0, min(LAST_PHASE_INDEX, int(value))))
        except (TypeError, ValueError):
            continue
    return sorted(steps)


def first_incomplete_phase(phases: Iterable[PhaseStateRecord]) -> int:
    """Index of the first phase that is not completed, or the last phase when all are."""

    completed = {phase.phase_index for phase in phases if phase.status is PhaseStatus.COMPLETED}
    for index in range(PHASE_COUNT):
        if index not in completed:
            return index
    return LAST_PHASE_INDEX


def normalize_change_analysis(data: Dict[str, Any], restart_ceiling: int = LAST_PHASE_INDEX) -> ChangeImpactAnalysis:
    """
    Coerce raw classifier output into a valid analysis.

    The start step is clamped into the phase range and then capped at
    *restart_ceiling*, since a phase cannot run before its predecessor has
    output. Impacted steps are clamped, deduplicated and sorted, and always
    include the start step.
    """

    raw_start = data.get("recommendedStartStep", data.get("recommended_start_step"))
    start = min(clamp_step(raw_start), clamp_step(restart_ceiling, LAST_PHASE_INDEX))
    impacted = normalize_steps(data.get("impactedSteps", data.get("impacted_steps")))
    impacted = sorted(set(impacted) | {start})
    reason = data.get("reason")
    summary = data.get("summary")
    return ChangeImpactAnalysis(
        intent=normalize_intent(data.get("intent")),
        recommended_start_step=start,
        impacted_steps=impacted,
        reason=str(reason).strip() if reason is not None else "",
        risks=string_list(data.get("risks")),
        conflicts=string_list(data.get("conflicts")),
        action_plan=string_list(data.get("actionPlan", data.get("action_plan"))),
        summary=str(summary).strip() if summary is not None else "",
    )


class ChangeImpactClassifier:
    """Single structured call mapping a change request onto a restart phase."""

    def __init__(
        self,
        store: WorkflowStore,
        assembler: ContextAssembler,
        validator: StructuredOutputValidator,
        loop_config: AgentLoopConfig,
        context_config: ContextConfig,
    ) -> None:
        self._store = store
        self._assembler = assembler
        self._validator = validator
        self._loop_config = loop_config
        self._context_config = context_config

    def analyze(self, project_id: int, change_request: str) -> ChangeImpactAnalysis:
        if not change_request or not change_request.strip():
            raise InputError("Change request must not be empty")
        project = self._store.get_project(project_id)
        if project is None:
            raise InputError(f"Project not found: {project_id}")

        phases = self._store.get_phase_states(project_id)
        # Every phase, including later ones, so downstream impact is visible.
        context = self._assembler.assemble(project_id, LAST_PHASE_INDEX)
        text = (
            f"Project: {project.title}\n\n"
            f"Raw requirement:\n{excerpt(project.raw_requirement, self._context_config.input_chars)}\n\n"
            f"Phase overview:\n{self._phase_overview(phases)}\n\n"
            f"{context.render()}\n\n"
            f"Change request:\n{change_request.strip()}"
        )
        messages = [
            {"role": "system", "content": CLASSIFIER_ROLE},
            {"role": "user", "content": context.user_content(text)},
        ]
        data = self._validator.request(
            messages, CHANGE_CONTRACT, max_tokens=self._loop_config.change_analysis_max_tokens
        )
        analysis = normalize_change_analysis(data, restart_ceiling=first_incomplete_phase(phases))
        logger.info(
            "Change request for project %s classified as %s, restart at phase %s",
            project_id,
            analysis.intent.value,
            analysis.recommended_start_step,
        )
        return analysis

    def _phase_overview(self, phases: Sequence[PhaseStateRecord]) -> str:
        by_index = {phase.phase_index: phase for phase in phases}
        blocks = []
        for index in range(PHASE_COUNT):
            state: Optional[PhaseStateRecord] = by_index.get(index)
            status = state.status.value if state else PhaseStatus.PENDING.value
            body = excerpt(output_text(state.output if state else None), self._context_config.phase_excerpt_chars)
            blocks.append(f"{index}. {phase_name(index)} [{status}]\n{body or '(no output)'}")
        return "\n\n".join(blocks)


__all__ = [
    "CHANGE_CONTRACT",
    "ChangeImpactClassifier",
    "clamp_step",
    "first_incomplete_phase",
    "normalize_change_analysis",
    "normalize_intent",
    "normalize_steps",
]
