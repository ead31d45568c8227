"""Stateless stage functions: planner, drafter, reviewer and finalizer."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from .context import AssembledContext
from .phases import PhaseSpec
from .schemas import Plan, Review, ReviewIssue, Severity, Verdict
from .sdk.openai_client import Message, ModelInvoker, read_choice_text
from .structured import JsonContract, StructuredOutputValidator

logger = logging.getLogger(__name__)

MISSING_DRAFT_PLACEHOLDER = "(no draft was produced; write the deliverable directly from the plan and context)"

PLANNER_ROLE = (
    "You are the planning stage of a product-requirements assistant. "
    "Break the task into a short, executable plan before any drafting happens."
)
REVIEWER_ROLE = (
    "You are a strict reviewer of product-requirements deliverables. "
    "Score the draft from 0 to 100 against the task and the plan. Use verdict "
    '"pass" only when the draft is ready to hand over, "revise" when it needs '
    'another round, and "block" when it misses the task.'
)

_STRING_LIST = {"type": "array", "items": {"type": "string"}}

PLAN_CONTRACT = JsonContract(
    name="phase_plan",
    schema={
        "type": "object",
        "additionalProperties": False,
        "required": ["objective", "deliverables", "execution_plan", "quality_gates", "risks"],
        "properties": {
            "objective": {"type": "string"},
            "deliverables": _STRING_LIST,
            "execution_plan": _STRING_LIST,
            "quality_gates": _STRING_LIST,
            "risks": _STRING_LIST,
        },
    },
)

REVIEW_CONTRACT = JsonContract(
    name="draft_review",
    schema={
        "type": "object",
        "additionalProperties": False,
        "required": ["score", "verdict", "summary", "issues", "missing_information"],
        "properties": {
            "score": {"type": "integer", "minimum": 0, "maximum": 100},
            "verdict": {"type": "string", "enum": [item.value for item in Verdict]},
            "summary": {"type": "string"},
            "issues": {
                "type": "array",
                "items": {
                    "type": "object",
                    "additionalProperties": False,
                    "required": ["severity", "issue", "fix"],
                    "properties": {
                        "severity": {"type": "string", "enum": [item.value for item in Severity]},
                        "issue": {"type": "string"},
                        "fix": {"type": "string"},
                    },
                },
            },
            "missing_information": _STRING_LIST,
        },
    },
)


# -- normalization ----------------------------------------------------------------------


def string_list(value: Any) -> List[str]:
    """Coerce a model-provided value into a list of non-empty strings."""

    if value is None:
        return []
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    if not isinstance(value, (list, tuple)):
        return [str(value)]
    items: List[str] = []
    for item in value:
        if item is None:
            continue
        text = item if isinstance(item, str) else json.dumps(item, ensure_ascii=False, default=str)
        text = text.strip()
        if text:
            items.append(text)
    return items


def _first(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def clamp_score(value: Any) -> int:
    try:
        score = int(round(float(value)))
    except (TypeError, ValueError):
        return 0
    return max(0, min(100, score))


def normalize_plan(data: Dict[str, Any]) -> Plan:
    objective = _first(data, "objective", "goal")
    return Plan(
        objective=str(objective).strip() if objective is not None else "",
        deliverables=string_list(_first(data, "deliverables")),
        execution_plan=string_list(_first(data, "execution_plan", "executionPlan", "steps")),
        quality_gates=string_list(_first(data, "quality_gates", "qualityGates")),
        risks=string_list(_first(data, "risks")),
    )


def _normalize_issue(raw: Any) -> Optional[ReviewIssue]:
    if isinstance(raw, str):
        return ReviewIssue(issue=raw) if raw.strip() else None
    if not isinstance(raw, dict):
        return None
    severity = str(raw.get("severity") or "").strip().lower()
    return ReviewIssue(
        severity=Severity(severity) if severity in Severity._value2member_map_ else Severity.MEDIUM,
        issue=str(raw.get("issue") or raw.get("description") or "").strip(),
        fix=str(raw.get("fix") or raw.get("suggestion") or "").strip(),
    )


def normalize_review(data: Dict[str, Any]) -> Review:
    verdict = str(data.get("verdict") or "").strip().lower()
    raw_issues = data.get("issues")
    if not isinstance(raw_issues, list):
        raw_issues = []
    issues = [issue for issue in (_normalize_issue(item) for item in raw_issues) if issue is not None]
    summary = data.get("summary")
    return Review(
        score=clamp_score(data.get("score")),
        verdict=Verdict(verdict) if verdict in Verdict._value2member_map_ else Verdict.REVISE,
        summary=str(summary).strip() if summary is not None else "",
        issues=issues,
        missing_information=string_list(_first(data, "missing_information", "missingInformation")),
    )


# -- prompt helpers ---------------------------------------------------------------------


def format_plan(plan: Plan) -> str:
    def bullets(items: List[str]) -> str:
        return "\n".join(f"- {item}" for item in items) or "- (none)"

    return (
        f"Objective: {plan.objective or '(unspecified)'}\n"
        f"Deliverables:\n{bullets(plan.deliverables)}\n"
        f"Execution plan:\n{bullets(plan.execution_plan)}\n"
        f"Quality gates:\n{bullets(plan.quality_gates)}\n"
        f"Risks:\n{bullets(plan.risks)}"
    )


def format_review(review: Review) -> str:
    lines = [f"Score: {review.score}/100, verdict: {review.verdict.value}", f"Summary: {review.summary or '(none)'}"]
    for issue in review.issues:
        lines.append(f"- [{issue.severity.value}] {issue.issue} -> {issue.fix}")
    if review.missing_information:
        lines.append("Missing information: " + "; ".join(review.missing_information))
    return "\n".join(lines)


def _task_text(phase: PhaseSpec, context: AssembledContext) -> str:
    return phase.task_prompt(context.input_text or "(no input provided)")


def _messages(system: str, context: AssembledContext, text: str, attach_assets: bool = True) -> List[Message]:
    content = context.user_content(text) if attach_assets else text
    return [{"role": "system", "content": system}, {"role": "user", "content": content}]


# -- stages -----------------------------------------------------------------------------


def plan_stage(
    validator: StructuredOutputValidator,
    phase: PhaseSpec,
    context: AssembledContext,
    *,
    max_tokens: Optional[int] = None,
) -> Plan:
    text = (
        f"{phase.label}\n\nTask:\n{_task_text(phase, context)}\n\n{context.render()}\n\n"
        "Produce a plan of four to six concrete steps, the deliverables, the quality gates "
        "a reviewer should check and the main risks."
    )
    data = validator.request(
        _messages(f"{PLANNER_ROLE}\n\n{phase.system_prompt}", context, text),
        PLAN_CONTRACT,
        max_tokens=max_tokens,
    )
    return normalize_plan(data)


def draft_stage(
    invoker: ModelInvoker,
    phase: PhaseSpec,
    context: AssembledContext,
    plan: Optional[Plan],
    *,
    iteration: int,
    previous_review: Optional[Review] = None,
    previous_draft: Optional[str] = None,
    revision_request: Optional[str] = None,
    max_tokens: Optional[int] = None,
) -> str:
    """Free-text draft for one round; later rounds also see the previous draft and review."""

    sections = [f"{phase.label}, round {iteration}", f"Task:\n{_task_text(phase, context)}"]
    if plan is not None:
        sections.append(f"Plan:\n{format_plan(plan)}")
    sections.append(context.render())
    if previous_draft:
        sections.append(f"Previous draft:\n{previous_draft}")
    if previous_review is not None:
        sections.append(f"Reviewer feedback to address:\n{format_review(previous_review)}")
    if revision_request:
        sections.append(f"User request to apply:\n{revision_request}")
        sections.append("Rewrite the existing output so it satisfies the request. Return the complete revised deliverable.")
    elif iteration == 1:
        sections.append("Write a complete first draft of the deliverable.")
    else:
        sections.append("Write an improved, complete draft that resolves every reviewer issue.")

    response = invoker.invoke(_messages(phase.system_prompt, context, "\n\n".join(sections)), max_tokens=max_tokens)
    return read_choice_text(response)


def review_stage(
    validator: StructuredOutputValidator,
    phase: PhaseSpec,
    context: AssembledContext,
    plan: Plan,
    draft: str,
    *,
    pass_score: int,
    max_tokens: Optional[int] = None,
) -> Review:
    text = (
        f"{phase.label}\n\nOriginal task:\n{_task_text(phase, context)}\n\n"
        f"Plan:\n{format_plan(plan)}\n\nDraft under review:\n{draft or MISSING_DRAFT_PLACEHOLDER}\n\n"
        f"A draft passes only with verdict \"pass\", a score of at least {pass_score} and no high severity issue."
    )
    data = validator.request(
        _messages(REVIEWER_ROLE, context, text, attach_assets=False),
        REVIEW_CONTRACT,
        max_tokens=max_tokens,
    )
    return normalize_review(data)


def finalize_stage(
    invoker: ModelInvoker,
    phase: PhaseSpec,
    context: AssembledContext,
    plan: Optional[Plan],
    draft: Optional[str],
    review: Optional[Review],
    *,
    max_tokens: Optional[int] = None,
) -> str:
    sections = [f"{phase.label}", f"Task:\n{_task_text(phase, context)}"]
    if plan is not None:
        sections.append(f"Plan:\n{format_plan(plan)}")
    sections.append(context.render())
    sections.append(f"Draft:\n{draft or MISSING_DRAFT_PLACEHOLDER}")
    sections.append(f"Review:\n{format_review(review) if review is not None else '(no review)'}")
    sections.append(
        "Produce the final version of the deliverable. Keep it well structured and actionable "
        "and do not describe the process that produced it."
    )
    response = invoker.invoke(_messages(phase.system_prompt, context, "\n\n".join(sections)), max_tokens=max_tokens)
    text = read_choice_text(response)
    if not text:
        logger.warning("Finalizer returned no text for %s; falling back to the last draft", phase.label)
        return draft or ""
    return text


__all__ = [
    "MISSING_DRAFT_PLACEHOLDER",
    "PLAN_CONTRACT",
    "REVIEW_CONTRACT",
    "clamp_score",
    "draft_stage",
    "finalize_stage",
    "format_plan",
    "format_review",
    "normalize_plan",
    "normalize_review",
    "plan_stage",
    "review_stage",
    "string_list",
]
