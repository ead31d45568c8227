"""Registry of the nine fixed pipeline phases and their prompt configuration."""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Tuple

from .errors import InputError

TaskPromptBuilder = Callable[[str], str]


@dataclass(frozen=True)
class PhaseSpec:
    index: int
    name: str
    system_prompt: str
    task_prompt_builder: TaskPromptBuilder

    def task_prompt(self, input_text: str) -> str:
        return self.task_prompt_builder(input_text)

    @property
    def label(self) -> str:
        return f"Phase {self.index + 1} {self.name}"


def _prefixed(prefix: str) -> TaskPromptBuilder:
    def build(input_text: str) -> str:
        return f"{prefix}\n\n{input_text}"

    return build


PHASES: Tuple[PhaseSpec, ...] = (
    PhaseSpec(
        index=0,
        name="Requirement clarification",
        system_prompt="""# Role: Requirement clarification specialist

You turn vague, incomplete or contradictory raw requirements into a clean,
unambiguous clarification document.

## Rules
1. Never guess: when information is ambiguous, ask instead of assuming.
2. Work in order: diagnose, produce a questionnaire, draft, confirm.
3. Be friendly and concrete; offer options whenever possible.

## Output
- A clarification questionnaire using Markdown headings, lists and quotes.
- When answers are available, a requirement clarification document.""",
        task_prompt_builder=_prefixed("Analyse the following raw requirement and produce a clarification questionnaire:"),
    ),
    PhaseSpec(
        index=1,
        name="Requirement extraction",
        system_prompt="""# Requirement extraction

You help a product manager understand what really needs to be built and
produce a structured business requirement list: overview, user personas,
existing alternatives, goals, business requirements and priorities.

Do not output feature lists, technical designs or risk analyses; those belong
to later phases. Always ask why a requirement exists.""",
        task_prompt_builder=_prefixed("Extract business requirements from the clarified requirement below:"),
    ),
    PhaseSpec(
        index=2,
        name="Feature list",
        system_prompt="""# Requirement to feature list

You convert business requirements into implementable feature modules. For
each feature give: name, description, user value, priority (P0/P1/P2) and
dependencies.""",
        task_prompt_builder=_prefixed("Derive a feature list from the business requirements below:"),
    ),
    PhaseSpec(
        index=3,
        name="Detailed feature design",
        system_prompt="""# Detailed feature design

You refine a feature list into a detailed design. For each feature give the
scenario, a data dictionary, the interaction flow and boundary conditions.""",
        task_prompt_builder=_prefixed("Refine the feature list below into a detailed feature design:"),
    ),
    PhaseSpec(
        index=4,
        name="Prototype prompt optimisation",
        system_prompt="""# Prototype prompt optimiser

You translate a feature design into prompts for AI prototyping tools. For
each page or component give: name, layout, components, interactions and
style suggestions.""",
        task_prompt_builder=_prefixed("Write AI prototyping prompts for the feature design below:"),
    ),
    PhaseSpec(
        index=5,
        name="Prototype guidance",
        system_prompt="""# Prototype guidance

You guide the user through generating a prototype with AI tools: recommend
tools, describe the steps, explain how to use the prompts and how to iterate
on the result.""",
        task_prompt_builder=_prefixed("Guide the prototyping work based on the optimised prompts below:"),
    ),
    PhaseSpec(
        index=6,
        name="Requirement confirmation",
        system_prompt="""# Requirement confirmation

You check requirements for completeness and consistency, list gaps and
contradictions, and propose adjustments as a confirmation checklist.""",
        task_prompt_builder=_prefixed("Confirm and adjust the requirements based on the prototype information below:"),
    ),
    PhaseSpec(
        index=7,
        name="Functional specification",
        system_prompt="""# Functional requirements document

You integrate the outputs of all previous phases into a structured PRD:
overview, feature list, detailed feature design, data dictionary,
interaction flows and non-functional requirements.""",
        task_prompt_builder=_prefixed("Write the functional requirements document from the confirmed requirements below:"),
    ),
    PhaseSpec(
        index=8,
        name="Supplementary chapters",
        system_prompt="""# Supplementary chapters

You complete a PRD with the remaining chapters: non-functional requirements
(performance, security, compatibility), background and goals, glossary,
references and appendices.""",
        task_prompt_builder=_prefixed("Add the supplementary chapters to the functional requirements document below:"),
    ),
)

_BY_INDEX: Mapping[int, PhaseSpec] = {phase.index: phase for phase in PHASES}


def get_phase(index: int) -> PhaseSpec:
    """Look up a phase by index, raising ``InputError`` for unknown indexes."""

    try:
        return _BY_INDEX[index]
    except (KeyError, TypeError):
        raise InputError(f"Invalid phase index: {index}") from None


def phase_name(index: int) -> str:
    phase = _BY_INDEX.get(index)
    return phase.name if phase else f"Phase {index + 1}"


def summarize_input(payload: Dict[str, Any], limit: int = 4000) -> str:
    """Pick the human text out of a phase input payload."""

    text = payload.get("text") or payload.get("rawRequirement")
    if not text:
        text = json.dumps(payload, ensure_ascii=False, default=str)
    instruction = payload.get("latestUserInstruction")
    if instruction:
        text = f"{text}\n\nLatest user instruction:\n{instruction}"
    return str(text)[:limit]


__all__ = ["PHASES", "PhaseSpec", "TaskPromptBuilder", "get_phase", "phase_name", "summarize_input"]
