"""Bounded context assembly from prior phase outputs, lifecycle artifacts and assets."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from .assets import AssetResolver, excerpt
from .config import ContextConfig
from .persistence.store import WorkflowStore
from .phases import phase_name, summarize_input
from .schemas import ConversationTurn, Visibility

logger = logging.getLogger(__name__)

AGENT_VISIBILITY = (Visibility.BOTH, Visibility.AGENT)
EMPTY_SECTION = "None"


@dataclass
class AssembledContext:
    """Bounded context for one (project, phase) pair."""

    project_id: int
    phase_index: int
    input_text: str = ""
    conversation_text: str = ""
    prior_outputs_text: str = ""
    artifacts_text: str = ""
    assets_text: str = ""
    asset_parts: List[Dict[str, Any]] = field(default_factory=list)
    stats: Dict[str, int] = field(default_factory=dict)

    @property
    def total_chars(self) -> int:
        return sum(
            len(section)
            for section in (
                self.input_text,
                self.conversation_text,
                self.prior_outputs_text,
                self.artifacts_text,
                self.assets_text,
            )
        )

    def render(self, include_input: bool = False) -> str:
        sections = []
        if include_input:
            sections.append(("Input summary", self.input_text))
        sections.extend(
            [
                ("Recent conversation", self.conversation_text),
                ("Earlier phase outputs", self.prior_outputs_text),
                ("Lifecycle artifacts", self.artifacts_text),
                ("Uploaded assets", self.assets_text),
            ]
        )
        return "\n\n".join(f"### {title}\n{body or EMPTY_SECTION}" for title, body in sections)

    def user_content(self, text: str) -> Union[str, List[Dict[str, Any]]]:
        """Message content for *text*, with image/file parts appended when present."""

        if not self.asset_parts:
            return text
        return [{"type": "text", "text": text}, *self.asset_parts]

    def summary(self) -> Dict[str, int]:
        return {"totalChars": self.total_chars, "assetParts": len(self.asset_parts), **self.stats}


class ContextAssembler:
    """Builds bounded context; output size never depends on total history size."""

    def __init__(self, store: WorkflowStore, resolver: AssetResolver, config: ContextConfig) -> None:
        self._store = store
        self._resolver = resolver
        self._config = config

    def assemble(
        self,
        project_id: int,
        phase_index: int,
        input_payload: Optional[Dict[str, Any]] = None,
        conversation: Optional[Sequence[ConversationTurn]] = None,
    ) -> AssembledContext:
        cfg = self._config
        context = AssembledContext(project_id=project_id, phase_index=phase_index)
        if input_payload:
            context.input_text = summarize_input(input_payload, cfg.input_chars)
        context.conversation_text = self._conversation_section(conversation or [])

        prior = self._store.query_prior_phase_outputs(project_id, before_phase=phase_index)
        context.prior_outputs_text = join_bounded(
            (
                f"## Phase {item.phase_index + 1} {phase_name(item.phase_index)}\n"
                + excerpt(output_text(item.output), cfg.prior_output_excerpt_chars)
                for item in prior
            ),
            cfg.prior_outputs_total_chars,
        )

        artifacts = self._store.query_artifacts(
            project_id,
            up_to_phase=phase_index,
            visibility=AGENT_VISIBILITY,
            limit=cfg.artifact_limit,
        )
        context.artifacts_text = join_bounded(
            (
                f"- [{artifact.artifact_type.value}] {artifact.title}"
                f"{_artifact_scope(artifact.phase_index, artifact.iteration)}\n"
                + excerpt(artifact.content, cfg.artifact_excerpt_chars)
                for artifact in artifacts
            ),
            cfg.artifacts_total_chars,
        )

        assets = self._store.query_context_assets(project_id, phase_index, limit=cfg.asset_limit)
        asset_blocks: List[str] = []
        for asset in assets:
            resolved = self._resolver.resolve(asset)
            if resolved.part is not None:
                context.asset_parts.append(resolved.part)
                asset_blocks.append(f"- {resolved.label} (attached as {resolved.kind.value})")
            else:
                asset_blocks.append(f"- {resolved.label}\n{resolved.text}")
        context.assets_text = join_bounded(asset_blocks, cfg.assets_total_chars)

        context.stats = {
            "priorOutputs": len(prior),
            "artifacts": len(artifacts),
            "assets": len(assets),
            "conversationMessages": len(conversation or []),
        }
        logger.debug("Assembled context for project %s phase %s: %s", project_id, phase_index, context.summary())
        return context

    def _conversation_section(self, conversation: Sequence[ConversationTurn]) -> str:
        recent = list(conversation)[-self._config.conversation_messages :] if self._config.conversation_messages else []
        lines = [f"{idx}. [{turn.role}] {turn.content}" for idx, turn in enumerate(recent, start=1)]
        return "\n".join(lines)[: self._config.conversation_chars]


def output_text(output: Optional[Dict[str, Any]]) -> str:
    """Text of a phase output payload, or its JSON form when it carries no text."""

    if not output:
        return ""
    text = output.get("text")
    if isinstance(text, str):
        return text
    return json.dumps(output, ensure_ascii=False, default=str)


def join_bounded(blocks: Iterable[str], total: int, separator: str = "\n\n") -> str:
    """Join blocks in order, truncating so the result never exceeds *total* characters."""

    result = ""
    for block in blocks:
        candidate = block if not result else f"{result}{separator}{block}"
        if len(candidate) > total:
            result = candidate[:total]
            break
        result = candidate
    return result


def _artifact_scope(phase_index: Optional[int], iteration: Optional[int]) -> str:
    parts = []
    if phase_index is not None:
        parts.append(f"phase {phase_index + 1}")
    if iteration is not None:
        parts.append(f"round {iteration}")
    return f" ({', '.join(parts)})" if parts else ""


__all__ = ["AssembledContext", "ContextAssembler", "excerpt", "join_bounded", "output_text"]
