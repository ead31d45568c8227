"""Host workflow service: project progression on top of the agent runtime."""
from __future__ import annotations

import json
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .assets import AssetResolver, LocalAssetStorage, infer_asset_type, sanitize_file_name
from .change_impact import ChangeImpactClassifier
from .config import Settings
from .context import ContextAssembler
from .errors import InputError
from .orchestrator import RunOrchestrator
from .persistence.store import WorkflowStore
from .phases import get_phase
from .schemas import (
    PHASE_COUNT,
    ActionRecord,
    ArtifactSource,
    ArtifactType,
    AssetRecord,
    AssetScope,
    AssetType,
    ChangeImpactAnalysis,
    ConversationTurn,
    MessageRole,
    PhaseStateRecord,
    PhaseStatus,
    ProjectRecord,
    ProjectStatus,
    RunRecord,
    StepResult,
    Visibility,
)
from .sdk.openai_client import ModelInvoker, OpenAIClientFactory
from .structured import StructuredOutputValidator

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 15 * 1024 * 1024
SKIPPED_OUTPUT_TEXT = "[skipped]"


@dataclass
class AgentTrace:
    """Latest run of a phase with its ordered actions."""

    run: Optional[RunRecord] = None
    actions: List[ActionRecord] = field(default_factory=list)


class WorkflowService:
    """Resolves phase inputs, drives the orchestrator and keeps phase state current."""

    def __init__(
        self,
        store: WorkflowStore,
        orchestrator: RunOrchestrator,
        classifier: ChangeImpactClassifier,
        storage: LocalAssetStorage,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.classifier = classifier
        self.storage = storage

    @classmethod
    def from_settings(cls, settings: Settings, invoker: Optional[ModelInvoker] = None) -> "WorkflowService":
        """Wire the store, assembler, model client and runtime components from settings."""

        store = WorkflowStore.from_url(settings.database.url, echo=settings.database.echo)
        storage = LocalAssetStorage.from_config(settings.storage)
        resolver = AssetResolver(storage, settings.storage, text_excerpt_chars=settings.context.asset_text_excerpt_chars)
        assembler = ContextAssembler(store, resolver, settings.context)
        invoker = invoker or OpenAIClientFactory.create(settings.openai)
        validator = StructuredOutputValidator(invoker, supports_json_schema=settings.openai.supports_json_schema)
        orchestrator = RunOrchestrator(store, assembler, invoker, validator, settings.agent)
        classifier = ChangeImpactClassifier(store, assembler, validator, settings.agent, settings.context)
        return cls(store, orchestrator, classifier, storage)

    # -- projects -------------------------------------------------------------------------

    def create_project(self, title: str, raw_requirement: str) -> ProjectRecord:
        if not title.strip():
            raise InputError("Project title must not be empty")
        if not raw_requirement.strip():
            raise InputError("Raw requirement must not be empty")
        project = self.store.create_project(title.strip(), raw_requirement.strip())
        logger.info("Created project %s (%s)", project.id, project.title)
        return project

    def require_project(self, project_id: int) -> ProjectRecord:
        project = self.store.get_project(project_id)
        if project is None:
            raise InputError(f"Project not found: {project_id}")
        return project

    def get_steps(self, project_id: int) -> List[PhaseStateRecord]:
        self.require_project(project_id)
        return self.store.get_phase_states(project_id)

    # -- phase execution ------------------------------------------------------------------

    def resolve_step_input(self, project: ProjectRecord, phase_index: int) -> Dict[str, Any]:
        """Raw requirement for the first phase, the predecessor's output otherwise."""

        if phase_index == 0:
            return {"rawRequirement": project.raw_requirement}
        previous = self.store.get_phase_state(project.id, phase_index - 1)
        if previous is None or not previous.output:
            raise InputError(f"Previous phase ({phase_index - 1}) not completed")
        return dict(previous.output)

    def execute_step(self, project_id: int, phase_index: int) -> StepResult:
        project = self.require_project(project_id)
        get_phase(phase_index)
        step_input = self.resolve_step_input(project, phase_index)

        self.store.update_phase_state(project_id, phase_index, status=PhaseStatus.PROCESSING)
        result = self.orchestrator.execute_step(project_id, phase_index, step_input)
        if result.success:
            self.store.update_phase_state(
                project_id,
                phase_index,
                status=PhaseStatus.COMPLETED,
                input=step_input,
                output=result.output,
                error_message=None,
            )
            self.store.update_project_progress(project_id, phase_index, ProjectStatus.IN_PROGRESS)
        else:
            logger.error("Phase %s of project %s failed: %s", phase_index, project_id, result.error)
            self.store.update_phase_state(
                project_id,
                phase_index,
                status=PhaseStatus.ERROR,
                error_message=result.error or "Unknown error",
            )
        return result

    def continue_conversation(self, project_id: int, phase_index: int, user_message: str) -> StepResult:
        project = self.require_project(project_id)
        get_phase(phase_index)
        message = user_message.strip()
        if not message:
            raise InputError("User message must not be empty")

        self.store.add_message(project_id, phase_index, MessageRole.USER, message)
        history = [
            ConversationTurn(role=item.role.value, content=item.content)
            for item in self.store.get_conversation(project_id, phase_index)
        ]
        continuation_input = self._continuation_input(project, phase_index)
        continuation_input["latestUserInstruction"] = message

        result = self.orchestrator.continue_conversation(project_id, phase_index, continuation_input, message, history)
        if not result.success or result.output is None:
            logger.warning("Refinement of phase %s for project %s failed: %s", phase_index, project_id, result.error)
            return result

        text = result.output.get("text") or ""
        self.store.add_message(project_id, phase_index, MessageRole.ASSISTANT, text)
        self.store.append_artifact(
            project_id,
            ArtifactType.CONVERSATION_NOTE,
            f"Phase {phase_index + 1} refinement",
            f"{message}\n\n---\n\n{text}",
            phase_index=phase_index,
            source=ArtifactSource.AGENT,
            visibility=Visibility.BOTH,
            payload={"userMessage": message, "runId": result.output.get("agent", {}).get("runId")},
        )
        self.store.update_phase_state(
            project_id, phase_index, status=PhaseStatus.COMPLETED, output=result.output, error_message=None
        )
        return result

    def _continuation_input(self, project: ProjectRecord, phase_index: int) -> Dict[str, Any]:
        current = self.store.get_phase_state(project.id, phase_index)
        if current is not None and current.output:
            return dict(current.output)
        if phase_index == 0:
            return {"rawRequirement": project.raw_requirement}
        previous = self.store.get_phase_state(project.id, phase_index - 1)
        if previous is not None and previous.output:
            return dict(previous.output)
        return {"text": project.raw_requirement}

    def confirm_step(self, project_id: int, phase_index: int) -> int:
        self.require_project(project_id)
        get_phase(phase_index)
        next_phase = phase_index + 1
        status = ProjectStatus.COMPLETED if next_phase >= PHASE_COUNT else ProjectStatus.IN_PROGRESS
        self.store.update_project_progress(project_id, next_phase, status)
        return next_phase

    def skip_step(self, project_id: int, phase_index: int) -> None:
        project = self.require_project(project_id)
        get_phase(phase_index)
        self.store.update_phase_state(
            project_id, phase_index, status=PhaseStatus.COMPLETED, output={"text": SKIPPED_OUTPUT_TEXT}
        )
        if project.current_phase == phase_index:
            self.store.update_project_progress(project_id, phase_index + 1, ProjectStatus.IN_PROGRESS)

    def update_step_output(self, project_id: int, phase_index: int, output: Dict[str, Any]) -> PhaseStateRecord:
        """Store a manual edit and record it as a user-sourced step_output artifact."""

        self.require_project(project_id)
        get_phase(phase_index)
        state = self.store.update_phase_state(
            project_id, phase_index, status=PhaseStatus.COMPLETED, output=output, error_message=None
        )
        text = output.get("text")
        self.store.append_artifact(
            project_id,
            ArtifactType.STEP_OUTPUT,
            f"Phase {phase_index + 1} manual update",
            text if isinstance(text, str) else json.dumps(output, ensure_ascii=False, indent=2, default=str),
            phase_index=phase_index,
            source=ArtifactSource.USER,
            visibility=Visibility.BOTH,
            payload=output,
        )
        return state

    # -- change requests ------------------------------------------------------------------

    def analyze_change_request(self, project_id: int, change_request: str) -> ChangeImpactAnalysis:
        project = self.require_project(project_id)
        request = change_request.strip()
        if not request:
            raise InputError("Change request must not be empty")

        self.store.append_artifact(
            project_id,
            ArtifactType.CHANGE_REQUEST,
            "User change request",
            request,
            source=ArtifactSource.USER,
            visibility=Visibility.BOTH,
            payload={"atStep": project.current_phase},
        )
        analysis = self.classifier.analyze(project_id, request)
        start = analysis.recommended_start_step
        self.store.append_artifact(
            project_id,
            ArtifactType.CHANGE_ANALYSIS,
            "Change impact analysis",
            "\n".join(
                [
                    f"Recommended start: Phase {start + 1} {get_phase(start).name}",
                    "Impacted phases: " + ", ".join(f"Phase {step + 1}" for step in analysis.impacted_steps),
                    f"Reason: {analysis.reason}",
                    f"Summary: {analysis.summary}",
                ]
            ),
            phase_index=start,
            source=ArtifactSource.AGENT,
            visibility=Visibility.BOTH,
            payload=analysis.model_dump(mode="json", by_alias=True),
        )
        return analysis

    def apply_change_plan(self, project_id: int, start_phase: int, change_request: Optional[str] = None) -> List[int]:
        """Snapshot and clear every phase from *start_phase* on, then resume there."""

        self.require_project(project_id)
        get_phase(start_phase)
        reset = self.store.reset_from_phase(project_id, start_phase)
        self.store.update_project_progress(project_id, start_phase, ProjectStatus.IN_PROGRESS)
        if change_request and change_request.strip():
            note = change_request.strip()
            self.store.add_message(project_id, start_phase, MessageRole.SYSTEM, f"Change iteration context: {note}")
            self.store.append_artifact(
                project_id,
                ArtifactType.CONVERSATION_NOTE,
                f"Phase {start_phase + 1} change context",
                note,
                phase_index=start_phase,
                source=ArtifactSource.SYSTEM,
                visibility=Visibility.BOTH,
            )
        logger.info("Project %s reset from phase %s (%s phases cleared)", project_id, start_phase, len(reset))
        return reset

    # -- assets and trace -----------------------------------------------------------------

    def upload_asset(
        self,
        project_id: int,
        file_name: str,
        mime_type: str,
        data: bytes,
        *,
        phase_index: Optional[int] = None,
        scope: Optional[AssetScope] = None,
        asset_type: Optional[AssetType] = None,
        source_label: Optional[str] = None,
        note: Optional[str] = None,
    ) -> AssetRecord:
        self.require_project(project_id)
        if phase_index is not None:
            get_phase(phase_index)
        if not data:
            raise InputError("Invalid file data")
        if len(data) > MAX_UPLOAD_BYTES:
            raise InputError("File too large. Max 15MB per upload.")

        name = sanitize_file_name(file_name)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        key = f"productflow/{project_id}/assets/{stamp}-{secrets.token_hex(4)}-{name}"
        self.storage.put(key, data)

        resolved_type = asset_type or infer_asset_type(mime_type)
        asset = self.store.append_asset(
            project_id,
            name,
            mime_type,
            len(data),
            key,
            phase_index=phase_index,
            asset_type=resolved_type,
            scope=scope,
            source_label=source_label,
            note=note,
        )
        details = [
            f"assetType={resolved_type.value}",
            f"scope={asset.scope.value}",
            f"mimeType={asset.mime_type}",
            f"fileSize={asset.file_size}",
        ]
        if note:
            details.append(f"note={note}")
        self.store.append_artifact(
            project_id,
            ArtifactType.CONVERSATION_NOTE,
            f"Uploaded asset · {name}",
            "\n".join(details),
            phase_index=phase_index,
            source=ArtifactSource.USER,
            visibility=Visibility.BOTH,
            payload={"assetId": asset.id, "storageKey": asset.storage_key},
        )
        return asset

    def get_agent_trace(self, project_id: int, phase_index: int) -> AgentTrace:
        self.require_project(project_id)
        run = self.store.latest_run(project_id, phase_index)
        if run is None:
            return AgentTrace()
        return AgentTrace(run=run, actions=self.store.list_actions(run.id))


__all__ = ["AgentTrace", "MAX_UPLOAD_BYTES", "SKIPPED_OUTPUT_TEXT", "WorkflowService"]
