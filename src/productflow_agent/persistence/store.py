"""SQLite persistence for projects, phase state, runs, actions, artifacts and assets."""
from __future__ import annotations

import datetime as dt
import json
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session, sessionmaker

from ..schemas import (
    ActionRecord,
    ActionType,
    ArtifactRecord,
    ArtifactSource,
    ArtifactType,
    AssetRecord,
    AssetScope,
    AssetType,
    CHANGE_ARTIFACT_TYPES,
    MessageRecord,
    MessageRole,
    PHASE_COUNT,
    PhaseStateRecord,
    PhaseStatus,
    PriorPhaseOutput,
    ProjectRecord,
    ProjectStatus,
    RunRecord,
    RunStage,
    RunStatus,
    Visibility,
)
from .database import (
    AgentAction,
    AgentRun,
    Artifact,
    Asset,
    ConversationMessage,
    PhaseState,
    Project,
    create_session_factory,
    session_scope,
)

_UNSET = object()


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _value(member: Any) -> Any:
    return getattr(member, "value", member)


class WorkflowStore:
    """Persists runs, their append-only trace, and the project state they act on."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    @classmethod
    def from_url(cls, database_url: str, echo: bool = False) -> "WorkflowStore":
        return cls(create_session_factory(database_url, echo=echo))

    # -- projects ---------------------------------------------------------------------

    def create_project(self, title: str, raw_requirement: str) -> ProjectRecord:
        """Create a project together with its nine pending phases."""

        with session_scope(self._session_factory) as session:
            project = Project(title=title, raw_requirement=raw_requirement, status=ProjectStatus.DRAFT.value)
            session.add(project)
            session.flush()
            for phase_index in range(PHASE_COUNT):
                session.add(PhaseState(project_id=project.id, phase_index=phase_index, status=PhaseStatus.PENDING.value))
            session.flush()
            return ProjectRecord.model_validate(project)

    def get_project(self, project_id: int) -> Optional[ProjectRecord]:
        with session_scope(self._session_factory) as session:
            project = session.get(Project, project_id)
            return ProjectRecord.model_validate(project) if project else None

    def update_project_progress(self, project_id: int, current_phase: int, status: ProjectStatus) -> None:
        with session_scope(self._session_factory) as session:
            project = session.get(Project, project_id)
            if project is None:
                return
            project.current_phase = current_phase
            project.status = status.value

    # -- phase state ------------------------------------------------------------------

    def get_phase_states(self, project_id: int) -> List[PhaseStateRecord]:
        with session_scope(self._session_factory) as session:
            rows = session.scalars(
                select(PhaseState).where(PhaseState.project_id == project_id).order_by(PhaseState.phase_index)
            ).all()
            return [PhaseStateRecord.model_validate(row) for row in rows]

    def get_phase_state(self, project_id: int, phase_index: int) -> Optional[PhaseStateRecord]:
        with session_scope(self._session_factory) as session:
            row = self._phase_row(session, project_id, phase_index)
            return PhaseStateRecord.model_validate(row) if row else None

    def update_phase_state(
        self,
        project_id: int,
        phase_index: int,
        *,
        status: Optional[PhaseStatus] = None,
        input: Any = _UNSET,
        output: Any = _UNSET,
        error_message: Any = _UNSET,
    ) -> PhaseStateRecord:
        """Update one phase row, creating it when the project predates it."""

        with session_scope(self._session_factory) as session:
            row = self._phase_row(session, project_id, phase_index)
            if row is None:
                row = PhaseState(project_id=project_id, phase_index=phase_index, status=PhaseStatus.PENDING.value)
                session.add(row)
            if status is not None:
                row.status = status.value
            if input is not _UNSET:
                row.input = input
            if output is not _UNSET:
                row.output = output
            if error_message is not _UNSET:
                row.error_message = error_message
            row.updated_at = _utcnow()
            session.flush()
            return PhaseStateRecord.model_validate(row)

    def query_prior_phase_outputs(self, project_id: int, before_phase: int) -> List[PriorPhaseOutput]:
        """Completed phase outputs with index below *before_phase*, ascending."""

        with session_scope(self._session_factory) as session:
            rows = session.scalars(
                select(PhaseState)
                .where(
                    PhaseState.project_id == project_id,
                    PhaseState.phase_index < before_phase,
                    PhaseState.status == PhaseStatus.COMPLETED.value,
                )
                .order_by(PhaseState.phase_index)
            ).all()
            return [PriorPhaseOutput(phase_index=row.phase_index, output=row.output) for row in rows if row.output]

    def reset_from_phase(self, project_id: int, start_phase: int) -> List[int]:
        """Snapshot then clear every phase at or after *start_phase*; returns the reset indexes."""

        reset: List[int] = []
        with session_scope(self._session_factory) as session:
            rows = session.scalars(
                select(PhaseState)
                .where(PhaseState.project_id == project_id, PhaseState.phase_index >= start_phase)
                .order_by(PhaseState.phase_index)
            ).all()
            for row in rows:
                if row.output or row.input:
                    session.add(
                        Artifact(
                            project_id=project_id,
                            phase_index=row.phase_index,
                            artifact_type=ArtifactType.SNAPSHOT.value,
                            source=ArtifactSource.SYSTEM.value,
                            visibility=Visibility.BOTH.value,
                            title=f"Snapshot before reset · Phase {row.phase_index + 1}",
                            content=f"status={row.status}\n\n"
                            + json.dumps({"input": row.input, "output": row.output}, indent=2, ensure_ascii=False, default=str),
                            payload={
                                "snapshotAt": _utcnow().isoformat(),
                                "previousStatus": row.status,
                                "input": row.input,
                                "output": row.output,
                            },
                        )
                    )
                row.status = PhaseStatus.PENDING.value
                row.input = None
                row.output = None
                row.error_message = None
                row.updated_at = _utcnow()
                reset.append(row.phase_index)
        return reset

    @staticmethod
    def _phase_row(session: Session, project_id: int, phase_index: int) -> Optional[PhaseState]:
        return session.scalars(
            select(PhaseState).where(PhaseState.project_id == project_id, PhaseState.phase_index == phase_index)
        ).first()

    # -- conversation -----------------------------------------------------------------

    def add_message(self, project_id: int, phase_index: int, role: MessageRole, content: str) -> MessageRecord:
        with session_scope(self._session_factory) as session:
            row = ConversationMessage(project_id=project_id, phase_index=phase_index, role=role.value, content=content)
            session.add(row)
            session.flush()
            return MessageRecord.model_validate(row)

    def get_conversation(self, project_id: int, phase_index: int) -> List[MessageRecord]:
        with session_scope(self._session_factory) as session:
            rows = session.scalars(
                select(ConversationMessage)
                .where(ConversationMessage.project_id == project_id, ConversationMessage.phase_index == phase_index)
                .order_by(ConversationMessage.id)
            ).all()
            return [MessageRecord.model_validate(row) for row in rows]

    # -- runs -------------------------------------------------------------------------

    def start_run(self, project_id: int, phase_index: int, strategy: str) -> RunRecord:
        with session_scope(self._session_factory) as session:
            run = AgentRun(
                project_id=project_id,
                phase_index=phase_index,
                strategy=strategy,
                status=RunStatus.RUNNING.value,
                current_stage=RunStage.CONTEXT.value,
                current_iteration=0,
            )
            session.add(run)
            session.flush()
            return RunRecord.model_validate(run)

    def update_run_progress(
        self,
        run_id: int,
        stage: RunStage,
        iteration: Optional[int] = None,
        state_snapshot: Optional[Dict[str, Any]] = None,
    ) -> None:
        with session_scope(self._session_factory) as session:
            run = session.get(AgentRun, run_id)
            if run is None:
                return
            run.current_stage = stage.value
            if iteration is not None:
                run.current_iteration = iteration
            if state_snapshot is not None:
                run.state_snapshot = state_snapshot

    def finish_run(
        self,
        run_id: int,
        status: RunStatus,
        *,
        iteration: Optional[int] = None,
        state_snapshot: Optional[Dict[str, Any]] = None,
        final_output: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> None:
        stage = RunStage.COMPLETED if status is RunStatus.COMPLETED else RunStage.ERROR
        with session_scope(self._session_factory) as session:
            run = session.get(AgentRun, run_id)
            if run is None:
                return
            run.status = status.value
            run.current_stage = stage.value
            if iteration is not None:
                run.current_iteration = iteration
            if state_snapshot is not None:
                run.state_snapshot = state_snapshot
            run.final_output = final_output
            run.error_message = error_message
            run.finished_at = _utcnow()

    def get_run(self, run_id: int) -> Optional[RunRecord]:
        with session_scope(self._session_factory) as session:
            run = session.get(AgentRun, run_id)
            return RunRecord.model_validate(run) if run else None

    def latest_run(self, project_id: int, phase_index: int) -> Optional[RunRecord]:
        with session_scope(self._session_factory) as session:
            run = session.scalars(
                select(AgentRun)
                .where(AgentRun.project_id == project_id, AgentRun.phase_index == phase_index)
                .order_by(AgentRun.id.desc())
                .limit(1)
            ).first()
            return RunRecord.model_validate(run) if run else None

    # -- actions ----------------------------------------------------------------------

    def append_action(
        self,
        run_id: int,
        project_id: int,
        phase_index: int,
        action_type: ActionType,
        title: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ActionRecord:
        with session_scope(self._session_factory) as session:
            row = AgentAction(
                run_id=run_id,
                project_id=project_id,
                phase_index=phase_index,
                action_type=action_type.value,
                title=title[:120],
                content=content,
                extra=metadata,
            )
            session.add(row)
            session.flush()
            return ActionRecord.model_validate(row)

    def list_actions(self, run_id: int) -> List[ActionRecord]:
        with session_scope(self._session_factory) as session:
            rows = session.scalars(select(AgentAction).where(AgentAction.run_id == run_id).order_by(AgentAction.id)).all()
            return [ActionRecord.model_validate(row) for row in rows]

    # -- artifacts --------------------------------------------------------------------

    def append_artifact(
        self,
        project_id: int,
        artifact_type: ArtifactType,
        title: str,
        content: str,
        *,
        phase_index: Optional[int] = None,
        run_id: Optional[int] = None,
        iteration: Optional[int] = None,
        source: ArtifactSource = ArtifactSource.SYSTEM,
        visibility: Visibility = Visibility.BOTH,
        payload: Optional[Dict[str, Any]] = None,
    ) -> ArtifactRecord:
        with session_scope(self._session_factory) as session:
            row = Artifact(
                project_id=project_id,
                phase_index=phase_index,
                run_id=run_id,
                iteration=iteration,
                artifact_type=artifact_type.value,
                source=source.value,
                visibility=visibility.value,
                title=title[:180],
                content=content,
                payload=payload,
            )
            session.add(row)
            session.flush()
            return ArtifactRecord.model_validate(row)

    def query_artifacts(
        self,
        project_id: int,
        *,
        phase_index: Optional[int] = None,
        up_to_phase: Optional[int] = None,
        types: Optional[Sequence[ArtifactType]] = None,
        visibility: Optional[Iterable[Visibility]] = None,
        run_id: Optional[int] = None,
        limit: int = 120,
    ) -> List[ArtifactRecord]:
        """
        Return artifacts newest first.

        ``phase_index`` matches one phase exactly. ``up_to_phase`` applies the
        context rule instead: global artifacts, artifacts of phases at or below the
        given index, and change requests/analyses of any phase.
        """

        stmt = select(Artifact).where(Artifact.project_id == project_id)
        if phase_index is not None:
            stmt = stmt.where(Artifact.phase_index == phase_index)
        if up_to_phase is not None:
            stmt = stmt.where(
                or_(
                    Artifact.phase_index.is_(None),
                    Artifact.phase_index <= up_to_phase,
                    Artifact.artifact_type.in_([_value(item) for item in CHANGE_ARTIFACT_TYPES]),
                )
            )
        if types:
            stmt = stmt.where(Artifact.artifact_type.in_([_value(item) for item in types]))
        if visibility is not None:
            stmt = stmt.where(Artifact.visibility.in_([_value(item) for item in visibility]))
        if run_id is not None:
            stmt = stmt.where(Artifact.run_id == run_id)
        stmt = stmt.order_by(Artifact.id.desc()).limit(max(0, limit))
        with session_scope(self._session_factory) as session:
            return [ArtifactRecord.model_validate(row) for row in session.scalars(stmt).all()]

    # -- assets -----------------------------------------------------------------------

    def append_asset(
        self,
        project_id: int,
        file_name: str,
        mime_type: str,
        file_size: int,
        storage_key: str,
        *,
        phase_index: Optional[int] = None,
        asset_type: AssetType = AssetType.OTHER,
        scope: Optional[AssetScope] = None,
        source_label: Optional[str] = None,
        note: Optional[str] = None,
    ) -> AssetRecord:
        if scope is None:
            scope = AssetScope.STEP if phase_index is not None else AssetScope.PROJECT
        with session_scope(self._session_factory) as session:
            row = Asset(
                project_id=project_id,
                phase_index=phase_index,
                asset_type=asset_type.value,
                scope=scope.value,
                file_name=file_name,
                mime_type=mime_type,
                file_size=file_size,
                storage_key=storage_key,
                source_label=source_label,
                note=note,
            )
            session.add(row)
            session.flush()
            return AssetRecord.model_validate(row)

    def query_context_assets(self, project_id: int, phase_index: int, limit: int = 20) -> List[AssetRecord]:
        """Project-wide assets plus step assets at or below *phase_index*, newest first."""

        stmt = (
            select(Asset)
            .where(
                Asset.project_id == project_id,
                or_(
                    Asset.scope == AssetScope.PROJECT.value,
                    and_(Asset.scope == AssetScope.STEP.value, Asset.phase_index <= phase_index),
                ),
            )
            .order_by(Asset.id.desc())
            .limit(max(0, limit))
        )
        with session_scope(self._session_factory) as session:
            return [AssetRecord.model_validate(row) for row in session.scalars(stmt).all()]


__all__ = ["WorkflowStore"]
