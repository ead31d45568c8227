"""Shared data models for the ProductFlow agent runtime."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

PHASE_COUNT = 9
LAST_PHASE_INDEX = PHASE_COUNT - 1


class RunStatus(str, Enum):
    """Lifecycle states tracked for an agent run."""

    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class RunStage(str, Enum):
    """Stage a run is currently in."""

    CONTEXT = "context"
    PLAN = "plan"
    DRAFT = "draft"
    REVIEW = "review"
    FINAL = "final"
    COMPLETED = "completed"
    ERROR = "error"


class ActionType(str, Enum):
    CONTEXT = "context"
    PLAN = "plan"
    DRAFT = "draft"
    REVIEW = "review"
    FINAL = "final"
    ERROR = "error"


class ArtifactType(str, Enum):
    STEP_INPUT = "step_input"
    STEP_OUTPUT = "step_output"
    PLAN = "plan"
    DRAFT = "draft"
    REVIEW = "review"
    FINAL = "final"
    CONVERSATION_NOTE = "conversation_note"
    CHANGE_REQUEST = "change_request"
    CHANGE_ANALYSIS = "change_analysis"
    SNAPSHOT = "snapshot"


# Change context is visible to every phase.
CHANGE_ARTIFACT_TYPES = (ArtifactType.CHANGE_REQUEST, ArtifactType.CHANGE_ANALYSIS)


class ArtifactSource(str, Enum):
    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


class Visibility(str, Enum):
    USER = "user"
    AGENT = "agent"
    BOTH = "both"


class Verdict(str, Enum):
    PASS = "pass"
    REVISE = "revise"
    BLOCK = "block"


class Severity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ChangeIntent(str, Enum):
    COPY_EDIT = "copy_edit"
    UX_TWEAK = "ux_tweak"
    FEATURE_ADJUSTMENT = "feature_adjustment"
    NEW_FEATURE = "new_feature"
    SCOPE_CHANGE = "scope_change"
    TECHNICAL_CONSTRAINT = "technical_constraint"


class ProjectStatus(str, Enum):
    DRAFT = "draft"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class PhaseStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class AssetType(str, Enum):
    DOCUMENT = "document"
    IMAGE = "image"
    PROTOTYPE = "prototype"
    OTHER = "other"


class AssetScope(str, Enum):
    PROJECT = "project"
    STEP = "step"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


# --- value objects returned by the model -------------------------------------------------


class Plan(BaseModel):
    """Execution plan produced by the planner stage."""

    objective: str = ""
    deliverables: List[str] = Field(default_factory=list)
    execution_plan: List[str] = Field(default_factory=list)
    quality_gates: List[str] = Field(default_factory=list)
    risks: List[str] = Field(default_factory=list)


class ReviewIssue(BaseModel):
    severity: Severity = Severity.MEDIUM
    issue: str = ""
    fix: str = ""


class Review(BaseModel):
    """Reviewer verdict on one draft."""

    score: int = Field(default=0, ge=0, le=100)
    verdict: Verdict = Verdict.REVISE
    summary: str = ""
    issues: List[ReviewIssue] = Field(default_factory=list)
    missing_information: List[str] = Field(default_factory=list)

    def has_high_severity(self) -> bool:
        return any(issue.severity is Severity.HIGH for issue in self.issues)

    def passes(self, pass_score: int) -> bool:
        """Quality gate: pass verdict, score at threshold, no high severity issue."""

        return self.verdict is Verdict.PASS and self.score >= pass_score and not self.has_high_severity()


class ChangeImpactAnalysis(BaseModel):
    """Where the pipeline should resume after a change request."""

    model_config = ConfigDict(populate_by_name=True)

    intent: ChangeIntent = ChangeIntent.FEATURE_ADJUSTMENT
    recommended_start_step: int = Field(default=0, ge=0, le=LAST_PHASE_INDEX, alias="recommendedStartStep")
    impacted_steps: List[int] = Field(default_factory=list, alias="impactedSteps")
    reason: str = ""
    risks: List[str] = Field(default_factory=list)
    conflicts: List[str] = Field(default_factory=list)
    action_plan: List[str] = Field(default_factory=list, alias="actionPlan")
    summary: str = ""


# --- output payload ----------------------------------------------------------------------


class AgentSummary(BaseModel):
    """The ``agent`` block of a phase output payload."""

    model_config = ConfigDict(populate_by_name=True)

    run_id: int = Field(alias="runId")
    strategy: str
    iterations: int
    max_iterations: int = Field(alias="maxIterations")
    best_score: Optional[int] = Field(default=None, alias="bestScore")
    pass_score: int = Field(alias="passScore")
    verdict: Optional[Verdict] = None
    passed: Optional[bool] = None
    missing_information: List[str] = Field(default_factory=list, alias="missingInformation")


class StepOutput(BaseModel):
    """Phase output returned to the caller and stored as the ``step_output`` artifact."""

    text: str
    timestamp: datetime
    agent: AgentSummary
    artifacts: Dict[str, Any] = Field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class StepResult(BaseModel):
    """Envelope returned by the orchestrator entry points."""

    success: bool
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class ConversationTurn(BaseModel):
    role: str
    content: str


# --- persisted records -------------------------------------------------------------------


class _Record(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class ProjectRecord(_Record):
    id: int
    title: str
    raw_requirement: str
    status: ProjectStatus
    current_phase: int
    created_at: datetime
    updated_at: datetime


class PhaseStateRecord(_Record):
    id: int
    project_id: int
    phase_index: int
    status: PhaseStatus
    input: Optional[Dict[str, Any]] = None
    output: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    updated_at: datetime


class RunRecord(_Record):
    id: int
    project_id: int
    phase_index: int
    strategy: str
    status: RunStatus
    current_stage: RunStage
    current_iteration: int
    state_snapshot: Optional[Dict[str, Any]] = None
    final_output: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    started_at: datetime
    finished_at: Optional[datetime] = None


class ActionRecord(_Record):
    id: int
    run_id: int
    project_id: int
    phase_index: int
    action_type: ActionType
    title: str
    content: str
    extra: Optional[Dict[str, Any]] = None
    created_at: datetime


class ArtifactRecord(_Record):
    id: int
    project_id: int
    phase_index: Optional[int] = None
    run_id: Optional[int] = None
    iteration: Optional[int] = None
    artifact_type: ArtifactType
    source: ArtifactSource
    visibility: Visibility
    title: str
    content: str
    payload: Optional[Dict[str, Any]] = None
    created_at: datetime


class AssetRecord(_Record):
    id: int
    project_id: int
    phase_index: Optional[int] = None
    asset_type: AssetType
    scope: AssetScope
    file_name: str
    mime_type: str
    file_size: int
    storage_key: str
    source_label: Optional[str] = None
    note: Optional[str] = None
    created_at: datetime


class MessageRecord(_Record):
    id: int
    project_id: int
    phase_index: int
    role: MessageRole
    content: str
    created_at: datetime


class PriorPhaseOutput(BaseModel):
    phase_index: int
    output: Dict[str, Any]


__all__ = [
    "ActionRecord",
    "ActionType",
    "AgentSummary",
    "ArtifactRecord",
    "ArtifactSource",
    "ArtifactType",
    "AssetRecord",
    "AssetScope",
    "AssetType",
    "CHANGE_ARTIFACT_TYPES",
    "ChangeImpactAnalysis",
    "ChangeIntent",
    "ConversationTurn",
    "LAST_PHASE_INDEX",
    "MessageRecord",
    "MessageRole",
    "PHASE_COUNT",
    "PhaseStateRecord",
    "PhaseStatus",
    "Plan",
    "PriorPhaseOutput",
    "ProjectRecord",
    "ProjectStatus",
    "Review",
    "ReviewIssue",
    "RunRecord",
    "RunStage",
    "RunStatus",
    "Severity",
    "StepOutput",
    "StepResult",
    "Verdict",
    "Visibility",
]
