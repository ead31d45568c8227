from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence, Set, Tuple, Union

from .config import AgentLoopConfig
from .context import AssembledContext, ContextAssembler
from .errors import InputError, RunConflictError
from .phases import PhaseSpec, get_phase
from .persistence.store import WorkflowStore
from .schemas import (
    ActionType,
    AgentSummary,
    ArtifactSource,
    ArtifactType,
    ConversationTurn,
    Plan,
    Review,
    RunRecord,
    RunStage,
    RunStatus,
    StepOutput,
    StepResult,
    Visibility,
)
from .sdk.openai_client import ModelInvoker
from .stages import draft_stage, finalize_stage, format_plan, format_review, plan_stage, review_stage
from .structured import StructuredOutputValidator


LOGGER = logging.getLogger("productflow_agent.orchestrator")

HistoryItem = Union[ConversationTurn, Dict[str, Any]]


class ActiveRunRegistry:
    """In-process set of live (project, phase) keys."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: Set[Tuple[int, int]] = set()

    @contextmanager
    def claim(self, project_id: int, phase_index: int) -> Iterator[None]:
        key = (project_id, phase_index)
        with self._lock:
            if key in self._active:
                raise RunConflictError(project_id, phase_index)
            self._active.add(key)
        try:
            yield
        finally:
            with self._lock:
                self._active.discard(key)

    def is_active(self, project_id: int, phase_index: int) -> bool:
        with self._lock:
            return (project_id, phase_index) in self._active


@dataclass
class RunState:
    """Mutable progress of one run, mirrored into the run's state snapshot."""

    run_id: int
    stage: RunStage = RunStage.CONTEXT
    iteration: int = 0
    plan: Optional[Plan] = None
    last_draft: Optional[str] = None
    last_review: Optional[Review] = None
    best_score: Optional[int] = None
    passed: Optional[bool] = None
    scores: List[int] = field(default_factory=list)

    def record_review(self, review: Review) -> None:
        self.last_review = review
        self.scores.append(review.score)
        self.best_score = review.score if self.best_score is None else max(self.best_score, review.score)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "stage": self.stage.value,
            "iteration": self.iteration,
            "hasPlan": self.plan is not None,
            "hasDraft": bool(self.last_draft),
            "bestScore": self.best_score,
            "scores": list(self.scores),
            "passed": self.passed,
            "lastReview": self.last_review.model_dump(mode="json") if self.last_review else None,
        }


class RunOrchestrator:
    """Drive one phase through context, plan, draft/review rounds and final."""

    def __init__(
        self,
        store: WorkflowStore,
        assembler: ContextAssembler,
        invoker: ModelInvoker,
        validator: StructuredOutputValidator,
        config: AgentLoopConfig,
        registry: Optional[ActiveRunRegistry] = None,
    ) -> None:
        self._store = store
        self._assembler = assembler
        self._invoker = invoker
        self._validator = validator
        self._config = config
        self._registry = registry or ActiveRunRegistry()
        self._logger = LOGGER

    @property
    def registry(self) -> ActiveRunRegistry:
        return self._registry

    # -- entry points -------------------------------------------------------------------

    def execute_step(
        self,
        project_id: int,
        phase_index: int,
        input: Dict[str, Any],
        conversation_history: Optional[Sequence[HistoryItem]] = None,
    ) -> StepResult:
        """
        Run the full loop for one phase and wrap the outcome.

        An unknown phase is returned as a failed result. ``RunConflictError``
        is raised before any run exists. Failures inside a run are traced, the
        run is marked as error, and the message is returned with
        ``success=False``.
        """

        try:
            phase = get_phase(phase_index)
        except InputError as exc:
            return StepResult(success=False, error=str(exc))
        try:
            output = self.run_step(project_id, phase, input, conversation_history)
        except InputError:
            raise
        except Exception as exc:
            return StepResult(success=False, error=str(exc) or exc.__class__.__name__)
        return StepResult(success=True, output=output)

    def continue_conversation(
        self,
        project_id: int,
        phase_index: int,
        continuation_input: Dict[str, Any],
        user_message: str,
        history: Optional[Sequence[HistoryItem]] = None,
    ) -> StepResult:
        """Refine the phase output from one user message: context, one draft, final."""

        try:
            phase = get_phase(phase_index)
        except InputError as exc:
            return StepResult(success=False, error=str(exc))
        try:
            output = self.run_refine(project_id, phase, continuation_input, user_message, history)
        except InputError:
            raise
        except Exception as exc:
            return StepResult(success=False, error=str(exc) or exc.__class__.__name__)
        return StepResult(success=True, output=output)

    # -- run drivers --------------------------------------------------------------------

    def run_step(
        self,
        project_id: int,
        phase: PhaseSpec,
        input: Dict[str, Any],
        conversation_history: Optional[Sequence[HistoryItem]] = None,
    ) -> Dict[str, Any]:
        """Run the plan/draft/review loop, re-raising any failure after tracing it."""

        with self._registry.claim(project_id, phase.index):
            run = self._store.start_run(project_id, phase.index, self._config.strategy)
            state = RunState(run_id=run.id)
            self._logger.info("Run %s started for project %s %s", run.id, project_id, phase.label)
            try:
                return self._drive_loop(run, phase, state, input, _turns(conversation_history))
            except Exception as exc:
                self._record_failure(run, state, exc)
                raise

    def run_refine(
        self,
        project_id: int,
        phase: PhaseSpec,
        continuation_input: Dict[str, Any],
        user_message: str,
        history: Optional[Sequence[HistoryItem]] = None,
    ) -> Dict[str, Any]:
        with self._registry.claim(project_id, phase.index):
            run = self._store.start_run(project_id, phase.index, self._config.refine_strategy)
            state = RunState(run_id=run.id)
            self._logger.info("Refine run %s started for project %s %s", run.id, project_id, phase.label)
            try:
                return self._drive_refine(run, phase, state, continuation_input, user_message, _turns(history))
            except Exception as exc:
                self._record_failure(run, state, exc)
                raise

    def _drive_loop(
        self,
        run: RunRecord,
        phase: PhaseSpec,
        state: RunState,
        input: Dict[str, Any],
        history: List[ConversationTurn],
    ) -> Dict[str, Any]:
        cfg = self._config
        context = self._context_stage(run, phase, state, input, history)

        self._advance(run, state, RunStage.PLAN)
        plan = plan_stage(self._validator, phase, context, max_tokens=cfg.plan_max_tokens)
        state.plan = plan
        plan_text = format_plan(plan)
        self._artifact(run, ArtifactType.PLAN, f"{phase.label} plan", plan_text, payload=plan.model_dump(mode="json"))
        self._action(run, ActionType.PLAN, "Execution plan", plan_text, {"steps": len(plan.execution_plan)})

        for iteration in range(1, cfg.max_iterations + 1):
            state.iteration = iteration
            self._advance(run, state, RunStage.DRAFT)
            draft = draft_stage(
                self._invoker,
                phase,
                context,
                plan,
                iteration=iteration,
                previous_review=state.last_review,
                previous_draft=state.last_draft,
                max_tokens=cfg.draft_max_tokens,
            )
            state.last_draft = draft
            self._artifact(run, ArtifactType.DRAFT, f"{phase.label} draft {iteration}", draft, iteration=iteration)
            self._action(run, ActionType.DRAFT, f"Draft round {iteration}", draft, {"iteration": iteration, "chars": len(draft)})

            self._advance(run, state, RunStage.REVIEW)
            review = review_stage(
                self._validator,
                phase,
                context,
                plan,
                draft,
                pass_score=cfg.pass_score,
                max_tokens=cfg.review_max_tokens,
            )
            state.record_review(review)
            state.passed = review.passes(cfg.pass_score)
            review_text = format_review(review)
            self._artifact(
                run,
                ArtifactType.REVIEW,
                f"{phase.label} review {iteration}",
                review_text,
                iteration=iteration,
                payload=review.model_dump(mode="json"),
            )
            self._action(
                run,
                ActionType.REVIEW,
                f"Review round {iteration}: {review.score} ({review.verdict.value})",
                review_text,
                {"iteration": iteration, "score": review.score, "verdict": review.verdict.value, "passed": state.passed},
            )
            self._logger.info(
                "Run %s round %s scored %s (%s)", run.id, iteration, review.score, review.verdict.value
            )
            if state.passed:
                break

        if not state.passed:
            self._logger.warning(
                "Run %s exhausted %s rounds without passing; finalizing best effort (best score %s)",
                run.id,
                cfg.max_iterations,
                state.best_score,
            )

        final_text = self._final_stage(run, phase, state, context, plan)
        review = state.last_review
        summary = AgentSummary(
            run_id=run.id,
            strategy=run.strategy,
            iterations=state.iteration,
            max_iterations=cfg.max_iterations,
            best_score=state.best_score,
            pass_score=cfg.pass_score,
            verdict=review.verdict if review else None,
            passed=bool(state.passed),
            missing_information=review.missing_information if review else [],
        )
        artifacts = {
            "plan": plan.model_dump(mode="json"),
            "latestReview": review.model_dump(mode="json") if review else None,
        }
        return self._complete(run, phase, state, final_text, summary, artifacts)

    def _drive_refine(
        self,
        run: RunRecord,
        phase: PhaseSpec,
        state: RunState,
        continuation_input: Dict[str, Any],
        user_message: str,
        history: List[ConversationTurn],
    ) -> Dict[str, Any]:
        cfg = self._config
        context = self._context_stage(run, phase, state, continuation_input, history)

        state.iteration = 1
        self._advance(run, state, RunStage.DRAFT)
        draft = draft_stage(
            self._invoker,
            phase,
            context,
            None,
            iteration=1,
            revision_request=user_message,
            max_tokens=cfg.draft_max_tokens,
        )
        state.last_draft = draft
        self._artifact(run, ArtifactType.DRAFT, f"{phase.label} revision", draft, iteration=1)
        self._action(run, ActionType.DRAFT, "Revision draft", draft, {"iteration": 1, "userMessage": user_message})

        final_text = self._final_stage(run, phase, state, context, None)
        summary = AgentSummary(
            run_id=run.id,
            strategy=run.strategy,
            iterations=1,
            max_iterations=1,
            pass_score=cfg.pass_score,
        )
        return self._complete(run, phase, state, final_text, summary, {"plan": None, "latestReview": None})

    # -- shared stages ------------------------------------------------------------------

    def _context_stage(
        self,
        run: RunRecord,
        phase: PhaseSpec,
        state: RunState,
        input: Dict[str, Any],
        history: List[ConversationTurn],
    ) -> AssembledContext:
        self._advance(run, state, RunStage.CONTEXT)
        self._artifact(
            run,
            ArtifactType.STEP_INPUT,
            f"{phase.label} input",
            json.dumps(input, ensure_ascii=False, indent=2, default=str),
            source=ArtifactSource.USER,
            payload=input,
        )
        context = self._assembler.assemble(run.project_id, phase.index, input, history)
        self._action(run, ActionType.CONTEXT, "Context assembled", context.render(include_input=True), context.summary())
        return context

    def _final_stage(
        self,
        run: RunRecord,
        phase: PhaseSpec,
        state: RunState,
        context: AssembledContext,
        plan: Optional[Plan],
    ) -> str:
        self._advance(run, state, RunStage.FINAL)
        final_text = finalize_stage(
            self._invoker,
            phase,
            context,
            plan,
            state.last_draft,
            state.last_review,
            max_tokens=self._config.final_max_tokens,
        )
        self._artifact(run, ArtifactType.FINAL, f"{phase.label} final", final_text, iteration=state.iteration)
        self._action(run, ActionType.FINAL, "Final deliverable", final_text, {"chars": len(final_text)})
        return final_text

    def _complete(
        self,
        run: RunRecord,
        phase: PhaseSpec,
        state: RunState,
        text: str,
        summary: AgentSummary,
        artifacts: Dict[str, Any],
    ) -> Dict[str, Any]:
        output = StepOutput(
            text=text,
            timestamp=datetime.now(timezone.utc),
            agent=summary,
            artifacts=artifacts,
        ).to_payload()
        self._artifact(run, ArtifactType.STEP_OUTPUT, f"{phase.label} output", text, payload=output)
        state.stage = RunStage.COMPLETED
        self._store.finish_run(
            run.id,
            RunStatus.COMPLETED,
            iteration=state.iteration,
            state_snapshot=state.snapshot(),
            final_output=output,
        )
        self._logger.info("Run %s completed after %s round(s)", run.id, state.iteration)
        return output

    # -- trace helpers ------------------------------------------------------------------

    def _advance(self, run: RunRecord, state: RunState, stage: RunStage) -> None:
        state.stage = stage
        self._store.update_run_progress(run.id, stage, iteration=state.iteration, state_snapshot=state.snapshot())

    def _action(
        self,
        run: RunRecord,
        action_type: ActionType,
        title: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._store.append_action(run.id, run.project_id, run.phase_index, action_type, title, content, metadata)

    def _artifact(
        self,
        run: RunRecord,
        artifact_type: ArtifactType,
        title: str,
        content: str,
        *,
        iteration: Optional[int] = None,
        source: ArtifactSource = ArtifactSource.AGENT,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._store.append_artifact(
            run.project_id,
            artifact_type,
            title,
            content,
            phase_index=run.phase_index,
            run_id=run.id,
            iteration=iteration,
            source=source,
            visibility=Visibility.BOTH,
            payload=payload,
        )

    def _record_failure(self, run: RunRecord, state: RunState, exc: Exception) -> None:
        message = str(exc) or exc.__class__.__name__
        failed_stage = state.stage
        self._logger.error("Run %s failed during %s: %s", run.id, failed_stage.value, message)
        snapshot = state.snapshot()
        snapshot["error"] = message
        snapshot["errorType"] = exc.__class__.__name__
        try:
            self._action(
                run,
                ActionType.ERROR,
                f"Run failed during {failed_stage.value}",
                message,
                {"stage": failed_stage.value, "iteration": state.iteration, "errorType": exc.__class__.__name__},
            )
            self._store.append_artifact(
                run.project_id,
                ArtifactType.SNAPSHOT,
                f"Failure snapshot · run {run.id}",
                json.dumps(snapshot, ensure_ascii=False, indent=2, default=str),
                phase_index=run.phase_index,
                run_id=run.id,
                iteration=state.iteration or None,
                source=ArtifactSource.SYSTEM,
                visibility=Visibility.USER,
                payload=snapshot,
            )
        except Exception:
            self._logger.exception("Could not record the error trace for run %s", run.id)
        state.stage = RunStage.ERROR
        try:
            self._store.finish_run(
                run.id,
                RunStatus.ERROR,
                iteration=state.iteration,
                state_snapshot=snapshot,
                error_message=message,
            )
        except Exception:
            self._logger.exception("Could not mark run %s as failed", run.id)


def _turns(history: Optional[Sequence[HistoryItem]]) -> List[ConversationTurn]:
    return [ConversationTurn.model_validate(item) for item in history or []]


__all__ = ["ActiveRunRegistry", "RunOrchestrator", "RunState"]
