from __future__ import annotations

from pathlib import Path

import pytest

from productflow_agent.persistence import WorkflowStore
from productflow_agent.schemas import (
    ActionType,
    ArtifactType,
    MessageRole,
    PhaseStatus,
    ProjectStatus,
    RunStage,
    RunStatus,
    Visibility,
)


@pytest.fixture()
def store(tmp_path: Path) -> WorkflowStore:
    return WorkflowStore.from_url(f"sqlite:///{tmp_path / 'store.db'}")


def test_create_project_seeds_nine_pending_phases(store):
    project = store.create_project("Invoices", "raw requirement")

    assert project.status is ProjectStatus.DRAFT
    assert project.current_phase == 0
    phases = store.get_phase_states(project.id)
    assert [phase.phase_index for phase in phases] == list(range(9))
    assert {phase.status for phase in phases} == {PhaseStatus.PENDING}


def test_run_lifecycle(store):
    project = store.create_project("Invoices", "raw")
    run = store.start_run(project.id, 2, "loop-v2")
    assert run.status is RunStatus.RUNNING
    assert run.current_stage is RunStage.CONTEXT

    store.update_run_progress(run.id, RunStage.REVIEW, iteration=2, state_snapshot={"bestScore": 70})
    progressed = store.get_run(run.id)
    assert progressed.current_stage is RunStage.REVIEW
    assert progressed.current_iteration == 2
    assert progressed.state_snapshot == {"bestScore": 70}

    store.finish_run(run.id, RunStatus.COMPLETED, iteration=2, final_output={"text": "done"})
    finished = store.get_run(run.id)
    assert finished.status is RunStatus.COMPLETED
    assert finished.current_stage is RunStage.COMPLETED
    assert finished.final_output == {"text": "done"}
    assert finished.finished_at is not None
    assert store.latest_run(project.id, 2).id == run.id
    assert store.latest_run(project.id, 3) is None


def test_actions_are_ordered_and_titles_trimmed(store):
    project = store.create_project("Invoices", "raw")
    run = store.start_run(project.id, 0, "loop-v2")
    store.append_action(run.id, project.id, 0, ActionType.CONTEXT, "t" * 300, "ctx", {"chars": 3})
    store.append_action(run.id, project.id, 0, ActionType.PLAN, "plan", "p")

    actions = store.list_actions(run.id)
    assert [action.action_type for action in actions] == [ActionType.CONTEXT, ActionType.PLAN]
    assert len(actions[0].title) == 120
    assert actions[0].extra == {"chars": 3}
    assert actions[1].extra is None


def test_query_artifacts_filters(store):
    project = store.create_project("Invoices", "raw")
    store.append_artifact(project.id, ArtifactType.PLAN, "plan 1", "a", phase_index=1)
    store.append_artifact(project.id, ArtifactType.DRAFT, "draft 1", "b", phase_index=1, visibility=Visibility.USER)
    store.append_artifact(project.id, ArtifactType.DRAFT, "draft 2", "c", phase_index=2)

    assert [item.title for item in store.query_artifacts(project.id, phase_index=1)] == ["draft 1", "plan 1"]
    assert [item.title for item in store.query_artifacts(project.id, types=[ArtifactType.DRAFT])] == ["draft 2", "draft 1"]
    assert [item.title for item in store.query_artifacts(project.id, visibility=[Visibility.BOTH])] == ["draft 2", "plan 1"]
    assert len(store.query_artifacts(project.id, limit=1)) == 1


def test_prior_phase_outputs_are_ascending_and_completed_only(store):
    project = store.create_project("Invoices", "raw")
    store.update_phase_state(project.id, 2, status=PhaseStatus.COMPLETED, output={"text": "two"})
    store.update_phase_state(project.id, 0, status=PhaseStatus.COMPLETED, output={"text": "zero"})
    store.update_phase_state(project.id, 1, status=PhaseStatus.PROCESSING)

    prior = store.query_prior_phase_outputs(project.id, before_phase=3)
    assert [(item.phase_index, item.output["text"]) for item in prior] == [(0, "zero"), (2, "two")]
    assert store.query_prior_phase_outputs(project.id, before_phase=0) == []


def test_update_phase_state_leaves_unset_fields(store):
    project = store.create_project("Invoices", "raw")
    store.update_phase_state(project.id, 0, status=PhaseStatus.COMPLETED, input={"a": 1}, output={"text": "x"})
    store.update_phase_state(project.id, 0, error_message="oops")

    state = store.get_phase_state(project.id, 0)
    assert state.status is PhaseStatus.COMPLETED
    assert state.input == {"a": 1}
    assert state.output == {"text": "x"}
    assert state.error_message == "oops"


def test_reset_from_phase_snapshots_then_clears(store):
    project = store.create_project("Invoices", "raw")
    for index in range(5):
        store.update_phase_state(project.id, index, status=PhaseStatus.COMPLETED, output={"text": f"out {index}"})

    reset = store.reset_from_phase(project.id, 3)

    assert reset == [3, 4, 5, 6, 7, 8]
    states = store.get_phase_states(project.id)
    assert [state.status for state in states[:3]] == [PhaseStatus.COMPLETED] * 3
    assert all(state.status is PhaseStatus.PENDING and state.output is None for state in states[3:])
    snapshots = store.query_artifacts(project.id, types=[ArtifactType.SNAPSHOT])
    assert sorted(item.phase_index for item in snapshots) == [3, 4]
    assert {item.payload["output"]["text"] for item in snapshots} == {"out 3", "out 4"}
    assert {item.payload["previousStatus"] for item in snapshots} == {"completed"}


def test_conversation_and_project_progress(store):
    project = store.create_project("Invoices", "raw")
    store.add_message(project.id, 1, MessageRole.USER, "hello")
    store.add_message(project.id, 1, MessageRole.ASSISTANT, "hi")
    store.add_message(project.id, 2, MessageRole.USER, "elsewhere")

    assert [(m.role, m.content) for m in store.get_conversation(project.id, 1)] == [
        (MessageRole.USER, "hello"),
        (MessageRole.ASSISTANT, "hi"),
    ]

    store.update_project_progress(project.id, 4, ProjectStatus.IN_PROGRESS)
    updated = store.get_project(project.id)
    assert updated.current_phase == 4
    assert updated.status is ProjectStatus.IN_PROGRESS
    assert store.get_project(project.id + 1) is None
