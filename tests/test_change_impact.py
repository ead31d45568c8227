from __future__ import annotations

import pytest

from productflow_agent.change_impact import (
    first_incomplete_phase,
    normalize_change_analysis,
    normalize_intent,
)
from productflow_agent.errors import InputError
from productflow_agent.schemas import ChangeIntent, PhaseStatus

from .fakes import message_text


@pytest.mark.parametrize(
    ("raw", "expected_start", "expected_impacted"),
    [
        ({"recommendedStartStep": 12, "impactedSteps": []}, 8, [8]),
        ({"recommendedStartStep": -3}, 0, [0]),
        ({"recommendedStartStep": "4", "impactedSteps": [7, 4, 4, 99, -1, "x"]}, 4, [0, 4, 7, 8]),
        ({"recommended_start_step": 2, "impacted_steps": [3, 2]}, 2, [2, 3]),
        ({}, 0, [0]),
    ],
)
def test_start_and_impacted_steps_are_normalized(raw, expected_start, expected_impacted):
    analysis = normalize_change_analysis(raw)
    assert analysis.recommended_start_step == expected_start
    assert analysis.impacted_steps == expected_impacted


def test_start_is_capped_at_restart_ceiling():
    analysis = normalize_change_analysis({"recommendedStartStep": 7, "impactedSteps": [7, 8]}, restart_ceiling=5)
    assert analysis.recommended_start_step == 5
    assert analysis.impacted_steps == [5, 7, 8]


def test_start_step_is_always_impacted():
    analysis = normalize_change_analysis({"recommendedStartStep": 3, "impactedSteps": [6, 4]})
    assert analysis.recommended_start_step == 3
    assert analysis.impacted_steps == [3, 4, 6]


def test_intent_and_lists_are_coerced():
    analysis = normalize_change_analysis(
        {"intent": "Scope Change", "risks": "timeline slips", "actionPlan": ["rerun", None], "conflicts": 3}
    )
    assert analysis.intent is ChangeIntent.SCOPE_CHANGE
    assert analysis.risks == ["timeline slips"]
    assert analysis.action_plan == ["rerun"]
    assert analysis.conflicts == ["3"]
    assert normalize_intent("redesign everything") is ChangeIntent.FEATURE_ADJUSTMENT
    assert normalize_intent(None) is ChangeIntent.FEATURE_ADJUSTMENT
    assert normalize_intent("ux-tweak") is ChangeIntent.UX_TWEAK


def _complete_phases(service, project_id, count):
    for index in range(count):
        service.store.update_phase_state(
            project_id, index, status=PhaseStatus.COMPLETED, output={"text": f"output of phase {index}"}
        )


def test_scenario_change_request_with_first_five_phases_completed(service, fake_model, project):
    _complete_phases(service, project.id, 5)
    fake_model.change = {
        "intent": "feature_adjustment",
        "recommendedStartStep": 7,
        "impactedSteps": [],
        "reason": "Touches the PRD only",
        "risks": [],
        "conflicts": [],
        "actionPlan": ["Regenerate the PRD"],
        "summary": "Restart late",
    }

    analysis = service.classifier.analyze(project.id, "Rename 'client' to 'customer' everywhere")

    assert 0 <= analysis.recommended_start_step <= 8
    # Phase 5 is the first phase without output, so nothing later can run yet.
    assert analysis.recommended_start_step == 5
    assert analysis.impacted_steps == [5]

    prompt = message_text(fake_model.stage_calls("change")[0]["messages"][1])
    assert "4. Prototype prompt optimisation [completed]\noutput of phase 4" in prompt
    assert "8. Supplementary chapters [pending]\n(no output)" in prompt
    assert "Rename 'client' to 'customer' everywhere" in prompt
    assert "I need a small tool for freelancers" in prompt


def test_classifier_keeps_earlier_recommendation(service, fake_model, project):
    _complete_phases(service, project.id, 5)
    fake_model.change = {"intent": "scope_change", "recommendedStartStep": 1, "impactedSteps": [1, 2, 3]}

    analysis = service.classifier.analyze(project.id, "Also support agencies")

    assert analysis.recommended_start_step == 1
    assert analysis.impacted_steps == [1, 2, 3]
    assert analysis.intent is ChangeIntent.SCOPE_CHANGE


def test_classifier_does_not_touch_phase_state(service, fake_model, project):
    _complete_phases(service, project.id, 3)
    before = [(state.status, state.output) for state in service.store.get_phase_states(project.id)]

    service.classifier.analyze(project.id, "Change the tone")

    after = [(state.status, state.output) for state in service.store.get_phase_states(project.id)]
    assert before == after


def test_first_incomplete_phase(service, project):
    assert first_incomplete_phase(service.store.get_phase_states(project.id)) == 0
    _complete_phases(service, project.id, 9)
    assert first_incomplete_phase(service.store.get_phase_states(project.id)) == 8


def test_classifier_rejects_unknown_project_and_empty_request(service, project):
    with pytest.raises(InputError):
        service.classifier.analyze(project.id + 100, "anything")
    with pytest.raises(InputError):
        service.classifier.analyze(project.id, "   ")
