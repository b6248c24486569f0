# backend/tests/unit/test_stage_logic.py
from app.models.flow import FieldDefinition, StageDefinition
from app.workflows.router import get_next_stage, is_stage_completed

FIELDS = {
    "a": FieldDefinition(),
    "b": FieldDefinition(),
    "email": FieldDefinition(),
}


def _stage(**kwargs) -> StageDefinition:
    return StageDefinition.model_validate(kwargs)


# --- Completion ---

def test_stage_without_fields_or_conditions_is_complete():
    assert is_stage_completed(_stage(), {}, FIELDS)


def test_all_fields_must_be_present_and_valid():
    stage = _stage(fieldsToCollect=["a", "email"])
    assert not is_stage_completed(stage, {"a": "x"}, FIELDS)
    assert not is_stage_completed(stage, {"a": "x", "email": "broken@"}, FIELDS)
    assert is_stage_completed(stage, {"a": "x", "email": "dana@gmail.com"}, FIELDS)


def test_fields_satisfied_through_aliases():
    stage = _stage(fieldsToCollect=["email"])
    assert is_stage_completed(stage, {"proposer_email": "dana@gmail.com"}, FIELDS)


def test_completion_condition_must_hold_as_well():
    stage = _stage(fieldsToCollect=["a"], completionCondition="a === 'yes'")
    assert not is_stage_completed(stage, {"a": "no"}, FIELDS)
    assert is_stage_completed(stage, {"a": "yes"}, FIELDS)
    assert not is_stage_completed(_stage(fieldsToCollect=["a"], completionCondition="a >"), {"a": "yes"}, FIELDS)


def test_custom_check_alone_completes_a_stage_with_missing_fields():
    stage = _stage(
        fieldsToCollect=["a"],
        orchestration={"customCompletionCheck": {"condition": "skip_all == true"}},
    )
    assert is_stage_completed(stage, {"skip_all": True}, FIELDS)
    assert not is_stage_completed(stage, {"skip_all": False}, FIELDS)


def test_custom_check_with_required_fields_falls_through_when_unmet():
    stage = _stage(
        fieldsToCollect=["a"],
        orchestration={"customCompletionCheck": {"condition": "skip_all", "requiredFields": ["b"]}},
    )
    assert not is_stage_completed(stage, {"skip_all": True}, FIELDS)
    assert is_stage_completed(stage, {"skip_all": True, "b": "x"}, FIELDS)
    # falls through to the regular rule
    assert is_stage_completed(stage, {"skip_all": False, "a": "x"}, FIELDS)


def test_custom_check_can_see_stage_metadata():
    stage = _stage(
        fieldsToCollect=["a"],
        orchestration={"customCompletionCheck": {"condition": "stage.slug == 'intro'"}},
    )
    assert is_stage_completed(stage, {}, FIELDS, stage_slug="intro")
    assert not is_stage_completed(stage, {}, FIELDS, stage_slug="other")


# --- Next stage ---

def test_plain_and_missing_next_stage():
    assert get_next_stage(_stage(nextStage="b"), {}) == "b"
    assert get_next_stage(_stage(), {}) is None
    assert get_next_stage(_stage(nextStage=""), {}) is None


def test_conditionals_are_order_sensitive():
    stage = _stage(nextStage={
        "conditional": [
            {"condition": "x > 5", "ifTrue": "big"},
            {"condition": "x > 1", "ifTrue": "medium"},
        ],
        "fallback": "small",
    })
    assert get_next_stage(stage, {"x": 10}) == "big"
    assert get_next_stage(stage, {"x": 3}) == "medium"
    assert get_next_stage(stage, {"x": 0}) == "small"


def test_false_rule_with_if_false_short_circuits():
    stage = _stage(nextStage={
        "conditional": [
            {"condition": "x > 5", "ifTrue": "big", "ifFalse": "not_big"},
            {"condition": "x > 1", "ifTrue": "medium"},
        ],
        "fallback": "small",
    })
    assert get_next_stage(stage, {"x": 3}) == "not_big"


def test_rule_that_fails_to_evaluate_is_skipped():
    stage = _stage(nextStage={
        "conditional": [
            {"condition": "x > 5", "ifTrue": "big", "ifFalse": "not_big"},
            {"condition": "present(x)", "ifTrue": "has_x"},
        ],
        "fallback": "small",
    })
    assert get_next_stage(stage, {}) == "small"
    assert get_next_stage(stage, {"x": "text"}) == "has_x"
