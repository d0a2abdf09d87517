import pytest

from app.domain.imports.stages import (
    InvalidStageTransitionError,
    ProcessingStage,
    is_terminal,
    task_for_stage,
    validate_stage_transition,
)


@pytest.mark.parametrize(
    "from_stage,to_stage",
    [
        (ProcessingStage.PENDING, ProcessingStage.ANALYZE_DUPLICATES),
        (ProcessingStage.ANALYZE_DUPLICATES, ProcessingStage.DETECT_SCHEMA),
        (ProcessingStage.VALIDATE_SCHEMA, ProcessingStage.AWAIT_APPROVAL),
        (ProcessingStage.VALIDATE_SCHEMA, ProcessingStage.GEOCODE_BATCH),
        (ProcessingStage.AWAIT_APPROVAL, ProcessingStage.CREATE_SCHEMA_VERSION),
        (ProcessingStage.CREATE_EVENTS, ProcessingStage.COMPLETED),
        (ProcessingStage.GEOCODE_BATCH, ProcessingStage.FAILED),
    ],
)
def test_allowed_transitions(from_stage, to_stage):
    assert validate_stage_transition(from_stage, to_stage)


@pytest.mark.parametrize(
    "from_stage,to_stage",
    [
        (ProcessingStage.DETECT_SCHEMA, ProcessingStage.ANALYZE_DUPLICATES),
        (ProcessingStage.PENDING, ProcessingStage.CREATE_EVENTS),
        (ProcessingStage.AWAIT_APPROVAL, ProcessingStage.GEOCODE_BATCH),
        (ProcessingStage.COMPLETED, ProcessingStage.FAILED),
        (ProcessingStage.FAILED, ProcessingStage.PENDING),
    ],
)
def test_forbidden_transitions(from_stage, to_stage):
    assert not validate_stage_transition(from_stage, to_stage)


def test_same_stage_write_is_allowed_for_progress_updates():
    assert validate_stage_transition("create-events", "create-events")


def test_terminal_stages_and_tasks():
    assert is_terminal("completed")
    assert is_terminal(ProcessingStage.FAILED)
    assert not is_terminal("await-approval")
    assert task_for_stage(ProcessingStage.GEOCODE_BATCH) == "geocode-batch"
    assert task_for_stage(ProcessingStage.AWAIT_APPROVAL) is None


def test_invalid_transition_error_message():
    error = InvalidStageTransitionError("completed", "pending")
    assert error.message == "Invalid stage transition: completed -> pending"
