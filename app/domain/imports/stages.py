"""
Import job stage machine.

The persisted ``ImportJob.stage`` column is the only coordination point
between task invocations, so every write goes through
``validate_stage_transition``.
"""
from enum import Enum
from typing import Dict, FrozenSet, Optional

from app.domain.imports.exceptions import ImportPipelineError


class ProcessingStage(str, Enum):
    PENDING = "pending"
    ANALYZE_DUPLICATES = "analyze-duplicates"
    DETECT_SCHEMA = "detect-schema"
    VALIDATE_SCHEMA = "validate-schema"
    AWAIT_APPROVAL = "await-approval"
    CREATE_SCHEMA_VERSION = "create-schema-version"
    GEOCODE_BATCH = "geocode-batch"
    CREATE_EVENTS = "create-events"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STAGES: FrozenSet[ProcessingStage] = frozenset(
    {ProcessingStage.COMPLETED, ProcessingStage.FAILED}
)

VALID_STAGE_TRANSITIONS: Dict[ProcessingStage, FrozenSet[ProcessingStage]] = {
    ProcessingStage.PENDING: frozenset({ProcessingStage.ANALYZE_DUPLICATES}),
    ProcessingStage.ANALYZE_DUPLICATES: frozenset({ProcessingStage.DETECT_SCHEMA}),
    ProcessingStage.DETECT_SCHEMA: frozenset({ProcessingStage.VALIDATE_SCHEMA}),
    ProcessingStage.VALIDATE_SCHEMA: frozenset(
        {
            ProcessingStage.AWAIT_APPROVAL,
            ProcessingStage.CREATE_SCHEMA_VERSION,
            # schema unchanged against the latest version
            ProcessingStage.GEOCODE_BATCH,
        }
    ),
    ProcessingStage.AWAIT_APPROVAL: frozenset({ProcessingStage.CREATE_SCHEMA_VERSION}),
    ProcessingStage.CREATE_SCHEMA_VERSION: frozenset({ProcessingStage.GEOCODE_BATCH}),
    ProcessingStage.GEOCODE_BATCH: frozenset({ProcessingStage.CREATE_EVENTS}),
    ProcessingStage.CREATE_EVENTS: frozenset({ProcessingStage.COMPLETED}),
    ProcessingStage.COMPLETED: frozenset(),
    ProcessingStage.FAILED: frozenset(),
}

# Task type dispatched when a job enters a stage. Stages missing here wait
# for an external actor or are terminal.
STAGE_TASKS: Dict[ProcessingStage, str] = {
    ProcessingStage.ANALYZE_DUPLICATES: "analyze-duplicates",
    ProcessingStage.DETECT_SCHEMA: "detect-schema",
    ProcessingStage.VALIDATE_SCHEMA: "validate-schema",
    ProcessingStage.CREATE_SCHEMA_VERSION: "create-schema-version",
    ProcessingStage.GEOCODE_BATCH: "geocode-batch",
    ProcessingStage.CREATE_EVENTS: "create-events",
}


class InvalidStageTransitionError(ImportPipelineError):
    """Raised when a stage write would move a job backwards or skip the table."""

    def __init__(self, from_stage: str, to_stage: str, message: str = None):
        self.from_stage = from_stage
        self.to_stage = to_stage
        self.message = message or f"Invalid stage transition: {from_stage} -> {to_stage}"
        super().__init__(self.message)


def coerce_stage(value) -> ProcessingStage:
    if isinstance(value, ProcessingStage):
        return value
    return ProcessingStage(value)


def is_terminal(stage) -> bool:
    return coerce_stage(stage) in TERMINAL_STAGES


def validate_stage_transition(from_stage, to_stage) -> bool:
    """
    Return True when ``from_stage -> to_stage`` is allowed.

    Same-stage writes are allowed (progress updates). FAILED is reachable
    from every non-terminal stage. Terminal stages accept nothing else.
    """
    current = coerce_stage(from_stage)
    target = coerce_stage(to_stage)

    if current == target:
        return True
    if current in TERMINAL_STAGES:
        return False
    if target == ProcessingStage.FAILED:
        return True
    return target in VALID_STAGE_TRANSITIONS[current]


def task_for_stage(stage) -> Optional[str]:
    return STAGE_TASKS.get(coerce_stage(stage))
