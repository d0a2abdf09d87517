"""
Stage orchestration for import jobs.

Stage handlers never write ``ImportJob.stage`` directly: they go through
``transition_stage``, which validates the move against the transition table,
commits, and only then enqueues the task for the new stage. A job's file is
re-aggregated every time the job reaches a terminal stage.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.models import ImportFile, ImportJob, User
from app.domain.imports.exceptions import ImportPipelineError
from app.domain.imports.geocoding import Geocoder
from app.domain.imports.jobs import (
    append_job_errors,
    batch_marker_exists,
    set_json,
    update_job_json,
)
from app.domain.imports.quotas import QuotaService, UsageType
from app.domain.imports.stages import (
    InvalidStageTransitionError,
    ProcessingStage,
    TERMINAL_STAGES,
    coerce_stage,
    is_terminal,
    task_for_stage,
    validate_stage_transition,
)
from app.domain.imports.tasks import TaskQueue

logger = logging.getLogger(__name__)

FILE_STATUS_PENDING = "pending"
FILE_STATUS_PARSING = "parsing"
FILE_STATUS_PROCESSING = "processing"
FILE_STATUS_COMPLETED = "completed"
FILE_STATUS_FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ResourceNotFoundError(ImportPipelineError):
    """Raised when an import file, job, or dataset a task refers to is missing."""

    def __init__(self, resource: str, resource_id: Any, message: str = None):
        self.resource = resource
        self.resource_id = resource_id
        self.message = message or f"{resource} {resource_id} not found"
        super().__init__(self.message)


@dataclass
class PipelineContext:
    """Collaborators every stage handler needs."""
    session_factory: Callable[[], Session]
    queue: TaskQueue
    geocoder: Optional[Geocoder] = None
    duplicate_analysis_batch_size: int = field(default_factory=lambda: settings.duplicate_analysis_batch_size)
    schema_detection_batch_size: int = field(default_factory=lambda: settings.schema_detection_batch_size)
    geocoding_batch_size: int = field(default_factory=lambda: settings.geocoding_batch_size)
    event_creation_batch_size: int = field(default_factory=lambda: settings.event_creation_batch_size)
    duplicate_query_chunk_size: int = field(default_factory=lambda: settings.duplicate_query_chunk_size)

    def enqueue(self, task_type: str, payload: Dict[str, Any]) -> None:
        self.queue.enqueue(task_type, payload)


# --- stage transitions ------------------------------------------------------

_JSON_ATTRIBUTES = {
    "progress",
    "duplicates",
    "schema_builder_state",
    "detected_schema",
    "field_mappings",
    "schema_validation",
    "geocoding_results",
    "errors",
    "results",
}


def transition_stage(
    session: Session,
    job: ImportJob,
    to_stage,
    context: PipelineContext,
    **updates: Any,
) -> ImportJob:
    """
    Move ``job`` to ``to_stage`` (plus any column ``updates``) and signal the queue.

    Raises ``InvalidStageTransitionError`` without writing anything when the
    transition table forbids the move.
    """
    current = job.stage
    target = coerce_stage(to_stage)
    if not validate_stage_transition(current, target):
        raise InvalidStageTransitionError(current, target.value)

    for attribute, value in updates.items():
        if attribute in _JSON_ATTRIBUTES:
            set_json(job, attribute, value)
        else:
            setattr(job, attribute, value)

    changed = current != target.value
    job.stage = target.value
    session.commit()

    if not changed:
        return job

    logger.info("Import job %s: %s -> %s", job.id, current, target.value)
    task_type = task_for_stage(target)
    if task_type:
        context.enqueue(task_type, {"import_job_id": job.id, "batch_number": 0})
    if target in TERMINAL_STAGES:
        update_file_status(session, job.import_file_id)
    return job


def start_import_job(session: Session, job: ImportJob, context: PipelineContext) -> ImportJob:
    return transition_stage(session, job, ProcessingStage.ANALYZE_DUPLICATES, context)


def fail_job(
    session: Session,
    job: ImportJob,
    message: str,
    context: PipelineContext,
    *,
    stage: Optional[str] = None,
) -> ImportJob:
    """Record ``message`` on the job and move it to FAILED."""
    if is_terminal(job.stage):
        logger.info("Import job %s already terminal (%s); not failing again", job.id, job.stage)
        return job

    append_job_errors(job, [{"row": 0, "stage": stage or job.stage, "error": message}])
    job.error_message = message
    job.completed_at = _utcnow()
    logger.error("Import job %s failed during %s: %s", job.id, stage or job.stage, message)
    return transition_stage(session, job, ProcessingStage.FAILED, context)


def complete_job(
    session: Session,
    job: ImportJob,
    results: Dict[str, Any],
    context: PipelineContext,
) -> ImportJob:
    """Store final results, charge the owner's usage, and move to COMPLETED."""
    owner = None
    import_file = session.get(ImportFile, job.import_file_id)
    if import_file is not None and import_file.owner_id is not None:
        owner = session.get(User, import_file.owner_id)
    quota_service = QuotaService(session)
    quota_service.increment_usage(owner, UsageType.TOTAL_EVENTS_CREATED, int(results.get("events_created", 0)))
    quota_service.increment_usage(owner, UsageType.IMPORT_JOBS_COMPLETED, 1)

    job.completed_at = _utcnow()
    return transition_stage(session, job, ProcessingStage.COMPLETED, context, results=results)


def update_file_status(session: Session, import_file_id: str) -> Optional[str]:
    """
    Recompute a file's aggregate status from its sibling jobs.

    Completed only when every job is COMPLETED; failed once no job is still
    running and at least one FAILED.
    """
    import_file = session.get(ImportFile, import_file_id)
    if import_file is None:
        return None

    stages: List[str] = [stage for (stage,) in session.query(ImportJob.stage).filter(
        ImportJob.import_file_id == import_file_id
    )]
    terminal = [stage for stage in stages if is_terminal(stage)]
    import_file.jobs_completed = len(terminal)

    if stages and len(terminal) == len(stages):
        failed = sum(1 for stage in stages if stage == ProcessingStage.FAILED.value)
        if failed:
            import_file.status = FILE_STATUS_FAILED
            import_file.error_message = import_file.error_message or f"{failed} of {len(stages)} import jobs failed"
        else:
            import_file.status = FILE_STATUS_COMPLETED
        import_file.completed_at = _utcnow()
        logger.info("Import file %s finished with status %s", import_file_id, import_file.status)

    session.commit()
    return import_file.status


def fail_import_file(session: Session, import_file: ImportFile, message: str) -> None:
    import_file.status = FILE_STATUS_FAILED
    import_file.error_message = message
    import_file.completed_at = _utcnow()
    session.commit()
    logger.error("Import file %s failed: %s", import_file.id, message)


# --- approval ---------------------------------------------------------------

def approve_import_job(
    session: Session,
    job_id: str,
    context: PipelineContext,
    *,
    approved_by_id: Optional[int] = None,
    notes: Optional[str] = None,
) -> ImportJob:
    job = session.get(ImportJob, job_id)
    if job is None:
        raise ResourceNotFoundError("Import job", job_id)
    if job.stage != ProcessingStage.AWAIT_APPROVAL.value:
        raise InvalidStageTransitionError(
            job.stage,
            ProcessingStage.CREATE_SCHEMA_VERSION.value,
            f"Import job {job_id} is not awaiting approval (stage: {job.stage})",
        )

    update_job_json(
        job,
        "schema_validation",
        approved=True,
        approved_by_id=approved_by_id,
        approved_at=_utcnow().isoformat(),
        approval_notes=notes,
    )
    logger.info("Import job %s approved by %s", job_id, approved_by_id or "automation")
    return transition_stage(session, job, ProcessingStage.CREATE_SCHEMA_VERSION, context)


def reject_import_job(
    session: Session,
    job_id: str,
    context: PipelineContext,
    *,
    reason: Optional[str] = None,
    rejected_by_id: Optional[int] = None,
) -> ImportJob:
    job = session.get(ImportJob, job_id)
    if job is None:
        raise ResourceNotFoundError("Import job", job_id)
    if job.stage != ProcessingStage.AWAIT_APPROVAL.value:
        raise InvalidStageTransitionError(
            job.stage,
            ProcessingStage.FAILED.value,
            f"Import job {job_id} is not awaiting approval (stage: {job.stage})",
        )

    update_job_json(job, "schema_validation", approved=False, rejected_by_id=rejected_by_id)
    message = f"Schema changes rejected{': ' + reason if reason else ''}"
    return fail_job(session, job, message, context, stage=ProcessingStage.AWAIT_APPROVAL.value)


# --- handler plumbing -------------------------------------------------------

def run_job_task(
    context: PipelineContext,
    job_id: str,
    expected_stage: ProcessingStage,
    work: Callable[[Session, ImportJob], Dict[str, Any]],
    *,
    batch_number: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Load the job, skip stale deliveries, run ``work``, and turn any failure
    into a FAILED job. Nothing raised by ``work`` escapes.
    """
    session = context.session_factory()
    try:
        job = session.get(ImportJob, job_id)
        if job is None:
            logger.error("Import job %s not found for %s task", job_id, expected_stage.value)
            return {"success": False, "error": f"Import job {job_id} not found"}

        if job.stage != expected_stage.value:
            logger.info(
                "Skipping stale %s task for job %s (current stage: %s)",
                expected_stage.value,
                job_id,
                job.stage,
            )
            return {"success": True, "skipped": True, "reason": "stale"}

        try:
            return work(session, job)
        except IntegrityError as exc:
            session.rollback()
            if batch_number is not None and batch_marker_exists(session, job_id, expected_stage.value, batch_number):
                logger.info(
                    "Batch %d of %s for job %s was completed by a concurrent delivery",
                    batch_number,
                    expected_stage.value,
                    job_id,
                )
                return {"success": True, "skipped": True, "reason": "concurrent"}
            job = session.get(ImportJob, job_id)
            fail_job(session, job, f"Database constraint violation: {exc.orig}", context, stage=expected_stage.value)
            return {"success": False, "error": str(exc.orig)}
        except Exception as exc:
            session.rollback()
            logger.exception("Stage %s failed for job %s", expected_stage.value, job_id)
            job = session.get(ImportJob, job_id)
            if job is not None:
                fail_job(session, job, str(exc), context, stage=expected_stage.value)
            return {"success": False, "error": str(exc)}
    finally:
        session.close()


def continue_batches(
    context: PipelineContext,
    task_type: str,
    job_id: str,
    next_batch_number: int,
) -> None:
    context.enqueue(task_type, {"import_job_id": job_id, "batch_number": next_batch_number})


def resume_after_redelivery(
    session: Session,
    context: PipelineContext,
    job: ImportJob,
    stage: ProcessingStage,
    batch_number: int,
) -> Dict[str, Any]:
    """
    A batch whose marker already exists does no work. Re-enqueue its
    continuation only when the next batch has not been recorded, in case
    the earlier delivery died between commit and enqueue.
    """
    logger.info("Batch %d of %s for job %s already processed; skipping", batch_number, stage.value, job.id)
    if not batch_marker_exists(session, job.id, stage.value, batch_number + 1):
        continue_batches(context, task_for_stage(stage), job.id, batch_number + 1)
    return {"success": True, "skipped": True, "reason": "already_processed", "batch_number": batch_number}
