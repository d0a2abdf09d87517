"""
Import job and import file persistence helpers.
"""
import copy
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from app.db.models import ImportBatchMarker, ImportFile, ImportJob

logger = logging.getLogger(__name__)

MAX_STORED_ERRORS = 10_000


def get_import_job(session: Session, job_id: str) -> Optional[ImportJob]:
    return session.get(ImportJob, job_id)


def get_import_file(session: Session, file_id: str) -> Optional[ImportFile]:
    return session.get(ImportFile, file_id)


def list_import_jobs(
    session: Session,
    *,
    file_id: Optional[str] = None,
    dataset_id: Optional[int] = None,
    stage: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[ImportJob], int]:
    query = session.query(ImportJob)
    if file_id:
        query = query.filter(ImportJob.import_file_id == file_id)
    if dataset_id is not None:
        query = query.filter(ImportJob.dataset_id == dataset_id)
    if stage:
        query = query.filter(ImportJob.stage == stage)

    total = query.with_entities(func.count(ImportJob.id)).scalar() or 0
    jobs = query.order_by(ImportJob.created_at.desc(), ImportJob.id).offset(offset).limit(limit).all()
    return jobs, total


def set_json(entity, attribute: str, value: Any) -> None:
    """Assign a JSON column and force SQLAlchemy to persist it."""
    setattr(entity, attribute, value)
    flag_modified(entity, attribute)


def append_job_errors(job: ImportJob, errors: Iterable[Dict[str, Any]]) -> int:
    """
    Append row errors to ``job.errors``, skipping entries already present.

    Redelivered batches therefore never double an error. Returns the number
    of newly stored errors.
    """
    existing = list(job.errors or [])
    seen = {(e.get("stage"), e.get("row"), e.get("error")) for e in existing}
    added = 0
    for error in errors:
        key = (error.get("stage"), error.get("row"), error.get("error"))
        if key in seen:
            continue
        if len(existing) >= MAX_STORED_ERRORS:
            logger.warning("Job %s reached the stored error limit (%d)", job.id, MAX_STORED_ERRORS)
            break
        seen.add(key)
        existing.append(error)
        added += 1
    if added:
        set_json(job, "errors", existing)
    return added


def update_job_json(job: ImportJob, attribute: str, **changes: Any) -> Dict[str, Any]:
    value = copy.deepcopy(getattr(job, attribute) or {})
    value.update(changes)
    set_json(job, attribute, value)
    return value


def batch_marker_exists(session: Session, job_id: str, stage: str, batch_number: int) -> bool:
    return (
        session.query(ImportBatchMarker.id)
        .filter(
            ImportBatchMarker.import_job_id == job_id,
            ImportBatchMarker.stage == stage,
            ImportBatchMarker.batch_number == batch_number,
        )
        .first()
        is not None
    )


def record_batch_marker(session: Session, job_id: str, stage: str, batch_number: int, rows_processed: int) -> None:
    session.add(
        ImportBatchMarker(
            import_job_id=job_id,
            stage=stage,
            batch_number=batch_number,
            rows_processed=rows_processed,
        )
    )


def serialize_import_job(job: ImportJob) -> Dict[str, Any]:
    return {
        "id": job.id,
        "import_file_id": job.import_file_id,
        "dataset_id": job.dataset_id,
        "sheet_index": job.sheet_index,
        "stage": job.stage,
        "schema_mode": job.schema_mode,
        "progress": job.progress or {},
        "duplicates": job.duplicates,
        "detected_schema": job.detected_schema,
        "field_mappings": job.field_mappings or {},
        "schema_validation": job.schema_validation,
        "schema_version_number": job.schema_version_number,
        "errors": job.errors or [],
        "results": job.results,
        "error_message": job.error_message,
        "created_at": job.created_at,
        "updated_at": job.updated_at,
        "completed_at": job.completed_at,
    }


def serialize_import_file(import_file: ImportFile) -> Dict[str, Any]:
    return {
        "id": import_file.id,
        "original_name": import_file.original_name,
        "storage_path": import_file.storage_path,
        "owner_id": import_file.owner_id,
        "status": import_file.status,
        "processing_options": import_file.processing_options or {},
        "sheet_metadata": import_file.sheet_metadata or [],
        "datasets_count": import_file.datasets_count,
        "jobs_completed": import_file.jobs_completed,
        "error_message": import_file.error_message,
        "created_at": import_file.created_at,
        "completed_at": import_file.completed_at,
    }
