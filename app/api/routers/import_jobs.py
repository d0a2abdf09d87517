"""
Endpoints for tracking import jobs and resolving schema approvals.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.api.dependencies import drain_inline_queue, get_pipeline
from app.api.schemas.imports import (
    ApproveImportJobRequest,
    ImportJobInfo,
    ImportJobListResponse,
    ImportJobResponse,
    RejectImportJobRequest,
)
from app.db.session import get_db
from app.domain.imports.jobs import get_import_job, list_import_jobs, serialize_import_job
from app.domain.imports.orchestrator import (
    PipelineContext,
    ResourceNotFoundError,
    approve_import_job,
    reject_import_job,
)
from app.domain.imports.stages import InvalidStageTransitionError

router = APIRouter(tags=["import-jobs"])


def _job_response(db: Session, job_id: str) -> ImportJobResponse:
    job = get_import_job(db, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    db.refresh(job)
    return ImportJobResponse(success=True, job=ImportJobInfo(**serialize_import_job(job)))


@router.get("/import-jobs/{job_id}", response_model=ImportJobResponse)
def get_import_job_endpoint(job_id: str, db: Session = Depends(get_db)):
    return _job_response(db, job_id)


@router.get("/import-jobs", response_model=ImportJobListResponse)
def list_import_jobs_endpoint(
    file_id: Optional[str] = None,
    dataset_id: Optional[int] = None,
    stage: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    jobs, total = list_import_jobs(db, file_id=file_id, dataset_id=dataset_id, stage=stage, limit=limit, offset=offset)
    return ImportJobListResponse(
        success=True,
        jobs=[ImportJobInfo(**serialize_import_job(job)) for job in jobs],
        total_count=total,
        limit=limit,
        offset=offset,
    )


@router.post("/import-jobs/{job_id}/approve", response_model=ImportJobResponse)
def approve_import_job_endpoint(
    job_id: str,
    request: ApproveImportJobRequest = ApproveImportJobRequest(),
    db: Session = Depends(get_db),
    pipeline: PipelineContext = Depends(get_pipeline),
):
    try:
        approve_import_job(db, job_id, pipeline, approved_by_id=request.approved_by_id, notes=request.notes)
    except ResourceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=exc.message)
    except InvalidStageTransitionError as exc:
        raise HTTPException(status_code=409, detail=exc.message)
    drain_inline_queue(pipeline)
    return _job_response(db, job_id)


@router.post("/import-jobs/{job_id}/reject", response_model=ImportJobResponse)
def reject_import_job_endpoint(
    job_id: str,
    request: RejectImportJobRequest = RejectImportJobRequest(),
    db: Session = Depends(get_db),
    pipeline: PipelineContext = Depends(get_pipeline),
):
    try:
        reject_import_job(db, job_id, pipeline, reason=request.reason, rejected_by_id=request.rejected_by_id)
    except ResourceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=exc.message)
    except InvalidStageTransitionError as exc:
        raise HTTPException(status_code=409, detail=exc.message)
    return _job_response(db, job_id)
