"""
Endpoints for registering uploaded files with the import pipeline.
"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.api.dependencies import drain_inline_queue, get_pipeline
from app.api.schemas.imports import ImportFileCreateRequest, ImportFileInfo, ImportFileResponse
from app.db.session import get_db
from app.domain.imports.dataset_detection import register_import_file
from app.domain.imports.jobs import get_import_file, serialize_import_file
from app.domain.imports.orchestrator import PipelineContext

router = APIRouter(tags=["import-files"])


@router.post("/import-files", response_model=ImportFileResponse, status_code=201)
def create_import_file(
    request: ImportFileCreateRequest,
    db: Session = Depends(get_db),
    pipeline: PipelineContext = Depends(get_pipeline),
):
    import_file = register_import_file(
        db,
        pipeline,
        original_name=request.original_name,
        storage_path=request.storage_path,
        owner_id=request.owner_id,
        processing_options=request.processing_options.model_dump(exclude_none=True),
    )
    drain_inline_queue(pipeline)
    db.refresh(import_file)
    return ImportFileResponse(success=True, file=ImportFileInfo(**serialize_import_file(import_file)))


@router.get("/import-files/{file_id}", response_model=ImportFileResponse)
def get_import_file_endpoint(file_id: str, db: Session = Depends(get_db)):
    import_file = get_import_file(db, file_id)
    if not import_file:
        raise HTTPException(status_code=404, detail="Import file not found")
    return ImportFileResponse(success=True, file=ImportFileInfo(**serialize_import_file(import_file)))
