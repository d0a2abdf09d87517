"""
Endpoints for dataset configuration and schema history.
"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.api.schemas.datasets import (
    DatasetCreateRequest,
    DatasetInfo,
    DatasetResponse,
    DatasetSchemaInfo,
    DatasetSchemaListResponse,
)
from app.db.models import Dataset
from app.db.session import get_db
from app.domain.imports.schema_versioning import list_schema_versions

router = APIRouter(tags=["datasets"])


def _dataset_info(dataset: Dataset) -> DatasetInfo:
    return DatasetInfo(
        id=dataset.id,
        name=dataset.name,
        owner_id=dataset.owner_id,
        id_strategy=dataset.id_strategy or {},
        deduplication_config=dataset.deduplication_config or {},
        schema_config=dataset.schema_config or {},
        transforms=dataset.transforms or [],
        field_mapping_overrides=dataset.field_mapping_overrides or {},
        created_at=dataset.created_at,
    )


@router.post("/datasets", response_model=DatasetResponse, status_code=201)
def create_dataset(request: DatasetCreateRequest, db: Session = Depends(get_db)):
    dataset = Dataset(
        name=request.name,
        owner_id=request.owner_id,
        id_strategy=request.id_strategy.model_dump(),
        deduplication_config=request.deduplication_config.model_dump(),
        schema_config=request.schema_config.model_dump(exclude_none=True),
        transforms=[transform.model_dump(exclude_none=True) for transform in request.transforms],
        field_mapping_overrides=request.field_mapping_overrides.model_dump(exclude_none=True),
    )
    db.add(dataset)
    db.commit()
    db.refresh(dataset)
    return DatasetResponse(success=True, dataset=_dataset_info(dataset))


@router.get("/datasets/{dataset_id}", response_model=DatasetResponse)
def get_dataset(dataset_id: int, db: Session = Depends(get_db)):
    dataset = db.get(Dataset, dataset_id)
    if not dataset:
        raise HTTPException(status_code=404, detail="Dataset not found")
    return DatasetResponse(success=True, dataset=_dataset_info(dataset))


@router.get("/datasets/{dataset_id}/schemas", response_model=DatasetSchemaListResponse)
def list_dataset_schemas(dataset_id: int, db: Session = Depends(get_db)):
    if not db.get(Dataset, dataset_id):
        raise HTTPException(status_code=404, detail="Dataset not found")
    versions = list_schema_versions(db, dataset_id)
    return DatasetSchemaListResponse(
        success=True,
        schemas=[
            DatasetSchemaInfo(
                id=version.id,
                dataset_id=version.dataset_id,
                version_number=version.version_number,
                schema=version.schema,
                field_metadata=version.field_metadata or {},
                auto_approved=version.auto_approved,
                approved_by_id=version.approved_by_id,
                import_sources=version.import_sources or [],
                created_at=version.created_at,
            )
            for version in versions
        ],
    )
