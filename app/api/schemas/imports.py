"""
Request and response models for import files and import jobs.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class SheetMapping(BaseModel):
    sheet_identifier: Union[int, str]
    dataset_id: Optional[int] = None
    skip_if_missing: bool = False


class DatasetMapping(BaseModel):
    mapping_type: Literal["single", "multiple"] = "single"
    dataset_id: Optional[int] = None
    sheet_mappings: List[SheetMapping] = Field(default_factory=list)
    skip_if_missing: bool = False


class ProcessingOptions(BaseModel):
    dataset_mapping: Optional[DatasetMapping] = None
    dataset_name: Optional[str] = None
    schema_mode: Optional[Literal["strict", "additive", "flexible"]] = None


class ImportFileCreateRequest(BaseModel):
    """Register a file that is already in upload storage."""
    original_name: str
    storage_path: str
    owner_id: Optional[int] = None
    processing_options: ProcessingOptions = ProcessingOptions()


class ImportFileInfo(BaseModel):
    id: str
    original_name: str
    storage_path: str
    owner_id: Optional[int] = None
    status: str
    processing_options: Dict[str, Any] = Field(default_factory=dict)
    sheet_metadata: List[Dict[str, Any]] = Field(default_factory=list)
    datasets_count: int = 0
    jobs_completed: int = 0
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ImportFileResponse(BaseModel):
    success: bool
    file: ImportFileInfo


class ImportJobInfo(BaseModel):
    """Pipeline state of one sheet import."""
    id: str
    import_file_id: str
    dataset_id: int
    sheet_index: int = 0
    stage: str
    schema_mode: Optional[str] = None
    progress: Dict[str, Any] = Field(default_factory=dict)
    duplicates: Optional[Dict[str, Any]] = None
    detected_schema: Optional[Dict[str, Any]] = None
    field_mappings: Dict[str, Any] = Field(default_factory=dict)
    schema_validation: Optional[Dict[str, Any]] = None
    schema_version_number: Optional[int] = None
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    results: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ImportJobResponse(BaseModel):
    success: bool
    job: ImportJobInfo


class ImportJobListResponse(BaseModel):
    success: bool
    jobs: List[ImportJobInfo]
    total_count: int
    limit: int
    offset: int


class ApproveImportJobRequest(BaseModel):
    approved_by_id: Optional[int] = None
    notes: Optional[str] = None


class RejectImportJobRequest(BaseModel):
    rejected_by_id: Optional[int] = None
    reason: Optional[str] = None
