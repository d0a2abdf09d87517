"""
Dataset configuration models.

Datasets persist these as JSON columns; the pipeline validates them with the
models below each time a stage runs, so a bad config fails loudly instead of
being interpreted loosely.
"""
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator


class IdStrategyConfig(BaseModel):
    """How an event's unique ID is derived from its row."""
    type: Literal["auto", "external", "computed", "hybrid"] = "auto"
    external_id_path: Optional[str] = None
    computed_id_fields: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_required_paths(self):
        if self.type == "external" and not self.external_id_path:
            raise ValueError("external id strategy requires external_id_path")
        if self.type == "computed" and not self.computed_id_fields:
            raise ValueError("computed id strategy requires computed_id_fields")
        if self.type == "hybrid" and not (self.external_id_path or self.computed_id_fields):
            raise ValueError("hybrid id strategy requires external_id_path or computed_id_fields")
        return self


class DeduplicationConfig(BaseModel):
    enabled: bool = True
    strategy: Literal["skip", "update", "version"] = "skip"


class SchemaConfig(BaseModel):
    locked: bool = False
    auto_grow: bool = True
    auto_approve_non_breaking: bool = False
    allow_transformations: bool = True
    max_depth: int = Field(default=3, ge=1, le=10)
    enum_threshold: int = Field(default=50, ge=1)
    enum_mode: Literal["count", "percentage"] = "count"
    processing_mode: Optional[Literal["strict", "additive", "flexible"]] = None


class FieldMappingOverrides(BaseModel):
    title_path: Optional[str] = None
    description_path: Optional[str] = None
    location_name_path: Optional[str] = None
    timestamp_path: Optional[str] = None
    latitude_path: Optional[str] = None
    longitude_path: Optional[str] = None
    location_path: Optional[str] = None


# --- Transforms -------------------------------------------------------------

class _TransformBase(BaseModel):
    id: Optional[str] = None
    active: bool = True


class RenameTransform(_TransformBase):
    type: Literal["rename"] = "rename"
    from_field: str
    to_field: str

    @model_validator(mode="after")
    def _distinct_fields(self):
        if self.from_field == self.to_field:
            raise ValueError("rename requires different source and target fields")
        return self


class DateParseTransform(_TransformBase):
    type: Literal["date-parse"] = "date-parse"
    from_field: str
    to_field: Optional[str] = None
    input_format: Optional[str] = None
    output_format: Optional[str] = None
    timezone: Optional[str] = None


class StringOpTransform(_TransformBase):
    type: Literal["string-op"] = "string-op"
    from_field: str
    to_field: Optional[str] = None
    operation: Literal["uppercase", "lowercase", "titlecase", "trim", "replace", "regex-replace"]
    pattern: Optional[str] = None
    replacement: str = ""

    @model_validator(mode="after")
    def _pattern_required(self):
        if self.operation in ("replace", "regex-replace") and not self.pattern:
            raise ValueError(f"string-op '{self.operation}' requires a pattern")
        return self


class ConcatenateTransform(_TransformBase):
    type: Literal["concatenate"] = "concatenate"
    from_fields: List[str]
    to_field: str
    separator: str = " "

    @field_validator("from_fields")
    @classmethod
    def _at_least_two(cls, value: List[str]) -> List[str]:
        if len(value) < 2:
            raise ValueError("concatenate requires at least two source fields")
        return value


class SplitTransform(_TransformBase):
    type: Literal["split"] = "split"
    from_field: str
    to_fields: List[str]
    delimiter: str = ","

    @field_validator("to_fields")
    @classmethod
    def _at_least_one(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("split requires at least one target field")
        return value

    @field_validator("delimiter")
    @classmethod
    def _non_empty_delimiter(cls, value: str) -> str:
        if value == "":
            raise ValueError("split delimiter cannot be empty")
        return value


class TypeCastTransform(_TransformBase):
    type: Literal["type-cast"] = "type-cast"
    from_field: str
    from_type: Literal["string", "number", "boolean", "date", "array", "object"]
    to_type: Literal["string", "number", "boolean", "date"]
    strategy: Literal["parse", "cast", "reject"] = "parse"

    @model_validator(mode="after")
    def _types_differ(self):
        if self.from_type == self.to_type:
            raise ValueError("type-cast requires different source and target types")
        return self


TransformConfig = Annotated[
    Union[
        RenameTransform,
        DateParseTransform,
        StringOpTransform,
        ConcatenateTransform,
        SplitTransform,
        TypeCastTransform,
    ],
    Field(discriminator="type"),
]


# --- API payloads -----------------------------------------------------------

class DatasetCreateRequest(BaseModel):
    name: str
    owner_id: Optional[int] = None
    id_strategy: IdStrategyConfig = IdStrategyConfig()
    deduplication_config: DeduplicationConfig = DeduplicationConfig()
    schema_config: SchemaConfig = SchemaConfig()
    transforms: List[TransformConfig] = Field(default_factory=list)
    field_mapping_overrides: FieldMappingOverrides = FieldMappingOverrides()

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("dataset name cannot be blank")
        return value.strip()


class DatasetInfo(BaseModel):
    id: int
    name: str
    owner_id: Optional[int] = None
    id_strategy: Dict[str, Any]
    deduplication_config: Dict[str, Any]
    schema_config: Dict[str, Any]
    transforms: List[Dict[str, Any]]
    field_mapping_overrides: Dict[str, Any]
    created_at: Optional[datetime] = None


class DatasetResponse(BaseModel):
    success: bool
    dataset: DatasetInfo


class DatasetSchemaInfo(BaseModel):
    id: int
    dataset_id: int
    version_number: int
    schema_: Dict[str, Any] = Field(alias="schema")
    field_metadata: Dict[str, Any]
    auto_approved: bool
    approved_by_id: Optional[int] = None
    import_sources: List[Any]
    created_at: Optional[datetime] = None

    model_config = {"populate_by_name": True}


class DatasetSchemaListResponse(BaseModel):
    success: bool
    schemas: List[DatasetSchemaInfo]
