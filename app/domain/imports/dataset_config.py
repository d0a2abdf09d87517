"""
Typed views over a Dataset's JSON configuration columns.
"""
from typing import List

from app.api.schemas.datasets import (
    DeduplicationConfig,
    FieldMappingOverrides,
    IdStrategyConfig,
    SchemaConfig,
    TransformConfig,
)
from app.db.models import Dataset
from app.domain.imports.transforms import apply_transforms, build_transforms


def id_strategy(dataset: Dataset) -> IdStrategyConfig:
    return IdStrategyConfig.model_validate(dataset.id_strategy or {})


def deduplication_config(dataset: Dataset) -> DeduplicationConfig:
    return DeduplicationConfig.model_validate(dataset.deduplication_config or {})


def schema_config(dataset: Dataset) -> SchemaConfig:
    return SchemaConfig.model_validate(dataset.schema_config or {})


def field_mapping_overrides(dataset: Dataset) -> FieldMappingOverrides:
    return FieldMappingOverrides.model_validate(dataset.field_mapping_overrides or {})


def active_transforms(dataset: Dataset) -> List[TransformConfig]:
    """Dataset transforms to run, or none when the schema config disables them."""
    if not schema_config(dataset).allow_transformations:
        return []
    return build_transforms(dataset.transforms)


def transformed_rows(rows, transforms):
    """Rows after ``transforms``; transform errors are ignored here."""
    if not transforms:
        return list(rows)
    return [apply_transforms(row, transforms).row for row in rows]
