"""
Publishing DatasetSchema versions.

``create_schema_version`` is the only code path that inserts DatasetSchema
rows. Version numbers are ``max + 1`` per dataset; the unique constraint on
(dataset_id, version_number) turns a concurrent publisher into a retry.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.db.models import DatasetSchema
from app.domain.imports.exceptions import ImportPipelineError

logger = logging.getLogger(__name__)

MAX_VERSION_ATTEMPTS = 3


class SchemaVersionConflictError(ImportPipelineError):
    """Raised when a schema version number keeps colliding with concurrent publishers."""

    def __init__(self, dataset_id: int, attempts: int):
        self.dataset_id = dataset_id
        self.attempts = attempts
        self.message = f"Could not allocate a schema version for dataset {dataset_id} after {attempts} attempts"
        super().__init__(self.message)


def get_latest_schema(session: Session, dataset_id: int) -> Optional[DatasetSchema]:
    return (
        session.query(DatasetSchema)
        .filter(DatasetSchema.dataset_id == dataset_id)
        .order_by(DatasetSchema.version_number.desc())
        .first()
    )


def list_schema_versions(session: Session, dataset_id: int) -> List[DatasetSchema]:
    return (
        session.query(DatasetSchema)
        .filter(DatasetSchema.dataset_id == dataset_id)
        .order_by(DatasetSchema.version_number.asc())
        .all()
    )


def next_version_number(session: Session, dataset_id: int) -> int:
    current = (
        session.query(func.max(DatasetSchema.version_number))
        .filter(DatasetSchema.dataset_id == dataset_id)
        .scalar()
    )
    return (current or 0) + 1


def create_schema_version(
    session: Session,
    dataset_id: int,
    schema: Dict[str, Any],
    field_metadata: Dict[str, Any],
    *,
    auto_approved: bool,
    approved_by_id: Optional[int] = None,
    import_sources: Optional[List[Dict[str, Any]]] = None,
) -> DatasetSchema:
    """
    Add the next schema version for ``dataset_id``; the caller commits.

    Each attempt runs in a savepoint so a collision only rolls back the
    insert, not the caller's pending changes.
    """
    for attempt in range(1, MAX_VERSION_ATTEMPTS + 1):
        version_number = next_version_number(session, dataset_id)
        record = DatasetSchema(
            dataset_id=dataset_id,
            version_number=version_number,
            schema=schema,
            field_metadata=field_metadata or {},
            auto_approved=auto_approved,
            approved_by_id=approved_by_id,
            import_sources=import_sources or [],
        )
        try:
            with session.begin_nested():
                session.add(record)
        except IntegrityError:
            logger.warning(
                "Schema version %d for dataset %s was taken (attempt %d/%d)",
                version_number,
                dataset_id,
                attempt,
                MAX_VERSION_ATTEMPTS,
            )
            continue

        logger.info(
            "Created schema version %d for dataset %s (%s)",
            version_number,
            dataset_id,
            "auto-approved" if auto_approved else f"approved by {approved_by_id}",
        )
        return record

    raise SchemaVersionConflictError(dataset_id, MAX_VERSION_ATTEMPTS)
