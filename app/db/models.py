"""
ORM models for the import pipeline.

ImportFile fans out into one ImportJob per sheet; each job materializes
Events into a Dataset and may publish a new DatasetSchema version.
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from app.db.session import Base, get_engine


def _utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


class User(Base):
    """Import owner; carries the trust level quotas are derived from."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=True)
    trust_level = Column(Integer, nullable=False, default=2)
    quota_overrides = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=_utcnow)


class UserUsage(Base):
    __tablename__ = "user_usage"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    total_events_created = Column(BigInteger, nullable=False, default=0)
    import_jobs_completed = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class Dataset(Base):
    """Target collection for materialized events plus its import configuration."""
    __tablename__ = "datasets"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False, index=True)
    owner_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    id_strategy = Column(JSON, nullable=False, default=dict)
    deduplication_config = Column(JSON, nullable=False, default=dict)
    schema_config = Column(JSON, nullable=False, default=dict)
    transforms = Column(JSON, nullable=False, default=list)
    field_mapping_overrides = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    owner = relationship("User")


class DatasetSchema(Base):
    """Immutable schema version. Only the versioning step inserts rows here."""
    __tablename__ = "dataset_schemas"
    __table_args__ = (
        UniqueConstraint("dataset_id", "version_number", name="uq_dataset_schema_version"),
    )

    id = Column(Integer, primary_key=True, index=True)
    dataset_id = Column(Integer, ForeignKey("datasets.id", ondelete="CASCADE"), nullable=False, index=True)
    version_number = Column(Integer, nullable=False)
    schema = Column(JSON, nullable=False)
    field_metadata = Column(JSON, nullable=False, default=dict)
    auto_approved = Column(Boolean, nullable=False, default=False)
    approved_by_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    import_sources = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=_utcnow)


class ImportFile(Base):
    __tablename__ = "import_files"

    id = Column(String(36), primary_key=True, default=_uuid)
    original_name = Column(String(512), nullable=False)
    storage_path = Column(Text, nullable=False)
    owner_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    status = Column(String(20), nullable=False, default="pending")
    processing_options = Column(JSON, nullable=False, default=dict)
    sheet_metadata = Column(JSON, nullable=False, default=list)
    datasets_count = Column(Integer, nullable=False, default=0)
    jobs_completed = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)
    completed_at = Column(DateTime, nullable=True)

    jobs = relationship("ImportJob", back_populates="import_file")


class ImportJob(Base):
    """Pipeline state for one sheet of one file. Stage handlers are the only writers."""
    __tablename__ = "import_jobs"

    id = Column(String(36), primary_key=True, default=_uuid)
    import_file_id = Column(String(36), ForeignKey("import_files.id", ondelete="CASCADE"), nullable=False, index=True)
    dataset_id = Column(Integer, ForeignKey("datasets.id", ondelete="CASCADE"), nullable=False, index=True)
    sheet_index = Column(Integer, nullable=False, default=0)
    stage = Column(String(40), nullable=False, default="pending", index=True)
    schema_mode = Column(String(20), nullable=True)
    progress = Column(JSON, nullable=False, default=dict)
    duplicates = Column(JSON, nullable=True)
    schema_builder_state = Column(JSON, nullable=True)
    detected_schema = Column(JSON, nullable=True)
    field_mappings = Column(JSON, nullable=False, default=dict)
    schema_validation = Column(JSON, nullable=True)
    dataset_schema_id = Column(Integer, ForeignKey("dataset_schemas.id", ondelete="SET NULL"), nullable=True)
    schema_version_number = Column(Integer, nullable=True)
    geocoding_results = Column(JSON, nullable=False, default=dict)
    errors = Column(JSON, nullable=False, default=list)
    results = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)
    completed_at = Column(DateTime, nullable=True)

    import_file = relationship("ImportFile", back_populates="jobs")
    dataset = relationship("Dataset")


class Event(Base):
    """One materialized record."""
    __tablename__ = "events"
    __table_args__ = (
        UniqueConstraint("dataset_id", "unique_id", "version", name="uq_event_unique_id_version"),
        UniqueConstraint("import_job_id", "source_row_number", name="uq_event_job_row"),
    )

    id = Column(Integer, primary_key=True, index=True)
    dataset_id = Column(Integer, ForeignKey("datasets.id", ondelete="CASCADE"), nullable=False, index=True)
    import_job_id = Column(String(36), ForeignKey("import_jobs.id", ondelete="SET NULL"), nullable=True, index=True)
    last_import_job_id = Column(String(36), nullable=True, index=True)
    source_row_number = Column(Integer, nullable=True)
    unique_id = Column(String(512), nullable=False, index=True)
    version = Column(Integer, nullable=False, default=1)
    data = Column(JSON, nullable=False)
    event_timestamp = Column(DateTime(timezone=True), nullable=False)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    coordinate_source = Column(JSON, nullable=False, default=dict)
    location_name = Column(Text, nullable=True)
    validation_status = Column(String(20), nullable=False, default="pending")
    validation_errors = Column(JSON, nullable=False, default=list)
    transformations = Column(JSON, nullable=False, default=list)
    schema_version_number = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class ImportBatchMarker(Base):
    """Completion marker for one batch of one stage; makes redelivered batch tasks no-ops."""
    __tablename__ = "import_batch_markers"
    __table_args__ = (
        UniqueConstraint("import_job_id", "stage", "batch_number", name="uq_import_batch_marker"),
    )

    id = Column(Integer, primary_key=True)
    import_job_id = Column(String(36), ForeignKey("import_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    stage = Column(String(40), nullable=False)
    batch_number = Column(Integer, nullable=False)
    rows_processed = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=_utcnow)


def create_tables(engine=None) -> None:
    """Create all pipeline tables if they do not exist."""
    Base.metadata.create_all(bind=engine or get_engine())
