"""
Turn transformed rows into Event records.

Coordinates come from the mapped latitude/longitude columns when they are
valid, then from the job's geocoding results, otherwise the event has none.
Timestamps come from the mapped field, then a list of common column names,
and fall back to the import time.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from app.api.schemas.datasets import DeduplicationConfig, IdStrategyConfig, TransformConfig
from app.db.models import Event, ImportJob
from app.domain.imports.coordinates import validate_coordinates
from app.domain.imports.duplicates import rows_to_skip
from app.domain.imports.geocoding import normalize_location
from app.domain.imports.id_generation import UniqueIdError, generate_unique_id
from app.domain.imports.transforms import apply_transforms
from app.utils.date import parse_flexible_date
from app.utils.field_paths import get_value_at_path
from app.utils.serialization import make_json_safe

logger = logging.getLogger(__name__)

STAGE = "create-events"

TIMESTAMP_FALLBACK_FIELDS = ("timestamp", "date", "datetime", "created_at", "event_date", "event_time")

COORDINATE_SOURCE_IMPORT = "import"
COORDINATE_SOURCE_GEOCODED = "geocoded"
COORDINATE_SOURCE_NONE = "none"


def extract_coordinates(
    row: Dict[str, Any],
    field_mappings: Dict[str, Any],
    geocoding_results: Dict[str, Any],
) -> Tuple[Optional[float], Optional[float], Dict[str, Any]]:
    lat_path = field_mappings.get("latitude_path")
    lng_path = field_mappings.get("longitude_path")
    if lat_path and lng_path:
        valid = validate_coordinates(get_value_at_path(row, lat_path), get_value_at_path(row, lng_path))
        if valid is not None:
            return valid[0], valid[1], {"type": COORDINATE_SOURCE_IMPORT, "validated": True}

    location_path = field_mappings.get("location_path")
    if location_path:
        location = normalize_location(get_value_at_path(row, location_path))
        result = geocoding_results.get(location) if location else None
        if result and result.get("coordinates"):
            coordinates = result["coordinates"]
            return (
                coordinates["lat"],
                coordinates["lng"],
                {
                    "type": COORDINATE_SOURCE_GEOCODED,
                    "confidence": result.get("confidence"),
                    "normalized_address": result.get("formatted_address"),
                    "provider": result.get("provider"),
                },
            )

    return None, None, {"type": COORDINATE_SOURCE_NONE}


def extract_timestamp(row: Dict[str, Any], field_mappings: Dict[str, Any], now: Optional[datetime] = None) -> datetime:
    candidates: List[str] = []
    if field_mappings.get("timestamp_path"):
        candidates.append(field_mappings["timestamp_path"])
    candidates.extend(name for name in TIMESTAMP_FALLBACK_FIELDS if name not in candidates)

    for path in candidates:
        value = get_value_at_path(row, path)
        if value is None or value == "":
            continue
        parsed = parse_flexible_date(value, log_context=path)
        if parsed is not None:
            return parsed
    return now or datetime.now(timezone.utc)


def extract_location_name(row: Dict[str, Any], field_mappings: Dict[str, Any]) -> Optional[str]:
    for key in ("location_name_path", "location_path"):
        path = field_mappings.get(key)
        if path:
            value = normalize_location(get_value_at_path(row, path))
            if value:
                return value
    return None


@dataclass
class BatchOutcome:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)


class EventMaterializer:
    """Creates or updates Events for one batch of one import job."""

    def __init__(
        self,
        session: Session,
        job: ImportJob,
        *,
        id_strategy: IdStrategyConfig,
        dedup_config: DeduplicationConfig,
        transforms: List[TransformConfig],
    ):
        self.session = session
        self.job = job
        self.id_strategy = id_strategy
        self.dedup_config = dedup_config
        self.transforms = transforms
        self.field_mappings = job.field_mappings or {}
        self.geocoding_results = job.geocoding_results or {}
        self.conflict_strategy = dedup_config.strategy if dedup_config.enabled else "version"
        self.skip_rows = rows_to_skip(job.duplicates, self.conflict_strategy) if dedup_config.enabled else set()

    def _existing_row_numbers(self, start_row: int, end_row: int) -> Set[int]:
        rows = (
            self.session.query(Event.source_row_number)
            .filter(
                Event.import_job_id == self.job.id,
                Event.source_row_number >= start_row,
                Event.source_row_number < end_row,
            )
            .all()
        )
        return {row_number for (row_number,) in rows}

    def _max_versions(self, unique_ids: List[str]) -> Dict[str, int]:
        if not unique_ids:
            return {}
        rows = (
            self.session.query(Event.unique_id, func.max(Event.version))
            .filter(Event.dataset_id == self.job.dataset_id, Event.unique_id.in_(unique_ids))
            .group_by(Event.unique_id)
            .all()
        )
        return {unique_id: version for unique_id, version in rows}

    def _latest_event(self, unique_id: str) -> Optional[Event]:
        return (
            self.session.query(Event)
            .filter(Event.dataset_id == self.job.dataset_id, Event.unique_id == unique_id)
            .order_by(Event.version.desc())
            .first()
        )

    def _event_values(self, result, now: datetime) -> Dict[str, Any]:
        latitude, longitude, coordinate_source = extract_coordinates(
            result.row, self.field_mappings, self.geocoding_results
        )
        return {
            "data": make_json_safe(result.row),
            "event_timestamp": extract_timestamp(result.row, self.field_mappings, now),
            "latitude": latitude,
            "longitude": longitude,
            "coordinate_source": coordinate_source,
            "location_name": extract_location_name(result.row, self.field_mappings),
            "validation_status": "invalid" if result.errors else "valid",
            "validation_errors": result.errors,
            "transformations": result.applied,
            "schema_version_number": self.job.schema_version_number,
        }

    def process_batch(self, rows: List[Dict[str, Any]], start_row: int) -> BatchOutcome:
        """Stage Events for ``rows`` on the session; the caller commits."""
        outcome = BatchOutcome()
        already_created = self._existing_row_numbers(start_row, start_row + len(rows))

        prepared = []
        for index, raw_row in enumerate(rows):
            row_number = start_row + index
            if row_number in self.skip_rows or row_number in already_created:
                outcome.skipped += 1
                continue

            result = apply_transforms(raw_row, self.transforms)
            try:
                unique_id = generate_unique_id(result.row, self.id_strategy)
            except UniqueIdError as exc:
                outcome.errors.append({"row": row_number, "stage": STAGE, "error": exc.message})
                continue
            prepared.append((row_number, unique_id, result))

        versions = self._max_versions(sorted({unique_id for _, unique_id, _ in prepared}))
        now = datetime.now(timezone.utc)

        for row_number, unique_id, result in prepared:
            for error in result.errors:
                outcome.errors.append(
                    {"row": row_number, "stage": STAGE, "error": f"Transform {error['transform']} failed: {error['error']}"}
                )

            try:
                values = self._event_values(result, now)
            except Exception as exc:
                logger.warning("Row %d of job %s could not be materialized: %s", row_number, self.job.id, exc)
                outcome.errors.append({"row": row_number, "stage": STAGE, "error": f"Could not create event: {exc}"})
                continue

            existing_version = versions.get(unique_id)
            if existing_version is not None:
                if self.conflict_strategy == "update":
                    event = self._latest_event(unique_id)
                    for attribute, value in values.items():
                        setattr(event, attribute, value)
                    event.last_import_job_id = self.job.id
                    outcome.updated += 1
                    continue
                if self.conflict_strategy == "skip":
                    # matched an event created after duplicate analysis ran
                    logger.info("Row %d: unique ID %s already exists; skipping", row_number, unique_id)
                    outcome.skipped += 1
                    continue

            version = (existing_version or 0) + 1
            versions[unique_id] = version
            self.session.add(
                Event(
                    dataset_id=self.job.dataset_id,
                    import_job_id=self.job.id,
                    last_import_job_id=self.job.id,
                    source_row_number=row_number,
                    unique_id=unique_id,
                    version=version,
                    **values,
                )
            )
            outcome.created += 1

        return outcome


def expected_new_events(job: ImportJob, dedup_config: DeduplicationConfig) -> int:
    """Events the job is about to create, used for the quota check."""
    summary = (job.duplicates or {}).get("summary") or {}
    total = summary.get("total_rows")
    if total is None:
        total = (job.progress or {}).get("total_rows") or 0
    if not dedup_config.enabled:
        return total
    skipped = summary.get("internal_duplicates", 0)
    if dedup_config.strategy in ("skip", "update"):
        skipped += summary.get("external_duplicates", 0)
    return max(total - skipped, 0)


def compute_results(session: Session, job: ImportJob, dedup_config: DeduplicationConfig) -> Dict[str, Any]:
    """Final counts, derived from stored events so redelivery cannot inflate them."""
    created = session.query(func.count(Event.id)).filter(Event.import_job_id == job.id).scalar() or 0
    updated = (
        session.query(func.count(Event.id))
        .filter(
            Event.last_import_job_id == job.id,
            or_(Event.import_job_id != job.id, Event.import_job_id.is_(None)),
        )
        .scalar()
        or 0
    )
    job_events = session.query(Event.coordinate_source).filter(
        (Event.import_job_id == job.id) | (Event.last_import_job_id == job.id)
    )
    geocoded = sum(1 for (source,) in job_events if (source or {}).get("type") == COORDINATE_SOURCE_GEOCODED)

    summary = (job.duplicates or {}).get("summary") or {}
    duplicates_skipped = summary.get("internal_duplicates", 0)
    if dedup_config.enabled and dedup_config.strategy == "skip":
        duplicates_skipped += summary.get("external_duplicates", 0)

    return {
        "total_events": created + updated,
        "events_created": created,
        "events_updated": updated,
        "duplicates_skipped": duplicates_skipped,
        "geocoded": geocoded,
        # rows with at least one error, whichever stages reported them
        "errors": len({error.get("row") for error in job.errors or []}),
    }
