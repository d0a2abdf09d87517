"""
Task handlers for each pipeline stage.

Every handler takes ``(context, payload)`` and runs its work inside
``run_job_task``, which skips stale deliveries and turns exceptions into a
FAILED job. Batch stages record an ImportBatchMarker in the same commit as
the batch, then either enqueue the next batch or advance the stage.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.db.models import Dataset, ImportFile, ImportJob, User
from app.domain.imports.coordinates import validate_coordinates
from app.domain.imports.dataset_config import (
    active_transforms,
    deduplication_config,
    field_mapping_overrides,
    id_strategy,
    schema_config,
    transformed_rows,
)
from app.domain.imports.duplicates import (
    analyze_file,
    disabled_result,
    find_external_duplicates,
    rows_to_skip,
)
from app.domain.imports.event_materializer import (
    EventMaterializer,
    compute_results,
    expected_new_events,
)
from app.domain.imports.field_mapping import detect_field_mappings
from app.domain.imports.geocoding import geocode_locations, normalize_location
from app.domain.imports.jobs import (
    append_job_errors,
    batch_marker_exists,
    record_batch_marker,
    set_json,
)
from app.domain.imports.orchestrator import (
    PipelineContext,
    ResourceNotFoundError,
    complete_job,
    continue_batches,
    fail_job,
    resume_after_redelivery,
    run_job_task,
    transition_stage,
)
from app.domain.imports.processors.batch_reader import read_batch, resolve_storage_path
from app.domain.imports.progress import (
    complete_stage,
    record_batch_progress,
    skip_stage,
    start_stage,
)
from app.domain.imports.quotas import QuotaService
from app.domain.imports.schema_builder import ProgressiveSchemaBuilder, SchemaBuilderConfig
from app.domain.imports.schema_comparison import compare_schemas, decide_approval
from app.domain.imports.schema_versioning import create_schema_version, get_latest_schema
from app.domain.imports.stages import ProcessingStage, task_for_stage
from app.utils.field_paths import get_value_at_path

logger = logging.getLogger(__name__)


# --- shared lookups ---------------------------------------------------------

def _dataset(session: Session, job: ImportJob) -> Dataset:
    dataset = session.get(Dataset, job.dataset_id)
    if dataset is None:
        raise ResourceNotFoundError("Dataset", job.dataset_id)
    return dataset


def _import_file(session: Session, job: ImportJob) -> ImportFile:
    import_file = session.get(ImportFile, job.import_file_id)
    if import_file is None:
        raise ResourceNotFoundError("Import file", job.import_file_id)
    return import_file


def _source_path(session: Session, job: ImportJob) -> str:
    return resolve_storage_path(_import_file(session, job).storage_path)


def _total_rows(job: ImportJob) -> int:
    return int((job.progress or {}).get("total_rows") or 0)


def _read_window(path: str, job: ImportJob, batch_number: int, batch_size: int) -> List[Dict[str, Any]]:
    return read_batch(path, start_row=batch_number * batch_size, limit=batch_size, sheet_index=job.sheet_index)


def _skipped_rows(job: ImportJob, dataset: Dataset) -> set:
    dedup = deduplication_config(dataset)
    if not dedup.enabled:
        return set()
    return rows_to_skip(job.duplicates, dedup.strategy)


def _rows_excluded_from_schema(job: ImportJob, dataset: Dataset) -> set:
    """Internal and external duplicates, whatever the conflict strategy."""
    if not deduplication_config(dataset).enabled:
        return set()
    return rows_to_skip(job.duplicates, "skip")


# --- analyze-duplicates -----------------------------------------------------

def handle_analyze_duplicates(context: PipelineContext, payload: Dict[str, Any]) -> Dict[str, Any]:
    stage = ProcessingStage.ANALYZE_DUPLICATES

    def work(session: Session, job: ImportJob) -> Dict[str, Any]:
        dataset = _dataset(session, job)
        dedup = deduplication_config(dataset)
        total_rows = _total_rows(job)
        logger.info("Analyzing duplicates for job %s (dataset %s)", job.id, dataset.id)

        if not dedup.enabled:
            logger.info("Deduplication disabled for dataset %s; skipping analysis", dataset.id)
            skip_stage(job, stage)
            transition_stage(session, job, ProcessingStage.DETECT_SCHEMA, context, duplicates=disabled_result(total_rows))
            return {"success": True, "skipped": True}

        start_stage(job, stage, total_rows)
        path = _source_path(session, job)
        strategy = id_strategy(dataset)
        analysis = analyze_file(
            lambda start_row, limit: read_batch(path, start_row=start_row, limit=limit, sheet_index=job.sheet_index),
            context.duplicate_analysis_batch_size,
            strategy,
            active_transforms(dataset),
        )
        analysis.external = find_external_duplicates(
            session, dataset.id, analysis.unique_id_map, context.duplicate_query_chunk_size
        )

        append_job_errors(
            job, [{"row": error["row"], "stage": stage.value, "error": error["error"]} for error in analysis.errors]
        )
        record_batch_progress(job, stage, analysis.total_rows)
        complete_stage(job, stage)
        summary = analysis.summary()
        transition_stage(
            session, job, ProcessingStage.DETECT_SCHEMA, context, duplicates=analysis.to_dict(strategy.type)
        )
        logger.info("Duplicate analysis for job %s: %s", job.id, summary)
        return {"success": True, **summary}

    return run_job_task(context, payload["import_job_id"], stage, work)


# --- detect-schema ----------------------------------------------------------

def handle_detect_schema(context: PipelineContext, payload: Dict[str, Any]) -> Dict[str, Any]:
    stage = ProcessingStage.DETECT_SCHEMA
    batch_number = int(payload.get("batch_number") or 0)

    def work(session: Session, job: ImportJob) -> Dict[str, Any]:
        if batch_marker_exists(session, job.id, stage.value, batch_number):
            return resume_after_redelivery(session, context, job, stage, batch_number)

        dataset = _dataset(session, job)
        if batch_number == 0:
            start_stage(job, stage, _total_rows(job))
        if batch_number > 0 and job.schema_builder_state:
            builder = ProgressiveSchemaBuilder.from_snapshot(job.schema_builder_state)
        else:
            builder = ProgressiveSchemaBuilder(config=SchemaBuilderConfig.from_settings(dataset.schema_config))

        batch_size = context.schema_detection_batch_size
        start_row = batch_number * batch_size
        rows = _read_window(_source_path(session, job), job, batch_number, batch_size)
        skip = _rows_excluded_from_schema(job, dataset)
        kept = [row for offset, row in enumerate(rows) if start_row + offset not in skip]

        if rows:
            builder.process_batch(transformed_rows(kept, active_transforms(dataset)))
            set_json(job, "schema_builder_state", builder.to_snapshot())
            record_batch_marker(session, job.id, stage.value, batch_number, len(rows))
            record_batch_progress(job, stage, len(rows))
            logger.info(
                "Schema detection batch %d for job %s: %d rows (%d duplicates skipped)",
                batch_number,
                job.id,
                len(rows),
                len(rows) - len(kept),
            )

        if len(rows) == batch_size:
            session.commit()
            continue_batches(context, task_for_stage(stage), job.id, batch_number + 1)
            return {"success": True, "batch_number": batch_number, "rows": len(rows)}

        builder.finalize()
        schema = builder.get_schema()
        mappings = detect_field_mappings(builder.state.field_stats, field_mapping_overrides(dataset))
        complete_stage(job, stage)
        transition_stage(
            session,
            job,
            ProcessingStage.VALIDATE_SCHEMA,
            context,
            schema_builder_state=builder.to_snapshot(),
            detected_schema=schema,
            field_mappings=mappings,
        )
        logger.info(
            "Schema detected for job %s: %d fields over %d records",
            job.id,
            len(builder.state.field_stats),
            builder.state.record_count,
        )
        return {"success": True, "batch_number": batch_number, "rows": len(rows), "finished": True}

    return run_job_task(context, payload["import_job_id"], stage, work, batch_number=batch_number)


# --- validate-schema --------------------------------------------------------

def handle_validate_schema(context: PipelineContext, payload: Dict[str, Any]) -> Dict[str, Any]:
    stage = ProcessingStage.VALIDATE_SCHEMA

    def work(session: Session, job: ImportJob) -> Dict[str, Any]:
        dataset = _dataset(session, job)
        config = schema_config(dataset)
        latest = get_latest_schema(session, dataset.id)

        detected = job.detected_schema or {}
        if latest is not None and not (job.schema_builder_state or {}).get("record_count"):
            # every row was a duplicate, so there is no evidence of drift
            logger.info("Job %s has no non-duplicate rows; validating against version %d", job.id, latest.version_number)
            detected = latest.schema
        comparison = compare_schemas(latest.schema if latest else None, detected)
        decision = decide_approval(comparison, config, job.schema_mode, is_initial=latest is None)
        comparison_dict = comparison.to_dict()
        validation = {
            "is_compatible": not comparison.is_breaking,
            "breaking_changes": comparison_dict["breaking_changes"],
            "new_fields": comparison_dict["new_fields"],
            "changes": comparison_dict["changes"],
            "transform_suggestions": comparison_dict["transform_suggestions"],
            "requires_approval": decision.requires_approval,
            "approval_reason": decision.reason,
            "auto_approved": decision.outcome == "approve",
            "schema_mode": decision.mode,
            "previous_version": latest.version_number if latest else None,
            "schema_unchanged": latest is not None and not comparison.has_changes,
        }
        logger.info(
            "Schema validation for job %s: %d change(s), breaking=%s, decision=%s",
            job.id,
            len(comparison.changes),
            comparison.is_breaking,
            decision.outcome,
        )
        complete_stage(job, stage)

        if decision.failed:
            set_json(job, "schema_validation", validation)
            fail_job(session, job, decision.reason, context, stage=stage.value)
            return {"success": False, "error": decision.reason}

        if decision.requires_approval:
            transition_stage(session, job, ProcessingStage.AWAIT_APPROVAL, context, schema_validation=validation)
            return {"success": True, "requires_approval": True, "reason": decision.reason}

        if latest is not None and not comparison.has_changes:
            skip_stage(job, ProcessingStage.CREATE_SCHEMA_VERSION)
            transition_stage(
                session,
                job,
                ProcessingStage.GEOCODE_BATCH,
                context,
                schema_validation=validation,
                dataset_schema_id=latest.id,
                schema_version_number=latest.version_number,
            )
            return {"success": True, "schema_unchanged": True, "schema_version": latest.version_number}

        transition_stage(session, job, ProcessingStage.CREATE_SCHEMA_VERSION, context, schema_validation=validation)
        return {"success": True, "auto_approved": True}

    return run_job_task(context, payload["import_job_id"], stage, work)


# --- create-schema-version --------------------------------------------------

def handle_create_schema_version(context: PipelineContext, payload: Dict[str, Any]) -> Dict[str, Any]:
    stage = ProcessingStage.CREATE_SCHEMA_VERSION

    def work(session: Session, job: ImportJob) -> Dict[str, Any]:
        validation = job.schema_validation or {}
        latest = get_latest_schema(session, job.dataset_id) if validation.get("schema_unchanged") else None
        if latest is not None and latest.version_number == validation.get("previous_version"):
            # approved without drift: keep publishing under the current version
            skip_stage(job, stage)
            transition_stage(
                session,
                job,
                ProcessingStage.GEOCODE_BATCH,
                context,
                dataset_schema_id=latest.id,
                schema_version_number=latest.version_number,
            )
            return {"success": True, "schema_unchanged": True, "schema_version": latest.version_number}

        builder = ProgressiveSchemaBuilder.from_snapshot(job.schema_builder_state) if job.schema_builder_state else None
        record = create_schema_version(
            session,
            job.dataset_id,
            job.detected_schema or {},
            builder.get_field_metadata() if builder else {},
            auto_approved=not validation.get("approved", False),
            approved_by_id=validation.get("approved_by_id"),
            import_sources=[
                {
                    "import_job_id": job.id,
                    "import_file_id": job.import_file_id,
                    "record_count": builder.state.record_count if builder else 0,
                }
            ],
        )
        complete_stage(job, stage)
        transition_stage(
            session,
            job,
            ProcessingStage.GEOCODE_BATCH,
            context,
            dataset_schema_id=record.id,
            schema_version_number=record.version_number,
        )
        return {"success": True, "schema_version": record.version_number}

    return run_job_task(context, payload["import_job_id"], stage, work)


# --- geocode-batch ----------------------------------------------------------

def handle_geocode_batch(context: PipelineContext, payload: Dict[str, Any]) -> Dict[str, Any]:
    stage = ProcessingStage.GEOCODE_BATCH
    batch_number = int(payload.get("batch_number") or 0)

    def work(session: Session, job: ImportJob) -> Dict[str, Any]:
        mappings = job.field_mappings or {}
        location_path = mappings.get("location_path")
        if not location_path or context.geocoder is None:
            logger.info(
                "Skipping geocoding for job %s (%s)",
                job.id,
                "no location field" if not location_path else "no geocoder configured",
            )
            skip_stage(job, stage)
            transition_stage(session, job, ProcessingStage.CREATE_EVENTS, context)
            return {"success": True, "skipped": True}

        if batch_marker_exists(session, job.id, stage.value, batch_number):
            return resume_after_redelivery(session, context, job, stage, batch_number)

        dataset = _dataset(session, job)
        if batch_number == 0:
            start_stage(job, stage, _total_rows(job))

        batch_size = context.geocoding_batch_size
        start_row = batch_number * batch_size
        rows = _read_window(_source_path(session, job), job, batch_number, batch_size)
        skip = _skipped_rows(job, dataset)
        transforms = active_transforms(dataset)
        lat_path, lng_path = mappings.get("latitude_path"), mappings.get("longitude_path")

        first_row_for: Dict[str, int] = {}
        for offset, row in enumerate(rows):
            row_number = start_row + offset
            if row_number in skip:
                continue
            row = transformed_rows([row], transforms)[0]
            if lat_path and lng_path and validate_coordinates(
                get_value_at_path(row, lat_path), get_value_at_path(row, lng_path)
            ):
                continue
            location = normalize_location(get_value_at_path(row, location_path))
            if location and location not in first_row_for:
                first_row_for[location] = row_number

        known = job.geocoding_results or {}
        found = geocode_locations(context.geocoder, first_row_for, known)
        if found:
            set_json(job, "geocoding_results", {**known, **found})
        failed = [location for location, result in found.items() if result is None]
        append_job_errors(
            job,
            [
                {"row": first_row_for[location], "stage": stage.value, "error": f"Could not geocode '{location}'"}
                for location in failed
            ],
        )

        if rows:
            record_batch_marker(session, job.id, stage.value, batch_number, len(rows))
            record_batch_progress(job, stage, len(rows))
            logger.info(
                "Geocoding batch %d for job %s: %d new location(s), %d failed",
                batch_number,
                job.id,
                len(found),
                len(failed),
            )

        if len(rows) == batch_size:
            session.commit()
            continue_batches(context, task_for_stage(stage), job.id, batch_number + 1)
            return {"success": True, "batch_number": batch_number, "geocoded": len(found) - len(failed)}

        complete_stage(job, stage)
        transition_stage(session, job, ProcessingStage.CREATE_EVENTS, context)
        return {"success": True, "batch_number": batch_number, "finished": True}

    return run_job_task(context, payload["import_job_id"], stage, work, batch_number=batch_number)


# --- create-events ----------------------------------------------------------

def _owner(session: Session, job: ImportJob) -> Optional[User]:
    import_file = _import_file(session, job)
    if import_file.owner_id is None:
        return None
    return session.get(User, import_file.owner_id)


def handle_create_events(context: PipelineContext, payload: Dict[str, Any]) -> Dict[str, Any]:
    stage = ProcessingStage.CREATE_EVENTS
    batch_number = int(payload.get("batch_number") or 0)

    def work(session: Session, job: ImportJob) -> Dict[str, Any]:
        if batch_marker_exists(session, job.id, stage.value, batch_number):
            return resume_after_redelivery(session, context, job, stage, batch_number)

        dataset = _dataset(session, job)
        dedup = deduplication_config(dataset)
        if batch_number == 0:
            QuotaService(session).validate_event_creation(_owner(session, job), expected_new_events(job, dedup))
            start_stage(job, stage, _total_rows(job))

        batch_size = context.event_creation_batch_size
        start_row = batch_number * batch_size
        rows = _read_window(_source_path(session, job), job, batch_number, batch_size)

        materializer = EventMaterializer(
            session,
            job,
            id_strategy=id_strategy(dataset),
            dedup_config=dedup,
            transforms=active_transforms(dataset),
        )
        outcome = materializer.process_batch(rows, start_row)
        append_job_errors(job, outcome.errors)

        if rows:
            record_batch_marker(session, job.id, stage.value, batch_number, len(rows))
            record_batch_progress(job, stage, len(rows))
            logger.info(
                "Event batch %d for job %s: %d created, %d updated, %d skipped, %d error(s)",
                batch_number,
                job.id,
                outcome.created,
                outcome.updated,
                outcome.skipped,
                len(outcome.errors),
            )

        if len(rows) == batch_size:
            session.commit()
            continue_batches(context, task_for_stage(stage), job.id, batch_number + 1)
            return {"success": True, "batch_number": batch_number, "created": outcome.created}

        session.flush()
        results = compute_results(session, job, dedup)
        complete_stage(job, stage)
        complete_job(session, job, results, context)
        logger.info("Import job %s completed: %s", job.id, results)
        return {"success": True, "batch_number": batch_number, "finished": True, "results": results}

    return run_job_task(context, payload["import_job_id"], stage, work, batch_number=batch_number)
