"""
Fan-out from one uploaded file to one import job per sheet.
"""
import logging
import os
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.db.models import Dataset, ImportFile, ImportJob
from app.domain.imports.orchestrator import (
    FILE_STATUS_PARSING,
    FILE_STATUS_PENDING,
    FILE_STATUS_PROCESSING,
    PipelineContext,
    fail_import_file,
    start_import_job,
)
from app.domain.imports.processors.batch_reader import (
    FileReadError,
    SheetInfo,
    detect_file_type,
    list_sheets,
    resolve_storage_path,
)
from app.domain.imports.progress import initial_progress

logger = logging.getLogger(__name__)

TASK_TYPE = "dataset-detection"


def _matches_sheet(identifier: Any, sheet: SheetInfo) -> bool:
    if identifier is None:
        return False
    if isinstance(identifier, int) and not isinstance(identifier, bool):
        return identifier == sheet.index
    text = str(identifier).strip()
    if text.isdigit():
        return int(text) == sheet.index
    return text == sheet.name


def _find_or_create_dataset(session: Session, name: str, owner_id: Optional[int]) -> Dataset:
    query = session.query(Dataset).filter(Dataset.name == name)
    query = query.filter(Dataset.owner_id == owner_id) if owner_id is not None else query.filter(Dataset.owner_id.is_(None))
    dataset = query.order_by(Dataset.id).first()
    if dataset is not None:
        return dataset

    dataset = Dataset(
        name=name,
        owner_id=owner_id,
        id_strategy={"type": "auto"},
        deduplication_config={"enabled": True, "strategy": "skip"},
        schema_config={},
        transforms=[],
        field_mapping_overrides={},
    )
    session.add(dataset)
    session.flush()
    logger.info("Created dataset '%s' (id=%s) for import", name, dataset.id)
    return dataset


def resolve_sheet_datasets(
    session: Session,
    import_file: ImportFile,
    sheets: List[SheetInfo],
) -> List[Dict[str, Any]]:
    """
    Pair each sheet with its target dataset.

    Sheets a ``multiple`` mapping does not cover are dropped when
    ``skip_if_missing`` is set, otherwise they get a dataset of their own.
    """
    options = import_file.processing_options or {}
    mapping = options.get("dataset_mapping") or {}
    mapping_type = mapping.get("mapping_type")
    assignments: List[Dict[str, Any]] = []

    for sheet in sheets:
        dataset: Optional[Dataset] = None

        if mapping_type == "single" and mapping.get("dataset_id") is not None:
            dataset = session.get(Dataset, mapping["dataset_id"])
            if dataset is None:
                raise FileReadError(import_file.storage_path, f"Dataset {mapping['dataset_id']} not found")

        elif mapping_type == "multiple":
            entry = next(
                (m for m in mapping.get("sheet_mappings") or [] if _matches_sheet(m.get("sheet_identifier"), sheet)),
                {},
            )
            if entry.get("dataset_id") is not None:
                dataset = session.get(Dataset, entry["dataset_id"])
                if dataset is None:
                    raise FileReadError(import_file.storage_path, f"Dataset {entry['dataset_id']} not found")
            elif entry.get("skip_if_missing", mapping.get("skip_if_missing")):
                logger.info("No dataset mapped for sheet '%s'; skipping", sheet.name)
                continue

        if dataset is None:
            name = options.get("dataset_name") or sheet.name
            dataset = _find_or_create_dataset(session, name, import_file.owner_id)

        assignments.append({"sheet": sheet, "dataset": dataset})
    return assignments


def detect_datasets(context: PipelineContext, import_file_id: str) -> Dict[str, Any]:
    session = context.session_factory()
    try:
        import_file = session.get(ImportFile, import_file_id)
        if import_file is None:
            logger.error("Import file %s not found", import_file_id)
            return {"success": False, "error": f"Import file {import_file_id} not found"}

        if import_file.status != FILE_STATUS_PENDING:
            logger.info("Import file %s already %s; skipping dataset detection", import_file_id, import_file.status)
            return {"success": True, "skipped": True}

        import_file.status = FILE_STATUS_PARSING
        session.commit()

        try:
            path = resolve_storage_path(import_file.storage_path)
            sheets = [sheet for sheet in list_sheets(path) if sheet.row_count > 0]
            if sheets and detect_file_type(path) == "csv":
                sheets[0].name = os.path.splitext(import_file.original_name)[0] or sheets[0].name
            if not sheets:
                raise FileReadError(path, "File contains no data rows")
            assignments = resolve_sheet_datasets(session, import_file, sheets)
            if not assignments:
                raise FileReadError(path, "No sheets were mapped to a dataset")
        except FileReadError as exc:
            session.rollback()
            fail_import_file(session, import_file, exc.message)
            return {"success": False, "error": exc.message}

        schema_mode = (import_file.processing_options or {}).get("schema_mode")
        jobs: List[ImportJob] = []
        for assignment in assignments:
            sheet: SheetInfo = assignment["sheet"]
            job = ImportJob(
                import_file_id=import_file.id,
                dataset_id=assignment["dataset"].id,
                sheet_index=sheet.index,
                schema_mode=schema_mode,
                progress=initial_progress(sheet.row_count),
                field_mappings={},
                geocoding_results={},
                errors=[],
            )
            session.add(job)
            jobs.append(job)

        import_file.sheet_metadata = [sheet.to_dict() for sheet in sheets]
        import_file.datasets_count = len({a["dataset"].id for a in assignments})
        import_file.jobs_completed = 0
        import_file.status = FILE_STATUS_PROCESSING
        session.commit()
        logger.info(
            "Import file %s: %d sheet(s) -> %d job(s) across %d dataset(s)",
            import_file.id,
            len(sheets),
            len(jobs),
            import_file.datasets_count,
        )

        for job in jobs:
            start_import_job(session, job, context)

        return {"success": True, "jobs_created": len(jobs), "job_ids": [job.id for job in jobs]}
    except Exception as exc:
        session.rollback()
        logger.exception("Dataset detection failed for import file %s", import_file_id)
        import_file = session.get(ImportFile, import_file_id)
        if import_file is not None:
            fail_import_file(session, import_file, str(exc))
        return {"success": False, "error": str(exc)}
    finally:
        session.close()


def register_import_file(
    session: Session,
    context: PipelineContext,
    *,
    original_name: str,
    storage_path: str,
    owner_id: Optional[int] = None,
    processing_options: Optional[Dict[str, Any]] = None,
) -> ImportFile:
    """Record an already-stored upload and queue dataset detection for it."""
    import_file = ImportFile(
        original_name=original_name,
        storage_path=storage_path,
        owner_id=owner_id,
        status=FILE_STATUS_PENDING,
        processing_options=processing_options or {},
        sheet_metadata=[],
    )
    session.add(import_file)
    session.commit()
    logger.info("Registered import file %s (%s)", import_file.id, original_name)
    context.enqueue(TASK_TYPE, {"import_file_id": import_file.id})
    return import_file
