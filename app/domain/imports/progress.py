"""
Per-stage progress bookkeeping stored in ``ImportJob.progress``.

The structure is rebuilt from the previous value on every update and
reassigned, so SQLAlchemy always sees a changed JSON column.
"""
import copy
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.orm.attributes import flag_modified

from app.domain.imports.stages import ProcessingStage

STATUS_PENDING = "pending"
STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"
STATUS_SKIPPED = "skipped"

# Relative weight of each stage in the overall percentage
STAGE_WEIGHTS = {
    ProcessingStage.ANALYZE_DUPLICATES.value: 10,
    ProcessingStage.DETECT_SCHEMA.value: 15,
    ProcessingStage.VALIDATE_SCHEMA.value: 5,
    ProcessingStage.CREATE_SCHEMA_VERSION.value: 5,
    ProcessingStage.GEOCODE_BATCH.value: 20,
    ProcessingStage.CREATE_EVENTS.value: 45,
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _stage_key(stage) -> str:
    return stage.value if isinstance(stage, ProcessingStage) else str(stage)


def initial_progress(total_rows: int) -> Dict[str, Any]:
    return {
        "total_rows": total_rows,
        "stages": {
            key: {
                "status": STATUS_PENDING,
                "rows_total": 0,
                "rows_processed": 0,
                "batches_processed": 0,
                "started_at": None,
                "completed_at": None,
            }
            for key in STAGE_WEIGHTS
        },
        "overall_percentage": 0,
    }


def _stage_fraction(stage_progress: Dict[str, Any]) -> float:
    status = stage_progress.get("status")
    if status in (STATUS_COMPLETED, STATUS_SKIPPED):
        return 1.0
    total = stage_progress.get("rows_total") or 0
    if status != STATUS_IN_PROGRESS or total <= 0:
        return 0.0
    return min(1.0, (stage_progress.get("rows_processed") or 0) / total)


def calculate_overall_percentage(progress: Dict[str, Any]) -> int:
    stages = progress.get("stages") or {}
    total_weight = sum(STAGE_WEIGHTS.values())
    done = sum(weight * _stage_fraction(stages.get(key) or {}) for key, weight in STAGE_WEIGHTS.items())
    return int(round(done / total_weight * 100))


def _update(job, stage, **changes) -> Dict[str, Any]:
    progress = copy.deepcopy(job.progress) if job.progress else initial_progress(0)
    progress.setdefault("stages", {})
    key = _stage_key(stage)
    stage_progress = progress["stages"].setdefault(key, {})
    stage_progress.update(changes)
    progress["overall_percentage"] = calculate_overall_percentage(progress)
    job.progress = progress
    flag_modified(job, "progress")
    return stage_progress


def start_stage(job, stage, rows_total: Optional[int] = None) -> None:
    key = _stage_key(stage)
    current = ((job.progress or {}).get("stages") or {}).get(key) or {}
    if current.get("status") == STATUS_IN_PROGRESS:
        return
    _update(
        job,
        stage,
        status=STATUS_IN_PROGRESS,
        rows_total=rows_total if rows_total is not None else current.get("rows_total", 0),
        rows_processed=0,
        batches_processed=0,
        started_at=_now(),
        completed_at=None,
    )


def record_batch_progress(job, stage, rows_in_batch: int) -> None:
    key = _stage_key(stage)
    current = ((job.progress or {}).get("stages") or {}).get(key) or {}
    _update(
        job,
        stage,
        status=STATUS_IN_PROGRESS,
        rows_processed=(current.get("rows_processed") or 0) + rows_in_batch,
        batches_processed=(current.get("batches_processed") or 0) + 1,
    )


def complete_stage(job, stage) -> None:
    key = _stage_key(stage)
    current = ((job.progress or {}).get("stages") or {}).get(key) or {}
    _update(
        job,
        stage,
        status=STATUS_COMPLETED,
        rows_processed=max(current.get("rows_processed") or 0, current.get("rows_total") or 0),
        completed_at=_now(),
    )


def skip_stage(job, stage) -> None:
    _update(job, stage, status=STATUS_SKIPPED, completed_at=_now())
