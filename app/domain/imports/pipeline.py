"""
Wiring between task types, stage handlers and a task queue backend.
"""
import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.domain.imports import dataset_detection, stage_handlers
from app.domain.imports.geocoding import Geocoder
from app.domain.imports.orchestrator import PipelineContext
from app.domain.imports.tasks import InlineTaskQueue, TaskQueue, ThreadPoolTaskQueue

logger = logging.getLogger(__name__)


def _handle_dataset_detection(context: PipelineContext, payload: Dict[str, Any]) -> Dict[str, Any]:
    return dataset_detection.detect_datasets(context, payload["import_file_id"])


TASK_HANDLERS: Dict[str, Callable[[PipelineContext, Dict[str, Any]], Dict[str, Any]]] = {
    dataset_detection.TASK_TYPE: _handle_dataset_detection,
    "analyze-duplicates": stage_handlers.handle_analyze_duplicates,
    "detect-schema": stage_handlers.handle_detect_schema,
    "validate-schema": stage_handlers.handle_validate_schema,
    "create-schema-version": stage_handlers.handle_create_schema_version,
    "geocode-batch": stage_handlers.handle_geocode_batch,
    "create-events": stage_handlers.handle_create_events,
}


def dispatch_task(context: PipelineContext, task_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    handler = TASK_HANDLERS.get(task_type)
    if handler is None:
        logger.error("No handler registered for task type '%s'", task_type)
        return {"success": False, "error": f"Unknown task type: {task_type}"}
    logger.debug("Dispatching %s %s", task_type, payload)
    return handler(context, payload)


def create_task_queue(backend: Optional[str] = None) -> TaskQueue:
    backend = backend or settings.task_queue_backend
    if backend == "threadpool":
        return ThreadPoolTaskQueue(max_workers=settings.task_queue_max_workers)
    if backend != "inline":
        logger.warning("Unknown task queue backend '%s'; using inline", backend)
    return InlineTaskQueue()


def build_pipeline(
    session_factory: Callable[[], Session],
    queue: Optional[TaskQueue] = None,
    geocoder: Optional[Geocoder] = None,
    **overrides: Any,
) -> PipelineContext:
    """Create a context and bind ``queue`` so its tasks dispatch into it."""
    context = PipelineContext(
        session_factory=session_factory,
        queue=queue or create_task_queue(),
        geocoder=geocoder,
        **overrides,
    )
    context.queue.bind(lambda task_type, payload: dispatch_task(context, task_type, payload))
    return context
