"""
Shared dependencies for the API routers.

The pipeline context is process-wide: one task queue bound to one session
factory. Tests replace it through ``app.dependency_overrides``.
"""
import threading
from typing import Optional

from app.db.session import get_session_local
from app.domain.imports.orchestrator import PipelineContext
from app.domain.imports.pipeline import build_pipeline

_pipeline: Optional[PipelineContext] = None
_pipeline_lock = threading.Lock()


def get_pipeline() -> PipelineContext:
    global _pipeline
    if _pipeline is None:
        with _pipeline_lock:
            if _pipeline is None:
                _pipeline = build_pipeline(get_session_local())
    return _pipeline


def drain_inline_queue(context: PipelineContext) -> None:
    """Run queued work right away when the inline backend is configured."""
    run_until_empty = getattr(context.queue, "run_until_empty", None)
    if run_until_empty is not None:
        run_until_empty()


def shutdown_pipeline() -> None:
    shutdown = getattr(_pipeline.queue, "shutdown", None) if _pipeline is not None else None
    if shutdown is not None:
        shutdown(wait=False)
