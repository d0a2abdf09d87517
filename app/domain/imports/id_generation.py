"""
Unique-ID generation for imported rows.

IDs depend only on the fields the strategy designates, so the same row
always maps to the same ID. Duplicate analysis and event creation both rely
on that to agree on which rows repeat.
"""
import hashlib
import json
import logging
import re
from typing import Any, Dict, Iterable, Optional

from app.api.schemas.datasets import IdStrategyConfig
from app.domain.imports.exceptions import ImportPipelineError
from app.utils.field_paths import get_value_at_path

logger = logging.getLogger(__name__)

HASH_LENGTH = 16
MAX_EXTERNAL_ID_LENGTH = 255
_EXTERNAL_ID_RE = re.compile(r"^[\w\-.:]+$")


class UniqueIdError(ImportPipelineError):
    """Raised when a row does not carry the fields its ID strategy needs."""

    def __init__(self, strategy: str, message: str):
        self.strategy = strategy
        self.message = message
        super().__init__(message)


def _canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str, ensure_ascii=False)


def _short_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:HASH_LENGTH]


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def sanitize_external_id(value: Any) -> str:
    """Normalize an external ID; whitespace runs collapse to underscores."""
    text = re.sub(r"\s+", "_", str(value).strip())
    if not text or len(text) > MAX_EXTERNAL_ID_LENGTH:
        raise UniqueIdError("external", f"External ID must be 1-{MAX_EXTERNAL_ID_LENGTH} characters")
    if not _EXTERNAL_ID_RE.match(text):
        raise UniqueIdError("external", f"External ID contains unsupported characters: {text!r}")
    return text


def external_id(row: Dict[str, Any], path: str) -> str:
    value = get_value_at_path(row, path)
    if _is_blank(value):
        raise UniqueIdError("external", f"Missing external ID at '{path}'")
    return f"ext:{sanitize_external_id(value)}"


def computed_id(row: Dict[str, Any], fields: Iterable[str]) -> str:
    """Hash ``field:value`` pairs in sorted field order."""
    parts = []
    for field in sorted(fields):
        value = get_value_at_path(row, field)
        if _is_blank(value):
            raise UniqueIdError("computed", f"Missing value for ID field '{field}'")
        parts.append(f"{field}:{_canonical_json(value)}")
    return f"comp:{_short_hash('|'.join(parts))}"


def content_id(row: Dict[str, Any]) -> str:
    """Hash of the whole row, key order independent."""
    return f"auto:{_short_hash(_canonical_json(row))}"


def generate_unique_id(row: Dict[str, Any], strategy: Optional[IdStrategyConfig] = None) -> str:
    strategy = strategy or IdStrategyConfig()

    if strategy.type == "external":
        return external_id(row, strategy.external_id_path)

    if strategy.type == "computed":
        return computed_id(row, strategy.computed_id_fields)

    if strategy.type == "hybrid":
        if strategy.external_id_path:
            try:
                return external_id(row, strategy.external_id_path)
            except UniqueIdError as exc:
                logger.debug("Hybrid ID falling back to computed fields: %s", exc)
        if strategy.computed_id_fields:
            return computed_id(row, strategy.computed_id_fields)
        raise UniqueIdError("hybrid", "Row has neither an external ID nor the computed ID fields")

    return content_id(row)
