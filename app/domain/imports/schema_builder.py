"""
Progressive schema inference.

``ProgressiveSchemaBuilder`` consumes row batches and keeps per-field
statistics in a ``SchemaBuilderState``. The state is a plain pydantic model
so a stage can persist it after each batch (``to_snapshot``) and a later
stage can restore the identical builder (``from_snapshot``) without
rescanning the file.

Enum candidacy needs the complete distinct-value population, so it is only
computed by ``finalize()`` once every batch has been consumed.
"""
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from app.core.config import settings

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}([T ]\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:?\d{2})?)?$")
_US_DATE_RE = re.compile(r"^\d{1,2}/\d{1,2}/\d{2,4}$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_URL_RE = re.compile(r"^https?://", re.IGNORECASE)
_NUMERIC_RE = re.compile(r"^-?\d+(\.\d+)?$")
_ID_NAME_RE = re.compile(r"(^|[_\-.])(id|uuid|guid|key)$|^id[_\-]|identifier", re.IGNORECASE)

# Types a field may hold without it being reported as a conflict
_COMPATIBLE_TYPES = ({"integer", "number"}, {"date", "string"})


class SchemaBuilderConfig(BaseModel):
    max_samples: int = 100
    max_unique_values: int = 100
    enum_threshold: int = 50
    enum_mode: str = "count"
    max_depth: int = 3
    required_ratio: float = 0.9

    @classmethod
    def from_settings(cls, schema_config: Optional[Dict[str, Any]] = None) -> "SchemaBuilderConfig":
        """Defaults from ``settings``, overridden by a dataset's schema config."""
        schema_config = schema_config or {}
        return cls(
            max_samples=settings.schema_max_samples,
            max_unique_values=settings.schema_max_unique_values,
            enum_threshold=schema_config.get("enum_threshold") or settings.schema_enum_threshold,
            enum_mode=schema_config.get("enum_mode") or settings.schema_enum_mode,
            max_depth=schema_config.get("max_depth") or settings.schema_max_depth,
            required_ratio=settings.schema_required_ratio,
        )


class NumericStats(BaseModel):
    min: float
    max: float
    sum: float = 0.0
    count: int = 0
    is_integer: bool = True

    @property
    def avg(self) -> float:
        return self.sum / self.count if self.count else 0.0


class EnumValue(BaseModel):
    value: Any
    count: int
    percent: float


class FieldStatistics(BaseModel):
    path: str
    depth: int = 0
    occurrences: int = 0
    null_count: int = 0
    type_distribution: Dict[str, int] = Field(default_factory=dict)
    # canonical JSON of a value -> count, capped at max_unique_values
    value_counts: Dict[str, int] = Field(default_factory=dict)
    distinct_overflow: bool = False
    samples: List[Any] = Field(default_factory=list)
    formats: Dict[str, int] = Field(default_factory=dict)
    numeric_stats: Optional[NumericStats] = None
    is_enum_candidate: bool = False
    enum_values: List[EnumValue] = Field(default_factory=list)
    first_seen_batch: int = 0
    last_seen_batch: int = 0

    @property
    def non_null_count(self) -> int:
        return self.occurrences - self.null_count

    @property
    def unique_values(self) -> int:
        return len(self.value_counts)

    def non_null_types(self) -> Dict[str, int]:
        return {name: count for name, count in self.type_distribution.items() if name != "null" and count > 0}

    def dominant_type(self) -> str:
        types = self.non_null_types()
        if not types:
            return "null"
        if set(types) <= {"integer", "number"}:
            return "integer" if "number" not in types else "number"
        if set(types) <= {"date", "string"} and "string" in types:
            return "string"
        return max(sorted(types), key=lambda name: types[name])


class TypeConflict(BaseModel):
    path: str
    types: Dict[str, int]


class SchemaBuilderState(BaseModel):
    format_version: int = STATE_FORMAT_VERSION
    version: int = 0
    record_count: int = 0
    batch_count: int = 0
    finalized: bool = False
    config: SchemaBuilderConfig = Field(default_factory=SchemaBuilderConfig)
    field_stats: Dict[str, FieldStatistics] = Field(default_factory=dict)
    field_order: List[str] = Field(default_factory=list)
    detected_id_fields: List[str] = Field(default_factory=list)
    type_conflicts: List[TypeConflict] = Field(default_factory=list)
    last_updated: Optional[str] = None


def get_value_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "integer" if value.is_integer() else "number"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, str):
        text = value.strip()
        if _ISO_DATE_RE.match(text) or _US_DATE_RE.match(text):
            return "date"
        return "string"
    return "string"


def detect_formats(value: str) -> List[str]:
    text = value.strip()
    formats = []
    if _EMAIL_RE.match(text):
        formats.append("email")
    if _URL_RE.match(text):
        formats.append("url")
    if _ISO_DATE_RE.match(text):
        formats.append("date_time" if ("T" in text or " " in text) else "date")
    if _NUMERIC_RE.match(text):
        formats.append("numeric")
    return formats


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str, ensure_ascii=False)


class ProgressiveSchemaBuilder:
    """Incremental field statistics plus schema generation from them."""

    def __init__(
        self,
        state: Optional[SchemaBuilderState] = None,
        config: Optional[SchemaBuilderConfig] = None,
    ):
        if state is None:
            state = SchemaBuilderState(config=config or SchemaBuilderConfig())
        elif config is not None:
            state.config = config
        self.state = state

    @property
    def config(self) -> SchemaBuilderConfig:
        return self.state.config

    # --- snapshots -------------------------------------------------------

    def to_snapshot(self) -> Dict[str, Any]:
        return self.state.model_dump(mode="json")

    @classmethod
    def from_snapshot(cls, snapshot: Dict[str, Any]) -> "ProgressiveSchemaBuilder":
        state = SchemaBuilderState.model_validate(snapshot)
        if state.format_version != STATE_FORMAT_VERSION:
            raise ValueError(f"Unsupported schema builder state version {state.format_version}")
        return cls(state=state)

    # --- ingestion -------------------------------------------------------

    def process_batch(self, rows: Iterable[Dict[str, Any]]) -> bool:
        """
        Fold ``rows`` into the field statistics.

        Returns True when the batch introduced new fields or new types, which
        bumps ``state.version``.
        """
        if self.state.finalized:
            raise RuntimeError("Schema builder already finalized")

        batch_number = self.state.batch_count
        changed = False
        processed = 0
        for row in rows:
            if not isinstance(row, dict):
                continue
            processed += 1
            changed = self._visit(row, "", 0, batch_number) or changed

        self.state.record_count += processed
        self.state.batch_count += 1
        if changed:
            self.state.version += 1
        self.state.last_updated = datetime.now(timezone.utc).isoformat()
        return changed

    def _visit(self, obj: Dict[str, Any], prefix: str, depth: int, batch_number: int) -> bool:
        changed = False
        for key, value in obj.items():
            path = f"{prefix}.{key}" if prefix else str(key)
            changed = self._record_value(path, depth, value, batch_number) or changed
            if isinstance(value, dict) and depth + 1 < self.config.max_depth:
                changed = self._visit(value, path, depth + 1, batch_number) or changed
        return changed

    def _record_value(self, path: str, depth: int, value: Any, batch_number: int) -> bool:
        changed = False
        stats = self.state.field_stats.get(path)
        if stats is None:
            stats = FieldStatistics(path=path, depth=depth, first_seen_batch=batch_number)
            self.state.field_stats[path] = stats
            self.state.field_order.append(path)
            changed = True

        stats.occurrences += 1
        stats.last_seen_batch = batch_number

        value_type = get_value_type(value)
        if value_type not in stats.type_distribution:
            changed = True
        stats.type_distribution[value_type] = stats.type_distribution.get(value_type, 0) + 1

        if value is None:
            stats.null_count += 1
            return changed

        if isinstance(value, (dict, list)):
            return changed

        if isinstance(value, str):
            for fmt in detect_formats(value):
                stats.formats[fmt] = stats.formats.get(fmt, 0) + 1

        if value_type in ("integer", "number"):
            number = float(value)
            if stats.numeric_stats is None:
                stats.numeric_stats = NumericStats(min=number, max=number)
            numeric = stats.numeric_stats
            numeric.min = min(numeric.min, number)
            numeric.max = max(numeric.max, number)
            numeric.sum += number
            numeric.count += 1
            numeric.is_integer = numeric.is_integer and value_type == "integer"

        key = _canonical(value)
        if key in stats.value_counts:
            stats.value_counts[key] += 1
        elif len(stats.value_counts) < self.config.max_unique_values:
            stats.value_counts[key] = 1
            if len(stats.samples) < self.config.max_samples:
                stats.samples.append(value)
        else:
            stats.distinct_overflow = True

        return changed

    # --- finalization ----------------------------------------------------

    def _is_enum_candidate(self, stats: FieldStatistics) -> bool:
        non_null = stats.non_null_count
        if non_null == 0 or stats.distinct_overflow:
            return False
        if stats.dominant_type() not in ("string", "integer", "boolean"):
            return False
        unique = stats.unique_values
        # every value distinct means an identifier, not a category
        if unique >= non_null:
            return False
        if self.config.enum_mode == "percentage":
            return (unique / non_null) * 100 <= self.config.enum_threshold
        return unique <= self.config.enum_threshold

    def finalize(self) -> None:
        """Run whole-population analysis: enums, ID fields, type conflicts."""
        if self.state.finalized:
            return

        id_fields: List[str] = []
        conflicts: List[TypeConflict] = []

        for path in self.state.field_order:
            stats = self.state.field_stats[path]
            stats.is_enum_candidate = self._is_enum_candidate(stats)
            if stats.is_enum_candidate:
                non_null = stats.non_null_count
                stats.enum_values = sorted(
                    (
                        EnumValue(value=json.loads(key), count=count, percent=round(count / non_null * 100, 2))
                        for key, count in stats.value_counts.items()
                    ),
                    key=lambda ev: (-ev.count, _canonical(ev.value)),
                )
            else:
                stats.enum_values = []

            name = path.split(".")[-1]
            all_distinct = stats.distinct_overflow or stats.unique_values == stats.non_null_count
            if _ID_NAME_RE.search(name) and stats.non_null_count > 0 and stats.null_count == 0 and all_distinct:
                id_fields.append(path)

            types = set(stats.non_null_types())
            if len(types) > 1 and not any(types <= group for group in _COMPATIBLE_TYPES):
                conflicts.append(TypeConflict(path=path, types=stats.non_null_types()))

        self.state.detected_id_fields = id_fields
        self.state.type_conflicts = conflicts
        self.state.finalized = True
        logger.info(
            "Schema finalized: %d records, %d fields, %d enum candidates, %d type conflicts",
            self.state.record_count,
            len(self.state.field_stats),
            sum(1 for s in self.state.field_stats.values() if s.is_enum_candidate),
            len(conflicts),
        )

    # --- schema output ---------------------------------------------------

    def _is_required(self, stats: FieldStatistics) -> bool:
        if self.state.record_count == 0:
            return False
        return stats.non_null_count >= self.config.required_ratio * self.state.record_count

    def _property_for(self, stats: FieldStatistics) -> Dict[str, Any]:
        dominant = stats.dominant_type()
        prop: Dict[str, Any] = {}

        if dominant == "date":
            json_type = "string"
            prop["format"] = "date-time"
        elif dominant == "null":
            json_type = "null"
        else:
            json_type = dominant

        if stats.null_count > 0 and json_type != "null":
            prop["type"] = [json_type, "null"]
        else:
            prop["type"] = json_type

        if dominant == "object":
            prop["properties"] = {}
            prop["required"] = []

        if stats.is_enum_candidate and stats.enum_values:
            prop["enum"] = [ev.value for ev in stats.enum_values]

        if stats.numeric_stats is not None and dominant in ("integer", "number"):
            prop["minimum"] = stats.numeric_stats.min
            prop["maximum"] = stats.numeric_stats.max

        return prop

    def get_schema(self) -> Dict[str, Any]:
        """JSON-schema style description of every observed field."""
        schema: Dict[str, Any] = {
            "type": "object",
            "properties": {},
            "required": [],
            "additionalProperties": False,
        }
        for path in self.state.field_order:
            stats = self.state.field_stats[path]
            parts = path.split(".")
            container = schema
            for part in parts[:-1]:
                parent = container["properties"].get(part)
                if parent is None or "properties" not in parent:
                    break
                container = parent
            else:
                container["properties"][parts[-1]] = self._property_for(stats)
                if self._is_required(stats):
                    container.setdefault("required", []).append(parts[-1])
        return schema

    def get_field_metadata(self) -> Dict[str, Any]:
        """Field statistics summary stored alongside a published schema version."""
        metadata: Dict[str, Any] = {}
        record_count = self.state.record_count or 1
        for path in self.state.field_order:
            stats = self.state.field_stats[path]
            metadata[path] = {
                "occurrences": stats.occurrences,
                "occurrence_percent": round(stats.occurrences / record_count * 100, 2),
                "null_count": stats.null_count,
                "unique_values": stats.unique_values,
                "type_distribution": dict(stats.type_distribution),
                "formats": dict(stats.formats),
                "numeric_stats": (
                    {**stats.numeric_stats.model_dump(), "avg": stats.numeric_stats.avg}
                    if stats.numeric_stats
                    else None
                ),
                "is_enum_candidate": stats.is_enum_candidate,
                "enum_values": [ev.model_dump() for ev in stats.enum_values],
            }
        return metadata
