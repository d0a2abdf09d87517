"""
Per-dataset row transforms applied before unique-ID computation and event
creation.

Transforms are validated from the dataset's JSON config into tagged models
(``app.api.schemas.datasets``) and applied in declaration order. A failing
transform records an error and the row moves on to the next transform.
"""
import copy
import logging
import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd
from pydantic import TypeAdapter, ValidationError

from app.api.schemas.datasets import (
    ConcatenateTransform,
    DateParseTransform,
    RenameTransform,
    SplitTransform,
    StringOpTransform,
    TransformConfig,
    TypeCastTransform,
)
from app.domain.imports.exceptions import ImportPipelineError
from app.utils.field_paths import delete_value_at_path, get_value_at_path, has_path, set_value_at_path
from app.utils.serialization import make_json_safe

logger = logging.getLogger(__name__)

_transform_adapter = TypeAdapter(TransformConfig)

_FORMAT_TOKENS = re.compile(r"YYYY|YY|MM|DD|HH|mm|ss")
_TOKEN_MAP = {"YYYY": "%Y", "YY": "%y", "MM": "%m", "DD": "%d", "HH": "%H", "mm": "%M", "ss": "%S"}

_TRUE_STRINGS = {"true", "1", "yes", "y"}
_FALSE_STRINGS = {"false", "0", "no", "n"}


class TransformError(ImportPipelineError):
    """Raised by a single transform; collected per row, never propagated."""

    def __init__(self, field_path: str, message: str):
        self.field_path = field_path
        self.message = message
        super().__init__(message)


@dataclass
class TransformResult:
    row: Dict[str, Any]
    applied: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def transformed(self) -> bool:
        return bool(self.applied)


def build_transforms(raw_transforms: Optional[Iterable[Dict[str, Any]]]) -> List[TransformConfig]:
    """
    Validate dataset transform configs, keeping only active, well-formed ones.

    Invalid entries are logged and skipped so one bad transform does not
    block an import.
    """
    transforms: List[TransformConfig] = []
    for position, raw in enumerate(raw_transforms or []):
        try:
            transform = _transform_adapter.validate_python(raw)
        except ValidationError as exc:
            logger.warning("Skipping invalid transform #%d (%s): %s", position, (raw or {}).get("type"), exc.errors())
            continue
        if not transform.active:
            continue
        transforms.append(transform)
    return transforms


def to_strftime(pattern: str) -> str:
    """Accept either strftime directives or YYYY-MM-DD style tokens."""
    if "%" in pattern:
        return pattern
    return _FORMAT_TOKENS.sub(lambda match: _TOKEN_MAP[match.group(0)], pattern)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _actual_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, (datetime, date)):
        return "date"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return "string"


def _parse_timestamp(value: Any, input_format: Optional[str], field_path: str) -> pd.Timestamp:
    try:
        if input_format:
            return pd.to_datetime(str(value).strip(), format=to_strftime(input_format))
        return pd.to_datetime(value)
    except (ValueError, TypeError, OverflowError) as exc:
        raise TransformError(field_path, f"Cannot parse '{value}' as date: {exc}") from exc


def _format_timestamp(ts: pd.Timestamp, output_format: Optional[str]) -> str:
    if output_format:
        return ts.strftime(to_strftime(output_format))
    if ts.tzinfo is not None:
        ts = ts.tz_convert("UTC")
    return ts.strftime("%Y-%m-%dT%H:%M:%SZ")


def _to_number(value: Any, field_path: str) -> Any:
    if isinstance(value, bool):
        raise TransformError(field_path, f"Cannot parse '{value}' as number")
    if isinstance(value, (int, float)):
        return value
    text = str(value).strip().replace(",", "")
    try:
        return int(text)
    except ValueError:
        pass
    try:
        number = float(text)
    except ValueError as exc:
        raise TransformError(field_path, f"Cannot parse '{value}' as number") from exc
    if math.isnan(number) or math.isinf(number):
        raise TransformError(field_path, f"Cannot parse '{value}' as number")
    return number


def _to_boolean(value: Any, field_path: str) -> bool:
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in _TRUE_STRINGS:
        return True
    if lowered in _FALSE_STRINGS:
        return False
    raise TransformError(field_path, f"Cannot parse '{value}' as boolean")


def _apply_rename(row: Dict[str, Any], transform: RenameTransform) -> Optional[Dict[str, Any]]:
    if not has_path(row, transform.from_field):
        return None
    value = get_value_at_path(row, transform.from_field)
    delete_value_at_path(row, transform.from_field)
    set_value_at_path(row, transform.to_field, value)
    return {"from": transform.from_field, "to": transform.to_field}


def _apply_date_parse(row: Dict[str, Any], transform: DateParseTransform) -> Optional[Dict[str, Any]]:
    value = get_value_at_path(row, transform.from_field)
    if _is_blank(value):
        return None

    ts = _parse_timestamp(value, transform.input_format, transform.from_field)
    if transform.timezone:
        try:
            if ts.tzinfo is None:
                ts = ts.tz_localize(transform.timezone)
            else:
                ts = ts.tz_convert(transform.timezone)
        except (ValueError, TypeError, KeyError) as exc:
            raise TransformError(transform.from_field, f"Invalid timezone '{transform.timezone}': {exc}") from exc

    formatted = _format_timestamp(ts, transform.output_format)
    target = transform.to_field or transform.from_field
    set_value_at_path(row, target, formatted)
    return {"field": target, "from": make_json_safe(value), "to": formatted}


def _apply_string_op(row: Dict[str, Any], transform: StringOpTransform) -> Optional[Dict[str, Any]]:
    value = get_value_at_path(row, transform.from_field)
    if value is None:
        return None

    text = str(value)
    op = transform.operation
    if op == "uppercase":
        result = text.upper()
    elif op == "lowercase":
        result = text.lower()
    elif op == "titlecase":
        result = text.title()
    elif op == "trim":
        result = text.strip()
    elif op == "replace":
        result = text.replace(transform.pattern, transform.replacement)
    else:
        try:
            compiled = re.compile(transform.pattern)
        except re.error as exc:
            raise TransformError(transform.from_field, f"Invalid regex '{transform.pattern}': {exc}") from exc
        result = compiled.sub(transform.replacement, text)

    target = transform.to_field or transform.from_field
    set_value_at_path(row, target, result)
    return {"field": target, "operation": op, "from": make_json_safe(value), "to": result}


def _apply_concatenate(row: Dict[str, Any], transform: ConcatenateTransform) -> Optional[Dict[str, Any]]:
    parts = []
    for source in transform.from_fields:
        value = get_value_at_path(row, source)
        if not _is_blank(value):
            parts.append(str(value))
    if not parts:
        return None
    result = transform.separator.join(parts)
    set_value_at_path(row, transform.to_field, result)
    return {"from": list(transform.from_fields), "to": transform.to_field, "value": result}


def _apply_split(row: Dict[str, Any], transform: SplitTransform) -> Optional[Dict[str, Any]]:
    value = get_value_at_path(row, transform.from_field)
    if _is_blank(value):
        return None
    parts = [part.strip() for part in str(value).split(transform.delimiter)]
    for target, part in zip(transform.to_fields, parts):
        set_value_at_path(row, target, part)
    return {"from": transform.from_field, "to": list(transform.to_fields[: len(parts)])}


def _apply_type_cast(row: Dict[str, Any], transform: TypeCastTransform) -> Optional[Dict[str, Any]]:
    path = transform.from_field
    value = get_value_at_path(row, path)
    if value is None:
        return None
    actual = _actual_type(value)
    if actual != transform.from_type:
        return None

    to_type = transform.to_type
    if transform.strategy == "reject":
        raise TransformError(path, f"Type mismatch: expected {to_type}, got {actual}")

    if transform.strategy == "parse":
        if to_type == "number":
            new_value = _to_number(value, path)
        elif to_type == "boolean":
            new_value = _to_boolean(value, path)
        elif to_type == "date":
            new_value = _format_timestamp(_parse_timestamp(value, None, path), None)
        else:
            new_value = str(make_json_safe(value))
    else:
        if to_type == "string":
            new_value = str(make_json_safe(value))
        elif to_type == "number":
            new_value = _to_number(value, path)
        elif to_type == "boolean":
            new_value = bool(value)
        else:
            raise TransformError(path, f"Cannot cast to type: {to_type}")

    set_value_at_path(row, path, new_value)
    return {"field": path, "from_type": actual, "to_type": to_type, "from": make_json_safe(value), "to": new_value}


def _apply_one(row: Dict[str, Any], transform: TransformConfig) -> Optional[Dict[str, Any]]:
    t_type = transform.type
    if t_type == "rename":
        return _apply_rename(row, transform)
    elif t_type == "date-parse":
        return _apply_date_parse(row, transform)
    elif t_type == "string-op":
        return _apply_string_op(row, transform)
    elif t_type == "concatenate":
        return _apply_concatenate(row, transform)
    elif t_type == "split":
        return _apply_split(row, transform)
    elif t_type == "type-cast":
        return _apply_type_cast(row, transform)
    logger.debug("Unknown transform type '%s' skipped", t_type)
    return None


def apply_transforms(row: Dict[str, Any], transforms: List[TransformConfig]) -> TransformResult:
    """
    Apply ``transforms`` to a copy of ``row`` in order.

    Later transforms see fields produced by earlier ones. Failures land in
    ``TransformResult.errors``; the input row is never mutated.
    """
    if not transforms:
        return TransformResult(row=row)

    working = copy.deepcopy(row)
    result = TransformResult(row=working)

    for transform in transforms:
        try:
            entry = _apply_one(working, transform)
        except TransformError as exc:
            result.errors.append(
                {"transform": transform.id or transform.type, "type": transform.type, "field": exc.field_path, "error": exc.message}
            )
            continue
        if entry is not None:
            result.applied.append({"type": transform.type, "id": transform.id, **entry})

    return result
