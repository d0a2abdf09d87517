"""
Schema diffing and the approval decision.

Everything here is pure: it takes schemas and configuration and returns
plain results. Persisting versions lives in ``schema_versioning``.
"""
import json
import logging
import re
from dataclasses import asdict, dataclass, field
from difflib import SequenceMatcher
from typing import Any, Dict, List, Optional, Set

from app.api.schemas.datasets import SchemaConfig
from app.core.config import settings

logger = logging.getLogger(__name__)

SEVERITY_INFO = "info"
SEVERITY_WARNING = "warning"
SEVERITY_ERROR = "error"

_RENAME_AFFIXES = ("start", "end", "event", "date", "name", "at", "id", "time")


@dataclass
class SchemaChange:
    type: str
    path: str
    severity: str
    breaking: bool
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TransformSuggestion:
    """Rename ``from_field`` (incoming name) back to ``to_field`` (existing name)."""
    from_field: str
    to_field: str
    confidence: int
    reason: str
    high_confidence: bool = False
    type: str = "rename"

    def to_transform(self) -> Dict[str, Any]:
        return {"type": "rename", "from_field": self.from_field, "to_field": self.to_field, "active": True}


@dataclass
class SchemaComparison:
    changes: List[SchemaChange] = field(default_factory=list)
    transform_suggestions: List[TransformSuggestion] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.changes)

    @property
    def is_breaking(self) -> bool:
        return any(change.breaking for change in self.changes)

    @property
    def breaking_changes(self) -> List[SchemaChange]:
        return [change for change in self.changes if change.breaking]

    @property
    def new_fields(self) -> List[SchemaChange]:
        return [change for change in self.changes if change.type == "new_field"]

    @property
    def has_high_confidence_rename(self) -> bool:
        return any(s.high_confidence for s in self.transform_suggestions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "changes": [asdict(change) for change in self.changes],
            "is_breaking": self.is_breaking,
            "breaking_changes": [asdict(change) for change in self.breaking_changes],
            "new_fields": [asdict(change) for change in self.new_fields],
            "transform_suggestions": [asdict(s) for s in self.transform_suggestions],
        }


@dataclass
class ApprovalDecision:
    outcome: str  # "approve" | "require_approval" | "fail"
    reason: Optional[str] = None
    mode: Optional[str] = None

    @property
    def requires_approval(self) -> bool:
        return self.outcome == "require_approval"

    @property
    def failed(self) -> bool:
        return self.outcome == "fail"


# --- schema flattening ------------------------------------------------------

def _base_types(prop: Dict[str, Any]) -> Set[str]:
    raw = prop.get("type")
    types = set(raw) if isinstance(raw, list) else ({raw} if raw else set())
    types.discard("null")
    return types


def flatten_schema(schema: Optional[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Map dotted field path -> {types, required, enum, position}."""
    flat: Dict[str, Dict[str, Any]] = {}

    def walk(node: Dict[str, Any], prefix: str) -> None:
        required = set(node.get("required") or [])
        for name, prop in (node.get("properties") or {}).items():
            path = f"{prefix}.{name}" if prefix else name
            flat[path] = {
                "types": _base_types(prop),
                "required": name in required,
                "enum": prop.get("enum"),
                "position": len(flat),
            }
            if prop.get("properties"):
                walk(prop, path)

    walk(schema or {}, "")
    return flat


def _types_compatible(old: Set[str], new: Set[str]) -> bool:
    # an all-null field carries no type commitment
    if not old or not new or old == new:
        return True
    if new <= {"integer", "number"} and old <= {"integer", "number"}:
        return True
    return False


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


# --- comparison -------------------------------------------------------------

def compare_schemas(
    old_schema: Optional[Dict[str, Any]],
    new_schema: Optional[Dict[str, Any]],
) -> SchemaComparison:
    """
    Classify the differences from ``old_schema`` to ``new_schema``.

    New fields are never breaking. Removing a required field or changing a
    field's type is breaking. Comparing a schema with itself yields no
    changes.
    """
    old_flat = flatten_schema(old_schema)
    new_flat = flatten_schema(new_schema)
    changes: List[SchemaChange] = []

    for path, new_field in new_flat.items():
        if path not in old_flat:
            changes.append(
                SchemaChange(
                    type="new_field",
                    path=path,
                    severity=SEVERITY_INFO,
                    breaking=False,
                    details={"types": sorted(new_field["types"]), "required": new_field["required"]},
                )
            )

    for path, old_field in old_flat.items():
        if path not in new_flat:
            was_required = old_field["required"]
            changes.append(
                SchemaChange(
                    type="removed_field",
                    path=path,
                    severity=SEVERITY_ERROR if was_required else SEVERITY_WARNING,
                    breaking=was_required,
                    details={"types": sorted(old_field["types"]), "required": was_required},
                )
            )
            continue

        new_field = new_flat[path]
        old_types, new_types = old_field["types"], new_field["types"]
        if old_types != new_types:
            if _types_compatible(old_types, new_types):
                if old_types and new_types and not new_types <= old_types:
                    changes.append(
                        SchemaChange(
                            type="type_widened",
                            path=path,
                            severity=SEVERITY_INFO,
                            breaking=False,
                            details={"old_types": sorted(old_types), "new_types": sorted(new_types)},
                        )
                    )
            else:
                changes.append(
                    SchemaChange(
                        type="type_change",
                        path=path,
                        severity=SEVERITY_ERROR,
                        breaking=True,
                        details={"old_types": sorted(old_types), "new_types": sorted(new_types)},
                    )
                )

        if old_field["required"] != new_field["required"]:
            changes.append(
                SchemaChange(
                    type="required_change",
                    path=path,
                    severity=SEVERITY_INFO,
                    breaking=False,
                    details={"was_required": old_field["required"], "is_required": new_field["required"]},
                )
            )

        old_enum, new_enum = old_field["enum"], new_field["enum"]
        if old_enum is not None and new_enum is not None:
            old_values = {_canonical(v): v for v in old_enum}
            new_values = {_canonical(v): v for v in new_enum}
            added = [new_values[k] for k in new_values if k not in old_values]
            removed = [old_values[k] for k in old_values if k not in new_values]
            if added or removed:
                changes.append(
                    SchemaChange(
                        type="enum_change",
                        path=path,
                        severity=SEVERITY_WARNING if removed else SEVERITY_INFO,
                        breaking=False,
                        details={"added": added, "removed": removed},
                    )
                )

    removed_paths = [c.path for c in changes if c.type == "removed_field"]
    added_paths = [c.path for c in changes if c.type == "new_field"]
    suggestions = detect_transforms(old_flat, new_flat, removed_paths, added_paths)

    return SchemaComparison(changes=changes, transform_suggestions=suggestions)


# --- rename detection -------------------------------------------------------

def _normalize_name(name: str) -> str:
    return re.sub(r"[_\-\s.]", "", name.lower())


def calculate_similarity(str1: str, str2: str) -> float:
    """Calculate similarity ratio between two strings (0.0 to 1.0)."""
    return SequenceMatcher(None, str1, str2).ratio()


def _looks_like_rename_pattern(old_name: str, new_name: str) -> bool:
    old_norm, new_norm = _normalize_name(old_name), _normalize_name(new_name)
    if not old_norm or not new_norm or old_norm == new_norm:
        return False
    if old_norm in new_norm or new_norm in old_norm:
        return True
    old_tokens = set(re.split(r"[_\-\s.]+", old_name.lower()))
    new_tokens = set(re.split(r"[_\-\s.]+", new_name.lower()))
    shared = (old_tokens & new_tokens) - set(_RENAME_AFFIXES)
    return bool(shared)


def rename_confidence(
    old_path: str,
    new_path: str,
    old_field: Dict[str, Any],
    new_field: Dict[str, Any],
) -> int:
    """Score 0-100 that ``new_path`` is ``old_path`` renamed."""
    old_name = old_path.split(".")[-1]
    new_name = new_path.split(".")[-1]

    if old_name.lower() == new_name.lower():
        # case-only change
        return 95 if _types_compatible(old_field["types"], new_field["types"]) else 80

    score = calculate_similarity(_normalize_name(old_name), _normalize_name(new_name)) * 40
    if _types_compatible(old_field["types"], new_field["types"]):
        score += 30
    if _looks_like_rename_pattern(old_name, new_name):
        score += 20
    distance = abs(old_field["position"] - new_field["position"])
    if distance == 0:
        score += 10
    elif distance == 1:
        score += 5
    return min(100, int(round(score)))


def detect_transforms(
    old_flat: Dict[str, Dict[str, Any]],
    new_flat: Dict[str, Dict[str, Any]],
    removed_paths: List[str],
    added_paths: List[str],
    threshold: Optional[int] = None,
    high_confidence: Optional[int] = None,
) -> List[TransformSuggestion]:
    """
    Pair removed fields with added fields that look like renames.

    Each field participates in at most one suggestion; the highest scoring
    pairs win.
    """
    threshold = settings.rename_suggestion_threshold if threshold is None else threshold
    high_confidence = settings.rename_high_confidence_threshold if high_confidence is None else high_confidence

    candidates = []
    for old_path in removed_paths:
        for new_path in added_paths:
            confidence = rename_confidence(old_path, new_path, old_flat[old_path], new_flat[new_path])
            if confidence >= threshold:
                candidates.append((confidence, old_path, new_path))

    candidates.sort(key=lambda item: (-item[0], item[1], item[2]))
    used_old: Set[str] = set()
    used_new: Set[str] = set()
    suggestions: List[TransformSuggestion] = []
    for confidence, old_path, new_path in candidates:
        if old_path in used_old or new_path in used_new:
            continue
        used_old.add(old_path)
        used_new.add(new_path)
        reason = (
            f"Field '{old_path}' disappeared while '{new_path}' appeared "
            f"with compatible data ({confidence}% confidence)"
        )
        suggestions.append(
            TransformSuggestion(
                from_field=new_path,
                to_field=old_path,
                confidence=confidence,
                reason=reason,
                high_confidence=confidence >= high_confidence,
            )
        )
    return suggestions


# --- approval ---------------------------------------------------------------

def decide_approval(
    comparison: SchemaComparison,
    schema_config: Optional[SchemaConfig] = None,
    processing_mode: Optional[str] = None,
    *,
    is_initial: bool = False,
) -> ApprovalDecision:
    """
    Decide whether a detected schema is auto-approved, gated, or rejected.

    An explicit processing mode (job override, then dataset config) wins;
    otherwise the dataset's locked / auto-approve / auto-grow flags decide,
    whether or not the schema changed.
    The first schema of a dataset has nothing to drift from, so modes accept it.
    """
    schema_config = schema_config or SchemaConfig()
    mode = processing_mode or schema_config.processing_mode

    if mode:
        if is_initial:
            return ApprovalDecision("approve", "Initial schema for dataset", mode)
        if mode == "strict":
            if comparison.has_changes:
                return ApprovalDecision(
                    "fail",
                    f"Strict schema mode rejects schema changes ({len(comparison.changes)} detected)",
                    mode,
                )
            return ApprovalDecision("approve", None, mode)
        if comparison.is_breaking:
            paths = ", ".join(change.path for change in comparison.breaking_changes)
            return ApprovalDecision("fail", f"{mode.capitalize()} schema mode rejects breaking changes: {paths}", mode)
        if mode == "additive" and comparison.has_high_confidence_rename:
            return ApprovalDecision("require_approval", "Possible field rename detected; manual review required", mode)
        return ApprovalDecision("approve", None, mode)

    reasons = []
    if comparison.is_breaking:
        reasons.append("Breaking schema changes detected")
    if schema_config.locked:
        reasons.append("Dataset schema is locked")
    if not schema_config.auto_approve_non_breaking:
        reasons.append("Dataset requires approval for every import")
    if not schema_config.auto_grow and comparison.new_fields:
        reasons.append("Dataset does not auto-grow; new fields need approval")

    if reasons:
        return ApprovalDecision("require_approval", "; ".join(reasons))
    return ApprovalDecision("approve")
