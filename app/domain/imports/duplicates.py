"""
Duplicate detection for one import job.

Internal duplicates repeat a unique ID already seen earlier in the same
file; external duplicates carry an ID that already exists on an event in
the target dataset. Both are keyed by 0-based data row number.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from sqlalchemy.orm import Session

from app.api.schemas.datasets import IdStrategyConfig, TransformConfig
from app.db.models import Event
from app.domain.imports.dataset_config import transformed_rows
from app.domain.imports.id_generation import UniqueIdError, generate_unique_id

logger = logging.getLogger(__name__)

STRATEGY_DISABLED = "disabled"


@dataclass
class DuplicateAnalysis:
    unique_id_map: Dict[str, int] = field(default_factory=dict)
    internal: List[Dict[str, Any]] = field(default_factory=list)
    external: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    total_rows: int = 0

    def add_rows(
        self,
        rows: List[Dict[str, Any]],
        start_row: int,
        strategy: IdStrategyConfig,
        transforms: List[TransformConfig],
    ) -> None:
        for index, row in enumerate(transformed_rows(rows, transforms)):
            row_number = start_row + index
            self.total_rows += 1
            try:
                unique_id = generate_unique_id(row, strategy)
            except UniqueIdError as exc:
                self.errors.append({"row": row_number, "error": exc.message})
                continue

            first = self.unique_id_map.get(unique_id)
            if first is None:
                self.unique_id_map[unique_id] = row_number
            else:
                self.internal.append(
                    {"row_number": row_number, "unique_id": unique_id, "first_occurrence": first}
                )

    def summary(self) -> Dict[str, int]:
        return {
            "total_rows": self.total_rows,
            "unique_rows": len(self.unique_id_map),
            "internal_duplicates": len(self.internal),
            "external_duplicates": len(self.external),
        }

    def to_dict(self, strategy: str) -> Dict[str, Any]:
        return {
            "strategy": strategy,
            "internal": self.internal,
            "external": self.external,
            "summary": self.summary(),
        }


def analyze_file(
    read_rows: Callable[[int, int], List[Dict[str, Any]]],
    batch_size: int,
    strategy: IdStrategyConfig,
    transforms: List[TransformConfig],
) -> DuplicateAnalysis:
    """Read the whole source in ``batch_size`` windows and collect internal duplicates."""
    analysis = DuplicateAnalysis()
    batch_number = 0
    while True:
        start_row = batch_number * batch_size
        rows = read_rows(start_row, batch_size)
        if not rows:
            break
        analysis.add_rows(rows, start_row, strategy, transforms)
        batch_number += 1
    return analysis


def find_external_duplicates(
    session: Session,
    dataset_id: int,
    unique_id_map: Dict[str, int],
    chunk_size: int = 1000,
) -> List[Dict[str, Any]]:
    """Match first occurrences against existing events, ``chunk_size`` IDs per query."""
    unique_ids = list(unique_id_map)
    external: List[Dict[str, Any]] = []
    seen: Set[str] = set()

    for offset in range(0, len(unique_ids), chunk_size):
        chunk = unique_ids[offset:offset + chunk_size]
        matches = (
            session.query(Event.id, Event.unique_id)
            .filter(Event.dataset_id == dataset_id, Event.unique_id.in_(chunk))
            .order_by(Event.unique_id, Event.version.desc())
            .all()
        )
        for event_id, unique_id in matches:
            if unique_id in seen:
                continue
            seen.add(unique_id)
            external.append(
                {
                    "row_number": unique_id_map[unique_id],
                    "unique_id": unique_id,
                    "existing_event_id": event_id,
                }
            )

    external.sort(key=lambda item: item["row_number"])
    return external


def disabled_result(total_rows: int) -> Dict[str, Any]:
    return {
        "strategy": STRATEGY_DISABLED,
        "internal": [],
        "external": [],
        "summary": {
            "total_rows": total_rows,
            "unique_rows": total_rows,
            "internal_duplicates": 0,
            "external_duplicates": 0,
        },
    }


def rows_to_skip(duplicates: Optional[Dict[str, Any]], conflict_strategy: str = "skip") -> Set[int]:
    """
    Row numbers the later stages must not materialize.

    Internal duplicates are always skipped. External duplicates are skipped
    only under the ``skip`` strategy; ``update`` and ``version`` still need them.
    """
    if not duplicates:
        return set()
    skip = {item["row_number"] for item in duplicates.get("internal") or []}
    if conflict_strategy == "skip":
        skip.update(item["row_number"] for item in duplicates.get("external") or [])
    return skip
