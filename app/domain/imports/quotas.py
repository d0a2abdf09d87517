"""
Per-user import quotas derived from trust levels.

Limits of -1 mean unlimited. ``User.quota_overrides`` may replace any limit
for a single user.
"""
import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, Optional

from sqlalchemy.orm import Session

from app.db.models import User, UserUsage
from app.domain.imports.exceptions import ImportPipelineError

logger = logging.getLogger(__name__)

UNLIMITED = -1


class TrustLevel(IntEnum):
    UNTRUSTED = 0
    BASIC = 1
    REGULAR = 2
    TRUSTED = 3
    POWER_USER = 4
    UNLIMITED = 5


class QuotaType:
    EVENTS_PER_IMPORT = "events_per_import"
    TOTAL_EVENTS = "total_events"


class UsageType:
    TOTAL_EVENTS_CREATED = "total_events_created"
    IMPORT_JOBS_COMPLETED = "import_jobs_completed"


DEFAULT_QUOTAS: Dict[int, Dict[str, int]] = {
    TrustLevel.UNTRUSTED: {QuotaType.EVENTS_PER_IMPORT: 100, QuotaType.TOTAL_EVENTS: 100},
    TrustLevel.BASIC: {QuotaType.EVENTS_PER_IMPORT: 1_000, QuotaType.TOTAL_EVENTS: 5_000},
    TrustLevel.REGULAR: {QuotaType.EVENTS_PER_IMPORT: 10_000, QuotaType.TOTAL_EVENTS: 50_000},
    TrustLevel.TRUSTED: {QuotaType.EVENTS_PER_IMPORT: 50_000, QuotaType.TOTAL_EVENTS: 500_000},
    TrustLevel.POWER_USER: {QuotaType.EVENTS_PER_IMPORT: 200_000, QuotaType.TOTAL_EVENTS: 2_000_000},
    TrustLevel.UNLIMITED: {QuotaType.EVENTS_PER_IMPORT: UNLIMITED, QuotaType.TOTAL_EVENTS: UNLIMITED},
}

# Which usage counter a quota type is measured against (None: per-request amount)
_QUOTA_USAGE = {
    QuotaType.EVENTS_PER_IMPORT: None,
    QuotaType.TOTAL_EVENTS: UsageType.TOTAL_EVENTS_CREATED,
}


class QuotaExceededError(ImportPipelineError):
    """Raised when an import would exceed a user's quota."""

    def __init__(self, quota_type: str, limit: int, attempted: int, message: str = None):
        self.quota_type = quota_type
        self.limit = limit
        self.attempted = attempted
        self.message = message or f"Quota {quota_type} exceeded ({attempted} > {limit})"
        super().__init__(self.message)


@dataclass
class QuotaCheckResult:
    allowed: bool
    current: int
    limit: int
    remaining: int


class QuotaService:
    def __init__(self, session: Session):
        self.session = session

    def get_limit(self, user: User, quota_type: str) -> int:
        overrides = user.quota_overrides or {}
        if quota_type in overrides and overrides[quota_type] is not None:
            return int(overrides[quota_type])
        level = user.trust_level if user.trust_level in DEFAULT_QUOTAS else TrustLevel.REGULAR
        return DEFAULT_QUOTAS[level][quota_type]

    def _get_usage(self, user_id: int) -> UserUsage:
        usage = self.session.query(UserUsage).filter(UserUsage.user_id == user_id).one_or_none()
        if usage is None:
            usage = UserUsage(user_id=user_id, total_events_created=0, import_jobs_completed=0)
            self.session.add(usage)
            self.session.flush()
        return usage

    def get_current_usage(self, user: User, usage_type: str) -> int:
        usage = self._get_usage(user.id)
        return int(getattr(usage, usage_type) or 0)

    def check_quota(self, user: Optional[User], quota_type: str, amount: int = 1) -> QuotaCheckResult:
        """Return whether ``amount`` more units fit under the user's ``quota_type`` limit."""
        if user is None:
            return QuotaCheckResult(allowed=True, current=0, limit=UNLIMITED, remaining=UNLIMITED)

        limit = self.get_limit(user, quota_type)
        usage_type = _QUOTA_USAGE.get(quota_type)
        current = self.get_current_usage(user, usage_type) if usage_type else 0

        if limit == UNLIMITED:
            return QuotaCheckResult(allowed=True, current=current, limit=limit, remaining=UNLIMITED)

        if usage_type is None:
            allowed = amount <= limit
            remaining = max(limit - amount, 0)
            return QuotaCheckResult(allowed=allowed, current=amount, limit=limit, remaining=remaining)

        allowed = current + amount <= limit
        return QuotaCheckResult(allowed=allowed, current=current, limit=limit, remaining=max(limit - current, 0))

    def validate_event_creation(self, user: Optional[User], event_count: int) -> None:
        """Raise ``QuotaExceededError`` if ``event_count`` new events would break any limit."""
        per_import = self.check_quota(user, QuotaType.EVENTS_PER_IMPORT, event_count)
        if not per_import.allowed:
            raise QuotaExceededError(
                QuotaType.EVENTS_PER_IMPORT,
                per_import.limit,
                event_count,
                f"Import exceeds maximum events per import limit ({event_count} > {per_import.limit}). "
                "Please split your data into smaller files.",
            )

        total = self.check_quota(user, QuotaType.TOTAL_EVENTS, event_count)
        if not total.allowed:
            raise QuotaExceededError(
                QuotaType.TOTAL_EVENTS,
                total.limit,
                event_count,
                f"Creating {event_count} events would exceed your total events limit "
                f"({total.current + event_count} > {total.limit}).",
            )

    def increment_usage(self, user: Optional[User], usage_type: str, amount: int = 1) -> None:
        if user is None or amount <= 0:
            return
        usage = self._get_usage(user.id)
        setattr(usage, usage_type, int(getattr(usage, usage_type) or 0) + amount)
        logger.info("Incremented %s for user %s by %d", usage_type, user.id, amount)
