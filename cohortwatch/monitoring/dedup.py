"""
Dedup Window: suppress repeat actions for the same (student, rule).

Two layers, both backed by the action log:
1. Lookup: an action logged for (student, rule) within the last `window`
   suppresses the new one
2. Unique key: "institution:student:rule:bucket" (bucket = epoch
   seconds // window) is written with the action's effects, so two racing
   writers in the same bucket cannot both commit
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog

from cohortwatch.config import settings
from cohortwatch.db.store import StoreSession

logger = structlog.get_logger(__name__)


class DedupWindow:
    """Idempotency window over the persisted action log."""

    def __init__(self, window: Optional[timedelta] = None):
        self.window = window or timedelta(hours=settings.dedup_window_hours)

    def bucket(self, now: datetime) -> int:
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return int(now.timestamp() // self.window.total_seconds())

    def key(self, institution_id: str, student_id: str, rule_id: str, now: datetime) -> str:
        return f"{institution_id}:{student_id}:{rule_id}:{self.bucket(now)}"

    async def is_suppressed(
        self,
        uow: StoreSession,
        institution_id: str,
        student_id: str,
        rule_id: str,
        now: datetime,
    ) -> bool:
        suppressed = await uow.has_recent_action(
            institution_id, student_id, rule_id, since=now - self.window
        )
        if suppressed:
            logger.debug(
                "action_suppressed_dedup",
                institution_id=institution_id,
                student_id=student_id,
                rule_id=rule_id,
                window_hours=self.window.total_seconds() / 3600,
            )
        return suppressed

    async def record(
        self,
        uow: StoreSession,
        institution_id: str,
        student_id: str,
        rule_id: str,
        action_type: str,
        now: datetime,
    ) -> None:
        await uow.record_action(
            institution_id,
            student_id,
            rule_id,
            action_type,
            dedup_key=self.key(institution_id, student_id, rule_id, now),
            executed_at=now,
        )
