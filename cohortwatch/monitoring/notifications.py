"""
Alert/Notification Manager: alert lifecycle and read state.

created (unread) → read is one-way; nothing else on an alert is ever
edited. New occurrences of a condition create new alerts.
"""

from typing import Optional, Sequence

import structlog

from cohortwatch.db.store import RecordStore
from cohortwatch.exceptions import NotFoundError
from cohortwatch.monitoring.schemas import Alert

logger = structlog.get_logger(__name__)


class AlertManager:
    """Read/unread bookkeeping over the record store."""

    def __init__(self, store: RecordStore):
        self.store = store

    async def create_alert(self, alert: Alert) -> Alert:
        async with self.store.session() as uow:
            await uow.insert_alert(alert)
        logger.info(
            "alert_created",
            institution_id=alert.institution_id,
            alert_id=alert.id,
            student_id=alert.student_id,
            severity=alert.severity.value,
        )
        return alert

    async def list_alerts(
        self,
        institution_id: str,
        unread_only: bool = False,
        student_ids: Optional[Sequence[str]] = None,
        limit: int = 50,
    ) -> list[Alert]:
        async with self.store.session() as uow:
            return await uow.list_alerts(
                institution_id, unread_only=unread_only, student_ids=student_ids, limit=limit
            )

    async def unread_count(
        self, institution_id: str, student_ids: Optional[Sequence[str]] = None
    ) -> int:
        async with self.store.session() as uow:
            return await uow.count_unread(institution_id, student_ids)

    async def mark_read(self, institution_id: str, alert_id: str) -> Alert:
        """Mark one alert read. Idempotent; unknown ids raise NotFoundError."""
        async with self.store.session() as uow:
            alert = await uow.get_alert(institution_id, alert_id)
            if alert is None:
                raise NotFoundError(
                    f"Alert '{alert_id}' not found",
                    details={"alert_id": alert_id},
                )
            if not alert.read:
                await uow.mark_alerts_read(institution_id, [alert_id])
                alert = alert.model_copy(update={"read": True})
        logger.info("alert_marked_read", institution_id=institution_id, alert_id=alert_id)
        return alert

    async def mark_all_read(
        self, institution_id: str, student_ids: Optional[Sequence[str]] = None
    ) -> int:
        """
        Mark every alert unread at call time as read.

        The unread ids are snapshotted and exactly those are flipped, in one
        transaction, so alerts created concurrently stay unread.

        Returns:
            Number of alerts flipped
        """
        async with self.store.session() as uow:
            snapshot = await uow.unread_alert_ids(institution_id, student_ids)
            updated = await uow.mark_alerts_read(institution_id, snapshot)
        logger.info(
            "alerts_marked_read",
            institution_id=institution_id,
            snapshot=len(snapshot),
            updated=updated,
        )
        return updated
