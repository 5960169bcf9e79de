"""
Record Store: transactional access to students, rules, alerts,
obligations, communications, and the action log.

Usage:
    store = RecordStore(get_session_factory())
    async with store.session() as uow:
        students = await uow.list_students(institution_id)
        await uow.insert_alert(alert)
    # committed on exit, rolled back on exception

Every query is filtered by institution_id. SQLite admits one writer at a
time, so on that dialect units of work are serialized in-process.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncGenerator, Optional, Sequence

import structlog
from pydantic import ValidationError
from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cohortwatch.db.models import (
    ActionLogModel,
    AlertModel,
    AutomationRuleModel,
    CommunicationModel,
    CounselorModel,
    InstitutionModel,
    ObligationModel,
    StudentModel,
)
from cohortwatch.exceptions import DataIntegrityError
from cohortwatch.monitoring.schemas import (
    Alert,
    AutomationRule,
    Communication,
    Counselor,
    Obligation,
    ObligationStatus,
    Student,
    new_id,
    utcnow,
)

logger = structlog.get_logger(__name__)


def _to_obligation(row: ObligationModel) -> Obligation:
    # Unknown persisted statuses read as "warning"
    try:
        status = ObligationStatus(row.status)
    except ValueError:
        status = ObligationStatus.WARNING
    return Obligation(
        id=row.id,
        student_id=row.student_id,
        name=row.name,
        requirement=row.requirement,
        current_value=row.current_value,
        status=status,
        consequence=row.consequence,
        due_date=row.due_date,
    )


def _to_student(row: StudentModel) -> Student:
    try:
        return Student.model_validate(row)
    except ValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        raise DataIntegrityError(
            f"Student '{row.id}' has invalid fields: {', '.join(fields)}",
            details={"student_id": row.id, "fields": fields},
        ) from e


class StoreSession:
    """Unit of work bound to one AsyncSession."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ── Institutions ───────────────────────────────────────────────────

    async def add_institution(
        self, institution_id: str, name: str, settings: Optional[dict] = None
    ) -> None:
        self.session.add(
            InstitutionModel(id=institution_id, name=name, settings=settings or {})
        )
        await self.session.flush()

    async def get_institution_settings(self, institution_id: str) -> Optional[dict]:
        result = await self.session.execute(
            select(InstitutionModel.settings).where(InstitutionModel.id == institution_id)
        )
        row = result.one_or_none()
        if row is None:
            return None
        return dict(row[0] or {})

    async def list_institution_ids(self) -> list[str]:
        result = await self.session.execute(
            select(InstitutionModel.id).order_by(InstitutionModel.id)
        )
        return list(result.scalars().all())

    # ── Students ───────────────────────────────────────────────────────

    async def add_student(self, student: Student) -> Student:
        now = utcnow()
        row = StudentModel(
            id=student.id,
            institution_id=student.institution_id,
            name=student.name,
            email=student.email,
            engagement_score=student.engagement_score,
            risk_score=student.risk_score,
            stage=student.stage.value,
            last_activity=student.last_activity,
            counselor_id=student.counselor_id,
            documents=[d.model_dump() for d in student.documents],
            version=1,
            created_at=student.created_at or now,
            updated_at=now,
        )
        self.session.add(row)
        await self.session.flush()
        return Student.model_validate(row)

    async def list_students(
        self,
        institution_id: str,
        rejected: Optional[list[DataIntegrityError]] = None,
    ) -> list[Student]:
        """
        Students of an institution ordered by id.

        Rows that fail validation are left out; each one is logged and, when
        `rejected` is given, appended to it as a DataIntegrityError.
        """
        result = await self.session.execute(
            select(StudentModel)
            .where(StudentModel.institution_id == institution_id)
            .order_by(StudentModel.id)
        )
        students: list[Student] = []
        for row in result.scalars().all():
            try:
                students.append(_to_student(row))
            except DataIntegrityError as e:
                logger.warning(
                    "student_row_invalid",
                    institution_id=institution_id,
                    student_id=row.id,
                    fields=e.details["fields"],
                )
                if rejected is not None:
                    rejected.append(e)
        return students

    async def get_student(self, institution_id: str, student_id: str) -> Optional[Student]:
        """The student, None when absent; DataIntegrityError on an invalid row."""
        result = await self.session.execute(
            select(StudentModel).where(
                and_(
                    StudentModel.institution_id == institution_id,
                    StudentModel.id == student_id,
                )
            )
        )
        row = result.scalar_one_or_none()
        return _to_student(row) if row is not None else None

    async def update_student(
        self,
        institution_id: str,
        student_id: str,
        values: dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Optional[int]:
        """
        Write student fields and bump the version.

        With expected_version set this is a compare-and-set: returns None when
        the stored version has moved on. Returns the new version otherwise.
        """
        values = {k: (v.value if hasattr(v, "value") else v) for k, v in values.items()}
        conditions = [
            StudentModel.institution_id == institution_id,
            StudentModel.id == student_id,
        ]
        if expected_version is not None:
            conditions.append(StudentModel.version == expected_version)

        result = await self.session.execute(
            update(StudentModel)
            .where(and_(*conditions))
            .values(**values, version=StudentModel.version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None

        version = await self.session.execute(
            select(StudentModel.version).where(
                and_(
                    StudentModel.institution_id == institution_id,
                    StudentModel.id == student_id,
                )
            )
        )
        return version.scalar_one()

    # ── Counselors ─────────────────────────────────────────────────────

    async def add_counselor(self, counselor: Counselor) -> None:
        self.session.add(CounselorModel(**counselor.model_dump()))
        await self.session.flush()

    async def list_counselors(self, institution_id: str) -> list[Counselor]:
        result = await self.session.execute(
            select(CounselorModel)
            .where(CounselorModel.institution_id == institution_id)
            .order_by(CounselorModel.id)
        )
        return [Counselor.model_validate(r) for r in result.scalars().all()]

    async def counselor_loads(self, institution_id: str) -> dict[str, int]:
        """Number of students currently assigned to each counselor."""
        result = await self.session.execute(
            select(StudentModel.counselor_id, func.count())
            .where(
                and_(
                    StudentModel.institution_id == institution_id,
                    StudentModel.counselor_id.is_not(None),
                )
            )
            .group_by(StudentModel.counselor_id)
        )
        return {cid: int(n) for cid, n in result.all()}

    # ── Rules ──────────────────────────────────────────────────────────

    async def add_rule(self, rule: AutomationRule) -> AutomationRule:
        row = AutomationRuleModel(**rule.model_dump())
        self.session.add(row)
        await self.session.flush()
        return AutomationRule.model_validate(row)

    async def list_rules(
        self, institution_id: str, active_only: bool = False
    ) -> list[AutomationRule]:
        stmt = select(AutomationRuleModel).where(
            AutomationRuleModel.institution_id == institution_id
        )
        if active_only:
            stmt = stmt.where(AutomationRuleModel.is_active.is_(True))
        stmt = stmt.order_by(AutomationRuleModel.created_at, AutomationRuleModel.id)
        result = await self.session.execute(stmt)
        return [AutomationRule.model_validate(r) for r in result.scalars().all()]

    async def get_rule(self, institution_id: str, rule_id: str) -> Optional[AutomationRule]:
        result = await self.session.execute(
            select(AutomationRuleModel).where(
                and_(
                    AutomationRuleModel.institution_id == institution_id,
                    AutomationRuleModel.id == rule_id,
                )
            )
        )
        row = result.scalar_one_or_none()
        return AutomationRule.model_validate(row) if row is not None else None

    # ── Obligations ────────────────────────────────────────────────────

    async def add_obligation(self, institution_id: str, obligation: Obligation) -> str:
        obligation_id = obligation.id or new_id("obl")
        self.session.add(
            ObligationModel(
                id=obligation_id,
                institution_id=institution_id,
                student_id=obligation.student_id,
                name=obligation.name,
                requirement=obligation.requirement,
                current_value=obligation.current_value,
                status=obligation.status.value,
                consequence=obligation.consequence,
                due_date=obligation.due_date,
            )
        )
        await self.session.flush()
        return obligation_id

    async def list_obligations(
        self, institution_id: str, student_ids: Optional[Sequence[str]] = None
    ) -> dict[str, list[Obligation]]:
        """Persisted obligations grouped by student, in creation order."""
        stmt = select(ObligationModel).where(
            ObligationModel.institution_id == institution_id
        )
        if student_ids is not None:
            stmt = stmt.where(ObligationModel.student_id.in_(list(student_ids)))
        stmt = stmt.order_by(ObligationModel.created_at, ObligationModel.id)
        result = await self.session.execute(stmt)

        grouped: dict[str, list[Obligation]] = {}
        for row in result.scalars().all():
            grouped.setdefault(row.student_id, []).append(_to_obligation(row))
        return grouped

    # ── Action log (dedup window) ──────────────────────────────────────

    async def has_recent_action(
        self, institution_id: str, student_id: str, rule_id: str, since: datetime
    ) -> bool:
        result = await self.session.execute(
            select(func.count())
            .select_from(ActionLogModel)
            .where(
                and_(
                    ActionLogModel.institution_id == institution_id,
                    ActionLogModel.student_id == student_id,
                    ActionLogModel.rule_id == rule_id,
                    ActionLogModel.executed_at > since,
                )
            )
        )
        return result.scalar_one() > 0

    async def record_action(
        self,
        institution_id: str,
        student_id: str,
        rule_id: str,
        action_type: str,
        dedup_key: str,
        executed_at: datetime,
    ) -> None:
        self.session.add(
            ActionLogModel(
                institution_id=institution_id,
                student_id=student_id,
                rule_id=rule_id,
                action_type=action_type,
                dedup_key=dedup_key,
                executed_at=executed_at,
            )
        )
        await self.session.flush()

    # ── Alerts ─────────────────────────────────────────────────────────

    async def insert_alert(self, alert: Alert) -> Alert:
        values = alert.model_dump()
        values["severity"] = alert.severity.value
        self.session.add(AlertModel(**values))
        await self.session.flush()
        return alert

    async def get_alert(self, institution_id: str, alert_id: str) -> Optional[Alert]:
        result = await self.session.execute(
            select(AlertModel).where(
                and_(AlertModel.institution_id == institution_id, AlertModel.id == alert_id)
            )
        )
        row = result.scalar_one_or_none()
        return Alert.model_validate(row) if row is not None else None

    async def list_alerts(
        self,
        institution_id: str,
        unread_only: bool = False,
        student_ids: Optional[Sequence[str]] = None,
        limit: int = 50,
    ) -> list[Alert]:
        stmt = select(AlertModel).where(AlertModel.institution_id == institution_id)
        if unread_only:
            stmt = stmt.where(AlertModel.read.is_(False))
        if student_ids is not None:
            stmt = stmt.where(AlertModel.student_id.in_(list(student_ids)))
        stmt = stmt.order_by(AlertModel.created_at.desc(), AlertModel.id).limit(limit)
        result = await self.session.execute(stmt)
        return [Alert.model_validate(r) for r in result.scalars().all()]

    async def unread_alert_ids(
        self, institution_id: str, student_ids: Optional[Sequence[str]] = None
    ) -> list[str]:
        stmt = select(AlertModel.id).where(
            and_(AlertModel.institution_id == institution_id, AlertModel.read.is_(False))
        )
        if student_ids is not None:
            stmt = stmt.where(AlertModel.student_id.in_(list(student_ids)))
        result = await self.session.execute(stmt.order_by(AlertModel.id))
        return list(result.scalars().all())

    async def count_unread(
        self, institution_id: str, student_ids: Optional[Sequence[str]] = None
    ) -> int:
        stmt = (
            select(func.count())
            .select_from(AlertModel)
            .where(and_(AlertModel.institution_id == institution_id, AlertModel.read.is_(False)))
        )
        if student_ids is not None:
            stmt = stmt.where(AlertModel.student_id.in_(list(student_ids)))
        result = await self.session.execute(stmt)
        return result.scalar_one()

    async def mark_alerts_read(self, institution_id: str, alert_ids: Sequence[str]) -> int:
        """Flip read on exactly these ids (only those still unread)."""
        if not alert_ids:
            return 0
        result = await self.session.execute(
            update(AlertModel)
            .where(
                and_(
                    AlertModel.institution_id == institution_id,
                    AlertModel.id.in_(list(alert_ids)),
                    AlertModel.read.is_(False),
                )
            )
            .values(read=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    # ── Communications ─────────────────────────────────────────────────

    async def insert_communication(self, communication: Communication) -> Communication:
        values = communication.model_dump()
        values["status"] = communication.status.value
        self.session.add(CommunicationModel(**values))
        await self.session.flush()
        return communication

    async def list_communications(
        self, institution_id: str, student_id: Optional[str] = None
    ) -> list[Communication]:
        stmt = select(CommunicationModel).where(
            CommunicationModel.institution_id == institution_id
        )
        if student_id is not None:
            stmt = stmt.where(CommunicationModel.student_id == student_id)
        result = await self.session.execute(
            stmt.order_by(CommunicationModel.created_at, CommunicationModel.id)
        )
        return [Communication.model_validate(r) for r in result.scalars().all()]


class RecordStore:
    """Factory for units of work over the record store."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        serialize: Optional[bool] = None,
    ):
        self._session_factory = session_factory
        if serialize is None:
            bind = session_factory.kw.get("bind")
            serialize = bind is not None and bind.dialect.name == "sqlite"
        self._write_lock: Optional[asyncio.Lock] = asyncio.Lock() if serialize else None

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[StoreSession, None]:
        """Unit of work: commit on success, rollback on exception."""
        if self._write_lock is None:
            async with self._unit_of_work() as uow:
                yield uow
            return

        async with self._write_lock:
            async with self._unit_of_work() as uow:
                yield uow

    @asynccontextmanager
    async def _unit_of_work(self) -> AsyncGenerator[StoreSession, None]:
        async with self._session_factory() as session:
            try:
                yield StoreSession(session)
                await session.commit()
            except Exception:
                await session.rollback()
                raise
