"""
Test fixtures for CohortWatch.

Provides:
- In-memory SQLite record store (one shared connection per test)
- A seeded institution and record factories
- A scriptable fake message dispatcher
- Executor / engine / alert manager wired to the test store
"""

import asyncio
import os
from datetime import datetime, timedelta
from typing import Any, Optional

# Configure before importing the app
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from cohortwatch.db.engine import Base
from cohortwatch.db import models  # noqa: F401 : register all models
from cohortwatch.db.store import RecordStore
from cohortwatch.monitoring.actions import ActionExecutor
from cohortwatch.monitoring.dispatch import DispatchResult, DispatchStatus
from cohortwatch.monitoring.engine import MonitoringEngine
from cohortwatch.monitoring.notifications import AlertManager
from cohortwatch.monitoring.schemas import (
    AutomationRule,
    Counselor,
    LifecycleStage,
    Obligation,
    Student,
    StudentDocument,
)

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"
INSTITUTION_ID = "inst_alpha"

# Fixed evaluation clock for deterministic signals
NOW = datetime(2026, 3, 2, 12, 0, 0)


def make_student(
    student_id: str = "stu_001",
    *,
    institution_id: str = INSTITUTION_ID,
    name: Optional[str] = None,
    email: Optional[str] = None,
    risk: Optional[float] = 20.0,
    engagement: Optional[float] = 80.0,
    inactive_days: Optional[int] = 1,
    stage: LifecycleStage = LifecycleStage.ACTIVE,
    counselor_id: Optional[str] = None,
    documents: Optional[list[tuple[str, str]]] = None,
) -> Student:
    return Student(
        id=student_id,
        institution_id=institution_id,
        name=name if name is not None else f"Student {student_id}",
        email=email if email is not None else f"{student_id}@example.edu",
        risk_score=risk,
        engagement_score=engagement,
        last_activity=None if inactive_days is None else NOW - timedelta(days=inactive_days),
        stage=stage,
        counselor_id=counselor_id,
        documents=[StudentDocument(name=n, status=s) for n, s in (documents or [])],
    )


_rule_seq = 0


def make_rule(
    rule_id: str,
    condition: Optional[str] = "risk_high",
    *,
    institution_id: str = INSTITUTION_ID,
    trigger_type: str = "condition_based",
    action_type: str = "create_alert",
    action_config: Optional[dict[str, Any]] = None,
    trigger_extra: Optional[dict[str, Any]] = None,
    is_active: bool = True,
    created_at: Optional[datetime] = None,
) -> AutomationRule:
    global _rule_seq
    _rule_seq += 1
    trigger_config: dict[str, Any] = {"condition": condition} if condition else {}
    trigger_config.update(trigger_extra or {})
    return AutomationRule(
        id=rule_id,
        institution_id=institution_id,
        name=f"Rule {rule_id}",
        trigger_type=trigger_type,
        trigger_config=trigger_config,
        action_type=action_type,
        action_config=action_config or {},
        is_active=is_active,
        created_at=created_at or (NOW - timedelta(days=30) + timedelta(seconds=_rule_seq)),
    )


class FakeDispatcher:
    """
    Records every send. Fails the first `fail_times` sends; when `gate` is
    set, each send waits for it (and sets `entered` first).
    """

    def __init__(self, fail_times: int = 0):
        self.fail_times = fail_times
        self.sent: list[tuple[str, str, str]] = []
        self.calls = 0
        self.gate: Optional[asyncio.Event] = None
        self.entered = asyncio.Event()
        self.on_send = None

    async def send(self, to: str, subject: str, body: str) -> DispatchResult:
        self.calls += 1
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.on_send is not None:
            self.on_send()
        if self.calls <= self.fail_times:
            return DispatchResult(status=DispatchStatus.FAILED, detail="relay unavailable")
        self.sent.append((to, subject, body))
        return DispatchResult(status=DispatchStatus.DELIVERED, detail="ok")


class Seeder:
    """Writes records straight into the test store."""

    def __init__(self, store: RecordStore, institution_id: str = INSTITUTION_ID):
        self.store = store
        self.institution_id = institution_id

    async def students(self, *students: Student) -> list[Student]:
        saved = []
        async with self.store.session() as uow:
            for student in students:
                saved.append(await uow.add_student(student))
        return saved

    async def student(self, *args, **kwargs) -> Student:
        return (await self.students(make_student(*args, **kwargs)))[0]

    async def rules(self, *rules: AutomationRule) -> list[AutomationRule]:
        saved = []
        async with self.store.session() as uow:
            for rule in rules:
                saved.append(await uow.add_rule(rule))
        return saved

    async def rule(self, *args, **kwargs) -> AutomationRule:
        return (await self.rules(make_rule(*args, **kwargs)))[0]

    async def counselor(
        self,
        counselor_id: str,
        capacity: Optional[int] = None,
        is_active: bool = True,
    ) -> Counselor:
        counselor = Counselor(
            id=counselor_id,
            institution_id=self.institution_id,
            name=f"Counselor {counselor_id}",
            email=f"{counselor_id}@example.edu",
            capacity=capacity,
            is_active=is_active,
        )
        async with self.store.session() as uow:
            await uow.add_counselor(counselor)
        return counselor

    async def obligation(self, obligation: Obligation) -> str:
        async with self.store.session() as uow:
            return await uow.add_obligation(self.institution_id, obligation)


# ── Database ──────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def db_engine():
    """In-memory SQLite; StaticPool keeps one connection so data persists."""
    eng = create_async_engine(TEST_DB_URL, echo=False, poolclass=StaticPool)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def store(db_engine) -> RecordStore:
    factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    record_store = RecordStore(factory)
    async with record_store.session() as uow:
        await uow.add_institution(INSTITUTION_ID, "Alpha University")
        await uow.add_institution("inst_beta", "Beta College")
    return record_store


@pytest_asyncio.fixture
async def seed(store) -> Seeder:
    return Seeder(store)


# ── Services ──────────────────────────────────────────────────────────


@pytest.fixture
def dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


@pytest.fixture
def executor(store, dispatcher) -> ActionExecutor:
    return ActionExecutor(store, dispatcher, retry_delay=0)


@pytest.fixture
def engine(store, executor) -> MonitoringEngine:
    return MonitoringEngine(store, executor, max_workers=4, max_matches=5000, rescore=False)


@pytest.fixture
def alert_manager(store) -> AlertManager:
    return AlertManager(store)
