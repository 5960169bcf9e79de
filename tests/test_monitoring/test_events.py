"""
Tests for the change-event stream and evaluation worker.
"""

import asyncio

import pytest

from cohortwatch.monitoring.events import ChangeEventStream, EvaluationWorker
from cohortwatch.monitoring.schemas import ChangeEvent
from conftest import INSTITUTION_ID, make_student


def _event(student_id="stu_a") -> ChangeEvent:
    return ChangeEvent(institution_id=INSTITUTION_ID, student_id=student_id)


class TestStream:
    @pytest.mark.asyncio
    async def test_publish_and_get(self):
        stream = ChangeEventStream(maxsize=10)
        await stream.publish(_event())
        assert stream.pending == 1
        event = await stream.get()
        assert event.student_id == "stu_a"
        assert stream.pending == 0

    def test_publish_nowait_full(self):
        stream = ChangeEventStream(maxsize=1)
        assert stream.publish_nowait(_event("stu_a")) is True
        assert stream.publish_nowait(_event("stu_b")) is False
        assert stream.pending == 1


class TestWorker:
    @pytest.mark.asyncio
    async def test_drains_stream_into_engine(self, store, seed, engine):
        await seed.students(make_student("stu_a", risk=85))
        await seed.rule("r_high", "risk_high")
        stream = ChangeEventStream(maxsize=10)
        worker = EvaluationWorker(engine, stream)

        worker.start()
        assert worker.running
        await stream.publish(_event())
        await stream.publish(_event())
        await asyncio.wait_for(stream.join(), timeout=5)
        await worker.stop()

        assert not worker.running
        assert worker.processed == 2
        async with store.session() as uow:
            alerts = await uow.list_alerts(INSTITUTION_ID)
        assert len(alerts) == 1

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_worker(self, store, seed, engine):
        await seed.students(make_student("stu_a"))
        stream = ChangeEventStream(maxsize=10)
        worker = EvaluationWorker(engine, stream)

        worker.start()
        await stream.publish(_event("stu_missing"))
        await stream.publish(_event("stu_a"))
        await asyncio.wait_for(stream.join(), timeout=5)
        await worker.stop()

        assert worker.failed == 1
        assert worker.processed == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_counted(self, engine, monkeypatch):
        async def explode(event, now=None):
            raise RuntimeError("boom")

        monkeypatch.setattr(engine, "process_change", explode)
        worker = EvaluationWorker(engine, ChangeEventStream(maxsize=1))

        assert await worker.handle(_event()) is None
        assert worker.failed == 1

    @pytest.mark.asyncio
    async def test_stop_without_start(self, engine):
        worker = EvaluationWorker(engine, ChangeEventStream(maxsize=1))
        await worker.stop()
        assert not worker.running
