"""
Tests for the record store and its units of work.
"""

import pytest
from sqlalchemy import insert, update

from cohortwatch.db.models import StudentModel
from cohortwatch.exceptions import DataIntegrityError
from cohortwatch.monitoring.schemas import LifecycleStage
from conftest import INSTITUTION_ID, make_student


class TestUnitOfWork:
    @pytest.mark.asyncio
    async def test_rollback_on_error(self, store):
        with pytest.raises(RuntimeError):
            async with store.session() as uow:
                await uow.add_student(make_student("stu_a"))
                raise RuntimeError("abort")

        async with store.session() as uow:
            assert await uow.get_student(INSTITUTION_ID, "stu_a") is None

    @pytest.mark.asyncio
    async def test_sqlite_writes_are_serialized(self, store):
        assert store._write_lock is not None


class TestStudents:
    @pytest.mark.asyncio
    async def test_compare_and_set(self, store, seed):
        await seed.student("stu_a")
        async with store.session() as uow:
            assert await uow.update_student(
                INSTITUTION_ID, "stu_a", {"stage": LifecycleStage.AT_RISK}, expected_version=1
            ) == 2
            assert await uow.update_student(
                INSTITUTION_ID, "stu_a", {"stage": LifecycleStage.ACTIVE}, expected_version=1
            ) is None

        async with store.session() as uow:
            stored = await uow.get_student(INSTITUTION_ID, "stu_a")
        assert stored.stage == LifecycleStage.AT_RISK
        assert stored.version == 2

    @pytest.mark.asyncio
    async def test_null_documents_come_back_empty(self, store):
        async with store.session() as uow:
            await uow.session.execute(
                insert(StudentModel).values(
                    id="stu_legacy",
                    institution_id=INSTITUTION_ID,
                    stage="active",
                    documents=None,
                    version=1,
                )
            )
        async with store.session() as uow:
            student = await uow.get_student(INSTITUTION_ID, "stu_legacy")
        assert student.documents == []

    @pytest.mark.asyncio
    async def test_students_scoped_to_institution(self, store, seed):
        await seed.students(
            make_student("stu_a"),
            make_student("stu_b", institution_id="inst_beta"),
        )
        async with store.session() as uow:
            alpha = await uow.list_students(INSTITUTION_ID)
        assert [s.id for s in alpha] == ["stu_a"]

    @pytest.mark.asyncio
    async def test_same_id_in_two_institutions(self, store, seed):
        await seed.students(
            make_student("stu_001", risk=10),
            make_student("stu_001", institution_id="inst_beta", risk=90),
        )
        async with store.session() as uow:
            assert await uow.update_student(
                "inst_beta", "stu_001", {"stage": LifecycleStage.AT_RISK}, expected_version=1
            ) == 2
            alpha = await uow.get_student(INSTITUTION_ID, "stu_001")
            beta = await uow.get_student("inst_beta", "stu_001")

        assert (alpha.risk_score, alpha.stage, alpha.version) == (10, LifecycleStage.ACTIVE, 1)
        assert (beta.risk_score, beta.stage, beta.version) == (90, LifecycleStage.AT_RISK, 2)


class TestInvalidRows:
    async def _corrupt_stage(self, store, student_id: str, stage: str) -> None:
        async with store.session() as uow:
            await uow.session.execute(
                update(StudentModel)
                .where(StudentModel.id == student_id)
                .values(stage=stage)
            )

    @pytest.mark.asyncio
    async def test_list_skips_and_reports_invalid_row(self, store, seed):
        await seed.students(make_student("stu_ok"), make_student("stu_bad"))
        await self._corrupt_stage(store, "stu_bad", "enrolled")

        rejected: list[DataIntegrityError] = []
        async with store.session() as uow:
            students = await uow.list_students(INSTITUTION_ID, rejected=rejected)

        assert [s.id for s in students] == ["stu_ok"]
        assert len(rejected) == 1
        assert rejected[0].details == {"student_id": "stu_bad", "fields": ["stage"]}

    @pytest.mark.asyncio
    async def test_get_raises_data_integrity(self, store, seed):
        await seed.student("stu_bad")
        await self._corrupt_stage(store, "stu_bad", "enrolled")

        with pytest.raises(DataIntegrityError) as exc_info:
            async with store.session() as uow:
                await uow.get_student(INSTITUTION_ID, "stu_bad")
        assert exc_info.value.kind == "data_integrity"


class TestCounselors:
    @pytest.mark.asyncio
    async def test_loads(self, store, seed):
        await seed.counselor("c1")
        await seed.students(
            make_student("stu_a", counselor_id="c1"),
            make_student("stu_b", counselor_id="c1"),
            make_student("stu_c"),
        )
        async with store.session() as uow:
            assert await uow.counselor_loads(INSTITUTION_ID) == {"c1": 2}
