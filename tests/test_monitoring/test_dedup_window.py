"""
Tests for the dedup window over the action log.
"""

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from cohortwatch.monitoring.dedup import DedupWindow
from conftest import INSTITUTION_ID, NOW


@pytest.fixture
def window() -> DedupWindow:
    return DedupWindow(timedelta(hours=24))


class TestKeys:
    def test_same_bucket_same_key(self, window):
        start = NOW.replace(hour=0)
        first = window.key(INSTITUTION_ID, "stu_1", "r1", start)
        assert first == window.key(INSTITUTION_ID, "stu_1", "r1", start + timedelta(hours=23))

    def test_next_bucket_new_key(self, window):
        start = NOW.replace(hour=0)
        first = window.key(INSTITUTION_ID, "stu_1", "r1", start)
        assert first != window.key(INSTITUTION_ID, "stu_1", "r1", start + timedelta(hours=24))

    def test_key_shape(self, window):
        key = window.key(INSTITUTION_ID, "stu_1", "r1", NOW)
        institution, student, rule, bucket = key.split(":")
        assert (institution, student, rule) == (INSTITUTION_ID, "stu_1", "r1")
        assert int(bucket) == window.bucket(NOW)

    def test_key_includes_institution(self, window):
        assert window.key(INSTITUTION_ID, "stu_1", "r1", NOW) != window.key(
            "inst_beta", "stu_1", "r1", NOW
        )


class TestSuppression:
    @pytest.mark.asyncio
    async def test_nothing_logged_not_suppressed(self, store, window):
        async with store.session() as uow:
            assert not await window.is_suppressed(uow, INSTITUTION_ID, "stu_1", "r1", NOW)

    @pytest.mark.asyncio
    async def test_logged_action_suppresses_within_window(self, store, window):
        async with store.session() as uow:
            await window.record(uow, INSTITUTION_ID, "stu_1", "r1", "create_alert", NOW)
        async with store.session() as uow:
            assert await window.is_suppressed(
                uow, INSTITUTION_ID, "stu_1", "r1", NOW + timedelta(hours=23)
            )
            assert not await window.is_suppressed(uow, INSTITUTION_ID, "stu_1", "r2", NOW)
            assert not await window.is_suppressed(uow, INSTITUTION_ID, "stu_2", "r1", NOW)

    @pytest.mark.asyncio
    async def test_expires_after_window(self, store, window):
        async with store.session() as uow:
            await window.record(uow, INSTITUTION_ID, "stu_1", "r1", "create_alert", NOW)
        async with store.session() as uow:
            assert not await window.is_suppressed(
                uow, INSTITUTION_ID, "stu_1", "r1", NOW + timedelta(hours=25)
            )

    @pytest.mark.asyncio
    async def test_same_bucket_twice_violates_unique_key(self, store, window):
        async with store.session() as uow:
            await window.record(uow, INSTITUTION_ID, "stu_1", "r1", "create_alert", NOW)
        with pytest.raises(IntegrityError):
            async with store.session() as uow:
                await window.record(
                    uow, INSTITUTION_ID, "stu_1", "r1", "create_alert", NOW + timedelta(minutes=1)
                )

    @pytest.mark.asyncio
    async def test_same_ids_in_another_institution_do_not_collide(self, store, window):
        async with store.session() as uow:
            await window.record(uow, INSTITUTION_ID, "stu_1", "r1", "create_alert", NOW)
            await window.record(uow, "inst_beta", "stu_1", "r1", "create_alert", NOW)
        async with store.session() as uow:
            assert await window.is_suppressed(uow, "inst_beta", "stu_1", "r1", NOW)
