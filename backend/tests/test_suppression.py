from datetime import time, timedelta
from uuid import uuid4

import pytest

from scheduling_intel.models.writeback import SuppressionKindEnum
from scheduling_intel.services.scheduler_service import SchedulerService
from scheduling_intel.services.suppression_service import InsightSuppressionStore, snooze_expires_at
from scheduling_intel.utils.datetime_utils import utcnow


@pytest.fixture
def user_id():
    return uuid4()


@pytest.fixture
def store(session, user_id):
    return InsightSuppressionStore(session, user_id)


class TestInsightSuppressionStore:
    """Test suite for per-user dismissals and snoozes."""

    async def test_dismiss_is_permanent(self, store):
        await store.dismiss("insight_no_show_a")

        far_future = utcnow() + timedelta(days=365)
        assert await store.get_suppressed_ids(far_future) == {"insight_no_show_a"}
        assert await store.is_suppressed("insight_no_show_a", far_future)

    async def test_snooze_lapses(self, store):
        row = await store.snooze("insight_capacity_gap_a_b", 60)
        expires_at = snooze_expires_at(row)

        assert row.kind == SuppressionKindEnum.SNOOZED.value
        assert await store.is_suppressed("insight_capacity_gap_a_b", expires_at - timedelta(minutes=1))
        assert not await store.is_suppressed("insight_capacity_gap_a_b", expires_at + timedelta(minutes=1))
        assert await store.get_suppressed_ids(expires_at + timedelta(minutes=1)) == set()

    async def test_snooze_does_not_downgrade_dismissal(self, store):
        await store.dismiss("insight_no_show_a")
        row = await store.snooze("insight_no_show_a", 60)

        assert row.kind == SuppressionKindEnum.DISMISSED.value
        assert await store.is_suppressed("insight_no_show_a", utcnow() + timedelta(days=2))

    async def test_dismiss_replaces_snooze(self, store):
        await store.snooze("insight_no_show_a", 60)
        row = await store.dismiss("insight_no_show_a")

        assert row.kind == SuppressionKindEnum.DISMISSED.value
        assert snooze_expires_at(row) is None
        assert len(await store.list_entries()) == 1

    async def test_non_positive_snooze_is_rejected(self, store):
        with pytest.raises(ValueError):
            await store.snooze("insight_no_show_a", 0)

    async def test_clear_restores(self, store):
        await store.dismiss("insight_no_show_a")

        assert await store.clear("insight_no_show_a") is True
        assert await store.get_suppressed_ids() == set()
        assert await store.clear("insight_no_show_a") is False

    async def test_suppression_is_per_user(self, session, store):
        await store.dismiss("insight_no_show_a")

        assert await InsightSuppressionStore(session, uuid4()).get_suppressed_ids() == set()


class TestSuppressedScheduleIntelligence:
    """Test suite for suppression applied to a recomputed day."""

    async def test_dismissed_insight_stays_hidden_after_recompute(
        self, session, seeder, user_id, clinic_id, schedule_date
    ):
        provider = await seeder.clinician()
        risky = await seeder.appointment(await seeder.patient(), provider, time(9, 0), time(9, 30), no_show_risk=88)
        other = await seeder.appointment(
            await seeder.patient("John", "Roe"), provider, time(9, 30), time(10, 0), no_show_risk=91
        )
        service = SchedulerService(session)

        await InsightSuppressionStore(session, user_id).dismiss(f"insight_no_show_{risky.id}", risky.id)
        await session.commit()

        first = await service.get_schedule_intelligence(clinic_id, schedule_date, viewer_id=user_id)
        second = await service.get_schedule_intelligence(clinic_id, schedule_date, viewer_id=user_id)

        for result in (first, second):
            ids = {insight.id for insight in result.insights}
            assert f"insight_no_show_{risky.id}" not in ids
            assert f"insight_no_show_{other.id}" in ids
            assert result.suppressed_count == 1

    async def test_anonymous_viewer_sees_everything(self, session, seeder, user_id, clinic_id, schedule_date):
        provider = await seeder.clinician()
        risky = await seeder.appointment(await seeder.patient(), provider, time(9, 0), time(9, 30), no_show_risk=88)
        await InsightSuppressionStore(session, user_id).dismiss(f"insight_no_show_{risky.id}")
        await session.commit()

        result = await SchedulerService(session).get_schedule_intelligence(clinic_id, schedule_date)

        assert f"insight_no_show_{risky.id}" in {insight.id for insight in result.insights}
        assert result.suppressed_count == 0
