import asyncio
from datetime import datetime, time
from uuid import uuid4

import pytest

from scheduling_intel.core.exceptions import RecordStoreError
from scheduling_intel.models.scheduling import AppointmentStatusEnum, BlockTypeEnum, InsightTypeEnum
from scheduling_intel.services.scheduler_service import (
    DEFAULT_STATUS_COLOR,
    STATUS_COLORS,
    ScheduleReader,
    ScheduleRefresher,
    SchedulerService,
    is_appointment_late,
    status_color,
    status_icon,
    stored_risk_scorer
)


class TestStatusLookups:
    """Test suite for calendar colour and icon lookups."""

    def test_known_statuses(self):
        assert status_color("no_show") == "#EF4444"
        assert status_color(AppointmentStatusEnum.COMPLETED) == "#86EFAC"
        assert status_icon("confirmed") == "✓"

    def test_every_status_has_a_colour(self):
        assert set(STATUS_COLORS) == set(AppointmentStatusEnum)

    def test_unknown_status_falls_back(self):
        assert status_color("rescheduled") == DEFAULT_STATUS_COLOR
        assert status_icon("rescheduled") == "○"


class TestLateAppointments:
    """Test suite for the late-arrival check."""

    def test_more_than_five_minutes_past_start(self, make_appointment, schedule_date):
        appt = make_appointment(time(9, 0), time(9, 30))

        assert is_appointment_late(appt, datetime.combine(schedule_date, time(9, 6)), 5) is True
        assert is_appointment_late(appt, datetime.combine(schedule_date, time(9, 5)), 5) is False

    def test_only_waiting_statuses_can_be_late(self, make_appointment, schedule_date):
        now = datetime.combine(schedule_date, time(11, 0))
        confirmed = make_appointment(time(9, 0), time(9, 30), status=AppointmentStatusEnum.CONFIRMED)
        checked_in = make_appointment(time(9, 0), time(9, 30), status=AppointmentStatusEnum.CHECKED_IN)

        assert is_appointment_late(confirmed, now, 5) is True
        assert is_appointment_late(checked_in, now, 5) is False


class TestRiskScorer:
    """Test suite for the default stored-risk scorer."""

    def setup_method(self):
        self.score = stored_risk_scorer(95.0)

    def test_flagged_no_show_wins(self):
        class Row:
            no_show = True
            no_show_risk = 10.0

        assert self.score(Row()) == 95.0

    def test_stored_score_then_zero(self):
        class Stored:
            no_show = False
            no_show_risk = 42.5

        class Unscored:
            no_show = False
            no_show_risk = None

        assert self.score(Stored()) == 42.5
        assert self.score(Unscored()) == 0.0


class TestScheduleReader:
    """Test suite for reading a clinic day."""

    async def test_appointments_are_ordered_and_named(self, session, seeder, clinic_id, schedule_date):
        provider = await seeder.clinician("Ana", "Reyes")
        patient = await seeder.patient("Jane", "Doe")
        late = await seeder.appointment(patient, provider, time(11, 0), time(11, 30))
        early = await seeder.appointment(
            patient, provider, time(8, 0), time(8, 20), status=AppointmentStatusEnum.NO_SHOW.value, no_show=True
        )
        await seeder.appointment(patient, provider, time(9, 0), time(9, 30), clinic_id=uuid4())

        appointments = await ScheduleReader(session).get_appointments(clinic_id, schedule_date)

        assert [a.id for a in appointments] == [early.id, late.id]
        first = appointments[0]
        assert first.patient_name == "Doe, Jane"
        assert first.provider_name == "Ana Reyes"
        assert first.provider_role == "clinician"
        assert first.color_code == "#EF4444"
        assert first.status_icon == "🚫"
        assert first.no_show_risk == 95.0
        assert appointments[1].no_show_risk == 0.0

    async def test_display_name_preferred(self, session, seeder, clinic_id, schedule_date):
        provider = await seeder.clinician(display_name="Dr. Reyes")
        await seeder.appointment(await seeder.patient(), provider, time(9, 0), time(9, 30))

        appointments = await ScheduleReader(session).get_appointments(clinic_id, schedule_date)

        assert appointments[0].provider_name == "Dr. Reyes"

    async def test_provider_filter(self, session, seeder, clinic_id, schedule_date):
        ana = await seeder.clinician("Ana", "Reyes")
        ben = await seeder.clinician("Ben", "Okafor")
        patient = await seeder.patient()
        await seeder.appointment(patient, ana, time(9, 0), time(9, 30))
        kept = await seeder.appointment(patient, ben, time(10, 0), time(10, 30))

        appointments = await ScheduleReader(session).get_appointments(clinic_id, schedule_date, [ben.id])

        assert [a.id for a in appointments] == [kept.id]

    async def test_injected_risk_scorer(self, session, seeder, clinic_id, schedule_date):
        await seeder.appointment(await seeder.patient(), None, time(9, 0), time(9, 30), no_show_risk=10)
        reader = ScheduleReader(session, risk_scorer=lambda row: 77.0)

        appointments = await reader.get_appointments(clinic_id, schedule_date)

        assert appointments[0].no_show_risk == 77.0
        assert appointments[0].provider_name is None

    async def test_store_failure_is_wrapped(self, session, clinic_id, schedule_date, monkeypatch):
        from sqlalchemy.exc import OperationalError

        async def broken(*args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("connection reset"))

        monkeypatch.setattr(session, "execute", broken)

        with pytest.raises(RecordStoreError):
            await ScheduleReader(session).get_appointments(clinic_id, schedule_date)

    async def test_providers_are_active_clinic_clinicians(self, session, seeder, clinic_id):
        ana = await seeder.clinician("Ana", "Reyes", utilization=40.0)
        floater = await seeder.clinician("Ben", "Okafor", primary_clinic_id=None)
        await seeder.clinician("Cy", "Inactive", is_active=False)
        await seeder.clinician("Di", "Elsewhere", primary_clinic_id=uuid4())
        await seeder.staff("front_desk_staff")

        providers = await ScheduleReader(session).get_providers(clinic_id)

        assert {p.id for p in providers} == {ana.id, floater.id}
        assert next(p for p in providers if p.id == ana.id).utilization == 40.0
        assert next(p for p in providers if p.id == floater.id).utilization is None

    async def test_utilization_from_booked_minutes(self, session, seeder, clinic_id, schedule_date):
        provider = await seeder.clinician(utilization=5.0)
        patient = await seeder.patient()
        await seeder.appointment(patient, provider, time(9, 0), time(10, 0))
        await seeder.appointment(patient, provider, time(13, 0), time(14, 0))
        await seeder.appointment(
            patient, provider, time(15, 0), time(17, 0), status=AppointmentStatusEnum.CANCELLED.value
        )

        providers = await ScheduleReader(session).get_providers(clinic_id, schedule_date)

        assert providers[0].utilization == 25.0

    async def test_provider_blocks(self, session, seeder, schedule_date):
        provider = await seeder.clinician()
        await seeder.block(provider, "meeting", time(12, 0), time(12, 30), "Team huddle")
        await seeder.block(provider, "break", time(10, 0), time(10, 15))
        await seeder.block(provider, "clinic_hours", time(8, 0), time(17, 0))

        blocks = await ScheduleReader(session).get_provider_blocks(provider.id, schedule_date)

        assert [b.block_type for b in blocks] == [BlockTypeEnum.BREAK, BlockTypeEnum.MEETING]
        assert blocks[1].reason == "Team huddle"
        assert blocks[0].color_code == "#E5E7EB"


class TestSchedulerService:
    """Test suite for insight computation over a stored day."""

    async def test_role_filter_applied_after_derivation(self, session, seeder, clinic_id, schedule_date):
        provider = await seeder.clinician()
        patient = await seeder.patient()
        for minute in (0, 10, 20, 30, 40):
            await seeder.appointment(patient, provider, time(10, minute), time(10, minute + 5))
        await seeder.appointment(patient, provider, time(14, 0), time(14, 30), no_show_risk=80)
        service = SchedulerService(session)

        front_desk = await service.get_schedule_intelligence(clinic_id, schedule_date, viewer_role="front_desk_staff")
        clinician = await service.get_schedule_intelligence(clinic_id, schedule_date, viewer_role="clinician")

        assert {i.type for i in front_desk.insights} == {InsightTypeEnum.NO_SHOW_RISK, InsightTypeEnum.CAPACITY_GAP}
        assert {i.type for i in clinician.insights} == {InsightTypeEnum.OVERBOOKING}
        assert front_desk.viewer_role == "front_desk_staff"

    async def test_day_is_read_once(self, session, seeder, clinic_id, schedule_date, monkeypatch):
        provider = await seeder.clinician()
        await seeder.appointment(await seeder.patient(), provider, time(9, 0), time(11, 0))
        reader = ScheduleReader(session)
        calls = []
        fetch = reader.get_appointments

        async def counting(*args, **kwargs):
            calls.append(args)
            return await fetch(*args, **kwargs)

        monkeypatch.setattr(reader, "get_appointments", counting)

        appointments, providers = await SchedulerService(session, reader=reader).load_day(clinic_id, schedule_date)

        assert len(calls) == 1
        assert len(appointments) == 1
        assert providers[0].utilization == 25.0

    async def test_loaded_appointments_drive_utilization(
        self, session, seeder, make_appointment, clinic_id, schedule_date
    ):
        provider = await seeder.clinician()
        loaded = [make_appointment(time(9, 0), time(13, 0), provider_id=provider.id)]

        providers = await ScheduleReader(session).get_providers(clinic_id, schedule_date, loaded)

        assert providers[0].utilization == 50.0


class TestScheduleRefresher:
    """Test suite for manual and periodic refresh."""

    async def test_refresh_records_time(self, clinic_id, schedule_date):
        async def callback(clinic, day):
            return ["insight"]

        refresher = ScheduleRefresher(callback, interval_seconds=300)

        assert await refresher.refresh(clinic_id, schedule_date) == ["insight"]
        status = refresher.get_status()
        assert status.last_refreshed is not None
        assert status.is_refreshing is False
        assert status.next_refresh_in is None

    async def test_concurrent_refresh_is_dropped(self, clinic_id, schedule_date):
        release = asyncio.Event()
        calls = []

        async def callback(clinic, day):
            calls.append(clinic)
            await release.wait()
            return []

        refresher = ScheduleRefresher(callback, interval_seconds=300)
        first = asyncio.create_task(refresher.refresh(clinic_id, schedule_date))
        await asyncio.sleep(0)

        assert refresher.get_status().is_refreshing is True
        assert await refresher.refresh(clinic_id, schedule_date) is None

        release.set()
        assert await first == []
        assert len(calls) == 1
        assert refresher.is_refreshing is False

    async def test_guard_released_after_failure(self, clinic_id, schedule_date):
        async def callback(clinic, day):
            raise RecordStoreError("Appointment fetch failed")

        refresher = ScheduleRefresher(callback, interval_seconds=300)

        with pytest.raises(RecordStoreError):
            await refresher.refresh(clinic_id, schedule_date)
        assert refresher.is_refreshing is False
        assert refresher.last_refreshed is None

    async def test_auto_refresh_runs_until_stopped(self, clinic_id, schedule_date):
        calls = []

        async def callback(clinic, day):
            calls.append(day)
            if len(calls) == 1:
                raise RecordStoreError("transient")
            return []

        refresher = ScheduleRefresher(callback, interval_seconds=300)
        task = refresher.start_auto_refresh(clinic_id, schedule_date, interval_seconds=0.01)

        assert refresher.is_auto_refreshing
        assert refresher.get_status().next_refresh_in is not None
        await asyncio.sleep(0.1)

        refresher.stop_auto_refresh()
        await asyncio.gather(task, return_exceptions=True)

        assert len(calls) >= 2
        assert task.cancelled()
        assert refresher.is_auto_refreshing is False
        assert refresher.get_status().next_refresh_in is None
