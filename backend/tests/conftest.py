import logging
from datetime import date, time
from typing import Any, Callable, Optional
from uuid import UUID, uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from scheduling_intel.api.dependencies import get_feature_flags, get_schedule_refresher
from scheduling_intel.core.database import DatabaseManager, create_db_and_tables, get_db
from scheduling_intel.core.feature_flags import FeatureFlags
from scheduling_intel.models.scheduling import (
    AppointmentStatusEnum,
    ClinicianSchedule,
    Patient,
    PatientAppointment,
    UserProfile
)
from scheduling_intel.models.writeback import WriteBackPermission
from scheduling_intel.schemas.scheduling import SchedulerAppointment, SchedulerProvider
from scheduling_intel.services.scheduler_service import ScheduleRefresher, SchedulerService

# Configure logging for tests
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
SCHEDULE_DATE = date(2026, 3, 2)


@pytest.fixture
def clinic_id() -> UUID:
    return uuid4()


@pytest.fixture
def schedule_date() -> date:
    return SCHEDULE_DATE


@pytest.fixture
async def db_manager():
    """Fresh in-memory database per test"""
    manager = DatabaseManager(TEST_DATABASE_URL)
    await create_db_and_tables(manager)
    yield manager
    await manager.close()


@pytest.fixture
async def session(db_manager):
    async with db_manager.async_session_factory() as session:
        yield session


class ScheduleSeeder:
    """Writes system-of-record rows for one clinic day"""

    def __init__(self, session, clinic_id: UUID, schedule_date: date):
        self.session = session
        self.clinic_id = clinic_id
        self.schedule_date = schedule_date

    async def _save(self, row):
        self.session.add(row)
        await self.session.commit()
        return row

    async def clinician(self, first_name: str = "Ana", last_name: str = "Reyes", **kwargs) -> UserProfile:
        kwargs.setdefault("primary_clinic_id", self.clinic_id)
        return await self._save(UserProfile(
            first_name=first_name,
            last_name=last_name,
            role="clinician",
            **kwargs
        ))

    async def staff(self, role: str, first_name: str = "Sam", last_name: str = "Lee", **kwargs) -> UserProfile:
        kwargs.setdefault("primary_clinic_id", self.clinic_id)
        return await self._save(UserProfile(first_name=first_name, last_name=last_name, role=role, **kwargs))

    async def patient(self, first_name: str = "Jane", last_name: str = "Doe") -> Patient:
        return await self._save(Patient(first_name=first_name, last_name=last_name))

    async def appointment(
        self,
        patient: Patient,
        provider: Optional[UserProfile],
        start: time,
        end: time,
        **kwargs
    ) -> PatientAppointment:
        kwargs.setdefault("appointment_type", "follow_up")
        kwargs.setdefault("appointment_date", self.schedule_date)
        kwargs.setdefault("clinic_id", self.clinic_id)
        return await self._save(PatientAppointment(
            patient=patient,
            provider=provider,
            start_time=start,
            end_time=end,
            **kwargs
        ))

    async def permission(self, role_name: str, **flags) -> WriteBackPermission:
        return await self._save(WriteBackPermission(clinic_id=self.clinic_id, role_name=role_name, **flags))

    async def block(
        self,
        provider: UserProfile,
        schedule_type: str,
        start: time,
        end: time,
        notes: Optional[str] = None
    ) -> ClinicianSchedule:
        return await self._save(ClinicianSchedule(
            clinician_id=provider.id,
            schedule_date=self.schedule_date,
            schedule_type=schedule_type,
            start_time=start,
            end_time=end,
            notes=notes,
        ))


@pytest.fixture
def seeder(session, clinic_id, schedule_date) -> ScheduleSeeder:
    return ScheduleSeeder(session, clinic_id, schedule_date)


@pytest.fixture
def make_appointment(clinic_id, schedule_date) -> Callable[..., SchedulerAppointment]:
    """Build in-memory appointments for the pure insight and policy tests"""

    def factory(start: time, end: time, **overrides: Any) -> SchedulerAppointment:
        values = {
            "id": uuid4(),
            "patient_id": uuid4(),
            "patient_name": "Doe, Jane",
            "clinic_id": clinic_id,
            "provider_id": None,
            "appointment_type": "follow_up",
            "appointment_date": schedule_date,
            "start_time": start,
            "end_time": end,
            "status": AppointmentStatusEnum.SCHEDULED,
            "no_show_risk": 0.0,
        }
        values.update(overrides)
        return SchedulerAppointment(**values)

    return factory


@pytest.fixture
def make_provider(clinic_id) -> Callable[..., SchedulerProvider]:

    def factory(**overrides: Any) -> SchedulerProvider:
        values = {"id": uuid4(), "name": "Ana Reyes", "role": "clinician", "clinic_id": clinic_id}
        values.update(overrides)
        return SchedulerProvider(**values)

    return factory


@pytest.fixture
def feature_flags() -> FeatureFlags:
    return FeatureFlags()


@pytest.fixture
async def client(db_manager, feature_flags):
    """API client over the in-memory database with flags and refresher injected"""
    from scheduling_intel.main import create_application

    app = create_application()

    async def override_get_db():
        async with db_manager.get_async_session() as session:
            yield session

    async def refresh_day(clinic_id: UUID, schedule_date: date):
        async with db_manager.get_async_session() as session:
            return await SchedulerService(session).derive_day(clinic_id, schedule_date)

    refresher = ScheduleRefresher(refresh_day, interval_seconds=300)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_feature_flags] = lambda: feature_flags
    app.dependency_overrides[get_schedule_refresher] = lambda: refresher

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as test_client:
        yield test_client

    refresher.stop_auto_refresh()
