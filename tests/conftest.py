from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from rental_engine.config.settings import Settings
from rental_engine.db.models import (
    AccountStatus,
    Base,
    Device,
    DeviceStatus,
    Station,
    User,
)
from rental_engine.db.repositories import DeviceRepository, StationRepository
from rental_engine.services.coordinator import RentalCoordinator
from rental_engine.services.inventory import InventoryLedger
from rental_engine.services.pricing import tariff_from_settings
from rental_engine.services.qr_session import InMemorySessionStore, QRSessionManager

T0 = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def make_sessionmaker(engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


def seed(session) -> None:
    session.add_all(
        [
            User(id="user-1", phone_number="+255700000001"),
            User(id="user-2", phone_number="+255700000002"),
            User(
                id="user-blocked",
                phone_number="+255700000003",
                account_status=AccountStatus.BLOCKED,
            ),
            Station(id="st-1", name="Kariakoo Market", total_slots=10, available_slots=5),
            Station(id="st-2", name="Mlimani City", total_slots=10, available_slots=3),
            Station(id="st-full", name="Posta", total_slots=2, available_slots=2),
            Station(
                id="st-closed",
                name="Ubungo Terminal",
                total_slots=4,
                available_slots=2,
                is_operational=False,
            ),
            Station(id="st-empty", name="Kivukoni", total_slots=4, available_slots=0),
        ]
    )
    session.flush()
    session.add_all(
        [
            Device(id="dev-1", device_code="PB-001", station_id="st-1", battery_level=90),
            Device(
                id="dev-2",
                device_code="PB-002",
                station_id="st-1",
                battery_level=60,
                health_score=50,
            ),
            Device(
                id="dev-3",
                device_code="PB-003",
                station_id="st-1",
                current_status=DeviceStatus.MAINTENANCE,
            ),
            Device(id="dev-4", device_code="PB-004", station_id="st-2", battery_level=75),
            Device(id="dev-5", device_code="PB-005", station_id="st-empty"),
        ]
    )
    session.commit()


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite+pysqlite:///:memory:",
        notification_base="http://notify.test",
        metrics_port=0,
    )


@pytest.fixture
def tariff(settings):
    return tariff_from_settings(settings)


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def sqlite_session():
    engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
    Session = make_sessionmaker(engine)
    Base.metadata.create_all(engine)

    session = Session()
    seed(session)
    yield session
    session.close()


@pytest.fixture
def ledger(sqlite_session):
    return InventoryLedger(
        DeviceRepository(sqlite_session), StationRepository(sqlite_session)
    )


@pytest.fixture
def file_engine(tmp_path):
    """File-backed database shared by several sessions or threads."""
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'rental.db'}",
        future=True,
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    session = make_sessionmaker(engine)()
    seed(session)
    session.close()
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(file_engine):
    return make_sessionmaker(file_engine)


@pytest.fixture
def qr_manager(settings, clock):
    return QRSessionManager(InMemorySessionStore(maxsize=128, ttl_sec=300), settings, clock)


@pytest.fixture
def notifier():
    client = Mock()
    client.send.return_value = (True, None)
    return client


@pytest.fixture
def coordinator(session_factory, qr_manager, settings, notifier, clock):
    return RentalCoordinator(
        session_factory, qr_manager, settings, notifier=notifier, clock=clock
    )


@pytest.fixture
def load(session_factory):
    """Fresh read of a row, outside any coordinator transaction."""

    def _load(model, pk):
        with session_factory() as session:
            return session.get(model, pk)

    return _load




def pytest_configure(config):
    config.addinivalue_line(
        "markers", "integration: test runs against a file-backed database with threads"
    )
