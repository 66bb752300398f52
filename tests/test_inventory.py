from decimal import Decimal

import pytest

from rental_engine.core.exceptions import (
    ConcurrentUpdateException,
    DeviceNotFoundException,
    DeviceUnavailableException,
    StationFullException,
    StationMismatchException,
    StationNotFoundException,
    ValidationException,
)
from rental_engine.db.models import Device, DeviceStatus, Station
from rental_engine.db.repositories import DeviceRepository, StationRepository
from rental_engine.services.inventory import InventoryLedger


def test_acquire_device_moves_it_out_of_station(ledger, sqlite_session):
    device = ledger.acquire_device("PB-001", "st-1")

    assert device.current_status == DeviceStatus.RENTED
    assert device.station_id is None
    assert device.rental_count == 1
    assert device.version == 2
    assert sqlite_session.get(Station, "st-1").available_slots == 4


def test_acquire_unknown_device(ledger):
    with pytest.raises(DeviceNotFoundException):
        ledger.acquire_device("PB-999", "st-1")


def test_acquire_from_closed_station(ledger):
    with pytest.raises(StationNotFoundException):
        ledger.acquire_device("PB-001", "st-closed")


def test_acquire_at_wrong_station(ledger):
    with pytest.raises(StationMismatchException):
        ledger.acquire_device("PB-001", "st-2")


def test_acquire_device_in_maintenance(ledger):
    with pytest.raises(DeviceUnavailableException):
        ledger.acquire_device("PB-003", "st-1")


def test_acquire_twice_in_sequence(ledger):
    ledger.acquire_device("PB-001", "st-1")

    with pytest.raises(DeviceUnavailableException):
        ledger.acquire_device("PB-001", "st-1")


def test_acquire_when_slot_counter_at_zero(ledger):
    with pytest.raises(ConcurrentUpdateException):
        ledger.acquire_device("PB-005", "st-empty")


def test_release_to_another_station(ledger, sqlite_session):
    ledger.acquire_device("PB-001", "st-1")

    device = ledger.release_device("dev-1", "st-2", earnings=Decimal("708"))

    assert device.current_status == DeviceStatus.AVAILABLE
    assert device.station_id == "st-2"
    assert device.total_earnings == Decimal("708.00")
    assert sqlite_session.get(Station, "st-1").available_slots == 4
    assert sqlite_session.get(Station, "st-2").available_slots == 4


def test_release_to_full_station(ledger, sqlite_session):
    ledger.acquire_device("PB-001", "st-1")

    with pytest.raises(StationFullException):
        ledger.release_device("dev-1", "st-full", earnings=Decimal("0"))

    station = sqlite_session.get(Station, "st-full")
    assert station.available_slots == station.total_slots


def test_release_device_that_is_not_rented(ledger):
    with pytest.raises(DeviceUnavailableException):
        ledger.release_device("dev-1", "st-2", earnings=Decimal("0"))


def test_release_to_closed_station(ledger):
    ledger.acquire_device("PB-001", "st-1")

    with pytest.raises(StationNotFoundException):
        ledger.release_device("dev-1", "st-closed", earnings=Decimal("0"))


def test_mark_lost_retires_device(ledger, sqlite_session):
    ledger.acquire_device("PB-001", "st-1")

    device = ledger.mark_lost("dev-1")

    assert device.current_status == DeviceStatus.LOST
    assert device.is_active is False
    assert device.station_id is None
    # no slot comes back for a lost device
    assert sqlite_session.get(Station, "st-1").available_slots == 4
    with pytest.raises(DeviceNotFoundException):
        ledger.get_device_by_code("PB-001")


def test_mark_lost_requires_rented_device(ledger):
    with pytest.raises(DeviceUnavailableException):
        ledger.mark_lost("dev-1")


def test_list_available_devices_by_battery(ledger):
    devices = ledger.list_available_devices("st-1")

    assert [d.device_code for d in devices] == ["PB-001", "PB-002"]


def test_devices_needing_maintenance(ledger):
    devices = ledger.devices_needing_maintenance(70)

    assert [d.device_code for d in devices] == ["PB-002"]


def test_list_station_devices_orders_by_status_then_battery(ledger):
    devices = ledger.list_station_devices("st-1")

    assert [(d.device_code, d.current_status) for d in devices] == [
        ("PB-001", DeviceStatus.AVAILABLE),
        ("PB-002", DeviceStatus.AVAILABLE),
        ("PB-003", DeviceStatus.MAINTENANCE),
    ]


def test_list_station_devices_excludes_rented_and_unknown(ledger):
    ledger.acquire_device("PB-004", "st-2")
    ledger.mark_lost("dev-4")

    assert ledger.list_station_devices("st-2") == []
    assert ledger.list_station_devices("st-unknown") == []


def test_update_device_status_bumps_version(ledger):
    device = ledger.update_device_status("dev-2", 35, health_score=80)

    assert device.battery_level == 35
    assert device.health_score == 80
    assert device.version == 2


def test_update_device_status_keeps_health_when_omitted(ledger):
    device = ledger.update_device_status("dev-2", 20)

    assert device.battery_level == 20
    assert device.health_score == 50


@pytest.mark.parametrize("battery, health", [(-1, None), (101, None), (50, 120)])
def test_update_device_status_rejects_out_of_range(ledger, battery, health):
    with pytest.raises(ValidationException):
        ledger.update_device_status("dev-1", battery, health)


def test_update_device_status_unknown_device(ledger):
    with pytest.raises(DeviceNotFoundException):
        ledger.update_device_status("dev-404", 50)


def test_stale_telemetry_loses_compare_and_swap(session_factory):
    first = session_factory()
    second = session_factory()
    try:
        stale = DeviceRepository(second).get_by_id("dev-1")

        ledger = InventoryLedger(DeviceRepository(first), StationRepository(first))
        ledger.update_device_status("dev-1", 10)
        first.commit()

        assert DeviceRepository(second).update_telemetry(stale, 99) is False
        second.rollback()
    finally:
        first.close()
        second.close()

    with session_factory() as session:
        assert session.get(Device, "dev-1").battery_level == 10


def test_stale_checkout_loses_compare_and_swap(session_factory):
    """Two transactions read the same available device; only the first write lands."""
    first = session_factory()
    second = session_factory()
    try:
        stale = DeviceRepository(second).get_by_id("dev-1")
        assert stale.version == 1

        InventoryLedger(DeviceRepository(first), StationRepository(first)).acquire_device(
            "PB-001", "st-1"
        )
        first.commit()

        assert DeviceRepository(second).checkout(stale, "st-1") is False
        second.rollback()
    finally:
        first.close()
        second.close()

    with session_factory() as session:
        device = session.get(Device, "dev-1")
        assert device.current_status == DeviceStatus.RENTED
        assert device.rental_count == 1
        assert session.get(Station, "st-1").available_slots == 4
