from decimal import Decimal
from typing import List, Optional

from loguru import logger

from rental_engine.core.exceptions import (
    ConcurrentUpdateException,
    DeviceNotFoundException,
    DeviceUnavailableException,
    StationFullException,
    StationMismatchException,
    StationNotFoundException,
    ValidationException,
)
from rental_engine.core.utils import money
from rental_engine.db.models import Device, DeviceStatus, Station
from rental_engine.db.repositories.device import DeviceRepository
from rental_engine.db.repositories.station import StationRepository


class InventoryLedger:
    """Owns device and station occupancy.

    Must run inside a unit of work: every write is a guarded UPDATE and a
    failed guard raises, leaving the caller to roll the transaction back.
    """

    def __init__(self, device_repo: DeviceRepository, station_repo: StationRepository):
        self.device_repo = device_repo
        self.station_repo = station_repo

    # --- reads ---

    def get_device(self, device_id: str) -> Device:
        device = self.device_repo.get_by_id(device_id)
        if not device:
            raise DeviceNotFoundException()
        return device

    def get_device_by_code(self, device_code: str) -> Device:
        device = self.device_repo.get_by_code(device_code)
        if not device:
            raise DeviceNotFoundException()
        return device

    def get_station(self, station_id: str) -> Station:
        station = self.station_repo.get_operational(station_id)
        if not station:
            raise StationNotFoundException()
        return station

    def list_available_devices(self, station_id: Optional[str] = None) -> List[Device]:
        return self.device_repo.list_available(station_id)

    def list_station_devices(self, station_id: str) -> List[Device]:
        return self.device_repo.list_for_station(station_id)

    def devices_needing_maintenance(self, threshold: int) -> List[Device]:
        return self.device_repo.list_needing_maintenance(threshold)

    # --- transitions ---

    def acquire_device(self, device_code: str, station_id: str) -> Device:
        device = self.device_repo.get_by_code(device_code, for_update=True)
        if not device:
            logger.warning(f"Device {device_code} not found")
            raise DeviceNotFoundException()

        station = self.station_repo.get_operational(station_id, for_update=True)
        if not station:
            logger.warning(f"Station {station_id} not found or not operational")
            raise StationNotFoundException()

        if device.current_status != DeviceStatus.AVAILABLE:
            raise DeviceUnavailableException(
                f"Device is currently {device.current_status}"
            )
        if device.station_id != station_id:
            raise StationMismatchException()

        if not self.device_repo.checkout(device, station_id):
            logger.warning(f"Lost checkout race for device {device_code}")
            raise DeviceUnavailableException()
        if not self.station_repo.take_slot(station):
            raise ConcurrentUpdateException(
                f"Station {station_id} slot counter is already at zero"
            )

        logger.info(
            f"Device {device_code} checked out from station {station_id} "
            f"(slots: {station.available_slots}/{station.total_slots})"
        )
        return device

    def release_device(
        self, device_id: str, return_station_id: str, earnings: Decimal
    ) -> Device:
        device = self.device_repo.get_by_id(device_id, for_update=True)
        if not device:
            raise DeviceNotFoundException()
        if device.current_status != DeviceStatus.RENTED:
            raise DeviceUnavailableException(
                f"Device is currently {device.current_status}, not rented"
            )

        station = self.station_repo.get_operational(return_station_id, for_update=True)
        if not station:
            raise StationNotFoundException("Return station not found or not operational")
        if station.available_slots >= station.total_slots:
            raise StationFullException()

        if not self.device_repo.check_in(device, return_station_id, money(earnings)):
            raise ConcurrentUpdateException(f"Device {device_id} changed during return")
        if not self.station_repo.put_slot(station):
            raise StationFullException()

        logger.info(
            f"Device {device.device_code} returned to station {return_station_id} "
            f"(slots: {station.available_slots}/{station.total_slots})"
        )
        return device

    def mark_lost(self, device_id: str) -> Device:
        device = self.device_repo.get_by_id(device_id, for_update=True)
        if not device:
            raise DeviceNotFoundException()
        if device.current_status != DeviceStatus.RENTED:
            raise DeviceUnavailableException(
                f"Device is currently {device.current_status}, not rented"
            )
        if not self.device_repo.mark_lost(device):
            raise ConcurrentUpdateException(f"Device {device_id} changed during report")

        logger.warning(f"Device {device.device_code} marked lost")
        return device

    def update_device_status(
        self, device_id: str, battery_level: int, health_score: Optional[int] = None
    ) -> Device:
        """Record a telemetry reading reported by the station."""
        readings = {"battery_level": battery_level, "health_score": health_score}
        for name, value in readings.items():
            if value is not None and not 0 <= value <= 100:
                raise ValidationException(f"{name} must be between 0 and 100")

        device = self.device_repo.get_by_id(device_id, for_update=True)
        if not device:
            raise DeviceNotFoundException()
        if not self.device_repo.update_telemetry(device, battery_level, health_score):
            raise ConcurrentUpdateException(f"Device {device_id} changed during update")

        logger.debug(
            "telemetry device={} battery={} health={}",
            device.device_code,
            device.battery_level,
            device.health_score,
        )
        return device
