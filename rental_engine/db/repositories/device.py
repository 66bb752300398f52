from decimal import Decimal
from typing import List, Optional

from loguru import logger
from sqlalchemy import select, update

from rental_engine.db.models import Device, DeviceStatus
from rental_engine.db.repositories.base import VersionedRepository


class DeviceRepository(VersionedRepository):
    def get_by_id(self, device_id: str, for_update: bool = False) -> Optional[Device]:
        stmt = select(Device).where(Device.id == device_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self.session.execute(stmt).scalar_one_or_none()

    def get_by_code(self, device_code: str, for_update: bool = False) -> Optional[Device]:
        stmt = select(Device).where(
            Device.device_code == device_code, Device.is_active.is_(True)
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self.session.execute(stmt).scalar_one_or_none()

    def list_available(self, station_id: Optional[str] = None) -> List[Device]:
        stmt = select(Device).where(
            Device.current_status == DeviceStatus.AVAILABLE,
            Device.is_active.is_(True),
        )
        if station_id:
            stmt = stmt.where(Device.station_id == station_id)
        stmt = stmt.order_by(Device.battery_level.desc())
        return list(self.session.execute(stmt).scalars().all())

    def list_for_station(self, station_id: str) -> List[Device]:
        stmt = (
            select(Device)
            .where(Device.station_id == station_id, Device.is_active.is_(True))
            .order_by(Device.current_status, Device.battery_level.desc())
        )
        return list(self.session.execute(stmt).scalars().all())

    def list_needing_maintenance(self, threshold: int) -> List[Device]:
        stmt = (
            select(Device)
            .where(Device.health_score < threshold, Device.is_active.is_(True))
            .order_by(Device.health_score.asc())
        )
        return list(self.session.execute(stmt).scalars().all())

    def checkout(self, device: Device, station_id: str) -> bool:
        swapped = self._compare_and_swap(
            update(Device)
            .where(
                Device.id == device.id,
                Device.version == device.version,
                Device.current_status == DeviceStatus.AVAILABLE,
                Device.station_id == station_id,
            )
            .values(
                current_status=DeviceStatus.RENTED,
                station_id=None,
                rental_count=Device.rental_count + 1,
                version=Device.version + 1,
            ),
            device,
        )
        logger.debug(
            "checkout device={} station={} swapped={}", device.id, station_id, swapped
        )
        return swapped

    def check_in(self, device: Device, station_id: str, earnings: Decimal) -> bool:
        swapped = self._compare_and_swap(
            update(Device)
            .where(
                Device.id == device.id,
                Device.version == device.version,
                Device.current_status == DeviceStatus.RENTED,
            )
            .values(
                current_status=DeviceStatus.AVAILABLE,
                station_id=station_id,
                total_earnings=Device.total_earnings + earnings,
                version=Device.version + 1,
            ),
            device,
        )
        logger.debug(
            "check_in device={} station={} earnings={} swapped={}",
            device.id,
            station_id,
            earnings,
            swapped,
        )
        return swapped

    def mark_lost(self, device: Device) -> bool:
        return self._compare_and_swap(
            update(Device)
            .where(
                Device.id == device.id,
                Device.version == device.version,
                Device.current_status == DeviceStatus.RENTED,
            )
            .values(
                current_status=DeviceStatus.LOST,
                station_id=None,
                is_active=False,
                version=Device.version + 1,
            ),
            device,
        )

    def update_telemetry(
        self, device: Device, battery_level: int, health_score: Optional[int] = None
    ) -> bool:
        values = {"battery_level": battery_level, "version": Device.version + 1}
        if health_score is not None:
            values["health_score"] = health_score
        return self._compare_and_swap(
            update(Device)
            .where(Device.id == device.id, Device.version == device.version)
            .values(**values),
            device,
        )
