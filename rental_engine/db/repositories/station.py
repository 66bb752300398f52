from typing import Optional

from sqlalchemy import select, update

from rental_engine.db.models import Station
from rental_engine.db.repositories.base import VersionedRepository


class StationRepository(VersionedRepository):
    def get_by_id(self, station_id: str, for_update: bool = False) -> Optional[Station]:
        stmt = select(Station).where(Station.id == station_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self.session.execute(stmt).scalar_one_or_none()

    def get_operational(self, station_id: str, for_update: bool = False) -> Optional[Station]:
        station = self.get_by_id(station_id, for_update=for_update)
        if station is None or not station.is_operational:
            return None
        return station

    # Slot counters are relative updates guarded by their bounds, so two
    # checkouts of different devices at one station never conflict.

    def take_slot(self, station: Station) -> bool:
        return self._compare_and_swap(
            update(Station)
            .where(Station.id == station.id, Station.available_slots > 0)
            .values(
                available_slots=Station.available_slots - 1,
                version=Station.version + 1,
            ),
            station,
        )

    def put_slot(self, station: Station) -> bool:
        return self._compare_and_swap(
            update(Station)
            .where(
                Station.id == station.id,
                Station.available_slots < Station.total_slots,
            )
            .values(
                available_slots=Station.available_slots + 1,
                version=Station.version + 1,
            ),
            station,
        )
