from datetime import datetime
from typing import List, Optional

from loguru import logger
from sqlalchemy import select, update

from rental_engine.db.models import Rental, RentalStatus
from rental_engine.db.repositories.base import VersionedRepository


class RentalRepository(VersionedRepository):
    def get_by_id(self, rental_id: str, for_update: bool = False) -> Optional[Rental]:
        stmt = select(Rental).where(Rental.id == rental_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self.session.execute(stmt).scalar_one_or_none()

    def get_by_code(self, rental_code: str) -> Optional[Rental]:
        return self.session.execute(
            select(Rental).where(Rental.rental_code == rental_code)
        ).scalar_one_or_none()

    def get_open_for_user(self, user_id: str) -> Optional[Rental]:
        return self.session.execute(
            select(Rental)
            .where(
                Rental.user_id == user_id,
                Rental.rental_status == RentalStatus.ACTIVE,
            )
            .order_by(Rental.start_time.desc())
            .limit(1)
        ).scalar_one_or_none()

    def list_for_user(self, user_id: str, limit: int = 10) -> List[Rental]:
        return list(
            self.session.execute(
                select(Rental)
                .where(Rental.user_id == user_id)
                .order_by(Rental.created_at.desc())
                .limit(limit)
            )
            .scalars()
            .all()
        )

    def find_overdue(self, now: datetime) -> List[Rental]:
        return list(
            self.session.execute(
                select(Rental)
                .where(
                    Rental.rental_status == RentalStatus.ACTIVE,
                    Rental.expected_end_time < now,
                    Rental.end_time.is_(None),
                )
                .order_by(Rental.expected_end_time.asc())
            )
            .scalars()
            .all()
        )

    def create_rental(self, rental: Rental) -> None:
        self.session.add(rental)
        self.session.flush()
        logger.debug(f"Created rental {rental.rental_code} (id={rental.id})")

    def update_active(self, rental: Rental, **values) -> bool:
        """Apply `values` only while the rental is still ACTIVE at the version we read."""
        return self._compare_and_swap(
            update(Rental)
            .where(
                Rental.id == rental.id,
                Rental.version == rental.version,
                Rental.rental_status == RentalStatus.ACTIVE,
            )
            .values(version=Rental.version + 1, **values),
            rental,
        )
