from decimal import Decimal
from typing import Optional

from loguru import logger
from sqlalchemy import select, update

from rental_engine.db.models import AccountStatus, User
from rental_engine.db.repositories.base import VersionedRepository


class UserRepository(VersionedRepository):
    def get_by_id(self, user_id: str, for_update: bool = False) -> Optional[User]:
        stmt = select(User).where(User.id == user_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self.session.execute(stmt).scalar_one_or_none()

    def hold_deposit(self, user: User, deposit: Decimal) -> bool:
        """Credit the rental deposit and count the rental, if nobody else moved first."""
        swapped = self._compare_and_swap(
            update(User)
            .where(
                User.id == user.id,
                User.version == user.version,
                User.account_status == AccountStatus.ACTIVE,
            )
            .values(
                deposit_balance=User.deposit_balance + deposit,
                total_rentals=User.total_rentals + 1,
                version=User.version + 1,
            ),
            user,
        )
        if swapped:
            logger.debug(
                "Held deposit {} for user {} (balance: {})",
                deposit,
                user.id,
                user.deposit_balance,
            )
        return swapped

    def settle_deposit(
        self, user: User, deposit: Decimal, returned: Decimal, spent: Decimal
    ) -> bool:
        swapped = self._compare_and_swap(
            update(User)
            .where(User.id == user.id, User.version == user.version)
            .values(
                deposit_balance=User.deposit_balance - deposit + returned,
                total_spent=User.total_spent + spent,
                version=User.version + 1,
            ),
            user,
        )
        if swapped:
            logger.debug(
                "Settled deposit for user {}: -{} +{} (spent: +{}, balance: {})",
                user.id,
                deposit,
                returned,
                spent,
                user.deposit_balance,
            )
        return swapped
