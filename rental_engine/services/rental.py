from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

from loguru import logger

from rental_engine.config.settings import Settings
from rental_engine.core.exceptions import (
    AccountNotActiveException,
    ActiveRentalExistsException,
    CancellationWindowClosedException,
    ConcurrentUpdateException,
    RentalNotActiveException,
    RentalNotFoundException,
    UserNotFoundException,
    ValidationException,
)
from rental_engine.core.utils import ensure_utc, generate_rental_code, money, utcnow
from rental_engine.db.models import AccountStatus, Rental, RentalStatus
from rental_engine.db.repositories.rental import RentalRepository
from rental_engine.db.repositories.user import UserRepository
from rental_engine.schemas import (
    MAX_EXTENSION_HOURS,
    MIN_EXTENSION_HOURS,
    ChargeBreakdown,
    RentalView,
    Settlement,
)
from rental_engine.services.inventory import InventoryLedger
from rental_engine.services.pricing import PricingEngine, elapsed_hours

ZERO = Decimal("0.00")


def effective_status(rental: Rental, now: datetime) -> str:
    """Status as reported to callers. OVERDUE is derived here and never stored."""
    if rental.rental_status == RentalStatus.ACTIVE and ensure_utc(now) > ensure_utc(
        rental.expected_end_time
    ):
        return RentalStatus.OVERDUE
    return rental.rental_status


def to_view(rental: Rental, now: datetime) -> RentalView:
    status = effective_status(rental, now)
    remaining = (ensure_utc(rental.expected_end_time) - ensure_utc(now)).total_seconds()
    is_open = rental.rental_status == RentalStatus.ACTIVE

    return RentalView(
        id=rental.id,
        rental_code=rental.rental_code,
        user_id=rental.user_id,
        device_id=rental.device_id,
        station_from_id=rental.station_from_id,
        station_to_id=rental.station_to_id,
        status=status,
        start_time=ensure_utc(rental.start_time),
        expected_end_time=ensure_utc(rental.expected_end_time),
        end_time=ensure_utc(rental.end_time) if rental.end_time else None,
        total_hours=rental.total_hours,
        base_amount=rental.base_amount,
        tax_amount=rental.tax_amount,
        late_fee=rental.late_fee,
        total_amount=rental.total_amount,
        deposit_amount=rental.deposit_amount,
        deposit_returned=rental.deposit_returned,
        deposit_return_amount=rental.deposit_return_amount,
        is_overdue=status == RentalStatus.OVERDUE,
        overdue_minutes=int(-remaining // 60) if is_open and remaining < 0 else 0,
        remaining_minutes=int(remaining // 60) if is_open and remaining > 0 else 0,
    )


class RentalStateMachine:
    """Validates and applies rental lifecycle transitions.

    Bound to the repositories of a single unit of work; it never commits.
    """

    def __init__(
        self,
        rental_repo: RentalRepository,
        user_repo: UserRepository,
        ledger: InventoryLedger,
        pricing: PricingEngine,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.rental_repo = rental_repo
        self.user_repo = user_repo
        self.ledger = ledger
        self.pricing = pricing
        self.default_window = timedelta(hours=settings.default_window_hours)
        self.cancel_grace = timedelta(minutes=settings.cancel_grace_min)
        self.clock = clock

    # --- transitions ---

    def start(self, user_id: str, device_code: str, station_id: str) -> Rental:
        user = self.user_repo.get_by_id(user_id, for_update=True)
        if not user:
            raise UserNotFoundException()
        if user.account_status != AccountStatus.ACTIVE:
            raise AccountNotActiveException(f"Account is {user.account_status}")
        if self.rental_repo.get_open_for_user(user_id):
            raise ActiveRentalExistsException()

        device = self.ledger.acquire_device(device_code, station_id)

        now = self.clock()
        deposit = money(self.pricing.tariff.deposit_amount)
        rental = Rental(
            rental_code=generate_rental_code(now),
            user_id=user_id,
            device_id=device.id,
            station_from_id=station_id,
            rental_status=RentalStatus.ACTIVE,
            start_time=now,
            expected_end_time=now + self.default_window,
            base_amount=ZERO,
            tax_amount=ZERO,
            late_fee=ZERO,
            total_amount=ZERO,
            deposit_amount=deposit,
            deposit_returned=False,
            deposit_return_amount=ZERO,
        )
        self.rental_repo.create_rental(rental)

        if not self.user_repo.hold_deposit(user, deposit):
            raise ConcurrentUpdateException(f"User {user_id} changed during start")

        logger.info(
            f"Rental {rental.rental_code} started: user={user_id}, "
            f"device={device_code}, station={station_id}, deposit={deposit}"
        )
        return rental

    def extend(
        self, rental_id: str, user_id: str, extra_hours: int
    ) -> Tuple[Rental, ChargeBreakdown, datetime]:
        if not MIN_EXTENSION_HOURS <= extra_hours <= MAX_EXTENSION_HOURS:
            raise ValidationException(
                f"Extension hours must be between {MIN_EXTENSION_HOURS} "
                f"and {MAX_EXTENSION_HOURS}"
            )

        rental = self._load_open(rental_id, user_id)
        previous_end = ensure_utc(rental.expected_end_time)
        charge = self.pricing.extension(extra_hours)

        updated = self.rental_repo.update_active(
            rental,
            expected_end_time=previous_end + timedelta(hours=extra_hours),
            base_amount=money(rental.base_amount + charge.base_amount),
            tax_amount=money(rental.tax_amount + charge.tax_amount),
            total_amount=money(rental.total_amount + charge.total_amount),
        )
        if not updated:
            raise RentalNotActiveException()

        logger.info(
            f"Rental {rental.rental_code} extended by {extra_hours}h: "
            f"+{charge.total_amount} (running total {rental.total_amount})"
        )
        return rental, charge, previous_end

    def end(
        self, rental_id: str, user_id: str, return_station_id: str
    ) -> Tuple[Rental, Settlement]:
        rental = self._load_open(rental_id, user_id)
        now = self.clock()

        settlement = self.pricing.settle(
            start=rental.start_time,
            expected_end=rental.expected_end_time,
            end=now,
            deposit=rental.deposit_amount,
            prepaid=self._prepaid_charge(rental),
        )
        charge = settlement.charge
        returned = settlement.deposit_return_amount

        updated = self.rental_repo.update_active(
            rental,
            rental_status=RentalStatus.COMPLETED,
            station_to_id=return_station_id,
            end_time=now,
            total_hours=money(elapsed_hours(rental.start_time, now)),
            base_amount=charge.base_amount,
            tax_amount=charge.tax_amount,
            late_fee=settlement.late_fee,
            total_amount=charge.total_amount,
            deposit_returned=returned > 0,
            deposit_return_amount=returned,
        )
        if not updated:
            raise RentalNotActiveException()

        self.ledger.release_device(
            rental.device_id, return_station_id, earnings=charge.total_amount
        )
        self._settle_user(
            rental.user_id,
            deposit=rental.deposit_amount,
            returned=returned,
            spent=charge.total_amount + settlement.late_fee,
        )

        logger.info(
            f"Rental {rental.rental_code} completed: total={charge.total_amount}, "
            f"late_fee={settlement.late_fee}, deposit_return={returned}"
        )
        return rental, settlement

    def report_lost(self, rental_id: str, user_id: str, notes: Optional[str]) -> Rental:
        rental = self._load_open(rental_id, user_id)
        now = self.clock()

        entry = f"Lost reported {now.isoformat()}: {notes or 'No notes provided'}"
        updated = self.rental_repo.update_active(
            rental,
            rental_status=RentalStatus.LOST,
            end_time=now,
            notes=f"{rental.notes}\n{entry}" if rental.notes else entry,
            deposit_returned=False,
            deposit_return_amount=ZERO,
        )
        if not updated:
            raise RentalNotActiveException()

        self.ledger.mark_lost(rental.device_id)
        self._settle_user(
            rental.user_id,
            deposit=rental.deposit_amount,
            returned=ZERO,
            spent=rental.deposit_amount,
        )

        logger.warning(f"Rental {rental.rental_code} closed as lost by user {user_id}")
        return rental

    def cancel(self, rental_id: str, user_id: str) -> Rental:
        rental = self._load_open(rental_id, user_id)
        now = self.clock()

        if now - ensure_utc(rental.start_time) > self.cancel_grace:
            raise CancellationWindowClosedException()

        updated = self.rental_repo.update_active(
            rental,
            rental_status=RentalStatus.CANCELLED,
            station_to_id=rental.station_from_id,
            end_time=now,
            base_amount=ZERO,
            tax_amount=ZERO,
            total_amount=ZERO,
            deposit_returned=True,
            deposit_return_amount=rental.deposit_amount,
        )
        if not updated:
            raise RentalNotActiveException()

        self.ledger.release_device(rental.device_id, rental.station_from_id, earnings=ZERO)
        self._settle_user(
            rental.user_id,
            deposit=rental.deposit_amount,
            returned=rental.deposit_amount,
            spent=ZERO,
        )

        logger.info(f"Rental {rental.rental_code} cancelled within grace period")
        return rental

    # --- queries ---

    def get_active_rental(self, user_id: str) -> Rental:
        rental = self.rental_repo.get_open_for_user(user_id)
        if not rental:
            raise RentalNotFoundException("No active rental found")
        return rental

    def get_rental_by_code(self, rental_code: str) -> Rental:
        rental = self.rental_repo.get_by_code(rental_code)
        if not rental:
            raise RentalNotFoundException()
        return rental

    def list_user_rentals(self, user_id: str, limit: int = 10) -> List[Rental]:
        return self.rental_repo.list_for_user(user_id, limit)

    def find_overdue_rentals(self, now: Optional[datetime] = None) -> List[Rental]:
        return self.rental_repo.find_overdue(now or self.clock())

    # --- helpers ---

    def _load_open(self, rental_id: str, user_id: str) -> Rental:
        rental = self.rental_repo.get_by_id(rental_id, for_update=True)
        if not rental or rental.user_id != user_id:
            raise RentalNotFoundException()
        if rental.rental_status != RentalStatus.ACTIVE:
            raise RentalNotActiveException(f"Rental is {rental.rental_status}")
        return rental

    def _prepaid_charge(self, rental: Rental) -> Optional[ChargeBreakdown]:
        if rental.total_amount <= 0:
            return None
        booked = elapsed_hours(rental.start_time, rental.expected_end_time)
        extension_hours = booked - Decimal(self.default_window.total_seconds() / 3600)
        return ChargeBreakdown(
            hours=max(Decimal("0"), extension_hours),
            base_amount=rental.base_amount,
            tax_amount=rental.tax_amount,
            total_amount=rental.total_amount,
        )

    def _settle_user(
        self, user_id: str, deposit: Decimal, returned: Decimal, spent: Decimal
    ) -> None:
        user = self.user_repo.get_by_id(user_id, for_update=True)
        if not user:
            raise UserNotFoundException()
        if not self.user_repo.settle_deposit(user, deposit, returned, money(spent)):
            raise ConcurrentUpdateException(f"User {user_id} changed during settlement")
