from contextlib import contextmanager
from datetime import datetime
from typing import Callable, List, Optional

from loguru import logger
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from rental_engine.clients.external import NotificationClient, NotificationKind
from rental_engine.config.settings import Settings
from rental_engine.core.exceptions import (
    ConcurrentUpdateException,
    ConflictException,
    NotFoundException,
    RentalEngineException,
    SessionMismatchException,
    ValidationException,
)
from rental_engine.core.utils import ensure_utc, utcnow
from rental_engine.db.repositories import (
    DeviceRepository,
    RentalRepository,
    StationRepository,
    UserRepository,
)
from rental_engine.monitoring.metrics import MetricsCollector
from rental_engine.schemas import (
    CancelRentalRequest,
    ChargeBreakdown,
    DeviceView,
    EndRentalRequest,
    ExtendRentalRequest,
    ExtendRentalResult,
    QRCodeTicket,
    QRSession,
    RentalView,
    ReportLostRequest,
    StartRentalRequest,
    StartRentalResult,
)
from rental_engine.services.inventory import InventoryLedger
from rental_engine.services.pricing import PricingEngine
from rental_engine.services.qr_session import QRPurpose, QRSessionManager
from rental_engine.services.rental import RentalStateMachine, to_view

# serialization_failure, deadlock_detected, lock_not_available
_PG_LOCK_CODES = {"40001", "40P01", "55P03"}


class UnitOfWork:
    """One session and one transaction.

    Commits when the block exits cleanly, rolls back on any exception and
    always closes the session.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self.session: Optional[Session] = None

    def __enter__(self) -> "UnitOfWork":
        self.session = self._session_factory()
        self.users = UserRepository(self.session)
        self.devices = DeviceRepository(self.session)
        self.stations = StationRepository(self.session)
        self.rentals = RentalRepository(self.session)
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            if exc_type is None:
                try:
                    self.session.commit()
                except Exception:
                    self.session.rollback()
                    raise
            else:
                self.session.rollback()
        finally:
            self.session.close()
        return False


def _is_lock_failure(error: OperationalError) -> bool:
    if getattr(error.orig, "pgcode", None) in _PG_LOCK_CODES:
        return True
    return "database is locked" in str(error.orig)


@contextmanager
def translate_db_errors(operation: str):
    try:
        yield
    except StaleDataError as e:
        logger.warning(f"{operation}: stale row version: {e}")
        raise ConcurrentUpdateException() from e
    except IntegrityError as e:
        logger.warning(f"{operation}: integrity conflict: {e.orig}")
        raise ConflictException(
            "Request conflicts with the current state", code="INTEGRITY_CONFLICT"
        ) from e
    except OperationalError as e:
        if _is_lock_failure(e):
            logger.warning(f"{operation}: lock or serialization failure: {e.orig}")
            raise ConcurrentUpdateException() from e
        raise


def _outcome(error: Exception) -> str:
    if isinstance(error, ConflictException):
        return "conflict"
    if isinstance(error, NotFoundException):
        return "not_found"
    if isinstance(error, ValidationException):
        return "invalid"
    return "error"


class RentalCoordinator:
    """Runs every rental transition as one atomic unit of work.

    Side effects that cannot be rolled back only happen after the commit.
    A failed notification never fails the request.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        qr_manager: QRSessionManager,
        settings: Settings,
        notifier: Optional[NotificationClient] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.qr_manager = qr_manager
        self.settings = settings
        self.notifier = notifier
        self.clock = clock
        self.pricing = PricingEngine.from_settings(settings)

    def _machine(self, uow: UnitOfWork) -> RentalStateMachine:
        ledger = InventoryLedger(uow.devices, uow.stations)
        return RentalStateMachine(
            uow.rentals, uow.users, ledger, self.pricing, self.settings, self.clock
        )

    def _transition(self, operation: str, apply):
        try:
            with translate_db_errors(operation):
                with UnitOfWork(self.session_factory) as uow:
                    result = apply(uow, self._machine(uow))
        except RentalEngineException as e:
            MetricsCollector.record_transition(operation, _outcome(e))
            logger.warning(f"{operation} rejected: [{e.code}] {e.message}")
            raise
        except Exception:
            MetricsCollector.record_transition(operation, "error")
            logger.exception(f"{operation} failed")
            raise

        MetricsCollector.record_transition(operation, "success")
        return result

    def _read(self, apply):
        with UnitOfWork(self.session_factory) as uow:
            return apply(uow, self._machine(uow))

    # --- transitions ---

    def start_rental(self, request: StartRentalRequest) -> StartRentalResult:
        def apply(uow: UnitOfWork, machine: RentalStateMachine) -> RentalView:
            rental = machine.start(request.user_id, request.device_code, request.station_id)
            return to_view(rental, self.clock())

        view = self._transition("start", apply)

        self._notify(
            NotificationKind.RENTAL_CONFIRMATION,
            view.user_id,
            {
                "rental_code": view.rental_code,
                "device_code": request.device_code,
                "station_id": view.station_from_id,
                "start_time": view.start_time,
                "expected_end_time": view.expected_end_time,
                "deposit_amount": view.deposit_amount,
            },
        )
        return StartRentalResult(rental=view)

    def extend_rental(self, request: ExtendRentalRequest) -> ExtendRentalResult:
        def apply(uow: UnitOfWork, machine: RentalStateMachine) -> ExtendRentalResult:
            rental, charge, previous_end = machine.extend(
                request.rental_id, request.user_id, request.extra_hours
            )
            return ExtendRentalResult(
                rental=to_view(rental, self.clock()),
                extension_hours=request.extra_hours,
                additional_amount=charge.total_amount,
                previous_end_time=previous_end,
            )

        result = self._transition("extend", apply)

        self._notify(
            NotificationKind.RENTAL_EXTENDED,
            result.rental.user_id,
            {
                "rental_code": result.rental.rental_code,
                "extension_hours": result.extension_hours,
                "additional_amount": result.additional_amount,
                "new_end_time": result.rental.expected_end_time,
            },
        )
        return result

    def end_rental(self, request: EndRentalRequest) -> RentalView:
        qr_session = None
        if request.session_id:
            qr_session = self.qr_manager.validate(
                request.session_id, observed_station_id=request.return_station_id
            )
            if qr_session.purpose != QRPurpose.RETURN:
                raise SessionMismatchException(
                    "QR session does not authorise a return", code="PURPOSE_MISMATCH"
                )

        def apply(uow: UnitOfWork, machine: RentalStateMachine) -> RentalView:
            if qr_session is not None:
                rental = uow.rentals.get_by_id(request.rental_id)
                if rental and rental.device_id != qr_session.device_id:
                    raise SessionMismatchException("Device mismatch", code="DEVICE_MISMATCH")
            rental, _ = machine.end(
                request.rental_id, request.user_id, request.return_station_id
            )
            return to_view(rental, self.clock())

        view = self._transition("end", apply)

        if qr_session is not None:
            self.qr_manager.invalidate(qr_session.session_id)

        duration = (view.end_time - view.start_time).total_seconds()
        MetricsCollector.record_completed_rental(
            duration, view.total_amount + view.late_fee
        )
        self._notify(
            NotificationKind.PAYMENT_RECEIPT,
            view.user_id,
            {
                "rental_code": view.rental_code,
                "total_hours": view.total_hours,
                "total_amount": view.total_amount,
                "late_fee": view.late_fee,
                "deposit_return_amount": view.deposit_return_amount,
            },
        )
        return view

    def report_lost(self, request: ReportLostRequest) -> RentalView:
        def apply(uow: UnitOfWork, machine: RentalStateMachine) -> RentalView:
            rental = machine.report_lost(request.rental_id, request.user_id, request.notes)
            return to_view(rental, self.clock())

        view = self._transition("lost", apply)

        self._notify(
            NotificationKind.LOST_REPORT,
            view.user_id,
            {"rental_code": view.rental_code, "deposit_amount": view.deposit_amount},
        )
        return view

    def cancel_rental(self, request: CancelRentalRequest) -> RentalView:
        def apply(uow: UnitOfWork, machine: RentalStateMachine) -> RentalView:
            rental = machine.cancel(request.rental_id, request.user_id)
            return to_view(rental, self.clock())

        view = self._transition("cancel", apply)

        self._notify(
            NotificationKind.RENTAL_CANCELLED,
            view.user_id,
            {
                "rental_code": view.rental_code,
                "deposit_return_amount": view.deposit_return_amount,
            },
        )
        return view

    def update_device_status(
        self, device_id: str, battery_level: int, health_score: Optional[int] = None
    ) -> DeviceView:
        return self._transition(
            "device_status",
            lambda uow, machine: DeviceView.model_validate(
                machine.ledger.update_device_status(device_id, battery_level, health_score)
            ),
        )

    # --- reads ---

    def get_active_rental(self, user_id: str) -> RentalView:
        return self._read(
            lambda uow, machine: to_view(machine.get_active_rental(user_id), self.clock())
        )

    def get_rental_by_code(self, rental_code: str) -> RentalView:
        return self._read(
            lambda uow, machine: to_view(
                machine.get_rental_by_code(rental_code), self.clock()
            )
        )

    def list_user_rentals(self, user_id: str, limit: int = 10) -> List[RentalView]:
        now = self.clock()
        return self._read(
            lambda uow, machine: [
                to_view(r, now) for r in machine.list_user_rentals(user_id, limit)
            ]
        )

    def find_overdue_rentals(self, now: Optional[datetime] = None) -> List[RentalView]:
        now = ensure_utc(now) if now else self.clock()
        return self._read(
            lambda uow, machine: [
                to_view(r, now) for r in machine.find_overdue_rentals(now)
            ]
        )

    def quote_price(self, hours) -> ChargeBreakdown:
        return self.pricing.quote(hours)

    def list_available_devices(self, station_id: Optional[str] = None) -> List[DeviceView]:
        return self._read(
            lambda uow, machine: [
                DeviceView.model_validate(d)
                for d in machine.ledger.list_available_devices(station_id)
            ]
        )

    def list_station_devices(self, station_id: str) -> List[DeviceView]:
        return self._read(
            lambda uow, machine: [
                DeviceView.model_validate(d)
                for d in machine.ledger.list_station_devices(station_id)
            ]
        )

    def devices_needing_maintenance(self) -> List[DeviceView]:
        threshold = self.settings.maintenance_health_threshold
        return self._read(
            lambda uow, machine: [
                DeviceView.model_validate(d)
                for d in machine.ledger.devices_needing_maintenance(threshold)
            ]
        )

    def issue_qr_session(
        self,
        device_id: str,
        station_id: str,
        user_id: str,
        purpose: str = QRPurpose.START,
    ) -> QRSession:
        return self._read(
            lambda uow, machine: self.qr_manager.issue(
                device_id, station_id, user_id, purpose, ledger=machine.ledger
            )
        )

    def issue_qr_ticket(
        self,
        device_id: str,
        station_id: str,
        user_id: str,
        purpose: str = QRPurpose.START,
    ) -> QRCodeTicket:
        session = self.issue_qr_session(device_id, station_id, user_id, purpose)
        return self.qr_manager.ticket(session)

    # --- post-commit side effects ---

    def _notify(self, kind: str, user_id: str, payload: dict) -> None:
        if self.notifier is None:
            return
        try:
            success, error = self.notifier.send(kind, user_id, payload)
        except Exception as e:
            success, error = False, str(e)
        if not success:
            MetricsCollector.record_notification_failure(kind)
            logger.error(f"Notification {kind} for user {user_id} not delivered: {error}")
