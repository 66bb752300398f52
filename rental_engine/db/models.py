from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from rental_engine.core.utils import uuid4, utcnow

MONEY = Numeric(12, 2)


class AccountStatus:
    ACTIVE = "active"
    SUSPENDED = "suspended"
    BLOCKED = "blocked"


class DeviceStatus:
    AVAILABLE = "available"
    RENTED = "rented"
    MAINTENANCE = "maintenance"
    LOST = "lost"


class RentalStatus:
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    LOST = "LOST"
    CANCELLED = "CANCELLED"
    # never stored, see services.rental.effective_status
    OVERDUE = "OVERDUE"


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=uuid4)
    phone_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    account_status: Mapped[str] = mapped_column(
        String(16), default=AccountStatus.ACTIVE
    )  # active / suspended / blocked
    deposit_balance: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0.00"))
    total_rentals: Mapped[int] = mapped_column(Integer, default=0)
    total_spent: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0.00"))
    version: Mapped[int] = mapped_column(Integer, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class Station(Base):
    __tablename__ = "stations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(128))
    total_slots: Mapped[int] = mapped_column(Integer)
    available_slots: Mapped[int] = mapped_column(Integer, default=0)
    is_operational: Mapped[bool] = mapped_column(Boolean, default=True)
    version: Mapped[int] = mapped_column(Integer, default=1)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "available_slots >= 0 AND available_slots <= total_slots",
            name="ck_stations_slots_bounds",
        ),
    )


class Device(Base):
    __tablename__ = "devices"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=uuid4)
    device_code: Mapped[str] = mapped_column(String(32), unique=True)
    current_status: Mapped[str] = mapped_column(
        String(16), default=DeviceStatus.AVAILABLE
    )  # available / rented / maintenance / lost
    station_id: Mapped[Optional[str]] = mapped_column(
        String(64), ForeignKey("stations.id"), nullable=True, index=True
    )
    battery_level: Mapped[int] = mapped_column(Integer, default=100)
    health_score: Mapped[int] = mapped_column(Integer, default=100)
    rental_count: Mapped[int] = mapped_column(Integer, default=0)
    total_earnings: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0.00"))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    version: Mapped[int] = mapped_column(Integer, default=1)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class Rental(Base):
    __tablename__ = "rentals"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=uuid4)
    rental_code: Mapped[str] = mapped_column(String(32), unique=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), index=True)
    device_id: Mapped[str] = mapped_column(String(64), ForeignKey("devices.id"))
    station_from_id: Mapped[str] = mapped_column(String(64), ForeignKey("stations.id"))
    station_to_id: Mapped[Optional[str]] = mapped_column(
        String(64), ForeignKey("stations.id"), nullable=True
    )
    rental_status: Mapped[str] = mapped_column(
        String(16), default=RentalStatus.ACTIVE
    )  # ACTIVE / COMPLETED / LOST / CANCELLED
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expected_end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    end_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    total_hours: Mapped[Optional[Decimal]] = mapped_column(Numeric(8, 2), nullable=True)
    base_amount: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0.00"))
    tax_amount: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0.00"))
    late_fee: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0.00"))
    total_amount: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0.00"))
    deposit_amount: Mapped[Decimal] = mapped_column(MONEY)
    deposit_returned: Mapped[bool] = mapped_column(Boolean, default=False)
    deposit_return_amount: Mapped[Decimal] = mapped_column(
        MONEY, default=Decimal("0.00")
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


# At most one open rental per user and per device
_OPEN_RENTAL = text("rental_status = 'ACTIVE'")

Index(
    "uq_rentals_user_open",
    Rental.user_id,
    unique=True,
    postgresql_where=_OPEN_RENTAL,
    sqlite_where=_OPEN_RENTAL,
)
Index(
    "uq_rentals_device_open",
    Rental.device_id,
    unique=True,
    postgresql_where=_OPEN_RENTAL,
    sqlite_where=_OPEN_RENTAL,
)
Index("ix_rentals_status_expected_end", Rental.rental_status, Rental.expected_end_time)
