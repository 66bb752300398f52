from datetime import datetime
from decimal import Decimal
from typing import Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from rental_engine.core.exceptions import ValidationException

MIN_EXTENSION_HOURS = 1
MAX_EXTENSION_HOURS = 24


# --- Requests: validated before a unit of work is opened ---


class StartRentalRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    device_code: str = Field(min_length=1, max_length=32)
    station_id: str = Field(min_length=1, max_length=64)


class ExtendRentalRequest(BaseModel):
    rental_id: str = Field(min_length=1, max_length=64)
    user_id: str = Field(min_length=1, max_length=64)
    extra_hours: int = Field(ge=MIN_EXTENSION_HOURS, le=MAX_EXTENSION_HOURS)


class EndRentalRequest(BaseModel):
    rental_id: str = Field(min_length=1, max_length=64)
    user_id: str = Field(min_length=1, max_length=64)
    return_station_id: str = Field(min_length=1, max_length=64)
    session_id: Optional[str] = Field(None, description="Return QR session")


class ReportLostRequest(BaseModel):
    rental_id: str = Field(min_length=1, max_length=64)
    user_id: str = Field(min_length=1, max_length=64)
    notes: Optional[str] = Field(None, max_length=1000)


class CancelRentalRequest(BaseModel):
    rental_id: str = Field(min_length=1, max_length=64)
    user_id: str = Field(min_length=1, max_length=64)


RequestT = TypeVar("RequestT", bound=BaseModel)


def build_request(model: Type[RequestT], **data) -> RequestT:
    try:
        return model(**data)
    except PydanticValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValidationException(errors) from e


# --- Pricing ---


class Tariff(BaseModel):
    model_config = ConfigDict(frozen=True)

    first_hour_rate: Decimal
    additional_hour_rate: Decimal
    daily_cap: Decimal
    tax_rate: Decimal
    deposit_amount: Decimal
    late_fee_per_hour: Decimal
    billing_increment_hours: Decimal = Decimal("0.5")


class ChargeBreakdown(BaseModel):
    model_config = ConfigDict(frozen=True)

    hours: Decimal
    base_amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal


class Settlement(BaseModel):
    model_config = ConfigDict(frozen=True)

    charge: ChargeBreakdown
    late_fee: Decimal
    deposit_amount: Decimal
    deposit_return_amount: Decimal


# --- QR sessions ---


class QRSession(BaseModel):
    session_id: str
    device_id: str
    station_id: str
    user_id: str
    purpose: str
    issued_at: datetime
    expires_at: datetime


class QRScanResult(BaseModel):
    action: str
    session: QRSession


class QRCodeTicket(BaseModel):
    session: QRSession
    image_data_url: str


# --- Results ---


class RentalView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    rental_code: str
    user_id: str
    device_id: str
    station_from_id: str
    station_to_id: Optional[str] = None
    status: str
    start_time: datetime
    expected_end_time: datetime
    end_time: Optional[datetime] = None
    total_hours: Optional[Decimal] = None
    base_amount: Decimal
    tax_amount: Decimal
    late_fee: Decimal
    total_amount: Decimal
    deposit_amount: Decimal
    deposit_returned: bool
    deposit_return_amount: Decimal
    is_overdue: bool = False
    overdue_minutes: int = 0
    remaining_minutes: int = 0


class StartRentalResult(BaseModel):
    rental: RentalView


class ExtendRentalResult(BaseModel):
    rental: RentalView
    extension_hours: int
    additional_amount: Decimal
    previous_end_time: datetime


class DeviceView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    device_code: str
    current_status: str
    station_id: Optional[str] = None
    battery_level: int
    health_score: int
    rental_count: int
    total_earnings: Decimal
