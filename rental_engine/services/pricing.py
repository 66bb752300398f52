"""Tariff arithmetic for rentals.

Everything here is a pure function of its arguments: no clock reads, no
database access. Amounts are ``Decimal`` quantized to two places so running
totals never drift across several extensions.
"""

from datetime import datetime
from decimal import ROUND_CEILING, Decimal
from typing import Optional

from rental_engine.config.settings import Settings
from rental_engine.core.exceptions import ValidationException
from rental_engine.core.utils import ensure_utc, money
from rental_engine.schemas import ChargeBreakdown, Settlement, Tariff

ZERO = Decimal("0")
ONE_HOUR = Decimal("1")
SECONDS_PER_HOUR = Decimal("3600")


def tariff_from_settings(settings: Settings) -> Tariff:
    return Tariff(
        first_hour_rate=settings.first_hour_rate,
        additional_hour_rate=settings.additional_hour_rate,
        daily_cap=settings.daily_cap,
        tax_rate=settings.tax_rate,
        deposit_amount=settings.deposit_amount,
        late_fee_per_hour=settings.late_fee_per_hour,
        billing_increment_hours=settings.billing_increment_hours,
    )


def elapsed_hours(start: datetime, end: datetime) -> Decimal:
    delta = ensure_utc(end) - ensure_utc(start)
    seconds = Decimal(delta.days * 86400 + delta.seconds) + (
        Decimal(delta.microseconds) / Decimal(1_000_000)
    )
    return max(ZERO, seconds / SECONDS_PER_HOUR)


def round_up_to_increment(hours: Decimal, increment: Decimal) -> Decimal:
    if hours <= ZERO:
        return ZERO
    steps = (hours / increment).to_integral_value(rounding=ROUND_CEILING)
    return steps * increment


def _with_tax(hours: Decimal, base: Decimal, tariff: Tariff) -> ChargeBreakdown:
    base = money(base)
    tax = money(base * tariff.tax_rate)
    return ChargeBreakdown(
        hours=hours, base_amount=base, tax_amount=tax, total_amount=money(base + tax)
    )


def calculate_charge(hours: Decimal, tariff: Tariff) -> ChargeBreakdown:
    if hours < ZERO:
        raise ValidationException("Elapsed hours must not be negative")

    if hours <= ONE_HOUR:
        billed = ONE_HOUR
        base = tariff.first_hour_rate
    else:
        extra = round_up_to_increment(hours - ONE_HOUR, tariff.billing_increment_hours)
        billed = ONE_HOUR + extra
        base = tariff.first_hour_rate + extra * tariff.additional_hour_rate

    return _with_tax(billed, min(base, tariff.daily_cap), tariff)


def calculate_extension(extra_hours: Decimal, tariff: Tariff) -> ChargeBreakdown:
    """Charge for a prepaid extension window, priced on its own.

    Extension hours always follow the rental's first hour, so they are
    billed at the additional-hour rate only.
    """
    if extra_hours <= ZERO:
        raise ValidationException("Extension hours must be positive")

    billed = round_up_to_increment(extra_hours, tariff.billing_increment_hours)
    base = min(billed * tariff.additional_hour_rate, tariff.daily_cap)
    return _with_tax(billed, base, tariff)


def calculate_late_fee(
    expected_end: datetime, end: datetime, tariff: Tariff
) -> Decimal:
    if ensure_utc(end) <= ensure_utc(expected_end):
        return money(ZERO)
    overdue = elapsed_hours(expected_end, end)
    hours = overdue.to_integral_value(rounding=ROUND_CEILING)
    return money(hours * tariff.late_fee_per_hour)


def calculate_deposit_return(
    deposit: Decimal, total: Decimal, late_fee: Decimal
) -> Decimal:
    return money(max(ZERO, deposit - (total + late_fee)))


class PricingEngine:
    def __init__(self, tariff: Tariff):
        self.tariff = tariff

    @classmethod
    def from_settings(cls, settings: Settings) -> "PricingEngine":
        return cls(tariff_from_settings(settings))

    def quote(self, hours) -> ChargeBreakdown:
        return calculate_charge(Decimal(str(hours)), self.tariff)

    def extension(self, extra_hours) -> ChargeBreakdown:
        return calculate_extension(Decimal(str(extra_hours)), self.tariff)

    def settle(
        self,
        start: datetime,
        expected_end: datetime,
        end: datetime,
        deposit: Decimal,
        prepaid: Optional[ChargeBreakdown] = None,
    ) -> Settlement:
        """Final bill for a returned device.

        The charge is the larger of actual usage and whatever was already
        prepaid through extensions: prepaid hours are neither billed twice
        nor refunded.
        """
        charge = calculate_charge(elapsed_hours(start, end), self.tariff)
        if prepaid is not None and prepaid.total_amount > charge.total_amount:
            charge = prepaid

        late_fee = calculate_late_fee(expected_end, end, self.tariff)
        return Settlement(
            charge=charge,
            late_fee=late_fee,
            deposit_amount=money(deposit),
            deposit_return_amount=calculate_deposit_return(
                deposit, charge.total_amount, late_fee
            ),
        )
