"""Pricing calculator: nightly rate and a half-open date span to a total."""

from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from ..core.exceptions import ValidationError

# ISO 4217 exponents that differ from the usual two decimal places
_MINOR_UNIT_EXPONENTS = {
    "BIF": 0, "CLP": 0, "DJF": 0, "GNF": 0, "ISK": 0, "JPY": 0, "KMF": 0, "KRW": 0,
    "PYG": 0, "RWF": 0, "UGX": 0, "VND": 0, "VUV": 0, "XAF": 0, "XOF": 0, "XPF": 0,
    "BHD": 3, "IQD": 3, "JOD": 3, "KWD": 3, "LYD": 3, "OMR": 3, "TND": 3,
}


@dataclass(frozen=True)
class PriceQuote:
    """Result of pricing a stay."""

    nights: int
    nightly_rate: Decimal
    total: Decimal
    currency: str

    @property
    def total_minor(self) -> int:
        return to_minor_units(self.total, self.currency)

    @property
    def nightly_rate_minor(self) -> int:
        return to_minor_units(self.nightly_rate, self.currency)


def minor_unit_exponent(currency: str) -> int:
    """Number of decimal places used by ``currency``."""
    return _MINOR_UNIT_EXPONENTS.get(currency.upper(), 2)


def quantize_amount(amount: Decimal, currency: str) -> Decimal:
    """Round ``amount`` to the currency's minor unit, half-up."""
    exponent = Decimal(1).scaleb(-minor_unit_exponent(currency))
    return amount.quantize(exponent, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Convert a major-unit decimal (e.g. dollars) to integer minor units (e.g. cents)."""
    scaled = quantize_amount(amount, currency).scaleb(minor_unit_exponent(currency))
    return int(scaled)


def from_minor_units(amount: int, currency: str) -> Decimal:
    """Convert integer minor units back to a major-unit decimal."""
    return quantize_amount(Decimal(amount).scaleb(-minor_unit_exponent(currency)), currency)


def parse_amount(value: object, currency: str) -> int:
    """
    Parse a provider-reported major-unit amount ("300.00", 300, 300.0) into minor units.

    Raises:
        ValidationError: If the value is not a finite number
    """
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(detail=f"Invalid amount '{value}'") from exc
    if not amount.is_finite():
        raise ValidationError(detail=f"Invalid amount '{value}'")
    return to_minor_units(amount, currency)


def count_nights(start_date: date, end_date: date) -> int:
    """
    Whole nights in ``[start_date, end_date)``.

    Raises:
        ValidationError: If the span is zero or negative
    """
    days = (end_date - start_date).days
    if days <= 0:
        raise ValidationError(
            detail="End date must be after start date",
            violations=[{"path": "end_date", "message": "must be after start_date"}],
        )
    return max(days, 1)


def price_stay(nightly_rate: Decimal, start_date: date, end_date: date, currency: str = "USD") -> PriceQuote:
    """
    Price a stay.

    ``total = nights * nightly_rate`` rounded half-up to the currency's minor unit.
    Pure: no I/O, safe to call both at reservation time and when re-verifying
    a captured payment against the booking's rate snapshot.

    Args:
        nightly_rate: Rate per night in major units
        start_date: First night (inclusive)
        end_date: Checkout date (exclusive)
        currency: ISO 4217 code

    Returns:
        PriceQuote with nights, rate and total

    Raises:
        ValidationError: If the span is not positive or the rate is not positive
    """
    if nightly_rate <= 0:
        raise ValidationError(detail="Nightly rate must be positive")

    nights = count_nights(start_date, end_date)
    rate = quantize_amount(nightly_rate, currency)
    total = quantize_amount(nightly_rate * nights, currency)
    return PriceQuote(nights=nights, nightly_rate=rate, total=total, currency=currency.upper())


def price_stay_minor(nightly_rate_amount: int, start_date: date, end_date: date, currency: str = "USD") -> PriceQuote:
    """Same as :func:`price_stay` for a rate stored in minor units."""
    return price_stay(from_minor_units(nightly_rate_amount, currency), start_date, end_date, currency)
