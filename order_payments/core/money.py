"""Currency precision and atomic-unit conversion helpers."""
from decimal import ROUND_CEILING, ROUND_DOWN, Decimal
from typing import Union

from order_payments.core.errors import PaymentValidationError

# Decimal places of the smallest unit: pence, satoshi, piconero.
CURRENCY_PRECISION = {
    "GBP": 2,
    "USD": 2,
    "EUR": 2,
    "BTC": 8,
    "XMR": 12,
}

CRYPTO_CURRENCIES = frozenset({"BTC", "XMR"})

Number = Union[Decimal, int, str]


def precision(currency: str) -> int:
    """
    Decimal places used by a currency.

    Raises:
        PaymentValidationError: If the currency is not supported
    """
    try:
        return CURRENCY_PRECISION[currency.upper()]
    except KeyError:
        raise PaymentValidationError(f"Unsupported currency: {currency}")


def quantum(currency: str) -> Decimal:
    return Decimal(1).scaleb(-precision(currency))


def quantize_up(amount: Number, currency: str) -> Decimal:
    """Round up to the currency's precision so the customer is never under-quoted."""
    return Decimal(amount).quantize(quantum(currency), rounding=ROUND_CEILING)


def to_atomic(amount: Number, currency: str) -> int:
    """
    Convert an amount to integer smallest units.

    Digits beyond the currency's precision are truncated; an observed
    payment is never credited with more than was actually paid.
    """
    scaled = Decimal(amount).scaleb(precision(currency))
    return int(scaled.to_integral_value(rounding=ROUND_DOWN))


def from_atomic(units: int, currency: str) -> Decimal:
    """Convert integer smallest units back to a Decimal amount."""
    return Decimal(units).scaleb(-precision(currency))


def to_decimal(value: object, field: str = "amount") -> Decimal:
    """
    Parse a provider-supplied amount.

    Raises:
        PaymentValidationError: If the value is missing, not numeric or negative
    """
    if value is None or isinstance(value, bool):
        raise PaymentValidationError(f"Missing or invalid {field}")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except ArithmeticError:
        raise PaymentValidationError(f"Invalid {field}: {value!r}")
    if not amount.is_finite() or amount < 0:
        raise PaymentValidationError(f"Invalid {field}: {value!r}")
    return amount


def format_amount(amount: Decimal, currency: str) -> str:
    """Render an amount at its currency precision without exponent notation."""
    return format(amount.quantize(quantum(currency)), "f")
