"""
Helper utilities
"""
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, List, Optional, Union

from dateutil import parser as date_parser

Number = Union[int, float, Decimal]

# Monthly multipliers for subscription billing intervals
MRR_INTERVAL_MULTIPLIERS = {
    "day": Decimal("30"),
    "week": Decimal("4.33"),
    "month": Decimal("1"),
    "year": Decimal("1") / Decimal("12"),
}

# Currencies Stripe reports in major units already
ZERO_DECIMAL_CURRENCIES = {
    "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
    "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
}

CENT = Decimal("0.01")


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how timestamps are stored"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC"""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def floor_to_day(value: datetime) -> datetime:
    """Truncate a timestamp to midnight of the same day"""
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse the timestamp shapes platforms send.

    Accepts unix seconds (Stripe), ISO-8601 strings with offsets (Shopify)
    and GA4 compact dates (YYYYMMDD). Returns naive UTC or None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
    text = str(value).strip()
    if len(text) == 8 and text.isdigit():
        return datetime.strptime(text, "%Y%m%d")
    try:
        return to_naive_utc(date_parser.isoparse(text))
    except ValueError:
        return None


def to_decimal(value: Any, default: Optional[Decimal] = None) -> Optional[Decimal]:
    """Convert API numbers (often strings) to Decimal without float drift"""
    if value is None or value == "":
        return default
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


def minor_to_major(amount: Any, currency: Optional[str] = None) -> Decimal:
    """Convert an amount in minor units (cents) to major units"""
    value = to_decimal(amount, Decimal("0"))
    if currency and currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return value
    return value / Decimal("100")


def normalize_mrr(
    amount: Number,
    interval: str,
    interval_count: int = 1,
    quantity: int = 1
) -> Decimal:
    """
    Normalize a recurring price to its monthly-equivalent value.

    Args:
        amount: Price per billing period, in major units
        interval: Billing interval (day, week, month, year)
        interval_count: Number of intervals between billings
        quantity: Subscription item quantity

    Returns:
        Monthly recurring revenue contribution
    """
    multiplier = MRR_INTERVAL_MULTIPLIERS.get((interval or "").lower())
    if multiplier is None:
        raise ValueError(f"Unknown billing interval: {interval}")
    count = max(int(interval_count or 1), 1)
    qty = max(int(quantity or 1), 1)
    return to_decimal(amount, Decimal("0")) * qty * multiplier / count


def percent_change(current: Number, previous: Number) -> Decimal:
    """
    Percentage change between two values.

    A zero baseline is 100% when current is positive and 0% otherwise.
    """
    current_value = to_decimal(current, Decimal("0"))
    previous_value = to_decimal(previous, Decimal("0"))
    if previous_value == 0:
        return Decimal("100") if current_value > 0 else Decimal("0")
    return (current_value - previous_value) / abs(previous_value) * 100


def safe_divide(numerator: Number, denominator: Number, default: Optional[Decimal] = None) -> Optional[Decimal]:
    """Safely divide two numbers"""
    denominator_value = to_decimal(denominator, Decimal("0"))
    if denominator_value == 0:
        return default
    return to_decimal(numerator, Decimal("0")) / denominator_value


def quantize_money(value: Number) -> Decimal:
    """Round to cents"""
    return to_decimal(value, Decimal("0")).quantize(CENT, rounding=ROUND_HALF_UP)


def chunk_list(lst: List, chunk_size: int) -> List[List]:
    """Split list into chunks"""
    return [lst[i:i + chunk_size] for i in range(0, len(lst), chunk_size)]
