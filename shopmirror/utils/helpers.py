"""
Helper utilities
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional
from dateutil import parser as date_parser


def calculate_date_range(days: int = 30, now: Optional[datetime] = None) -> tuple[datetime, datetime]:
    """Calculate a [now - days, now] window in naive UTC"""
    end_date = now or datetime.utcnow()
    start_date = end_date - timedelta(days=days)
    return start_date, end_date


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Parse a Shopify timestamp into naive UTC.

    Shopify returns ISO 8601 strings with the shop's offset
    ("2024-03-01T10:15:00-06:00"). The mirror stores naive UTC.

    Raises:
        ValueError: value is a non-empty string that isn't a date
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = date_parser.isoparse(str(value))
        except ValueError:
            parsed = date_parser.parse(str(value))

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def to_decimal(value: Any, default: Optional[Decimal] = Decimal("0")) -> Optional[Decimal]:
    """
    Convert a Shopify money value to Decimal.

    Accepts numbers, numeric strings and money bags
    ({"shop_money": {"amount": "12.50"}}). Returns `default` for null or
    unparseable input.
    """
    if value is None or value == "":
        return default

    if isinstance(value, dict):
        money = value.get("shop_money") or value.get("presentment_money") or value
        return to_decimal(money.get("amount"), default)

    if isinstance(value, Decimal):
        return value

    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default
