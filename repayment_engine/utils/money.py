"""Money helpers"""

from decimal import Decimal


def to_decimal(value) -> Decimal:
    """Coerce a database or JSON amount to Decimal (None -> 0)"""
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def format_amount(value: Decimal) -> str:
    """Thousands-separated amount without trailing zero decimals: 1000 -> '1,000', 1234.5 -> '1,234.5'"""
    text = f"{to_decimal(value):,.2f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text
