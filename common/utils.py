import datetime
import decimal
import uuid
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

QUANTITY_QUANT = Decimal("0.001")
ZERO = Decimal("0")


def to_quantity(value):
    """Coerce user/DB input to a 3-place Decimal. Returns None for blank input, raises ValueError when unparseable."""
    if value is None or value == "":
        return None
    if isinstance(value, float):
        value = repr(value)
    try:
        quantity = Decimal(str(value).strip().replace(",", "."))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Invalid quantity: {value!r}") from exc
    if not quantity.is_finite():
        raise ValueError(f"Invalid quantity: {value!r}")
    return quantity.quantize(QUANTITY_QUANT, rounding=ROUND_HALF_UP)


def to_json_compatible(value):
    if isinstance(value, dict):
        return {key: to_json_compatible(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_json_compatible(item) for item in value]
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, decimal.Decimal):
        return str(value)
    if isinstance(value, (datetime.date, datetime.datetime, datetime.time)):
        return value.isoformat()
    return value
