"""Shared helpers for the scheduler routes."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


class PaginationDefaults:
    """Standard limits for history endpoints."""

    DEFAULT_LIMIT = 20
    MAX_LIMIT = 200


def json_serializable(obj: Any) -> Any:
    """Convert objects to JSON-serializable format.

    Handler results are stored as-is, so they may carry datetimes, UUIDs or
    Decimals that json.dumps() can't serialize:
    - datetime/date → ISO format string
    - Enum → its value
    - UUID → string
    - Decimal → float
    - dict/list → recursive conversion
    - Objects with to_dict() → dict
    """
    if obj is None:
        return None
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (str, int, float, bool)):
        return obj
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, bytes):
        return obj.decode("utf-8", errors="replace")
    if isinstance(obj, dict):
        return {k: json_serializable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set, frozenset)):
        return [json_serializable(item) for item in obj]
    if hasattr(obj, "to_dict"):
        return json_serializable(obj.to_dict())
    return str(obj)
