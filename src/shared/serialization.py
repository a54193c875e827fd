"""JSON-safety helpers for event payloads and JSONB columns."""

import enum
import uuid
from datetime import date, datetime
from typing import Any


def make_json_safe(obj: Any) -> Any:
    """Recursively convert non-serializable objects to JSON-safe values.

    Args:
        obj: Object to sanitize for JSON serialization.

    Returns:
        JSON-safe version of the object.
    """
    if obj is None or isinstance(obj, (bool, int, float, str)):
        if isinstance(obj, enum.Enum):
            return obj.value
        return obj
    if isinstance(obj, enum.Enum):
        return make_json_safe(obj.value)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, uuid.UUID):
        return str(obj)
    if isinstance(obj, dict):
        return {str(k): make_json_safe(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set, frozenset)):
        return [make_json_safe(v) for v in obj]
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json", exclude_none=True)
    return str(obj)
