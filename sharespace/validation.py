import math
import time
from typing import Any, Optional


class ValidationError(ValueError):
    """Raised when request input is rejected; carries the HTTP status."""

    def __init__(self, message: str, status: int = 400) -> None:
        super().__init__(message)
        self.status = status

    def to_payload(self) -> dict:
        return {"error": str(self)}


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def parse_expiry(value: Any, max_hours: int, now: Optional[float] = None) -> Optional[float]:
    """Translate an ``expiresIn`` value (hours or ``never``) to an epoch time."""

    if _is_blank(value) or str(value).strip().lower() == "never":
        return None
    try:
        hours = float(value)
    except (TypeError, ValueError) as error:
        raise ValidationError("Invalid expiry value") from error
    if math.isnan(hours) or math.isinf(hours) or hours <= 0:
        raise ValidationError("Invalid expiry value")
    if hours > max_hours:
        raise ValidationError(f"Expiry cannot exceed {max_hours} hours")
    now = time.time() if now is None else now
    return now + hours * 3600


def parse_max_downloads(value: Any) -> Optional[int]:
    if _is_blank(value):
        return None
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError) as error:
        raise ValidationError("Invalid download limit") from error
    if parsed < 1:
        raise ValidationError("Invalid download limit")
    return parsed


def parse_limit(value: Any, default: int, maximum: int) -> int:
    if _is_blank(value):
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError) as error:
        raise ValidationError("Invalid limit") from error
    return max(1, min(parsed, maximum))


def clean_username(value: Any, max_length: int = 50) -> str:
    username = str(value or "").strip()
    if not username:
        raise ValidationError("Username is required")
    if len(username) > max_length:
        raise ValidationError(f"Username cannot exceed {max_length} characters")
    return username
