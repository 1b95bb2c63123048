from datetime import date, datetime
from typing import Any, Optional

from errors import InvalidArgument


class TextValidator:
    """Trimming and presence checks for user supplied text."""

    @staticmethod
    def require(value: Any, field: str) -> str:
        if value is None or not isinstance(value, str):
            raise InvalidArgument(f"{field} is required")
        t = value.strip()
        if not t:
            raise InvalidArgument(f"{field} is required")
        return t

    @staticmethod
    def optional(value: Any) -> Optional[str]:
        # empty strings are stored as NULL
        if value is None:
            return None
        t = str(value).strip()
        return t or None


# SQLite INTEGER is a signed 64-bit value
INTEGER_MIN = -(2 ** 63)
INTEGER_MAX = 2 ** 63 - 1


class NumberValidator:

    @staticmethod
    def whole_number(value: Any) -> Optional[int]:
        """Return ``value`` as an int, or None when it is not a whole number the store can hold."""
        n = NumberValidator._parse_int(value)
        if n is None or not INTEGER_MIN <= n <= INTEGER_MAX:
            return None
        return n

    @staticmethod
    def _parse_int(value: Any) -> Optional[int]:
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, int):
            return value
        if isinstance(value, float):
            return int(value) if value.is_integer() else None
        if isinstance(value, str):
            s = value.strip()
            try:
                return int(s)
            except ValueError:
                try:
                    f = float(s)
                except ValueError:
                    return None
                return int(f) if f.is_integer() else None
        return None

    @staticmethod
    def identifier(value: Any, field: str) -> int:
        n = NumberValidator.whole_number(value)
        if n is None or n <= 0:
            raise InvalidArgument(f"{field} is required")
        return n


class DateValidator:

    @staticmethod
    def optional_timestamp(value: Any, field: str) -> Optional[str]:
        """Normalize an optional ISO-8601 date or datetime to its string form."""
        if value is None:
            return None
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, date):
            return value.isoformat()
        if not isinstance(value, str):
            raise InvalidArgument(f"{field} must be an ISO-8601 date")
        s = value.strip()
        if not s:
            return None
        try:
            if len(s) == 10:
                date.fromisoformat(s)
            else:
                datetime.fromisoformat(s.replace("Z", "+00:00"))
        except ValueError as e:
            raise InvalidArgument(f"{field} must be an ISO-8601 date") from e
        return s
