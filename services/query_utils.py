import math
import re
from datetime import datetime
from typing import Optional, Tuple

from dateutil import parser

from models.mysql_models import as_naive_utc
from services.errors import ValidationError

DEFAULT_LIMIT = 20
MAX_LIMIT = 100

_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")
# Fields missing from a partial date fall back to January 1st, midnight.
_PARTIAL_DATE_DEFAULT = datetime(1, 1, 1)


def normalize_paging(page: Optional[int], limit: Optional[int], max_limit: int = MAX_LIMIT) -> Tuple[int, int]:
    page = page if page and page > 0 else 1
    limit = limit if limit and limit > 0 else DEFAULT_LIMIT
    return page, min(limit, max_limit)


def pagination(page: int, limit: int, total: int) -> dict:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit) if limit else 0
    }


def parse_date_bound(value: Optional[str], end_of_day: bool = False) -> Optional[datetime]:
    """Parse a query-string date into naive UTC.

    A bare ``YYYY-MM-DD`` used as an upper bound is stretched to the last
    microsecond of that day.
    """
    if value is None or str(value).strip() == "":
        return None

    text = str(value).strip()
    try:
        parsed = parser.parse(text.replace("Z", "+00:00"), default=_PARTIAL_DATE_DEFAULT)
    except (ValueError, OverflowError):
        raise ValidationError(f"Invalid date: {value}")

    parsed = as_naive_utc(parsed)
    if end_of_day and _DATE_ONLY.match(text):
        parsed = parsed.replace(hour=23, minute=59, second=59, microsecond=999999)
    return parsed
