"""
Date parsing for the assorted formats sources publish.
"""

import re
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Optional

from newsdesk.core.timeutil import to_naive_utc

# Free-text formats seen on scraped listing pages
_TEXT_FORMATS = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%d %B %Y",
    "%d %b %Y",
    "%B %d, %Y",
    "%b %d, %Y",
    "%b. %d, %Y",
    "%d.%m.%Y",
)


def parse_iso_date(date_str: Optional[str]) -> Optional[datetime]:
    """Parse Atom/ISO date format."""
    if not date_str:
        return None
    value = date_str.strip()

    try:
        return to_naive_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        pass

    try:
        # Try without timezone
        return datetime.fromisoformat(value[:19])
    except ValueError:
        return None


def parse_rss_date(date_str: Optional[str]) -> Optional[datetime]:
    """Parse RSS date format (RFC 822), falling back to ISO."""
    if not date_str:
        return None

    try:
        return to_naive_utc(parsedate_to_datetime(date_str.strip()))
    except (ValueError, TypeError, IndexError):
        pass

    return parse_iso_date(date_str)


def parse_loose_date(date_str: Optional[str]) -> Optional[datetime]:
    """Best-effort parsing of dates scraped out of page text."""
    if not date_str:
        return None
    value = " ".join(date_str.split())

    parsed = parse_rss_date(value)
    if parsed:
        return parsed

    # Drop ordinal suffixes ("March 5th, 2024")
    value = re.sub(r"(\d)(st|nd|rd|th)\b", r"\1", value)
    for fmt in _TEXT_FORMATS:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue

    match = re.search(r"\d{4}-\d{2}-\d{2}", value)
    if match:
        return parse_iso_date(match.group(0))
    return None
