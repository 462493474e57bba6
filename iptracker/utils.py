"""
Utility functions for the proposal tracker.
"""

import calendar
import hashlib
import logging
import re
from datetime import datetime, timezone
from typing import Iterator, Optional, Tuple

# Trailing proposal number of a document filename: "eip-1234.md", "1234.md", "PIP-12.md"
PROPOSAL_NUMBER_RE = re.compile(r"(?:[a-zA-Z]*-)?(\d+)\.md$")


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    Setup logging configuration.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional log file path
    """
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )


def extract_proposal_number(path: str) -> Optional[str]:
    """
    Extract the proposal number from a document path.

    Args:
        path: Repository path (e.g. "EIPS/eip-1559.md")

    Returns:
        Number as a string without leading prefix, or None if the path has none
    """
    match = PROPOSAL_NUMBER_RE.search(path)
    if not match:
        return None
    return match.group(1)


def content_hash(body: str) -> str:
    """SHA-256 hex digest of a document body."""
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def word_count(text: str) -> int:
    """Count whitespace-separated words."""
    return len(text.split())


def safe_division(numerator: float, denominator: float, default: float = 0.0) -> float:
    """
    Safely divide two numbers, returning default if denominator is zero.

    Args:
        numerator: Numerator
        denominator: Denominator
        default: Default value if division by zero

    Returns:
        Division result or default
    """
    if denominator == 0:
        return default
    return numerator / denominator


def parse_github_datetime(value: Optional[str]) -> datetime:
    """
    Parse an ISO-8601 timestamp from the GitHub API into naive UTC.

    Args:
        value: Timestamp such as "2023-06-01T12:00:00Z"; None means now

    Returns:
        Naive datetime in UTC
    """
    if not value:
        return utcnow()
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def utcnow() -> datetime:
    """Current time as naive UTC (the store keeps naive UTC datetimes)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def month_end(year: int, month: int) -> datetime:
    """Last representable instant of a calendar month."""
    last_day = calendar.monthrange(year, month)[1]
    return datetime(year, month, last_day, 23, 59, 59, 999999)


def iter_months(start: datetime, end: datetime) -> Iterator[Tuple[int, int, datetime]]:
    """
    Yield (year, month, cutoff) for every calendar month from start to end.

    The cutoff is the end of each month. Bounds are inclusive at month
    granularity, so a backfill can be restarted from any month by re-deriving
    start and end from stored data.

    Args:
        start: Any instant in the first month
        end: Any instant in the last month

    Yields:
        Tuples of (year, month, month-end cutoff)
    """
    year, month = start.year, start.month
    while (year, month) <= (end.year, end.month):
        yield year, month, month_end(year, month)
        month += 1
        if month > 12:
            year, month = year + 1, 1
