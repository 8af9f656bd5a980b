"""Utility helpers for the error impact analysis."""
from __future__ import annotations

import time
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, List, Tuple


MILLIS_PER_DAY = 24 * 60 * 60 * 1000


def now_millis(clock: Callable[[], float] = time.time) -> int:
    return int(clock() * 1000)


def micros_to_datetime(micros: int) -> datetime:
    """Convert a microsecond epoch timestamp into an aware UTC datetime."""
    seconds, remainder = divmod(micros, 1_000_000)
    return datetime.fromtimestamp(seconds, tz=timezone.utc) + timedelta(microseconds=remainder)


def parse_micros(value: str) -> int:
    value = (value or "").strip()
    if not value:
        raise ValueError("blank timestamp")
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"'{value}' is not a valid unix timestamp") from None


def local_day(millis: int) -> date:
    return datetime.fromtimestamp(millis / 1000).date()


def today_digits(clock: Callable[[], float] = time.time) -> str:
    return datetime.fromtimestamp(clock()).strftime("%Y%m%d")


def format_errors(errors: Dict[str, List[Exception]]) -> List[Tuple[str, str]]:
    lines: List[Tuple[str, str]] = []
    for label, issues in errors.items():
        for issue in issues:
            lines.append((label, str(issue)))
    return lines


class AnalysisError(RuntimeError):
    """Base class for failures scoped to one configuration/environment pair."""


class ConfigurationError(AnalysisError):
    """A configuration or environment definition is incomplete or invalid."""


class TransportError(AnalysisError):
    """The query API could not be reached or answered with a failure status."""


class MalformedResponse(AnalysisError):
    """The query API answered with a payload of unexpected shape."""


class PipelineError(RuntimeError):
    """Raised when the analysis run completes with collected errors."""
