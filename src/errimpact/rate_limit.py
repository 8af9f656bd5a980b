"""Waiting out HTTP 429 responses from the query API."""
from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Callable, Optional, Tuple

import requests

from .config import MAX_RATE_LIMIT_RETRIES, MAX_RATE_LIMIT_WAIT, MIN_RATE_LIMIT_WAIT
from .utils import TransportError, micros_to_datetime, parse_micros

TOO_MANY_REQUESTS = 429
LIMIT_HEADER = "X-RateLimit-Limit"
RESET_HEADER = "X-RateLimit-Reset"


class MissingRateLimitHeader(TransportError):
    """A 429 response did not carry usable rate limit headers."""


class RateLimitExhausted(TransportError):
    """Still rate limited after the last retry."""

    def __init__(self, message: str, response: requests.Response):
        super().__init__(message)
        self.response = response


def compute_sleep_seconds(reset_micros: int, now: float) -> float:
    """Seconds until ``reset_micros`` (server clock) from ``now`` (client clock).

    The two clocks may disagree, so the result is clamped to the
    ``[MIN_RATE_LIMIT_WAIT, MAX_RATE_LIMIT_WAIT]`` range.
    """
    wait = reset_micros / 1_000_000 - now
    return min(max(wait, MIN_RATE_LIMIT_WAIT), MAX_RATE_LIMIT_WAIT)


def extract_rate_limit_headers(response: requests.Response) -> Tuple[str, int, datetime]:
    limit = response.headers.get(LIMIT_HEADER, "")
    reset = response.headers.get(RESET_HEADER, "")
    if not limit:
        raise MissingRateLimitHeader(f"rate limit header '{LIMIT_HEADER}' not found")
    if not reset:
        raise MissingRateLimitHeader(f"rate limit header '{RESET_HEADER}' not found")
    try:
        reset_micros = parse_micros(reset)
        reset_at = micros_to_datetime(reset_micros)
    except (ValueError, OverflowError, OSError) as exc:
        raise MissingRateLimitHeader(f"rate limit header '{RESET_HEADER}': {exc}") from exc
    return limit, reset_micros, reset_at


class RateLimiter:
    """Re-issue a request after sleeping until the server's rate limit resets."""

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        max_retries: int = MAX_RATE_LIMIT_RETRIES,
    ):
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock
        self.sleep = sleep
        self.max_retries = max_retries

    def execute_with_retry(self, perform: Callable[[], requests.Response]) -> requests.Response:
        response = perform()
        attempt = 0
        while response.status_code == TOO_MANY_REQUESTS:
            if attempt >= self.max_retries:
                raise RateLimitExhausted(
                    f"still rate limited after {self.max_retries} retries", response
                )
            limit, reset_micros, reset_at = extract_rate_limit_headers(response)
            self.logger.info(
                "Rate limit of %s requests/min reached (iteration: %d)", limit, attempt + 1
            )
            self.logger.info(
                "Attempting to sleep until %s", reset_at.isoformat()
            )
            now = self.clock()
            self.logger.debug("Calculated sleep duration of %.3f seconds", reset_micros / 1_000_000 - now)
            wait = compute_sleep_seconds(reset_micros, now)
            self.logger.debug("Sleeping for %.3f seconds", wait)
            self.sleep(wait)
            attempt += 1
            response = perform()
        return response
