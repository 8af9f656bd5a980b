"""Client for the user-session query API."""
from __future__ import annotations

import logging
import platform
import time
import uuid
from typing import Callable, Dict, List, Optional, Tuple

import requests

from .config import (
    ERROR_COUNT_CEILING,
    ERROR_WINDOW_DAYS,
    MAX_CANDIDATE_ERRORS,
    ROWS_PER_QUERY,
    SESSION_WINDOW_DAYS,
    SINGLE_QUERY_CEILING,
    VERSION,
    AnalysisConfig,
    is_new_token_format,
    validate_environment_url,
)
from .data_models import QueryWindow, Session, parse_session_rows
from .rate_limit import RateLimiter
from .utils import (
    ConfigurationError,
    MalformedResponse,
    MILLIS_PER_DAY,
    TransportError,
    now_millis,
)

TABLE_API = "/api/v1/userSessionQueryLanguage/table"
REQUEST_TIMEOUT = 60.0


REDACTED_HEADERS = {"authorization"}
_DUMPED_CONTENT = ("json", "text", "xml")


def _dump_headers(headers) -> str:
    return "\n".join(
        f"{key}: {'<redacted>' if key.lower() in REDACTED_HEADERS else value}" for key, value in headers.items()
    )


def _dump_body(headers, body) -> str:
    content_type = headers.get("Content-Type", "")
    if not body or not any(kind in content_type for kind in _DUMPED_CONTENT):
        return ""
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    return f"\n\n{body}"


def request_log_hook(request_log: logging.Logger) -> Callable[..., None]:
    """``requests`` response hook writing each exchange to ``request_log`` under a fresh request id."""

    def log_exchange(response: requests.Response, *args, **kwargs) -> None:
        request_id = str(uuid.uuid4())
        request = response.request
        request_log.debug(
            "Request-ID: %s\n%s %s\n%s%s\n=========================",
            request_id,
            request.method,
            request.url,
            _dump_headers(request.headers),
            _dump_body(request.headers, request.body),
        )
        request_log.debug(
            "Request-ID: %s\n%d %s\n%s%s\n=========================",
            request_id,
            response.status_code,
            response.reason or "",
            _dump_headers(response.headers),
            _dump_body(response.headers, response.content),
        )

    return log_exchange


def split_query_count(count: int, extrapolation: float) -> int:
    """Number of sub-window queries needed to fetch ``count`` sessions unsampled."""
    if extrapolation <= 1 and count <= SINGLE_QUERY_CEILING:
        return 1
    by_extrapolation = int(extrapolation) // 2 if extrapolation > 1 else 0
    by_count = round(count / ROWS_PER_QUERY) if count > SINGLE_QUERY_CEILING else 0
    return max(by_extrapolation, by_count, 1)


def split_window(window: QueryWindow, parts: int) -> List[QueryWindow]:
    if parts < 1:
        raise ValueError("parts must be at least 1")
    interval = window.duration // parts
    windows = []
    for index in range(parts):
        start = window.start + index * interval
        end = window.end if index == parts - 1 else window.start + (index + 1) * interval
        windows.append(QueryWindow(start, end))
    return windows


def _application_clause(config: AnalysisConfig) -> str:
    if not config.application:
        return ""
    return f'useraction.application IS "{config.application}" AND '


def _session_filter(config: AnalysisConfig, error: str) -> str:
    return (
        f'{_application_clause(config)}useraction.name IS "{config.conversion}" '
        f'OR stringProperties.{config.error_prop} IS "{error}"'
    )


def error_query(config: AnalysisConfig) -> str:
    return (
        f"SELECT DISTINCT stringProperties.{config.error_prop}, count(*) FROM usersession "
        f"WHERE {_application_clause(config)}stringProperties.{config.error_prop} IS NOT NULL"
    )


def count_query(config: AnalysisConfig, error: str) -> str:
    return f"SELECT count(*) FROM usersession WHERE {_session_filter(config, error)} LIMIT {ROWS_PER_QUERY}"


def session_query(config: AnalysisConfig, error: str) -> str:
    columns = ["internalUserId", f"stringProperties.{config.error_prop}", "startTime", "endTime", "useraction.name"]
    basket = config.lost_basket
    if basket is not None:
        columns.append(f"doubleProperties.{basket.basket_prop}")
    columns.append("browserType")
    return (
        f"SELECT {', '.join(columns)} FROM usersession "
        f"WHERE {_session_filter(config, error)} LIMIT {ROWS_PER_QUERY}"
    )


class QueryClient:
    """Runs session queries against one environment.

    All requests share one ``requests.Session`` and go through a
    :class:`RateLimiter`. With ``request_log`` set, every exchange is dumped
    there with the Authorization header redacted. Use as a context manager to
    close the session.
    """

    def __init__(
        self,
        environment_url: str,
        token: str,
        logger: Optional[logging.Logger] = None,
        session: Optional[requests.Session] = None,
        rate_limiter: Optional[RateLimiter] = None,
        clock: Callable[[], float] = time.time,
        request_log: Optional[logging.Logger] = None,
    ):
        self.environment_url = validate_environment_url(environment_url)
        if not token:
            raise ConfigurationError("no token")
        self.logger = logger or logging.getLogger(__name__)
        if not is_new_token_format(token):
            self.logger.warning(
                "You used an old token format. Please consider switching to the new 1.205+ token format."
            )
        self.clock = clock
        self.rate_limiter = rate_limiter or RateLimiter(logger=self.logger, clock=clock)
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Api-Token {token}",
                "Content-Type": "application/json",
                "User-Agent": f"errimpact/{VERSION} {platform.system()} {platform.machine()}",
            }
        )
        if request_log is not None:
            self.session.hooks["response"].append(request_log_hook(request_log))

    def __enter__(self) -> "QueryClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self.session.close()

    def _get(self, query: str, window: QueryWindow) -> Dict[str, object]:
        url = self.environment_url + TABLE_API
        params = {
            "query": query,
            "startTimestamp": str(window.start),
            "endTimestamp": str(window.end),
            "addDeepLinkFields": "false",
            "explain": "false",
        }
        self.logger.debug("GET %s query=%s [%d, %d)", url, query, window.start, window.end)

        def perform() -> requests.Response:
            try:
                return self.session.get(url, params=params, timeout=REQUEST_TIMEOUT)
            except requests.RequestException as exc:
                self.logger.error("HTTP request failed: %s", exc)
                raise TransportError(f"request to {url} failed: {exc}") from exc

        response = self.rate_limiter.execute_with_retry(perform)
        if not response.ok:
            raise TransportError(
                f"request to {url} failed with status {response.status_code}: {response.text[:200]}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise MalformedResponse(f"response from {url} is not JSON") from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("values"), list):
            raise MalformedResponse(f"response from {url} has no 'values' list")
        return payload

    def _window(self, days: int) -> QueryWindow:
        now = now_millis(self.clock)
        return QueryWindow(now - days * MILLIS_PER_DAY, now)

    def fetch_candidate_errors(self, config: AnalysisConfig, window_days: int = ERROR_WINDOW_DAYS) -> List[str]:
        """Error values seen over the trailing window, in the order the store returns them.

        Only the first ``MAX_CANDIDATE_ERRORS`` rows are considered; errors seen
        ``ERROR_COUNT_CEILING`` times or more are dropped as noise.
        """
        payload = self._get(error_query(config), self._window(window_days))
        errors: List[str] = []
        for row in payload["values"][:MAX_CANDIDATE_ERRORS]:
            if not isinstance(row, list) or len(row) < 2:
                raise MalformedResponse(f"error row {row!r} does not have 2 columns")
            name, count = row[0], row[1]
            if not isinstance(name, str) or isinstance(count, bool) or not isinstance(count, (int, float)):
                raise MalformedResponse(f"error row {row!r} is not [name, count]")
            if count < ERROR_COUNT_CEILING:
                errors.append(name)
        return errors

    def probe_sessions(self, config: AnalysisConfig, error: str, window: QueryWindow) -> Tuple[int, float]:
        payload = self._get(count_query(config, error), window)
        try:
            extrapolation = float(payload["extrapolationLevel"])
            count = int(payload["values"][0][0])
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise MalformedResponse(f"count response {payload!r} has no count or extrapolation level") from exc
        return count, extrapolation

    def fetch_sessions(self, config: AnalysisConfig, error: str) -> List[Session]:
        window = self._window(SESSION_WINDOW_DAYS)
        count, extrapolation = self.probe_sessions(config, error, window)
        self.logger.debug("Extrapolation level: %.0f and %d sessions returned.", extrapolation, count)

        parts = split_query_count(count, extrapolation)
        if parts > 1:
            self.logger.info("Will split results in %d queries", parts)

        query = session_query(config, error)
        with_basket = config.lost_basket is not None
        sessions: List[Session] = []
        for sub_window in split_window(window, parts):
            payload = self._get(query, sub_window)
            sessions.extend(parse_session_rows(payload["values"], with_basket))
        return sessions
