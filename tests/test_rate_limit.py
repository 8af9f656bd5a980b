import json

import pytest
import requests

from errimpact.rate_limit import (
    MissingRateLimitHeader,
    RateLimiter,
    RateLimitExhausted,
    compute_sleep_seconds,
)

NOW = 1_700_000_000.0


def make_response(status=200, body=None, headers=None) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response._content = json.dumps(body if body is not None else {"values": []}).encode("utf-8")
    response.encoding = "utf-8"
    response.headers.update(headers or {})
    return response


def rate_limited(seconds_ahead: float, limit: str = "50") -> requests.Response:
    reset = str(int((NOW + seconds_ahead) * 1_000_000))
    return make_response(429, headers={"X-RateLimit-Limit": limit, "X-RateLimit-Reset": reset})


class Responder:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


def make_limiter(sleeps):
    return RateLimiter(clock=lambda: NOW, sleep=sleeps.append)


@pytest.mark.parametrize(
    "seconds_ahead, expected",
    [(3, 5.0), (200, 60.0), (30, 30.0), (-120, 5.0)],
)
def test_sleep_is_clamped(seconds_ahead, expected):
    reset_micros = int((NOW + seconds_ahead) * 1_000_000)
    assert compute_sleep_seconds(reset_micros, NOW) == pytest.approx(expected)


def test_returns_first_response_when_not_limited():
    sleeps = []
    responder = Responder(make_response(200))
    response = make_limiter(sleeps).execute_with_retry(responder)
    assert response.status_code == 200
    assert responder.calls == 1
    assert sleeps == []


def test_retries_until_limit_lifts():
    sleeps = []
    responder = Responder(rate_limited(3), rate_limited(200), make_response(200))
    response = make_limiter(sleeps).execute_with_retry(responder)
    assert response.status_code == 200
    assert responder.calls == 3
    assert sleeps == [pytest.approx(5.0), pytest.approx(60.0)]


def test_non_rate_limit_failures_are_returned_untouched():
    sleeps = []
    responder = Responder(make_response(503))
    response = make_limiter(sleeps).execute_with_retry(responder)
    assert response.status_code == 503
    assert responder.calls == 1


def test_exhausted_retries_raise_with_last_response():
    sleeps = []
    last = rate_limited(10)
    responder = Responder(last)
    with pytest.raises(RateLimitExhausted) as excinfo:
        make_limiter(sleeps).execute_with_retry(responder)
    assert excinfo.value.response is last
    assert responder.calls == 6
    assert len(sleeps) == 5


@pytest.mark.parametrize(
    "headers",
    [
        {"X-RateLimit-Reset": "1700000003000000"},
        {"X-RateLimit-Limit": "50"},
        {"X-RateLimit-Limit": "50", "X-RateLimit-Reset": "soon"},
        {"X-RateLimit-Limit": "50", "X-RateLimit-Reset": "9" * 20},
        {"X-RateLimit-Limit": "50", "X-RateLimit-Reset": "-" + "9" * 20},
    ],
)
def test_missing_or_invalid_headers(headers):
    responder = Responder(make_response(429, headers=headers))
    with pytest.raises(MissingRateLimitHeader):
        make_limiter([]).execute_with_retry(responder)
