import json
import logging
from pathlib import Path

import pytest
import requests

from errimpact.client import QueryClient, request_log_hook
from errimpact.logging_config import REQUEST_LOGGER, active_request_log, setup_request_log

TOKEN = "dt0c01.PUBLIC.SECRET"


@pytest.fixture(autouse=True)
def reset_request_logger():
    yield
    logger = logging.getLogger(REQUEST_LOGGER)
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)


def make_exchange() -> requests.Response:
    request = requests.Request(
        "GET",
        "https://abc.example.com/api/v1/userSessionQueryLanguage/table",
        params={"query": "SELECT count(*) FROM usersession"},
        headers={"Authorization": f"Api-Token {TOKEN}", "Content-Type": "application/json"},
    ).prepare()
    response = requests.Response()
    response.status_code = 200
    response.reason = "OK"
    response.headers["Content-Type"] = "application/json"
    response._content = json.dumps({"values": [[42]]}).encode("utf-8")
    response.request = request
    return response


def test_request_log_is_off_without_variable(monkeypatch):
    monkeypatch.delenv("ERRIMPACT_REQUEST_LOG", raising=False)
    assert setup_request_log() is None
    assert active_request_log() is None


def test_request_log_writes_exchanges_without_token(tmp_path: Path, monkeypatch):
    path = tmp_path / "requests.log"
    monkeypatch.setenv("ERRIMPACT_REQUEST_LOG", str(path))
    request_log = setup_request_log()
    assert active_request_log() is request_log

    request_log_hook(request_log)(make_exchange())
    for handler in request_log.handlers:
        handler.flush()

    text = path.read_text(encoding="utf-8")
    assert text.count("Request-ID: ") == 2
    assert "GET https://abc.example.com/api/v1/userSessionQueryLanguage/table?query=" in text
    assert "200 OK" in text
    assert '{"values": [[42]]}' in text
    assert "SECRET" not in text
    assert "Authorization: <redacted>" in text


def test_client_registers_exchange_hook(tmp_path: Path):
    request_log = setup_request_log({"ERRIMPACT_REQUEST_LOG": str(tmp_path / "requests.log")})
    session = requests.Session()
    with QueryClient("https://abc.example.com", TOKEN, session=session, request_log=request_log):
        assert len(session.hooks["response"]) == 1

    plain = requests.Session()
    QueryClient("https://abc.example.com", TOKEN, session=plain).close()
    assert plain.hooks["response"] == []
