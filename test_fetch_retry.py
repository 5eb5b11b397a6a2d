"""
Retrying fetcher and error classification tests.
"""

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from agent.retry import backoff_delay_ms, is_billing_error, is_transient_error, parse_retry_after
from llm.base import ModelError
from llm.fetch_retry import (
    ORIGINAL_STATUS_HEADER,
    RetryingFetcher,
    is_non_retryable_rate_limit,
    parse_retry_after_header,
)


def _response(status, body="", headers=None):
    response = requests.Response()
    response.status_code = status
    response._content = body.encode("utf-8")
    response._content_consumed = True
    response.headers = CaseInsensitiveDict(headers or {})
    response.url = "https://api.example.test/v1/chat"
    response.encoding = "utf-8"
    return response


class FakeSession:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.requests = []

    def request(self, method, url, **kwargs):
        self.requests.append((method, url))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _fetcher(outcomes, sleeps, **kw):
    kw.setdefault("max_retries", 3)
    kw.setdefault("base_delay_ms", 100)
    kw.setdefault("max_delay_ms", 60000)
    session = FakeSession(outcomes)
    return RetryingFetcher(session=session, sleep=sleeps.append, **kw), session


def test_balance_429_becomes_402_without_retry():
    sleeps = []
    body = '{"error": {"code": "1113", "message": "余额不足或无可用资源包,请充值。"}}'
    fetcher, session = _fetcher([_response(429, body)], sleeps)
    response = fetcher.post("https://api.example.test/v1/chat", json={})

    assert response.status_code == 402
    assert response.headers[ORIGINAL_STATUS_HEADER] == "429"
    assert response.text == body
    assert len(session.requests) == 1
    assert sleeps == []


def test_transient_status_is_retried_with_retry_after():
    sleeps = []
    fetcher, session = _fetcher([_response(503, headers={"Retry-After": "2"}), _response(200, "ok")], sleeps)
    response = fetcher.get("https://api.example.test/v1/models")

    assert response.status_code == 200
    assert len(session.requests) == 2
    assert sleeps == [2.0]


def test_throttling_429_is_retried():
    sleeps = []
    fetcher, session = _fetcher([_response(429, '{"error": "rate limited"}'), _response(200, "ok")], sleeps)
    response = fetcher.get("https://api.example.test/v1/models")

    assert response.status_code == 200
    # Rate limits back off from at least five seconds
    assert sleeps and sleeps[0] >= 5.0


def test_gives_up_after_max_retries():
    sleeps = []
    fetcher, session = _fetcher([_response(502)] * 3, sleeps, max_retries=2)
    response = fetcher.get("https://api.example.test/v1/models")

    assert response.status_code == 502
    assert len(session.requests) == 3
    assert len(sleeps) == 2


def test_non_retryable_status_returns_immediately():
    sleeps = []
    fetcher, session = _fetcher([_response(404)], sleeps)
    assert fetcher.get("https://api.example.test/missing").status_code == 404
    assert sleeps == []


def test_connection_errors_are_retried_then_raised():
    sleeps = []
    errors = [requests.ConnectionError("reset")] * 3
    fetcher, session = _fetcher(errors, sleeps, max_retries=2)
    with pytest.raises(requests.ConnectionError):
        fetcher.get("https://api.example.test/v1/models")
    assert len(session.requests) == 3


def test_retry_after_header_forms():
    assert parse_retry_after_header("3") == 3000
    assert parse_retry_after_header(None) is None
    assert parse_retry_after_header("soon") is None
    assert parse_retry_after_header("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0


def test_rate_limit_body_classification():
    assert is_non_retryable_rate_limit('{"error": {"code": "1113"}}')
    assert is_non_retryable_rate_limit("You exceeded your current quota")
    assert not is_non_retryable_rate_limit('{"error": {"message": "Too many requests"}}')
    assert not is_non_retryable_rate_limit("")


def test_error_classification():
    assert is_billing_error(ModelError("boom", status_code=402))
    assert is_billing_error(RuntimeError("余额不足"))
    assert not is_transient_error(ModelError("insufficient balance", status_code=429))
    assert is_transient_error(ModelError("slow down", status_code=429))
    assert is_transient_error(ConnectionError("reset by peer"))
    assert is_transient_error(RuntimeError("socket hang up"))
    assert not is_transient_error(ValueError("bad schema"))


def test_retry_after_and_backoff():
    assert parse_retry_after(ModelError("x", retry_after=7)) == 7
    assert parse_retry_after(RuntimeError("Please retry after 12 seconds")) == 12.0
    assert parse_retry_after(RuntimeError("nope")) is None
    assert backoff_delay_ms(1, 2, 20000) == 2000
    assert backoff_delay_ms(5, None, 4000) == 4000
    assert 3000 <= backoff_delay_ms(1, None, 20000) <= 4000
