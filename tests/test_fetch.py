import threading

import pytest
import requests

from pagefields.config import FetcherConfig
from pagefields.services.exceptions import SecurityError
from pagefields.services.fetch import Fetcher
from pagefields.services.url_validator import UrlValidator

from conftest import FakeResponse, FakeSession, make_fetcher, public_resolver


def test_fetch_returns_body_status_and_lowercased_headers():
    fetcher, session = make_fetcher(
        [FakeResponse(text="<html>ok</html>", headers={"Content-Type": "text/html"})]
    )

    result = fetcher.fetch("https://example.com/article")

    assert result.success is True
    assert result.body == "<html>ok</html>"
    assert result.status == 200
    assert result.headers == {"content-type": "text/html"}
    assert result.attempts == 1
    assert result.response_time >= 0
    assert session.calls[0].headers["User-Agent"] == "Pagefields-Scraper/1.0"
    assert session.calls[0].timeout == 30.0


def test_fetch_gives_up_after_max_retries():
    waits = []
    fetcher, session = make_fetcher(
        [requests.ConnectionError("connection refused")], sleeps=waits
    )

    result = fetcher.fetch("https://example.com/article")

    assert result.success is False
    assert result.attempts == 3
    assert len(session.calls) == 3
    assert "Failed to fetch URL after 3 attempts" in result.error
    assert "connection refused" in result.error
    assert result.response_time >= 0
    assert waits == [1.0, 2.0]


def test_fetch_succeeds_on_third_attempt_after_two_faults():
    waits = []
    fetcher, _ = make_fetcher(
        [
            requests.ConnectionError("reset by peer"),
            requests.Timeout("read timed out"),
            FakeResponse(text="done"),
        ],
        sleeps=waits,
    )

    result = fetcher.fetch("https://example.com/article")

    assert result.success is True
    assert result.attempts == 3
    assert result.body == "done"
    assert waits == [1.0, 2.0]


def test_fetch_backoff_doubles_and_caps_at_thirty_seconds():
    waits = []
    fetcher, _ = make_fetcher(
        [requests.ConnectionError("dns failure")], max_retries=8, sleeps=waits
    )

    result = fetcher.fetch("https://example.com")

    assert result.attempts == 8
    assert waits == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]


def test_fetch_does_not_retry_http_error_status():
    waits = []
    fetcher, session = make_fetcher(
        [FakeResponse(status_code=404, reason="Not Found")], sleeps=waits
    )

    result = fetcher.fetch("https://example.com/missing")

    assert result.success is False
    assert result.attempts == 1
    assert result.status_code == 404
    assert result.error == "HTTP request failed with status 404: Not Found"
    assert len(session.calls) == 1
    assert waits == []


def test_fetch_does_not_retry_other_request_errors():
    fetcher, session = make_fetcher([requests.TooManyRedirects("loop")])

    result = fetcher.fetch("https://example.com")

    assert result.success is False
    assert result.attempts == 1
    assert len(session.calls) == 1


def test_fetch_flags_timeouts():
    fetcher, _ = make_fetcher([requests.Timeout("timed out")], max_retries=1)

    result = fetcher.fetch("https://example.com")

    assert result.success is False
    assert result.timed_out is True
    assert result.attempts == 1


def test_fetch_stops_retrying_when_deadline_would_pass():
    session = FakeSession([requests.ConnectionError("refused")])
    waits = []
    fetcher = Fetcher(
        FetcherConfig(max_retries=5),
        session=session,
        sleep=waits.append,
        clock=lambda: 100.0,
    )

    result = fetcher.fetch("https://example.com", deadline=100.5)

    assert result.success is False
    assert result.attempts == 1
    assert waits == []
    assert "aborted" in result.error


def test_fetch_stops_retrying_when_cancelled():
    session = FakeSession([requests.ConnectionError("refused")])
    fetcher = Fetcher(FetcherConfig(max_retries=5), session=session)
    cancelled = threading.Event()
    cancelled.set()

    result = fetcher.fetch("https://example.com", cancel_event=cancelled)

    assert result.success is False
    assert result.attempts == 1
    assert len(session.calls) == 1


@pytest.mark.parametrize("success", [True, False])
def test_fetch_result_to_dict_shape(success):
    responses = [FakeResponse(text="x")] if success else [requests.ConnectionError("x")]
    fetcher, _ = make_fetcher(responses, max_retries=1)

    payload = fetcher.fetch("https://example.com").to_dict()

    assert payload["success"] is success
    assert payload["attempts"] == 1
    assert "response_time" in payload
    if success:
        assert payload["body"] == "x"
    else:
        assert "error" in payload


def test_fetch_follows_checked_redirects_by_hand():
    checked = []

    def url_check(url):
        checked.append(url)
        return url

    fetcher, session = make_fetcher(
        [
            FakeResponse(status_code=301, headers={"Location": "/moved"}),
            FakeResponse(text="<html>moved</html>"),
        ]
    )

    result = fetcher.fetch("https://example.com/start", url_check=url_check)

    assert result.success is True
    assert result.body == "<html>moved</html>"
    assert checked == ["https://example.com/moved"]
    assert [call.url for call in session.calls] == [
        "https://example.com/start",
        "https://example.com/moved",
    ]
    assert all(call.allow_redirects is False for call in session.calls)


def test_fetch_rejects_redirect_to_private_address():
    redirect = FakeResponse(
        status_code=302, headers={"Location": "http://169.254.169.254/latest/"}
    )
    fetcher, session = make_fetcher([redirect, FakeResponse(text="secret")])
    validator = UrlValidator(resolver=public_resolver)

    with pytest.raises(SecurityError):
        fetcher.fetch("https://example.com/", url_check=validator.validate)

    assert len(session.calls) == 1
    assert redirect.closed is True


def test_fetch_gives_up_after_too_many_redirects():
    fetcher, session = make_fetcher(
        [FakeResponse(status_code=302, headers={"Location": "https://example.com/loop"})]
    )

    result = fetcher.fetch("https://example.com/loop")

    assert result.success is False
    assert result.attempts == 1
    assert "redirects" in result.error
    assert len(session.calls) == FetcherConfig().max_redirects + 1
