from types import SimpleNamespace

import pytest

from pagefields.config import FetcherConfig
from pagefields.services.fetch import Fetcher
from pagefields.services.url_validator import UrlValidator

CLIENT_IP = "203.0.113.10"
PUBLIC_ADDRESS = "93.184.216.34"

SAMPLE_HTML = """<!DOCTYPE html>
<html>
  <head>
    <title>Example Page</title>
    <meta name="description" content="A great page description">
    <meta name="keywords" content="test, example, meta">
    <meta property="og:title" content="Example OG Title">
    <meta http-equiv="content-type" content="text/html; charset=UTF-8">
  </head>
  <body>
    <h1>  Example
      Domain </h1>
    <p class="lead">This domain is for use in illustrative examples.</p>
    <ul>
      <li>One</li>
      <li>Two</li>
    </ul>
    <a class="more" href="https://www.iana.org/domains/example">More information</a>
  </body>
</html>
"""


class FakeResponse:
    def __init__(
        self,
        status_code=200,
        text="",
        url="https://example.com",
        headers=None,
        reason="OK",
    ):
        self.status_code = status_code
        self.text = text
        self.url = url
        self.headers = headers or {"Content-Type": "text/html"}
        self.reason = reason
        self.closed = False

    def close(self):
        self.closed = True


class FakeSession:
    """Replays ``responses`` in order; exceptions in the list are raised."""

    def __init__(self, responses):
        self._responses = list(responses)
        self.calls = []

    def get(self, url, headers, timeout, allow_redirects):
        call_number = len(self.calls)
        self.calls.append(
            SimpleNamespace(
                url=url,
                headers=headers,
                timeout=timeout,
                allow_redirects=allow_redirects,
            )
        )
        response = self._responses[min(call_number, len(self._responses) - 1)]
        if isinstance(response, Exception):
            raise response
        return response


def public_resolver(host):
    return [PUBLIC_ADDRESS]


class DictBackend:
    def __init__(self):
        self.store = {}
        self.timeouts = {}

    def get(self, key):
        return self.store.get(key)

    def set(self, key, value, timeout=None):
        self.store[key] = value
        self.timeouts[key] = timeout
        return True

    def delete(self, key):
        self.store.pop(key, None)
        return True


def make_fetcher(responses, *, max_retries=3, sleeps=None):
    session = FakeSession(responses)
    sleep = sleeps.append if sleeps is not None else (lambda _seconds: None)
    fetcher = Fetcher(
        FetcherConfig(max_retries=max_retries), session=session, sleep=sleep
    )
    return fetcher, session


@pytest.fixture()
def app():
    from pagefields import create_app

    app = create_app(
        {
            "TESTING": True,
            "ENV": "test",
            "CACHE_TYPE": "SimpleCache",
            "RATELIMIT_STORAGE_URI": "memory://",
        }
    )
    with app.app_context():
        yield app


@pytest.fixture()
def client(app):
    client = app.test_client()
    client.environ_base["REMOTE_ADDR"] = CLIENT_IP
    return client


@pytest.fixture()
def fake_session(app):
    """Swap the app's fetcher for one backed by a FakeSession."""
    orchestrator = app.extensions["orchestrator"]
    orchestrator.validator = UrlValidator(resolver=public_resolver)

    def install(responses, **kwargs):
        fetcher, session = make_fetcher(responses, **kwargs)
        orchestrator.fetcher = fetcher
        return session

    return install
