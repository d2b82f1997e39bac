import json
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest
import requests

from config import Settings
from errors import (
    QuickBooksNotConfigured,
    RefreshTokenExpired,
    UpstreamError,
    UpstreamTimeout,
    UpstreamUnauthorized,
)
from quickbooks import QuickBooksClient, TokenGrant, is_refresh_expired_response


def make_settings(**overrides) -> Settings:
    values = dict(
        database_url="sqlite:///:memory:",
        timezone="UTC",
        secret_key="test-secret",
        app_url="http://testserver",
        fanout_workers=2,
        qb_environment="sandbox",
        qb_client_id="client-id",
        qb_client_secret="client-secret",
        qb_redirect_uri="http://testserver/api/quickbooks/auth/callback",
        qb_timeout_secs=25,
    )
    values.update(overrides)
    return Settings(**values)


def make_response(status_code: int, payload=None, text: str = "") -> requests.Response:
    response = requests.Response()
    response.status_code = status_code
    response._content = (json.dumps(payload) if payload is not None else text).encode()
    return response


class FakeHttp:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def _reply(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        if self.error:
            raise self.error
        return self.response

    def post(self, url, **kwargs):
        return self._reply("POST", url, **kwargs)

    def get(self, url, **kwargs):
        return self._reply("GET", url, **kwargs)


def test_refresh_expired_detection() -> None:
    assert is_refresh_expired_response(make_response(400, {"error": "invalid_grant"}))
    assert is_refresh_expired_response(
        make_response(400, {"error": "x", "error_description": "Refresh token has expired"})
    )
    assert not is_refresh_expired_response(make_response(400, {"error": "invalid_request"}))
    assert not is_refresh_expired_response(make_response(401, {"error": "invalid_grant"}))


def test_refresh_tokens_success_parses_grant() -> None:
    http = FakeHttp(
        make_response(
            200,
            {
                "access_token": "a",
                "refresh_token": "r",
                "expires_in": 3600,
                "x_refresh_token_expires_in": 8726400,
            },
        )
    )
    grant = QuickBooksClient(make_settings(), http).refresh_tokens("old")
    assert grant == TokenGrant("a", "r", 3600, 8726400)
    _, _, kwargs = http.requests[0]
    assert kwargs["data"] == {"grant_type": "refresh_token", "refresh_token": "old"}
    assert kwargs["auth"] == ("client-id", "client-secret")


def test_refresh_tokens_invalid_grant_raises_expired() -> None:
    http = FakeHttp(make_response(400, {"error": "invalid_grant"}))
    with pytest.raises(RefreshTokenExpired):
        QuickBooksClient(make_settings(), http).refresh_tokens("old")


def test_refresh_tokens_other_failure_is_upstream_error() -> None:
    http = FakeHttp(make_response(500, text="boom"))
    with pytest.raises(UpstreamError) as excinfo:
        QuickBooksClient(make_settings(), http).refresh_tokens("old")
    assert not isinstance(excinfo.value, RefreshTokenExpired)
    assert excinfo.value.status_code == 500


def test_unconfigured_client_refuses_token_calls() -> None:
    client = QuickBooksClient(make_settings(qb_client_id=None), FakeHttp())
    assert not client.configured
    with pytest.raises(QuickBooksNotConfigured):
        client.refresh_tokens("old")


def test_profit_and_loss_request_shape() -> None:
    http = FakeHttp(make_response(200, {"Rows": {"Row": []}}))
    client = QuickBooksClient(make_settings(), http)

    report = client.fetch_profit_and_loss(
        "123", "2025-01-01", "2025-01-31", "Accrual", "token", class_id="77"
    )

    assert report == {"Rows": {"Row": []}}
    method, url, kwargs = http.requests[0]
    assert method == "GET"
    assert url == "https://sandbox-quickbooks.api.intuit.com/v3/company/123/reports/ProfitAndLoss"
    assert kwargs["params"]["class"] == "77"
    assert kwargs["headers"]["Authorization"] == "Bearer token"
    assert kwargs["timeout"] == 25


def test_profit_and_loss_error_mapping() -> None:
    settings = make_settings(qb_environment="production")
    with pytest.raises(UpstreamUnauthorized):
        QuickBooksClient(settings, FakeHttp(make_response(401, text="AuthenticationFailed"))).fetch_profit_and_loss(
            "1", "2025-01-01", "2025-01-31", "Accrual", "t"
        )
    with pytest.raises(UpstreamTimeout):
        QuickBooksClient(settings, FakeHttp(error=requests.Timeout())).fetch_profit_and_loss(
            "1", "2025-01-01", "2025-01-31", "Accrual", "t"
        )
    with pytest.raises(UpstreamError):
        QuickBooksClient(settings, FakeHttp(make_response(200, text="<html>"))).fetch_profit_and_loss(
            "1", "2025-01-01", "2025-01-31", "Accrual", "t"
        )


def test_authorize_url_carries_state() -> None:
    url = QuickBooksClient(make_settings(), FakeHttp()).authorize_url("5\t/budget")
    assert url.startswith("https://appcenter.intuit.com/connect/oauth2?")
    assert "client_id=client-id" in url
    assert "state=5%09%2Fbudget" in url


class StallingHttp(FakeHttp):
    """Holds every GET open until released."""

    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def get(self, url, **kwargs):
        self.requests.append(("GET", url, kwargs))
        self.release.wait(10)
        return make_response(200, {"Rows": {"Row": []}})


def test_profit_and_loss_gives_up_at_the_cap() -> None:
    http = StallingHttp()
    client = QuickBooksClient(make_settings(qb_timeout_secs=0.3), http)
    started = time.monotonic()
    try:
        with pytest.raises(UpstreamTimeout):
            client.fetch_profit_and_loss("1", "2025-01-01", "2025-01-31", "Accrual", "t")
    finally:
        http.release.set()
    assert time.monotonic() - started < 2


@pytest.fixture
def trickling_server():
    """Sends a JSON body one byte every 0.25s, far slower than any cap under test."""
    stop = threading.Event()
    body = json.dumps({"Rows": {"Row": []}, "padding": "x" * 20}).encode()

    class Handler(BaseHTTPRequestHandler):
        def do_GET(self):
            self.send_response(200)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            try:
                for byte in body:
                    if stop.wait(0.25):
                        return
                    self.wfile.write(bytes([byte]))
                    self.wfile.flush()
            except OSError:
                return

        def log_message(self, format, *args):
            pass

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}"
    stop.set()
    server.shutdown()
    server.server_close()


def test_slow_body_hits_total_deadline(trickling_server, monkeypatch) -> None:
    settings = make_settings(qb_timeout_secs=1)
    monkeypatch.setattr(type(settings), "qb_api_base", property(lambda self: trickling_server))
    http = requests.Session()
    http.trust_env = False
    client = QuickBooksClient(settings, http)

    started = time.monotonic()
    with pytest.raises(UpstreamTimeout):
        client.fetch_profit_and_loss("1", "2025-01-01", "2025-01-31", "Accrual", "t")
    assert time.monotonic() - started < 3
