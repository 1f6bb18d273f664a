import pytest
import requests
from fastapi.testclient import TestClient

from app.core.config import settings
from app.main import create_app
from app.services.limiter import RateLimiter
from app.services.sessions import SessionStore
from app.services.wechat_client import WeChatClient

WECHAT_TOKEN = "test-wechat-token"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeResponse:
    def __init__(self, payload, status_code: int = 200):
        self._payload = payload
        self.status_code = status_code

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")


class FakeWeChatHTTP:
    """Stands in for requests.Session against the WeChat API."""

    def __init__(self):
        self.get_calls = []
        self.post_calls = []
        self.token_responses = []
        self.qrcode_responses = []
        self._issued = 0

    def get(self, url, params=None, timeout=None):
        self.get_calls.append({"url": url, "params": params, "timeout": timeout})
        if self.token_responses:
            return self._next(self.token_responses)
        self._issued += 1
        return FakeResponse({"access_token": f"access-token-{self._issued}", "expires_in": 7200})

    def post(self, url, params=None, json=None, timeout=None):
        self.post_calls.append({"url": url, "params": params, "json": json, "timeout": timeout})
        if self.qrcode_responses:
            return self._next(self.qrcode_responses)
        return FakeResponse({
            "ticket": "gQH47joAAAAAAAAAASxodHRwOi8v+/=",
            "expire_seconds": json["expire_seconds"],
            "url": "http://weixin.qq.com/q/kZgfwMTm72WWPkovabbI",
        })

    @staticmethod
    def _next(queue):
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def store(clock):
    return SessionStore(ttl_seconds=600, clock=clock)


@pytest.fixture()
def fake_http():
    return FakeWeChatHTTP()


@pytest.fixture()
def wechat_client(fake_http, clock):
    return WeChatClient(
        app_id="wx-test-app",
        app_secret="test-secret",
        session=fake_http,
        clock=clock,
    )


@pytest.fixture()
def client(store, wechat_client, monkeypatch):
    monkeypatch.setattr(settings, "WECHAT_TOKEN", WECHAT_TOKEN)
    monkeypatch.setattr(settings, "RATE_LIMIT_ENABLED", True)
    monkeypatch.setattr(settings, "MAX_REQUESTS_PER_MINUTE", 20)
    app = create_app(store=store, wechat_client=wechat_client, limiter=RateLimiter(), run_reaper=False)
    with TestClient(app) as c:
        yield c
