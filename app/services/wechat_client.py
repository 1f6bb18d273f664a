# Outbound calls to the WeChat Official Account API: access-token
# acquisition/caching and temporary QR code ticket creation.

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable
from urllib.parse import quote

import requests

from app.core.config import settings

logger = logging.getLogger(__name__)

# errcodes meaning the access token we sent is no longer valid
INVALID_TOKEN_ERRCODES = {40001, 40014, 42001}


class WeChatAPIError(Exception):
    def __init__(self, message: str, errcode: int | None = None):
        super().__init__(message)
        self.errcode = errcode


@dataclass
class QRCodeTicket:
    ticket: str
    expire_seconds: int
    url: str
    qrcode_url: str


class WeChatClient:
    def __init__(
        self,
        app_id: str,
        app_secret: str,
        api_base: str = "https://api.weixin.qq.com",
        mp_base: str = "https://mp.weixin.qq.com",
        timeout: float = 8.0,
        refresh_margin: int = 300,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.app_id = app_id
        self._app_secret = app_secret
        self.api_base = api_base.rstrip("/")
        self.mp_base = mp_base.rstrip("/")
        self.timeout = timeout
        self.refresh_margin = refresh_margin
        self._http = session or requests.Session()
        self._clock = clock

        self._token_lock = threading.Lock()
        self._access_token = ""
        self._token_expires_at = 0.0

    @classmethod
    def from_settings(cls) -> "WeChatClient":
        return cls(
            app_id=settings.WECHAT_APP_ID,
            app_secret=settings.WECHAT_APP_SECRET,
            api_base=settings.WECHAT_API_BASE,
            mp_base=settings.WECHAT_MP_BASE,
            timeout=settings.WECHAT_HTTP_TIMEOUT,
            refresh_margin=settings.ACCESS_TOKEN_REFRESH_MARGIN,
        )

    def _check_payload(self, resp: requests.Response, action: str) -> dict:
        try:
            resp.raise_for_status()
            payload = resp.json()
        except requests.RequestException as e:
            raise WeChatAPIError(f"{action} failed: {e}") from e
        except ValueError as e:
            raise WeChatAPIError(f"{action} returned invalid JSON") from e

        if not isinstance(payload, dict):
            raise WeChatAPIError(f"{action} returned unexpected JSON")

        errcode = payload.get("errcode") or 0
        if errcode != 0:
            raise WeChatAPIError(f"{action} failed: {payload.get('errmsg', '')}", errcode=errcode)
        return payload

    def _fetch_access_token(self) -> None:
        if not self.app_id or not self._app_secret:
            raise WeChatAPIError("WeChat app id/secret are not configured")

        try:
            resp = self._http.get(
                f"{self.api_base}/cgi-bin/token",
                params={
                    "grant_type": "client_credential",
                    "appid": self.app_id,
                    "secret": self._app_secret,
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise WeChatAPIError(f"Access token request failed: {e}") from e

        payload = self._check_payload(resp, "Access token request")
        token = payload.get("access_token")
        if not token:
            raise WeChatAPIError("Access token response has no access_token")

        try:
            expires_in = int(payload.get("expires_in", 7200))
        except (TypeError, ValueError) as e:
            raise WeChatAPIError("Access token response has an invalid expires_in") from e

        self._access_token = token
        self._token_expires_at = self._clock() + max(expires_in - self.refresh_margin, 0)
        logger.info(f"Refreshed WeChat access token (expires_in={expires_in})")

    def get_access_token_and_expiration(self) -> tuple[str, int]:
        """Returns the cached token and the seconds it will keep being served."""
        with self._token_lock:
            if not self._access_token or self._clock() >= self._token_expires_at:
                self._fetch_access_token()
            return self._access_token, max(int(self._token_expires_at - self._clock()), 0)

    def get_access_token(self) -> str:
        return self.get_access_token_and_expiration()[0]

    def invalidate_access_token(self) -> None:
        with self._token_lock:
            self._access_token = ""
            self._token_expires_at = 0.0

    def create_login_qrcode(self, scene_id: str, expire_seconds: int) -> QRCodeTicket:
        """
        Creates a temporary string-scene QR code. WeChat echoes the scene
        back in the SCAN / subscribe event when the code is scanned.
        """
        access_token = self.get_access_token()
        body = {
            "expire_seconds": expire_seconds,
            "action_name": "QR_STR_SCENE",
            "action_info": {"scene": {"scene_str": scene_id}},
        }

        try:
            resp = self._http.post(
                f"{self.api_base}/cgi-bin/qrcode/create",
                params={"access_token": access_token},
                json=body,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise WeChatAPIError(f"QR code request failed: {e}") from e

        try:
            payload = self._check_payload(resp, "QR code request")
        except WeChatAPIError as e:
            if e.errcode in INVALID_TOKEN_ERRCODES:
                self.invalidate_access_token()
            raise

        ticket = payload.get("ticket")
        if not ticket:
            raise WeChatAPIError("QR code response has no ticket")

        try:
            ticket_expire_seconds = int(payload.get("expire_seconds", expire_seconds))
        except (TypeError, ValueError) as e:
            raise WeChatAPIError("QR code response has an invalid expire_seconds") from e

        return QRCodeTicket(
            ticket=ticket,
            expire_seconds=ticket_expire_seconds,
            url=payload.get("url", ""),
            qrcode_url=f"{self.mp_base}/cgi-bin/showqrcode?ticket={quote(ticket, safe='')}",
        )
