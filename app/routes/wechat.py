# WeChat routes: webhook verification and messages, QR login session
# creation, status polling, auth code redemption and access token sharing.

import hmac
import logging
import re

from fastapi import APIRouter, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel

from app.core.config import settings
from app.core.security import verify_signature
from app.services.limiter import RateLimiter
from app.services.sessions import SessionStatus, SessionStore
from app.services.wechat_client import WeChatAPIError, WeChatClient
from app.services.wechat_message import (
    MessageParseError,
    WeChatMessage,
    build_reply_xml,
    handle_message,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["wechat"])

AUTH_CODE_PATTERN = re.compile(r"[0-9a-fA-F]{32}")


class QRCodeData(BaseModel):
    scene_id: str
    qrcode_url: str
    login_token: str
    expire_seconds: int


class QRCodeResp(BaseModel):
    success: bool
    message: str
    data: QRCodeData | None = None


class WeChatUser(BaseModel):
    openid: str


class LoginStatusData(BaseModel):
    status: str
    wechat_user: WeChatUser | None = None
    auth_code: str | None = None


class LoginStatusResp(BaseModel):
    success: bool
    message: str
    data: LoginStatusData | None = None


class UserIDResp(BaseModel):
    success: bool
    message: str
    data: str | None = None


class AccessTokenResp(BaseModel):
    success: bool
    message: str
    access_token: str | None = None
    expiration: int | None = None


def get_store(request: Request) -> SessionStore:
    return request.app.state.store


def get_wechat_client(request: Request) -> WeChatClient:
    return request.app.state.wechat_client


def get_limiter(request: Request) -> RateLimiter:
    return request.app.state.limiter


def _envelope(model: BaseModel, status_code: int) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=model.model_dump(exclude_none=True))


@router.get("/wechat", response_class=PlainTextResponse)
def verify_server(signature: str = "", timestamp: str = "", nonce: str = "", echostr: str = ""):
    # WeChat calls this once when the server URL is configured
    if not verify_signature(signature, timestamp, nonce):
        logger.warning("WeChat server verification failed: bad signature")
        raise HTTPException(status_code=403, detail="Invalid signature")
    return PlainTextResponse(echostr)


@router.post("/wechat")
async def receive_message(request: Request, signature: str = "", timestamp: str = "", nonce: str = ""):
    if not verify_signature(signature, timestamp, nonce):
        logger.warning("Rejected WeChat message: bad signature")
        raise HTTPException(status_code=403, detail="Invalid signature")

    body = await request.body()
    try:
        message = WeChatMessage.from_xml(body)
    except MessageParseError as e:
        logger.warning(f"Rejected WeChat message: {e}")
        raise HTTPException(status_code=400, detail="Malformed message")

    content = await run_in_threadpool(handle_message, message, get_store(request))
    if not content:
        return PlainTextResponse("")
    return Response(content=build_reply_xml(message, content), media_type="application/xml")


@router.post("/api/wechat/login/qrcode", response_model=QRCodeResp)
def create_login_qrcode(request: Request):
    get_limiter(request).check(request)

    session = get_store(request).create()
    try:
        ticket = get_wechat_client(request).create_login_qrcode(
            session.scene_id, settings.QRCODE_EXPIRE_SECONDS
        )
    except WeChatAPIError as e:
        logger.error(f"Creating login QR code failed: scene={session.scene_id}, error={e}")
        get_store(request).discard(session.login_token)
        return _envelope(QRCodeResp(success=False, message=f"WeChat API error: {e}"), 502)

    logger.info(f"Created login QR code: scene={session.scene_id}, token={session.login_token}")
    return QRCodeResp(
        success=True,
        message="QR code created",
        data=QRCodeData(
            scene_id=session.scene_id,
            qrcode_url=ticket.qrcode_url,
            login_token=session.login_token,
            expire_seconds=ticket.expire_seconds,
        ),
    )


@router.get("/api/wechat/login/status", response_model=LoginStatusResp, response_model_exclude_none=True)
def login_status(request: Request, login_token: str = ""):
    # Browser polls this until the session succeeds or expires
    if not login_token:
        return _envelope(LoginStatusResp(success=False, message="Missing login_token parameter"), 400)

    session = get_store(request).get(login_token)
    if session is None:
        return LoginStatusResp(success=False, message="Login token is invalid or expired")

    data = LoginStatusData(status=session.status.value)
    if session.status == SessionStatus.SUCCESS and session.user_info is not None:
        data.wechat_user = WeChatUser(openid=session.user_info.openid)
        data.auth_code = session.auth_code

    logger.debug(f"Login status query: token={login_token}, status={session.status.value}")
    return LoginStatusResp(success=True, message="OK", data=data)


@router.get("/api/wechat/user", response_model=UserIDResp, response_model_exclude_none=True)
def user_id_by_auth_code(request: Request, auth_code: str = ""):
    if not auth_code:
        return _envelope(UserIDResp(success=False, message="Missing auth_code parameter"), 400)

    if not AUTH_CODE_PATTERN.fullmatch(auth_code):
        return _envelope(UserIDResp(success=False, message="Invalid auth code format"), 400)

    wechat_id = get_store(request).find_wechat_id_by_auth_code(auth_code.lower())
    if wechat_id is None:
        return UserIDResp(success=False, message="Auth code is invalid or expired")

    logger.info(f"Auth code redeemed: wechat={wechat_id}")
    return UserIDResp(success=True, message="", data=wechat_id)


@router.get("/api/wechat/access_token", response_model=AccessTokenResp, response_model_exclude_none=True)
def access_token(request: Request):
    # Lets other backends share the Official Account token instead of fetching their own
    api_key = settings.ACCESS_TOKEN_API_KEY
    provided = request.headers.get("Authorization", "")
    if not api_key or not hmac.compare_digest(provided.encode(), api_key.encode()):
        logger.warning("Rejected access token request: bad or missing Authorization header")
        return _envelope(AccessTokenResp(success=False, message="Unauthorized"), 403)

    try:
        token, expiration = get_wechat_client(request).get_access_token_and_expiration()
    except WeChatAPIError as e:
        logger.error(f"Fetching access token failed: {e}")
        return _envelope(AccessTokenResp(success=False, message=f"WeChat API error: {e}"), 502)

    return AccessTokenResp(success=True, message="", access_token=token, expiration=expiration)
