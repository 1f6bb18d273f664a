# FastAPI application entry point that wires the session store,
# reaper and WeChat client together and registers the routes.

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse

from app.core.config import settings
from app.routes.wechat import get_store, router as wechat_router
from app.services.limiter import RateLimiter
from app.services.reaper import SessionReaper
from app.services.sessions import SessionStore
from app.services.wechat_client import WeChatClient

logger = logging.getLogger(__name__)
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def create_app(
    store: SessionStore | None = None,
    wechat_client: WeChatClient | None = None,
    limiter: RateLimiter | None = None,
    run_reaper: bool = True,
) -> FastAPI:
    store = store or SessionStore(ttl_seconds=settings.SESSION_TTL_SECONDS)
    reaper = SessionReaper(store, interval_seconds=settings.REAPER_INTERVAL_SECONDS)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        if run_reaper:
            reaper.start()
        try:
            yield
        finally:
            reaper.stop()

    app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)
    app.state.store = store
    app.state.reaper = reaper
    app.state.wechat_client = wechat_client or WeChatClient.from_settings()
    app.state.limiter = limiter or RateLimiter()
    app.include_router(wechat_router)

    @app.get("/health")
    def health(request: Request):
        return {"ok": True, "active_sessions": get_store(request).active_session_count()}

    @app.get("/login", response_class=HTMLResponse)
    def login_page():
        return HTMLResponse(content=LOGIN_PAGE.replace("__POLL_INTERVAL_MS__", str(settings.POLL_MIN_INTERVAL_MS)))

    return app


# Demo page: requests a QR code, shows WeChat's image and polls for the scan
LOGIN_PAGE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8" />
    <title>WeChat Login</title>
    <style>
        body {
            font-family: Arial, sans-serif;
            display: flex;
            flex-direction: column;
            align-items: center;
            justify-content: center;
            min-height: 100vh;
            margin: 0;
            background: #f5f5f5;
        }
        .container {
            background: white;
            padding: 2rem;
            border-radius: 10px;
            box-shadow: 0 2px 10px rgba(0,0,0,0.1);
            text-align: center;
        }
        #qr-code img {
            width: 240px;
            height: 240px;
        }
        #status {
            margin-top: 1rem;
            padding: 0.5rem;
            border-radius: 5px;
            font-weight: bold;
        }
        .pending { color: #666; background: #f0f0f0; }
        .success { color: #28a745; background: #d4edda; }
        .error { color: #dc3545; background: #f8d7da; }
    </style>
</head>
<body>
    <div class="container">
        <h1>WeChat Login</h1>
        <p>Scan the QR code with WeChat to log in</p>
        <div id="qr-code"></div>
        <div id="status" class="pending">Loading QR code...</div>
    </div>
    <script>
        const pollInterval = __POLL_INTERVAL_MS__;
        let pollTimer = null;

        function updateStatus(cls, message) {
            const statusEl = document.getElementById('status');
            statusEl.className = cls;
            statusEl.textContent = message;
        }

        async function pollStatus(loginToken) {
            try {
                const response = await fetch(`/api/wechat/login/status?login_token=${loginToken}`);
                const body = await response.json();
                if (!body.success) {
                    updateStatus('error', 'QR code expired. Please refresh the page.');
                    clearInterval(pollTimer);
                    return;
                }
                if (body.data.status === 'success') {
                    updateStatus('success', 'Logged in as ' + body.data.wechat_user.openid + ' (auth code ' + body.data.auth_code + ')');
                    clearInterval(pollTimer);
                }
            } catch (error) {
                console.error('Poll error:', error);
                updateStatus('error', 'Error checking status');
            }
        }

        async function start() {
            const response = await fetch('/api/wechat/login/qrcode', { method: 'POST' });
            const body = await response.json();
            if (!body.success) {
                updateStatus('error', body.message || 'Failed to create QR code');
                return;
            }
            const img = document.createElement('img');
            img.src = body.data.qrcode_url;
            img.alt = 'QR Code';
            document.getElementById('qr-code').appendChild(img);
            updateStatus('pending', 'Waiting for scan...');
            pollTimer = setInterval(() => pollStatus(body.data.login_token), pollInterval);
        }

        start();
    </script>
</body>
</html>
"""


app = create_app()
