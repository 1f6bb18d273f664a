# Centralised application configuration
# (environment variables, constants, timeouts).

import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Settings:
    APP_NAME = os.getenv("APP_NAME", "WeChat QR Login")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "3000"))

    SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", "600"))  # 10 Minutes
    REAPER_INTERVAL_SECONDS = float(os.getenv("REAPER_INTERVAL_SECONDS", "60"))
    QRCODE_EXPIRE_SECONDS = int(os.getenv("QRCODE_EXPIRE_SECONDS", "600"))
    POLL_MIN_INTERVAL_MS = int(os.getenv("POLL_MIN_INTERVAL_MS", "1500"))

    # Official Account credentials
    WECHAT_TOKEN = os.getenv("WECHAT_TOKEN", "")
    WECHAT_APP_ID = os.getenv("WECHAT_APP_ID", "")
    WECHAT_APP_SECRET = os.getenv("WECHAT_APP_SECRET", "")
    WECHAT_API_BASE = os.getenv("WECHAT_API_BASE", "https://api.weixin.qq.com")
    WECHAT_MP_BASE = os.getenv("WECHAT_MP_BASE", "https://mp.weixin.qq.com")
    WECHAT_HTTP_TIMEOUT = float(os.getenv("WECHAT_HTTP_TIMEOUT", "8"))
    ACCESS_TOKEN_REFRESH_MARGIN = int(os.getenv("ACCESS_TOKEN_REFRESH_MARGIN", "300"))
    # Authorization header value required by /api/wechat/access_token; empty disables it
    ACCESS_TOKEN_API_KEY = os.getenv("ACCESS_TOKEN_API_KEY", "")

    RATE_LIMIT_ENABLED = _env_bool("RATE_LIMIT_ENABLED", True)
    MAX_REQUESTS_PER_MINUTE = int(os.getenv("MAX_REQUESTS_PER_MINUTE", "20"))


settings = Settings()
