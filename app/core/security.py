# Security-related helpers: verification of the signature WeChat
# attaches to every webhook request.
import hashlib
import hmac

from app.core.config import settings


def compute_signature(token: str, timestamp: str, nonce: str) -> str:
    parts = sorted([token, timestamp, nonce])
    return hashlib.sha1("".join(parts).encode()).hexdigest()


def verify_signature(signature: str, timestamp: str, nonce: str, token: str | None = None) -> bool:
    """
    WeChat signs requests with sha1(sorted(token, timestamp, nonce)).
    https://developers.weixin.qq.com/doc/offiaccount/Basic_Information/Access_Overview.html
    """
    if token is None:
        token = settings.WECHAT_TOKEN
    if not token or not signature:
        return False

    expected = compute_signature(token, timestamp, nonce)
    return hmac.compare_digest(signature.encode(), expected.encode())
