# In-memory WeChat scan-to-login session management (creation,
# lookup by token or scene, scan update, expiry and sweeping).

import logging
import secrets
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict

from app.core.rwlock import ReadWriteLock

logger = logging.getLogger(__name__)

SCENE_PREFIX = "login"


class SessionStatus(str, Enum):
    PENDING = "pending"
    SCANNED = "scanned"  # reserved, never set by the scan flow
    SUCCESS = "success"
    EXPIRED = "expired"


@dataclass(frozen=True)
class WeChatUserInfo:
    openid: str


@dataclass
class LoginSession:
    login_token: str
    scene_id: str
    auth_code: str
    created_at: float
    expired_at: float
    status: SessionStatus = SessionStatus.PENDING
    wechat_id: str = ""
    user_info: WeChatUserInfo | None = None

    def is_expired(self, now: float) -> bool:
        return now > self.expired_at


def generate_token() -> str:
    """16 random bytes from the OS CSPRNG, lowercase hex (32 chars)."""
    return secrets.token_hex(16)


def generate_scene_id(now: float) -> str:
    return f"{SCENE_PREFIX}_{int(now)}_{secrets.token_hex(8)}"


class SessionStore:
    """
    Login sessions keyed by login token, with a secondary index from
    scene id to login token. A single read/write lock guards both indices.

    Readers get snapshot copies of the records; the only write paths are
    create(), update_by_scene() and the expiry eviction.
    """

    def __init__(self, ttl_seconds: int, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = ReadWriteLock()
        self._sessions: Dict[str, LoginSession] = {}  # login_token -> session
        self._scenes: Dict[str, str] = {}  # scene_id -> login_token

    def _now(self) -> float:
        return self._clock()

    def _remove_if_expired(self, login_token: str, now: float) -> bool:
        # Caller must hold the write lock.
        session = self._sessions.get(login_token)
        if session is None or not session.is_expired(now):
            return False

        session.status = SessionStatus.EXPIRED
        del self._sessions[login_token]
        if self._scenes.get(session.scene_id) == login_token:
            del self._scenes[session.scene_id]
        return True

    def _evict_expired(self, login_token: str) -> None:
        with self._lock.write_locked():
            if self._remove_if_expired(login_token, self._now()):
                logger.info(f"Evicted expired login session: token={login_token}")

    def create(self) -> LoginSession:
        with self._lock.write_locked():
            now = self._now()
            login_token = generate_token()
            scene_id = generate_scene_id(now)
            while login_token in self._sessions or scene_id in self._scenes:
                login_token = generate_token()
                scene_id = generate_scene_id(now)

            session = LoginSession(
                login_token=login_token,
                scene_id=scene_id,
                auth_code=generate_token(),
                created_at=now,
                expired_at=now + self.ttl_seconds,
            )
            self._sessions[login_token] = session
            self._scenes[scene_id] = login_token
            snapshot = replace(session)

        logger.info(f"Created login session: token={login_token}, scene={scene_id}")
        return snapshot

    def get(self, login_token: str) -> LoginSession | None:
        with self._lock.read_locked():
            session = self._sessions.get(login_token)
            if session is None:
                return None
            if not session.is_expired(self._now()):
                return replace(session)

        self._evict_expired(login_token)
        return None

    def get_by_scene(self, scene_id: str) -> LoginSession | None:
        with self._lock.read_locked():
            login_token = self._scenes.get(scene_id)
            if login_token is None:
                return None
            session = self._sessions.get(login_token)
            if session is not None and not session.is_expired(self._now()):
                return replace(session)

        with self._lock.write_locked():
            self._remove_if_expired(login_token, self._now())
            # Drop a scene entry whose session is already gone.
            if self._scenes.get(scene_id) == login_token and login_token not in self._sessions:
                del self._scenes[scene_id]
                logger.info(f"Removed dangling scene entry: scene={scene_id}")
        return None

    def update_by_scene(self, scene_id: str, wechat_id: str, user_info: WeChatUserInfo | None) -> bool:
        with self._lock.write_locked():
            login_token = self._scenes.get(scene_id)
            if login_token is None:
                return False

            session = self._sessions.get(login_token)
            if session is None:
                return False

            if self._remove_if_expired(login_token, self._now()):
                logger.info(f"Update rejected, login session expired: scene={scene_id}")
                return False

            session.wechat_id = wechat_id
            session.user_info = user_info
            session.status = SessionStatus.SUCCESS

        logger.info(f"Updated login session: scene={scene_id}, wechat_id={wechat_id}, status=success")
        return True

    def find_wechat_id_by_auth_code(self, auth_code: str) -> str | None:
        """
        Linear scan over the live sessions. Only successful sessions
        match, so a pending session's auth code resolves to nothing.
        """
        wanted = auth_code.encode()
        wechat_id = None
        expired = []
        with self._lock.read_locked():
            now = self._now()
            for login_token, session in self._sessions.items():
                if session.is_expired(now):
                    expired.append(login_token)
                    continue
                if session.status == SessionStatus.SUCCESS and secrets.compare_digest(session.auth_code.encode(), wanted):
                    wechat_id = session.wechat_id
                    break

        for login_token in expired:
            self._evict_expired(login_token)
        return wechat_id

    def discard(self, login_token: str) -> bool:
        """Drops a session that can never be scanned, e.g. when its QR code could not be created."""
        with self._lock.write_locked():
            session = self._sessions.pop(login_token, None)
            if session is None:
                return False
            if self._scenes.get(session.scene_id) == login_token:
                del self._scenes[session.scene_id]
        logger.info(f"Discarded login session: token={login_token}")
        return True

    def active_session_count(self) -> int:
        with self._lock.read_locked():
            return len(self._sessions)

    def sweep_expired(self) -> int:
        with self._lock.write_locked():
            now = self._now()
            removed = 0
            for login_token in list(self._sessions):
                if self._remove_if_expired(login_token, now):
                    removed += 1
        return removed
