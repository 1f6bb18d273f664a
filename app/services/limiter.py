import threading
import time
from typing import Callable

from fastapi import HTTPException, Request

from app.core.config import settings


class RateLimiter:
    def __init__(self, window_seconds: float = 60.0, clock: Callable[[], float] = time.time):
        """
        Sliding-window limiter keyed by client IP, used to throttle
        QR code creation (each one costs a WeChat API call).
        """
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._requests: dict[str, list[float]] = {}  # Stores IP -> [timestamp1, timestamp2...]

    def _prune(self, now: float) -> None:
        # Caller must hold self._lock. Forget IPs with no request inside the window.
        stale = [ip for ip, stamps in self._requests.items() if not stamps or now - stamps[-1] >= self.window_seconds]
        for ip in stale:
            del self._requests[ip]

    def check(self, request: Request) -> None:
        if not settings.RATE_LIMIT_ENABLED:
            return

        client_ip = request.client.host if request.client else "unknown"
        now = self._clock()

        with self._lock:
            self._prune(now)

            # Filter out requests older than the window
            recent = [t for t in self._requests.get(client_ip, []) if now - t < self.window_seconds]

            if len(recent) >= settings.MAX_REQUESTS_PER_MINUTE:
                self._requests[client_ip] = recent
                raise HTTPException(status_code=429, detail="Too many QR code requests. Please wait.")

            recent.append(now)
            self._requests[client_ip] = recent
