# Background thread that periodically sweeps expired login sessions
# out of the session store.

import logging
import threading

from app.services.sessions import SessionStore

logger = logging.getLogger(__name__)


class SessionReaper:
    def __init__(self, store: SessionStore, interval_seconds: float = 60.0):
        self.store = store
        self.interval_seconds = interval_seconds
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> int:
        removed = self.store.sweep_expired()
        logger.info(
            f"Session sweep completed: removed={removed}, "
            f"active sessions={self.store.active_session_count()}"
        )
        return removed

    def _run(self) -> None:
        logger.info(f"Session reaper started (interval={self.interval_seconds:.0f} seconds)")
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.run_once()
            except Exception:  # noqa: BLE001
                logger.exception("Session sweep failed")
        logger.info("Session reaper stopped")

    def start(self) -> None:
        if self.running:
            logger.info("Session reaper already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="session-reaper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        if self._thread is None:
            return

        self._stop_event.set()
        self._thread.join(timeout=timeout)
        self._thread = None
