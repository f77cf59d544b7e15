import threading

from .checkout import expire_stale_sessions
from .config import SWEEP_INTERVAL_SECONDS
from .database import SessionLocal
from .log import get_logger

logger = get_logger("sweeper")


class SessionSweeper:
    """Periodically expires abandoned checkout sessions.

    Several instances may run this at once; the expiry is a conditional update,
    so they never fight over a row or race a finalize.
    """

    def __init__(self, session_factory=SessionLocal, interval=SWEEP_INTERVAL_SECONDS):
        self.session_factory = session_factory
        self.interval = interval
        self._stop = threading.Event()

    def run_once(self):
        db = self.session_factory()
        try:
            return expire_stale_sessions(db)
        finally:
            db.close()

    def start_listening(self):
        logger.info("sweeper_started", interval=self.interval)
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception as e:
                # Keep sweeping; the next pass retries the same rows.
                logger.error("sweep_failed", error=str(e))
            self._stop.wait(self.interval)

    def stop(self):
        self._stop.set()


def start_sweeper_thread(sweeper=None):
    """Helper to run the sweeper in a background thread."""
    sweeper = sweeper or SessionSweeper()
    thread = threading.Thread(target=sweeper.start_listening, daemon=True)
    thread.start()
    return sweeper
