"""
Expiration scheduler — periodic sweep that expires overdue requests.

Runs in a daemon thread next to the web workers. Several instances (one per
process, plus the cron endpoint) may sweep at once: the store's
compare-and-set lets exactly one of them expire each request and the rest
skip it.
"""
import logging
import threading

from sqlalchemy import exc as sa_exc

from core.pam.constants import DEFAULT_EXPIRATION_INTERVAL_SECONDS, MAX_SWEEP_SECONDS
from core.pam.errors import PamError

logger = logging.getLogger(__name__)


class ExpirationScheduler:

    def __init__(self, app, engine, interval_seconds=None, max_sweep_seconds=MAX_SWEEP_SECONDS):
        self.app = app
        self.engine = engine
        self.interval_seconds = float(interval_seconds or DEFAULT_EXPIRATION_INTERVAL_SECONDS)
        self.max_sweep_seconds = max_sweep_seconds
        self._stop = threading.Event()
        self._thread = None
        self.last_result = None

    def run_once(self):
        """One tick: reload policy, then expire what is due.

        Returns:
            dict from ``ElevationEngine.expire_due``.
        """
        try:
            self.engine.config_store.refresh()
        except PamError as e:
            # Keep sweeping with the snapshot we already have.
            logger.warning('[pam] policy refresh failed, using version %s: %s',
                           self.engine.config_store.snapshot().version, e)
        result = self.engine.expire_due(max_seconds=self.max_sweep_seconds)
        self.last_result = result
        return result

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name='pam-expiration', daemon=True,
        )
        self._thread.start()
        logger.info('[pam] expiration scheduler started (every %ss)', self.interval_seconds)

    def stop(self, timeout=5.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self):
        return self._thread is not None and self._thread.is_alive()

    def _run(self):
        while not self._stop.wait(self.interval_seconds):
            with self.app.app_context():
                try:
                    self.run_once()
                except (PamError, sa_exc.SQLAlchemyError) as e:
                    logger.error('[pam] expiration sweep failed: %s', e)
