"""
Background dispatcher: periodic loops for stream ticks, transaction
submission/confirmation, loan default sweeps and stream reconciliation,
plus a small pool for adapter work queued by request handlers.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor

from models import db

logger = logging.getLogger('gigledger.dispatcher')

MAX_ERROR_BACKOFF = 600


class Dispatcher:
    def __init__(self, app, ctx, shutdown_event=None, max_workers=4):
        self.app = app
        self.ctx = ctx
        self.shutdown_event = shutdown_event or threading.Event()
        self._max_workers = max_workers
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='ledger')
        self._threads = []

    def loops(self):
        cfg = self.ctx.config
        return [
            ('stream-tick', cfg.STREAM_TICK_SECONDS, self.ctx.streams.tick),
            ('tx-process', cfg.TX_POLL_SECONDS, self.ctx.transactions.process),
            ('default-sweep', cfg.DEFAULT_SWEEP_SECONDS, self.ctx.loans.sweep_defaults),
            ('stream-reconcile', cfg.RECONCILE_SECONDS, self.ctx.streams.reconcile_all),
        ]

    def start(self):
        for name, interval, fn in self.loops():
            thread = threading.Thread(target=self._loop, args=(name, interval, fn),
                                      daemon=True, name=name)
            thread.start()
            self._threads.append(thread)
        logger.info("Started %d background loops", len(self._threads))

    def _loop(self, name, interval, fn):
        consecutive_errors = 0
        while not self.shutdown_event.is_set():
            # Exponential backoff on consecutive errors, capped
            sleep_time = min(interval * (2 ** consecutive_errors), max(interval, MAX_ERROR_BACKOFF))
            if self.shutdown_event.wait(timeout=sleep_time):
                break
            try:
                self.run_once(fn)
                consecutive_errors = 0
            except Exception as e:
                consecutive_errors += 1
                logger.error("%s loop error (consecutive=%d): %s", name, consecutive_errors, e)

    def run_once(self, fn, *args, **kwargs):
        """Run `fn` inside an app context with a scoped session of its own."""
        with self.app.app_context():
            try:
                return fn(*args, **kwargs)
            finally:
                db.session.remove()

    def submit(self, fn, *args, **kwargs):
        """Queue adapter work off the request thread."""
        if self.shutdown_event.is_set():
            return None
        return self._pool.submit(self._guarded, fn, *args, **kwargs)

    def _guarded(self, fn, *args, **kwargs):
        try:
            return self.run_once(fn, *args, **kwargs)
        except Exception as e:
            logger.error("Dispatched %s failed: %s", getattr(fn, '__name__', fn), e)
            return None

    def shutdown(self, wait=True):
        self.shutdown_event.set()
        self._pool.shutdown(wait=wait)
