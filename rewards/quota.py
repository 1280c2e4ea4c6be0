"""Daily withdraw counter reset.

``request_withdrawal`` already ignores a counter whose date is not today, so
this job only tidies the stored counters of accounts that have gone quiet.
"""

import threading
from datetime import datetime
from typing import Callable, Optional

from .logging_config import get_logger
from .models import utcnow
from .storage import Storage, account_key

logger = get_logger(__name__)

MARKER_NAME = "quota_last_reset"
_MARKER_KEY = "marker:quota_last_reset"


class QuotaResetter:
    def __init__(
        self,
        storage: Storage,
        interval_seconds: float = 3600.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.interval_seconds = interval_seconds
        self.clock = clock
        self._run_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> int:
        """Reset counters if the date moved since the last run.

        Returns the number of accounts touched; 0 when today was already handled.
        """
        with self._run_lock:
            today = self.clock().date()
            with self.storage.transaction(_MARKER_KEY) as tx:
                if tx.get_marker(MARKER_NAME) == today:
                    return 0

            reset = 0
            for account_id in self.storage.account_ids():
                # One account per transaction; foreground requests on other
                # accounts never wait on this loop.
                with self.storage.transaction(account_key(account_id)) as tx:
                    account = tx.get_account(account_id)
                    if account is None or account.withdraw_count_today == 0:
                        continue
                    if account.last_withdraw_date == today:
                        continue
                    account.withdraw_count_today = 0
                    tx.save_account(account)
                    reset += 1

            with self.storage.transaction(_MARKER_KEY) as tx:
                tx.set_marker(MARKER_NAME, today)

        logger.info("daily_withdraw_counts_reset", date=today.isoformat(), accounts=reset)
        return reset

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="quota-resetter", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self) -> None:
        # Run at start-up, then on every tick.
        while True:
            try:
                self.run_once()
            except Exception as exc:
                logger.exception("quota_reset_failed", error=str(exc))
            if self._stop.wait(self.interval_seconds):
                return
