import logging
import threading
from typing import Callable, List, Tuple

logger = logging.getLogger(__name__)


class PairingScheduler:
    """
    One background thread scanning every active queue partition.

    Queue mutations call ``notify``; bursts are coalesced by the debounce
    window before a scan. While any partition holds entrants a slow
    heartbeat rescans so ranked thresholds keep widening. The thread starts
    on the first notify and exits once every partition is empty.
    """

    def __init__(
        self,
        scan: Callable[[str, object], object],
        active_partitions: Callable[[], List[Tuple[str, object]]],
        heartbeat: float = 5.0,
        debounce: float = 0.25,
    ):
        self._scan = scan
        self._active_partitions = active_partitions
        self.heartbeat = heartbeat
        self.debounce = debounce
        self._lock = threading.Lock()
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread = None
        self._closed = False

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def notify(self):
        with self._lock:
            if self._closed:
                return
            self._wake.set()
            if self._thread is None:
                self._stop.clear()
                self._thread = threading.Thread(target=self._run, name="pairing-scheduler", daemon=True)
                self._thread.start()

    def run_once(self) -> int:
        scanned = 0
        for game_type, match_type in self._active_partitions():
            try:
                self._scan(game_type, match_type)
            except Exception:
                logger.exception(f"Pairing scan failed for {game_type}/{match_type}, retrying on next trigger")
            scanned += 1
        return scanned

    def _run(self):
        logger.info("Pairing scheduler started")
        while not self._stop.is_set():
            woken = self._wake.wait(timeout=self.heartbeat)
            if self._stop.is_set():
                break
            if woken:
                self._stop.wait(self.debounce)
                self._wake.clear()

            self.run_once()

            with self._lock:
                if not self._wake.is_set() and not self._active_partitions():
                    self._thread = None
                    logger.info("Queues empty, pairing scheduler idle")
                    return
        logger.info("Pairing scheduler stopped")

    def stop(self, timeout: float = 5.0):
        with self._lock:
            self._closed = True
            thread = self._thread
            self._thread = None
        self._stop.set()
        self._wake.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
