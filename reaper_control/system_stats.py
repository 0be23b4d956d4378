"""Host CPU and process memory stats for the control surfaces."""

import logging
import os
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import psutil

logger = logging.getLogger(__name__)


class SystemStatsMonitor:
    """
    Samples system-wide CPU load and this process's memory use.

    Memory `used` is the resident set size of the service, measured against
    total system memory. A failed sample keeps the previous figures.
    """

    def __init__(self, interval: float = 2.0):
        self.interval = interval
        self._process = psutil.Process(os.getpid())
        self._lock = threading.Lock()
        self._latest: Dict[str, Any] = {
            'cpu': {'usage': 0, 'cores': psutil.cpu_count() or 1, 'speed': 0.0},
            'memory': {'total': 0, 'used': 0, 'free': 0, 'usedPercent': 0},
            'lastUpdated': 0,
        }
        self._callbacks: List[Callable[[Dict[str, Any]], None]] = []

        self._running = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        # First cpu_percent call only sets the baseline
        psutil.cpu_percent(interval=None)

    @property
    def latest(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._latest)

    def add_stats_callback(self, callback: Callable[[Dict[str, Any]], None]) -> None:
        self._callbacks.append(callback)

    def _cpu_speed(self) -> float:
        """Current clock in GHz, 0 where the platform does not report it."""
        try:
            freq = psutil.cpu_freq()
        except (OSError, NotImplementedError):
            return 0.0
        return round(freq.current / 1000, 2) if freq else 0.0

    def sample(self) -> Dict[str, Any]:
        try:
            total = psutil.virtual_memory().total
            rss = self._process.memory_info().rss
            stats = {
                'cpu': {
                    'usage': round(psutil.cpu_percent(interval=None)),
                    'cores': psutil.cpu_count() or 1,
                    'speed': self._cpu_speed(),
                },
                'memory': {
                    'total': total,
                    'used': rss,
                    'free': total - rss,
                    'usedPercent': round(rss / total * 100) if total else 0,
                },
                'lastUpdated': int(time.time() * 1000),
            }
        except psutil.Error as e:
            logger.error(f"Error getting system stats: {e}")
            return self.latest

        with self._lock:
            self._latest = stats
        return stats

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._stop_event.clear()
        self.sample()
        self._thread = threading.Thread(target=self._run_loop, daemon=True, name="system-stats")
        self._thread.start()

    def stop(self) -> None:
        self._running = False
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=2.0)
            self._thread = None

    def _run_loop(self) -> None:
        while not self._stop_event.wait(self.interval):
            stats = self.sample()
            for callback in self._callbacks:
                try:
                    callback(stats)
                except Exception as e:
                    logger.error(f"Stats callback error: {e}")
