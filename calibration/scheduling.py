"""
Repeating Task
Runs a callable at a fixed interval on a daemon thread until stopped
"""

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class RepeatingTask:
    """Periodic task with explicit start and stop"""

    def __init__(self, interval: float, action: Callable[[], None], name: str = 'repeating-task'):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.interval = interval
        self.action = action
        self.name = name
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def start(self) -> bool:
        """Start the task, False if it is already running"""
        with self._lock:
            if self._thread and self._thread.is_alive():
                return False
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
            self._thread.start()
            return True

    def stop(self, timeout: float = 5.0):
        """Stop the task and wait for the current run of the action to finish"""
        with self._lock:
            self._stop_event.set()
            thread = self._thread
            self._thread = None
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self):
        while not self._stop_event.wait(self.interval):
            try:
                self.action()
            except Exception as e:
                logger.error(f"Error in {self.name}: {e}")
