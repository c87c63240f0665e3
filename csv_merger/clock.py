"""Time source used by the monitoring loop, replaceable in tests."""

import threading
import time
from typing import Optional


class Clock:
    """Wall clock with cancellable waits."""

    def now(self) -> float:
        return time.time()

    def wait(self, seconds: float, stop_event: Optional[threading.Event] = None) -> bool:
        """
        Wait up to ``seconds``.

        Returns:
            True if the stop event was set before or during the wait
        """
        if stop_event is None:
            if seconds > 0:
                time.sleep(seconds)
            return False
        return stop_event.wait(seconds) if seconds > 0 else stop_event.is_set()
