"""
Cooperative cancellation for long-running loops.

The continuous consumer and the streaming producer check the token only at
safe boundaries (between poll cycles, between events). Signal handlers set it:

    token = CancellationToken()
    token.install_signal_handlers()
    ContinuousConsumer(...).run(token)
"""

import logging
import signal
import threading

logger = logging.getLogger(__name__)


class CancellationToken:
    """Thread-safe stop flag with an interruptible wait."""

    def __init__(self):
        self._event = threading.Event()
        self.reason = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "requested") -> None:
        if not self._event.is_set():
            self.reason = reason
            logger.info(f"Cancellation requested ({reason}), finishing current cycle...")
        self._event.set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to `timeout` seconds. Returns True if cancelled."""
        return self._event.wait(timeout)

    def install_signal_handlers(self) -> None:
        """Cancel on SIGTERM/SIGINT."""
        signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)
        logger.info("Signal handlers registered for graceful shutdown")

    def _signal_handler(self, signum, frame):
        self.cancel(signal.Signals(signum).name)
