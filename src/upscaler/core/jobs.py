"""Single-job gate shared by the entry points."""

import logging
import threading

from upscaler.core.backend import shared_session_cache
from upscaler.core.cancellation import CancellationToken
from upscaler.core.errors import JobInProgressError

logger = logging.getLogger(__name__)


class JobRunner:
    """Runs at most one upscale job at a time.

    The job callable receives the runner's CancellationToken as its ``cancel``
    keyword argument; ``cancel()`` fires that token from any thread.
    """

    def __init__(self, cache=None):
        self.cache = cache if cache is not None else shared_session_cache()
        self._lock = threading.Lock()
        self._token = None

    @property
    def busy(self):
        with self._lock:
            return self._token is not None

    def run(self, fn, *args, **kwargs):
        with self._lock:
            if self._token is not None:
                raise JobInProgressError("A job is already running.")
            token = self._token = CancellationToken()

        try:
            return fn(*args, cancel=token, **kwargs)
        finally:
            with self._lock:
                self._token = None

    def cancel(self):
        with self._lock:
            token = self._token
        if token is None:
            return False
        logger.info("Cancelling running job")
        token.cancel()
        return True

    def shutdown(self):
        """Cancel any running job and release every cached model session."""
        self.cancel()
        self.cache.clear()
