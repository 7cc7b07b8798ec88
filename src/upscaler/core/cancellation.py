"""Cooperative cancellation shared by the pipelines and ffmpeg runner."""

import logging
import threading

from upscaler.core.errors import OperationCancelled

logger = logging.getLogger(__name__)


class CancellationToken:
    """Flag checked at item/tile boundaries; callbacks fire once on cancel."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks = []

    @property
    def cancelled(self):
        return self._event.is_set()

    def cancel(self):
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()

        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning(f"Cancellation callback failed: {e}")

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise OperationCancelled("Operation cancelled.")

    def on_cancel(self, callback):
        """Register a callback; returns a function that unregisters it.

        If the token is already cancelled the callback runs immediately.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return lambda: self._remove(callback)

        callback()
        return lambda: None

    def _remove(self, callback):
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)
