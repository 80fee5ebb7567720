from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional

LOG = logging.getLogger(__name__)


class CancelToken:
    """Cancellation signal shared by a backup cycle.

    Callbacks registered through :meth:`on_cancel` run once when the token
    fires, which is how an in-flight git process gets terminated.
    """

    def __init__(self, event: Optional[threading.Event] = None) -> None:
        self._event = event or threading.Event()
        # Reentrant: cancel() is called from signal handlers on the main thread.
        self._lock = threading.RLock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
        for callback in callbacks:
            try:
                callback()
            except Exception as exc:  # noqa: BLE001
                LOG.warning("Cancellation callback failed: %s", exc)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block for ``timeout`` seconds or until cancelled; True when cancelled."""
        return self._event.wait(timeout)

    @contextmanager
    def on_cancel(self, callback: Callable[[], None]) -> Iterator[None]:
        with self._lock:
            self._callbacks.append(callback)
            fire_now = self._event.is_set()
        if fire_now:
            callback()
        try:
            yield
        finally:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

    def child(self) -> "CancelToken":
        """Return a token that fires with this one but can also fire alone."""
        child = CancelToken()
        with self._lock:
            self._callbacks.append(child.cancel)
            fire_now = self._event.is_set()
        if fire_now:
            child.cancel()
        return child

    def release(self, child: "CancelToken") -> None:
        with self._lock:
            if child.cancel in self._callbacks:
                self._callbacks.remove(child.cancel)
