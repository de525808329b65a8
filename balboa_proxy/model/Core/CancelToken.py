import threading
import weakref
from typing import Optional


class Cancelled(Exception):
    """Raised by blocking helpers when their token is cancelled mid-operation."""


class CancelToken:
    """
    Cooperative cancellation signal shared between threads.

    Tokens form a tree: cancelling a token cancels every live descendant,
    while cancelling a child leaves its parent and siblings untouched. A child
    derived from an already cancelled parent starts out cancelled.

    Attributes:
        name (str): Label used in log messages
        reason (str): Why the token was cancelled, once it is
    """

    def __init__(self, parent: Optional["CancelToken"] = None, name: str = ""):
        self.name = name
        self.reason = None
        self._event = threading.Event()
        self._lock = threading.Lock()
        # Finished sessions drop out on their own once unreferenced.
        self._children = weakref.WeakSet()
        if parent is not None:
            parent._adopt(self)

    def _adopt(self, child: "CancelToken"):
        with self._lock:
            self._children.add(child)
            cancelled = self._event.is_set()
            reason = self.reason
        if cancelled:
            child.cancel(reason)

    def child(self, name: str = "") -> "CancelToken":
        return CancelToken(parent=self, name=name)

    def cancel(self, reason: Optional[str] = None):
        """
        Cancel this token and all of its descendants. Idempotent; the first
        reason wins.
        """
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            children = list(self._children)
        for child in children:
            child.cancel(reason)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or ``timeout`` elapses. Returns True if cancelled."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise Cancelled(self.reason or self.name or "cancelled")

    def __repr__(self):
        state = "cancelled" if self.cancelled else "active"
        return f"<CancelToken {self.name or '?'} {state}>"
