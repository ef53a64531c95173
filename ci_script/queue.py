"""In-memory job queue shared by the webhook handler and the dispatchers."""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from concurrent.futures import Future
from typing import Generic, Hashable, List, Optional, TypeVar

from ci_script.models import Job

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

# A one-shot delivery channel registered by a consumer that found the queue
# empty. Fulfilled at most once, with exactly one item.
Watcher = Future

_LOGGER = logging.getLogger(__name__)


class LocalQueue(Generic[K, V]):
    """In-memory pending-item store with one-shot watchers.

    Every mutation happens under the queue's own lock, so producers and
    consumers on different threads never coordinate with each other directly.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: "OrderedDict[K, V]" = OrderedDict()
        self._watchers: List[Watcher] = []

    def add(self, key: K, item: V) -> None:
        with self._lock:
            while self._watchers:
                watcher = self._watchers.pop(0)
                # Watchers whose waiter went away are cancelled; skip them.
                if watcher.set_running_or_notify_cancel():
                    watcher.set_result(item)
                    _LOGGER.debug("Delivered %s directly to a waiting watcher", key)
                    return
            self._entries[key] = item
            _LOGGER.debug("Queued %s (%d pending)", key, len(self._entries))

    def remove(self) -> Optional[V]:
        with self._lock:
            if not self._entries:
                return None
            _, item = self._entries.popitem(last=False)
            return item

    def register_watcher(self, watcher: Watcher) -> None:
        """Register ``watcher`` to receive the next item.

        If items are already stored the oldest one is handed over at once,
        so callers do not need to check for emptiness first.
        """
        with self._lock:
            if self._entries:
                if watcher.set_running_or_notify_cancel():
                    _, item = self._entries.popitem(last=False)
                    watcher.set_result(item)
                return
            self._watchers.append(watcher)

    def discard_watcher(self, watcher: Watcher) -> Optional[V]:
        """Forget an abandoned watcher.

        Returns the item it was fulfilled with, if delivery already happened,
        so the caller can put it back instead of dropping it.
        """
        with self._lock:
            if watcher in self._watchers:
                self._watchers.remove(watcher)
                watcher.cancel()
                return None
        if watcher.done() and not watcher.cancelled():
            return watcher.result()
        return None

    @property
    def pending_watchers(self) -> int:
        with self._lock:
            return len(self._watchers)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class JobQueue(LocalQueue[str, Job]):
    """The process-wide queue of pending jobs, keyed by caller-chosen ids."""


__all__ = ["LocalQueue", "JobQueue", "Watcher"]
