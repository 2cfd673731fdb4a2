"""
Per-installation mutual exclusion.

An installation id is in the set while something mutates its package
rows on the remote site: a running package job, or a scan replacing its
inventory. At most one holder per id at any time.
"""

import threading
from contextlib import contextmanager
from typing import Iterator, Optional, Set


class SiteLocks:

    def __init__(self):
        self._locked: Set[str] = set()
        self._cond = threading.Condition()

    def try_acquire(self, installation_id: str) -> bool:
        with self._cond:
            if installation_id in self._locked:
                return False
            self._locked.add(installation_id)
            return True

    def acquire(self, installation_id: str, timeout: Optional[float] = None) -> bool:
        """Block until the lock is free (or timeout elapses). True if acquired."""
        with self._cond:
            acquired = self._cond.wait_for(lambda: installation_id not in self._locked, timeout=timeout)
            if not acquired:
                return False
            self._locked.add(installation_id)
            return True

    def release(self, installation_id: str):
        with self._cond:
            self._locked.discard(installation_id)
            self._cond.notify_all()

    def is_locked(self, installation_id: str) -> bool:
        with self._cond:
            return installation_id in self._locked

    @contextmanager
    def hold(self, installation_id: str, timeout: Optional[float] = None) -> Iterator[None]:
        if not self.acquire(installation_id, timeout=timeout):
            raise TimeoutError(f"Site {installation_id} stayed busy for {timeout}s")
        try:
            yield
        finally:
            self.release(installation_id)
