"""Per-vendor serialization of balance-mutating work.

Every mutation of a vendor's wallet (ledger append, payout request, order
transition, maturation) runs while holding that vendor's lock, so that
check-then-debit sequences cannot interleave within one process. Across
processes the row lock taken on ``vendor_accounts`` does the same job.

Locks are held weakly: a vendor's lock lives only while some caller holds a
reference to it, so the registry does not grow with every vendor ever seen.
"""

import threading
import weakref
from contextlib import contextmanager


class VendorLockRegistry:
    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, threading.RLock]" = weakref.WeakValueDictionary()
        self._guard = threading.Lock()

    def get(self, vendor_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(vendor_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[vendor_id] = lock
            return lock

    @contextmanager
    def hold(self, vendor_id: str):
        lock = self.get(vendor_id)
        with lock:
            yield

    def clear(self):
        with self._guard:
            self._locks.clear()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


VENDOR_LOCKS = VendorLockRegistry()


def vendor_lock(vendor_id: str):
    """Context manager holding the process-wide lock for ``vendor_id``."""
    return VENDOR_LOCKS.hold(vendor_id)
