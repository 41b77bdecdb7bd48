"""Per-account writer locks for the current process.

Balance-affecting writes for one account are serialised here before they
reach the database, where row locks and the account version counter take
over for writers in other processes.
"""
import threading
import weakref
from contextlib import contextmanager

_registry_lock = threading.Lock()
# An entry lives only while some thread holds or waits on its lock
_account_locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()


def _lock_for(account_id) -> threading.Lock:
    key = str(account_id)
    with _registry_lock:
        lock = _account_locks.get(key)
        if lock is None:
            lock = threading.Lock()
            _account_locks[key] = lock
        return lock


@contextmanager
def account_lock(account_id):
    lock = _lock_for(account_id)
    with lock:
        yield
