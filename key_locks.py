import threading
from contextlib import contextmanager
from typing import Dict, Iterable


class _Entry:
    __slots__ = ("lock", "holders")

    def __init__(self):
        self.lock = threading.Lock()
        self.holders = 0


class KeyedLocks:
    """Mutual exclusion per identity key (``email:...``, ``phone:...``).

    Keys are always taken in sorted order so two requests sharing more than
    one key cannot deadlock. Entries are dropped once nobody holds or waits
    on them.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._entries: Dict[str, _Entry] = {}

    def _checkout(self, key: str) -> _Entry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.holders += 1
            return entry

    def _release(self, key: str, entry: _Entry):
        entry.lock.release()
        self._checkin(key, entry)

    def _checkin(self, key: str, entry: _Entry):
        with self._guard:
            entry.holders -= 1
            if entry.holders == 0:
                del self._entries[key]

    @contextmanager
    def hold(self, keys: Iterable[str]):
        ordered = sorted(set(keys))
        acquired = []
        try:
            for key in ordered:
                entry = self._checkout(key)
                try:
                    entry.lock.acquire()
                except BaseException:
                    self._checkin(key, entry)
                    raise
                acquired.append((key, entry))
            yield
        finally:
            for key, entry in reversed(acquired):
                self._release(key, entry)

    def __len__(self):
        with self._guard:
            return len(self._entries)


def identity_keys(email: str = None, phone: str = None):
    keys = []
    if email:
        keys.append(f"email:{email}")
    if phone:
        keys.append(f"phone:{phone}")
    return keys
