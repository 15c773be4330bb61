from __future__ import annotations

import threading
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from typing import Generic, TypeVar

K = TypeVar("K")
V = TypeVar("V")


class ReadWriteLock:
    """Reader/writer lock with writer preference.

    Any number of readers may hold the lock at once; a writer holds it
    exclusively.  New readers queue behind a waiting writer so a steady
    stream of lookups cannot starve watch handlers.

    The write side is re-entrant for its owning thread, and the owning
    writer may also take the read side.  That lets a caller group several
    :class:`IndexedStore` writes that share one lock into a single critical
    section.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer: int | None = None
        self._writer_depth = 0
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        me = threading.get_ident()
        with self._cond:
            if self._writer == me:
                self._writer_depth += 1
                return
            while self._writer is not None or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        me = threading.get_ident()
        with self._cond:
            if self._writer == me:
                self._writer_depth -= 1
                return
            if self._readers <= 0:
                raise RuntimeError("release_read called without a matching acquire_read")
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        me = threading.get_ident()
        with self._cond:
            if self._writer == me:
                self._writer_depth += 1
                return
            self._writers_waiting += 1
            try:
                while self._writer is not None or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = me
            self._writer_depth = 1

    def release_write(self) -> None:
        with self._cond:
            if self._writer != threading.get_ident():
                raise RuntimeError("release_write called by a thread that does not hold the lock")
            self._writer_depth -= 1
            if self._writer_depth == 0:
                self._writer = None
                self._cond.notify_all()

    @contextmanager
    def reading(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def writing(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


class IndexedStore(Generic[K, V]):
    """String-keyed map guarded by a :class:`ReadWriteLock`.

    One container type backs every identity map and feature table so the
    locking discipline lives in one place.  Values handed out are either
    immutable (``str``, ``bool``, ``tuple``) or copies; the internal dict
    never leaves the lock scope.

    Several stores may share a lock (pass ``lock=``) when their contents
    must change together, e.g. a map and its inverse.
    """

    def __init__(self, name: str, lock: ReadWriteLock | None = None) -> None:
        self.name = name
        self.lock = lock or ReadWriteLock()
        self._items: dict[K, V] = {}

    def __len__(self) -> int:
        with self.lock.reading():
            return len(self._items)

    def __contains__(self, key: object) -> bool:
        with self.lock.reading():
            return key in self._items

    def get(self, key: K) -> tuple[V | None, bool]:
        """Return ``(value, found)`` for *key*."""
        with self.lock.reading():
            if key in self._items:
                return self._items[key], True
            return None, False

    def snapshot(self) -> dict[K, V]:
        with self.lock.reading():
            return dict(self._items)

    def keys(self) -> list[K]:
        with self.lock.reading():
            return list(self._items)

    def put(self, key: K, value: V) -> None:
        with self.lock.writing():
            self._items[key] = value

    def pop(self, key: K) -> V | None:
        """Remove *key* and return its previous value; missing keys are a no-op."""
        with self.lock.writing():
            return self._items.pop(key, None)

    def pop_if(self, key: K, expected: V) -> bool:
        """Remove *key* only while it still maps to *expected*."""
        with self.lock.writing():
            if key in self._items and self._items[key] == expected:
                del self._items[key]
                return True
            return False

    def update(self, key: K, fn: Callable[[V | None], V | None]) -> V | None:
        """Atomically replace the value for *key* with ``fn(current)``.

        ``fn`` receives ``None`` when the key is absent.  Returning ``None``
        removes the entry, so callers never have to leave an empty value
        behind.
        """
        with self.lock.writing():
            new_value = fn(self._items.get(key))
            if new_value is None:
                self._items.pop(key, None)
            else:
                self._items[key] = new_value
            return new_value

    def replace(self, items: Mapping[K, V]) -> None:
        """Swap the whole content; readers see either the old or the new table."""
        fresh = dict(items)
        with self.lock.writing():
            self._items = fresh
