"""Whole-collection persistence for designs, events, sessions and crash reports.

Every collection is read and written as one unit. Readers always see the last
committed version of a collection; writers go through :meth:`CollectionStore.mutate`,
which serializes read-modify-write cycles per collection.
"""
from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .database import STORAGE_TIMEOUT, session_scope
from .errors import StorageError
from .models import Base, CollectionRow

logger = logging.getLogger(__name__)

DESIGNS = "designs"
EVENTS = "events"
SESSIONS = "sessions"
CRASHES = "crashes"
ALL_COLLECTIONS = (DESIGNS, EVENTS, SESSIONS, CRASHES)

Record = Dict[str, object]


class CollectionLocks:
    """One lock per collection name, acquired with a bounded wait."""

    def __init__(self, timeout: float) -> None:
        self._timeout = timeout
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, name: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = self._locks[name] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, *names: str) -> Iterator[None]:
        acquired: List[threading.Lock] = []
        try:
            for name in names:
                lock = self._lock_for(name)
                if not lock.acquire(timeout=self._timeout):
                    raise StorageError(
                        f"Timed out after {self._timeout}s waiting for collection {name!r}"
                    )
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


def _decode(name: str, text: str) -> List[Record]:
    try:
        records = json.loads(text)
    except (TypeError, ValueError):
        logger.warning("Collection %s is unreadable; treating it as empty", name)
        return []
    if not isinstance(records, list):
        logger.warning("Collection %s is not a list; treating it as empty", name)
        return []
    return [record for record in records if isinstance(record, dict)]


def _encode(name: str, records: Sequence[Record]) -> str:
    try:
        return json.dumps(list(records))
    except (TypeError, ValueError) as exc:
        raise StorageError(f"Collection {name!r} contains unserialisable records") from exc


class CollectionStore(ABC):
    """Interface describing how whole collections are persisted."""

    def __init__(self, timeout: float = STORAGE_TIMEOUT) -> None:
        self._locks = CollectionLocks(timeout)

    @abstractmethod
    def initialize(self, names: Iterable[str] = ALL_COLLECTIONS) -> None:
        """Create every missing collection as an empty one.

        Raises:
            StorageError: If a collection cannot be created.
        """

    @abstractmethod
    def read(self, name: str) -> Optional[str]:
        """Return the stored text of ``name``, or ``None`` if the collection is missing.

        Raises:
            StorageError: If the backing store cannot be read.
        """

    def load(self, name: str) -> List[Record]:
        """Return the records of ``name``, or an empty list if they cannot be read."""

        try:
            return self._load_strict(name)
        except StorageError:
            logger.warning("Failed to read collection %s; treating it as empty", name, exc_info=True)
            return []

    def _load_strict(self, name: str) -> List[Record]:
        text = self.read(name)
        if text is None:
            logger.warning("Collection %s does not exist; treating it as empty", name)
            return []
        return _decode(name, text)

    @abstractmethod
    def save(self, name: str, records: Sequence[Record]) -> None:
        """Replace the whole collection.

        Raises:
            StorageError: If the write fails. The previous contents stay in place.
        """

    @contextmanager
    def mutate(self, name: str) -> Iterator[List[Record]]:
        """Load ``name`` under its lock and save it back when the block succeeds.

        Raises:
            StorageError: If the collection cannot be read. Nothing is written.
        """

        with self._locks.hold(name):
            records = self._load_strict(name)
            yield records
            self.save(name, records)

    @contextmanager
    def mutate_many(self, *names: str) -> Iterator[Dict[str, List[Record]]]:
        """Like :meth:`mutate` for several collections, locked in the given order."""

        with self._locks.hold(*names):
            loaded = {name: self._load_strict(name) for name in names}
            yield loaded
            for name in names:
                self.save(name, loaded[name])


class InMemoryCollectionStore(CollectionStore):
    """Keep collections as serialized text in local process memory."""

    def __init__(self, timeout: float = STORAGE_TIMEOUT) -> None:
        super().__init__(timeout)
        self._collections: Dict[str, str] = {}

    def initialize(self, names: Iterable[str] = ALL_COLLECTIONS) -> None:
        for name in names:
            self._collections.setdefault(name, "[]")

    def read(self, name: str) -> Optional[str]:
        return self._collections.get(name)

    def save(self, name: str, records: Sequence[Record]) -> None:
        self._collections[name] = _encode(name, records)

    def write_raw(self, name: str, text: str) -> None:
        """Overwrite the stored text of ``name`` without validation."""

        self._collections[name] = text


class SqlCollectionStore(CollectionStore):
    """Persist each collection as one row of the ``collections`` table."""

    def __init__(self, engine: Engine, timeout: float = STORAGE_TIMEOUT) -> None:
        super().__init__(timeout)
        self.engine = engine
        self._sessions = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

    def initialize(self, names: Iterable[str] = ALL_COLLECTIONS) -> None:
        try:
            Base.metadata.create_all(bind=self.engine)
            with session_scope(self._sessions) as session:
                for name in names:
                    if session.get(CollectionRow, name) is None:
                        session.add(CollectionRow(name=name, payload="[]", record_count=0))
                        logger.info("Initialized empty collection %s", name)
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to initialize collections: {exc}") from exc

    def read(self, name: str) -> Optional[str]:
        try:
            with self._sessions() as session:
                row = session.get(CollectionRow, name)
                return row.payload if row is not None else None
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to read collection {name!r}") from exc

    def save(self, name: str, records: Sequence[Record]) -> None:
        payload = _encode(name, records)
        try:
            with session_scope(self._sessions) as session:
                row = session.get(CollectionRow, name)
                if row is None:
                    row = CollectionRow(name=name)
                    session.add(row)
                row.payload = payload
                row.record_count = len(records)
        except SQLAlchemyError as exc:
            logger.exception("Failed to write collection %s; keeping previous contents", name)
            raise StorageError(f"Failed to write collection {name!r}") from exc
