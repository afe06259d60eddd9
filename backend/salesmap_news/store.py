"""Key-value backends for the news snapshot and job records.

Every backend offers the same small surface: ``get``, ``set`` with an optional
TTL, ``delete`` and an atomic ``compare_and_set`` used by the job checkpoint
writes. Backend failures surface as ``StoreUnavailableError``.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Protocol

import redis
from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from salesmap_news.config import Settings
from salesmap_news.models import KeyValueEntry
from salesmap_news.utils import utc_now

logger = logging.getLogger(__name__)


class StoreUnavailableError(RuntimeError):
    """Raised when the backing key-value store cannot be reached."""


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None: ...

    def delete(self, key: str) -> None: ...

    def compare_and_set(
        self, key: str, expected: str | None, value: str, ttl_seconds: int | None = None
    ) -> bool: ...

    def ping(self) -> bool: ...


class MemoryKeyValueStore:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[str, tuple[str, float | None]] = {}
        self._lock = threading.Lock()

    def _read(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    def _write(self, key: str, value: str, ttl_seconds: int | None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._data[key] = (value, expires_at)

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._read(key)

    def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        with self._lock:
            self._write(key, value, ttl_seconds)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def compare_and_set(
        self, key: str, expected: str | None, value: str, ttl_seconds: int | None = None
    ) -> bool:
        with self._lock:
            if self._read(key) != expected:
                return False
            self._write(key, value, ttl_seconds)
            return True

    def ping(self) -> bool:
        return True


class RedisKeyValueStore:
    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> RedisKeyValueStore:
        return cls(redis.Redis.from_url(url, decode_responses=True))

    @staticmethod
    def _decode(value: str | bytes | None) -> str | None:
        if isinstance(value, (bytes, bytearray)):
            return value.decode("utf-8")
        return value

    def get(self, key: str) -> str | None:
        try:
            return self._decode(self.client.get(key))
        except redis.RedisError as exc:
            raise StoreUnavailableError(f"Redis GET failed: {exc}") from exc

    def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        try:
            self.client.set(key, value, ex=ttl_seconds or None)
        except redis.RedisError as exc:
            raise StoreUnavailableError(f"Redis SET failed: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self.client.delete(key)
        except redis.RedisError as exc:
            raise StoreUnavailableError(f"Redis DEL failed: {exc}") from exc

    def compare_and_set(
        self, key: str, expected: str | None, value: str, ttl_seconds: int | None = None
    ) -> bool:
        try:
            with self.client.pipeline() as pipe:
                try:
                    pipe.watch(key)
                    current = self._decode(pipe.get(key))
                    if current != expected:
                        pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.set(key, value, ex=ttl_seconds or None)
                    pipe.execute()
                    return True
                except redis.WatchError:
                    return False
        except redis.RedisError as exc:
            raise StoreUnavailableError(f"Redis compare-and-set failed: {exc}") from exc

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError as exc:
            raise StoreUnavailableError(f"Redis PING failed: {exc}") from exc


class SqlKeyValueStore:
    """Key-value records kept in the ``kv_entries`` table.

    Expired rows read as absent and are purged when the key is next written.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] | sessionmaker[Session],
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self._clock = clock

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with self.session_factory() as db:
                yield db
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"SQL store failed: {exc}") from exc

    def _expires_at(self, ttl_seconds: int | None) -> datetime | None:
        if not ttl_seconds:
            return None
        return self._clock() + timedelta(seconds=ttl_seconds)

    def _live(self, key: str):
        now = self._clock()
        return and_(
            KeyValueEntry.key == key,
            or_(KeyValueEntry.expires_at.is_(None), KeyValueEntry.expires_at > now),
        )

    def _purge_expired(self, db: Session, key: str) -> None:
        db.execute(
            delete(KeyValueEntry).where(
                and_(
                    KeyValueEntry.key == key,
                    KeyValueEntry.expires_at.is_not(None),
                    KeyValueEntry.expires_at <= self._clock(),
                )
            )
        )

    def get(self, key: str) -> str | None:
        with self._session() as db:
            return db.scalar(select(KeyValueEntry.value).where(self._live(key)))

    def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        with self._session() as db:
            db.merge(KeyValueEntry(key=key, value=value, expires_at=self._expires_at(ttl_seconds)))
            db.commit()

    def delete(self, key: str) -> None:
        with self._session() as db:
            db.execute(delete(KeyValueEntry).where(KeyValueEntry.key == key))
            db.commit()

    def compare_and_set(
        self, key: str, expected: str | None, value: str, ttl_seconds: int | None = None
    ) -> bool:
        expires_at = self._expires_at(ttl_seconds)
        with self._session() as db:
            if expected is None:
                self._purge_expired(db, key)
                db.add(KeyValueEntry(key=key, value=value, expires_at=expires_at))
                try:
                    db.commit()
                except IntegrityError:
                    # Another writer holds the key.
                    db.rollback()
                    return False
                return True

            result = db.execute(
                update(KeyValueEntry)
                .where(and_(self._live(key), KeyValueEntry.value == expected))
                .values(value=value, expires_at=expires_at)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return result.rowcount == 1

    def ping(self) -> bool:
        with self._session() as db:
            db.execute(select(1))
        return True


def build_store(settings: Settings) -> KeyValueStore:
    backend = settings.store_backend
    if backend == "redis":
        logger.info("Using Redis key-value store")
        return RedisKeyValueStore.from_url(settings.redis_url)
    if backend == "sql":
        from salesmap_news.database import get_session_factory, init_db

        init_db()
        logger.info("Using SQL key-value store")
        return SqlKeyValueStore(get_session_factory())
    logger.warning("Using in-memory key-value store; state will not survive a restart")
    return MemoryKeyValueStore()
