from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import redis
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from salesmap_news.database import Base, init_db
from salesmap_news.news_storage import NewsStorage, StaleJobStateError
from salesmap_news.schemas import JobState, Snapshot
from salesmap_news.store import MemoryKeyValueStore, RedisKeyValueStore, SqlKeyValueStore, StoreUnavailableError


class MutableClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def _sql_store(clock: MutableClock | None = None) -> SqlKeyValueStore:
    engine = create_engine("sqlite:///:memory:")
    init_db(engine)
    session_factory = sessionmaker(autoflush=False, autocommit=False, bind=engine)
    if clock is None:
        return SqlKeyValueStore(session_factory)
    return SqlKeyValueStore(session_factory, clock=clock)


def test_memory_store_expires_entries():
    clock = MutableClock(100.0)
    store = MemoryKeyValueStore(clock=clock)

    store.set("a", "1", ttl_seconds=10)
    store.set("b", "2")
    clock.now = 111.0

    assert store.get("a") is None
    assert store.get("b") == "2"


def test_memory_store_compare_and_set():
    store = MemoryKeyValueStore()

    assert store.compare_and_set("k", None, "v1") is True
    assert store.compare_and_set("k", None, "v2") is False
    assert store.compare_and_set("k", "v1", "v2") is True
    assert store.compare_and_set("k", "v1", "v3") is False
    assert store.get("k") == "v2"


def test_sql_store_round_trip_and_delete():
    store = _sql_store()

    assert store.get("missing") is None
    store.set("k", "v1", ttl_seconds=60)
    store.set("k", "v2", ttl_seconds=60)
    assert store.get("k") == "v2"

    store.delete("k")
    assert store.get("k") is None
    assert store.ping() is True


def test_sql_store_treats_expired_rows_as_absent():
    clock = MutableClock(datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc))
    store = _sql_store(clock)

    store.set("k", "v", ttl_seconds=60)
    clock.now += timedelta(seconds=61)

    assert store.get("k") is None
    assert store.compare_and_set("k", None, "fresh", ttl_seconds=60) is True
    assert store.get("k") == "fresh"


def test_sql_store_compare_and_set():
    store = _sql_store()

    assert store.compare_and_set("k", None, "v1") is True
    assert store.compare_and_set("k", None, "other") is False
    assert store.compare_and_set("k", "v1", "v2") is True
    assert store.compare_and_set("k", "v1", "v3") is False
    assert store.get("k") == "v2"


def test_news_storage_round_trips_snapshot_and_job():
    storage = NewsStorage(MemoryKeyValueStore(), key_prefix="test")

    storage.save_snapshot(Snapshot(job_id="job_1", job_status="running"), ttl_seconds=60)
    saved = storage.save_job_state(JobState(id="job_1", total_firms=3, batch_size=2), ttl_seconds=60)

    assert storage.load_snapshot().job_status == "running"
    loaded = storage.load_job_state()
    assert loaded.id == "job_1"
    assert loaded.updated_at == saved.updated_at

    storage.clear_job_state()
    assert storage.load_job_state() is None


def test_news_storage_uses_versioned_camel_case_records():
    store = MemoryKeyValueStore()
    storage = NewsStorage(store)

    storage.save_job_state(JobState(id="job_1", total_firms=3, next_index=1))

    raw = store.get("news:job:v1")
    assert '"totalFirms":3' in raw
    assert '"nextIndex":1' in raw


def test_corrupt_payload_reads_as_missing():
    store = MemoryKeyValueStore()
    store.set("news:snapshot:v1", "{not json")

    assert NewsStorage(store).load_snapshot() is None


def test_generation_check_rejects_stale_checkpoint():
    storage = NewsStorage(MemoryKeyValueStore())
    storage.save_job_state(JobState(id="job_1", total_firms=5))

    first = storage.save_job_state(JobState(id="job_1", total_firms=5, next_index=2), expected_generation=0)
    assert first.generation == 1

    with pytest.raises(StaleJobStateError):
        storage.save_job_state(JobState(id="job_1", total_firms=5, next_index=2), expected_generation=0)

    assert storage.load_job_state().next_index == 2


def test_generation_check_rejects_replaced_job():
    storage = NewsStorage(MemoryKeyValueStore())
    storage.save_job_state(JobState(id="job_2", total_firms=5))

    with pytest.raises(StaleJobStateError):
        storage.save_job_state(JobState(id="job_1", total_firms=5, next_index=2), expected_generation=0)


def test_generation_check_works_on_sql_store():
    storage = NewsStorage(_sql_store())
    storage.save_job_state(JobState(id="job_1", total_firms=5))

    saved = storage.save_job_state(JobState(id="job_1", total_firms=5, next_index=5), expected_generation=0)

    assert saved.generation == 1
    assert storage.load_job_state().next_index == 5


def test_sql_metadata_contains_kv_table():
    assert "kv_entries" in Base.metadata.tables


class FakeRedisPipeline:
    def __init__(self, client: FakeRedis):
        self.client = client
        self.queued: list[tuple[str, str, int | None]] = []
        self.buffering = False

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.queued.clear()
        return False

    def watch(self, key: str) -> None:
        self.client.check()

    def unwatch(self) -> None:
        pass

    def get(self, key: str):
        return self.client.get(key)

    def multi(self) -> None:
        self.buffering = True

    def set(self, key: str, value: str, ex: int | None = None) -> None:
        self.queued.append((key, value, ex))

    def execute(self) -> list[bool]:
        if self.client.conflict_on_execute:
            raise redis.WatchError("Watched variable changed.")
        for key, value, ex in self.queued:
            self.client.set(key, value, ex=ex)
        return [True] * len(self.queued)


class FakeRedis:
    """Byte-returning stand-in for ``redis.Redis`` without ``decode_responses``."""

    def __init__(self):
        self.data: dict[str, bytes] = {}
        self.ttls: dict[str, int | None] = {}
        self.fail = False
        self.conflict_on_execute = False

    def check(self) -> None:
        if self.fail:
            raise redis.ConnectionError("Error 111 connecting to localhost:6379. Connection refused.")

    def get(self, key: str):
        self.check()
        return self.data.get(key)

    def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self.check()
        self.data[key] = value.encode("utf-8")
        self.ttls[key] = ex
        return True

    def delete(self, key: str) -> int:
        self.check()
        return 1 if self.data.pop(key, None) is not None else 0

    def ping(self) -> bool:
        self.check()
        return True

    def pipeline(self) -> FakeRedisPipeline:
        return FakeRedisPipeline(self)


def test_redis_store_round_trip_passes_ttl_and_decodes_bytes():
    client = FakeRedis()
    store = RedisKeyValueStore(client)

    store.set("news:snapshot:v1", "payload", ttl_seconds=30)
    store.set("news:job:v1", "job")

    assert store.get("news:snapshot:v1") == "payload"
    assert client.ttls == {"news:snapshot:v1": 30, "news:job:v1": None}

    store.delete("news:snapshot:v1")
    assert store.get("news:snapshot:v1") is None
    assert store.ping() is True


def test_redis_store_compare_and_set():
    client = FakeRedis()
    store = RedisKeyValueStore(client)

    assert store.compare_and_set("k", None, "a") is True
    assert store.compare_and_set("k", None, "b") is False
    assert store.compare_and_set("k", "stale", "b") is False
    assert store.get("k") == "a"
    assert store.compare_and_set("k", "a", "b", ttl_seconds=5) is True
    assert store.get("k") == "b"
    assert client.ttls["k"] == 5


def test_redis_store_compare_and_set_loses_to_concurrent_write():
    client = FakeRedis()
    store = RedisKeyValueStore(client)
    store.set("k", "a")
    client.conflict_on_execute = True

    assert store.compare_and_set("k", "a", "b") is False
    assert store.get("k") == "a"


def test_redis_store_wraps_connection_errors():
    client = FakeRedis()
    store = RedisKeyValueStore(client)
    client.fail = True

    with pytest.raises(StoreUnavailableError):
        store.get("k")
    with pytest.raises(StoreUnavailableError):
        store.set("k", "v", ttl_seconds=10)
    with pytest.raises(StoreUnavailableError):
        store.delete("k")
    with pytest.raises(StoreUnavailableError):
        store.compare_and_set("k", None, "v")
    with pytest.raises(StoreUnavailableError):
        store.ping()


def test_generation_check_works_on_redis_store():
    storage = NewsStorage(RedisKeyValueStore(FakeRedis()))
    storage.save_job_state(JobState(id="job_1", total_firms=5))

    saved = storage.save_job_state(JobState(id="job_1", total_firms=5, next_index=5), expected_generation=0)

    assert saved.generation == 1
    with pytest.raises(StaleJobStateError):
        storage.save_job_state(JobState(id="job_1", total_firms=5, next_index=5), expected_generation=0)
