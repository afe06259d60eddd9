from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from pydantic import BaseModel, ValidationError

from salesmap_news.schemas import JobState, Snapshot
from salesmap_news.store import KeyValueStore
from salesmap_news.utils import utc_now

logger = logging.getLogger(__name__)


class StaleJobStateError(RuntimeError):
    """Raised when a job checkpoint loses to a write from another invocation."""

    def __init__(self, job_id: str | None, expected: int | None, found: int | None):
        super().__init__(f"job {job_id} generation {expected} is stale (store has {found})")
        self.job_id = job_id
        self.expected = expected
        self.found = found


def _dump(model: BaseModel) -> str:
    return model.model_dump_json(by_alias=True)


class NewsStorage:
    """Durable snapshot and job-state records on top of a key-value store."""

    def __init__(
        self,
        store: KeyValueStore,
        key_prefix: str = "news",
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.snapshot_key = f"{key_prefix}:snapshot:v1"
        self.job_key = f"{key_prefix}:job:v1"
        self._clock = clock

    def _parse(self, raw: str | None, model: type[BaseModel]) -> BaseModel | None:
        if not raw:
            return None
        try:
            return model.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("Failed to parse stored news payload", extra={"model": model.__name__, "error": str(exc)})
            return None

    def load_snapshot(self) -> Snapshot | None:
        return self._parse(self.store.get(self.snapshot_key), Snapshot)

    def save_snapshot(self, snapshot: Snapshot, ttl_seconds: int | None = None) -> None:
        self.store.set(self.snapshot_key, _dump(snapshot), ttl_seconds)

    def clear_snapshot(self) -> None:
        self.store.delete(self.snapshot_key)

    def load_job_state(self) -> JobState | None:
        return self._parse(self.store.get(self.job_key), JobState)

    def save_job_state(
        self,
        state: JobState,
        ttl_seconds: int | None = None,
        *,
        expected_generation: int | None = None,
    ) -> JobState:
        """Persist ``state`` and return the stored copy.

        Without ``expected_generation`` the write is unconditional. With it,
        the write only lands if the stored record for the same job still has
        that generation; the stored copy then carries ``generation + 1``.
        """
        if expected_generation is None:
            payload = state.model_copy(update={"updated_at": self._clock()})
            self.store.set(self.job_key, _dump(payload), ttl_seconds)
            return payload

        raw = self.store.get(self.job_key)
        current = self._parse(raw, JobState)
        found = current.generation if current is not None and current.id == state.id else None
        if found != expected_generation:
            raise StaleJobStateError(state.id, expected_generation, found)

        payload = state.model_copy(
            update={"generation": expected_generation + 1, "updated_at": self._clock()}
        )
        if not self.store.compare_and_set(self.job_key, raw, _dump(payload), ttl_seconds):
            latest = self._parse(self.store.get(self.job_key), JobState)
            raise StaleJobStateError(state.id, expected_generation, latest.generation if latest else None)
        return payload

    def clear_job_state(self) -> None:
        self.store.delete(self.job_key)
