"""Resumable, batch-at-a-time news refresh.

Each call re-reads the snapshot and job records from the store, does at most
one batch of firms and writes both records back before returning. Nothing is
kept in memory between calls, so a process can be torn down between any two
batches and the next call resumes from the last persisted cursor.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Protocol

from salesmap_news.config import ConfigurationError, Settings
from salesmap_news.news_storage import NewsStorage, StaleJobStateError
from salesmap_news.responses import build_response
from salesmap_news.schemas import (
    Article,
    BatchDelta,
    BatchRange,
    ErrorEntry,
    JobState,
    JobStatus,
    NewsResponse,
    Snapshot,
)
from salesmap_news.utils import utc_now

logger = logging.getLogger(__name__)

DEFAULT_ERROR_MESSAGE = "Failed to fetch news"


class ArticleFetcher(Protocol):
    def fetch_for_firm(self, firm_name: str) -> list[Article]: ...


@dataclass
class BatchResult:
    items: list[Article] = field(default_factory=list)
    errors: list[ErrorEntry] = field(default_factory=list)
    processed: int = 0
    cancelled: bool = False


def enforce_per_firm_limit(items: list[Article], limit: int) -> list[Article]:
    """Keep the first ``limit`` items per firm; ``items`` must already be newest first."""
    limit = max(1, limit)
    counts: dict[str, int] = {}
    result = []
    for item in items:
        firm = item.firm or "unknown"
        current = counts.get(firm, 0)
        if current >= limit:
            continue
        counts[firm] = current + 1
        result.append(item)
    return result


def merge_snapshot_items(existing: list[Article], incoming: list[Article], per_firm_limit: int) -> list[Article]:
    merged: dict[str, Article] = {item.id: item for item in existing if item.id}
    for item in incoming:
        if not item.id:
            continue
        previous = merged.get(item.id)
        if previous is not None:
            tags = list(previous.tags) + [tag for tag in item.tags if tag not in previous.tags]
            item = item.model_copy(update={"tags": tags})
        merged[item.id] = item

    ordered = sorted(merged.values(), key=lambda item: item.published_at, reverse=True)
    return enforce_per_firm_limit(ordered, per_firm_limit)


def merge_errors(
    existing: list[ErrorEntry] | None, incoming: list[ErrorEntry], max_entries: int
) -> list[ErrorEntry] | None:
    combined = list(existing or []) + list(incoming)
    if not combined:
        return None
    return combined[-max_entries:]


def derive_status(snapshot: Snapshot | None, job: JobState | None) -> JobStatus:
    if job is not None:
        if job.cancel_requested:
            return "cancelled"
        if job.completed_at is not None or job.next_index >= job.total_firms:
            return "complete"
        return "running"
    if snapshot is not None and snapshot.job_status:
        return snapshot.job_status
    return "idle"


def new_job_id(now: datetime) -> str:
    return f"job_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:6]}"


class NewsJobEngine:
    def __init__(
        self,
        settings: Settings,
        storage: NewsStorage,
        fetcher: ArticleFetcher,
        firms: list[str],
        *,
        clock: Callable[[], datetime] = utc_now,
        job_id_factory: Callable[[datetime], str] = new_job_id,
    ):
        self.storage = storage
        self.fetcher = fetcher
        self.firms = list(firms)
        self.batch_size = max(1, settings.news_firms_per_batch)
        self.per_firm_limit = max(1, settings.news_results_per_firm)
        self.snapshot_ttl = settings.news_snapshot_ttl_seconds
        self.job_ttl = settings.job_ttl_seconds
        self.cooldown = timedelta(seconds=settings.news_refresh_cooldown_seconds)
        self.max_error_entries = settings.news_max_error_entries
        self._clock = clock
        self._job_id_factory = job_id_factory

    def _respond(
        self,
        snapshot: Snapshot | None,
        job: JobState | None,
        status: JobStatus,
        batch: BatchDelta | None = None,
    ) -> NewsResponse:
        return build_response(snapshot, job, status, batch, default_total_firms=len(self.firms))

    def _is_snapshot_fresh(self, snapshot: Snapshot | None, now: datetime) -> bool:
        if not self.cooldown or snapshot is None or snapshot.last_updated is None:
            return False
        return now - snapshot.last_updated < self.cooldown

    def _needs_new_job(self, job: JobState | None) -> bool:
        # A firm list that changed size since the job started cannot be resumed by index.
        return job is None or job.is_terminal or job.total_firms != len(self.firms)

    def _snapshot_was_cleared(self, job_id: str | None) -> bool:
        snapshot = self.storage.load_snapshot()
        if snapshot is None:
            return True
        return snapshot.job_status == "idle" or snapshot.job_id != job_id

    def is_cancellation_requested(self, job_id: str | None) -> bool:
        if not job_id:
            return False
        state = self.storage.load_job_state()
        return state is not None and state.id == job_id and state.cancel_requested

    def fetch_news(self, force_refresh: bool = False) -> NewsResponse:
        snapshot = self.storage.load_snapshot()
        job = self.storage.load_job_state()

        if not force_refresh:
            return self._respond(snapshot, job, derive_status(snapshot, job))

        now = self._clock()
        if self._is_snapshot_fresh(snapshot, now) and (
            job is None or job.completed_at is not None or job.cancel_requested
        ):
            logger.info("Snapshot is within refresh cooldown; skipping refresh")
            fresh = snapshot.model_copy(update={"job_status": "complete"})
            return self._respond(fresh, job, "complete")

        base_items = snapshot.items if snapshot is not None else []
        base_errors = snapshot.errors if snapshot is not None else None

        if self._needs_new_job(job):
            job, snapshot = self._start_job(snapshot, now)
            base_errors = None

        if job.next_index >= job.total_firms:
            return self._complete_job(job, base_items, base_errors, now)

        if self.is_cancellation_requested(job.id):
            return self._cancel_before_batch(job, base_items, base_errors, now)

        return self._run_batch_step(job, base_items, base_errors, now)

    def _start_job(self, snapshot: Snapshot | None, now: datetime) -> tuple[JobState, Snapshot]:
        self.storage.clear_job_state()
        job = JobState(
            id=self._job_id_factory(now),
            total_firms=len(self.firms),
            next_index=0,
            processed=0,
            batch_size=self.batch_size,
            started_at=now,
        )
        job = self.storage.save_job_state(job, self.job_ttl)

        # New run, new error budget; existing items stay as the merge base.
        initial = Snapshot(
            items=snapshot.items if snapshot is not None else [],
            last_updated=snapshot.last_updated if snapshot is not None else None,
            errors=None,
            job_id=job.id,
            job_status="running",
        )
        self.storage.save_snapshot(initial, self.snapshot_ttl)
        logger.info("Started news refresh job", extra={"job_id": job.id, "total_firms": job.total_firms})
        return job, initial

    def _complete_job(
        self, job: JobState, base_items: list[Article], base_errors: list[ErrorEntry] | None, now: datetime
    ) -> NewsResponse:
        job = job.model_copy(update={"completed_at": job.completed_at or now})
        job = self.storage.save_job_state(job, self.job_ttl)

        final = self.storage.load_snapshot() or Snapshot(items=base_items, errors=base_errors)
        final = final.model_copy(
            update={
                "job_id": job.id,
                "job_status": "complete",
                "last_updated": final.last_updated or job.completed_at,
            }
        )
        self.storage.save_snapshot(final, self.snapshot_ttl)
        return self._respond(final, job, "complete")

    def _cancel_before_batch(
        self, job: JobState, base_items: list[Article], base_errors: list[ErrorEntry] | None, now: datetime
    ) -> NewsResponse:
        job = job.model_copy(update={"cancel_requested": True, "completed_at": job.completed_at or now})
        self.storage.save_job_state(job, self.job_ttl)

        cancelled = self.storage.load_snapshot() or Snapshot(items=base_items, errors=base_errors)
        cancelled = cancelled.model_copy(
            update={"job_status": "cancelled", "last_updated": cancelled.last_updated or job.completed_at}
        )
        self.storage.save_snapshot(cancelled, self.snapshot_ttl)
        self.storage.clear_job_state()
        logger.info("News refresh job cancelled before batch", extra={"job_id": job.id})
        return self._respond(cancelled, job, "cancelled")

    def run_batch(self, firms: list[str], job_id: str | None) -> BatchResult:
        result = BatchResult()
        for firm in firms:
            if self.is_cancellation_requested(job_id):
                result.cancelled = True
                break

            try:
                result.items.extend(self.fetcher.fetch_for_firm(firm))
            except ConfigurationError:
                raise
            except Exception as exc:
                message = str(exc) or DEFAULT_ERROR_MESSAGE
                logger.warning("News fetch failed for firm", extra={"firm": firm, "error": message})
                result.errors.append(ErrorEntry(firm=firm, message=message, at=self._clock()))

            result.processed += 1
        return result

    def _run_batch_step(
        self, job: JobState, base_items: list[Article], base_errors: list[ErrorEntry] | None, now: datetime
    ) -> NewsResponse:
        start = job.next_index
        end = min(job.total_firms, start + self.batch_size)
        firms = self.firms[start:end]
        read_generation = job.generation

        logger.info("Running news batch", extra={"job_id": job.id, "start": start, "end": end})
        result = self.run_batch(firms, job.id)

        current = self.storage.load_snapshot() or Snapshot(items=base_items, errors=base_errors)
        existing_ids = {item.id for item in current.items}
        next_index = start + result.processed
        cancelled = result.cancelled or self.is_cancellation_requested(job.id)

        job = job.model_copy(
            update={
                "next_index": next_index,
                "processed": next_index,
                "batch_size": self.batch_size,
                "last_batch_at": now,
            }
        )
        batch = BatchDelta(
            firms=firms[: result.processed],
            new_items=list(dict.fromkeys(item.id for item in result.items if item.id not in existing_ids)),
            errors=result.errors,
            range=BatchRange(start=start, end=next_index),
            cancelled=cancelled,
        )

        status: JobStatus = "running"
        if cancelled:
            status = "cancelled"
            job = job.model_copy(update={"cancel_requested": True, "completed_at": job.completed_at or now})
        elif next_index >= job.total_firms:
            status = "complete"
            job = job.model_copy(update={"completed_at": now})

        if cancelled and self._snapshot_was_cleared(job.id):
            self.storage.clear_job_state()
            logger.info("News snapshot cleared during batch; discarding batch items", extra={"job_id": job.id})
            return self._respond(self.storage.load_snapshot(), job, status, batch)

        updated = current.model_copy(
            update={
                "items": merge_snapshot_items(current.items, result.items, self.per_firm_limit),
                "errors": merge_errors(current.errors, result.errors, self.max_error_entries),
                "last_updated": now,
                "job_id": job.id,
                "job_status": status,
            }
        )
        self.storage.save_snapshot(updated, self.snapshot_ttl)

        if cancelled:
            # Terminal either way, so the cancelling writer's generation does not matter here.
            job = self.storage.save_job_state(job, self.job_ttl)
            self.storage.clear_job_state()
            logger.info("News refresh job cancelled", extra={"job_id": job.id, "next_index": next_index})
            return self._respond(updated, job, status, batch)

        try:
            job = self.storage.save_job_state(job, self.job_ttl, expected_generation=read_generation)
        except StaleJobStateError as exc:
            logger.warning(
                "News job checkpoint superseded by another invocation",
                extra={"job_id": job.id, "error": str(exc)},
            )
            winner = self.storage.load_job_state()
            batch.superseded = True
            return self._respond(updated, winner, derive_status(updated, winner), batch)

        logger.info(
            "News batch complete",
            extra={
                "job_id": job.id,
                "next_index": next_index,
                "total_firms": job.total_firms,
                "new_items": len(batch.new_items),
                "errors": len(result.errors),
            },
        )
        return self._respond(updated, job, status, batch)

    def cancel(self) -> NewsResponse:
        now = self._clock()
        snapshot = self.storage.load_snapshot() or Snapshot()
        job = self.storage.load_job_state()

        if job is not None and not (job.cancel_requested and job.completed_at is not None):
            job = job.model_copy(
                update={
                    "cancel_requested": True,
                    "completed_at": job.completed_at or now,
                    # Invalidates any checkpoint an in-flight batch is about to write.
                    "generation": job.generation + 1,
                }
            )
            job = self.storage.save_job_state(job, self.job_ttl)
            logger.info("News refresh job cancel requested", extra={"job_id": job.id})

        snapshot = snapshot.model_copy(
            update={"job_status": "cancelled", "last_updated": snapshot.last_updated or now}
        )
        self.storage.save_snapshot(snapshot, self.snapshot_ttl)
        return self._respond(snapshot, job, "cancelled")

    def clear(self) -> NewsResponse:
        self.cancel()
        job = self.storage.load_job_state()

        empty = Snapshot(items=[], last_updated=None, errors=None, job_status="idle")
        self.storage.save_snapshot(empty, self.snapshot_ttl)
        logger.info("News snapshot cleared")

        status: JobStatus = "cancelled" if job is not None and job.cancel_requested else "idle"
        return self._respond(empty, job, status)
