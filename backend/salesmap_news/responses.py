from __future__ import annotations

import csv
import io
import math

from salesmap_news.schemas import Article, BatchDelta, JobInfo, JobState, JobStatus, NewsResponse, Snapshot
from salesmap_news.utils import isoformat

CSV_HEADER = ["Firm", "Headline", "URL", "Source", "PublishedAt", "Summary", "Tags"]


def sort_items(items: list[Article]) -> list[Article]:
    return sorted(items, key=lambda item: item.published_at, reverse=True)


def percent_complete(processed: int, total: int) -> int | None:
    if total <= 0:
        return None
    return max(0, min(100, math.floor(100 * processed / total + 0.5)))


def build_job_info(job: JobState, default_total_firms: int = 0) -> JobInfo:
    total = job.total_firms or default_total_firms
    processed = job.processed or job.next_index
    return JobInfo(
        id=job.id,
        total_firms=total,
        processed_firms=processed,
        next_index=job.next_index,
        batch_size=job.batch_size,
        started_at=job.started_at,
        last_batch_at=job.last_batch_at,
        completed_at=job.completed_at,
        cancel_requested=job.cancel_requested,
        percent_complete=percent_complete(processed, total),
    )


def build_response(
    snapshot: Snapshot | None,
    job: JobState | None,
    status: JobStatus,
    batch: BatchDelta | None = None,
    *,
    default_total_firms: int = 0,
) -> NewsResponse:
    snapshot = snapshot or Snapshot()
    return NewsResponse(
        items=sort_items(snapshot.items),
        last_updated=snapshot.last_updated,
        errors=snapshot.errors or None,
        status=status,
        job=build_job_info(job, default_total_firms) if job is not None else None,
        batch=batch,
    )


def render_csv(response: NewsResponse) -> str:
    buffer = io.StringIO()
    buffer.write(",".join(CSV_HEADER) + "\n")
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    for item in response.items:
        writer.writerow(
            [
                item.firm,
                item.headline,
                item.url,
                item.source,
                isoformat(item.published_at) or "",
                item.summary,
                ";".join(item.tags),
            ]
        )
    return buffer.getvalue()
