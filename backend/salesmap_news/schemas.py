from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

JobStatus = Literal["idle", "running", "complete", "cancelled", "error"]

SIGNAL_CATEGORIES: tuple[str, ...] = ("fund", "deal", "hire", "promotion")
GENERAL_TAG = "general"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Article(CamelModel):
    id: str
    firm: str
    headline: str = ""
    summary: str = ""
    source: str = ""
    url: str = ""
    published_at: datetime
    tags: list[str] = Field(default_factory=list)


class ErrorEntry(CamelModel):
    firm: str
    message: str
    at: datetime


class Snapshot(CamelModel):
    items: list[Article] = Field(default_factory=list)
    last_updated: datetime | None = None
    errors: list[ErrorEntry] | None = None
    job_id: str | None = None
    job_status: JobStatus | None = None


class JobState(CamelModel):
    id: str | None = None
    total_firms: int = Field(default=0, ge=0)
    next_index: int = Field(default=0, ge=0)
    processed: int = Field(default=0, ge=0)
    batch_size: int = Field(default=1, ge=1)
    started_at: datetime | None = None
    last_batch_at: datetime | None = None
    completed_at: datetime | None = None
    cancel_requested: bool = False
    generation: int = 0
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return (
            not self.id
            or self.completed_at is not None
            or self.cancel_requested
            or self.next_index >= self.total_firms
        )


class JobInfo(CamelModel):
    id: str | None
    total_firms: int
    processed_firms: int
    next_index: int
    batch_size: int
    started_at: datetime | None
    last_batch_at: datetime | None
    completed_at: datetime | None
    cancel_requested: bool
    percent_complete: int | None


class BatchRange(CamelModel):
    start: int
    end: int


class BatchDelta(CamelModel):
    firms: list[str]
    new_items: list[str]
    errors: list[ErrorEntry]
    range: BatchRange
    cancelled: bool = False
    superseded: bool = False


class NewsResponse(CamelModel):
    items: list[Article]
    last_updated: datetime | None
    errors: list[ErrorEntry] | None
    status: JobStatus
    job: JobInfo | None
    batch: BatchDelta | None


class HealthResponse(BaseModel):
    status: str
    store: str
    time: datetime
