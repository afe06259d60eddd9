from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from functools import lru_cache

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from salesmap_news.config import ConfigurationError, get_settings, validate_news_config
from salesmap_news.engine import NewsJobEngine
from salesmap_news.fetcher import FirmFetcher
from salesmap_news.firm_loader import load_firms_from_csv
from salesmap_news.news_storage import NewsStorage
from salesmap_news.rate_limiter import PacingWatermark, RateLimiter
from salesmap_news.responses import render_csv
from salesmap_news.scheduler import NewsRefreshScheduler
from salesmap_news.schemas import HealthResponse, NewsResponse
from salesmap_news.search_client import CustomSearchClient
from salesmap_news.store import KeyValueStore, StoreUnavailableError, build_store

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

TRUTHY_FLAGS = {"1", "true"}

# Shared by every provider call this process makes.
PACING_WATERMARK = PacingWatermark()

scheduler: NewsRefreshScheduler | None = None


@lru_cache(maxsize=1)
def get_store() -> KeyValueStore:
    return build_store(get_settings())


@lru_cache(maxsize=1)
def get_firms() -> tuple[str, ...]:
    firms = load_firms_from_csv(get_settings().firms_csv_path)
    logger.info("Loaded firm list", extra={"firms": len(firms)})
    return tuple(firms)


@lru_cache(maxsize=1)
def get_search_client() -> CustomSearchClient:
    settings = get_settings()
    return CustomSearchClient.from_settings(
        settings, rate_limiter=RateLimiter.from_settings(settings, watermark=PACING_WATERMARK)
    )


def get_engine() -> NewsJobEngine:
    settings = get_settings()
    return NewsJobEngine(
        settings,
        NewsStorage(get_store(), settings.store_key_prefix),
        FirmFetcher.from_settings(settings, client=get_search_client()),
        list(get_firms()),
    )


def _flag(value: str | None) -> bool:
    return (value or "").strip().lower() in TRUTHY_FLAGS


@asynccontextmanager
async def lifespan(app: FastAPI):
    global scheduler

    settings = get_settings()
    get_store()
    get_firms()

    scheduler = NewsRefreshScheduler(settings, get_engine)
    scheduler.start()

    yield

    if scheduler is not None:
        scheduler.shutdown()


app = FastAPI(title="World Sales Map News API", lifespan=lifespan)
settings = get_settings()

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=False,
    allow_methods=["GET"],
    allow_headers=["*"],
)


@app.get("/health", response_model=HealthResponse)
def health():
    try:
        ok = get_store().ping()
    except StoreUnavailableError:
        logger.exception("Store health check failed")
        ok = False
    return HealthResponse(
        status="ok" if ok else "degraded",
        store=settings.store_backend,
        time=datetime.now(timezone.utc),
    )


@app.get(f"{settings.api_prefix}/news", response_model=NewsResponse)
def get_news(
    refresh: str | None = Query(default=None, description="Run one refresh batch (1/true)"),
    cancel: str | None = Query(default=None, description="Cancel the running refresh job (1/true)"),
    clear: str | None = Query(default=None, description="Cancel and wipe the stored snapshot (1/true)"),
    format_: str = Query(default="json", alias="format", pattern="^(json|csv)$"),
    engine: NewsJobEngine = Depends(get_engine),
):
    try:
        if _flag(clear):
            response = engine.clear()
        elif _flag(cancel):
            response = engine.cancel()
        elif _flag(refresh):
            validate_news_config(settings)
            response = engine.fetch_news(force_refresh=True)
        else:
            response = engine.fetch_news(force_refresh=False)
    except ConfigurationError as exc:
        logger.error("News refresh rejected: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except StoreUnavailableError as exc:
        logger.error("News store unavailable: %s", exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    if format_ == "csv":
        return Response(
            content=render_csv(response),
            media_type="text/csv",
            headers={"Content-Disposition": 'attachment; filename="news.csv"'},
        )
    return response


def serve() -> None:
    import uvicorn

    uvicorn.run("salesmap_news.main:app", host=settings.backend_host, port=settings.backend_port)
