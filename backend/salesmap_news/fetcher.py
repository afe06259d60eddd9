from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any, Protocol

from salesmap_news.config import Settings
from salesmap_news.normalizer import ItemNormalizer
from salesmap_news.query_builder import QueryBuilder, SearchQuery
from salesmap_news.schemas import SIGNAL_CATEGORIES, Article
from salesmap_news.search_client import CustomSearchClient, SearchResult
from salesmap_news.utils import utc_now

logger = logging.getLogger(__name__)

STRICT_CX_TAG = "strict-cx"


class SearchBackend(Protocol):
    strict_cx: str
    cx: str

    def search_with_fallback(self, query: SearchQuery, *, prefer_strict: bool = True) -> SearchResult: ...


class FirmFetcher:
    """Collects up to ``results_per_firm`` recent articles for one firm.

    Category queries run in priority order and stop as soon as the cap is
    met; a generic query fills whatever room is left. Provider errors are
    not caught here.
    """

    def __init__(
        self,
        client: SearchBackend,
        query_builder: QueryBuilder,
        normalizer: ItemNormalizer,
        *,
        results_per_firm: int = 3,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.client = client
        self.query_builder = query_builder
        self.normalizer = normalizer
        self.limit = max(1, results_per_firm)
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, client: SearchBackend | None = None) -> FirmFetcher:
        return cls(
            client or CustomSearchClient.from_settings(settings),
            QueryBuilder(settings),
            ItemNormalizer.from_settings(settings),
            results_per_firm=settings.news_results_per_firm,
        )

    def _normalize(self, items: list[dict[str, Any]], firm_name: str, cx_used: str | None) -> list[Article]:
        strict = bool(self.client.strict_cx) and cx_used == self.client.strict_cx and self.client.strict_cx != self.client.cx
        now = self._clock()
        articles = []
        for item in items:
            article = self.normalizer.normalize(item, firm_name, now=now)
            if article is None:
                continue
            if strict and STRICT_CX_TAG not in article.tags:
                article.tags.append(STRICT_CX_TAG)
            articles.append(article)
        return articles

    def _collect(self, query: SearchQuery, firm_name: str, collected: dict[str, Article], *, prefer_strict: bool) -> None:
        result = self.client.search_with_fallback(query, prefer_strict=prefer_strict)
        for article in self._normalize(result.items, firm_name, result.cx_used):
            if len(collected) >= self.limit:
                return
            collected.setdefault(article.id, article)

    def fetch_for_firm(self, firm_name: str) -> list[Article]:
        collected: dict[str, Article] = {}

        for category in SIGNAL_CATEGORIES:
            self._collect(self.query_builder.for_signal(firm_name, category), firm_name, collected, prefer_strict=True)
            if len(collected) >= self.limit:
                break

        if len(collected) < self.limit:
            self._collect(self.query_builder.fallback(firm_name), firm_name, collected, prefer_strict=False)

        logger.debug("Fetched firm news", extra={"firm": firm_name, "count": len(collected)})
        return list(collected.values())[: self.limit]
