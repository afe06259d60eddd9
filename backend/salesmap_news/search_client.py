from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import requests

from salesmap_news.config import ConfigurationError, Settings
from salesmap_news.query_builder import SearchQuery
from salesmap_news.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

REQUEST_HEADERS = {
    "User-Agent": "salesmap-news/0.1 (+local)",
    "Accept": "application/json",
}


class SearchProviderError(RuntimeError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass(slots=True)
class SearchResult:
    items: list[dict[str, Any]]
    cx_used: str | None


def _error_message(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return f"HTTP {response.status_code}"


class CustomSearchClient:
    """Google Custom Search JSON API client; every request is paced by the rate limiter."""

    def __init__(
        self,
        *,
        api_key: str,
        cx: str,
        strict_cx: str = "",
        endpoint: str = "https://www.googleapis.com/customsearch/v1",
        timeout_seconds: int = 20,
        rate_limiter: RateLimiter | None = None,
        session: requests.Session | None = None,
    ):
        self.api_key = api_key
        self.cx = cx
        self.strict_cx = strict_cx
        self.endpoint = endpoint
        self.timeout_seconds = timeout_seconds
        self.rate_limiter = rate_limiter or RateLimiter()
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings: Settings, rate_limiter: RateLimiter | None = None) -> CustomSearchClient:
        return cls(
            api_key=settings.google_cse_api_key,
            cx=settings.google_cse_id,
            strict_cx=settings.google_cse_id_strict,
            endpoint=settings.google_cse_endpoint,
            timeout_seconds=settings.request_timeout_seconds,
            rate_limiter=rate_limiter or RateLimiter.from_settings(settings),
        )

    def _request(self, params: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self.session.get(
                self.endpoint,
                params=params,
                timeout=self.timeout_seconds,
                headers=REQUEST_HEADERS,
            )
        except requests.RequestException as exc:
            raise SearchProviderError(f"Custom Search request failed: {exc}") from exc

        if not response.ok:
            raise SearchProviderError(_error_message(response), status_code=response.status_code)
        return response.json()

    def search(self, query: SearchQuery, cx: str) -> dict[str, Any]:
        if not self.api_key:
            raise ConfigurationError("Missing GOOGLE_CSE_API_KEY configuration")

        params = {"key": self.api_key, "cx": cx, **query.to_request_params()}
        try:
            return self.rate_limiter.run(lambda: self._request(params))
        except SearchProviderError as exc:
            # Some engines reject sort=date; retry once without it.
            if params.get("sort") and exc.status_code == 400 and "sort" in str(exc).lower():
                logger.info("Retrying Custom Search without sort parameter", extra={"cx": cx})
                unsorted = {key: value for key, value in params.items() if key != "sort"}
                return self.rate_limiter.run(lambda: self._request(unsorted))
            raise

    def search_with_fallback(self, query: SearchQuery, *, prefer_strict: bool = True) -> SearchResult:
        candidates: list[str] = []
        if prefer_strict and self.strict_cx:
            candidates.append(self.strict_cx)
        if self.cx and self.cx not in candidates:
            candidates.append(self.cx)
        if not candidates and self.strict_cx:
            candidates.append(self.strict_cx)

        if not candidates:
            raise ConfigurationError("Missing GOOGLE_CSE_ID configuration")

        for index, cx in enumerate(candidates):
            try:
                data = self.search(query, cx)
            except SearchProviderError as exc:
                if index == len(candidates) - 1:
                    raise
                logger.warning(
                    "Custom Search request failed; falling back to next engine",
                    extra={"cx": cx, "error": str(exc)},
                )
                continue

            items = data.get("items") if isinstance(data, dict) else None
            if isinstance(items, list) and items:
                return SearchResult(items=items, cx_used=cx)

        return SearchResult(items=[], cx_used=candidates[-1])
