from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any

from salesmap_news.config import Settings
from salesmap_news.schemas import GENERAL_TAG, Article
from salesmap_news.utils import canonicalize_url, clean_summary_text, parse_datetime, sha1_str, url_host, utc_now

SIGNAL_KEYWORDS: dict[str, list[str]] = {
    "fund": [
        "fund",
        "funds",
        "funding",
        "raise",
        "raises",
        "raised",
        "raising",
        "fundraise",
        "fundraising",
        "close",
        "closes",
        "closed",
        "closing",
        "capital raise",
    ],
    "deal": [
        "acquire",
        "acquires",
        "acquired",
        "acquisition",
        "deal",
        "merger",
        "merges",
        "merging",
        "investment",
        "invests",
        "invested",
        "backs",
        "take-private",
        "buyout",
    ],
    "hire": [
        "hire",
        "hires",
        "hired",
        "hiring",
        "appoints",
        "appointed",
        "appointing",
        "joins",
        "join",
        "joining",
        "named",
        "recruits",
        "recruited",
    ],
    "promotion": [
        "promote",
        "promotes",
        "promoted",
        "promotion",
        "promotions",
        "elevates",
        "elevated",
        "elevating",
        "named managing director",
        "named partner",
        "promoted to",
    ],
}

# Checked in order; the first parseable value wins.
STRUCTURED_DATE_TYPES = ("newsarticle", "article")
STRUCTURED_DATE_FIELDS = ("datepublished", "datemodified")
SOCIAL_DATE_META = (
    "article:published_time",
    "article:modified_time",
    "og:published_time",
    "og:updated_time",
    "twitter:published_time",
)
GENERIC_DATE_META = ("pubdate", "publishdate", "date", "dc.date", "dcterms.created")
SOURCE_META = ("og:site_name", "twitter:site", "application-name")


def build_news_id(firm_name: str, link: str, title: str) -> str:
    return "news_" + sha1_str(f"{firm_name}\x1f{canonicalize_url(link)}\x1f{title or ''}")[:16]


def _entries(pagemap: dict[str, Any], name: str) -> list[dict[str, Any]]:
    value = pagemap.get(name)
    if not isinstance(value, list):
        return []
    return [entry for entry in value if isinstance(entry, dict)]


def _date_candidates(pagemap: dict[str, Any]) -> Iterable[Any]:
    for name in STRUCTURED_DATE_TYPES:
        for entry in _entries(pagemap, name):
            for key in STRUCTURED_DATE_FIELDS:
                yield entry.get(key)

    metatags = _entries(pagemap, "metatags")
    for keys in (SOCIAL_DATE_META, GENERIC_DATE_META):
        for meta in metatags:
            for key in keys:
                yield meta.get(key)

    for entry in _entries(pagemap, "hnews"):
        metas = entry.get("metas")
        if isinstance(metas, list):
            for meta in metas:
                if isinstance(meta, dict):
                    yield meta.get("content")


def extract_published_at(item: dict[str, Any]) -> datetime | None:
    pagemap = item.get("pagemap") or {}
    if not isinstance(pagemap, dict):
        return None
    for candidate in _date_candidates(pagemap):
        parsed = parse_datetime(candidate)
        if parsed is not None:
            return parsed
    return None


def extract_source(item: dict[str, Any]) -> str:
    pagemap = item.get("pagemap") or {}
    if isinstance(pagemap, dict):
        for meta in _entries(pagemap, "metatags"):
            for key in SOURCE_META:
                candidate = meta.get(key)
                if candidate:
                    return str(candidate).lstrip("@")
    return str(item.get("displayLink") or "")


def derive_signal_tags(headline: str, summary: str, source: str) -> list[str]:
    text = " ".join([headline or "", summary or "", source or ""]).lower()
    tags = [
        signal
        for signal, keywords in SIGNAL_KEYWORDS.items()
        if any(keyword in text for keyword in keywords)
    ]
    return tags or [GENERAL_TAG]


def normalize_allowlist(sites: Iterable[str]) -> list[str]:
    domains = []
    for site in sites:
        value = site.strip().lower()
        if value.startswith("site:"):
            value = value[len("site:") :]
        if value:
            domains.append(value)
    return domains


def is_url_allowlisted(url: str, display_link: str | None, allowlist_domains: list[str]) -> bool:
    if not allowlist_domains:
        return True

    candidates = [url.lower(), url_host(url)]
    if display_link:
        candidates.append(str(display_link).lower())

    return any(domain in value for domain in allowlist_domains for value in candidates if value)


class ItemNormalizer:
    def __init__(self, *, recency_hours: int = 24, allowlist_sites: Iterable[str] = ()):
        self.recency_window = timedelta(hours=recency_hours)
        self.allowlist_domains = normalize_allowlist(allowlist_sites)

    @classmethod
    def from_settings(cls, settings: Settings) -> ItemNormalizer:
        return cls(recency_hours=settings.news_recency_hours, allowlist_sites=settings.allowlist_sites_list)

    def is_recent(self, published_at: datetime, now: datetime) -> bool:
        return now - published_at <= self.recency_window

    def normalize(self, item: dict[str, Any], firm_name: str, now: datetime | None = None) -> Article | None:
        link = str(item.get("link") or "").strip()
        if not link:
            return None

        if not is_url_allowlisted(link, item.get("displayLink"), self.allowlist_domains):
            return None

        now = now or utc_now()
        published_at = extract_published_at(item) or now
        if not self.is_recent(published_at, now):
            return None

        title = str(item.get("title") or "")
        headline = clean_summary_text(title)
        summary = clean_summary_text(item.get("snippet"))
        source = extract_source(item)

        return Article(
            id=build_news_id(firm_name, link, title),
            firm=firm_name,
            headline=headline,
            summary=summary,
            source=source,
            url=link,
            published_at=published_at,
            tags=derive_signal_tags(headline, summary, source),
        )
