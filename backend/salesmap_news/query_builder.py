from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from salesmap_news.config import Settings
from salesmap_news.schemas import SIGNAL_CATEGORIES

FIRM_PLACEHOLDER = re.compile(r"<firm name>", re.IGNORECASE)
MAX_RESULTS_PER_QUERY = 10

SIGNAL_QUERY_PHRASES: dict[str, list[str]] = {
    "fund": [
        "final close",
        "first close",
        "raises fund",
        "closes fund",
        "fundraise",
        "fundraising",
        "hard cap",
        "capital raise",
    ],
    "deal": [
        "acquires",
        "acquisition",
        "agreement to acquire",
        "investment in",
        "buyout",
        "take-private",
        "merger",
    ],
    "hire": [
        "hires",
        "appoints",
        "joins",
        "recruits",
        "appointed",
    ],
    "promotion": [
        "promotes",
        "promoted to",
        "named partner",
        "named managing director",
        "elevates",
    ],
}


@dataclass(slots=True)
class SearchQuery:
    q: str
    exact_terms: str
    exclude_terms: str
    num: int
    date_restrict: str
    sort: str = ""
    gl: str = ""
    hl: str = ""
    lr: str = ""
    safe: str = ""
    category: str | None = None
    extra: dict[str, str] = field(default_factory=dict)

    def to_request_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {
            "q": self.q,
            "num": min(MAX_RESULTS_PER_QUERY, max(1, self.num)),
            "dateRestrict": self.date_restrict,
        }
        optional = {
            "exactTerms": self.exact_terms,
            "excludeTerms": self.exclude_terms,
            "sort": self.sort,
            "gl": self.gl,
            "hl": self.hl,
            "lr": self.lr,
            "safe": self.safe,
        }
        params.update({key: value for key, value in optional.items() if value})
        params.update(self.extra)
        return params


def _quote(term: str) -> str:
    return '"' + term.replace('"', "").strip() + '"'


def _site_term(site: str) -> str:
    site = site.strip()
    return site if site.lower().startswith("site:") else f"site:{site}"


class QueryBuilder:
    """Turns a firm name and signal category into Custom Search parameters."""

    def __init__(self, settings: Settings):
        self.template = settings.news_search_template
        self.num = min(MAX_RESULTS_PER_QUERY, max(1, settings.news_results_per_firm))
        self.date_restrict = settings.news_date_restrict
        self.sort = settings.news_sort
        self.gl = settings.news_gl
        self.hl = settings.news_hl
        self.lr = settings.news_lr
        self.safe = settings.news_safe

        allowlist = [_site_term(site) for site in settings.allowlist_sites_list]
        self.allowlist_suffix = f" ({' OR '.join(allowlist)})" if allowlist else ""
        self.blocked_suffix = "".join(f" -{_site_term(site)}" for site in settings.blocked_sites_list)
        self.exclude_terms = " ".join(_quote(term) for term in settings.exclude_terms_list)

    def _build(self, firm_name: str, q: str, category: str | None) -> SearchQuery:
        return SearchQuery(
            q=f"{q}{self.allowlist_suffix}{self.blocked_suffix}",
            exact_terms=firm_name,
            exclude_terms=self.exclude_terms,
            num=self.num,
            date_restrict=self.date_restrict,
            sort=self.sort,
            gl=self.gl,
            hl=self.hl,
            lr=self.lr,
            safe=self.safe,
            category=category,
        )

    def for_signal(self, firm_name: str, category: str) -> SearchQuery:
        phrases = SIGNAL_QUERY_PHRASES.get(category)
        if phrases is None:
            raise ValueError(f"Unknown signal category: {category}")
        alternation = " OR ".join(_quote(phrase) for phrase in phrases)
        return self._build(firm_name, f"{_quote(firm_name)} ({alternation})", category)

    def fallback(self, firm_name: str) -> SearchQuery:
        return self._build(firm_name, FIRM_PLACEHOLDER.sub(firm_name, self.template), None)

    def all_signal_queries(self, firm_name: str) -> list[SearchQuery]:
        return [self.for_signal(firm_name, category) for category in SIGNAL_CATEGORIES]
