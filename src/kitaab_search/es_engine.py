"""Elasticsearch access layer for the verse corpus.

The corpus stores one document per (work, chapter, verse, translator).
VerseEngine collapses those rows into unique verse entries, either by
paging raw rows (row-window strategy) or by paging the buckets of a
composite-key aggregation (composite strategy).
"""

from __future__ import annotations

import logging
import threading
from typing import Any

from elasticsearch import ApiError, Elasticsearch, TransportError

from kitaab_search.aggregation import (
    aggregate_rows,
    composite_aggs,
    highlight_dsl,
    page_slice,
    sort_by_position,
    sort_by_relevance,
    verses_from_response,
)
from kitaab_search.config import SearchConfig, Strategy
from kitaab_search.exceptions import IndexUnavailableError, InvalidPaginationError
from kitaab_search.models import AggregatedVerse, SearchPage, VerseRow, WorkType
from kitaab_search.query import ComposedQuery, compose_query

logger = logging.getLogger(__name__)

ROW_SORT = [
    {"_score": {"order": "desc"}},
    {"chapter": {"order": "asc"}},
    {"verse": {"order": "asc"}},
]


def build_client(config: SearchConfig) -> Elasticsearch:
    """Create an Elasticsearch client from config (no network I/O)."""
    kwargs: dict[str, Any] = {
        "verify_certs": config.verify_certs,
        "request_timeout": config.request_timeout,
    }
    if config.api_key:
        kwargs["api_key"] = config.api_key
    elif config.username:
        kwargs["basic_auth"] = (config.username, config.password or "")
    return Elasticsearch(config.url, **kwargs)


def _total_hits(hits: dict[str, Any]) -> int:
    total = hits.get("total", 0)
    if isinstance(total, dict):
        return int(total.get("value", 0))
    return int(total or 0)


def validate_pagination(page: int, size: int) -> None:
    if page < 1:
        raise InvalidPaginationError(f"page must be >= 1, got {page}")
    if size < 1:
        raise InvalidPaginationError(f"size must be >= 1, got {size}")


class VerseEngine:
    """Searches, aggregates and pages verses from the corpus index.

    ``client`` defaults to a real Elasticsearch client built from
    ``config``; tests pass an in-memory fake with the same ``search``
    signature.
    """

    def __init__(self, config: SearchConfig | None = None, client: Any = None) -> None:
        self.config = config or SearchConfig()
        self._client = client
        self._client_lock = threading.Lock()

    @property
    def client(self) -> Any:
        # Gap-filling reads this from several worker threads
        with self._client_lock:
            if self._client is None:
                logger.info(
                    "Connecting to %s (index %s)", self.config.url, self.config.index
                )
                self._client = build_client(self.config)
        return self._client

    def _search(self, **kwargs: Any) -> dict[str, Any]:
        """Run a search, translating transport failures to IndexUnavailableError."""
        try:
            response = self.client.search(index=self.config.index, **kwargs)
        except TransportError as e:
            logger.error("Search index unreachable: %s", e)
            raise IndexUnavailableError(f"Search index unreachable: {e}") from e
        except ApiError as e:
            status = e.meta.status
            if status >= 500 or status == 429:
                logger.error("Search index unavailable (HTTP %s): %s", status, e)
                raise IndexUnavailableError(
                    f"Search index unavailable (HTTP {status})"
                ) from e
            raise
        return getattr(response, "body", response)

    # ------------------------------------------------------------------
    # Paginated search
    # ------------------------------------------------------------------

    def search(
        self,
        query: str,
        page: int = 1,
        size: int | None = None,
        author: str | None = None,
        chapter: int | None = None,
        work_types: list[WorkType] | None = None,
        strategy: Strategy | None = None,
    ) -> SearchPage:
        """Search the corpus and return one page of unique verses."""
        if size is None:
            size = self.config.default_page_size
        composed = compose_query(
            query,
            author=author,
            chapter=chapter,
            work_types=work_types,
            boosts=self.config.boosts,
        )
        return self.search_composed(composed, page, size, strategy)

    def search_composed(
        self,
        composed: ComposedQuery,
        page: int = 1,
        size: int = 10,
        strategy: Strategy | None = None,
    ) -> SearchPage:
        validate_pagination(page, size)
        strategy = strategy or self.config.strategy
        logger.info(
            "Search %r page=%d size=%d strategy=%s",
            composed.text,
            page,
            size,
            strategy.value,
        )
        if strategy == Strategy.row_window:
            return self._search_rows(composed, page, size)
        return self._search_buckets(composed, page, size)

    def _search_rows(self, composed: ComposedQuery, page: int, size: int) -> SearchPage:
        kwargs: dict[str, Any] = {
            "query": composed.to_dsl(),
            "from_": (page - 1) * size,
            "size": size,
            "sort": ROW_SORT,
            "track_scores": True,
            "track_total_hits": True,
        }
        if self.config.highlight.enabled:
            kwargs["highlight"] = highlight_dsl(self.config.highlight)
        response = self._search(**kwargs)

        hits = response.get("hits", {})
        results = []
        for hit in hits.get("hits", []):
            row = VerseRow.from_hit(hit)
            results.append(
                AggregatedVerse(
                    chapter=row.chapter,
                    verse=row.verse,
                    representative=row,
                    translations=[row],
                    score=row.score,
                )
            )
        return SearchPage(results=results, total=_total_hits(hits), page=page, size=size)

    def _search_buckets(
        self, composed: ComposedQuery, page: int, size: int
    ) -> SearchPage:
        verses = self._aggregate(composed, by_relevance=True)
        self._warn_if_truncated(composed, verses)
        ordered = sort_by_relevance(verses)
        return SearchPage(
            results=page_slice(ordered, page, size),
            total=len(ordered),
            page=page,
            size=size,
        )

    def _aggregate(
        self, composed: ComposedQuery, by_relevance: bool
    ) -> list[AggregatedVerse]:
        response = self._search(
            query=composed.to_dsl(),
            size=0,
            aggs=composite_aggs(
                self.config.max_buckets,
                self.config.translations_per_verse,
                by_relevance=by_relevance,
                highlight=self.config.highlight if by_relevance else None,
            ),
        )
        verses = verses_from_response(response)
        logger.debug("Aggregation returned %d verse buckets", len(verses))
        return verses

    def _warn_if_truncated(
        self, composed: ComposedQuery, verses: list[AggregatedVerse]
    ) -> None:
        if len(verses) >= self.config.max_buckets:
            logger.warning(
                "Query %r hit the bucket limit (%d); results are truncated",
                composed.text,
                self.config.max_buckets,
            )

    # ------------------------------------------------------------------
    # Unpaginated access (curation, detail view, gap-filling)
    # ------------------------------------------------------------------

    def fetch_all(self, composed: ComposedQuery) -> list[AggregatedVerse]:
        """Every matching verse with all translations, in textual order."""
        verses = self._aggregate(composed, by_relevance=False)
        self._warn_if_truncated(composed, verses)
        return sort_by_position(verses)

    def lookup_rows(self, chapter: int, verse: int) -> list[VerseRow]:
        """All rows stored at (chapter, verse), across works and translators."""
        response = self._search(
            query={
                "bool": {
                    "filter": [
                        {"term": {"chapter": chapter}},
                        {"term": {"verse": verse}},
                    ]
                }
            },
            size=self.config.translations_per_verse * len(WorkType),
            sort=[{"author": {"order": "asc"}}],
        )
        return [VerseRow.from_hit(h) for h in response.get("hits", {}).get("hits", [])]

    def get_verse(
        self, chapter: int, verse: int, work_type: WorkType | None = None
    ) -> AggregatedVerse | None:
        """Full translation list for one coordinate.

        Without ``work_type`` the dominant type at that coordinate is used.
        """
        return aggregate_rows(self.lookup_rows(chapter, verse), work_type)

    def list_authors(self) -> list[dict[str, Any]]:
        """Translators/narrators in the corpus with their row counts."""
        response = self._search(
            size=0,
            aggs={"authors": {"terms": {"field": "author", "size": 1000}}},
        )
        buckets = response.get("aggregations", {}).get("authors", {}).get("buckets", [])
        return [{"author": b["key"], "rows": b["doc_count"]} for b in buckets]
