"""Bucket handling: composite-key aggregation, type disambiguation, paging.

Chapter/verse coordinates are not unique across works: scripture 1:1 and a
narrative collection's 1:1 can both match a query. The index aggregation
groups rows by ``chapter_verse`` and then by work type; within a bucket the
work type with the most rows wins and the other group is dropped.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Iterable

from kitaab_search.config import HighlightConfig
from kitaab_search.models import AggregatedVerse, VerseRow, WorkType

logger = logging.getLogger(__name__)

BUCKETS_AGG = "unique_chapter_verse"
SCORE_AGG = "max_score"
TYPE_AGG = "work_type"
ROWS_AGG = "rows"

CHAPTER_VERSE_SCRIPT = "doc['chapter'].value + '_' + doc['verse'].value"
WORK_TYPE_SCRIPT = (
    "doc['chapter_name'].size() == 0 || doc['chapter_name'].value == '' "
    "? 'scripture' : 'narrative'"
)


def highlight_dsl(config: HighlightConfig) -> dict[str, Any]:
    return {
        "pre_tags": [config.pre_tag],
        "post_tags": [config.post_tag],
        # Fragments for hits matched only through the text.* sub-fields
        "require_field_match": False,
        "fields": {
            "text": {
                "fragment_size": config.fragment_size,
                "number_of_fragments": config.number_of_fragments,
            }
        },
    }


def composite_aggs(
    max_buckets: int,
    rows_per_type: int,
    by_relevance: bool = True,
    highlight: HighlightConfig | None = None,
) -> dict[str, Any]:
    """Two-level terms aggregation: chapter_verse -> work type -> top_hits."""
    top_hits: dict[str, Any] = {
        "size": rows_per_type,
        "sort": [{"_score": {"order": "desc"}}, {"author": {"order": "asc"}}],
        # An explicit sort drops _score from hits unless scores are tracked
        "track_scores": True,
    }
    if highlight is not None and highlight.enabled:
        top_hits["highlight"] = highlight_dsl(highlight)

    terms: dict[str, Any] = {
        "script": {"source": CHAPTER_VERSE_SCRIPT, "lang": "painless"},
        "size": max_buckets,
    }
    # Only matters when there are more buckets than max_buckets
    terms["order"] = {SCORE_AGG: "desc"} if by_relevance else {"_key": "asc"}

    return {
        BUCKETS_AGG: {
            "terms": terms,
            "aggs": {
                SCORE_AGG: {"max": {"script": {"source": "_score"}}},
                TYPE_AGG: {
                    "terms": {
                        "script": {"source": WORK_TYPE_SCRIPT, "lang": "painless"},
                        "size": len(WorkType),
                    },
                    "aggs": {ROWS_AGG: {"top_hits": top_hits}},
                },
            },
        }
    }


def parse_key(key: str) -> tuple[int, int]:
    """``"7_12"`` -> ``(7, 12)``."""
    chapter, _, verse = str(key).partition("_")
    return int(chapter), int(verse)


def dominant_type(
    counts: dict[WorkType, int], best_scores: dict[WorkType, float]
) -> WorkType:
    """Work type with the most rows.

    Ties go to the type holding the best-scoring row, then to scripture.
    """
    return max(
        counts,
        key=lambda t: (
            counts[t],
            best_scores.get(t, 0.0),
            t == WorkType.scripture,
        ),
    )


def group_by_type(rows: Iterable[VerseRow]) -> dict[WorkType, list[VerseRow]]:
    groups: dict[WorkType, list[VerseRow]] = defaultdict(list)
    for row in rows:
        groups[row.work_type].append(row)
    return dict(groups)


def aggregate_rows(
    rows: list[VerseRow], work_type: WorkType | None = None
) -> AggregatedVerse | None:
    """Aggregate rows sharing one (chapter, verse).

    With ``work_type`` only that type is kept; otherwise the dominant type
    wins. Returns None when nothing is left.
    """
    groups = group_by_type(rows)
    if not groups:
        return None
    if work_type is None:
        work_type = dominant_type(
            {t: len(g) for t, g in groups.items()},
            {t: max(r.score for r in g) for t, g in groups.items()},
        )
    selected = groups.get(work_type)
    if not selected:
        return None
    return AggregatedVerse.from_rows(selected)


def verse_from_bucket(bucket: dict[str, Any]) -> AggregatedVerse | None:
    """Turn one ``unique_chapter_verse`` bucket into an AggregatedVerse."""
    chapter, verse = parse_key(bucket["key"])
    type_buckets = bucket.get(TYPE_AGG, {}).get("buckets", [])

    counts: dict[WorkType, int] = {}
    best_scores: dict[WorkType, float] = {}
    rows_by_type: dict[WorkType, list[VerseRow]] = {}
    for tb in type_buckets:
        work_type = WorkType(tb["key"])
        hits = tb.get(ROWS_AGG, {}).get("hits", {}).get("hits", [])
        rows = [VerseRow.from_hit(h) for h in hits]
        if not rows:
            continue
        counts[work_type] = tb.get("doc_count", len(rows))
        best_scores[work_type] = max(r.score for r in rows)
        rows_by_type[work_type] = rows

    if not rows_by_type:
        logger.debug("Bucket %s has no rows, skipping", bucket.get("key"))
        return None

    if len(rows_by_type) > 1:
        winner = dominant_type(counts, best_scores)
        logger.debug(
            "Type collision at %d:%d (%s), keeping %s",
            chapter,
            verse,
            ", ".join(f"{t.value}={n}" for t, n in counts.items()),
            winner.value,
        )
    else:
        winner = next(iter(rows_by_type))

    result = AggregatedVerse.from_rows(rows_by_type[winner])
    bucket_score = (bucket.get(SCORE_AGG) or {}).get("value")
    if bucket_score is not None:
        result.score = max(float(bucket_score), result.score)
    if (result.chapter, result.verse) != (chapter, verse):
        logger.warning(
            "Bucket key %s does not match its rows (%d:%d)",
            bucket["key"],
            result.chapter,
            result.verse,
        )
    return result


def verses_from_response(response: dict[str, Any]) -> list[AggregatedVerse]:
    buckets = response.get("aggregations", {}).get(BUCKETS_AGG, {}).get("buckets", [])
    verses = []
    for bucket in buckets:
        verse = verse_from_bucket(bucket)
        if verse is not None:
            verses.append(verse)
    return verses


def sort_by_relevance(verses: list[AggregatedVerse]) -> list[AggregatedVerse]:
    """Bucket score desc, then chapter asc, verse asc."""
    return sorted(verses, key=lambda v: (-v.score, v.chapter, v.verse))


def sort_by_position(verses: list[AggregatedVerse]) -> list[AggregatedVerse]:
    """Textual order; scripture before narrative on identical coordinates."""
    return sorted(
        verses,
        key=lambda v: (v.chapter, v.verse, v.work_type != WorkType.scripture),
    )


def page_slice(items: list, page: int, size: int) -> list:
    start = (page - 1) * size
    return items[start : start + size]
