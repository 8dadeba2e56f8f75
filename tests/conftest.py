"""Shared fixtures: an in-memory stand-in for the Elasticsearch client.

FakeElasticsearch understands the subset of query DSL that VerseEngine
sends: bool (must/should/filter/must_not, minimum_should_match), match,
term and exists queries; sort; from/size; highlight on ``text``; and the
``unique_chapter_verse`` and ``authors`` aggregations.

Scoring is deliberately simple: a ``match`` clause scores
``boost * occurrences of each query token in text``.
"""

from __future__ import annotations

import re
from collections import defaultdict
from typing import Any

import pytest

from kitaab_search.config import SearchConfig
from kitaab_search.es_engine import VerseEngine


def _tokens(text: str) -> list[str]:
    return re.findall(r"\w+", text.lower())


def _work_type(row: dict) -> str:
    return "narrative" if (row.get("chapter_name") or "").strip() else "scripture"


def _evaluate(query: dict | None, row: dict) -> float | None:
    """Score of ``row`` for ``query``, or None when it does not match."""
    if not query:
        return 1.0
    kind, body = next(iter(query.items()))
    if kind == "match":
        field, spec = next(iter(body.items()))
        if isinstance(spec, str):
            spec = {"query": spec}
        words = _tokens(row.get(field.split(".")[0], ""))
        hits = sum(words.count(t) for t in _tokens(spec["query"]))
        return spec.get("boost", 1.0) * hits if hits else None
    if kind == "term":
        field, value = next(iter(body.items()))
        if isinstance(value, dict):
            value = value["value"]
        return 0.0 if row.get(field) == value else None
    if kind == "exists":
        return 0.0 if row.get(body["field"]) is not None else None
    if kind == "bool":
        score = 0.0
        for clause in body.get("must", []) + body.get("filter", []):
            s = _evaluate(clause, row)
            if s is None:
                return None
            score += s
        for clause in body.get("must_not", []):
            if _evaluate(clause, row) is not None:
                return None
        should = body.get("should", [])
        if should:
            matched = [s for s in (_evaluate(c, row) for c in should) if s is not None]
            default_msm = 0 if (body.get("must") or body.get("filter")) else 1
            if len(matched) < body.get("minimum_should_match", default_msm):
                return None
            score += sum(matched)
        return score
    raise NotImplementedError(f"FakeElasticsearch does not support {kind!r}")


def _highlight(row: dict, query: dict | None, spec: dict) -> dict:
    words: set[str] = set()

    def collect(q: Any) -> None:
        if isinstance(q, dict):
            if "match" in q:
                field, s = next(iter(q["match"].items()))
                words.update(_tokens(s["query"] if isinstance(s, dict) else s))
            for v in q.values():
                collect(v)
        elif isinstance(q, list):
            for v in q:
                collect(v)

    collect(query)
    pre, post = spec["pre_tags"][0], spec["post_tags"][0]
    text = row.get("text", "")
    marked = re.sub(
        r"\w+",
        lambda m: f"{pre}{m.group(0)}{post}" if m.group(0).lower() in words else m.group(0),
        text,
    )
    return {"text": [marked]} if marked != text else {}


class FakeElasticsearch:
    def __init__(self, rows: list[dict], fail: Exception | None = None) -> None:
        self.rows = rows
        self.fail = fail
        self.calls: list[dict] = []

    def _hit(self, row: dict, score: float, highlight: dict | None, query,
             sort: list | None = None, track_scores: bool = False) -> dict:
        # Like Elasticsearch: an explicit sort nulls _score unless tracked
        hit = {"_source": dict(row), "_score": score if not sort or track_scores else None}
        if sort:
            hit["sort"] = [
                score if next(iter(s)) == "_score" else row.get(next(iter(s)))
                for s in sort
            ]
        if highlight:
            marked = _highlight(row, query, highlight)
            if marked:
                hit["highlight"] = marked
        return hit

    def _sorted(self, matched: list[tuple[float, dict]], sort: list | None):
        result = list(matched)
        for spec in reversed(sort or [{"_score": {"order": "desc"}}]):
            field, opts = next(iter(spec.items()))
            reverse = opts.get("order", "asc") == "desc"
            if field == "_score":
                result.sort(key=lambda m: m[0], reverse=reverse)
            else:
                result.sort(key=lambda m: m[1].get(field), reverse=reverse)
        return result

    def search(self, index: str, query=None, size=10, from_=0, sort=None,
               aggs=None, highlight=None, track_total_hits=None, track_scores=False,
               **kwargs):
        self.calls.append(
            {"index": index, "query": query, "size": size, "from_": from_,
             "sort": sort, "aggs": aggs, "highlight": highlight,
             "track_scores": track_scores}
        )
        if self.fail is not None:
            raise self.fail

        matched = []
        for row in self.rows:
            score = _evaluate(query, row)
            if score is not None:
                matched.append((score, row))

        response: dict[str, Any] = {"hits": {"total": {"value": len(matched)}, "hits": []}}
        if size:
            ordered = self._sorted(matched, sort)
            response["hits"]["hits"] = [
                self._hit(row, score, highlight, query, sort, track_scores)
                for score, row in ordered[from_ : from_ + size]
            ]
        if aggs:
            response["aggregations"] = self._aggregations(aggs, matched, query)
        return response

    def _aggregations(self, aggs: dict, matched, query) -> dict:
        result = {}
        if "authors" in aggs:
            counts: dict[str, int] = defaultdict(int)
            for _, row in matched:
                counts[row["author"]] += 1
            result["authors"] = {
                "buckets": [{"key": a, "doc_count": n} for a, n in sorted(counts.items())]
            }
        if "unique_chapter_verse" in aggs:
            spec = aggs["unique_chapter_verse"]
            type_spec = spec["aggs"]["work_type"]
            top_hits = type_spec["aggs"]["rows"]["top_hits"]

            grouped: dict[str, list] = defaultdict(list)
            for score, row in matched:
                grouped[f"{row['chapter']}_{row['verse']}"].append((score, row))

            buckets = []
            for key, members in grouped.items():
                by_type: dict[str, list] = defaultdict(list)
                for score, row in members:
                    by_type[_work_type(row)].append((score, row))
                type_buckets = []
                for work_type, rows in sorted(by_type.items(), key=lambda kv: -len(kv[1])):
                    ordered = self._sorted(rows, top_hits.get("sort"))
                    type_buckets.append(
                        {
                            "key": work_type,
                            "doc_count": len(rows),
                            "rows": {
                                "hits": {
                                    "hits": [
                                        self._hit(
                                            r, s, top_hits.get("highlight"), query,
                                            top_hits.get("sort"),
                                            top_hits.get("track_scores", False),
                                        )
                                        for s, r in ordered[: top_hits["size"]]
                                    ]
                                }
                            },
                        }
                    )
                buckets.append(
                    {
                        "key": key,
                        "doc_count": len(members),
                        "max_score": {"value": max(s for s, _ in members)},
                        "work_type": {"buckets": type_buckets},
                    }
                )
            buckets.sort(key=lambda b: -b["max_score"]["value"])
            result["unique_chapter_verse"] = {"buckets": buckets[: spec["terms"]["size"]]}
        return result


def row(chapter, verse, text, author, chapter_name="", book_id=None, **extra) -> dict:
    source = {
        "chapter": chapter,
        "verse": verse,
        "text": text,
        "author": author,
        "chapter_name": chapter_name,
        "book_id": book_id or author.lower().replace(" ", "-"),
    }
    source.update(extra)
    return source


@pytest.fixture
def corpus_rows() -> list[dict]:
    return [
        # 7:12 scripture, three translators, strong match
        row(7, 12, "My mercy encompasses all things, mercy upon mercy", "Sahih"),
        row(7, 12, "My mercy embraces all things and mercy", "Arberry"),
        row(7, 12, "Mercy, mercy is wide", "Pickthall"),
        # 7:13 scripture, one translator, weaker match
        row(7, 13, "He is the most merciful of those who show mercy", "Sahih"),
        # 1:1 collides: one scripture row vs two narrative rows
        row(1, 1, "In the name of God, the Lord of mercy", "Sahih"),
        row(1, 1, "Actions are judged by intentions; mercy is given", "Khan",
            chapter_name="Sahih al-Bukhari", volume=1),
        row(1, 1, "Deeds are by intentions and mercy follows", "Muhsin",
            chapter_name="Sahih al-Bukhari", volume=1),
        # unrelated verse
        row(2, 255, "Allah - there is no deity except Him, the Ever-Living", "Sahih"),
        row(2, 255, "God, there is no god but He, the Living", "Arberry"),
    ]


@pytest.fixture
def fake_es(corpus_rows) -> FakeElasticsearch:
    return FakeElasticsearch(corpus_rows)


@pytest.fixture
def config() -> SearchConfig:
    return SearchConfig(index="test-verses")


@pytest.fixture
def engine(config, fake_es) -> VerseEngine:
    return VerseEngine(config, client=fake_es)
