"""Tests for VerseEngine against the in-memory fake index."""

import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import pytest
from elasticsearch import ApiError
from elasticsearch import ConnectionError as ESConnectionError

import kitaab_search.es_engine as es_engine
from conftest import FakeElasticsearch, row
from kitaab_search.config import SearchConfig, Strategy
from kitaab_search.es_engine import VerseEngine, build_client
from kitaab_search.exceptions import (
    IndexUnavailableError,
    InvalidPaginationError,
    InvalidQueryError,
)
from kitaab_search.models import WorkType
from kitaab_search.query import compose_query


class TestCompositeSearch:
    def test_dedup_by_chapter_verse(self, engine):
        page = engine.search("mercy", size=10)
        keys = [(v.chapter, v.verse) for v in page.results]
        assert len(keys) == len(set(keys))
        # 7 matching rows collapse to 3 distinct verses
        assert page.total == 3

    def test_relevance_order(self, engine):
        page = engine.search("mercy", size=10)
        assert [(v.chapter, v.verse) for v in page.results] == [(7, 12), (1, 1), (7, 13)]

    def test_translations_sorted_by_author(self, engine):
        top = engine.search("mercy", size=1).results[0]
        assert [t.author for t in top.translations] == ["Arberry", "Pickthall", "Sahih"]
        assert top.representative.author == "Sahih"

    def test_type_collision_keeps_majority(self, engine):
        page = engine.search("mercy", size=10)
        collided = next(v for v in page.results if (v.chapter, v.verse) == (1, 1))
        assert collided.work_type == WorkType.narrative
        assert {t.author for t in collided.translations} == {"Khan", "Muhsin"}
        assert all(t.chapter_name for t in collided.translations)

    def test_pagination_totals(self, engine):
        page = engine.search("mercy", page=2, size=2)
        assert page.total == 3
        assert page.total_pages == 2
        assert [(v.chapter, v.verse) for v in page.results] == [(7, 13)]

    def test_page_past_end_is_empty(self, engine):
        page = engine.search("mercy", page=5, size=2)
        assert page.results == []
        assert page.total == 3
        assert page.total_pages == math.ceil(3 / 2)

    def test_single_aggregation_request(self, engine, fake_es):
        engine.search("mercy", page=2, size=1)
        assert len(fake_es.calls) == 1
        call = fake_es.calls[0]
        assert call["size"] == 0
        assert call["index"] == "test-verses"
        assert "unique_chapter_verse" in call["aggs"]

    def test_highlights_on_representative(self, engine):
        top = engine.search("mercy", size=1).results[0]
        assert any("<em>mercy</em>" in h.lower() for h in top.representative.highlights)

    def test_filters_applied(self, engine):
        page = engine.search("mercy", author="Arberry")
        assert [(v.chapter, v.verse) for v in page.results] == [(7, 12)]
        assert [t.author for t in page.results[0].translations] == ["Arberry"]

        page = engine.search("mercy", chapter=1)
        assert [(v.chapter, v.verse) for v in page.results] == [(1, 1)]

    def test_work_type_filter(self, engine):
        page = engine.search("mercy", work_types=[WorkType.scripture], size=10)
        collided = next(v for v in page.results if (v.chapter, v.verse) == (1, 1))
        assert collided.work_type == WorkType.scripture
        assert [t.author for t in collided.translations] == ["Sahih"]

    def test_no_matches(self, engine):
        page = engine.search("zebra")
        assert page.results == []
        assert page.total == 0
        assert page.total_pages == 0

    def test_default_page_size_from_config(self, fake_es):
        engine = VerseEngine(SearchConfig(default_page_size=1), client=fake_es)
        page = engine.search("mercy")
        assert page.size == 1
        assert len(page.results) == 1


class TestMercyScenario:
    def test_three_translations_two_verses(self):
        es = FakeElasticsearch(
            [
                row(7, 12, "mercy and mercy", "A"),
                row(7, 12, "mercy, great mercy", "B"),
                row(7, 12, "mercy twice mercy", "C"),
                row(7, 13, "a single mercy", "A"),
            ]
        )
        engine = VerseEngine(SearchConfig(), client=es)
        page = engine.search("mercy", page=1, size=1)
        assert page.total == 2
        assert page.total_pages == 2
        assert len(page.results) == 1
        top = page.results[0]
        assert (top.chapter, top.verse) == (7, 12)
        assert len(top.translations) == 3


class TestRowWindowSearch:
    def test_one_result_per_row(self, engine):
        page = engine.search("mercy", size=10, strategy=Strategy.row_window)
        assert page.total == 7
        assert len(page.results) == 7
        assert all(len(v.translations) == 1 for v in page.results)

    def test_row_paging_request(self, engine, fake_es):
        page = engine.search("mercy", page=2, size=3, strategy=Strategy.row_window)
        call = fake_es.calls[-1]
        assert call["from_"] == 3
        assert call["size"] == 3
        assert call["sort"][0] == {"_score": {"order": "desc"}}
        assert page.total_pages == 3

    def test_strategy_from_config(self, fake_es):
        engine = VerseEngine(SearchConfig(strategy=Strategy.row_window), client=fake_es)
        page = engine.search("mercy", size=2)
        assert page.total == 7


class TestValidation:
    @pytest.mark.parametrize("page,size", [(0, 10), (1, 0), (-1, 5)])
    def test_invalid_pagination_before_io(self, engine, fake_es, page, size):
        with pytest.raises(InvalidPaginationError):
            engine.search("mercy", page=page, size=size)
        assert fake_es.calls == []

    def test_invalid_query_before_io(self, engine, fake_es):
        with pytest.raises(InvalidQueryError):
            engine.search("   ")
        assert fake_es.calls == []


class TestIndexUnavailable:
    def test_connection_error(self, corpus_rows):
        es = FakeElasticsearch(corpus_rows, fail=ESConnectionError("connection refused"))
        engine = VerseEngine(SearchConfig(), client=es)
        with pytest.raises(IndexUnavailableError):
            engine.search("mercy")

    def test_lookup_connection_error(self, corpus_rows):
        es = FakeElasticsearch(corpus_rows, fail=ESConnectionError("timed out"))
        engine = VerseEngine(SearchConfig(), client=es)
        with pytest.raises(IndexUnavailableError):
            engine.get_verse(2, 255)


class TestFetchAll:
    def test_textual_order_all_translations(self, engine):
        verses = engine.fetch_all(compose_query("mercy"))
        assert [(v.chapter, v.verse) for v in verses] == [(1, 1), (7, 12), (7, 13)]
        assert len(verses[1].translations) == 3

    def test_idempotent(self, engine):
        first = engine.fetch_all(compose_query("mercy"))
        second = engine.fetch_all(compose_query("mercy"))
        assert [v.model_dump() for v in first] == [v.model_dump() for v in second]


class TestGetVerse:
    def test_dominant_type(self, engine):
        verse = engine.get_verse(1, 1)
        assert verse.work_type == WorkType.narrative
        assert [t.author for t in verse.translations] == ["Khan", "Muhsin"]

    def test_requested_type(self, engine):
        verse = engine.get_verse(1, 1, WorkType.scripture)
        assert [t.author for t in verse.translations] == ["Sahih"]

    def test_not_found(self, engine):
        assert engine.get_verse(99, 99) is None
        assert engine.get_verse(2, 255, WorkType.narrative) is None


class TestListAuthors:
    def test_counts(self, engine):
        authors = {a["author"]: a["rows"] for a in engine.list_authors()}
        assert authors["Sahih"] == 4
        assert authors["Khan"] == 1


class TestBuildClient:
    def test_api_key_auth(self):
        client = build_client(SearchConfig(url="http://es:9200", api_key="secret"))
        assert client is not None


def api_error(status):
    return ApiError(f"HTTP {status}", meta=MagicMock(status=status), body={})


class TestApiErrors:
    @pytest.mark.parametrize("status", [503, 500, 429])
    def test_server_side_errors_are_unavailable(self, corpus_rows, status):
        engine = VerseEngine(SearchConfig(), client=FakeElasticsearch(corpus_rows, fail=api_error(status)))
        with pytest.raises(IndexUnavailableError, match=str(status)):
            engine.search("mercy")

    def test_client_errors_propagate(self, corpus_rows):
        engine = VerseEngine(SearchConfig(), client=FakeElasticsearch(corpus_rows, fail=api_error(400)))
        with pytest.raises(ApiError) as exc:
            engine.search("mercy")
        assert not isinstance(exc.value, IndexUnavailableError)


class TestScores:
    def test_bucket_scores_survive_sorted_top_hits(self, engine):
        page = engine.search("mercy", size=10)
        assert all(v.score > 0 for v in page.results)
        assert all(v.representative.score > 0 for v in page.results)

    def test_row_window_tracks_scores(self, engine, fake_es):
        page = engine.search("mercy", strategy=Strategy.row_window)
        assert fake_es.calls[-1]["track_scores"] is True
        assert page.results[0].representative.score > 0


class TestBucketLimit:
    def test_paged_search_warns_when_truncated(self, fake_es, caplog):
        engine = VerseEngine(SearchConfig(max_buckets=2), client=fake_es)
        with caplog.at_level(logging.WARNING):
            page = engine.search("mercy")
        assert page.total == 2
        assert "bucket limit" in caplog.text

    def test_no_warning_under_limit(self, engine, caplog):
        with caplog.at_level(logging.WARNING):
            engine.search("mercy")
        assert "bucket limit" not in caplog.text


class TestClientCreation:
    def test_built_once_across_threads(self, monkeypatch):
        built = []

        def slow_build(config):
            time.sleep(0.05)
            client = object()
            built.append(client)
            return client

        monkeypatch.setattr(es_engine, "build_client", slow_build)
        engine = VerseEngine(SearchConfig())
        with ThreadPoolExecutor(max_workers=8) as pool:
            clients = list(pool.map(lambda _: engine.client, range(8)))
        assert len(built) == 1
        assert all(c is built[0] for c in clients)
