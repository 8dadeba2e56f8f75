"""Query composer: free text + filters -> boosted multi-field bool query."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from kitaab_search.config import DEFAULT_BOOSTS, FieldBoost
from kitaab_search.exceptions import InvalidQueryError
from kitaab_search.models import WorkType


class ComposedQuery(BaseModel):
    """A validated search request, ready to be rendered as query DSL."""

    text: str
    boosts: list[FieldBoost]
    author: str | None = None
    chapter: int | None = None
    work_types: list[WorkType] = Field(default_factory=list)

    def to_dsl(self) -> dict[str, Any]:
        should = [
            {"match": {b.field: {"query": self.text, "boost": b.boost}}}
            for b in self.boosts
        ]
        filters: list[dict[str, Any]] = []
        if self.author is not None:
            filters.append({"term": {"author": self.author}})
        if self.chapter is not None:
            filters.append({"term": {"chapter": self.chapter}})
        type_filter = work_type_filter(self.work_types)
        if type_filter is not None:
            filters.append(type_filter)

        query: dict[str, Any] = {"should": should, "minimum_should_match": 1}
        if filters:
            query["filter"] = filters
        return {"bool": query}


def work_type_filter(work_types: list[WorkType]) -> dict[str, Any] | None:
    """Restrict rows to a single work type; None when no restriction applies."""
    wanted = set(work_types)
    if len(wanted) != 1:
        return None
    # Scripture rows have no chapter_name, or an empty one
    has_name = {
        "bool": {
            "filter": [{"exists": {"field": "chapter_name"}}],
            "must_not": [{"term": {"chapter_name": ""}}],
        }
    }
    if WorkType.narrative in wanted:
        return has_name
    return {"bool": {"must_not": [has_name]}}


def compose_query(
    text: str,
    author: str | None = None,
    chapter: int | None = None,
    work_types: list[WorkType] | None = None,
    boosts: list[FieldBoost] | None = None,
) -> ComposedQuery:
    """Validate inputs and build a ComposedQuery.

    Raises:
        InvalidQueryError: ``text`` is empty or whitespace only, or
            ``chapter`` is below 1.
    """
    if text is None or not text.strip():
        raise InvalidQueryError("Query text must not be empty")
    if chapter is not None and chapter < 1:
        raise InvalidQueryError(f"Chapter filter must be >= 1, got {chapter}")
    return ComposedQuery(
        text=text.strip(),
        boosts=list(boosts) if boosts else list(DEFAULT_BOOSTS),
        author=author or None,
        chapter=chapter,
        work_types=list(work_types or []),
    )
