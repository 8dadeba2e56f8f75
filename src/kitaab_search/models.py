"""Verse corpus data models."""

from __future__ import annotations

import math
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, computed_field


class WorkType(str, Enum):
    """Classification of a work, inferred from the chapter-name field."""

    scripture = "scripture"  # No chapter name (e.g. Quran)
    narrative = "narrative"  # Named chapters (e.g. hadith collections)


# Spellings accepted in reorder manifests
WORK_TYPE_ALIASES = {
    "scripture": WorkType.scripture,
    "quran": WorkType.scripture,
    "narrative": WorkType.narrative,
    "narrative-collection": WorkType.narrative,
    "hadith": WorkType.narrative,
}


def classify(chapter_name: str | None) -> WorkType:
    """chapter_name present => narrative collection, absent => scripture."""
    if chapter_name and chapter_name.strip():
        return WorkType.narrative
    return WorkType.scripture


class VerseRow(BaseModel):
    """One (work, chapter, verse, translator) record in the corpus."""

    chapter: int = Field(ge=1)
    verse: int = Field(ge=1)
    text: str
    author: str
    book_id: str = ""
    chapter_name: str = ""
    title: str = ""
    volume: int | None = None

    # Query-time only
    score: float = 0.0
    highlights: list[str] = Field(default_factory=list)

    @property
    def work_type(self) -> WorkType:
        return classify(self.chapter_name)

    @classmethod
    def from_hit(cls, hit: dict) -> VerseRow:
        """Build a row from an Elasticsearch hit (``_source`` + ``_score``)."""
        source = hit.get("_source", {})
        highlight = hit.get("highlight") or {}
        return cls(
            chapter=source["chapter"],
            verse=source["verse"],
            text=source.get("text", ""),
            author=source.get("author", ""),
            book_id=source.get("book_id") or "",
            chapter_name=source.get("chapter_name") or "",
            title=source.get("title") or "",
            volume=source.get("volume"),
            score=hit.get("_score") or 0.0,
            highlights=list(highlight.get("text", [])),
        )

    def to_source(self) -> dict:
        """Document body as stored in the index."""
        return self.model_dump(exclude={"score", "highlights"}, exclude_none=True)


class AggregatedVerse(BaseModel):
    """A unique (chapter, verse) entry with all same-type translations."""

    chapter: int
    verse: int
    representative: VerseRow
    translations: list[VerseRow]
    # Relevance used for ranking; the bucket max score when aggregated
    score: float = 0.0

    @property
    def work_type(self) -> WorkType:
        return self.representative.work_type

    @property
    def key(self) -> tuple[int, int, WorkType]:
        return (self.chapter, self.verse, self.work_type)

    @classmethod
    def from_rows(cls, rows: list[VerseRow]) -> AggregatedVerse:
        """Representative = highest score; translations sorted by author."""
        if not rows:
            raise ValueError("Cannot aggregate an empty row list")
        representative = max(rows, key=lambda r: r.score)
        return cls(
            chapter=representative.chapter,
            verse=representative.verse,
            representative=representative,
            translations=sorted(rows, key=lambda r: (r.author, r.book_id)),
            score=representative.score,
        )


class SearchPage(BaseModel):
    results: list[AggregatedVerse]
    total: int
    page: int
    size: int

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.size) if self.size else 0


class SectionMarker(BaseModel):
    """Structural separator; ``start`` indexes the first verse after it."""

    name: str
    start: int


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Story(BaseModel):
    """A named, ordered curation of verses for a topic."""

    query: str
    generated_at: datetime = Field(default_factory=utcnow)
    title: str = ""
    verses: list[AggregatedVerse] = Field(default_factory=list)
    sections: list[SectionMarker] = Field(default_factory=list)

    # Set when produced by the reorder tool
    reordered_at: datetime | None = None
    reorder_source: str | None = None

    @property
    def verses_count(self) -> int:
        return len(self.verses)

    @property
    def translations_count(self) -> int:
        return sum(len(v.translations) for v in self.verses)


class ReorderManifestEntry(BaseModel):
    """One row of an externally authored ordering manifest."""

    order: int
    section: str
    chapter: int
    verse_range: str
    type: WorkType


class UnusedVerse(BaseModel):
    chapter: int
    verse: int
    type: WorkType
    translations_count: int
    preview: str


class MissingVerse(BaseModel):
    order: int
    chapter: int
    verse: int
    type: WorkType


class ReorderResult(BaseModel):
    story: Story
    unused: list[UnusedVerse]
    missing: list[MissingVerse]
    fetched: int = 0
