"""One-shot batch loading: index mapping + translation XML files -> corpus rows.

Two source formats are supported:

- scripture: ``<quran><sura index="1" name="..."><aya index="1" text="..."/>``
- narrative collection: ``<hadith name="..."><chapter index="1"><verse
  index="1" text="..."/>``; repeated verse indices inside a chapter are
  merged with newlines.
"""

from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Iterator

from elasticsearch import TransportError
from elasticsearch.helpers import bulk

from kitaab_search.es_engine import VerseEngine
from kitaab_search.exceptions import IndexUnavailableError
from kitaab_search.models import VerseRow

logger = logging.getLogger(__name__)

INDEX_SETTINGS = {
    "number_of_shards": 1,
    "number_of_replicas": 0,
    "analysis": {
        "filter": {
            "english_stemmer": {"type": "stemmer", "language": "english"},
            "joined_shingles": {
                "type": "shingle",
                "min_shingle_size": 2,
                "max_shingle_size": 3,
                "output_unigrams": True,
                "token_separator": "",
            },
            "prefix_ngrams": {"type": "edge_ngram", "min_gram": 2, "max_gram": 15},
        },
        "analyzer": {
            "base_analyzer": {
                "type": "custom",
                "tokenizer": "standard",
                "filter": ["lowercase", "asciifolding"],
            },
            "stemmed_analyzer": {
                "type": "custom",
                "tokenizer": "standard",
                "filter": ["lowercase", "asciifolding", "english_stemmer"],
            },
            "joined_analyzer": {
                "type": "custom",
                "tokenizer": "standard",
                "filter": ["lowercase", "asciifolding", "joined_shingles"],
            },
            "prefix_analyzer": {
                "type": "custom",
                "tokenizer": "standard",
                "filter": ["lowercase", "asciifolding", "prefix_ngrams"],
            },
        },
    },
}

INDEX_MAPPINGS = {
    "properties": {
        "chapter": {"type": "integer"},
        "verse": {"type": "integer"},
        "text": {
            "type": "text",
            "analyzer": "base_analyzer",
            "fields": {
                "stemmed": {"type": "text", "analyzer": "stemmed_analyzer"},
                "joined": {"type": "text", "analyzer": "joined_analyzer"},
                "prefix": {
                    "type": "text",
                    "analyzer": "prefix_analyzer",
                    "search_analyzer": "base_analyzer",
                },
            },
        },
        "author": {"type": "keyword"},
        "chapter_name": {"type": "keyword"},
        "book_id": {"type": "keyword"},
        "title": {"type": "keyword"},
        "volume": {"type": "integer"},
    }
}


def create_index(engine: VerseEngine) -> bool:
    """Create the verse index if missing. Returns True when created."""
    index = engine.config.index
    try:
        if engine.client.indices.exists(index=index):
            logger.info("Index %s already exists", index)
            return False
        engine.client.indices.create(
            index=index, settings=INDEX_SETTINGS, mappings=INDEX_MAPPINGS
        )
    except TransportError as e:
        raise IndexUnavailableError(f"Search index unreachable: {e}") from e
    logger.info("Created index %s", index)
    return True


def _index_attr(elem: ET.Element) -> int | None:
    try:
        value = int(elem.get("index", ""))
    except ValueError:
        return None
    return value if value >= 1 else None


def parse_scripture_xml(
    xml_text: str,
    author: str,
    book_id: str,
    title: str = "quran",
    volume: int | None = None,
) -> list[VerseRow]:
    """Rows for a sura/aya translation file. ``chapter_name`` stays empty."""
    root = ET.fromstring(xml_text)
    rows = []
    for sura in root.iter("sura"):
        chapter = _index_attr(sura)
        if chapter is None:
            continue
        for aya in sura.findall("aya"):
            verse = _index_attr(aya)
            text = aya.get("text", "")
            if verse is None or not text:
                continue
            rows.append(
                VerseRow(
                    chapter=chapter,
                    verse=verse,
                    text=text,
                    author=author,
                    book_id=book_id,
                    title=title,
                    volume=volume,
                )
            )
    logger.info("Extracted %d verses from scripture file %s", len(rows), book_id)
    return rows


def parse_collection_xml(
    xml_text: str,
    author: str,
    book_id: str,
    title: str = "bukhari",
    volume: int | None = None,
) -> list[VerseRow]:
    """Rows for a narrative collection; the collection name is the chapter name."""
    root = ET.fromstring(xml_text)
    hadith = root if root.tag == "hadith" else root.find(".//hadith")
    collection_name = (hadith.get("name") if hadith is not None else "") or title

    merged: dict[tuple[int, int], list[str]] = {}
    for chapter_elem in root.iter("chapter"):
        chapter = _index_attr(chapter_elem)
        if chapter is None:
            continue
        for verse_elem in chapter_elem.findall("verse"):
            verse = _index_attr(verse_elem)
            if verse is None:
                continue
            merged.setdefault((chapter, verse), []).append(verse_elem.get("text", ""))

    rows = [
        VerseRow(
            chapter=chapter,
            verse=verse,
            text="\n".join(texts),
            author=author,
            book_id=book_id,
            chapter_name=collection_name,
            title=title,
            volume=volume,
        )
        for (chapter, verse), texts in merged.items()
    ]
    logger.info("Extracted %d merged verses from collection %s", len(rows), book_id)
    return rows


def load_xml_file(
    path: str | Path,
    author: str,
    book_id: str | None = None,
    title: str | None = None,
    volume: int | None = None,
) -> list[VerseRow]:
    """Detect the file format and parse it into rows."""
    path = Path(path)
    xml_text = path.read_text(encoding="utf-8")
    if book_id is None:
        book_id = re.sub(r"\s+", "-", author.lower())
    root = ET.fromstring(xml_text)
    if root.tag == "hadith" or root.find(".//hadith") is not None:
        return parse_collection_xml(xml_text, author, book_id, title or "bukhari", volume)
    if root.find(".//sura") is None and root.tag != "sura":
        logger.warning("No sura or hadith elements in %s; assuming scripture", path)
    return parse_scripture_xml(xml_text, author, book_id, title or "quran", volume)


def document_id(row: VerseRow) -> str:
    doc_id = f"{row.book_id}_{row.chapter}_{row.verse}"
    if row.volume is not None:
        doc_id += f"_vol{row.volume}"
    return doc_id


def _actions(index: str, rows: list[VerseRow]) -> Iterator[dict]:
    for row in rows:
        yield {"_index": index, "_id": document_id(row), "_source": row.to_source()}


def index_rows(
    engine: VerseEngine, rows: list[VerseRow], batch_size: int = 500
) -> tuple[int, int]:
    """Bulk-index rows. Returns (succeeded, failed)."""
    if not rows:
        logger.info("No verses to index")
        return 0, 0
    logger.info("Indexing %d verses into %s", len(rows), engine.config.index)
    try:
        succeeded, errors = bulk(
            engine.client,
            _actions(engine.config.index, rows),
            chunk_size=batch_size,
            refresh=True,
            raise_on_error=False,
        )
    except TransportError as e:
        raise IndexUnavailableError(f"Search index unreachable: {e}") from e
    failed = len(errors)
    if failed:
        logger.error("%d verses failed to index; first error: %s", failed, errors[0])
    logger.info("Indexing complete: %d succeeded, %d failed", succeeded, failed)
    return succeeded, failed
