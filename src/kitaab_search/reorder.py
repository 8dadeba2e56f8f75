"""Reorder/repair a Story from an ordering manifest.

The manifest is a CSV with columns ``order, section, chapter, verse_range,
type``. Rows are applied in ascending ``order``. Each requested verse is
taken from the Story when present; otherwise it is looked up in the corpus
(gap-filling) or skipped with a warning. Story verses that no manifest row
asked for are reported as unused.
"""

from __future__ import annotations

import csv
import io
import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from kitaab_search.es_engine import VerseEngine
from kitaab_search.exceptions import ManifestMalformedError
from kitaab_search.models import (
    WORK_TYPE_ALIASES,
    AggregatedVerse,
    MissingVerse,
    ReorderManifestEntry,
    ReorderResult,
    SectionMarker,
    Story,
    UnusedVerse,
    WorkType,
    utcnow,
)

logger = logging.getLogger(__name__)

MANIFEST_COLUMNS = ("order", "section", "chapter", "verse_range", "type")
PREVIEW_LENGTH = 80

VerseKey = tuple[int, int, WorkType]


def parse_verse_range(verse_range: str) -> list[int]:
    """``"51-53"`` -> ``[51, 52, 53]``; ``"4"`` -> ``[4]``."""
    text = (verse_range or "").strip()
    try:
        if "-" in text:
            start_text, end_text = text.split("-", 1)
            start, end = int(start_text), int(end_text)
        else:
            start = end = int(text)
    except ValueError:
        raise ManifestMalformedError(f"Invalid verse range: {verse_range!r}")
    if start < 1 or end < start:
        raise ManifestMalformedError(f"Invalid verse range: {verse_range!r}")
    return list(range(start, end + 1))


def parse_work_type(value: str) -> WorkType:
    try:
        return WORK_TYPE_ALIASES[(value or "").strip().lower()]
    except KeyError:
        raise ManifestMalformedError(
            f"Unknown type {value!r}; expected one of {sorted(WORK_TYPE_ALIASES)}"
        )


def _parse_int(record: dict[str, str], column: str, line: int) -> int:
    raw = (record.get(column) or "").strip()
    try:
        return int(raw)
    except ValueError:
        raise ManifestMalformedError(f"{column} is not an integer: {raw!r}", line)


def parse_manifest(text: str) -> list[ReorderManifestEntry]:
    """Parse manifest CSV text. Any bad row aborts the whole parse."""
    reader = csv.DictReader(io.StringIO(text))
    header = [h.strip() for h in (reader.fieldnames or [])]
    missing = [c for c in MANIFEST_COLUMNS if c not in header]
    if missing:
        raise ManifestMalformedError(f"Missing columns: {', '.join(missing)}")
    reader.fieldnames = header

    entries = []
    for record in reader:
        if not any((v or "").strip() for v in record.values() if isinstance(v, str)):
            continue
        line = reader.line_num
        order = _parse_int(record, "order", line)
        chapter = _parse_int(record, "chapter", line)
        if chapter < 1:
            raise ManifestMalformedError(f"chapter must be >= 1, got {chapter}", line)
        verse_range = (record.get("verse_range") or "").strip()
        try:
            parse_verse_range(verse_range)
            work_type = parse_work_type(record.get("type") or "")
        except ManifestMalformedError as e:
            raise ManifestMalformedError(e.message, line) from e
        entries.append(
            ReorderManifestEntry(
                order=order,
                section=(record.get("section") or "").strip(),
                chapter=chapter,
                verse_range=verse_range,
                type=work_type,
            )
        )
    return sorted(entries, key=lambda e: e.order)


def load_manifest(path: str | Path) -> list[ReorderManifestEntry]:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Manifest not found: {path}")
    entries = parse_manifest(path.read_text(encoding="utf-8-sig"))
    logger.info("Loaded %d manifest rows from %s", len(entries), path)
    return entries


def preview(text: str, length: int = PREVIEW_LENGTH) -> str:
    flat = " ".join(text.split())
    if len(flat) <= length:
        return flat
    return flat[:length] + "..."


def _gap_fill(
    engine: VerseEngine, keys: list[VerseKey], max_workers: int
) -> dict[VerseKey, AggregatedVerse | None]:
    """Look up missing verses in parallel; results keyed, order-independent."""
    if not keys:
        return {}
    logger.info("Fetching %d missing verses from the corpus", len(keys))

    def fetch(key: VerseKey) -> AggregatedVerse | None:
        chapter, verse, work_type = key
        return engine.get_verse(chapter, verse, work_type)

    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        return dict(zip(keys, pool.map(fetch, keys)))


def reorder_story(
    story: Story,
    manifest: list[ReorderManifestEntry],
    engine: VerseEngine | None = None,
    fetch_missing: bool = True,
    manifest_name: str | None = None,
    max_workers: int | None = None,
) -> ReorderResult:
    """Build a new Story whose verses follow ``manifest``.

    The input Story is not modified.
    """
    entries = sorted(manifest, key=lambda e: e.order)

    pool_index: dict[VerseKey, list[int]] = {}
    for i, verse in enumerate(story.verses):
        pool_index.setdefault(verse.key, []).append(i)

    # Resolve every slot against the pool before touching the corpus
    slots: list[tuple[ReorderManifestEntry, list[VerseKey]]] = []
    missing_keys: list[VerseKey] = []
    for entry in entries:
        keys = [(entry.chapter, v, entry.type) for v in parse_verse_range(entry.verse_range)]
        slots.append((entry, keys))
        for key in keys:
            if key not in pool_index and key not in missing_keys:
                missing_keys.append(key)

    fetched: dict[VerseKey, AggregatedVerse | None] = {}
    if fetch_missing and engine is not None:
        workers = max_workers or engine.config.gap_fill_workers
        fetched = _gap_fill(engine, missing_keys, workers)
    elif fetch_missing and missing_keys:
        logger.warning("No corpus connection; %d verses cannot be fetched", len(missing_keys))

    verses: list[AggregatedVerse] = []
    sections: list[SectionMarker] = []
    missing: list[MissingVerse] = []
    used: set[int] = set()
    emitted: set[int] = set()
    current_section: str | None = None

    for entry, keys in slots:
        if entry.section != current_section:
            current_section = entry.section
            sections.append(SectionMarker(name=entry.section, start=len(verses)))

        found = 0
        for key in keys:
            if key in pool_index:
                # Next copy not yet emitted; a repeated request reuses the first.
                # Every copy of a referenced verse counts as used.
                candidates = pool_index[key]
                index = next((i for i in candidates if i not in emitted), candidates[0])
                emitted.add(index)
                used.update(candidates)
                verses.append(story.verses[index])
                found += 1
            elif fetched.get(key) is not None:
                verses.append(fetched[key])
                found += 1
            else:
                chapter, verse, work_type = key
                logger.warning(
                    "Could not find verse - chapter %d, verse %d, type %s",
                    chapter,
                    verse,
                    work_type.value,
                )
                missing.append(
                    MissingVerse(
                        order=entry.order, chapter=chapter, verse=verse, type=work_type
                    )
                )
        logger.info(
            "Order %d: found %d/%d verses for chapter %d, verses %s, type %s",
            entry.order,
            found,
            len(keys),
            entry.chapter,
            entry.verse_range,
            entry.type.value,
        )

    unused = [
        UnusedVerse(
            chapter=v.chapter,
            verse=v.verse,
            type=v.work_type,
            translations_count=len(v.translations),
            preview=preview(v.representative.text),
        )
        for i, v in enumerate(story.verses)
        if i not in used
    ]
    unused.sort(key=lambda u: (u.type != WorkType.scripture, u.chapter, u.verse))

    now = utcnow()
    result_story = Story(
        query=story.query,
        title=story.title,
        generated_at=now,
        verses=verses,
        sections=sections,
        reordered_at=now,
        reorder_source=manifest_name,
    )
    return ReorderResult(
        story=result_story,
        unused=unused,
        missing=missing,
        fetched=sum(1 for v in fetched.values() if v is not None),
    )


def format_report(result: ReorderResult) -> str:
    """Console audit report: totals, then unused verses grouped by type."""
    story = result.story
    lines = [
        f"Total verses in output: {story.verses_count}",
        f"Total translations in output: {story.translations_count}",
        f"Verses fetched from corpus: {result.fetched}",
        f"Verses not found: {len(result.missing)}",
    ]
    if not result.unused:
        lines.append("All story verses were used.")
        return "\n".join(lines)

    lines.append("")
    lines.append(f"Unused verses ({len(result.unused)}):")
    for work_type in WorkType:
        group = [u for u in result.unused if u.type == work_type]
        if not group:
            continue
        lines.append(f"  {work_type.value} ({len(group)}):")
        for u in group:
            lines.append(
                f"    {u.chapter}:{u.verse} "
                f"[{u.translations_count} translations] {u.preview}"
            )
    return "\n".join(lines)
