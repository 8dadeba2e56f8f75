"""Story document serialization (XML).

Stories are built as typed models and written in a single pass; every
attribute and text value goes through ``escape_xml``. Reading uses
ElementTree and rebuilds the same models.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from datetime import datetime
from pathlib import Path

from kitaab_search.models import AggregatedVerse, SectionMarker, Story, VerseRow

logger = logging.getLogger(__name__)

_XML_ESCAPES = [
    ("&", "&amp;"),  # must run first
    ("<", "&lt;"),
    (">", "&gt;"),
    ('"', "&quot;"),
    ("'", "&apos;"),
]


def escape_xml(value: object) -> str:
    """Escape the five XML reserved characters. None becomes ''."""
    if value is None:
        return ""
    text = str(value)
    for char, entity in _XML_ESCAPES:
        text = text.replace(char, entity)
    return text


def story_title(query: str) -> str:
    return f'Story generated from search: "{query}"'


def _attrs(**values: object) -> str:
    return "".join(
        f' {name}="{escape_xml(value)}"'
        for name, value in values.items()
        if value is not None
    )


def _verse_lines(verse: AggregatedVerse, indent: str) -> list[str]:
    rep = verse.representative
    inner = indent + "  "
    lines = [
        f"{indent}<verse"
        f"{_attrs(chapter=verse.chapter, verse=verse.verse, author=rep.author, volume=rep.volume)}>",
        f"{inner}<chapter_name>{escape_xml(rep.chapter_name)}</chapter_name>",
        f"{inner}<book_id>{escape_xml(rep.book_id)}</book_id>",
    ]
    if rep.title:
        lines.append(f"{inner}<title>{escape_xml(rep.title)}</title>")
    lines.append(f"{inner}<score>{rep.score}</score>")
    lines.append(f"{inner}<text>{escape_xml(rep.text)}</text>")
    lines.append(f"{inner}<translations>")
    for t in verse.translations:
        attrs = _attrs(author=t.author, book_id=t.book_id, volume=t.volume)
        lines.append(f"{inner}  <translation{attrs}>{escape_xml(t.text)}</translation>")
    lines.append(f"{inner}</translations>")
    lines.append(f"{indent}</verse>")
    return lines


def story_to_xml(story: Story) -> str:
    """Render a Story as an XML document string."""
    lines = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        f"<story{_attrs(query=story.query, generated=story.generated_at.isoformat())}>",
        "  <metadata>",
        f"    <title>{escape_xml(story.title or story_title(story.query))}</title>",
        f"    <verses_count>{story.verses_count}</verses_count>",
        f"    <translations_count>{story.translations_count}</translations_count>",
    ]
    if story.reordered_at is not None:
        lines.append(f"    <reordered>{story.reordered_at.isoformat()}</reordered>")
    if story.reorder_source is not None:
        lines.append(
            f"    <reorder_source>{escape_xml(story.reorder_source)}</reorder_source>"
        )
    lines.append("  </metadata>")
    lines.append("")
    lines.append("  <verses>")

    sections_at: dict[int, list[SectionMarker]] = {}
    for marker in story.sections:
        sections_at.setdefault(marker.start, []).append(marker)

    for i, verse in enumerate(story.verses):
        for marker in sections_at.pop(i, []):
            lines.append(f"    <section{_attrs(name=marker.name)} />")
        lines.extend(_verse_lines(verse, "    "))
    # Sections that start after the last verse (empty trailing sections)
    for start in sorted(sections_at):
        for marker in sections_at[start]:
            lines.append(f"    <section{_attrs(name=marker.name)} />")

    lines.append("  </verses>")
    lines.append("</story>")
    return "\n".join(lines) + "\n"


def write_story(story: Story, path: str | Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(story_to_xml(story), encoding="utf-8")
    logger.info(
        "Wrote story %s (%d verses, %d translations)",
        path,
        story.verses_count,
        story.translations_count,
    )
    return path


# ----------------------------------------------------------------------
# Reading
# ----------------------------------------------------------------------


def _text(elem: ET.Element | None, tag: str, default: str = "") -> str:
    if elem is None:
        return default
    child = elem.find(tag)
    if child is None or child.text is None:
        return default
    return child.text


def _optional_int(value: str | None) -> int | None:
    return int(value) if value not in (None, "") else None


def _parse_verse(elem: ET.Element) -> AggregatedVerse:
    chapter = int(elem.get("chapter", "0"))
    verse = int(elem.get("verse", "0"))
    chapter_name = _text(elem, "chapter_name")
    title = _text(elem, "title")
    score_text = _text(elem, "score", "0")

    representative = VerseRow(
        chapter=chapter,
        verse=verse,
        text=_text(elem, "text"),
        author=elem.get("author", ""),
        book_id=_text(elem, "book_id"),
        chapter_name=chapter_name,
        title=title,
        volume=_optional_int(elem.get("volume")),
        score=float(score_text) if score_text else 0.0,
    )

    translations = []
    for t in elem.findall("translations/translation"):
        # Stories written by older tools mark missing translations this way
        if t.get("available") == "false":
            continue
        translations.append(
            VerseRow(
                chapter=chapter,
                verse=verse,
                text=t.text or "",
                author=t.get("author", ""),
                book_id=t.get("book_id", ""),
                chapter_name=chapter_name,
                title=title,
                volume=_optional_int(t.get("volume")),
            )
        )
    if not translations:
        translations = [representative]

    return AggregatedVerse(
        chapter=chapter,
        verse=verse,
        representative=representative,
        translations=translations,
        score=representative.score,
    )


def parse_story(xml_text: str) -> Story:
    """Parse a Story XML document."""
    root = ET.fromstring(xml_text)
    if root.tag != "story":
        raise ValueError(f"Expected <story> root element, got <{root.tag}>")

    metadata = root.find("metadata")
    verses: list[AggregatedVerse] = []
    sections: list[SectionMarker] = []
    verses_elem = root.find("verses")
    if verses_elem is not None:
        for child in verses_elem:
            if child.tag == "section":
                sections.append(
                    SectionMarker(name=child.get("name", ""), start=len(verses))
                )
            elif child.tag == "verse":
                verses.append(_parse_verse(child))

    extra = {}
    generated = root.get("generated")
    if generated:
        extra["generated_at"] = datetime.fromisoformat(generated)
    reordered = _text(metadata, "reordered")
    return Story(
        query=root.get("query", ""),
        title=_text(metadata, "title"),
        verses=verses,
        sections=sections,
        reordered_at=datetime.fromisoformat(reordered) if reordered else None,
        reorder_source=_text(metadata, "reorder_source") or None,
        **extra,
    )


def read_story(path: str | Path) -> Story:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Story not found: {path}")
    return parse_story(path.read_text(encoding="utf-8"))
