"""Command-line tools for story curation and corpus loading.

    kitaab-story generate "Abraham" --output stories/abraham.xml
    kitaab-story reorder stories/abraham.xml docs/abraham.csv stories/abraham_reordered.xml
    kitaab-story load translations/en.sahih.xml --author "Saheeh International" --id en.sahih
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path

from kitaab_search.config import SearchConfig
from kitaab_search.curation import generate_story
from kitaab_search.es_engine import VerseEngine
from kitaab_search.exceptions import KitaabSearchError
from kitaab_search.ingest import create_index, index_rows, load_xml_file
from kitaab_search.reorder import format_report, load_manifest, reorder_story
from kitaab_search.story_xml import read_story, write_story

logger = logging.getLogger(__name__)


def cmd_generate(args: argparse.Namespace, engine: VerseEngine) -> int:
    output = args.output or f"story-{int(time.time() * 1000)}.xml"
    story = generate_story(engine, args.query, author=args.author, chapter=args.chapter)
    write_story(story, output)

    print("\nStory generation summary:")
    print(f'- Search term: "{story.query}"')
    if args.author:
        print(f"- Author filter: {args.author}")
    if args.chapter:
        print(f"- Chapter filter: {args.chapter}")
    print(f"- Verses included: {story.verses_count}")
    print(f"- Translations included: {story.translations_count}")
    print(f"- Output file: {output}")
    return 0


def cmd_reorder(args: argparse.Namespace, engine: VerseEngine) -> int:
    story = read_story(args.story)
    manifest = load_manifest(args.manifest)
    logger.info("Found %d verses in story", story.verses_count)

    result = reorder_story(
        story,
        manifest,
        engine=engine if args.fetch_missing else None,
        fetch_missing=args.fetch_missing,
        manifest_name=Path(args.manifest).name,
    )
    write_story(result.story, args.output)

    print(f"\nReordered story written to: {args.output}")
    print(format_report(result))
    return 0


def cmd_load(args: argparse.Namespace, engine: VerseEngine) -> int:
    create_index(engine)
    rows = load_xml_file(
        args.xml_file,
        author=args.author or Path(args.xml_file).stem,
        book_id=args.id,
        title=args.title,
        volume=args.volume,
    )
    _, failed = index_rows(engine, rows)
    return 1 if failed else 0


def cmd_create_index(args: argparse.Namespace, engine: VerseEngine) -> int:
    create_index(engine)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kitaab-story", description="Curate verse stories from the corpus"
    )
    parser.add_argument("--index", help="Index name (default: $ELASTICSEARCH_INDEX)")
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Enable verbose logging"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    gen = sub.add_parser("generate", help="Build a story from a search query")
    gen.add_argument("query", help="Search query")
    gen.add_argument("--author", help="Only include rows by this author")
    gen.add_argument("--chapter", help="Only include rows from this chapter")
    gen.add_argument("--output", help="Output XML path (default: story-<ms>.xml)")
    gen.set_defaults(func=cmd_generate)

    reorder = sub.add_parser("reorder", help="Reorder a story from a CSV manifest")
    reorder.add_argument("story", help="Input story XML")
    reorder.add_argument("manifest", help="CSV: order,section,chapter,verse_range,type")
    reorder.add_argument("output", help="Output story XML")
    reorder.add_argument(
        "--no-fetch-missing",
        dest="fetch_missing",
        action="store_false",
        help="Do not look up verses missing from the story",
    )
    reorder.set_defaults(func=cmd_reorder)

    load = sub.add_parser("load", help="Load a translation XML file into the index")
    load.add_argument("xml_file")
    load.add_argument("--author", help="Translator/narrator (default: file name)")
    load.add_argument("--id", help="Book id (default: derived from author)")
    load.add_argument("--title", help="Work title, e.g. quran or bukhari")
    load.add_argument("--volume", type=int, help="Volume number")
    load.set_defaults(func=cmd_load)

    create = sub.add_parser("create-index", help="Create the index with mappings")
    create.set_defaults(func=cmd_create_index)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    config = SearchConfig.from_env()
    if args.index:
        config = config.model_copy(update={"index": args.index})
    engine = VerseEngine(config)

    try:
        return args.func(args, engine)
    except (KitaabSearchError, FileNotFoundError) as e:
        logger.error("%s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
