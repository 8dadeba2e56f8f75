"""FastAPI HTTP layer wrapping VerseEngine."""

from __future__ import annotations

import hmac
import logging
import os
import re
from pathlib import Path

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from kitaab_search.config import SearchConfig, Strategy
from kitaab_search.es_engine import VerseEngine
from kitaab_search.exceptions import (
    IndexUnavailableError,
    InvalidPaginationError,
    InvalidQueryError,
)
from kitaab_search.models import WorkType
from kitaab_search.story_xml import read_story

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Kitaab Search API",
    description="Verse search, aggregation and curated stories",
    version="0.1.0",
)

API_KEY = os.getenv("API_KEY")
if not API_KEY:
    logger.warning("API_KEY not set. All requests will be allowed.")

# Story XML files served by /api/stories (override with STORY_DIR env var)
STORY_DIR = Path(
    os.environ.get("STORY_DIR", Path(__file__).parent.parent.parent / "stories")
)
_STORY_NAME = re.compile(r"^[a-z0-9][a-z0-9_-]*$")

# Seconds clients should wait before retrying when the index is down
RETRY_AFTER = "5"


@app.middleware("http")
async def verify_api_key(request: Request, call_next):
    if API_KEY and request.url.path != "/health":
        key = request.headers.get("x-api-key", "")
        if not hmac.compare_digest(key, API_KEY):
            return JSONResponse(status_code=401, content={"detail": "Invalid API key"})
    return await call_next(request)


@app.exception_handler(InvalidQueryError)
@app.exception_handler(InvalidPaginationError)
async def bad_request_handler(request: Request, exc: Exception):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(IndexUnavailableError)
async def index_unavailable_handler(request: Request, exc: IndexUnavailableError):
    return JSONResponse(
        status_code=503,
        content={"detail": exc.message, "retryable": True},
        headers={"Retry-After": RETRY_AFTER},
    )


@app.get("/health")
def health():
    """Unauthenticated health check."""
    return {"status": "ok"}


_engine: VerseEngine | None = None


def get_engine() -> VerseEngine:
    """Shared engine; tests override this dependency with a fake."""
    global _engine
    if _engine is None:
        _engine = VerseEngine(SearchConfig.from_env())
    return _engine


# --- Endpoints ---


@app.get("/api/search")
def search(
    q: str = Query(..., description="Free-text query"),
    page: int = 1,
    size: int | None = None,
    author: str | None = None,
    chapter: int | None = None,
    work_types: list[WorkType] | None = Query(default=None),
    strategy: Strategy | None = None,
    engine: VerseEngine = Depends(get_engine),
):
    """Search verses; one result per unique (chapter, verse)."""
    result = engine.search(
        q,
        page=page,
        size=size,
        author=author,
        chapter=chapter,
        work_types=work_types,
        strategy=strategy,
    )
    return result.model_dump()


@app.get("/api/verses/{chapter}/{verse}")
def get_verse(
    chapter: int,
    verse: int,
    type: WorkType | None = None,
    engine: VerseEngine = Depends(get_engine),
):
    """All translations of one verse, sorted by author."""
    result = engine.get_verse(chapter, verse, type)
    if result is None:
        raise HTTPException(status_code=404, detail=f"Verse not found: {chapter}:{verse}")
    return result.model_dump()


@app.get("/api/authors")
def list_authors(engine: VerseEngine = Depends(get_engine)):
    """Translators and narrators present in the corpus."""
    return engine.list_authors()


@app.get("/api/stories")
def list_stories():
    """Names of the published story documents."""
    if not STORY_DIR.exists():
        return []
    return [p.stem for p in sorted(STORY_DIR.glob("*.xml"))]


@app.get("/api/stories/{name}")
def get_story(name: str):
    """Load a published story by name."""
    if not _STORY_NAME.match(name):
        raise HTTPException(status_code=404, detail=f"Story not found: {name}")
    try:
        story = read_story(STORY_DIR / f"{name}.xml")
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail=f"Story not found: {name}")
    data = story.model_dump()
    data["verses_count"] = story.verses_count
    data["translations_count"] = story.translations_count
    return data


def main():
    """Run the API server."""
    import uvicorn

    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
