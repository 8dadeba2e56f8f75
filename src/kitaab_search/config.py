"""Search configuration, passed explicitly to each component."""

from __future__ import annotations

import os
from enum import Enum

from pydantic import BaseModel, Field


class Strategy(str, Enum):
    """How matching rows are turned into a page of results."""

    row_window = "row_window"  # One result per translator row
    composite = "composite"  # One result per (chapter, verse) bucket


class FieldBoost(BaseModel):
    field: str
    boost: float


# Sub-fields of ``text`` created by kitaab_search.ingest.INDEX_MAPPINGS
DEFAULT_BOOSTS = [
    FieldBoost(field="text", boost=1.0),  # base analyzer
    FieldBoost(field="text.stemmed", boost=1.2),
    FieldBoost(field="text.joined", boost=1.5),  # shingles, typo tolerant
    FieldBoost(field="text.prefix", boost=0.8),  # edge n-grams, typeahead
]


class HighlightConfig(BaseModel):
    enabled: bool = True
    pre_tag: str = "<em>"
    post_tag: str = "</em>"
    fragment_size: int = 150
    number_of_fragments: int = 3


class SearchConfig(BaseModel):
    """Connection settings, boosts and limits for the verse index."""

    url: str = "http://localhost:9200"
    api_key: str | None = None
    username: str | None = None
    password: str | None = None
    index: str = "kitaab"
    verify_certs: bool = True
    request_timeout: float = 30.0

    strategy: Strategy = Strategy.composite
    default_page_size: int = 10
    boosts: list[FieldBoost] = Field(default_factory=lambda: list(DEFAULT_BOOSTS))
    highlight: HighlightConfig = Field(default_factory=HighlightConfig)

    # Upper bound on (chapter, verse) buckets per aggregation
    max_buckets: int = 10_000
    # Upper bound on rows returned per bucket/work type (ES caps top_hits at 100)
    translations_per_verse: int = 100
    # Parallel corpus lookups when reorder gap-fills missing verses
    gap_fill_workers: int = 4

    @classmethod
    def from_env(cls) -> SearchConfig:
        """Build a config from ELASTICSEARCH_* and related env vars."""
        values: dict = {}
        env = {
            "url": "ELASTICSEARCH_URL",
            "api_key": "ELASTICSEARCH_APIKEY",
            "username": "ELASTICSEARCH_USERNAME",
            "password": "ELASTICSEARCH_PASSWORD",
            "index": "ELASTICSEARCH_INDEX",
            "verify_certs": "ELASTICSEARCH_VERIFY_CERTS",
            "request_timeout": "ELASTICSEARCH_TIMEOUT",
            "strategy": "SEARCH_STRATEGY",
            "default_page_size": "DEFAULT_PAGE_SIZE",
            "gap_fill_workers": "GAP_FILL_WORKERS",
        }
        for field_name, var in env.items():
            raw = os.getenv(var)
            if raw:
                values[field_name] = raw
        # pydantic coerces "false"/"0"/"30" etc. to the declared types
        return cls(**values)
