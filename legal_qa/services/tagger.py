# =============================================================================
# Auto-Tagger — Keyword Classification of Legal Topics
# =============================================================================
#
# Assigns topic tags ("Наследство", "ДТП", ...) to a question/answer pair by
# plain substring matching against a keyword table.
#
# DESIGN DECISION: The keyword table is configuration, not code.
# It lives in data/tag_keywords.json (override with TAG_KEYWORDS_PATH) and
# also carries each tag's color and description, which scripts/init_db.py
# and the API lifespan use to seed the tags table.
#
# DESIGN DECISION: Loaded once, then immutable. get_tag_catalog() is cached
# and the catalog exposes only read-only views (MappingProxyType, frozenset),
# so concurrent pipelines can share it without locking.
#
# MATCHING RULE:
#   haystack = lower(question + " " + answer_text)
#   tag matches if ANY of its keywords is a substring of the haystack
# No tokenisation or morphology: "наследство" matches "наследство" inside
# "наследством" but not "наследства".
# =============================================================================

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from functools import lru_cache
from importlib import resources
from pathlib import Path
from types import MappingProxyType

from legal_qa.config import settings

logger = logging.getLogger(__name__)

_DEFAULT_COLOR = "#3B82F6"


@dataclass(frozen=True)
class TagDefinition:
    """One row of the keyword table."""

    name: str
    color: str
    description: str
    keywords: frozenset[str]


class TagCatalog:
    """Immutable tag-name → TagDefinition table with a classifier."""

    def __init__(self, definitions: Mapping[str, TagDefinition]) -> None:
        self._definitions = MappingProxyType(dict(definitions))

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Mapping]) -> TagCatalog:
        """
        Build a catalog from the JSON layout:
            {"<tag name>": {"color": ..., "description": ..., "keywords": [...]}}
        """
        definitions: dict[str, TagDefinition] = {}
        for name, entry in raw.items():
            keywords = frozenset(
                kw.strip().lower() for kw in entry.get("keywords", []) if kw.strip()
            )
            if not keywords:
                logger.warning("Tag '%s' has no keywords and will never match", name)
            definitions[name] = TagDefinition(
                name=name,
                color=entry.get("color", _DEFAULT_COLOR),
                description=entry.get("description", ""),
                keywords=keywords,
            )
        return cls(definitions)

    @property
    def definitions(self) -> Mapping[str, TagDefinition]:
        return self._definitions

    def __len__(self) -> int:
        return len(self._definitions)

    def classify(self, question: str, answer_text: str = "") -> frozenset[str]:
        """
        Tag names whose keywords occur in the question or answer text.

        Deterministic, and empty input yields an empty set.
        """
        haystack = f"{question} {answer_text}".strip().lower()
        if not haystack:
            return frozenset()

        return frozenset(
            definition.name
            for definition in self._definitions.values()
            if any(keyword in haystack for keyword in definition.keywords)
        )


def load_tag_catalog(path: str | Path | None = None) -> TagCatalog:
    """Read the keyword table from `path`, or the packaged default."""
    if path is not None:
        raw_text = Path(path).read_text(encoding="utf-8")
        source = str(path)
    else:
        raw_text = (
            resources.files("legal_qa.data")
            .joinpath("tag_keywords.json")
            .read_text(encoding="utf-8")
        )
        source = "legal_qa/data/tag_keywords.json"

    catalog = TagCatalog.from_mapping(json.loads(raw_text))
    logger.info("Loaded %d tag definitions from %s", len(catalog), source)
    return catalog


@lru_cache
def get_tag_catalog() -> TagCatalog:
    """Process-wide catalog, loaded on first use."""
    return load_tag_catalog(settings.tag_keywords_path)
