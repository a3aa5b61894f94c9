from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Iterable, Mapping

import yaml

from wabot.logging_config import get_logger

logger = get_logger("product_detector")

_ALIASES_PATH = Path(__file__).resolve().parents[1] / "knowledge" / "product_aliases.yaml"

DISAMBIGUATION_MARKERS = ("only", "just", "just the", "só", "somente", "apenas")
_DISAMBIGUATION_PATTERN = re.compile(
    r"\b(" + "|".join(re.escape(marker) for marker in DISAMBIGUATION_MARKERS) + r")\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class CatalogProduct:
    id: str
    name: str
    slug: str | None = None


@lru_cache(maxsize=4)
def _load_aliases(path: Path) -> dict[str, tuple[str, ...]]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    raw = data.get("product_aliases") if isinstance(data, dict) else None
    if not isinstance(raw, dict):
        return {}
    aliases: dict[str, tuple[str, ...]] = {}
    for slug, phrases in raw.items():
        if not isinstance(phrases, list):
            continue
        cleaned = tuple(str(p).strip().lower() for p in phrases if str(p).strip())
        if cleaned:
            aliases[str(slug).lower()] = cleaned
    return aliases


def load_product_aliases() -> dict[str, tuple[str, ...]]:
    """Hand-maintained ``slug -> phrases`` map shipped with the service."""
    return _load_aliases(_ALIASES_PATH)


def is_disambiguation_message(text: str) -> bool:
    """True for corrections like "only the visa" that narrow an earlier product reference."""
    if not text:
        return False
    return bool(_DISAMBIGUATION_PATTERN.search(text))


def _slug_variants(slug: str) -> list[str]:
    return [slug.replace("-", " "), slug.replace("-", "")]


def detect_products(
    text: str,
    catalog: Iterable[CatalogProduct],
    aliases: Mapping[str, Iterable[str]] | None = None,
) -> set[str]:
    """Return ids of every catalog product referenced in ``text``.

    Matching runs aliases first, then literal name and slug, then slug
    variants. All matches accumulate; an empty set means no product scope.
    """
    if not text:
        return set()

    message_lower = text.lower()
    products = list(catalog)
    aliases = load_product_aliases() if aliases is None else aliases
    found: set[str] = set()

    by_slug = {p.slug.lower(): p for p in products if p.slug}
    for slug, phrases in aliases.items():
        product = by_slug.get(str(slug).lower())
        if product is None:
            continue
        if any(phrase.lower() in message_lower for phrase in phrases):
            found.add(product.id)

    for product in products:
        if product.name and product.name.lower() in message_lower:
            found.add(product.id)
        if product.slug and product.slug.lower() in message_lower:
            found.add(product.id)

    for product in products:
        if not product.slug:
            continue
        for variation in _slug_variants(product.slug.lower()):
            if variation and variation in message_lower:
                found.add(product.id)

    if found:
        logger.debug(f"Detected products {sorted(found)} in '{text[:40]}'")
    return found
