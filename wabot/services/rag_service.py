"""Product-aware hybrid knowledge retrieval.

Flow for one inbound batch:

1. skip gate for acknowledgements/greetings (no network calls),
2. search context from the current text plus recent inbound turns,
3. product scoping with the product detector (history fallback),
4. Voyage embedding of the search context,
5. product + global vector search, emergency low-threshold retry, prefix dedup,
6. Voyage rerank down to ``TOP_K_AFTER_RERANK``.

Every external failure degrades to a smaller or empty result; nothing here
raises to the caller.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from wabot.logging_config import get_logger
from wabot.services.alert_service import alert_warning
from wabot.services.knowledge_store import (
    get_organization_products,
    search_knowledge_all,
    search_knowledge_global,
    search_knowledge_product,
)
from wabot.services.product_detector import (
    CatalogProduct,
    detect_products,
    is_disambiguation_message,
    load_product_aliases,
)
from wabot.services.voyage_service import generate_embedding, rerank_results

logger = get_logger("rag_service")

CANDIDATE_COUNT = int(os.environ.get("RAG_CANDIDATE_COUNT", "30"))
LOW_THRESHOLD = float(os.environ.get("RAG_LOW_THRESHOLD", "0.30"))
EMERGENCY_THRESHOLD = float(os.environ.get("RAG_EMERGENCY_THRESHOLD", "0.20"))
TOP_K_AFTER_RERANK = 5
HISTORY_CONTEXT_MESSAGES = 15
SHORT_MESSAGE_CHARS = 50
SHORT_MESSAGE_WORDS = 5
PRODUCT_HISTORY_LOOKBACK = 5
DEDUP_PREFIX_CHARS = 100
MIN_ALNUM_CHARS = 3

ACKNOWLEDGEMENT_PHRASES = {
    "ok",
    "okay",
    "okk",
    "blz",
    "beleza",
    "certo",
    "entendi",
    "entendido",
    "perfeito",
    "show",
    "top",
    "massa",
    "legal",
    "combinado",
    "pode ser",
    "sim",
    "não",
    "nao",
    "got it",
    "sure",
    "cool",
}

GREETING_PHRASES = {
    "oi",
    "olá",
    "ola",
    "opa",
    "e aí",
    "e ai",
    "bom dia",
    "boa tarde",
    "boa noite",
    "hi",
    "hello",
    "hey",
}

FAREWELL_PHRASES = {
    "tchau",
    "até mais",
    "ate mais",
    "até logo",
    "ate logo",
    "falou",
    "bye",
    "see you",
}

THANKS_PHRASES = {
    "obrigado",
    "obrigada",
    "obg",
    "brigado",
    "brigada",
    "valeu",
    "vlw",
    "thanks",
    "thank you",
}

FILLER_PHRASES = ACKNOWLEDGEMENT_PHRASES | GREETING_PHRASES | FAREWELL_PHRASES | THANKS_PHRASES

FILLER_PATTERNS = (
    re.compile(r"^(k|h?a|h?e|rs)\1*$"),  # kkkk, haha, hehe, rsrs
    re.compile(r"^(muito )?(obrigad[oa]|valeu|thanks|thank you)( \S+){0,2}$"),
    re.compile(r"^(oi|ol[aá]|opa|hi|hello|hey)( \S+){0,2}$"),
    re.compile(r"^(bom dia|boa tarde|boa noite)( \S+){0,2}$"),
    re.compile(r"^(tchau|at[eé] (mais|logo|amanh[aã])|bye)( \S+){0,2}$"),
    re.compile(r"^(ok|okay|beleza|blz|certo|entendi|perfeito)( \S+){0,2}$"),
)

NEEDS_ANSWER_KEYWORDS = (
    "preço",
    "preco",
    "valor",
    "quanto",
    "custa",
    "prazo",
    "documento",
    "documentos",
    "link",
    "como",
    "onde",
    "quando",
    "qual",
    "quais",
    "price",
    "cost",
    "deadline",
    "document",
    "how",
    "where",
    "when",
    "which",
)


@dataclass(frozen=True)
class RAGContext:
    content: str
    scope: str
    category: str
    title: Optional[str] = None


def normalize_for_matching(text: str) -> str:
    """Casefold, collapse whitespace and trim surrounding punctuation."""
    if not text:
        return ""
    normalized = text.strip().casefold()
    normalized = re.sub(r"\s+", " ", normalized)
    normalized = re.sub(r"^[^\w]+|[^\w]+$", "", normalized)
    return normalized


def _contains_keyword(normalized: str, keywords: Iterable[str]) -> bool:
    for keyword in keywords:
        if not keyword:
            continue
        if re.search(rf"(?<!\w){re.escape(keyword.lower())}(?!\w)", normalized):
            return True
    return False


def _product_keywords(catalog: Iterable[CatalogProduct] = ()) -> list[str]:
    """Alias phrases plus the catalog's display names and slugs."""
    keywords: list[str] = []
    for slug, phrases in load_product_aliases().items():
        keywords.append(slug)
        keywords.append(slug.replace("-", " "))
        keywords.extend(phrases)
    for product in catalog:
        keywords.append(product.name)
        if product.slug:
            keywords.append(product.slug)
            keywords.append(product.slug.replace("-", " "))
    return keywords


def is_filler_message(text: str) -> bool:
    normalized = normalize_for_matching(text)
    alnum = re.sub(r"[\W_]+", "", normalized)
    if len(alnum) < MIN_ALNUM_CHARS:
        return True
    if normalized in FILLER_PHRASES:
        return True
    return any(pattern.match(normalized) for pattern in FILLER_PATTERNS)


def should_skip_retrieval(text: str, product_keywords: Optional[Iterable[str]] = None) -> bool:
    """True for acknowledgements/greetings/farewells that carry no question.

    Short fillers that still mention something answerable (price, deadline,
    a product, ...) are kept.
    """
    if not is_filler_message(text):
        return False

    normalized = normalize_for_matching(text)
    if len(normalized.split()) < SHORT_MESSAGE_WORDS:
        keywords = list(NEEDS_ANSWER_KEYWORDS)
        keywords.extend(_product_keywords() if product_keywords is None else product_keywords)
        if _contains_keyword(normalized, keywords):
            return False
    return True


def extract_search_context(
    current_message: str,
    history: Sequence[dict],
    max_messages: int = HISTORY_CONTEXT_MESSAGES,
) -> str:
    """Build the embedding query.

    Only inbound (customer) turns are used so the agent's own phrasing does not
    leak into the query, and only when the current message is short.
    """
    recent_user_messages = " ".join(
        content
        for content in (
            (m.get("content") or "").strip()
            for m in [m for m in history if m.get("direction") == "inbound"][-max_messages:]
        )
        if content
    )

    if len(current_message) < SHORT_MESSAGE_CHARS and recent_user_messages:
        return f"{recent_user_messages} {current_message}"
    return current_message


def detect_products_for_query(
    message: str,
    history: Sequence[dict],
    catalog: Sequence[CatalogProduct],
    aliases=None,
) -> set[str]:
    detected = detect_products(message, catalog, aliases)
    if detected:
        return detected

    # A correction like "only the visa" must not inherit older product mentions.
    if is_disambiguation_message(message):
        return set()

    for msg in reversed(list(history)[-PRODUCT_HISTORY_LOOKBACK:]):
        content = msg.get("content")
        if not content:
            continue
        detected = detect_products(content, catalog, aliases)
        if detected:
            return detected
    return set()


def deduplicate_candidates(candidates: Iterable[dict]) -> List[dict]:
    """Keep the first candidate for each content prefix."""
    seen: set[str] = set()
    unique: List[dict] = []
    for candidate in candidates:
        key = (candidate.get("content") or "")[:DEDUP_PREFIX_CHARS]
        if key in seen:
            continue
        seen.add(key)
        unique.append(candidate)
    return unique


def _safe_search(db: Session, label: str, search_func, *args) -> List[dict]:
    # A failed statement aborts the whole PostgreSQL transaction unless it ran in a savepoint.
    try:
        with db.begin_nested():
            return list(search_func(db, *args) or [])
    except Exception as e:
        logger.error(f"{label} error: {e}")
        alert_warning("Knowledge search failed", {"search": label, "error": str(e)[:200]})
        return []


def search_candidates(
    db: Session,
    embedding: List[float],
    organization_id: UUID,
    product_ids: Iterable[str],
) -> List[dict]:
    """Hybrid search: per-product + global, or whole org; emergency retry when empty."""
    candidates: List[dict] = []
    product_ids = sorted(product_ids)

    if product_ids:
        for product_id in product_ids:
            candidates.extend(
                _safe_search(
                    db,
                    "search_knowledge_product",
                    search_knowledge_product,
                    embedding,
                    organization_id,
                    product_id,
                    LOW_THRESHOLD,
                    CANDIDATE_COUNT,
                )
            )
        candidates.extend(
            _safe_search(
                db,
                "search_knowledge_global",
                search_knowledge_global,
                embedding,
                organization_id,
                LOW_THRESHOLD,
                CANDIDATE_COUNT,
            )
        )
    else:
        candidates = _safe_search(
            db,
            "search_knowledge_all",
            search_knowledge_all,
            embedding,
            organization_id,
            LOW_THRESHOLD,
            CANDIDATE_COUNT,
        )

    if not candidates:
        logger.info("No candidates found, trying emergency fallback")
        candidates = _safe_search(
            db,
            "search_knowledge_all_emergency",
            search_knowledge_all,
            embedding,
            organization_id,
            EMERGENCY_THRESHOLD,
            CANDIDATE_COUNT,
        )

    return deduplicate_candidates(candidates)


def get_relevant_context(
    db: Session,
    message: str,
    organization_id: UUID,
    history: Optional[Sequence[dict]] = None,
) -> List[RAGContext]:
    """Return up to ``TOP_K_AFTER_RERANK`` knowledge passages, most relevant first."""
    history = list(history or [])

    try:
        catalog = get_organization_products(db, organization_id) if is_filler_message(message) else None
        # Fillers still get retrieval when they name a catalog product.
        if catalog is not None and should_skip_retrieval(message, _product_keywords(catalog)):
            logger.info(f"RAG skipped for filler message '{message[:30]}'")
            return []

        if catalog is None:
            catalog = get_organization_products(db, organization_id)
        product_ids = detect_products_for_query(message, history, catalog)
        search_context = extract_search_context(message, history)

        logger.info(
            "RAG retrieval started",
            extra={
                "context": {
                    "organization_id": str(organization_id),
                    "products": sorted(product_ids),
                    "search_context": search_context[:100],
                }
            },
        )

        embedding = generate_embedding(search_context)
        if not embedding:
            logger.error("Failed to generate embedding, continuing without knowledge")
            return []

        candidates = search_candidates(db, embedding, organization_id, product_ids)
        if not candidates:
            logger.info("No knowledge candidates found")
            return []

        indices = rerank_results(search_context, [c.get("content") or "" for c in candidates], TOP_K_AFTER_RERANK)

        results = [
            RAGContext(
                content=chunk.get("content") or "",
                title=chunk.get("title"),
                scope=chunk.get("scope") or "global",
                category=chunk.get("category") or "geral",
            )
            for chunk in (candidates[i] for i in indices if 0 <= i < len(candidates))
        ]
        logger.info(f"RAG retrieval complete: {len(results)} chunks from {len(candidates)} candidates")
        return results
    except Exception as e:
        logger.error(f"RAG retrieval failed: {e}", exc_info=True)
        return []


def format_rag_context(contexts: Sequence[RAGContext]) -> str:
    """Render passages for the system prompt, with the anti-hallucination rule."""
    if not contexts:
        return ""

    parts = [
        "## KNOWLEDGE BASE (MANDATORY SOURCE)",
        "The passages below contain VERIFIED information. Use them to answer:",
        "",
    ]
    for ctx in contexts:
        scope_tag = "PRODUCT" if ctx.scope == "product" else "GENERAL"
        header = f"### {scope_tag} | {ctx.category.upper()}"
        if ctx.title:
            header += f" | {ctx.title}"
        parts.extend(["---", header, ctx.content, ""])

    parts.extend(
        [
            "ANTI-HALLUCINATION RULE (HIGHEST PRIORITY):",
            "If the answer is NOT in the passages above, tell the customer you cannot confirm it "
            "right now and offer to check with the team.",
            "NEVER invent prices, deadlines, requirements or any detail that is not explicitly documented.",
        ]
    )
    return "\n".join(parts)
