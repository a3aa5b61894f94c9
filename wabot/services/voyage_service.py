import os
from typing import List, Optional

import httpx

from wabot.config import settings
from wabot.logging_config import get_logger
from wabot.models.knowledge_chunk import EMBEDDING_DIMENSIONS

logger = get_logger("voyage_service")

VOYAGE_API_URL = os.environ.get("VOYAGE_API_URL", "https://api.voyageai.com/v1")
EMBEDDING_MODEL = os.environ.get("VOYAGE_EMBEDDING_MODEL", "voyage-3")
RERANK_MODEL = os.environ.get("VOYAGE_RERANK_MODEL", "rerank-2")
VOYAGE_TIMEOUT_SECONDS = float(os.environ.get("VOYAGE_TIMEOUT_SECONDS", "15"))


def _headers(api_key: str) -> dict:
    return {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }


def generate_embedding(text: str, api_key: Optional[str] = None) -> Optional[List[float]]:
    """Embed a search query with Voyage. Returns None on any failure."""
    api_key = api_key or settings.voyage_api_key
    if not api_key:
        logger.error("VOYAGE_API_KEY not configured")
        return None

    try:
        with httpx.Client(timeout=VOYAGE_TIMEOUT_SECONDS) as client:
            response = client.post(
                f"{VOYAGE_API_URL}/embeddings",
                headers=_headers(api_key),
                json={"model": EMBEDDING_MODEL, "input": text, "input_type": "query"},
            )
        if response.status_code != 200:
            logger.error(f"Voyage embedding error: {response.status_code} - {response.text}")
            return None

        data = response.json()
        items = data.get("data") or []
        embedding = items[0].get("embedding") if items else None
        if not embedding:
            logger.error("No embedding in Voyage response")
            return None

        if len(embedding) != EMBEDDING_DIMENSIONS:
            logger.error(
                f"Embedding dimension mismatch: got {len(embedding)}, expected {EMBEDDING_DIMENSIONS}"
            )
            return None

        return embedding
    except Exception as e:
        logger.error(f"Error generating embedding: {e}")
        return None


def rerank_results(
    query: str,
    documents: List[str],
    top_k: int,
    api_key: Optional[str] = None,
) -> List[int]:
    """Return indices of the ``top_k`` most relevant documents, best first.

    Short lists are returned as-is without a network call; any failure falls
    back to the first ``top_k`` documents in their original order.
    """
    if len(documents) <= top_k:
        return list(range(len(documents)))

    fallback = list(range(top_k))
    api_key = api_key or settings.voyage_api_key
    if not api_key:
        logger.warning("VOYAGE_API_KEY not configured, skipping rerank")
        return fallback

    try:
        with httpx.Client(timeout=VOYAGE_TIMEOUT_SECONDS) as client:
            response = client.post(
                f"{VOYAGE_API_URL}/rerank",
                headers=_headers(api_key),
                json={"model": RERANK_MODEL, "query": query, "documents": documents, "top_k": top_k},
            )
        if response.status_code != 200:
            logger.error(f"Voyage rerank error: {response.status_code} - {response.text}")
            return fallback

        results = response.json().get("data") or []
        ranked = sorted(results, key=lambda r: r.get("relevance_score", 0.0), reverse=True)
        indices = [r["index"] for r in ranked if isinstance(r.get("index"), int) and 0 <= r["index"] < len(documents)]
        return indices[:top_k] or fallback
    except Exception as e:
        logger.error(f"Error reranking: {e}")
        return fallback
