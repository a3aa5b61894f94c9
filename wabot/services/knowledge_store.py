from typing import List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from wabot.logging_config import get_logger
from wabot.models import KnowledgeChunk, Product
from wabot.services.product_detector import CatalogProduct

logger = get_logger("knowledge_store")


def get_organization_products(db: Session, organization_id: UUID) -> List[CatalogProduct]:
    """Active catalog for the organization. Returns [] on error."""
    try:
        with db.begin_nested():
            rows = (
                db.query(Product)
                .filter(Product.organization_id == organization_id, Product.is_active == True)
                .all()
            )
    except Exception as e:
        logger.error(f"Error fetching products: {e}")
        return []
    return [CatalogProduct(id=str(p.id), name=p.name or "", slug=p.slug) for p in rows]


def _search(
    db: Session,
    embedding: List[float],
    organization_id: UUID,
    threshold: float,
    limit: int,
    *,
    product_id: Optional[str] = None,
    scope: Optional[str] = None,
) -> List[dict]:
    distance = KnowledgeChunk.embedding.cosine_distance(embedding)
    query = db.query(KnowledgeChunk, (1 - distance).label("similarity")).filter(
        KnowledgeChunk.organization_id == organization_id,
        distance <= 1 - threshold,
    )
    if product_id is not None:
        query = query.filter(KnowledgeChunk.product_id == product_id)
    if scope is not None:
        query = query.filter(KnowledgeChunk.scope == scope)

    rows = query.order_by(distance).limit(limit).all()
    return [
        {
            "content": chunk.content,
            "title": chunk.title,
            "scope": chunk.scope,
            "category": chunk.category,
            "product_id": str(chunk.product_id) if chunk.product_id else None,
            "similarity": float(similarity),
        }
        for chunk, similarity in rows
    ]


def search_knowledge_all(
    db: Session, embedding: List[float], organization_id: UUID, threshold: float, limit: int
) -> List[dict]:
    """Vector search over every chunk of the organization."""
    return _search(db, embedding, organization_id, threshold, limit)


def search_knowledge_product(
    db: Session,
    embedding: List[float],
    organization_id: UUID,
    product_id: str,
    threshold: float,
    limit: int,
) -> List[dict]:
    """Vector search restricted to chunks scoped to one product."""
    return _search(db, embedding, organization_id, threshold, limit, product_id=product_id, scope="product")


def search_knowledge_global(
    db: Session, embedding: List[float], organization_id: UUID, threshold: float, limit: int
) -> List[dict]:
    """Vector search restricted to organization-wide (global) chunks."""
    return _search(db, embedding, organization_id, threshold, limit, scope="global")
