"""
Nearest-neighbour retrieval over the embedded document corpus
"""
from typing import List, Dict, Any, Optional
from dataclasses import dataclass
from uuid import UUID
import time
import numpy as np
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import structlog

from rag_grader.config import settings
from rag_grader.core.exceptions import ValidationError
from rag_grader.core.llm import LlmGateway, get_llm_gateway
from rag_grader.core.logging import log_execution_time
from rag_grader.core.retry import call_with_provider_retry
from rag_grader.db import async_session, dialect_name
from rag_grader.models import RagDocument

logger = structlog.get_logger(__name__)

MAX_CONTENT_LENGTH = 10000
MAX_SOURCE_LENGTH = 512


@dataclass
class RetrievedDocument:
    """Corpus document, with its L2 distance when returned from a query"""
    id: UUID
    content: str
    source: Optional[str]
    distance: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        data = {
            "id": str(self.id),
            "source": self.source,
            "content": self.content,
        }
        if self.distance is not None:
            data["distance"] = self.distance
        return data


def l2_distances(query: List[float], matrix: np.ndarray) -> np.ndarray:
    """Euclidean distance from ``query`` to every row of ``matrix``"""
    if matrix.size == 0:
        return np.empty(0)
    return np.linalg.norm(matrix - np.asarray(query, dtype=np.float64), axis=1)


class VectorRetriever:
    """Embeds and stores documents; returns the k nearest by L2 distance"""

    def __init__(
        self,
        llm: Optional[LlmGateway] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        default_k: Optional[int] = None,
    ):
        self.llm = llm or get_llm_gateway()
        self.session_factory = session_factory or async_session
        self.default_k = default_k or settings.retrieval_default_k

    @log_execution_time
    async def ingest(self, content: str, source: Optional[str] = None) -> RetrievedDocument:
        content = (content or "").strip()
        if not content:
            raise ValidationError("Document content must not be empty")
        if len(content) > MAX_CONTENT_LENGTH:
            raise ValidationError(f"Document content exceeds {MAX_CONTENT_LENGTH} characters",
                                  {"length": len(content)})
        source = source.strip() if source else None
        if source and len(source) > MAX_SOURCE_LENGTH:
            raise ValidationError(f"Document source exceeds {MAX_SOURCE_LENGTH} characters",
                                  {"length": len(source)})

        embedding = await call_with_provider_retry(self.llm.embed, content)

        async with self.session_factory() as session:
            doc = RagDocument(content=content, source=source or None, embedding=embedding)
            session.add(doc)
            await session.commit()

        logger.info("Document ingested", document_id=str(doc.id), source=source, length=len(content))
        return RetrievedDocument(id=doc.id, content=doc.content, source=doc.source)

    async def query(self, text: str, k: int = 4) -> List[RetrievedDocument]:
        """Up to ``k`` documents nearest first; ``k <= 0`` means the default"""
        if not text or not text.strip():
            raise ValidationError("Query text must not be empty")
        if k is None or k <= 0:
            k = self.default_k

        start_time = time.time()
        embedding = await call_with_provider_retry(self.llm.embed, text.strip())

        async with self.session_factory() as session:
            if dialect_name(session) == "postgresql":
                results = await self._pgvector_search(session, embedding, k)
            else:
                results = await self._exact_search(session, embedding, k)

        logger.info("Search completed",
                    results_count=len(results),
                    k=k,
                    response_time_ms=int((time.time() - start_time) * 1000))
        return results

    async def _pgvector_search(self, session: AsyncSession, embedding: List[float], k: int) -> List[RetrievedDocument]:
        # <-> over the HNSW vector_l2_ops index
        distance = RagDocument.embedding.l2_distance(embedding).label("distance")
        stmt = (
            select(RagDocument.id, RagDocument.content, RagDocument.source, distance)
            .order_by(distance, RagDocument.id)
            .limit(k)
        )
        rows = await session.execute(stmt)
        return [
            RetrievedDocument(id=r.id, content=r.content, source=r.source, distance=float(r.distance))
            for r in rows
        ]

    async def _exact_search(self, session: AsyncSession, embedding: List[float], k: int) -> List[RetrievedDocument]:
        rows = (await session.execute(
            select(RagDocument.id, RagDocument.content, RagDocument.source, RagDocument.embedding)
        )).all()
        if not rows:
            return []

        matrix = np.vstack([np.asarray(r.embedding, dtype=np.float64) for r in rows])
        distances = l2_distances(embedding, matrix)
        ranked = sorted(range(len(rows)), key=lambda i: (distances[i], str(rows[i].id)))[:k]
        return [
            RetrievedDocument(
                id=rows[i].id,
                content=rows[i].content,
                source=rows[i].source,
                distance=float(distances[i]),
            )
            for i in ranked
        ]


# Singleton instance
_retriever: Optional[VectorRetriever] = None


def get_retriever() -> VectorRetriever:
    """Get singleton retriever instance"""
    global _retriever
    if _retriever is None:
        _retriever = VectorRetriever()
    return _retriever
