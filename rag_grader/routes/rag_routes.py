"""
Corpus ingestion, similarity search and evaluation lookup
"""
from typing import Any, Dict
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from rag_grader.core.evaluation import EvaluationService, get_evaluation_service
from rag_grader.core.logging import get_logger
from rag_grader.core.vector_search import VectorRetriever, get_retriever
from rag_grader.routes.dependencies import get_caller_id
from rag_grader.schemas import AddDocRequest, EvaluationOut

logger = get_logger(__name__)

router = APIRouter(prefix="/rag", tags=["rag"])


@router.post("/docs")
async def add_document(
    request: AddDocRequest,
    caller_id: str = Depends(get_caller_id),
    retriever: VectorRetriever = Depends(get_retriever),
) -> Dict[str, Any]:
    doc = await retriever.ingest(request.content, request.source)
    return doc.to_dict()


@router.get("/search")
async def search(
    q: str = Query(..., description="Query text"),
    k: int = Query(4, description="Number of documents; values <= 0 use the default"),
    caller_id: str = Depends(get_caller_id),
    retriever: VectorRetriever = Depends(get_retriever),
) -> Dict[str, Any]:
    """Nearest documents by L2 distance"""
    results = await retriever.query(q, k)
    return {
        "query": q,
        "results": [r.to_dict() for r in results],
        "total_results": len(results),
    }


@router.get("/evaluations/{evaluation_id}", response_model=EvaluationOut)
async def get_evaluation(
    evaluation_id: UUID,
    caller_id: str = Depends(get_caller_id),
    evaluations: EvaluationService = Depends(get_evaluation_service),
):
    return await evaluations.get_evaluation(evaluation_id)
