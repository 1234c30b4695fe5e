from dataclasses import dataclass
from typing import List, Optional

import httpx
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import ApiEndpoint

logger = get_logger("retrieval_service")


@dataclass
class ChunkHit:
    endpoint_id: str
    score: float


@dataclass
class Candidate:
    endpoint: ApiEndpoint
    score: float
    matched_chunks: int = 1


class RetrievalError(Exception):
    pass


class CandidateRetriever:
    """Similarity search over a tenant's endpoint corpus.

    Chunks live in one Qdrant collection; each point carries ``tenant_id`` and
    ``endpoint_id`` in its payload, and every search is filtered by tenant.
    """

    def __init__(
        self,
        embedding_url: str = settings.embedding_url,
        qdrant_host: str = settings.qdrant_host,
        qdrant_api_key: Optional[str] = settings.qdrant_api_key,
        collection: str = settings.qdrant_collection,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.embedding_url = embedding_url
        self.qdrant_host = qdrant_host.rstrip("/")
        self.qdrant_api_key = qdrant_api_key
        self.collection = collection
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def get_embedding(self, text: str) -> List[float]:
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
            response = await client.post(self.embedding_url, json={"inputs": text})
        if response.status_code != 200:
            raise RetrievalError(f"Embedding error: {response.status_code} - {response.text}")

        data = response.json()
        # Handle different response formats
        if isinstance(data, list) and len(data) > 0:
            return data[0] if isinstance(data[0], list) else data
        if isinstance(data, dict):
            embedding = data.get("embedding") or data.get("embeddings")
            if embedding and isinstance(embedding[0], list):
                return embedding[0]
            if embedding:
                return embedding
        raise RetrievalError("Embedding response has no vector")

    async def search(self, text: str, tenant_id: str, top_k: int = 5) -> List[ChunkHit]:
        """Raw chunk hits for ``text`` within the tenant's namespace."""
        vector = await self.get_embedding(text)
        headers = {"api-key": self.qdrant_api_key} if self.qdrant_api_key else {}

        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
            response = await client.post(
                f"{self.qdrant_host}/collections/{self.collection}/points/search",
                headers=headers,
                json={
                    "vector": vector,
                    "limit": top_k,
                    "filter": {"must": [{"key": "tenant_id", "match": {"value": tenant_id}}]},
                    "with_payload": True,
                },
            )

        if response.status_code != 200:
            raise RetrievalError(f"Qdrant search error: {response.status_code} - {response.text}")

        hits = []
        for point in response.json().get("result", []):
            endpoint_id = (point.get("payload") or {}).get("endpoint_id")
            if endpoint_id:
                hits.append(ChunkHit(endpoint_id=endpoint_id, score=float(point.get("score") or 0.0)))
        return hits

    async def find_candidates(
        self,
        db: Session,
        query: str,
        tenant_id: str,
        top_k: int = 5,
    ) -> List[Candidate]:
        """Ranked endpoint specs for ``query``. Empty on any retrieval failure."""
        try:
            hits = await self.search(query, tenant_id, top_k=top_k)
        except Exception as e:
            logger.error(f"Candidate search failed: {e}", extra={"context": {"tenant_id": tenant_id}})
            return []

        return rank_candidates(db, tenant_id, hits, top_k=top_k)


def rank_candidates(db: Session, tenant_id: str, hits: List[ChunkHit], top_k: int = 5) -> List[Candidate]:
    """Group chunk hits by endpoint, average their scores and attach endpoint specs."""
    scores: dict[str, list[float]] = {}
    for hit in hits:
        scores.setdefault(hit.endpoint_id, []).append(hit.score)
    if not scores:
        return []

    endpoints = (
        db.query(ApiEndpoint)
        .filter(ApiEndpoint.tenant_id == tenant_id, ApiEndpoint.endpoint_id.in_(list(scores)))
        .all()
    )

    candidates = [
        Candidate(
            endpoint=endpoint,
            score=sum(scores[endpoint.endpoint_id]) / len(scores[endpoint.endpoint_id]),
            matched_chunks=len(scores[endpoint.endpoint_id]),
        )
        for endpoint in endpoints
    ]
    candidates.sort(key=lambda c: c.score, reverse=True)
    logger.info(f"Candidate search: {len(candidates)} endpoints for tenant {tenant_id}")
    return candidates[:top_k]


def tenant_has_endpoints(db: Session, tenant_id: str) -> bool:
    return db.query(ApiEndpoint.id).filter(ApiEndpoint.tenant_id == tenant_id).first() is not None
