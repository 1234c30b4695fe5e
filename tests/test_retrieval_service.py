import json

import httpx
import pytest

from app.models import ApiEndpoint
from app.services.retrieval_service import (
    CandidateRetriever,
    ChunkHit,
    rank_candidates,
    tenant_has_endpoints,
)


@pytest.fixture
def profile_endpoint(db, tenant):
    endpoint = ApiEndpoint(
        tenant_id=tenant.id,
        endpoint_id="get_profile",
        method="GET",
        path="/me",
        parameters=[],
    )
    db.add(endpoint)
    db.commit()
    return endpoint


def retriever_with(points, embedding_status=200):
    requests = []

    def handler(request: httpx.Request):
        requests.append(request)
        if request.url.path == "/embed":
            return httpx.Response(embedding_status, json=[[0.1, 0.2, 0.3]])
        return httpx.Response(200, json={"result": points})

    retriever = CandidateRetriever(
        embedding_url="http://embed.test/embed",
        qdrant_host="http://qdrant.test/",
        collection="endpoints",
        transport=httpx.MockTransport(handler),
    )
    return retriever, requests


class TestFindCandidates:
    @pytest.mark.asyncio
    async def test_search_is_tenant_filtered_and_ranked(self, db, orders_endpoint, profile_endpoint):
        retriever, requests = retriever_with(
            [
                {"score": 0.9, "payload": {"endpoint_id": "list_orders"}},
                {"score": 0.7, "payload": {"endpoint_id": "list_orders"}},
                {"score": 0.85, "payload": {"endpoint_id": "get_profile"}},
                {"score": 0.99, "payload": {}},
            ]
        )

        candidates = await retriever.find_candidates(db, "show my orders", "org-1", top_k=5)

        assert [c.endpoint.endpoint_id for c in candidates] == ["get_profile", "list_orders"]
        assert candidates[1].score == pytest.approx(0.8)
        assert candidates[1].matched_chunks == 2

        search = json.loads(requests[1].content)
        assert str(requests[1].url) == "http://qdrant.test/collections/endpoints/points/search"
        assert search["filter"] == {"must": [{"key": "tenant_id", "match": {"value": "org-1"}}]}
        assert search["vector"] == [0.1, 0.2, 0.3]

    @pytest.mark.asyncio
    async def test_embedding_failure_means_no_candidates(self, db, orders_endpoint):
        retriever, requests = retriever_with([], embedding_status=503)

        assert await retriever.find_candidates(db, "show my orders", "org-1") == []
        assert len(requests) == 1


class TestRankCandidates:
    def test_unknown_and_foreign_endpoints_dropped(self, db, orders_endpoint):
        foreign = ApiEndpoint(tenant_id="org-2", endpoint_id="get_profile", method="GET", path="/me", parameters=[])
        db.add(foreign)
        db.commit()

        candidates = rank_candidates(
            db,
            "org-1",
            [ChunkHit("list_orders", 0.6), ChunkHit("get_profile", 0.9), ChunkHit("deleted_op", 0.95)],
        )

        assert [c.endpoint.endpoint_id for c in candidates] == ["list_orders"]

    def test_top_k(self, db, orders_endpoint, profile_endpoint):
        candidates = rank_candidates(
            db, "org-1", [ChunkHit("list_orders", 0.6), ChunkHit("get_profile", 0.9)], top_k=1
        )

        assert [c.endpoint.endpoint_id for c in candidates] == ["get_profile"]


class TestTenantHasEndpoints:
    def test_presence(self, db, orders_endpoint):
        assert tenant_has_endpoints(db, "org-1") is True
        assert tenant_has_endpoints(db, "org-2") is False
