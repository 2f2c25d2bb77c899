"""Behavior tests for the external knowledge API endpoints."""

from __future__ import annotations

from typing import Iterator, List
from unittest.mock import patch

import pytest
from botocore.exceptions import ClientError
from fastapi.testclient import TestClient

from knowledge_api.api import app, get_retriever
from knowledge_api.retriever import KnowledgeBaseNotFound, Record

TOKEN = "test-token"


class FakeRetriever:
    def __init__(
        self,
        records: List[Record] = None,
        missing: bool = False,
        error: Exception = None,
    ):
        self.records = records or []
        self.missing = missing
        self.error = error
        self.calls = []

    def retrieve(self, knowledge_id, query, top_k, score_threshold):
        self.calls.append((knowledge_id, query, top_k, score_threshold))
        if self.missing:
            raise KnowledgeBaseNotFound(knowledge_id)
        if self.error is not None:
            raise self.error
        return self.records


@pytest.fixture
def client(monkeypatch) -> Iterator[TestClient]:
    monkeypatch.setenv("BEARER_TOKEN", TOKEN)
    with patch("knowledge_api.retriever.boto3.client"), TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def unguarded_client(monkeypatch) -> Iterator[TestClient]:
    """A client that returns server errors as responses instead of raising them."""
    monkeypatch.setenv("BEARER_TOKEN", TOKEN)
    with patch("knowledge_api.retriever.boto3.client"), \
            TestClient(app, raise_server_exceptions=False) as c:
        yield c
    app.dependency_overrides.clear()


def use(retriever: FakeRetriever) -> FakeRetriever:
    app.dependency_overrides[get_retriever] = lambda: retriever
    return retriever


BODY = {
    "knowledge_id": "KB12345678",
    "query": "What is Dify?",
    "retrieval_setting": {"top_k": 3, "score_threshold": 0.5},
}


class TestRetrievalEndpoint:
    """POST /retrieval follows Dify's external knowledge API contract."""

    def test_health(self, client) -> None:
        assert client.get("/health").json() == {"status": "ok"}

    def test_returns_records(self, client) -> None:
        """
        Given a knowledge base with matching chunks
        When Dify calls /retrieval with a valid token
        Then the records come back in Dify's shape
        """
        fake = use(FakeRetriever([
            Record(content="Dify is an LLM app platform.", score=0.9, title="intro.md",
                   metadata={"path": "s3://docs/intro.md"}),
        ]))

        resp = client.post("/retrieval", json=BODY, headers={"Authorization": f"Bearer {TOKEN}"})

        assert resp.status_code == 200
        assert resp.json() == {
            "records": [{
                "content": "Dify is an LLM app platform.",
                "score": 0.9,
                "title": "intro.md",
                "metadata": {"path": "s3://docs/intro.md"},
            }]
        }
        assert fake.calls == [("KB12345678", "What is Dify?", 3, 0.5)]

    @pytest.mark.parametrize("header", [None, "Token abc", "Bearer ", "Bearer"])
    def test_malformed_authorization(self, client, header) -> None:
        use(FakeRetriever())
        headers = {"Authorization": header} if header is not None else {}

        resp = client.post("/retrieval", json=BODY, headers=headers)

        assert resp.status_code == 403
        assert resp.json()["error_code"] == 1001

    def test_wrong_token(self, client) -> None:
        fake = use(FakeRetriever())

        resp = client.post("/retrieval", json=BODY, headers={"Authorization": "Bearer nope"})

        assert resp.status_code == 403
        assert resp.json() == {"error_code": 1002, "error_msg": "Authorization failed"}
        assert fake.calls == []

    def test_unknown_knowledge_base(self, client) -> None:
        use(FakeRetriever(missing=True))

        resp = client.post("/retrieval", json=BODY, headers={"Authorization": f"Bearer {TOKEN}"})

        assert resp.status_code == 404
        assert resp.json()["error_code"] == 2001

    def test_rejects_invalid_settings(self, client) -> None:
        use(FakeRetriever())
        body = {**BODY, "retrieval_setting": {"top_k": 0, "score_threshold": 0.5}}

        resp = client.post("/retrieval", json=body, headers={"Authorization": f"Bearer {TOKEN}"})

        assert resp.status_code == 422

    def test_bedrock_failure_is_logged_and_returns_500(self, unguarded_client, caplog) -> None:
        """
        Given Bedrock throttles the retrieve call
        When Dify calls /retrieval
        Then the error is logged and the response is a 500
        """
        use(FakeRetriever(error=ClientError(
            {"Error": {"Code": "ThrottlingException", "Message": "slow down"}}, "Retrieve"
        )))

        resp = unguarded_client.post(
            "/retrieval", json=BODY, headers={"Authorization": f"Bearer {TOKEN}"}
        )

        assert resp.status_code == 500
        assert "Internal error in /retrieval" in caplog.text
