"""Behavior tests for the Bedrock Knowledge Bases retriever."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from knowledge_api.retriever import BedrockKnowledgeBaseRetriever, KnowledgeBaseNotFound


def bedrock_result(text: str, score: float, uri: str = None, metadata: dict = None) -> dict:
    result = {"content": {"text": text}, "score": score}
    if uri:
        result["location"] = {"type": "S3", "s3Location": {"uri": uri}}
    if metadata is not None:
        result["metadata"] = metadata
    return result


class TestBedrockKnowledgeBaseRetriever:

    def test_filters_by_score_threshold(self) -> None:
        """
        Given Bedrock returns results above and below the threshold
        When retrieve is called
        Then only results at or above the threshold are kept
        """
        client = MagicMock()
        client.retrieve.return_value = {
            "retrievalResults": [
                bedrock_result("high", 0.8, "s3://bucket/docs/guide%20one.pdf"),
                bedrock_result("edge", 0.5),
                bedrock_result("low", 0.2),
            ]
        }
        retriever = BedrockKnowledgeBaseRetriever(region="us-west-2", client=client)

        records = retriever.retrieve("KB1", "question", top_k=3, score_threshold=0.5)

        assert [r.content for r in records] == ["high", "edge"]
        assert records[0].title == "guide one.pdf"
        assert records[0].metadata["path"] == "s3://bucket/docs/guide%20one.pdf"
        assert records[1].title == ""
        client.retrieve.assert_called_once_with(
            knowledgeBaseId="KB1",
            retrievalQuery={"text": "question"},
            retrievalConfiguration={"vectorSearchConfiguration": {"numberOfResults": 3}},
        )

    def test_keeps_bedrock_metadata(self) -> None:
        client = MagicMock()
        client.retrieve.return_value = {
            "retrievalResults": [bedrock_result("x", 0.9, metadata={"lang": "en"})]
        }
        retriever = BedrockKnowledgeBaseRetriever(region="us-west-2", client=client)

        (record,) = retriever.retrieve("KB1", "q", top_k=1, score_threshold=0.0)

        assert record.metadata == {"lang": "en"}

    def test_missing_knowledge_base(self) -> None:
        client = MagicMock()
        client.retrieve.side_effect = ClientError(
            {"Error": {"Code": "ResourceNotFoundException", "Message": "no such kb"}}, "Retrieve"
        )
        retriever = BedrockKnowledgeBaseRetriever(region="us-west-2", client=client)

        with pytest.raises(KnowledgeBaseNotFound):
            retriever.retrieve("KB404", "q", top_k=1, score_threshold=0.0)

    def test_other_errors_propagate(self) -> None:
        client = MagicMock()
        client.retrieve.side_effect = ClientError(
            {"Error": {"Code": "ThrottlingException", "Message": "slow down"}}, "Retrieve"
        )
        retriever = BedrockKnowledgeBaseRetriever(region="us-west-2", client=client)

        with pytest.raises(ClientError):
            retriever.retrieve("KB1", "q", top_k=1, score_threshold=0.0)
