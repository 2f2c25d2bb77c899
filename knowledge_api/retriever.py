"""
Thin wrapper around the Bedrock Knowledge Bases ``Retrieve`` API.

Maps Bedrock retrieval results onto the record shape Dify expects from an
external knowledge base: content, score, title and free-form metadata.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import unquote, urlparse

import boto3
from botocore.exceptions import ClientError

logger = logging.getLogger("uvicorn.error")


class KnowledgeBaseNotFound(Exception):
    """The requested knowledge base id does not exist in this account/region."""


@dataclass
class Record:
    content: str
    score: float
    title: str
    metadata: Dict[str, Any] = field(default_factory=dict)


def _source_uri(location: Dict[str, Any]) -> Optional[str]:
    # Bedrock nests the uri/url under a key named after the location type
    for key, attr in (
        ("s3Location", "uri"),
        ("webLocation", "url"),
        ("confluenceLocation", "url"),
        ("salesforceLocation", "url"),
        ("sharePointLocation", "url"),
    ):
        value = (location.get(key) or {}).get(attr)
        if value:
            return value
    return None


def _title_from_uri(uri: Optional[str]) -> str:
    if not uri:
        return ""
    path = unquote(urlparse(uri).path).rstrip("/")
    name = path.rsplit("/", 1)[-1]
    return name or uri


class BedrockKnowledgeBaseRetriever:

    def __init__(self, region: str, client=None):
        self._client = client or boto3.client("bedrock-agent-runtime", region_name=region)

    def retrieve(
        self,
        knowledge_id: str,
        query: str,
        top_k: int,
        score_threshold: float,
    ) -> List[Record]:
        """Return up to ``top_k`` records scoring at least ``score_threshold``."""
        try:
            resp = self._client.retrieve(
                knowledgeBaseId=knowledge_id,
                retrievalQuery={"text": query},
                retrievalConfiguration={
                    "vectorSearchConfiguration": {"numberOfResults": top_k},
                },
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ResourceNotFoundException":
                raise KnowledgeBaseNotFound(knowledge_id) from e
            raise

        records: List[Record] = []
        for result in resp.get("retrievalResults", []):
            score = float(result.get("score") or 0.0)
            if score < score_threshold:
                continue

            uri = _source_uri(result.get("location") or {})
            metadata = dict(result.get("metadata") or {})
            if uri:
                metadata.setdefault("path", uri)

            records.append(
                Record(
                    content=(result.get("content") or {}).get("text", ""),
                    score=score,
                    title=_title_from_uri(uri),
                    metadata=metadata,
                )
            )

        logger.info(
            "Retrieved %d/%d records  kb=%s  threshold=%.2f",
            len(records), len(resp.get("retrievalResults", [])), knowledge_id, score_threshold,
        )
        return records
