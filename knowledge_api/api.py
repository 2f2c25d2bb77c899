"""
Dify external knowledge API backed by Amazon Bedrock Knowledge Bases.

Implements the contract Dify calls when a dataset is connected to an
external knowledge base:

    POST /retrieval
    Authorization: Bearer <BEARER_TOKEN>
    {"knowledge_id": "...", "query": "...",
     "retrieval_setting": {"top_k": 5, "score_threshold": 0.5}}

See https://docs.dify.ai/guides/knowledge-base/external-knowledge-api-documentation
"""

import asyncio
import logging
import secrets
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from knowledge_api.config import MAX_TOP_K, bearer_token, bedrock_region
from knowledge_api.retriever import BedrockKnowledgeBaseRetriever, KnowledgeBaseNotFound

logger = logging.getLogger("uvicorn.error")


class RetrievalSetting(BaseModel):
    top_k: int = Field(ge=1, le=MAX_TOP_K)
    score_threshold: float = Field(default=0.0, ge=0.0, le=1.0)


class RetrievalRequest(BaseModel):
    knowledge_id: str
    query: str
    retrieval_setting: RetrievalSetting


class RecordOut(BaseModel):
    content: str
    score: float
    title: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RetrievalResponse(BaseModel):
    records: List[RecordOut] = Field(default_factory=list)


class ExternalKnowledgeError(Exception):
    """Error reported to Dify as ``{"error_code", "error_msg"}``."""

    def __init__(self, status_code: int, error_code: int, error_msg: str):
        super().__init__(error_msg)
        self.status_code = status_code
        self.error_code = error_code
        self.error_msg = error_msg


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.token = bearer_token()
    app.state.retriever = BedrockKnowledgeBaseRetriever(region=bedrock_region())
    logger.info("Knowledge base API ready  region=%s", bedrock_region())
    yield


app = FastAPI(title="Dify external knowledge API", version="1.0.0", lifespan=lifespan)


@app.exception_handler(ExternalKnowledgeError)
async def _external_knowledge_error(request: Request, exc: ExternalKnowledgeError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error_code": exc.error_code, "error_msg": exc.error_msg},
    )


def get_token(request: Request) -> str:
    return request.app.state.token


def get_retriever(request: Request) -> BedrockKnowledgeBaseRetriever:
    return request.app.state.retriever


def authorize(
    authorization: Optional[str] = Header(default=None),
    token: str = Depends(get_token),
) -> None:
    scheme, _, credentials = (authorization or "").partition(" ")
    if scheme != "Bearer" or not credentials.strip():
        raise ExternalKnowledgeError(
            403, 1001,
            "Invalid Authorization header format. Expected 'Bearer <api-key>' format.",
        )
    if not secrets.compare_digest(credentials.strip(), token):
        raise ExternalKnowledgeError(403, 1002, "Authorization failed")


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/retrieval", response_model=RetrievalResponse, dependencies=[Depends(authorize)])
async def retrieval(
    req: RetrievalRequest,
    retriever: BedrockKnowledgeBaseRetriever = Depends(get_retriever),
):
    try:
        records = await asyncio.to_thread(
            retriever.retrieve,
            req.knowledge_id,
            req.query,
            req.retrieval_setting.top_k,
            req.retrieval_setting.score_threshold,
        )
    except KnowledgeBaseNotFound:
        raise ExternalKnowledgeError(404, 2001, "The knowledge does not exist")
    except Exception:
        logger.exception("Internal error in /retrieval")
        raise

    return RetrievalResponse(
        records=[
            RecordOut(content=r.content, score=r.score, title=r.title, metadata=r.metadata)
            for r in records
        ]
    )
