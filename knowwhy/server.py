"""
KnowWhy Server

FastAPI surface over the capture pipeline, the decision store and the
retrieval engine.

Endpoints:
- GET /health: Health check
- POST /conversations/{conversation_id}/process: Run capture over a conversation
- POST /query: Ask a question
- GET /briefs: List briefs (optionally by status)
- GET /briefs/{brief_id}: One brief
- POST /briefs/{brief_id}/approve: Approve a pending brief
- POST /briefs/{brief_id}/archive: Archive a brief
- GET /stats: Metrics and store counts
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from . import __version__
from .common.config import ensure_directories, load_config
from .common.errors import InvalidTransitionError
from .common.schemas import BriefStatus, Message
from .common.search_index import index_brief
from .runtime import Runtime, build_runtime

logger = logging.getLogger("knowwhy.server")


# =============================================================================
# Request Models
# =============================================================================

class MessageIn(BaseModel):
    """One message of a conversation submitted for processing"""
    id: str
    author: str
    timestamp: datetime
    text: str
    source: str = "slack"
    url: Optional[str] = None


class ProcessRequest(BaseModel):
    messages: List[MessageIn] = Field(default_factory=list)


class QueryRequest(BaseModel):
    query: str = Field(min_length=1)


class ApproveRequest(BaseModel):
    reviewer: Optional[str] = None


# =============================================================================
# App
# =============================================================================

def _runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Runtime not initialized")
    return runtime


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        runtime: Prebuilt runtime; when omitted one is built from
            ``load_config()`` at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "runtime", None) is None:
            ensure_directories()
            app.state.runtime = build_runtime(load_config())
        logger.info("KnowWhy server ready")
        yield
        logger.info("KnowWhy server shutting down")

    app = FastAPI(
        title="KnowWhy",
        description="Decision capture and retrieval over team conversations",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    @app.get("/health")
    async def health(request: Request):
        """Health check endpoint"""
        rt = getattr(request.app.state, "runtime", None)
        return {
            "status": "healthy",
            "service": "knowwhy",
            "initialized": rt is not None,
            "llm_available": rt.llm_available if rt else False,
            "indexed": len(rt.index) if rt and rt.index is not None else 0,
        }

    @app.post("/conversations/{conversation_id}/process")
    def process_conversation(conversation_id: str, body: ProcessRequest, request: Request):
        """Run detection and brief synthesis over the submitted messages"""
        rt = _runtime(request)
        messages = [
            Message(conversation_id=conversation_id, **m.model_dump())
            for m in body.messages
        ]
        report = rt.pipeline.process_conversation(conversation_id, messages)
        return report.to_dict()

    @app.post("/query")
    def query(body: QueryRequest, request: Request):
        """Answer a question from captured decisions"""
        result = _runtime(request).engine.retrieve(body.query)
        return result.model_dump(mode="json")

    @app.get("/briefs")
    def list_briefs(request: Request, status: Optional[BriefStatus] = None):
        briefs = _runtime(request).store.list_briefs(status)
        return {
            "count": len(briefs),
            "briefs": [b.model_dump(mode="json") for b in briefs],
        }

    @app.get("/briefs/{brief_id}")
    def get_brief(brief_id: str, request: Request):
        brief = _runtime(request).store.get_brief(brief_id)
        if brief is None:
            raise HTTPException(status_code=404, detail="Brief not found")
        return brief.model_dump(mode="json")

    @app.post("/briefs/{brief_id}/approve")
    def approve_brief(brief_id: str, request: Request, body: Optional[ApproveRequest] = None):
        """Approve a pending brief and refresh its index entry"""
        rt = _runtime(request)
        try:
            brief = rt.store.approve_brief(brief_id, approved_by=body.reviewer if body else None)
        except KeyError:
            raise HTTPException(status_code=404, detail="Brief not found")
        except InvalidTransitionError as e:
            raise HTTPException(status_code=409, detail=str(e))
        if rt.index is not None and not brief.degraded:
            index_brief(rt.index, brief)
        return {"status": brief.status.value, "brief_id": brief.id}

    @app.post("/briefs/{brief_id}/archive")
    def archive_brief(brief_id: str, request: Request):
        """Archive a brief and drop it from retrieval"""
        rt = _runtime(request)
        try:
            brief = rt.store.archive_brief(brief_id)
        except KeyError:
            raise HTTPException(status_code=404, detail="Brief not found")
        except InvalidTransitionError as e:
            raise HTTPException(status_code=409, detail=str(e))
        if rt.index is not None:
            rt.index.remove(brief.id)
        return {"status": brief.status.value, "brief_id": brief.id}

    @app.get("/stats")
    def stats(request: Request):
        """Metrics snapshot and store counts"""
        rt = _runtime(request)
        return {
            "service": "knowwhy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "store": rt.store.get_stats(),
            "metrics": rt.metrics.snapshot(),
            "detector": {
                "threshold": rt.detector.threshold,
                "window_size": rt.detector.window_size,
            },
        }

    return app


# =============================================================================
# CLI Entry Point
# =============================================================================

def run_server():
    """Run the KnowWhy server"""
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = load_config()
    ensure_directories()
    runtime = build_runtime(config)

    logger.info("Starting server on %s:%d", config.server.host, config.server.port)
    uvicorn.run(
        create_app(runtime),
        host=config.server.host,
        port=config.server.port,
        reload=False,
    )


if __name__ == "__main__":
    run_server()
