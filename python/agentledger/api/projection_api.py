"""
agentledger query API - read-only FastAPI over the projection.

- /health                      checkpoint, head, degraded flag
- /agents/{id}                 agent with current metadata
- /agents/{id}/reputation      feedback summary (optional tag filters)
- /agents/{id}/feedback        feedback records
- /agents/{id}/validations     validation requests with latest responses
- /validations/{request_hash}  one validation request
- /tasks/{task_id}             orchestrator task row
- /quarantine                  quarantined events

No mutation endpoints: the Event Indexer is the only writer of the read model.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from agentledger import __version__
from agentledger.exceptions import TaskNotFoundError
from agentledger.indexer.models import AgentView, FeedbackView, ValidationRequestView
from agentledger.service import get_service, shutdown_service

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    status: str
    checkpoint: Optional[int] = None
    checkpoint_hash: Optional[str] = None
    head: Optional[int] = None
    degraded: bool = False
    last_error: Optional[str] = None


class AgentResponse(BaseModel):
    agent_id: int
    owner: str
    token_uri: str
    created_block: int
    created_time: int
    updated_block: int
    updated_time: int
    metadata: Dict[str, str] = Field(default_factory=dict, description="key -> 0x-hex value")


class ReputationResponse(BaseModel):
    agent_id: int
    count: int
    average_score: float
    tag1: Optional[str] = None
    tag2: Optional[str] = None


def _agent_response(agent: AgentView) -> AgentResponse:
    return AgentResponse(
        agent_id=agent.agent_id,
        owner=agent.owner,
        token_uri=agent.token_uri,
        created_block=agent.created_block,
        created_time=agent.created_time,
        updated_block=agent.updated_block,
        updated_time=agent.updated_time,
        metadata={k: "0x" + v.hex() for k, v in agent.metadata.items()},
    )


def _feedback_dict(view: FeedbackView) -> Dict[str, Any]:
    return asdict(view)


def _validation_dict(view: ValidationRequestView) -> Dict[str, Any]:
    data = asdict(view)
    data["status"] = view.status.value
    return data


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


def create_app(service=None) -> FastAPI:
    """Build the query API over a LedgerService.

    Without an explicit service the process-wide one is used and shut down
    with the app.
    """
    lifespan = None
    if service is None:
        service = get_service()

        @asynccontextmanager
        async def lifespan(application: FastAPI):
            logger.info("agentledger query API starting")
            yield
            await shutdown_service()
            logger.info("agentledger query API stopped")

    app = FastAPI(
        title="agentledger",
        version=__version__,
        description="Read-only projection of the identity, validation and reputation registries",
        lifespan=lifespan,
    )

    @app.get("/health", response_model=HealthResponse)
    async def health():
        indexer = service.indexer
        status = indexer.status()
        body = HealthResponse(
            status="degraded" if status["degraded"] else "healthy",
            checkpoint=status["checkpoint"],
            checkpoint_hash=status["checkpoint_hash"],
            head=status["head"],
            degraded=status["degraded"],
            last_error=status["last_error"],
        )
        if body.degraded:
            return JSONResponse(content=body.model_dump(), status_code=503)
        return body

    @app.get("/agents/{agent_id}", response_model=AgentResponse)
    async def get_agent(agent_id: int):
        agent = service.read_model.get_agent(agent_id)
        if agent is None:
            raise HTTPException(status_code=404, detail=f"Agent {agent_id} not found")
        return _agent_response(agent)

    @app.get("/agents/{agent_id}/reputation", response_model=ReputationResponse)
    async def get_reputation(agent_id: int, tag1: Optional[str] = None, tag2: Optional[str] = None):
        summary = service.read_model.reputation_summary(agent_id, tag1=tag1, tag2=tag2)
        return ReputationResponse(
            agent_id=agent_id,
            count=summary.count,
            average_score=summary.average_score,
            tag1=tag1,
            tag2=tag2,
        )

    @app.get("/agents/{agent_id}/feedback")
    async def list_feedback(
        agent_id: int,
        client: Optional[str] = None,
        include_revoked: bool = True,
    ) -> List[Dict[str, Any]]:
        views = service.read_model.list_feedback(agent_id, client=client, include_revoked=include_revoked)
        return [_feedback_dict(v) for v in views]

    @app.get("/agents/{agent_id}/validations")
    async def list_validations(agent_id: int) -> Dict[str, Any]:
        read_model = service.read_model
        summary = read_model.validation_summary(agent_id)
        return {
            "summary": asdict(summary),
            "requests": [_validation_dict(v) for v in read_model.list_agent_validations(agent_id)],
        }

    @app.get("/validations/{request_hash}")
    async def get_validation(request_hash: str) -> Dict[str, Any]:
        view = service.read_model.get_validation_request(request_hash)
        if view is None:
            raise HTTPException(status_code=404, detail=f"Validation request {request_hash} not found")
        return _validation_dict(view)

    @app.get("/tasks/{task_id}")
    async def get_task(task_id: str) -> Dict[str, Any]:
        try:
            return service.task_store.get(task_id).to_dict()
        except TaskNotFoundError:
            raise HTTPException(status_code=404, detail=f"Task {task_id} not found")

    @app.get("/quarantine")
    async def list_quarantine(limit: int = Query(default=100, ge=1, le=1000)) -> List[Dict[str, Any]]:
        return [asdict(r) for r in service.read_model.list_quarantine(limit=limit)]

    return app
