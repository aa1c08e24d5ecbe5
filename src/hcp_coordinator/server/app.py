"""FastAPI app factory.

Endpoints are thin wrappers over :class:`CoordinationService`; lifecycle rules
and error semantics live in the coordinator package.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from hcp_coordinator import __version__
from hcp_coordinator.coordinator.config import CoordinatorSettings
from hcp_coordinator.coordinator.lifecycle.errors import (
    ConcurrentModification,
    InvalidTransition,
    RequestNotFound,
    StorageFailure,
)
from hcp_coordinator.coordinator.lifecycle.fanout import QueueHandle
from hcp_coordinator.coordinator.lifecycle.models import (
    ActorType,
    AuditEvent,
    CoordinationRequest,
    Intent,
    NewRequest,
    RequestState,
    Urgency,
)
from hcp_coordinator.coordinator.lifecycle.service import CoordinationService
from hcp_coordinator.coordinator.storage.audit_log import AuditQuery
from hcp_coordinator.coordinator.storage.request_store import RequestFilters
from hcp_coordinator.server.config import ServerSettings
from hcp_coordinator.server.events import event_stream
from hcp_coordinator.server.models import HealthStatus, RespondBody

logger = logging.getLogger(__name__)

DEFAULT_AGENT_ID = "anonymous"


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(InvalidTransition)
    @app.exception_handler(ConcurrentModification)
    async def conflict(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(RequestNotFound)
    async def not_found(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(StorageFailure)
    async def storage_failure(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Storage failure", exc_info=exc, extra={"path": request.url.path})
        return JSONResponse(status_code=500, content={"detail": "Storage failure"})


def create_app(service: CoordinationService | None = None) -> FastAPI:
    settings = ServerSettings()
    owns_service = service is None
    if service is None:
        service = CoordinationService.from_settings(CoordinatorSettings())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if settings.timeout_scheduler_enabled:
            service.scheduler.start()
        try:
            yield
        finally:
            service.scheduler.stop(timeout=5.0)
            if owns_service:
                service.close()

    app = FastAPI(
        title="HCP Coordinator",
        version=__version__,
        description="Human Coordination Protocol: agents ask, humans decide.",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _register_error_handlers(app)

    @app.get("/v1/health", response_model=HealthStatus)
    def health() -> HealthStatus:
        return HealthStatus(
            status="ok", version=__version__, subscribers=service.fanout.subscriber_count()
        )

    @app.post("/v1/requests", response_model=CoordinationRequest, status_code=201)
    def submit_request(
        body: NewRequest,
        response: Response,
        agent_id: str = Header(default=DEFAULT_AGENT_ID, alias="X-Agent-Id"),
    ) -> CoordinationRequest:
        request, created = service.submit(agent_id, body)
        if not created:
            response.status_code = 200
        return request

    @app.get("/v1/requests", response_model=list[CoordinationRequest])
    def list_requests(
        agent_id: str | None = None,
        state: RequestState | None = None,
        intent: Intent | None = None,
        urgency: Urgency | None = None,
        responder_id: str | None = None,
        limit: int = Query(default=50, ge=1, le=500),
        offset: int = Query(default=0, ge=0),
    ) -> list[CoordinationRequest]:
        return service.list(
            RequestFilters(
                agent_id=agent_id,
                state=state,
                intent=intent.value if intent else None,
                urgency=urgency.value if urgency else None,
                responder_id=responder_id,
                limit=limit,
                offset=offset,
            )
        )

    @app.get("/v1/requests/{request_id}", response_model=CoordinationRequest)
    def get_request(
        request_id: str,
        agent_id: str = Header(default=DEFAULT_AGENT_ID, alias="X-Agent-Id"),
    ) -> CoordinationRequest:
        return service.get(request_id, reader=agent_id, reader_type=ActorType.AGENT)

    @app.delete("/v1/requests/{request_id}", response_model=CoordinationRequest)
    def cancel_request(
        request_id: str,
        agent_id: str = Header(default=DEFAULT_AGENT_ID, alias="X-Agent-Id"),
    ) -> CoordinationRequest:
        return service.cancel(request_id, actor=agent_id, actor_type=ActorType.AGENT)

    @app.post("/v1/requests/{request_id}/respond", response_model=CoordinationRequest)
    def respond_to_request(request_id: str, body: RespondBody) -> CoordinationRequest:
        return service.respond(
            request_id, response_data=body.response_data, responded_by=body.responded_by
        )

    @app.get("/v1/audit", response_model=list[AuditEvent])
    def audit_trail(
        request_id: str | None = None,
        event_type: str | None = None,
        limit: int = Query(default=100, ge=1, le=1000),
        offset: int = Query(default=0, ge=0),
    ) -> list[AuditEvent]:
        return service.audit_trail(
            AuditQuery(request_id=request_id, event_type=event_type, limit=limit, offset=offset)
        )

    @app.get("/v1/events")
    def events(
        request: Request,
        agent_id: str | None = None,
        responder_id: str | None = None,
    ) -> StreamingResponse:
        subscriber_id = uuid.uuid4().hex
        handle = QueueHandle()
        service.fanout.subscribe(
            subscriber_id, handle, agent_id=agent_id, responder_id=responder_id
        )
        logger.info(
            "Event stream opened",
            extra={
                "subscriber_id": subscriber_id,
                "agent_id": agent_id,
                "responder_id": responder_id,
            },
        )
        return StreamingResponse(
            event_stream(
                service.fanout,
                subscriber_id,
                handle,
                keepalive_seconds=settings.sse_keepalive_seconds,
                is_disconnected=request.is_disconnected,
            ),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    return app
