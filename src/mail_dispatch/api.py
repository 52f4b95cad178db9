# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application factory exposing a :class:`DispatchQueue` over HTTP.

Every endpoint forwards to the queue instance injected through
:func:`create_app` and serialises its answer.
Authentication uses an optional API token carried in the ``X-API-Token``
header; ``/health`` is always open.

Endpoints:
    - ``GET /health``: liveness probe.
    - ``GET /status``: queue snapshot.
    - ``POST /messages``: enqueue one message.
    - ``POST /messages/bulk``: enqueue several messages in order.
    - ``GET /messages``: preview held messages.
    - ``DELETE /messages``: drop every waiting message.
    - ``GET /metrics``: Prometheus metrics.

Example:
    Creating the application::

        queue = DispatchQueue(transport)
        app = create_app(queue, api_token="secret-token")
        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from __future__ import annotations

import logging
from contextlib import AbstractAsyncContextManager
from dataclasses import asdict
from datetime import datetime
from typing import Any, Callable

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from .core import DispatchQueue
from .exceptions import PayloadValidationError

logger = logging.getLogger(__name__)

API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the ``X-API-Token`` header against the configured token.

    When no token is configured the check is skipped.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


def get_queue(request: Request) -> DispatchQueue:
    queue = getattr(request.app.state, "queue", None)
    if queue is None:
        raise HTTPException(500, "Queue not initialized")
    return queue


auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses."""

    ok: bool
    error: str | None = None


class EnqueueRequest(BaseModel):
    """Body of ``POST /messages``."""

    payload: dict[str, Any]
    options: dict[str, Any] | None = None


class EnqueueResponse(CommandStatus):
    id: str


class BulkEnqueueRequest(BaseModel):
    """Body of ``POST /messages/bulk``; order is kept within each priority."""

    messages: list[EnqueueRequest] = Field(default_factory=list)


class SnapshotModel(BaseModel):
    queue_length: int
    processing: bool
    sent_this_window: int
    rate_limit_per_minute: int
    sent_total: int
    failed_total: int
    retried_total: int
    running: bool


class StatusResponse(CommandStatus):
    status: SnapshotModel


class BulkEnqueueResponse(CommandStatus):
    ids: list[str]
    status: SnapshotModel


class PendingMessageModel(BaseModel):
    id: str
    to: list[str]
    subject: str
    priority: str
    attempts: int
    scheduled_at: datetime
    state: str


class PendingMessagesResponse(CommandStatus):
    messages: list[PendingMessageModel]


class ClearResponse(CommandStatus):
    removed: int


def _snapshot_model(queue: DispatchQueue) -> SnapshotModel:
    return SnapshotModel(**asdict(queue.snapshot()))


def create_app(
    queue: DispatchQueue,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AbstractAsyncContextManager] | None = None,
) -> FastAPI:
    """Create the FastAPI application bound to ``queue``.

    Args:
        queue: The dispatch queue served by this application.
        api_token: Optional secret required in ``X-API-Token`` on every
            protected endpoint.
        lifespan: Optional lifespan context manager, typically starting and
            stopping the queue.

    Returns:
        A configured application ready to be served by uvicorn.
    """
    api = FastAPI(title="Mail Dispatch Queue", lifespan=lifespan)
    api.state.queue = queue
    api.state.api_token = api_token

    @api.exception_handler(PayloadValidationError)
    async def payload_error_handler(request: Request, exc: PayloadValidationError):
        logger.info("Rejected payload on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=400, content={"ok": False, "error": str(exc)})

    @api.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.error("Validation error on %s %s: %s", request.method, request.url.path, exc.errors())
        return JSONResponse(status_code=422, content={"detail": exc.errors()})

    @api.get("/health")
    async def health():
        """Health check endpoint (no authentication required)."""
        return {"status": "ok"}

    @api.get("/status", response_model=StatusResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def queue_status(svc: DispatchQueue = Depends(get_queue)):
        return StatusResponse(ok=True, status=_snapshot_model(svc))

    @api.post("/messages", response_model=EnqueueResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def enqueue_message(body: EnqueueRequest, svc: DispatchQueue = Depends(get_queue)):
        message_id = svc.enqueue(body.payload, body.options)
        return EnqueueResponse(ok=True, id=message_id)

    @api.post(
        "/messages/bulk",
        response_model=BulkEnqueueResponse,
        response_model_exclude_none=True,
        dependencies=[auth_dependency],
    )
    async def enqueue_messages(body: BulkEnqueueRequest, svc: DispatchQueue = Depends(get_queue)):
        ids = svc.enqueue_bulk((item.payload, item.options) for item in body.messages)
        return BulkEnqueueResponse(ok=True, ids=ids, status=_snapshot_model(svc))

    @api.get(
        "/messages",
        response_model=PendingMessagesResponse,
        response_model_exclude_none=True,
        dependencies=[auth_dependency],
    )
    async def list_messages(
        limit: int = Query(default=10, ge=0, le=1000),
        svc: DispatchQueue = Depends(get_queue),
    ):
        views = svc.list_pending(limit)
        messages = [
            PendingMessageModel(
                id=view.id,
                to=view.to,
                subject=view.subject,
                priority=view.priority.value,
                attempts=view.attempts,
                scheduled_at=view.scheduled_at,
                state=view.state.value,
            )
            for view in views
        ]
        return PendingMessagesResponse(ok=True, messages=messages)

    @api.delete("/messages", response_model=ClearResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def clear_messages(svc: DispatchQueue = Depends(get_queue)):
        return ClearResponse(ok=True, removed=svc.clear())

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics(svc: DispatchQueue = Depends(get_queue)):
        """Expose Prometheus metrics collected by the queue."""
        return Response(content=svc.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    return api
