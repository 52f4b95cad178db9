# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application wiring: settings -> transport -> queue -> FastAPI app.

The queue is built once per process and injected into the application; its
worker loop is started and stopped by the application lifespan.

Usage:
    uvicorn --factory mail_dispatch.server:create_server_app --port 8000
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .config import DispatchSettings, load_settings
from .core import DispatchQueue
from .retry import RetryPolicy
from .transport import DeliveryTransport, create_transport


def build_queue(settings: DispatchSettings, transport: DeliveryTransport | None = None) -> DispatchQueue:
    """Create the dispatch queue described by ``settings``."""
    if transport is None:
        transport = create_transport(
            settings.transport,
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            resend_api_key=settings.resend_api_key,
            default_sender=settings.default_sender,
        )
    policy = RetryPolicy(
        max_attempts=settings.max_attempts,
        retry_delay=settings.retry_delay,
        backoff=settings.retry_backoff,
    )
    return DispatchQueue(
        transport,
        rate_limit_per_minute=settings.rate_limit_per_minute,
        retry_policy=policy,
        send_interval=settings.send_interval,
        max_enqueue_batch=settings.max_enqueue_batch,
        log_delivery_activity=settings.log_delivery_activity,
    )


def create_server_app(
    settings: DispatchSettings | None = None,
    transport: DeliveryTransport | None = None,
) -> FastAPI:
    """Build the FastAPI application whose lifespan runs the queue worker."""
    settings = settings or load_settings()
    queue = build_queue(settings, transport)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        await queue.start()
        yield
        await queue.stop()

    return create_app(queue, api_token=settings.api_token, lifespan=lifespan)
