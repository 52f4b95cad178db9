# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Delivery transports: the single network call that sends one message.

A transport receives a validated :class:`~mail_dispatch.models.MessagePayload`
and makes exactly one delivery attempt. It reports the outcome either by
returning a :class:`DeliveryResult` or by raising; the dispatch queue treats
an exception like a failed result and classifies it through
:func:`mail_dispatch.retry.classify_error`.

Two transports are provided:

- :class:`SMTPTransport` sends through an SMTP relay with ``aiosmtplib``.
- :class:`ResendTransport` posts to the Resend HTTP API with ``aiohttp``.

Any object with a compatible ``send`` method (coroutine or plain function)
can be used instead, which is how the tests drive the queue.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any, Protocol, runtime_checkable

import aiohttp
import aiosmtplib

from .exceptions import DeliveryError
from .logger import get_logger
from .models import MessagePayload

logger = get_logger(__name__)

DEFAULT_SENDER = "notifications@localhost"
RESEND_API_URL = "https://api.resend.com/emails"


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of one transport call.

    Attributes:
        success: ``True`` when the provider accepted the message.
        error: Provider error text for a failed attempt.
        permanent: ``True`` when retrying cannot help.
        provider_id: Identifier assigned by the provider, when known.
    """

    success: bool
    error: str | None = None
    permanent: bool = False
    provider_id: str | None = None

    @classmethod
    def ok(cls, provider_id: str | None = None) -> DeliveryResult:
        return cls(success=True, provider_id=provider_id)

    @classmethod
    def failed(cls, error: str, permanent: bool = False) -> DeliveryResult:
        return cls(success=False, error=error, permanent=permanent)


@runtime_checkable
class DeliveryTransport(Protocol):
    """Anything able to attempt the delivery of one message."""

    def send(self, payload: MessagePayload) -> DeliveryResult | Awaitable[DeliveryResult]: ...


def build_email(payload: MessagePayload, default_sender: str = DEFAULT_SENDER) -> EmailMessage:
    """Translate a payload into an :class:`EmailMessage`.

    The text body is the first part; an HTML body, when present, is added as
    the ``text/html`` alternative.
    """
    msg = EmailMessage()
    msg["From"] = payload.from_addr or default_sender
    msg["To"] = ", ".join(payload.to)
    msg["Subject"] = payload.subject
    if payload.cc:
        msg["Cc"] = ", ".join(payload.cc)
    if payload.bcc:
        msg["Bcc"] = ", ".join(payload.bcc)
    for tag in payload.tags:
        msg[f"X-Tag-{tag.name}"] = tag.value
    if payload.text:
        msg.set_content(payload.text)
        if payload.html:
            msg.add_alternative(payload.html, subtype="html")
    else:
        msg.set_content(payload.html or "", subtype="html")
    return msg


class SMTPTransport:
    """Send each message over a fresh SMTP connection.

    Attributes:
        host: SMTP relay hostname.
        port: SMTP relay port; 465 implies implicit TLS.
        user: Optional login.
        password: Optional password.
        use_tls: Implicit TLS; ``None`` infers it from the port.
        timeout: Seconds allowed for connect plus send.
        default_sender: ``From`` used when the payload carries none.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 25,
        user: str | None = None,
        password: str | None = None,
        use_tls: bool | None = None,
        timeout: float = 30.0,
        default_sender: str = DEFAULT_SENDER,
    ):
        self.host = host
        self.port = int(port)
        self.user = user
        self.password = password
        self.use_tls = (self.port == 465) if use_tls is None else bool(use_tls)
        self.timeout = float(timeout)
        self.default_sender = default_sender

    async def send(self, payload: MessagePayload) -> DeliveryResult:
        msg = build_email(payload, self.default_sender)
        smtp = aiosmtplib.SMTP(hostname=self.host, port=self.port, use_tls=self.use_tls, timeout=self.timeout)
        async with asyncio.timeout(self.timeout):
            await smtp.connect()
            try:
                if self.user:
                    await smtp.login(self.user, self.password or "")
                await smtp.send_message(msg)
            finally:
                try:
                    await smtp.quit()
                except aiosmtplib.SMTPException:
                    logger.debug("SMTP QUIT failed for %s:%s", self.host, self.port)
        return DeliveryResult.ok(provider_id=msg.get("Message-ID"))


class ResendTransport:
    """Send through the Resend HTTP API.

    ``429`` and ``5xx`` answers are transient; any other ``4xx`` means the
    provider refused the message and is permanent.
    """

    def __init__(
        self,
        api_key: str,
        *,
        default_sender: str = DEFAULT_SENDER,
        api_url: str = RESEND_API_URL,
        timeout: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ):
        if not api_key:
            raise ValueError("Resend API key is not configured")
        self.api_key = api_key
        self.default_sender = default_sender
        self.api_url = api_url
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session

    def build_request(self, payload: MessagePayload) -> dict[str, Any]:
        body: dict[str, Any] = {
            "from": payload.from_addr or self.default_sender,
            "to": list(payload.to),
            "subject": payload.subject,
        }
        if payload.text:
            body["text"] = payload.text
        if payload.html:
            body["html"] = payload.html
        if payload.cc:
            body["cc"] = list(payload.cc)
        if payload.bcc:
            body["bcc"] = list(payload.bcc)
        if payload.tags:
            body["tags"] = [tag.model_dump() for tag in payload.tags]
        return body

    async def send(self, payload: MessagePayload) -> DeliveryResult:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        body = self.build_request(payload)
        if self._session is not None:
            return await self._post(self._session, body, headers)
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            return await self._post(session, body, headers)

    async def _post(
        self, session: aiohttp.ClientSession, body: dict[str, Any], headers: dict[str, str]
    ) -> DeliveryResult:
        async with session.post(self.api_url, json=body, headers=headers) as resp:
            if resp.status < 300:
                data = await resp.json(content_type=None)
                return DeliveryResult.ok(provider_id=(data or {}).get("id"))
            text = await resp.text()
        permanent = 400 <= resp.status < 500 and resp.status != 429
        raise DeliveryError(
            f"Resend API returned {resp.status}: {text[:200]}",
            permanent=permanent,
            status_code=resp.status,
        )


def create_transport(
    kind: str,
    *,
    smtp_host: str = "localhost",
    smtp_port: int = 25,
    smtp_user: str | None = None,
    smtp_password: str | None = None,
    smtp_use_tls: bool | None = None,
    resend_api_key: str | None = None,
    default_sender: str = DEFAULT_SENDER,
) -> SMTPTransport | ResendTransport:
    """Build the transport named by ``kind`` (``"smtp"`` or ``"resend"``)."""
    kind = (kind or "smtp").strip().lower()
    if kind == "smtp":
        return SMTPTransport(
            smtp_host,
            smtp_port,
            smtp_user,
            smtp_password,
            use_tls=smtp_use_tls,
            default_sender=default_sender,
        )
    if kind == "resend":
        return ResendTransport(resend_api_key or "", default_sender=default_sender)
    raise ValueError(f"unknown transport {kind!r} (expected smtp or resend)")
