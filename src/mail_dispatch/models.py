# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Data models for the mail dispatch queue.

Pydantic models validate what callers hand to the queue; plain dataclasses
carry the queue's own state and the read-only views it hands back.

Models:
    - Priority: The three delivery tiers.
    - MessagePayload: Opaque email content passed through to the transport.
    - EnqueueOptions: Per-message scheduling options.
    - QueuedMessage: A message owned by the queue.
    - QueueSnapshot: Point-in-time status of the queue.
    - PendingMessageView: Read-only preview entry for ``list_pending``.
    - DispatchEvent: Outcome of one delivery attempt.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import parseaddr
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .exceptions import PayloadValidationError

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class Priority(str, Enum):
    """Delivery tier of a message. Higher tiers are always attempted first."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Sort key: 0 for ``high`` up to 2 for ``low``."""
        return _PRIORITY_RANK[self]

    @classmethod
    def parse(cls, value: Any) -> Priority:
        """Coerce a label (case-insensitive) or a member into a ``Priority``."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        raise ValueError(f"unknown priority {value!r} (expected high, medium or low)")


_PRIORITY_RANK = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}


class MessageState(str, Enum):
    """Where a held message currently sits in its lifecycle."""

    PENDING = "pending"
    ELIGIBLE = "eligible"
    IN_FLIGHT = "in_flight"


class DispatchStatus(str, Enum):
    """Outcome of a single delivery attempt."""

    SENT = "sent"
    DEFERRED = "deferred"
    ERROR = "error"


def _split_addresses(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


def _check_addresses(values: list[str]) -> list[str]:
    cleaned: list[str] = []
    for raw in values:
        item = str(raw).strip()
        _, address = parseaddr(item)
        if not EMAIL_RE.match(address or ""):
            raise ValueError(f"invalid email address: {item!r}")
        cleaned.append(item)
    return cleaned


class Tag(BaseModel):
    """Provider tag used for tracking (``{"name": "type", "value": "follow-up"}``)."""

    model_config = ConfigDict(extra="forbid")

    name: Annotated[str, Field(min_length=1, max_length=256)]
    value: Annotated[str, Field(max_length=256)]


class MessagePayload(BaseModel):
    """Email content handed to the delivery transport untouched.

    Attributes:
        to: One or more recipients; a comma separated string is accepted.
        subject: Non-empty subject line.
        text: Plain text body.
        html: Optional HTML body.
        from_addr: Sender override (``from`` on the wire).
        cc: Carbon copy recipients.
        bcc: Blind carbon copy recipients.
        tags: Provider tags.
    """

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    to: Annotated[list[str], Field(min_length=1, description="Recipients")]
    subject: Annotated[str, Field(min_length=1, max_length=998, description="Subject line")]
    text: Annotated[str, Field(default="", description="Plain text body")]
    html: Annotated[str | None, Field(default=None, description="HTML body")]
    from_addr: Annotated[str | None, Field(default=None, alias="from", description="Sender override")]
    cc: Annotated[list[str], Field(default_factory=list)]
    bcc: Annotated[list[str], Field(default_factory=list)]
    tags: Annotated[list[Tag], Field(default_factory=list)]

    @field_validator("to", "cc", "bcc", mode="before")
    @classmethod
    def split_address_string(cls, v: Any) -> Any:
        """Accept ``"a@x.io, b@x.io"`` as well as a list."""
        return _split_addresses(v)

    @field_validator("to", "cc", "bcc")
    @classmethod
    def validate_addresses(cls, v: list[str]) -> list[str]:
        return _check_addresses(v)

    @field_validator("subject")
    @classmethod
    def subject_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("subject must not be blank")
        return v

    @model_validator(mode="after")
    def require_body(self) -> MessagePayload:
        if not self.text and not self.html:
            raise ValueError("either text or html body is required")
        return self

    def wire_dict(self) -> dict[str, Any]:
        """Return the payload keyed the way delivery providers expect it."""
        return self.model_dump(by_alias=True, exclude_none=True)


class EnqueueOptions(BaseModel):
    """Scheduling options accepted by ``enqueue``.

    Attributes:
        priority: ``high``, ``medium`` (default) or ``low``.
        scheduled_at: Earliest delivery time. Naive datetimes are read as UTC,
            numbers as epoch seconds. A past value means "eligible now".
        max_attempts: Attempts before permanent failure; queue default if unset.
        metadata: Caller bookkeeping, never interpreted by the queue.
    """

    model_config = ConfigDict(extra="forbid")

    priority: Annotated[Priority, Field(default=Priority.MEDIUM)]
    scheduled_at: Annotated[datetime | float | None, Field(default=None)]
    max_attempts: Annotated[int | None, Field(default=None, ge=1)]
    metadata: Annotated[dict[str, Any], Field(default_factory=dict)]

    @field_validator("priority", mode="before")
    @classmethod
    def normalise_priority(cls, v: Any) -> Any:
        if v is None:
            return Priority.MEDIUM
        return Priority.parse(v)

    def scheduled_epoch(self, default: float) -> float:
        """Return ``scheduled_at`` as epoch seconds, or ``default`` when unset."""
        value = self.scheduled_at
        if value is None:
            return default
        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=UTC)
            return value.timestamp()
        return float(value)


def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    location = ".".join(str(part) for part in err.get("loc", ()))
    message = str(err.get("msg", "invalid value")).removeprefix("Value error, ")
    return f"{location}: {message}" if location else message


def parse_payload(payload: MessagePayload | dict[str, Any], index: int | None = None) -> MessagePayload:
    """Validate a raw payload, raising :class:`PayloadValidationError` on failure."""
    if isinstance(payload, MessagePayload):
        return payload
    if not isinstance(payload, dict):
        raise PayloadValidationError("payload must be a mapping", index=index)
    try:
        return MessagePayload.model_validate(payload)
    except ValidationError as exc:
        raise PayloadValidationError(_first_error(exc), index=index) from exc


def parse_options(options: EnqueueOptions | dict[str, Any] | None, index: int | None = None) -> EnqueueOptions:
    """Validate raw options, raising :class:`PayloadValidationError` on failure."""
    if options is None:
        return EnqueueOptions()
    if isinstance(options, EnqueueOptions):
        return options
    if not isinstance(options, dict):
        raise PayloadValidationError("options must be a mapping", index=index)
    try:
        return EnqueueOptions.model_validate(options)
    except ValidationError as exc:
        raise PayloadValidationError(_first_error(exc), index=index) from exc


def new_message_id() -> str:
    """Return a fresh opaque message identifier."""
    return f"msg_{uuid.uuid4().hex}"


def epoch_to_datetime(value: float) -> datetime:
    return datetime.fromtimestamp(value, UTC)


@dataclass
class QueuedMessage:
    """A message held by the dispatch queue.

    Only the queue mutates instances: ``attempts`` on every delivery attempt
    and ``scheduled_at`` when a retry is planned.
    """

    id: str
    payload: MessagePayload
    priority: Priority
    scheduled_at: float
    max_attempts: int
    enqueued_at: float
    attempts: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    sequence: int = 0
    last_error: str | None = None

    def is_eligible(self, now: float) -> bool:
        return self.scheduled_at <= now

    def view(self, state: MessageState) -> PendingMessageView:
        return PendingMessageView(
            id=self.id,
            to=list(self.payload.to),
            subject=self.payload.subject,
            priority=self.priority,
            attempts=self.attempts,
            scheduled_at=epoch_to_datetime(self.scheduled_at),
            state=state,
        )


@dataclass(frozen=True)
class PendingMessageView:
    """Read-only preview of a held message."""

    id: str
    to: list[str]
    subject: str
    priority: Priority
    attempts: int
    scheduled_at: datetime
    state: MessageState


@dataclass(frozen=True)
class QueueSnapshot:
    """Point-in-time status of the queue, recomputed on every call.

    Attributes:
        queue_length: Messages held, including the one in flight.
        processing: ``True`` while the worker is draining eligible messages.
        sent_this_window: Successful sends in the current rate-limit window.
        rate_limit_per_minute: Configured ceiling (0 means unlimited).
        sent_total: Successful deliveries since the queue was created.
        failed_total: Messages dropped as permanently failed.
        retried_total: Failed attempts that were scheduled for a retry.
        running: ``True`` while the worker task is alive.
    """

    queue_length: int
    processing: bool
    sent_this_window: int
    rate_limit_per_minute: int
    sent_total: int = 0
    failed_total: int = 0
    retried_total: int = 0
    running: bool = False


@dataclass(frozen=True)
class DispatchEvent:
    """Outcome of one delivery attempt, published by the worker loop."""

    id: str
    status: DispatchStatus
    attempts: int
    timestamp: datetime
    priority: Priority
    error: str | None = None
    deferred_until: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_permanent_failure(self) -> bool:
        return self.status is DispatchStatus.ERROR
