"""Dummy collaborators shared by the dispatch queue tests."""

from __future__ import annotations

from typing import Any

from mail_dispatch.transport import DeliveryResult


class FakeClock:
    """Controllable replacement for ``time.time``."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class DummyTransport:
    """Records every attempt; outcomes are scripted per subject.

    ``script`` maps a subject to a list of outcomes consumed one per attempt:
    ``True`` succeeds, ``False`` returns a failed result, an exception instance
    is raised. Subjects without a script (or with an exhausted one) succeed.
    """

    def __init__(self, script: dict[str, list[Any]] | None = None, always_fail: bool = False):
        self.script = {key: list(value) for key, value in (script or {}).items()}
        self.always_fail = always_fail
        self.attempts: list[str] = []
        self.sent: list[str] = []

    async def send(self, payload):
        self.attempts.append(payload.subject)
        if self.always_fail:
            return DeliveryResult.failed("provider unavailable")
        outcomes = self.script.get(payload.subject)
        outcome = outcomes.pop(0) if outcomes else True
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is False:
            return DeliveryResult.failed("provider unavailable")
        self.sent.append(payload.subject)
        return DeliveryResult.ok()


def make_payload(subject: str = "Meeting summary", to: Any = "ada@example.com", **extra: Any) -> dict[str, Any]:
    payload = {"to": to, "subject": subject, "text": f"Body of {subject}"}
    payload.update(extra)
    return payload
