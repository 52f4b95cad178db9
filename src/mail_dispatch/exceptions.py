# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exception hierarchy for the mail dispatch queue."""

from __future__ import annotations


class MailDispatchError(Exception):
    """Base class for errors raised by :mod:`mail_dispatch`."""

    code = "mail_dispatch_error"


class PayloadValidationError(MailDispatchError, ValueError):
    """Raised synchronously by ``enqueue`` when a payload cannot be queued.

    Attributes:
        reason: Human readable description of the first problem found.
        index: Position of the offending item inside a bulk request, if any.
    """

    code = "invalid_payload"

    def __init__(self, reason: str, index: int | None = None):
        self.reason = reason
        self.index = index
        if index is not None:
            super().__init__(f"message #{index}: {reason}")
        else:
            super().__init__(reason)


class DeliveryError(MailDispatchError):
    """Raised by a transport when the provider refuses a message.

    Attributes:
        permanent: ``True`` when retrying cannot succeed (bad address, 5xx).
        status_code: HTTP status returned by an API provider, if any.
        smtp_code: SMTP reply code, if any.
    """

    code = "delivery_failed"

    def __init__(
        self,
        message: str,
        *,
        permanent: bool = False,
        status_code: int | None = None,
        smtp_code: int | None = None,
    ):
        super().__init__(message)
        self.permanent = permanent
        self.status_code = status_code
        self.smtp_code = smtp_code
