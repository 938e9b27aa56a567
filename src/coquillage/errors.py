"""Error kinds surfaced by the synchronization core.

Every failure leaving the core is a :class:`SyncError` tagged with an
:class:`ErrorKind`, so the transport layer can map it to a status code without
inspecting adapter-specific exceptions.  Messages are sanitized before they
are stored on the error: credential-looking values are redacted, whitespace
is collapsed, and the text is truncated to 200 characters.
"""

from __future__ import annotations

import re
from enum import StrEnum
from typing import Any

_MAX_MESSAGE_LENGTH = 200


class ErrorKind(StrEnum):
    """Categories of failure a caller can act on."""

    adapter_unavailable = "AdapterUnavailable"
    not_found = "NotFound"
    validation_rejected = "ValidationRejected"
    partial_write_failure = "PartialWriteFailure"
    not_modifiable = "NotModifiable"


def redact_credential_values(message: str) -> str:
    """Redact credential-looking values from an error message."""
    redacted = message
    # key=value style pairs
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|secret_key|token)\s*=\s*([^\s,;]+)",
        r"\1=[REDACTED]",
        redacted,
    )
    # JSON/Python dict style quoted values
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|secret_key|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(r"(?i)\bBearer\s+[A-Za-z0-9._\-]+", "Bearer [REDACTED]", redacted)
    # Stripe secret/restricted keys
    redacted = re.sub(r"\b(sk|rk)_(live|test)_[A-Za-z0-9]+", r"\1_\2_[REDACTED]", redacted)
    return redacted


def sanitize_message(message: str) -> str:
    """Redact, normalize whitespace and truncate an error message."""
    return " ".join(redact_credential_values(message).split())[:_MAX_MESSAGE_LENGTH]


class SyncError(Exception):
    """Base class for every error raised by the synchronization core.

    Attributes:
        kind: The :class:`ErrorKind` tag.
        message: Human-readable, sanitized message.
        store: Which backend failed (``calendar``, ``record_store``,
            ``payments``) or ``None`` for input-level failures.
        step: The adapter call or check that failed.
    """

    kind: ErrorKind

    def __init__(
        self,
        message: str,
        *,
        store: str | None = None,
        step: str | None = None,
    ) -> None:
        self.message = sanitize_message(message)
        self.store = store
        self.step = step
        super().__init__(self.message)

    def details(self) -> dict[str, Any]:
        """Extra context carried by the error, merged into :meth:`to_dict`."""
        return {}

    def to_dict(self) -> dict[str, Any]:
        """Return the structured error object exposed to callers."""
        payload: dict[str, Any] = {
            "kind": self.kind.value,
            "message": self.message,
            "store": self.store,
            "step": self.step,
        }
        payload.update(self.details())
        return payload


class AdapterUnavailableError(SyncError):
    """The store or provider is not configured or cannot be reached."""

    kind = ErrorKind.adapter_unavailable


class NotFoundError(SyncError):
    """A lookup by external or record id found nothing."""

    kind = ErrorKind.not_found


class ValidationRejectedError(SyncError):
    """The input, or the remote store/provider, rejected the payload."""

    kind = ErrorKind.validation_rejected


class NotModifiableError(SyncError):
    """The requested change violates the appointment lifecycle."""

    kind = ErrorKind.not_modifiable

    def __init__(
        self,
        message: str,
        *,
        current_status: str,
        requested_status: str | None,
        store: str | None = None,
        step: str | None = None,
    ) -> None:
        self.current_status = current_status
        self.requested_status = requested_status
        super().__init__(message, store=store, step=step)

    def details(self) -> dict[str, Any]:
        return {
            "current_status": self.current_status,
            "requested_status": self.requested_status,
        }


class PartialWriteFailureError(SyncError):
    """One store was mutated and the other was not.

    Carries the surviving identifiers so a caller or an operator-facing
    reconciliation job can act on the inconsistency.
    """

    kind = ErrorKind.partial_write_failure

    def __init__(
        self,
        message: str,
        *,
        external_event_id: str | None,
        record_id: int | None = None,
        completed_step: str,
        guidance: str,
        store: str | None = None,
        step: str | None = None,
    ) -> None:
        self.external_event_id = external_event_id
        self.record_id = record_id
        self.completed_step = completed_step
        self.guidance = guidance
        super().__init__(message, store=store, step=step)

    def details(self) -> dict[str, Any]:
        return {
            "external_event_id": self.external_event_id,
            "record_id": self.record_id,
            "completed_step": self.completed_step,
            "guidance": self.guidance,
        }
