"""
Governance Errors
=================
Error taxonomy and the typed error envelope parsed at the transport boundary.
"""

import json
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Closed set of failure classes."""

    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    QUOTA_PRO = "quota_pro"
    QUOTA_GENERIC = "quota_generic"
    NETWORK = "network"
    UNCLASSIFIED = "unclassified"

    @property
    def triggers_fallback(self) -> bool:
        return self in (ErrorKind.RATE_LIMIT, ErrorKind.QUOTA_PRO, ErrorKind.QUOTA_GENERIC)


@dataclass(frozen=True)
class ErrorEnvelope:
    """
    A backend failure parsed once into typed fields.

    Attributes:
        message: Innermost human-readable error message
        status_code: Numeric status (HTTP status or the body's ``code``)
        status: Symbolic status from the body, e.g. ``RESOURCE_EXHAUSTED``
        structured: Whether the message came from a structured error body
    """

    message: str
    status_code: int | None = None
    status: str | None = None
    structured: bool = False

    @classmethod
    def from_response(cls, status_code: int, body: str) -> "ErrorEnvelope":
        """Build an envelope from an HTTP status and raw response body."""
        parsed = _parse_error_body(body)
        if parsed is None:
            return cls(message=body.strip() or f"HTTP {status_code}", status_code=status_code)
        return cls(
            message=parsed.message,
            status_code=parsed.status_code or status_code,
            status=parsed.status,
            structured=True,
        )

    @classmethod
    def from_text(cls, text: str) -> "ErrorEnvelope":
        """
        Build an envelope from free text that may embed a JSON error body.

        The body's message may itself be a JSON error; one level of nesting
        is unwrapped.
        """
        start = text.find("{")
        if start != -1:
            parsed = _parse_error_body(text[start:])
            if parsed is not None:
                return parsed
        return cls(message=text, status_code=_status_from_text(text))

    @property
    def is_auth_failure(self) -> bool:
        return self.status_code == 401 or self.status == "401"

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429 or self.status == "429"


def _parse_error_body(body: str) -> ErrorEnvelope | None:
    try:
        payload = json.loads(body)
    except (TypeError, ValueError):
        return None

    error = _api_error(payload)
    if error is None:
        return None

    message = str(error.get("message", ""))
    try:
        nested = _api_error(json.loads(message))
    except (TypeError, ValueError):
        nested = None
    if nested is not None:
        message = str(nested.get("message", message))

    return ErrorEnvelope(
        message=message,
        status_code=_as_int(error.get("code")),
        status=str(error["status"]) if error.get("status") is not None else None,
        structured=True,
    )


def _api_error(payload: Any) -> dict[str, Any] | None:
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        error = payload["error"]
        if "message" in error:
            return error
    return None


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _status_from_text(text: str) -> int | None:
    # Plain-text errors only reveal authentication failures reliably.
    if "401" in text or "no auth credentials" in text.lower():
        return 401
    return None


class GovernorError(Exception):
    """Base exception for all governance errors."""

    kind: ErrorKind = ErrorKind.UNCLASSIFIED


class BackendError(GovernorError):
    """A backend answered with an error; carries the parsed envelope."""

    def __init__(self, envelope: ErrorEnvelope, backend: str | None = None) -> None:
        super().__init__(envelope.message)
        self.envelope = envelope
        self.backend = backend

    @property
    def status_code(self) -> int | None:
        return self.envelope.status_code


class NetworkError(GovernorError):
    """Transport-level failure with no structured body."""

    kind = ErrorKind.NETWORK


class AuthenticationError(GovernorError):
    """Credential missing or rejected."""

    kind = ErrorKind.AUTHENTICATION


class RateLimitError(GovernorError):
    """Transient, backend-signalled rate limit."""

    kind = ErrorKind.RATE_LIMIT


class QuotaExceededError(RateLimitError):
    """A daily allotment is exhausted."""


class ProQuotaExceededError(QuotaExceededError):
    """The daily allotment of a specific premium model is exhausted."""

    kind = ErrorKind.QUOTA_PRO


class GenericQuotaExceededError(QuotaExceededError):
    """A broader daily allotment is exhausted."""

    kind = ErrorKind.QUOTA_GENERIC


class UnsupportedBackendError(GovernorError):
    """No backend resolves for the requested auth mode and model."""


class BudgetExceededError(GovernorError):
    """Locally computed spend would pass a configured limit."""

    def __init__(
        self,
        window: str,
        current_cost: Decimal,
        limit: Decimal,
        estimated_cost: Decimal,
    ) -> None:
        super().__init__(
            f"{window.capitalize()} budget exceeded: spent ${current_cost:.4f} of "
            f"${limit:.2f}, request would add ${estimated_cost:.4f}"
        )
        self.window = window
        self.current_cost = current_cost
        self.limit = limit
        self.estimated_cost = estimated_cost


CLASSIFIED_ERRORS: dict[ErrorKind, type[GovernorError]] = {
    ErrorKind.AUTHENTICATION: AuthenticationError,
    ErrorKind.RATE_LIMIT: RateLimitError,
    ErrorKind.QUOTA_PRO: ProQuotaExceededError,
    ErrorKind.QUOTA_GENERIC: GenericQuotaExceededError,
    ErrorKind.NETWORK: NetworkError,
    ErrorKind.UNCLASSIFIED: GovernorError,
}
