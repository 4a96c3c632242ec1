"""
Error Classifier
================
Turns backend failures into an error kind plus an actionable message.

The input may be a parsed ``ErrorEnvelope``, a ``BackendError`` carrying one,
any other ``GovernorError``, or free text embedding a JSON error body.
Classification is pure: no I/O, no state.
"""

import re
from dataclasses import dataclass

from llm_governor.config import AuthMode, UserTier
from llm_governor.errors import (
    BackendError,
    ErrorEnvelope,
    ErrorKind,
    GovernorError,
    NetworkError,
)

PRO_QUOTA_PATTERN = re.compile(r"Quota exceeded for quota metric '.*Pro Requests'")
GENERIC_QUOTA_MARKER = "Quota exceeded for quota metric"

DEFAULT_CURRENT_MODEL = "the current"
DEFAULT_FALLBACK_MODEL = "fallback"

API_KEY_URL = "https://openrouter.ai/keys"
GEMINI_KEY_URL = "https://aistudio.google.com/apikey"
PLAN_UPGRADE_URL = "https://goo.gle/set-up-gemini-code-assist"
PAID_TIER_THANKS = " Thank you for using a paid plan."


@dataclass(frozen=True)
class ClassifiedError:
    """Result of classifying one failure."""

    kind: ErrorKind
    message: str
    envelope: ErrorEnvelope | None = None


def _auth_remediation(auth_mode: AuthMode | None) -> str:
    if auth_mode is AuthMode.OAUTH:
        return (
            "\n\nYour sign-in session is missing or has expired. To authenticate:\n"
            "1. Run the auth command or restart the assistant\n"
            "2. Choose the browser sign-in option\n"
            "3. Complete the login in your browser\n"
            "\nStored tokens are refreshed automatically once a valid login exists."
        )
    if auth_mode is AuthMode.LOGIN_WITH_GOOGLE:
        return (
            "\n\nGoogle login failed. Please sign in again with the auth command, "
            "or switch to an API key."
        )
    if auth_mode is AuthMode.API_KEY:
        return (
            "\n\nAPI key authentication failed. Please ensure:\n"
            f"1. You have a valid API key (for OpenRouter, from {API_KEY_URL})\n"
            "2. The key is set in the environment or in your .env file\n"
            "3. The key belongs to the provider you selected\n"
            "\nRun the auth command to reconfigure your credentials."
        )
    if auth_mode is AuthMode.GEMINI_API_KEY:
        return (
            "\n\nGoogle Gemini API authentication failed. Please ensure:\n"
            f"1. You have a valid Gemini API key from {GEMINI_KEY_URL}\n"
            "2. Your API key is set via the GEMINI_API_KEY environment variable\n"
            "3. Run the auth command to switch to a different authentication method"
        )
    if auth_mode is AuthMode.VERTEX_AI:
        return (
            "\n\nVertex AI authentication failed. Check your Google Cloud project, "
            "location and application default credentials."
        )
    if auth_mode is AuthMode.OLLAMA:
        return (
            "\n\nThe local Ollama daemon rejected the request. Make sure `ollama serve` "
            "is running and that no proxy in front of it requires credentials."
        )
    return "\n\nAuthentication failed. Please run the auth command to configure your API credentials."


def _is_pro_quota(message: str) -> bool:
    return bool(PRO_QUOTA_PATTERN.search(message))


def _is_generic_quota(message: str) -> bool:
    return GENERIC_QUOTA_MARKER in message


def _rate_limit_kind(message: str) -> ErrorKind:
    if _is_pro_quota(message):
        return ErrorKind.QUOTA_PRO
    if _is_generic_quota(message):
        return ErrorKind.QUOTA_GENERIC
    return ErrorKind.RATE_LIMIT


def _rate_limit_remediation(
    kind: ErrorKind,
    auth_mode: AuthMode | None,
    user_tier: UserTier | None,
    current_model: str,
    fallback_model: str,
) -> str:
    switching = (
        "\nPossible quota limitations in place or slow response times detected. "
        f"Switching to the {fallback_model} model for the rest of this session."
    )

    if auth_mode is AuthMode.GEMINI_API_KEY:
        return (
            "\nPlease wait and try again later. To increase your limits, request a quota "
            "increase through AI Studio, or switch to another auth method"
        )
    if auth_mode is AuthMode.VERTEX_AI:
        return (
            "\nPlease wait and try again later. To increase your limits, request a quota "
            "increase through Vertex, or switch to another auth method"
        )
    if auth_mode is not AuthMode.LOGIN_WITH_GOOGLE:
        return switching

    # Unknown tier is treated as free.
    paid = user_tier is not None and user_tier.is_paid
    thanks = PAID_TIER_THANKS if paid else ""
    paid_key_hint = f"the auth command to switch to a paid API key from {GEMINI_KEY_URL}"

    if kind is ErrorKind.QUOTA_PRO:
        text = (
            f"\nYou have reached your daily {current_model} quota limit. You will be "
            f"switched to the {fallback_model} model for the rest of this session.{thanks}"
        )
        if paid:
            return (
                f"{text} To continue accessing the {current_model} model today, "
                f"consider using {paid_key_hint}"
            )
        return (
            f"{text} To increase your limits, upgrade to a plan with higher limits at "
            f"{PLAN_UPGRADE_URL}, or use {paid_key_hint}"
        )

    if kind is ErrorKind.QUOTA_GENERIC:
        if paid:
            return (
                f"\nYou have reached your daily quota limit.{thanks} To continue accessing the "
                f"{current_model} model today, consider using {paid_key_hint}"
            )
        return (
            "\nYou have reached your daily quota limit. To increase your limits, upgrade "
            f"to a plan with higher limits at {PLAN_UPGRADE_URL}, or use {paid_key_hint}"
        )

    return switching + thanks


def _headline(envelope: ErrorEnvelope) -> str:
    # Structured bodies always name their status; the numeric code stands in
    # when the body carries no symbolic one.
    status = envelope.status if envelope.status is not None else envelope.status_code
    if envelope.structured and status is not None:
        return f"[API Error: {envelope.message} (Status: {status})]"
    return f"[API Error: {envelope.message}]"


def _coerce(error: object) -> tuple[ErrorEnvelope | None, ErrorKind | None]:
    if isinstance(error, ErrorEnvelope):
        return error, None
    if isinstance(error, BackendError):
        return error.envelope, None
    if isinstance(error, NetworkError):
        return ErrorEnvelope(message=str(error)), ErrorKind.NETWORK
    if isinstance(error, GovernorError):
        return ErrorEnvelope(message=str(error)), error.kind
    if isinstance(error, str):
        return ErrorEnvelope.from_text(error), None
    return None, None


def classify_error(
    error: object,
    auth_mode: AuthMode | None = None,
    user_tier: UserTier | None = None,
    current_model: str | None = None,
    fallback_model: str | None = None,
) -> ClassifiedError:
    """
    Classify a failure and build its user-facing message.

    Args:
        error: Envelope, governance exception or raw error text
        auth_mode: How the user authenticated; selects remediation text
        user_tier: Subscription tier; selects upgrade paths for quota errors
        current_model: Model that failed, named in quota messages
        fallback_model: Model the session switches to on rate limits

    Returns:
        ClassifiedError with kind, message and the parsed envelope
    """
    envelope, preset_kind = _coerce(error)
    if envelope is None:
        return ClassifiedError(
            kind=ErrorKind.UNCLASSIFIED,
            message="[API Error: An unknown error occurred.]",
        )

    text = _headline(envelope)

    if preset_kind is not None and preset_kind is not ErrorKind.UNCLASSIFIED:
        kind = preset_kind
    elif envelope.is_auth_failure:
        kind = ErrorKind.AUTHENTICATION
    elif envelope.is_rate_limited:
        kind = _rate_limit_kind(envelope.message)
    else:
        kind = ErrorKind.UNCLASSIFIED

    if kind is ErrorKind.AUTHENTICATION:
        text += _auth_remediation(auth_mode)
    elif kind.triggers_fallback:
        text += _rate_limit_remediation(
            kind,
            auth_mode,
            user_tier,
            current_model or DEFAULT_CURRENT_MODEL,
            fallback_model or DEFAULT_FALLBACK_MODEL,
        )

    return ClassifiedError(kind=kind, message=text, envelope=envelope)
