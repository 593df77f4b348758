"""Error taxonomy for providers, tools and the agent loop."""

from __future__ import annotations

CANCELED_MESSAGE = "Request was canceled. You can start a new request anytime."


class AgentRuntimeError(Exception):
    """Base class for all runtime errors."""


class ProviderError(AgentRuntimeError):
    """A model provider request failed."""

    def __init__(self, message: str, *, vendor: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.vendor = vendor
        self.status_code = status_code


class TransportError(ProviderError):
    """Connection or DNS failure reaching the provider."""


class InvalidRequestError(ProviderError):
    """The provider rejected the request (HTTP 400)."""


class AuthError(ProviderError):
    """Missing, invalid or insufficient credentials (HTTP 401/403)."""


class RateLimitError(ProviderError):
    """The provider is throttling requests (HTTP 429)."""


class ModelUnavailableError(ProviderError):
    """Model not found or the service is down (HTTP 404/5xx)."""


class CancellationError(AgentRuntimeError):
    """The caller canceled the request. Not a failure."""

    def __init__(self, message: str = CANCELED_MESSAGE) -> None:
        super().__init__(message)


class ToolExecutionError(AgentRuntimeError):
    """A tool invocation failed; isolated to that call."""


class UnknownModelError(AgentRuntimeError):
    """No model with the given identifier is registered."""


_INVALID_REQUEST_EXAMPLES = {
    "Google": "gemini-2.0-flash",
    "OpenAI": "gpt-4o",
    "Anthropic": "claude-sonnet-4-5-20250929",
}


def error_for_status(provider: str, status_code: int, detail: str = "") -> ProviderError:
    """Map an HTTP status to an actionable error for ``provider`` (display name)."""
    suffix = f" {detail}" if detail else ""
    kwargs = {"vendor": provider, "status_code": status_code}
    if status_code == 400:
        example = _INVALID_REQUEST_EXAMPLES.get(provider, "a model listed by the provider")
        return InvalidRequestError(
            f"Invalid request for {provider}. Please check your model name (e.g. {example}) "
            f"and that it's valid for this provider.{suffix}",
            **kwargs,
        )
    if status_code == 401:
        return AuthError(
            f"Invalid or missing API key for {provider}. Please check your API key in the model settings.{suffix}",
            **kwargs,
        )
    if status_code == 403:
        return AuthError(
            f"Access denied for {provider}. Your API key may not have permission to use this model.{suffix}",
            **kwargs,
        )
    if status_code == 404:
        return ModelUnavailableError(f"Resource not found for {provider}.{suffix}", **kwargs)
    if status_code == 429:
        return RateLimitError(
            f"Rate limit exceeded for {provider}. Please try again in a few moments.{suffix}",
            **kwargs,
        )
    if 500 <= status_code < 600:
        return ModelUnavailableError(
            f"{provider} service is temporarily unavailable. Please try again later.{suffix}",
            **kwargs,
        )
    return ProviderError(
        f"Something went wrong while calling {provider} (error {status_code}). Please try again.{suffix}",
        **kwargs,
    )
