"""Failure taxonomy surfaced by the invocation engine."""

from __future__ import annotations

from enum import Enum


class FailureKind(str, Enum):
    """Normalized failure kinds; only ``RATE_LIMIT`` triggers credential rotation."""

    CONFIGURATION = "configuration"
    BINARY_NOT_FOUND = "binary_not_found"
    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    MODEL = "model"
    TIMEOUT = "timeout"
    PROVIDER = "provider"


class AgentInvocationError(RuntimeError):
    """Agent failure with its classified kind and remediation hint."""

    kind: FailureKind = FailureKind.PROVIDER

    def __init__(
        self,
        raw_message: str,
        *,
        provider: str | None = None,
        hint: str | None = None,
    ) -> None:
        super().__init__(f"{raw_message} {hint}" if hint else raw_message)
        self.raw_message = raw_message
        self.provider = provider
        self.hint = hint

    @property
    def retryable_with_rotation(self) -> bool:
        return self.kind is FailureKind.RATE_LIMIT


class AgentConfigurationError(AgentInvocationError):
    """Invalid provider tag or missing CLI command; detected before anything starts."""

    kind = FailureKind.CONFIGURATION


class AgentBinaryNotFoundError(AgentInvocationError):
    kind = FailureKind.BINARY_NOT_FOUND


class AgentAuthenticationError(AgentInvocationError):
    kind = FailureKind.AUTHENTICATION


class AgentRateLimitError(AgentInvocationError):
    kind = FailureKind.RATE_LIMIT


class AgentModelError(AgentInvocationError):
    kind = FailureKind.MODEL


class AgentTimeoutError(AgentInvocationError):
    """Hard timeout expired; output streamed before expiry stays valid."""

    kind = FailureKind.TIMEOUT

    def __init__(
        self,
        raw_message: str,
        *,
        provider: str | None = None,
        hint: str | None = None,
        partial_output: str = "",
    ) -> None:
        super().__init__(raw_message, provider=provider, hint=hint)
        self.partial_output = partial_output


class AgentProviderError(AgentInvocationError):
    """Unclassified provider failure; the raw message passes through."""

    kind = FailureKind.PROVIDER


ERROR_TYPES: dict[FailureKind, type[AgentInvocationError]] = {
    FailureKind.CONFIGURATION: AgentConfigurationError,
    FailureKind.BINARY_NOT_FOUND: AgentBinaryNotFoundError,
    FailureKind.AUTHENTICATION: AgentAuthenticationError,
    FailureKind.RATE_LIMIT: AgentRateLimitError,
    FailureKind.MODEL: AgentModelError,
    FailureKind.TIMEOUT: AgentTimeoutError,
    FailureKind.PROVIDER: AgentProviderError,
}
