"""Deterministic provider failure classification with remediation hints."""

from __future__ import annotations

import re
from dataclasses import dataclass

from agent_dispatch.agents.errors import (
    ERROR_TYPES,
    AgentInvocationError,
    AgentTimeoutError,
    FailureKind,
)

FAILURE_CLASSIFIER_VERSION = 1

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    r"\b(http|status|error|code)\W{0,3}429\b",
    r"rate[\s_-]*limit",
    r"overloaded",
    r"add\s+more\s+tokens",
    r"quota\s+exceeded",
    r"too\s+many\s+requests",
    r"resource[\s_-]*exhausted",
)
_AUTH_PATTERNS: tuple[str, ...] = (
    r"authentication\s+(required|failed|error)",
    r"run\s+'agent\s+login'",
    r"not\s+logged\s+in",
    r"please\s+(run\s+)?['\"`]?claude\s+login",
    r"unauthorized",
    r"\b401\b",
    r"invalid[\s_-]+(api[\s_-]?key|token|credential)",
    r"incorrect\s+api\s+key",
    r"expired\s+(token|session|credential)",
    r"api\s+key",
)
_BINARY_NOT_FOUND_PATTERNS: tuple[str, ...] = (
    r"spawn\s+\S+\s+enoent",
    r"command\s+not\s+found",
    r"executable\s+not\s+found",
    r"cli\s+was\s+not\s+found",
)
_MODEL_PATTERNS: tuple[str, ...] = (
    r"model_not_found",
    r"(invalid|unknown|unsupported)\s+model",
    r"model\b.*\b(invalid|not\s+found|unknown|not\s+available|does\s+not\s+exist)",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    r"etimedout",
    r"timed\s+out",
    r"timeout",
)

_HINTS: dict[tuple[FailureKind, str | None], str] = {
    (FailureKind.BINARY_NOT_FOUND, "claude"): (
        "claude CLI was not found. Install it from https://docs.anthropic.com/cli "
        "or via npm: npm install -g @anthropic-ai/claude-code"
    ),
    (FailureKind.BINARY_NOT_FOUND, "cursor"): (
        "Cursor agent CLI was not found. Install: curl https://cursor.com/install -fsS | bash. "
        "Then restart your terminal."
    ),
    (FailureKind.BINARY_NOT_FOUND, None): (
        "Check that the configured CLI command is installed and on PATH."
    ),
    (FailureKind.AUTHENTICATION, "cursor"): (
        "Cursor agent requires authentication. Either run `agent login` in your terminal, "
        "or add CURSOR_API_KEY to your project .env file. Get a key from Cursor -> Settings "
        "-> Integrations -> User API Keys."
    ),
    (FailureKind.AUTHENTICATION, "claude"): (
        "Claude CLI requires authentication. Run `claude login` and try again."
    ),
    (FailureKind.AUTHENTICATION, "openai"): (
        "Check that OPENAI_API_KEY is set in .env or in the global API key settings and valid."
    ),
    (FailureKind.AUTHENTICATION, None): "Check that your API key is set in .env and valid.",
    (FailureKind.MODEL, "cursor"): (
        "Run `agent models` in your terminal to list available models, then update the model "
        "in Project Settings -> Agent Config."
    ),
    (FailureKind.MODEL, None): (
        "Check the model identifier in Project Settings -> Agent Config."
    ),
    (FailureKind.RATE_LIMIT, None): (
        "The API key hit its rate limit. Add another key in the API key settings or wait "
        "for the limit to reset."
    ),
    (FailureKind.TIMEOUT, "cursor"): (
        "The Cursor agent may hang on some prompts. Try a different model in Project "
        "Settings, or use Claude instead."
    ),
}


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    kind: FailureKind
    matched_rule: str
    matched_pattern: str | None
    hint: str | None

    def to_error(
        self,
        raw_message: str,
        *,
        provider: str | None,
        partial_output: str = "",
    ) -> AgentInvocationError:
        """Build the exception matching this classification."""

        if self.kind is FailureKind.TIMEOUT:
            return AgentTimeoutError(
                raw_message,
                provider=provider,
                hint=self.hint,
                partial_output=partial_output,
            )
        return ERROR_TYPES[self.kind](raw_message, provider=provider, hint=self.hint)


def classify_failure(
    *,
    provider: str | None,
    raw: str,
    status_code: int | None = None,
    binary_rules: bool = True,
) -> FailureClassification:
    """Classify raw provider error text (and optional HTTP status) into a failure kind.

    ``binary_rules=False`` skips the missing-executable rules, for text taken from an agent
    that did start (its own tool output may mention missing files or commands).
    """

    haystack = raw.lower()

    if status_code == 429:
        return _classified(FailureKind.RATE_LIMIT, provider, "http_status", "429")
    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return _classified(FailureKind.RATE_LIMIT, provider, "rate_limit", pattern)

    if status_code in (401, 403):
        return _classified(FailureKind.AUTHENTICATION, provider, "http_status", str(status_code))
    pattern = _first_match(haystack, _AUTH_PATTERNS)
    if pattern is not None:
        return _classified(FailureKind.AUTHENTICATION, provider, "authentication", pattern)

    pattern = _first_match(haystack, _BINARY_NOT_FOUND_PATTERNS) if binary_rules else None
    if pattern is not None:
        return _classified(FailureKind.BINARY_NOT_FOUND, provider, "binary_not_found", pattern)

    pattern = _first_match(haystack, _MODEL_PATTERNS)
    if pattern is not None:
        return _classified(FailureKind.MODEL, provider, "model", pattern)

    pattern = _first_match(haystack, _TIMEOUT_PATTERNS)
    if pattern is not None:
        return _classified(FailureKind.TIMEOUT, provider, "timeout", pattern)

    return FailureClassification(
        kind=FailureKind.PROVIDER,
        matched_rule="fallback_passthrough",
        matched_pattern=None,
        hint=None,
    )


def classification_for(kind: FailureKind, provider: str | None) -> FailureClassification:
    """Classification for a failure whose kind is already known (e.g. a missing executable)."""

    return _classified(kind, provider, "direct", None)


def error_from_raw(
    *,
    provider: str | None,
    raw: str,
    status_code: int | None = None,
    partial_output: str = "",
    binary_rules: bool = True,
) -> AgentInvocationError:
    classification = classify_failure(
        provider=provider,
        raw=raw,
        status_code=status_code,
        binary_rules=binary_rules,
    )
    return classification.to_error(raw, provider=provider, partial_output=partial_output)


def hint_for(kind: FailureKind, provider: str | None) -> str | None:
    return _HINTS.get((kind, provider)) or _HINTS.get((kind, None))


def _classified(
    kind: FailureKind,
    provider: str | None,
    rule: str,
    pattern: str | None,
) -> FailureClassification:
    return FailureClassification(
        kind=kind,
        matched_rule=rule,
        matched_pattern=pattern,
        hint=hint_for(kind, provider),
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if re.search(pattern, haystack):
            return pattern
    return None
