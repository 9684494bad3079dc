"""Runtime configuration for agent invocation."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from urllib.parse import urlparse

DEFAULT_TIMEOUT_SECONDS = 120.0
DEFAULT_MAX_OUTPUT_BYTES = 10 * 1024 * 1024
DEFAULT_KILL_GRACE_SECONDS = 5.0
ROTATED_KEY_NAMES = ("CURSOR_API_KEY", "OPENAI_API_KEY")


@dataclass(slots=True)
class CliAgentSettings:
    """Executables used for command-line agent providers."""

    claude_binary: str = "claude"
    cursor_binary: str = "agent"


@dataclass(slots=True)
class OpenAISettings:
    """Hosted OpenAI API settings."""

    base_url: str = "https://api.openai.com/v1"
    default_model: str = "gpt-4o-mini"
    invoke_max_tokens: int = 8192
    long_lived_max_tokens: int = 16384


@dataclass(slots=True)
class CredentialSettings:
    """Credential rotation settings.

    ``api_keys`` maps a provider key name (``CURSOR_API_KEY``, ``OPENAI_API_KEY``) to the
    keys rotated for it, in order.
    """

    limit_cooldown_hours: float = 24.0
    api_keys: dict[str, tuple[str, ...]] = field(default_factory=dict)


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES
    kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS
    cli: CliAgentSettings = field(default_factory=CliAgentSettings)
    openai: OpenAISettings = field(default_factory=OpenAISettings)
    credentials: CredentialSettings = field(default_factory=CredentialSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults suited to local development."""

        return cls(
            timeout_seconds=float(
                os.getenv("AGENT_DISPATCH_TIMEOUT_SECONDS", str(DEFAULT_TIMEOUT_SECONDS)),
            ),
            max_output_bytes=int(
                os.getenv("AGENT_DISPATCH_MAX_OUTPUT_BYTES", str(DEFAULT_MAX_OUTPUT_BYTES)),
            ),
            kill_grace_seconds=float(
                os.getenv("AGENT_DISPATCH_KILL_GRACE_SECONDS", str(DEFAULT_KILL_GRACE_SECONDS)),
            ),
            cli=CliAgentSettings(
                claude_binary=os.getenv("AGENT_DISPATCH_CLAUDE_BINARY", "claude"),
                cursor_binary=os.getenv("AGENT_DISPATCH_CURSOR_BINARY", "agent"),
            ),
            openai=OpenAISettings(
                base_url=os.getenv(
                    "AGENT_DISPATCH_OPENAI_BASE_URL",
                    "https://api.openai.com/v1",
                ).rstrip("/"),
                default_model=os.getenv("AGENT_DISPATCH_OPENAI_DEFAULT_MODEL", "gpt-4o-mini"),
            ),
            credentials=CredentialSettings(
                limit_cooldown_hours=float(
                    os.getenv("AGENT_DISPATCH_LIMIT_COOLDOWN_HOURS", "24"),
                ),
                api_keys=_api_keys_from_env(),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any value is out of range."""

        if self.timeout_seconds <= 0:
            raise ValueError("AGENT_DISPATCH_TIMEOUT_SECONDS must be > 0.")
        if self.max_output_bytes <= 0:
            raise ValueError("AGENT_DISPATCH_MAX_OUTPUT_BYTES must be a positive integer.")
        if self.kill_grace_seconds < 0:
            raise ValueError("AGENT_DISPATCH_KILL_GRACE_SECONDS must be >= 0.")
        if not self.cli.claude_binary.strip():
            raise ValueError("AGENT_DISPATCH_CLAUDE_BINARY must not be empty.")
        if not self.cli.cursor_binary.strip():
            raise ValueError("AGENT_DISPATCH_CURSOR_BINARY must not be empty.")
        parsed = urlparse(self.openai.base_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(
                "Invalid AGENT_DISPATCH_OPENAI_BASE_URL: "
                f"{self.openai.base_url!r}. Expected an absolute http(s) URL.",
            )
        if self.credentials.limit_cooldown_hours < 0:
            raise ValueError("AGENT_DISPATCH_LIMIT_COOLDOWN_HOURS must be >= 0.")


def _api_keys_from_env() -> dict[str, tuple[str, ...]]:
    """Read comma-separated key lists from AGENT_DISPATCH_CURSOR_API_KEYS and friends."""

    api_keys: dict[str, tuple[str, ...]] = {}
    for key_name in ROTATED_KEY_NAMES:
        raw = os.getenv(f"AGENT_DISPATCH_{key_name}S", "")
        keys = tuple(part.strip() for part in raw.split(",") if part.strip())
        if keys:
            api_keys[key_name] = keys
    return api_keys
