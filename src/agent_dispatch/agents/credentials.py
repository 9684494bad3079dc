"""Per-project API credential selection and one-shot rotation on rate limits."""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Protocol, TypeVar

from agent_dispatch.agents.errors import AgentRateLimitError
from agent_dispatch.agents.models import AgentProvider

logger = logging.getLogger(__name__)

ENV_CREDENTIAL_ID = "__env__"

PROVIDER_KEY_NAMES: dict[AgentProvider, str] = {
    AgentProvider.CURSOR: "CURSOR_API_KEY",
    AgentProvider.OPENAI: "OPENAI_API_KEY",
}

T = TypeVar("T")


class CredentialSource(str, Enum):
    PROJECT = "project"
    GLOBAL = "global"
    ENV = "env"


@dataclass(frozen=True, slots=True)
class ResolvedCredential:
    """Credential picked for one attempt; only ``id`` is ever logged."""

    value: str
    id: str
    source: CredentialSource

    def __repr__(self) -> str:
        return f"ResolvedCredential(id={self.id!r}, source={self.source.value!r})"


@dataclass(slots=True)
class CredentialEntry:
    """One configured API key and its last rate-limit hit."""

    id: str
    value: str
    source: CredentialSource = CredentialSource.GLOBAL
    limit_hit_at: datetime | None = None

    def __repr__(self) -> str:
        return (
            f"CredentialEntry(id={self.id!r}, source={self.source.value!r}, "
            f"limit_hit_at={self.limit_hit_at!r})"
        )


class CredentialResolver(Protocol):
    """External credential store consulted before each attempt."""

    def get_next_key(self, project_id: str, key_name: str) -> ResolvedCredential | None:
        """Return the credential to use, or None to fall back to the process environment."""

    def record_limit_hit(
        self,
        project_id: str,
        key_name: str,
        key_id: str,
        source: CredentialSource,
    ) -> None:
        """Mark a credential as rate-limited."""

    def clear_limit_hit(
        self,
        project_id: str,
        key_name: str,
        key_id: str,
        source: CredentialSource,
    ) -> None:
        """Clear the rate-limit mark after a successful attempt."""


class StaticCredentialResolver:
    """In-memory resolver over configured keys with a rate-limit cooldown.

    Entries whose limit hit is younger than the cooldown are skipped. The
    process environment is consulted only when no entries exist for the key
    name at all.
    """

    def __init__(
        self,
        entries: Mapping[str, Iterable[CredentialEntry]] | None = None,
        *,
        cooldown_hours: float = 24.0,
        environ: Mapping[str, str] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, list[CredentialEntry]] = {
            key_name: list(items) for key_name, items in (entries or {}).items()
        }
        self._cooldown = timedelta(hours=cooldown_hours)
        self._environ = environ if environ is not None else os.environ
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    def add(self, key_name: str, entry: CredentialEntry) -> None:
        with self._lock:
            self._entries.setdefault(key_name, []).append(entry)

    def get_next_key(self, project_id: str, key_name: str) -> ResolvedCredential | None:
        with self._lock:
            entries = self._entries.get(key_name) or []
            if not entries:
                env_value = self._environ.get(key_name, "").strip()
                if env_value:
                    return ResolvedCredential(
                        value=env_value,
                        id=ENV_CREDENTIAL_ID,
                        source=CredentialSource.ENV,
                    )
                return None

            now = self._clock()
            for entry in entries:
                if not entry.value.strip():
                    continue
                if entry.limit_hit_at is not None and now - entry.limit_hit_at < self._cooldown:
                    continue
                return ResolvedCredential(value=entry.value, id=entry.id, source=entry.source)
        logger.warning(
            "All %s credentials are rate-limited or empty for project %s",
            key_name,
            project_id,
        )
        return None

    def record_limit_hit(
        self,
        project_id: str,
        key_name: str,
        key_id: str,
        source: CredentialSource,
    ) -> None:
        if source is CredentialSource.ENV:
            return
        with self._lock:
            entry = self._find(key_name, key_id)
            if entry is not None:
                entry.limit_hit_at = self._clock()

    def clear_limit_hit(
        self,
        project_id: str,
        key_name: str,
        key_id: str,
        source: CredentialSource,
    ) -> None:
        if source is CredentialSource.ENV:
            return
        with self._lock:
            entry = self._find(key_name, key_id)
            if entry is not None:
                entry.limit_hit_at = None

    def _find(self, key_name: str, key_id: str) -> CredentialEntry | None:
        for entry in self._entries.get(key_name) or []:
            if entry.id == key_id:
                return entry
        return None


class CredentialRotationPolicy:
    """Wraps provider attempts with credential selection and a single rotation."""

    def __init__(self, resolver: CredentialResolver | None = None) -> None:
        self._resolver = resolver

    def applies(self, project_id: str | None, key_name: str | None) -> bool:
        return self._resolver is not None and bool(project_id) and bool(key_name)

    def acquire(self, project_id: str | None, key_name: str | None) -> ResolvedCredential | None:
        if not self.applies(project_id, key_name):
            return None
        assert self._resolver is not None
        return self._resolver.get_next_key(project_id, key_name)  # type: ignore[arg-type]

    def settle(
        self,
        project_id: str | None,
        key_name: str | None,
        credential: ResolvedCredential | None,
        error: BaseException | None,
    ) -> None:
        """Record the attempt result against ``credential``.

        Success clears the limit mark, a rate-limit failure records one, any
        other failure leaves bookkeeping untouched.
        """

        if credential is None or not self.applies(project_id, key_name):
            return
        assert self._resolver is not None
        if error is None:
            self._resolver.clear_limit_hit(
                project_id,  # type: ignore[arg-type]
                key_name,  # type: ignore[arg-type]
                credential.id,
                credential.source,
            )
        elif isinstance(error, AgentRateLimitError):
            logger.warning(
                "Credential %s (%s) hit a rate limit for %s",
                credential.id,
                credential.source.value,
                key_name,
            )
            self._resolver.record_limit_hit(
                project_id,  # type: ignore[arg-type]
                key_name,  # type: ignore[arg-type]
                credential.id,
                credential.source,
            )

    def execute(
        self,
        *,
        project_id: str | None,
        key_name: str | None,
        attempt: Callable[[ResolvedCredential | None], T],
        can_retry: Callable[[], bool] | None = None,
    ) -> T:
        """Run ``attempt`` and, on a rate limit, retry it once with a fresh credential.

        ``can_retry`` is consulted after a rate limit; returning ``False`` (for example
        once output has already reached the caller) surfaces the error unretried. A
        replacement that is the same credential again is never retried.
        """

        credential = self.acquire(project_id, key_name)
        try:
            result = attempt(credential)
        except AgentRateLimitError as error:
            if credential is None:
                raise
            self.settle(project_id, key_name, credential, error)
            if can_retry is not None and not can_retry():
                logger.info("Not rotating %s: output was already delivered", key_name)
                raise
            replacement = self.acquire(project_id, key_name)
            if replacement is None or (
                replacement.id == credential.id and replacement.source is credential.source
            ):
                raise
            logger.info(
                "Retrying %s with rotated credential %s (was %s)",
                key_name,
                replacement.id,
                credential.id,
            )
            try:
                result = attempt(replacement)
            except AgentRateLimitError as retry_error:
                self.settle(project_id, key_name, replacement, retry_error)
                raise
            self.settle(project_id, key_name, replacement, None)
            return result
        self.settle(project_id, key_name, credential, None)
        return result


def credential_env(
    base_env: Mapping[str, str],
    key_name: str | None,
    credential: ResolvedCredential | None,
) -> dict[str, str]:
    """Child environment with the selected credential injected."""

    env = dict(base_env)
    if key_name and credential is not None:
        env[key_name] = credential.value
    return env
