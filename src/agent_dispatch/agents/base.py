"""Provider strategy interface for the invocation engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from agent_dispatch.agents.credentials import CredentialRotationPolicy, ResolvedCredential
from agent_dispatch.agents.models import (
    AgentConfig,
    AgentProvider,
    InvocationRequest,
    InvocationResult,
    LongLivedRequest,
)
from agent_dispatch.agents.process import ProcessLifecycleManager
from agent_dispatch.agents.streaming import AgentRun
from agent_dispatch.config import Settings


@dataclass(slots=True)
class StrategyContext:
    """Shared collaborators handed to every provider strategy."""

    settings: Settings
    processes: ProcessLifecycleManager
    rotation: CredentialRotationPolicy


class ProviderStrategy(Protocol):
    """Protocol implemented by each provider backend."""

    provider: AgentProvider
    credential_key: str | None

    def validate(self, config: AgentConfig) -> None:
        """Raise ``AgentConfigurationError`` before anything is started."""

    def invoke(
        self,
        request: InvocationRequest,
        credential: ResolvedCredential | None,
    ) -> InvocationResult:
        """Run one conversational attempt and return the full response."""

    def start(self, request: LongLivedRequest, task_content: str, run: AgentRun) -> None:
        """Start a long-lived attempt without blocking; outcome is reported through ``run``."""
