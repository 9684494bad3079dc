"""Agent invocation engine: provider dispatch, conversational invoke, long-lived runs."""

from __future__ import annotations

import logging
from pathlib import Path

import httpx

from agent_dispatch.agents.base import ProviderStrategy, StrategyContext
from agent_dispatch.agents.command_line import (
    ClaudeCliStrategy,
    CursorCliStrategy,
    CustomCliStrategy,
)
from agent_dispatch.agents.credentials import CredentialResolver, CredentialRotationPolicy
from agent_dispatch.agents.errors import AgentConfigurationError
from agent_dispatch.agents.hosted import OpenAIStrategy
from agent_dispatch.agents.models import (
    AgentConfig,
    AgentProvider,
    InvocationRequest,
    InvocationResult,
    LongLivedRequest,
    OutputSink,
)
from agent_dispatch.agents.process import ProcessLifecycleManager, ProcessRegistry
from agent_dispatch.agents.streaming import AgentRun, ExitCallback
from agent_dispatch.config import Settings

logger = logging.getLogger(__name__)


class AgentInvoker:
    """Entry point for running AI agents.

    Providers are dispatched through a closed registry built at construction
    time. Configuration problems raise ``AgentConfigurationError`` before any
    process is started or request is sent.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        process_registry: ProcessRegistry | None = None,
        credential_resolver: CredentialResolver | None = None,
        process_manager: ProcessLifecycleManager | None = None,
        http_transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._settings = settings or Settings()
        self._context = StrategyContext(
            settings=self._settings,
            processes=process_manager
            or ProcessLifecycleManager(
                process_registry,
                kill_grace_seconds=self._settings.kill_grace_seconds,
            ),
            rotation=CredentialRotationPolicy(credential_resolver),
        )
        self._strategies: dict[AgentProvider, ProviderStrategy] = {
            AgentProvider.CLAUDE: ClaudeCliStrategy(self._context),
            AgentProvider.CURSOR: CursorCliStrategy(self._context),
            AgentProvider.OPENAI: OpenAIStrategy(self._context, transport=http_transport),
            AgentProvider.CUSTOM: CustomCliStrategy(self._context),
        }

    @property
    def settings(self) -> Settings:
        return self._settings

    def invoke(self, request: InvocationRequest) -> InvocationResult:
        """Run one conversational exchange and return the full response."""

        strategy = self._strategy_for(request.config)
        logger.info(
            "Invoking %s agent model=%s project=%s",
            strategy.provider.value,
            request.config.model,
            request.project_id,
        )
        return self._context.rotation.execute(
            project_id=request.project_id,
            key_name=strategy.credential_key,
            attempt=lambda credential: strategy.invoke(request, credential),
        )

    def run_long_lived(  # noqa: PLR0913
        self,
        config: AgentConfig,
        task_file: Path,
        cwd: Path,
        on_output: OutputSink | None = None,
        on_exit: ExitCallback | None = None,
        role: str | None = None,
        output_log_path: Path | None = None,
        project_id: str | None = None,
        *,
        timeout_seconds: float | None = None,
    ) -> AgentRun:
        """Start a task execution without blocking and return its live handle.

        Output goes to ``on_output`` (and ``run.events()``) as it is produced;
        the ``RunOutcome`` is delivered to ``on_exit`` exactly once.
        """

        strategy = self._strategy_for(config)
        task_path = Path(task_file)
        try:
            task_content = task_path.read_text("utf-8")
        except OSError as error:
            raise AgentConfigurationError(
                f"Could not read task file {task_path}: {error}",
                provider=strategy.provider.value,
            ) from error

        request = LongLivedRequest(
            config=config,
            task_file=task_path,
            cwd=Path(cwd),
            role=role,
            output_log_path=Path(output_log_path) if output_log_path is not None else None,
            project_id=project_id,
            timeout_seconds=timeout_seconds,
        )
        logger.info(
            "Starting long-lived %s agent task=%s cwd=%s role=%s",
            strategy.provider.value,
            task_path,
            request.cwd,
            role,
        )
        run = AgentRun(on_output=on_output, on_exit=on_exit)
        strategy.start(request, task_content, run)
        return run

    def _strategy_for(self, config: AgentConfig) -> ProviderStrategy:
        provider = AgentProvider.parse(config.provider)
        strategy = self._strategies.get(provider)
        if strategy is None:
            raise AgentConfigurationError(
                f"Unsupported agent type: {config.provider!r}.",
                provider=str(config.provider),
            )
        strategy.validate(config)
        return strategy
