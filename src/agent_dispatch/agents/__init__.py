"""Multi-provider agent invocation.

Command-line agents (claude, cursor, user commands) run detached in their
own process group so a cancellation reaches every helper they spawn. The
hosted OpenAI provider talks HTTP directly. Rate-limited API keys are
rotated once per invocation through an injected credential resolver.
"""

from agent_dispatch.agents.credentials import (
    CredentialEntry,
    CredentialResolver,
    CredentialRotationPolicy,
    CredentialSource,
    ResolvedCredential,
    StaticCredentialResolver,
)
from agent_dispatch.agents.engine import AgentInvoker
from agent_dispatch.agents.errors import (
    AgentAuthenticationError,
    AgentBinaryNotFoundError,
    AgentConfigurationError,
    AgentInvocationError,
    AgentModelError,
    AgentProviderError,
    AgentRateLimitError,
    AgentTimeoutError,
    FailureKind,
)
from agent_dispatch.agents.models import (
    AgentConfig,
    AgentProvider,
    ConversationTurn,
    InvocationRequest,
    InvocationResult,
    RunState,
)
from agent_dispatch.agents.process import (
    InMemoryProcessRegistry,
    ProcessLifecycleManager,
    ProcessRegistry,
)
from agent_dispatch.agents.streaming import AgentRun, ExitEvent, OutputEvent, RunOutcome

__all__ = [
    "AgentAuthenticationError",
    "AgentBinaryNotFoundError",
    "AgentConfig",
    "AgentConfigurationError",
    "AgentInvocationError",
    "AgentInvoker",
    "AgentModelError",
    "AgentProvider",
    "AgentProviderError",
    "AgentRateLimitError",
    "AgentRun",
    "AgentTimeoutError",
    "ConversationTurn",
    "CredentialEntry",
    "CredentialResolver",
    "CredentialRotationPolicy",
    "CredentialSource",
    "ExitEvent",
    "FailureKind",
    "InMemoryProcessRegistry",
    "InvocationRequest",
    "InvocationResult",
    "OutputEvent",
    "ProcessLifecycleManager",
    "ProcessRegistry",
    "ResolvedCredential",
    "RunOutcome",
    "RunState",
    "StaticCredentialResolver",
]
