"""OpenAI hosted-API provider over httpx (chat completions and responses surfaces)."""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from agent_dispatch.agents.base import StrategyContext
from agent_dispatch.agents.credentials import PROVIDER_KEY_NAMES, ResolvedCredential
from agent_dispatch.agents.errors import (
    AgentInvocationError,
    AgentProviderError,
    AgentTimeoutError,
    FailureKind,
)
from agent_dispatch.agents.failure_classifier import (
    classification_for,
    error_from_raw,
    hint_for,
)
from agent_dispatch.agents.models import (
    AgentConfig,
    AgentProvider,
    InvocationRequest,
    InvocationResult,
    LongLivedRequest,
    OutputSink,
    RunState,
)
from agent_dispatch.agents.streaming import (
    AgentRun,
    OutputAccumulator,
    RunOutcome,
    iter_sse_payloads,
)

logger = logging.getLogger(__name__)

RESPONSES_MODEL_MARKER = "codex"
_PROVIDER = AgentProvider.OPENAI.value
_DEFAULT_ROLE = "developer"


class ApiSurface(str, Enum):
    """Hosted API surface; exactly one is used per request."""

    CHAT_COMPLETIONS = "chat_completions"
    RESPONSES = "responses"

    @property
    def path(self) -> str:
        if self is ApiSurface.RESPONSES:
            return "/responses"
        return "/chat/completions"


def select_surface(model: str) -> ApiSurface:
    """Codex-family models are served only by the responses surface."""

    if RESPONSES_MODEL_MARKER in model.lower():
        return ApiSurface.RESPONSES
    return ApiSurface.CHAT_COMPLETIONS


def long_lived_instructions(role: str | None, cwd: str) -> str:
    return (
        f"You are an autonomous coding agent acting as the {role or _DEFAULT_ROLE}. "
        f"You work in the repository at {cwd}. Complete the task described by the user "
        "and finish with a short summary of what you changed."
    )


@dataclass(slots=True)
class HostedCompletionRequest:
    """One request to the hosted API, independent of the surface."""

    model: str
    messages: list[dict[str, str]]
    max_tokens: int
    instructions: str | None = None
    stream: bool = False


@dataclass(slots=True)
class HostedCompletion:
    text: str
    truncated: bool = False
    cancelled: bool = False


def build_payload(surface: ApiSurface, request: HostedCompletionRequest) -> dict[str, Any]:
    if surface is ApiSurface.RESPONSES:
        payload: dict[str, Any] = {
            "model": request.model,
            "input": list(request.messages),
            "max_output_tokens": request.max_tokens,
        }
        if request.instructions:
            payload["instructions"] = request.instructions
    else:
        messages = list(request.messages)
        if request.instructions:
            messages.insert(0, {"role": "system", "content": request.instructions})
        payload = {
            "model": request.model,
            "messages": messages,
            "max_tokens": request.max_tokens,
        }
    if request.stream:
        payload["stream"] = True
    return payload


def extract_text(surface: ApiSurface, body: dict[str, Any]) -> str:
    """Response text of a non-streaming call."""

    if surface is ApiSurface.RESPONSES:
        output_text = body.get("output_text")
        if isinstance(output_text, str):
            return output_text
        parts: list[str] = []
        for item in body.get("output") or ():
            for content in item.get("content") or ():
                text = content.get("text")
                if content.get("type") == "output_text" and isinstance(text, str):
                    parts.append(text)
        return "".join(parts)

    choices = body.get("choices") or ()
    if not choices:
        return ""
    message = choices[0].get("message") or {}
    content = message.get("content")
    return content if isinstance(content, str) else ""


def extract_delta(surface: ApiSurface, event: dict[str, Any]) -> str:
    """Text increment carried by one streamed event."""

    if surface is ApiSurface.RESPONSES:
        event_type = event.get("type")
        if event_type == "response.output_text.delta":
            delta = event.get("delta")
            return delta if isinstance(delta, str) else ""
        if event_type in ("error", "response.failed"):
            raise error_from_raw(provider=_PROVIDER, raw=_event_error_message(event))
        return ""

    if "error" in event:
        raise error_from_raw(provider=_PROVIDER, raw=_event_error_message(event))
    choices = event.get("choices") or ()
    if not choices:
        return ""
    delta = (choices[0].get("delta") or {}).get("content")
    return delta if isinstance(delta, str) else ""


class OpenAIClient:
    """Minimal OpenAI HTTP client with streaming, deadline and cancellation support."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        api_key: str,
        base_url: str,
        timeout_seconds: float,
        max_output_bytes: int,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._timeout_seconds = timeout_seconds
        self._max_output_bytes = max_output_bytes
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    def complete(
        self,
        request: HostedCompletionRequest,
        *,
        sink: OutputSink | None = None,
        should_stop: Callable[[], bool] | None = None,
        on_response: Callable[[httpx.Response], None] | None = None,
    ) -> HostedCompletion:
        surface = select_surface(request.model)
        payload = build_payload(surface, request)
        accumulator = OutputAccumulator(self._max_output_bytes, sink=sink)
        deadline = time.monotonic() + self._timeout_seconds
        logger.info(
            "OpenAI request model=%s surface=%s stream=%s",
            request.model,
            surface.value,
            request.stream,
        )

        try:
            if request.stream:
                cancelled = self._stream(
                    surface,
                    payload,
                    accumulator,
                    deadline=deadline,
                    should_stop=should_stop,
                    on_response=on_response,
                )
                return HostedCompletion(
                    text=accumulator.text,
                    truncated=accumulator.truncated,
                    cancelled=cancelled,
                )
            response = self._client.post(surface.path, json=payload)
            _raise_for_status(response)
            accumulator.feed(extract_text(surface, response.json()))
            return HostedCompletion(text=accumulator.text, truncated=accumulator.truncated)
        except httpx.TimeoutException as error:
            logger.warning("OpenAI request timed out after %.0fs", self._timeout_seconds)
            raise self._timeout_error(accumulator) from error
        except (httpx.HTTPError, httpx.StreamError) as error:
            raise AgentProviderError(
                f"OpenAI request failed: {error}",
                provider=_PROVIDER,
            ) from error

    def _stream(
        self,
        surface: ApiSurface,
        payload: dict[str, Any],
        accumulator: OutputAccumulator,
        *,
        deadline: float,
        should_stop: Callable[[], bool] | None,
        on_response: Callable[[httpx.Response], None] | None = None,
    ) -> bool:
        stopped = should_stop or (lambda: False)
        with self._client.stream("POST", surface.path, json=payload) as response:
            if on_response is not None:
                on_response(response)
            _raise_for_status(response)
            try:
                for event in iter_sse_payloads(response.iter_lines()):
                    if stopped():
                        logger.info("OpenAI stream cancelled")
                        return True
                    if time.monotonic() > deadline:
                        raise self._timeout_error(accumulator)
                    accumulator.feed(extract_delta(surface, event))
            except (httpx.HTTPError, httpx.StreamError):
                # Closing the response from the cancelling thread breaks the read.
                if stopped():
                    logger.info("OpenAI stream closed on cancel")
                    return True
                raise
        return stopped()

    def _timeout_error(self, accumulator: OutputAccumulator) -> AgentTimeoutError:
        return AgentTimeoutError(
            f"OpenAI request timed out after {self._timeout_seconds:.0f}s",
            provider=_PROVIDER,
            hint=hint_for(FailureKind.TIMEOUT, _PROVIDER),
            partial_output=accumulator.text,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> OpenAIClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


class OpenAIStrategy:
    """Hosted OpenAI provider; long-lived runs stream on a worker thread."""

    provider = AgentProvider.OPENAI
    credential_key: str | None = PROVIDER_KEY_NAMES[AgentProvider.OPENAI]

    def __init__(
        self,
        context: StrategyContext,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._context = context
        self._transport = transport

    def validate(self, config: AgentConfig) -> None:
        return None

    def invoke(
        self,
        request: InvocationRequest,
        credential: ResolvedCredential | None,
    ) -> InvocationResult:
        settings = self._context.settings
        messages = [{"role": turn.role, "content": turn.content} for turn in request.history]
        messages.append({"role": "user", "content": request.prompt})
        completion_request = HostedCompletionRequest(
            model=request.config.model or settings.openai.default_model,
            messages=messages,
            max_tokens=settings.openai.invoke_max_tokens,
            instructions=request.system_prompt,
            stream=request.on_chunk is not None,
        )
        with self._client(credential, settings.timeout_seconds) as client:
            completion = client.complete(completion_request, sink=request.on_chunk)
        return InvocationResult(
            content=completion.text,
            provider=self.provider,
            truncated=completion.truncated,
        )

    def start(self, request: LongLivedRequest, task_content: str, run: AgentRun) -> None:
        control = _HostedRunControl(run, self._context.settings.max_output_bytes)
        run.dispatched(None, control.cancel)
        if control.stopped:
            return
        worker = threading.Thread(
            target=self._run_task,
            args=(request, task_content, run, control),
            name="agent-openai-run",
            daemon=True,
        )
        worker.start()

    def _run_task(
        self,
        request: LongLivedRequest,
        task_content: str,
        run: AgentRun,
        control: _HostedRunControl,
    ) -> None:
        settings = self._context.settings
        timeout = request.timeout_seconds or settings.timeout_seconds
        completion_request = HostedCompletionRequest(
            model=request.config.model or settings.openai.default_model,
            messages=[{"role": "user", "content": task_content}],
            max_tokens=settings.openai.long_lived_max_tokens,
            instructions=long_lived_instructions(request.role, str(request.cwd)),
            stream=True,
        )

        def attempt(credential: ResolvedCredential | None) -> HostedCompletion:
            with self._client(credential, timeout) as client:
                return client.complete(
                    completion_request,
                    sink=control.deliver,
                    should_stop=lambda: control.stopped,
                    on_response=control.attach,
                )

        try:
            completion = self._context.rotation.execute(
                project_id=request.project_id,
                key_name=self.credential_key,
                attempt=attempt,
                can_retry=lambda: not control.delivered,
            )
        except AgentInvocationError as error:
            if control.stopped:
                outcome = control.killed_outcome()
            elif isinstance(error, AgentTimeoutError):
                outcome = RunOutcome(
                    RunState.TIMED_OUT,
                    None,
                    control.text,
                    control.truncated,
                    error=error,
                )
            else:
                logger.warning("OpenAI long-lived run failed: %s", error.raw_message)
                outcome = RunOutcome(
                    RunState.FAILED,
                    1,
                    control.text,
                    control.truncated,
                    error=error,
                )
        else:
            if completion.cancelled or control.stopped:
                outcome = control.killed_outcome()
            else:
                outcome = RunOutcome(RunState.COMPLETED, 0, control.text, control.truncated)
        run.finish(outcome)

    def _client(self, credential: ResolvedCredential | None, timeout: float) -> OpenAIClient:
        settings = self._context.settings
        return OpenAIClient(
            api_key=self._api_key(credential),
            base_url=settings.openai.base_url,
            timeout_seconds=timeout,
            max_output_bytes=settings.max_output_bytes,
            transport=self._transport,
        )

    def _api_key(self, credential: ResolvedCredential | None) -> str:
        if credential is not None:
            return credential.value
        key_name = self.credential_key or "OPENAI_API_KEY"
        api_key = os.environ.get(key_name, "").strip()
        if not api_key:
            classification = classification_for(FailureKind.AUTHENTICATION, _PROVIDER)
            raise classification.to_error(f"{key_name} is not set.", provider=_PROVIDER)
        return api_key


class _HostedRunControl:
    """Cancel handle and delivered-text record of one hosted long-lived run.

    Cancelling closes the live response so a stalled read is abandoned, and resolves the
    run as killed straight away with whatever was delivered; the worker's own late
    outcome is then ignored by the run.
    """

    def __init__(self, run: AgentRun, max_output_bytes: int) -> None:
        self._run = run
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._response: httpx.Response | None = None
        self._delivered = False
        self._accumulator = OutputAccumulator(max_output_bytes, sink=run.deliver)

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    @property
    def delivered(self) -> bool:
        return self._delivered

    @property
    def text(self) -> str:
        return self._accumulator.text

    @property
    def truncated(self) -> bool:
        return self._accumulator.truncated

    def deliver(self, chunk: str) -> None:
        if not chunk or self.stopped:
            return
        self._delivered = True
        self._accumulator.feed(chunk)

    def attach(self, response: httpx.Response) -> None:
        with self._lock:
            self._response = response
        if self.stopped:
            _close_quietly(response)

    def cancel(self) -> None:
        self._stop.set()
        with self._lock:
            response = self._response
        if response is not None:
            _close_quietly(response)
        self._run.finish(self.killed_outcome())

    def killed_outcome(self) -> RunOutcome:
        return RunOutcome(RunState.KILLED, None, self.text, self.truncated)


def _close_quietly(response: httpx.Response) -> None:
    try:
        response.close()
    except Exception:  # noqa: BLE001
        logger.debug("Closing cancelled OpenAI stream failed", exc_info=True)


def _raise_for_status(response: httpx.Response) -> None:
    if response.is_success:
        return
    response.read()
    message = _response_error(response)
    raise error_from_raw(
        provider=_PROVIDER,
        raw=f"OpenAI API error ({response.status_code}): {message}",
        status_code=response.status_code,
    )


def _response_error(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text.strip() or response.reason_phrase
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str):
            return error
    return response.text.strip() or response.reason_phrase


def _event_error_message(event: dict[str, Any]) -> str:
    error = event.get("error")
    if error is None and isinstance(event.get("response"), dict):
        error = event["response"].get("error")
    if isinstance(error, dict):
        return str(error.get("message") or error)
    if isinstance(error, str):
        return error
    return f"OpenAI stream error: {event.get('type', 'unknown')}"
