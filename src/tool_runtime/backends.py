# backends.py
# Model backend adapters.
#
# Both adapters speak the same contract to the rest of the runtime:
#   chat(messages, tools) -> ChatResponse
# and raise TransportError for connection failures, timeouts and non-2xx
# answers alike. Callers never see httpx or openai exceptions.

import json
from typing import Protocol

import httpx
from openai import APIConnectionError, APIStatusError, APITimeoutError, OpenAI

from tool_runtime.config import Settings
from tool_runtime.errors import TransportError
from tool_runtime.logging import get_logger
from tool_runtime.models import ChatResponse

logger = get_logger(name=__name__)


class ModelBackend(Protocol):
    def chat(
        self,
        messages: list[dict],
        tools: list[dict] | None = None,
        *,
        timeout: float | None = None,
    ) -> ChatResponse: ...


def _count(value: object) -> int:
    """Token counts from the wire; anything non-numeric counts as zero."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return max(0, int(value))
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return 0


# ---------------------------------------------------------------------------
# Ollama native API
# ---------------------------------------------------------------------------


class OllamaBackend:
    """
    POST /api/chat with stream=false.

    Request:  {model, messages[], tools[], stream: false}
    Response: {message: {content, tool_calls[]}, prompt_eval_count, eval_count}
    """

    def __init__(self, settings: Settings, client: httpx.Client | None = None) -> None:
        self._model = settings.model
        self._timeout = settings.timeout
        self._base_url = settings.base_url.rstrip("/")
        self._client = client or httpx.Client(
            base_url=self._base_url,
            timeout=settings.timeout,
            headers={"Accept": "application/json"},
        )

    def chat(
        self,
        messages: list[dict],
        tools: list[dict] | None = None,
        *,
        timeout: float | None = None,
    ) -> ChatResponse:
        payload: dict = {"model": self._model, "messages": messages, "stream": False}
        if tools is not None:
            payload["tools"] = tools

        try:
            response = self._client.post("/api/chat", json=payload, timeout=timeout or self._timeout)
        except httpx.TimeoutException as exc:
            raise TransportError("Ollama request timed out.", details=str(exc)) from exc
        except httpx.HTTPError as exc:
            logger.error("ollama_connection_failed", base_url=self._base_url, error=str(exc))
            raise TransportError(
                "Could not connect to Ollama.",
                details="Check OLLAMA_BASE_URL and confirm the Ollama server is running.",
            ) from exc

        if not response.is_success:
            logger.warning(
                "ollama_non_success_response",
                upstream_status=response.status_code,
                upstream_body=response.text[:2000],
            )
            raise TransportError(
                "Ollama request failed.",
                status_code=response.status_code,
                details=response.text,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise TransportError("Ollama returned a non-JSON response.", details=response.text[:500]) from exc

        message = data.get("message") if isinstance(data, dict) else None
        if not isinstance(message, dict):
            logger.warning("ollama_unexpected_response", upstream_body=response.text[:2000])
            raise TransportError("Ollama returned an unexpected response.", details=response.text[:500])

        tool_calls = message.get("tool_calls") or []
        if not isinstance(tool_calls, list) or not all(isinstance(call, dict) for call in tool_calls):
            raise TransportError("Ollama returned malformed tool calls.", details=response.text[:500])

        return ChatResponse(
            content=str(message.get("content") or ""),
            tool_calls=tool_calls,
            prompt_eval_count=_count(data.get("prompt_eval_count")),
            eval_count=_count(data.get("eval_count")),
        )

    def close(self) -> None:
        self._client.close()


# ---------------------------------------------------------------------------
# OpenAI-compatible API
# ---------------------------------------------------------------------------


def _to_openai_messages(messages: list[dict]) -> list[dict]:
    """
    Add the call ids the OpenAI schema needs.

    The runtime keeps Ollama-shaped history: assistant tool_calls without ids
    and tool turns without tool_call_id. Ids are assigned in order and each
    tool turn is paired with the oldest unanswered call.
    """
    converted: list[dict] = []
    pending: list[str] = []
    counter = 0

    for message in messages:
        entry = {"role": message["role"], "content": message.get("content") or ""}

        if message["role"] == "assistant" and message.get("tool_calls"):
            calls = []
            for call in message["tool_calls"]:
                function = call.get("function") or {}
                arguments = function.get("arguments", {})
                call_id = call.get("id") or f"call_{counter}"
                counter += 1
                pending.append(call_id)
                calls.append(
                    {
                        "id": call_id,
                        "type": "function",
                        "function": {
                            "name": function.get("name", ""),
                            "arguments": arguments if isinstance(arguments, str) else json.dumps(arguments),
                        },
                    }
                )
            entry["tool_calls"] = calls

        if message["role"] == "tool":
            entry["tool_call_id"] = message.get("tool_call_id") or (pending.pop(0) if pending else "call_orphan")

        converted.append(entry)
    return converted


class OpenAICompatBackend:
    """Any /v1/chat/completions server (OpenRouter, vLLM, Ollama's /v1)."""

    def __init__(self, settings: Settings, client: OpenAI | None = None) -> None:
        self._model = settings.model
        self._timeout = settings.timeout
        self._client = client or OpenAI(
            base_url=settings.base_url,
            api_key=settings.api_key or "unused",
            timeout=settings.timeout,
            max_retries=0,
        )

    def chat(
        self,
        messages: list[dict],
        tools: list[dict] | None = None,
        *,
        timeout: float | None = None,
    ) -> ChatResponse:
        kwargs: dict = {"model": self._model, "messages": _to_openai_messages(messages)}
        if tools:
            kwargs["tools"] = tools

        try:
            completion = self._client.chat.completions.create(**kwargs, timeout=timeout or self._timeout)
        except APITimeoutError as exc:
            raise TransportError("Model request timed out.", details=str(exc)) from exc
        except APIConnectionError as exc:
            raise TransportError("Could not connect to the model backend.", details=str(exc)) from exc
        except APIStatusError as exc:
            raise TransportError(
                "Model request failed.",
                status_code=exc.status_code,
                details=str(exc.message),
            ) from exc

        message = completion.choices[0].message
        tool_calls = [
            {
                "id": call.id,
                "function": {"name": call.function.name, "arguments": call.function.arguments},
            }
            for call in (message.tool_calls or [])
        ]
        usage = completion.usage
        return ChatResponse(
            content=message.content or "",
            tool_calls=tool_calls,
            prompt_eval_count=usage.prompt_tokens if usage else 0,
            eval_count=usage.completion_tokens if usage else 0,
        )


def build_backend(settings: Settings) -> ModelBackend:
    if settings.backend == "openai":
        return OpenAICompatBackend(settings)
    return OllamaBackend(settings)
