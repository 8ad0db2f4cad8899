"""Language-model completion client with streamed text and tool-call proposals.

History is passed in a provider-neutral shape::

    {"role": "user", "content": str}
    {"role": "assistant", "content": str, "tool_calls": [{"id", "name", "args"}]}
    {"role": "tool", "tool_call_id": str, "name": str, "content": str}

and converted per provider right before the request.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Literal

from ideapilot.utils import json_parse

log = logging.getLogger(__name__)


class LLMCallError(Exception):
    """LLM call failed."""
    def __init__(self, message: str, status: int | None = None, retryable: bool = False):
        super().__init__(message)
        self.status = status
        self.retryable = retryable


class LLMAuthError(LLMCallError):
    """The completion service rejected the credential (HTTP 403)."""


@dataclass
class ToolCall:
    id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass
class StreamEvent:
    kind: Literal["text", "tool_call"]
    text: str = ""
    call: ToolCall | None = None


def _raise_for(exc: Exception) -> None:
    status = getattr(exc, "status_code", None)
    if status == 403:
        raise LLMAuthError(f"LLM credential rejected: {exc}", status=403) from exc
    retryable = status is None or status == 429 or status >= 500
    raise LLMCallError(f"LLM API call failed: {exc}", status=status, retryable=retryable) from exc


# ---------------------------------------------------------------------------
# History conversion
# ---------------------------------------------------------------------------


def to_openai_messages(system: str, history: list[dict[str, Any]]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = [{"role": "system", "content": system}]
    for msg in history:
        if msg["role"] == "tool":
            out.append({"role": "tool", "tool_call_id": msg["tool_call_id"], "content": msg["content"]})
        elif msg["role"] == "assistant" and msg.get("tool_calls"):
            out.append({
                "role": "assistant",
                "content": msg.get("content") or None,
                "tool_calls": [
                    {
                        "id": tc["id"],
                        "type": "function",
                        "function": {"name": tc["name"], "arguments": json.dumps(tc.get("args") or {})},
                    }
                    for tc in msg["tool_calls"]
                ],
            })
        else:
            out.append({"role": msg["role"], "content": msg.get("content", "")})
    return out


def to_anthropic_messages(history: list[dict[str, Any]]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for msg in history:
        if msg["role"] == "tool":
            block = {"type": "tool_result", "tool_use_id": msg["tool_call_id"], "content": msg["content"]}
            # Consecutive tool results share one user turn.
            if out and out[-1]["role"] == "user" and isinstance(out[-1]["content"], list):
                out[-1]["content"].append(block)
            else:
                out.append({"role": "user", "content": [block]})
        elif msg["role"] == "assistant":
            blocks: list[dict[str, Any]] = []
            if msg.get("content"):
                blocks.append({"type": "text", "text": msg["content"]})
            for tc in msg.get("tool_calls") or []:
                blocks.append({"type": "tool_use", "id": tc["id"], "name": tc["name"], "input": tc.get("args") or {}})
            out.append({"role": "assistant", "content": blocks or ""})
        else:
            out.append({"role": "user", "content": msg.get("content", "")})
    return out


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class LLMClient:
    """Unified async streaming client supporting Anthropic and OpenAI."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "openai")
        self.model = model or os.environ.get("LLM_MODEL", "")
        self._api_key = api_key or os.environ.get("GATEWAY_API_KEY")
        self._base_url = base_url or os.environ.get("GATEWAY_BASE_URL")
        if self.provider == "anthropic":
            self.model = self.model or "claude-haiku-4-5-20251001"
        elif self.provider in ("openai", "openai_compatible"):
            self.model = self.model or "gpt-4.1-mini"
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    def _client(self, api_key: str | None) -> Any:
        key = api_key or self._api_key
        if self.provider == "anthropic":
            import anthropic
            kwargs: dict[str, Any] = {"api_key": key or os.environ.get("ANTHROPIC_API_KEY")}
            if self._base_url:
                kwargs["base_url"] = f"{self._base_url.rstrip('/')}/v1/anthropic"
            return anthropic.AsyncAnthropic(**kwargs)

        import openai
        kwargs = {}
        key = key or os.environ.get("OPENAI_API_KEY")
        if key:
            kwargs["api_key"] = key
        if self._base_url:
            suffix = "" if self.provider == "openai_compatible" else "/v1/openai"
            kwargs["base_url"] = f"{self._base_url.rstrip('/')}{suffix}"
        return openai.AsyncOpenAI(**kwargs)

    async def stream(
        self,
        system: str,
        history: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        api_key: str | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Yield text deltas as they arrive, then the step's tool-call proposals in order."""
        client = self._client(api_key)
        if self.provider == "anthropic":
            gen = self._stream_anthropic(client, system, history, tools)
        else:
            gen = self._stream_openai(client, system, history, tools)
        try:
            async for event in gen:
                yield event
        except LLMCallError:
            raise
        except Exception as exc:
            _raise_for(exc)

    async def _stream_openai(self, client, system, history, tools) -> AsyncIterator[StreamEvent]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": to_openai_messages(system, history),
            "stream": True,
        }
        if tools:
            kwargs["tools"] = [
                {"type": "function", "function": {
                    "name": t["name"], "description": t["description"], "parameters": t["parameters"],
                }}
                for t in tools
            ]
        response = await client.chat.completions.create(**kwargs)

        pending: dict[int, dict[str, str]] = {}
        async for chunk in response:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            if delta.content:
                yield StreamEvent("text", text=delta.content)
            for tc in delta.tool_calls or []:
                slot = pending.setdefault(tc.index, {"id": "", "name": "", "args": ""})
                if tc.id:
                    slot["id"] = tc.id
                if tc.function is not None:
                    slot["name"] += tc.function.name or ""
                    slot["args"] += tc.function.arguments or ""

        for index in sorted(pending):
            slot = pending[index]
            args = json_parse(slot["args"] or "{}", None)
            if not isinstance(args, dict):
                log.warning("Tool call %s had unparseable arguments: %s", slot["name"], slot["args"][:200])
                args = {}
            yield StreamEvent("tool_call", call=ToolCall(id=slot["id"], name=slot["name"], args=args))

    async def _stream_anthropic(self, client, system, history, tools) -> AsyncIterator[StreamEvent]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": 4096,
            "system": system,
            "messages": to_anthropic_messages(history),
        }
        if tools:
            kwargs["tools"] = [
                {"name": t["name"], "description": t["description"], "input_schema": t["parameters"]}
                for t in tools
            ]
        async with client.messages.stream(**kwargs) as stream:
            async for text in stream.text_stream:
                yield StreamEvent("text", text=text)
            final = await stream.get_final_message()

        for block in final.content:
            if block.type == "tool_use":
                yield StreamEvent("tool_call", call=ToolCall(id=block.id, name=block.name, args=dict(block.input or {})))
