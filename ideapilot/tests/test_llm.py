"""Tests for the model client adapters and the identity verifier."""
from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from ideapilot.identity import CredentialError, IdentityVerifier
from ideapilot.llm import (
    LLMAuthError,
    LLMCallError,
    LLMClient,
    _raise_for,
    to_anthropic_messages,
    to_openai_messages,
)

HISTORY = [
    {"role": "user", "content": "weather in Oslo and the mode?"},
    {
        "role": "assistant",
        "content": "",
        "tool_calls": [
            {"id": "a", "name": "getWeatherInformation", "args": {"location": "Oslo"}},
            {"id": "b", "name": "getModeInfo", "args": {}},
        ],
    },
    {"role": "tool", "tool_call_id": "a", "name": "getWeatherInformation", "content": '{"success": true}'},
    {"role": "tool", "tool_call_id": "b", "name": "getModeInfo", "content": '{"success": true}'},
]


class TestMessageConversion:
    def test_openai(self):
        out = to_openai_messages("sys", HISTORY)
        assert out[0] == {"role": "system", "content": "sys"}
        assert out[2]["content"] is None
        assert out[2]["tool_calls"][0]["function"] == {"name": "getWeatherInformation", "arguments": '{"location": "Oslo"}'}
        assert [m["role"] for m in out] == ["system", "user", "assistant", "tool", "tool"]

    def test_anthropic_groups_tool_results(self):
        out = to_anthropic_messages(HISTORY)
        assert [m["role"] for m in out] == ["user", "assistant", "user"]
        assert [b["type"] for b in out[1]["content"]] == ["tool_use", "tool_use"]
        assert [b["tool_use_id"] for b in out[2]["content"]] == ["a", "b"]


class TestErrorMapping:
    def test_403_is_auth_error(self):
        with pytest.raises(LLMAuthError) as info:
            _raise_for(SimpleNamespace(status_code=403))
        assert info.value.status == 403

    @pytest.mark.parametrize("status,retryable", [(500, True), (429, True), (400, False), (None, True)])
    def test_other_errors(self, status, retryable):
        with pytest.raises(LLMCallError) as info:
            _raise_for(SimpleNamespace(status_code=status))
        assert not isinstance(info.value, LLMAuthError)
        assert info.value.retryable is retryable

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            LLMClient(provider="carrier-pigeon")


def _chunk(content=None, tool_calls=None):
    delta = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta)])


def _tc(index, id=None, name=None, arguments=None):
    return SimpleNamespace(index=index, id=id, function=SimpleNamespace(name=name, arguments=arguments))


async def _aiter(items):
    for item in items:
        yield item


class TestOpenAIStream:
    @pytest.mark.asyncio
    async def test_text_then_assembled_tool_calls(self):
        chunks = [
            _chunk(content="Checking"),
            _chunk(tool_calls=[_tc(0, id="call_1", name="getLocal", arguments='{"loc')]),
            _chunk(tool_calls=[_tc(0, name="Time", arguments='ation": "Oslo"}')]),
            _chunk(tool_calls=[_tc(1, id="call_2", name="getModeInfo", arguments="")]),
        ]
        fake = MagicMock()
        fake.chat.completions.create = AsyncMock(return_value=_aiter(chunks))
        client = LLMClient(provider="openai", model="test-model")

        with patch.object(LLMClient, "_client", return_value=fake):
            events = [e async for e in client.stream("sys", [{"role": "user", "content": "hi"}], [], api_key="tok")]

        assert events[0].kind == "text"
        assert events[0].text == "Checking"
        calls = [e.call for e in events[1:]]
        assert [(c.id, c.name, c.args) for c in calls] == [
            ("call_1", "getLocalTime", {"location": "Oslo"}),
            ("call_2", "getModeInfo", {}),
        ]
        assert "tools" not in fake.chat.completions.create.call_args.kwargs

    @pytest.mark.asyncio
    async def test_sdk_403_becomes_auth_error(self):
        class Forbidden(Exception):
            status_code = 403

        fake = MagicMock()
        fake.chat.completions.create = AsyncMock(side_effect=Forbidden("no"))
        client = LLMClient(provider="openai", model="test-model")
        with patch.object(LLMClient, "_client", return_value=fake):
            with pytest.raises(LLMAuthError):
                async for _ in client.stream("sys", [], []):
                    pass


# ---------------------------------------------------------------------------
# Identity verifier
# ---------------------------------------------------------------------------


def _mock_transport(handler):
    real = httpx.AsyncClient

    def factory(**kwargs):
        return real(transport=httpx.MockTransport(handler), **kwargs)

    return patch("ideapilot.identity.httpx.AsyncClient", side_effect=factory)


class TestIdentityVerifier:
    @pytest.mark.asyncio
    async def test_nested_user_profile(self):
        def handler(request):
            assert request.headers["Authorization"] == "Bearer tok"
            return httpx.Response(200, json={"user": {"id": 7, "email": "ann@x.io", "credits": "2.5"}})

        with _mock_transport(handler):
            profile = await IdentityVerifier("https://id.test/auth/user").verify("tok")
        assert profile.id == "7"
        assert profile.credits == 2.5

    @pytest.mark.asyncio
    async def test_flat_profile(self):
        with _mock_transport(lambda r: httpx.Response(200, json={"user_id": "u1", "paymentMethod": "card"})):
            profile = await IdentityVerifier("https://id.test/auth/user").verify("tok")
        assert profile.id == "u1"
        assert profile.payment_method == "card"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_rejected_token(self, status):
        with _mock_transport(lambda r: httpx.Response(status)):
            assert await IdentityVerifier("https://id.test/auth/user").verify("tok") is None

    @pytest.mark.asyncio
    async def test_server_error(self):
        with _mock_transport(lambda r: httpx.Response(502)):
            with pytest.raises(CredentialError):
                await IdentityVerifier("https://id.test/auth/user").verify("tok")

    @pytest.mark.asyncio
    async def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with _mock_transport(handler):
            with pytest.raises(CredentialError):
                await IdentityVerifier("https://id.test/auth/user").verify("tok")

    @pytest.mark.asyncio
    async def test_missing_id(self):
        with _mock_transport(lambda r: httpx.Response(200, json={"email": "x"})):
            with pytest.raises(CredentialError):
                await IdentityVerifier("https://id.test/auth/user").verify("tok")

    @pytest.mark.asyncio
    async def test_empty_token_and_unconfigured(self, monkeypatch):
        monkeypatch.delenv("IDENTITY_URL", raising=False)
        monkeypatch.delenv("GATEWAY_BASE_URL", raising=False)
        verifier = IdentityVerifier()
        assert await verifier.verify("") is None
        with pytest.raises(CredentialError):
            await verifier.verify("tok")

    def test_url_from_gateway(self, monkeypatch):
        monkeypatch.delenv("IDENTITY_URL", raising=False)
        monkeypatch.setenv("GATEWAY_BASE_URL", "https://gw.test/")
        assert IdentityVerifier().url == "https://gw.test/auth/user"
