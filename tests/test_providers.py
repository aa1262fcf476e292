"""Tests for provider adapters and the provider router."""
import json

import httpx
import pytest

from ai.adapters import (
    PROVIDERS,
    AnthropicProvider,
    CohereProvider,
    DeepSeekProvider,
    GoogleProvider,
    GrokProvider,
    HuggingFaceProvider,
    MistralProvider,
    OllamaProvider,
    OpenAIProvider,
    OpenRouterProvider,
    ProviderRouter,
    create_provider,
)
from ai.gateway.models import ModelDescriptor, PromptPayload
from core.config import GatewaySettings
from core.errors import FatalRequestError, ProviderError


def _transport(handler, seen=None):
    def wrapped(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return handler(request)
    return httpx.MockTransport(wrapped)


def _sse(*events) -> bytes:
    return "".join(f"data: {e if isinstance(e, str) else json.dumps(e)}\n\n" for e in events).encode()


@pytest.fixture
def payload():
    return PromptPayload(prompt="Hello", system_prompt="Be brief.", knowledge_context="KB block", temperature=0.3, max_tokens=64)


async def _collect(stream):
    return [delta async for delta in stream]


class TestOpenAIProvider:
    model = ModelDescriptor(id="gpt-4o-mini", provider="openai")

    @pytest.mark.asyncio
    async def test_complete(self, payload):
        seen = []
        transport = _transport(lambda r: httpx.Response(200, json={
            "choices": [{"message": {"content": "Hi!"}}],
            "usage": {"prompt_tokens": 10, "completion_tokens": 2, "total_tokens": 12},
        }), seen)
        provider = OpenAIProvider(api_key="sk-test", transport=transport)

        completion = await provider.complete(self.model, payload)

        assert completion.content == "Hi!"
        assert completion.usage.total_tokens == 12
        request = seen[0]
        assert request.url.path == "/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer sk-test"
        body = json.loads(request.content)
        assert [m["role"] for m in body["messages"]] == ["system", "system", "user"]
        assert body["messages"][1]["content"] == "KB block"
        assert body["temperature"] == 0.3
        assert body["max_tokens"] == 64

    @pytest.mark.asyncio
    async def test_stream(self, payload):
        content = _sse(
            {"choices": [{"delta": {"role": "assistant"}}]},
            {"choices": [{"delta": {"content": "Hel"}}]},
            {"choices": [{"delta": {"content": "lo"}}]},
            {"choices": [], "usage": {"prompt_tokens": 4, "completion_tokens": 2, "total_tokens": 6}},
            "[DONE]",
        )
        transport = _transport(lambda r: httpx.Response(200, content=content))
        provider = OpenAIProvider(api_key="sk-test", transport=transport)

        deltas = await _collect(provider.stream(self.model, payload))

        assert "".join(d.text_delta for d in deltas) == "Hello"
        assert deltas[-1].usage.total_tokens == 6

    @pytest.mark.asyncio
    async def test_error_status_carries_message(self, payload):
        transport = _transport(lambda r: httpx.Response(429, json={"error": {"message": "Rate limit reached"}}))
        provider = OpenAIProvider(api_key="sk-test", transport=transport)

        with pytest.raises(ProviderError) as info:
            await provider.complete(self.model, payload)

        assert info.value.status_code == 429
        assert "Rate limit reached" in str(info.value)

    @pytest.mark.asyncio
    async def test_stream_error_status(self, payload):
        transport = _transport(lambda r: httpx.Response(503, json={"error": {"message": "overloaded"}}))
        provider = OpenAIProvider(api_key="sk-test", transport=transport)
        with pytest.raises(ProviderError) as info:
            await _collect(provider.stream(self.model, payload))
        assert info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_missing_key_is_fatal(self, payload, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        provider = OpenAIProvider(transport=_transport(lambda r: httpx.Response(200)))
        with pytest.raises(FatalRequestError) as info:
            await provider.complete(self.model, payload)
        assert info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_connection_failure(self, payload):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        provider = OpenAIProvider(api_key="sk-test", transport=_transport(refuse))
        with pytest.raises(ProviderError, match="connection error"):
            await provider.complete(self.model, payload)

    @pytest.mark.asyncio
    async def test_malformed_body(self, payload):
        provider = OpenAIProvider(api_key="sk-test", transport=_transport(lambda r: httpx.Response(200, json={})))
        with pytest.raises(ProviderError) as info:
            await provider.complete(self.model, payload)
        assert info.value.status_code == 502


class TestAnthropicProvider:
    model = ModelDescriptor(id="claude-3-5-sonnet-latest", provider="anthropic")

    @pytest.mark.asyncio
    async def test_complete(self, payload):
        seen = []
        transport = _transport(lambda r: httpx.Response(200, json={
            "content": [{"type": "text", "text": "Claude says hi"}],
            "usage": {"input_tokens": 7, "output_tokens": 3},
        }), seen)
        provider = AnthropicProvider(api_key="ak-test", transport=transport)

        completion = await provider.complete(self.model, payload)

        assert completion.content == "Claude says hi"
        assert completion.usage.total_tokens == 10
        body = json.loads(seen[0].content)
        assert body["system"] == "Be brief.\n\nKB block"
        assert body["messages"] == [{"role": "user", "content": "Hello"}]
        assert seen[0].headers["x-api-key"] == "ak-test"

    @pytest.mark.asyncio
    async def test_stream(self, payload):
        content = _sse(
            {"type": "message_start", "message": {"usage": {"input_tokens": 5}}},
            {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hi"}},
            {"type": "content_block_delta", "delta": {"type": "text_delta", "text": " there"}},
            {"type": "message_delta", "usage": {"output_tokens": 2}},
            {"type": "message_stop"},
        )
        provider = AnthropicProvider(api_key="ak-test", transport=_transport(lambda r: httpx.Response(200, content=content)))

        deltas = await _collect(provider.stream(self.model, payload))

        assert [d.text_delta for d in deltas if d.text_delta] == ["Hi", " there"]
        assert deltas[-1].usage.total_tokens == 7

    @pytest.mark.asyncio
    async def test_stream_error_event(self, payload):
        content = _sse({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})
        provider = AnthropicProvider(api_key="ak-test", transport=_transport(lambda r: httpx.Response(200, content=content)))
        with pytest.raises(ProviderError, match="Overloaded"):
            await _collect(provider.stream(self.model, payload))


class TestOllamaProvider:
    model = ModelDescriptor(id="llama3:latest", provider="ollama")

    @pytest.mark.asyncio
    async def test_complete_needs_no_key(self, payload):
        seen = []
        transport = _transport(lambda r: httpx.Response(200, json={
            "response": "local answer", "prompt_eval_count": 9, "eval_count": 4,
        }), seen)
        provider = OllamaProvider(base_url="http://ollama:11434", transport=transport)

        completion = await provider.complete(self.model, payload)

        assert completion.content == "local answer"
        assert completion.usage.total_tokens == 13
        assert str(seen[0].url) == "http://ollama:11434/api/generate"
        assert json.loads(seen[0].content)["options"]["num_predict"] == 64

    @pytest.mark.asyncio
    async def test_stream_ndjson(self, payload):
        lines = [
            {"response": "a", "done": False},
            {"response": "b", "done": False},
            {"response": "", "done": True, "prompt_eval_count": 1, "eval_count": 2},
        ]
        content = "\n".join(json.dumps(line) for line in lines).encode()
        provider = OllamaProvider(transport=_transport(lambda r: httpx.Response(200, content=content)))

        deltas = await _collect(provider.stream(self.model, payload))

        assert "".join(d.text_delta for d in deltas) == "ab"
        assert deltas[-1].usage.total_tokens == 3


class TestHuggingFaceProvider:
    model = ModelDescriptor(id="meta-llama/Llama-2-70b-chat-hf", provider="huggingface")

    @pytest.mark.asyncio
    async def test_stream_yields_single_chunk(self, payload):
        seen = []
        transport = _transport(lambda r: httpx.Response(200, json=[{"generated_text": "whole answer"}]), seen)
        provider = HuggingFaceProvider(api_key="hf-test", transport=transport)

        deltas = await _collect(provider.stream(self.model, payload))

        assert [d.text_delta for d in deltas] == ["whole answer"]
        assert deltas[0].usage is not None
        assert seen[0].url.path.endswith("/models/meta-llama/Llama-2-70b-chat-hf")
        body = json.loads(seen[0].content)
        assert body["inputs"].startswith("KB block")
        assert body["inputs"].endswith("Hello")


class TestOpenAICompatibleProviders:
    @pytest.mark.parametrize("cls, name, host, path", [
        (GrokProvider, "grok", "api.x.ai", "/v1/chat/completions"),
        (DeepSeekProvider, "deepseek", "api.deepseek.com", "/v1/chat/completions"),
        (MistralProvider, "mistral", "api.mistral.ai", "/v1/chat/completions"),
        (OpenRouterProvider, "openrouter", "openrouter.ai", "/api/v1/chat/completions"),
    ])
    @pytest.mark.asyncio
    async def test_complete_hits_vendor_endpoint(self, payload, cls, name, host, path):
        seen = []
        transport = _transport(lambda r: httpx.Response(200, json={"choices": [{"message": {"content": name}}]}), seen)
        provider = cls(api_key="key", transport=transport)

        completion = await provider.complete(ModelDescriptor(id="some-model", provider=name), payload)

        assert provider.name == name
        assert completion.content == name
        assert seen[0].url.host == host
        assert seen[0].url.path == path
        assert seen[0].headers["Authorization"] == "Bearer key"

    def test_vendor_key_comes_from_its_own_env_var(self, monkeypatch):
        monkeypatch.setenv("DEEPSEEK_API_KEY", "ds-env")
        monkeypatch.setenv("OPENAI_API_KEY", "openai-env")
        assert DeepSeekProvider().api_key == "ds-env"

    @pytest.mark.asyncio
    async def test_mistral_stream_omits_stream_options(self, payload):
        seen = []
        content = _sse(
            {"choices": [{"delta": {"content": "Bon"}}]},
            {"choices": [{"delta": {"content": "jour"}}], "usage": {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5}},
            "[DONE]",
        )
        provider = MistralProvider(api_key="key", transport=_transport(lambda r: httpx.Response(200, content=content), seen))

        deltas = await _collect(provider.stream(ModelDescriptor(id="mistral-small", provider="mistral"), payload))

        assert "".join(d.text_delta for d in deltas) == "Bonjour"
        assert deltas[-1].usage.total_tokens == 5
        body = json.loads(seen[0].content)
        assert body["stream"] is True
        assert "stream_options" not in body

    @pytest.mark.asyncio
    async def test_openrouter_attribution_headers(self, payload):
        seen = []
        transport = _transport(lambda r: httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]}), seen)
        provider = OpenRouterProvider(api_key="key", site_url="https://example.com", transport=transport)

        await provider.complete(ModelDescriptor(id="meta-llama/llama-3-8b", provider="openrouter"), payload)

        assert seen[0].headers["HTTP-Referer"] == "https://example.com"
        assert seen[0].headers["X-Title"] == "AI Completion Gateway"


class TestGoogleProvider:
    model = ModelDescriptor(id="gemini-1.5-flash", provider="google")

    @pytest.mark.asyncio
    async def test_complete(self, payload):
        seen = []
        transport = _transport(lambda r: httpx.Response(200, json={
            "candidates": [{"content": {"parts": [{"text": "Gemini "}, {"text": "says hi"}]}}],
            "usageMetadata": {"promptTokenCount": 6, "candidatesTokenCount": 3, "totalTokenCount": 9},
        }), seen)
        provider = GoogleProvider(api_key="g-test", transport=transport)

        completion = await provider.complete(self.model, payload)

        assert completion.content == "Gemini says hi"
        assert completion.usage.total_tokens == 9
        request = seen[0]
        assert request.url.path == "/v1beta/models/gemini-1.5-flash:generateContent"
        assert request.headers["x-goog-api-key"] == "g-test"
        body = json.loads(request.content)
        assert body["systemInstruction"] == {"parts": [{"text": "Be brief.\n\nKB block"}]}
        assert body["contents"] == [{"role": "user", "parts": [{"text": "Hello"}]}]
        assert body["generationConfig"] == {"temperature": 0.3, "maxOutputTokens": 64}

    @pytest.mark.asyncio
    async def test_stream(self, payload):
        seen = []
        content = _sse(
            {"candidates": [{"content": {"parts": [{"text": "Hel"}]}}],
             "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 1}},
            {"candidates": [{"content": {"parts": [{"text": "lo"}]}}],
             "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 2, "totalTokenCount": 6}},
        )
        provider = GoogleProvider(api_key="g-test", transport=_transport(lambda r: httpx.Response(200, content=content), seen))

        deltas = await _collect(provider.stream(self.model, payload))

        assert [d.text_delta for d in deltas if d.text_delta] == ["Hel", "lo"]
        assert deltas[-1].usage.total_tokens == 6
        assert seen[0].url.path == "/v1beta/models/gemini-1.5-flash:streamGenerateContent"
        assert seen[0].url.params["alt"] == "sse"

    @pytest.mark.asyncio
    async def test_error_status(self, payload):
        transport = _transport(lambda r: httpx.Response(400, json={"error": {"message": "API key not valid"}}))
        provider = GoogleProvider(api_key="bad", transport=transport)
        with pytest.raises(ProviderError, match="API key not valid") as info:
            await provider.complete(self.model, payload)
        assert info.value.status_code == 400


class TestCohereProvider:
    model = ModelDescriptor(id="command-r", provider="cohere")

    @pytest.mark.asyncio
    async def test_complete(self, payload):
        seen = []
        transport = _transport(lambda r: httpx.Response(200, json={
            "text": "Cohere answer",
            "meta": {"tokens": {"input_tokens": 8, "output_tokens": 2}},
        }), seen)
        provider = CohereProvider(api_key="co-test", transport=transport)

        completion = await provider.complete(self.model, payload)

        assert completion.content == "Cohere answer"
        assert completion.usage.total_tokens == 10
        assert seen[0].url.path == "/v1/chat"
        body = json.loads(seen[0].content)
        assert body["message"] == "Hello"
        assert body["preamble"] == "Be brief.\n\nKB block"
        assert body["max_tokens"] == 64

    @pytest.mark.asyncio
    async def test_stream_ndjson(self, payload):
        events = [
            {"event_type": "stream-start", "generation_id": "g1"},
            {"event_type": "text-generation", "text": "Co"},
            {"event_type": "text-generation", "text": "here"},
            {"event_type": "stream-end", "finish_reason": "COMPLETE",
             "response": {"text": "Cohere", "meta": {"billed_units": {"input_tokens": 3, "output_tokens": 2}}}},
        ]
        content = "\n".join(json.dumps(e) for e in events).encode()
        provider = CohereProvider(api_key="co-test", transport=_transport(lambda r: httpx.Response(200, content=content)))

        deltas = await _collect(provider.stream(self.model, payload))

        assert "".join(d.text_delta for d in deltas) == "Cohere"
        assert deltas[-1].usage.total_tokens == 5

    @pytest.mark.asyncio
    async def test_error_message_field(self, payload):
        transport = _transport(lambda r: httpx.Response(429, json={"message": "too many requests"}))
        provider = CohereProvider(api_key="co-test", transport=transport)
        with pytest.raises(ProviderError, match="too many requests") as info:
            await provider.complete(self.model, payload)
        assert info.value.status_code == 429


class TestProviderRouter:
    def test_from_settings_registers_every_provider(self):
        router = ProviderRouter.from_settings(GatewaySettings(_env_file=None, OPENAI_API_KEY="sk"))
        assert set(router.names()) == set(PROVIDERS)
        assert router.get("openai").api_key == "sk"

    def test_from_settings_passes_keys_and_urls(self):
        settings = GatewaySettings(
            _env_file=None, GOOGLE_AI_API_KEY="g", COHERE_API_KEY="c", DEEPSEEK_API_URL="http://deepseek.local/v1",
            OPENROUTER_SITE_URL="https://example.com",
        )
        router = ProviderRouter.from_settings(settings)
        assert router.get("google").api_key == "g"
        assert router.get("cohere").api_key == "c"
        assert router.get("deepseek").base_url == "http://deepseek.local/v1"
        assert router.get("openrouter").site_url == "https://example.com"

    def test_unknown_provider_is_fatal(self):
        with pytest.raises(FatalRequestError, match="Unsupported AI provider"):
            ProviderRouter().get("mystery")

    def test_create_provider_rejects_unknown_type(self):
        with pytest.raises(ValueError):
            create_provider("mystery")
        assert isinstance(create_provider("OpenAI", api_key="k"), OpenAIProvider)
