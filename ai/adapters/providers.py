"""AI Provider Adapters for different LLM services."""
import json
import os
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from ai.gateway.models import Completion, ModelDescriptor, PromptPayload, StreamDelta, TokenUsage
from core.errors import FatalRequestError, ProviderError
from core.logging import logger


class BaseProvider(ABC):
    """Base class for AI providers.

    Adapters translate a PromptPayload into one provider call and normalize
    the result.  They never retry; failures are raised as ProviderError tagged
    with the HTTP status so the retry policy can classify them.
    """

    name: str = "base"
    requires_api_key: bool = True

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = (base_url or "").rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @abstractmethod
    async def complete(self, model: ModelDescriptor, payload: PromptPayload) -> Completion:
        """Non-streaming completion."""
        pass

    @abstractmethod
    def stream(self, model: ModelDescriptor, payload: PromptPayload) -> AsyncIterator[StreamDelta]:
        """Streaming completion yielding text deltas in provider order."""
        pass

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport)

    def _require_api_key(self) -> str:
        if self.requires_api_key and not self.api_key:
            raise FatalRequestError(f"{self.name} API key is not configured", status_code=401, provider=self.name)
        return self.api_key or ""

    def _transport_error(self, error: httpx.HTTPError) -> ProviderError:
        if isinstance(error, httpx.TimeoutException):
            return ProviderError(f"{self.name} request timeout: {error}", provider=self.name)
        return ProviderError(f"{self.name} connection error: {error}", provider=self.name)

    def _status_error(self, response: httpx.Response) -> ProviderError:
        detail = response.reason_phrase or "Unknown error"
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict):
                detail = error.get("message") or detail
            elif isinstance(error, str):
                detail = error
            elif body.get("message"):
                detail = body["message"]
        logger.error(f"{self.name} API error ({response.status_code}): {detail}")
        return ProviderError(f"{self.name} API error: {detail}", status_code=response.status_code, provider=self.name)

    async def _post(self, url: str, headers: Dict[str, str], body: Dict[str, Any]) -> Any:
        async with self._client() as client:
            try:
                response = await client.post(url, headers=headers, json=body, timeout=self.timeout)
            except httpx.HTTPError as e:
                raise self._transport_error(e) from e
            if response.is_error:
                raise self._status_error(response)
            return response.json()

    async def _stream_lines(self, url: str, headers: Dict[str, str], body: Dict[str, Any]) -> AsyncIterator[str]:
        async with self._client() as client:
            try:
                async with client.stream("POST", url, headers=headers, json=body, timeout=self.timeout) as response:
                    if response.is_error:
                        await response.aread()
                        raise self._status_error(response)
                    async for line in response.aiter_lines():
                        if line:
                            yield line
            except httpx.HTTPError as e:
                raise self._transport_error(e) from e

    @staticmethod
    def _sse_data(line: str) -> Optional[str]:
        """Payload of an SSE ``data:`` line, or None for other lines."""
        if not line.startswith("data:"):
            return None
        return line[len("data:"):].strip()


class OpenAIProvider(BaseProvider):
    """OpenAI chat completions API.

    Vendors exposing the same ``/chat/completions`` contract subclass this and
    override ``name``, ``api_key_env`` and ``default_base_url``.
    """

    name = "openai"
    api_key_env = "OPENAI_API_KEY"
    default_base_url = "https://api.openai.com/v1"
    include_stream_usage = True

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None, **kwargs):
        api_key = api_key or os.environ.get(self.api_key_env)
        base_url = base_url or self.default_base_url
        super().__init__(api_key, base_url, **kwargs)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._require_api_key()}",
            "Content-Type": "application/json",
        }

    def _messages(self, payload: PromptPayload) -> List[Dict[str, str]]:
        messages = [{"role": "system", "content": payload.system_prompt}]
        if payload.knowledge_context:
            messages.append({"role": "system", "content": payload.knowledge_context})
        messages.append({"role": "user", "content": payload.prompt})
        return messages

    def _body(self, model: ModelDescriptor, payload: PromptPayload, stream: bool = False) -> Dict[str, Any]:
        body = {
            "model": model.id,
            "messages": self._messages(payload),
            "temperature": payload.temperature,
            "max_tokens": payload.max_tokens,
        }
        if stream:
            body["stream"] = True
            if self.include_stream_usage:
                body["stream_options"] = {"include_usage": True}
        return body

    @staticmethod
    def _usage(data: Dict[str, Any]) -> Optional[TokenUsage]:
        usage = data.get("usage")
        if not usage:
            return None
        return TokenUsage(
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
            total_tokens=usage.get("total_tokens", 0),
        )

    async def complete(self, model: ModelDescriptor, payload: PromptPayload) -> Completion:
        data = await self._post(f"{self.base_url}/chat/completions", self._headers(), self._body(model, payload))
        try:
            content = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"{self.name} returned a malformed response: {e}", status_code=502, provider=self.name) from e
        return Completion(content=content, usage=self._usage(data))

    async def stream(self, model: ModelDescriptor, payload: PromptPayload) -> AsyncIterator[StreamDelta]:
        url = f"{self.base_url}/chat/completions"
        async for line in self._stream_lines(url, self._headers(), self._body(model, payload, stream=True)):
            data = self._sse_data(line)
            if not data or data == "[DONE]":
                continue
            event = json.loads(data)
            usage = self._usage(event)
            choices = event.get("choices") or []
            text = (choices[0].get("delta") or {}).get("content") if choices else None
            if text or usage:
                yield StreamDelta(text_delta=text or "", usage=usage)


class AnthropicProvider(BaseProvider):
    """Anthropic messages API."""

    name = "anthropic"

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None, **kwargs):
        api_key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        base_url = base_url or "https://api.anthropic.com/v1"
        super().__init__(api_key, base_url, **kwargs)

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self._require_api_key(),
            "anthropic-version": "2023-06-01",
            "Content-Type": "application/json",
        }

    def _body(self, model: ModelDescriptor, payload: PromptPayload, stream: bool = False) -> Dict[str, Any]:
        system_prompt = payload.system_prompt
        if payload.knowledge_context:
            system_prompt = f"{system_prompt}\n\n{payload.knowledge_context}"
        body = {
            "model": model.id,
            "system": system_prompt,
            "messages": [{"role": "user", "content": payload.prompt}],
            "max_tokens": payload.max_tokens,
            "temperature": payload.temperature,
        }
        if stream:
            body["stream"] = True
        return body

    async def complete(self, model: ModelDescriptor, payload: PromptPayload) -> Completion:
        data = await self._post(f"{self.base_url}/messages", self._headers(), self._body(model, payload))
        content = "".join(block.get("text", "") for block in data.get("content", []) if block.get("type", "text") == "text")
        usage = data.get("usage") or {}
        input_tokens = usage.get("input_tokens", 0)
        output_tokens = usage.get("output_tokens", 0)
        return Completion(
            content=content,
            usage=TokenUsage(
                prompt_tokens=input_tokens,
                completion_tokens=output_tokens,
                total_tokens=input_tokens + output_tokens,
            ),
        )

    async def stream(self, model: ModelDescriptor, payload: PromptPayload) -> AsyncIterator[StreamDelta]:
        input_tokens = 0
        output_tokens = 0
        url = f"{self.base_url}/messages"
        async for line in self._stream_lines(url, self._headers(), self._body(model, payload, stream=True)):
            data = self._sse_data(line)
            if not data:
                continue
            event = json.loads(data)
            kind = event.get("type")
            if kind == "message_start":
                input_tokens = event.get("message", {}).get("usage", {}).get("input_tokens", 0)
            elif kind == "content_block_delta":
                text = event.get("delta", {}).get("text")
                if text:
                    yield StreamDelta(text_delta=text)
            elif kind == "message_delta":
                output_tokens = event.get("usage", {}).get("output_tokens", output_tokens)
            elif kind == "error":
                error = event.get("error", {})
                raise ProviderError(
                    f"anthropic stream error: {error.get('type', '')} {error.get('message', '')}".strip(),
                    provider=self.name,
                )
            elif kind == "message_stop":
                yield StreamDelta(
                    usage=TokenUsage(
                        prompt_tokens=input_tokens,
                        completion_tokens=output_tokens,
                        total_tokens=input_tokens + output_tokens,
                    )
                )


class OllamaProvider(BaseProvider):
    """Ollama local model provider."""

    name = "ollama"
    requires_api_key = False

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None, **kwargs):
        # Ollama doesn't need API key
        base_url = base_url or os.environ.get("OLLAMA_HOST", "http://localhost:11434")
        kwargs.setdefault("timeout", 60.0)  # Longer timeout for local models
        super().__init__(api_key=None, base_url=base_url, **kwargs)

    def _body(self, model: ModelDescriptor, payload: PromptPayload, stream: bool) -> Dict[str, Any]:
        return {
            "model": model.id,
            "prompt": payload.prompt,
            "system": "\n\n".join(p for p in (payload.system_prompt, payload.knowledge_context) if p),
            "stream": stream,
            "options": {
                "temperature": payload.temperature,
                "num_predict": payload.max_tokens,
            },
        }

    @staticmethod
    def _usage(data: Dict[str, Any]) -> Optional[TokenUsage]:
        if "prompt_eval_count" not in data and "eval_count" not in data:
            return None
        prompt_tokens = data.get("prompt_eval_count", 0)
        completion_tokens = data.get("eval_count", 0)
        return TokenUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )

    async def complete(self, model: ModelDescriptor, payload: PromptPayload) -> Completion:
        data = await self._post(f"{self.base_url}/api/generate", {}, self._body(model, payload, stream=False))
        content = data.get("response", "")
        return Completion(content=content, usage=self._usage(data) or TokenUsage.estimate(payload.flattened(), content))

    async def stream(self, model: ModelDescriptor, payload: PromptPayload) -> AsyncIterator[StreamDelta]:
        url = f"{self.base_url}/api/generate"
        async for line in self._stream_lines(url, {}, self._body(model, payload, stream=True)):
            event = json.loads(line)
            if event.get("error"):
                raise ProviderError(f"ollama stream error: {event['error']}", provider=self.name)
            text = event.get("response", "")
            usage = self._usage(event) if event.get("done") else None
            if text or usage:
                yield StreamDelta(text_delta=text, usage=usage)


class HuggingFaceProvider(BaseProvider):
    """HuggingFace inference API (single prompt string, no native streaming)."""

    name = "huggingface"

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None, **kwargs):
        api_key = api_key or os.environ.get("HUGGINGFACE_API_KEY")
        base_url = base_url or "https://api-inference.huggingface.co/models"
        kwargs.setdefault("timeout", 60.0)
        super().__init__(api_key, base_url, **kwargs)

    async def complete(self, model: ModelDescriptor, payload: PromptPayload) -> Completion:
        prompt = payload.flattened()
        headers = {
            "Authorization": f"Bearer {self._require_api_key()}",
            "Content-Type": "application/json",
        }
        body = {
            "inputs": prompt,
            "parameters": {
                "temperature": payload.temperature,
                "max_new_tokens": payload.max_tokens,
                "return_full_text": False,
            },
        }
        data = await self._post(f"{self.base_url}/{model.id}", headers, body)
        content = ""
        if isinstance(data, list) and data and isinstance(data[0], dict):
            content = data[0].get("generated_text", "")
        elif isinstance(data, str):
            content = data
        return Completion(content=content, usage=TokenUsage.estimate(prompt, content))

    async def stream(self, model: ModelDescriptor, payload: PromptPayload) -> AsyncIterator[StreamDelta]:
        # Fallback: call complete() and yield a single chunk
        completion = await self.complete(model, payload)
        yield StreamDelta(text_delta=completion.content, usage=completion.usage)


class GrokProvider(OpenAIProvider):
    """xAI Grok (OpenAI-compatible)."""

    name = "grok"
    api_key_env = "GROK_API_KEY"
    default_base_url = "https://api.x.ai/v1"


class DeepSeekProvider(OpenAIProvider):
    """DeepSeek (OpenAI-compatible)."""

    name = "deepseek"
    api_key_env = "DEEPSEEK_API_KEY"
    default_base_url = "https://api.deepseek.com/v1"


class MistralProvider(OpenAIProvider):
    """Mistral AI (OpenAI-compatible; usage arrives on the last chunk unasked)."""

    name = "mistral"
    api_key_env = "MISTRAL_API_KEY"
    default_base_url = "https://api.mistral.ai/v1"
    include_stream_usage = False


class OpenRouterProvider(OpenAIProvider):
    """OpenRouter model aggregator (OpenAI-compatible, with attribution headers)."""

    name = "openrouter"
    api_key_env = "OPENROUTER_API_KEY"
    default_base_url = "https://openrouter.ai/api/v1"
    include_stream_usage = False

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 site_url: Optional[str] = None, app_name: str = "AI Completion Gateway", **kwargs):
        super().__init__(api_key, base_url, **kwargs)
        self.site_url = site_url
        self.app_name = app_name

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        if self.site_url:
            headers["HTTP-Referer"] = self.site_url
        headers["X-Title"] = self.app_name
        return headers


class GoogleProvider(BaseProvider):
    """Google Gemini ``generateContent`` API."""

    name = "google"

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None, **kwargs):
        api_key = api_key or os.environ.get("GOOGLE_AI_API_KEY")
        base_url = base_url or "https://generativelanguage.googleapis.com/v1beta"
        super().__init__(api_key, base_url, **kwargs)

    def _headers(self) -> Dict[str, str]:
        return {
            "x-goog-api-key": self._require_api_key(),
            "Content-Type": "application/json",
        }

    def _body(self, payload: PromptPayload) -> Dict[str, Any]:
        instruction = "\n\n".join(p for p in (payload.system_prompt, payload.knowledge_context) if p)
        body = {
            "contents": [{"role": "user", "parts": [{"text": payload.prompt}]}],
            "generationConfig": {
                "temperature": payload.temperature,
                "maxOutputTokens": payload.max_tokens,
            },
        }
        if instruction:
            body["systemInstruction"] = {"parts": [{"text": instruction}]}
        return body

    @staticmethod
    def _text(data: Dict[str, Any]) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(part.get("text", "") for part in parts)

    @staticmethod
    def _usage(data: Dict[str, Any]) -> Optional[TokenUsage]:
        meta = data.get("usageMetadata")
        if not meta:
            return None
        prompt_tokens = meta.get("promptTokenCount", 0)
        completion_tokens = meta.get("candidatesTokenCount", 0)
        return TokenUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=meta.get("totalTokenCount", prompt_tokens + completion_tokens),
        )

    async def complete(self, model: ModelDescriptor, payload: PromptPayload) -> Completion:
        url = f"{self.base_url}/models/{model.id}:generateContent"
        data = await self._post(url, self._headers(), self._body(payload))
        return Completion(content=self._text(data), usage=self._usage(data))

    async def stream(self, model: ModelDescriptor, payload: PromptPayload) -> AsyncIterator[StreamDelta]:
        url = f"{self.base_url}/models/{model.id}:streamGenerateContent?alt=sse"
        usage = None
        async for line in self._stream_lines(url, self._headers(), self._body(payload)):
            data = self._sse_data(line)
            if not data:
                continue
            event = json.loads(data)
            # usageMetadata is cumulative; keep the latest
            usage = self._usage(event) or usage
            text = self._text(event)
            if text:
                yield StreamDelta(text_delta=text)
        if usage is not None:
            yield StreamDelta(usage=usage)


class CohereProvider(BaseProvider):
    """Cohere chat API."""

    name = "cohere"

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None, **kwargs):
        api_key = api_key or os.environ.get("COHERE_API_KEY")
        base_url = base_url or "https://api.cohere.ai/v1"
        super().__init__(api_key, base_url, **kwargs)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._require_api_key()}",
            "Content-Type": "application/json",
        }

    def _body(self, model: ModelDescriptor, payload: PromptPayload, stream: bool = False) -> Dict[str, Any]:
        body = {
            "model": model.id,
            "message": payload.prompt,
            "preamble": "\n\n".join(p for p in (payload.system_prompt, payload.knowledge_context) if p),
            "temperature": payload.temperature,
            "max_tokens": payload.max_tokens,
        }
        if stream:
            body["stream"] = True
        return body

    @staticmethod
    def _usage(data: Dict[str, Any]) -> Optional[TokenUsage]:
        meta = data.get("meta") or {}
        tokens = meta.get("tokens") or meta.get("billed_units")
        if not tokens:
            return None
        prompt_tokens = int(tokens.get("input_tokens", 0))
        completion_tokens = int(tokens.get("output_tokens", 0))
        return TokenUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )

    async def complete(self, model: ModelDescriptor, payload: PromptPayload) -> Completion:
        data = await self._post(f"{self.base_url}/chat", self._headers(), self._body(model, payload))
        return Completion(content=data.get("text", ""), usage=self._usage(data))

    async def stream(self, model: ModelDescriptor, payload: PromptPayload) -> AsyncIterator[StreamDelta]:
        url = f"{self.base_url}/chat"
        # newline-delimited JSON events, not SSE
        async for line in self._stream_lines(url, self._headers(), self._body(model, payload, stream=True)):
            event = json.loads(line)
            kind = event.get("event_type")
            if kind == "text-generation":
                text = event.get("text")
                if text:
                    yield StreamDelta(text_delta=text)
            elif kind == "stream-end":
                if event.get("finish_reason") == "ERROR":
                    raise ProviderError("cohere stream ended with an error", provider=self.name)
                usage = self._usage(event.get("response") or {})
                if usage is not None:
                    yield StreamDelta(usage=usage)


# Provider factory
PROVIDERS = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "google": GoogleProvider,
    "grok": GrokProvider,
    "huggingface": HuggingFaceProvider,
    "openrouter": OpenRouterProvider,
    "mistral": MistralProvider,
    "deepseek": DeepSeekProvider,
    "cohere": CohereProvider,
    "ollama": OllamaProvider,
}


def create_provider(provider_type: str, **kwargs) -> BaseProvider:
    """Create a provider instance by type."""
    provider_class = PROVIDERS.get(provider_type.lower())
    if not provider_class:
        raise ValueError(f"Unknown provider type: {provider_type}")

    return provider_class(**kwargs)
