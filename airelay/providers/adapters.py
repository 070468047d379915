"""
Provider adapters.

Each adapter owns exactly one wire format: it maps a CanonicalRequest onto the
provider's JSON body and pulls the response text back out of the provider's
JSON reply. Adapters hold no state, so one instance serves every request.
"""

import asyncio
import json
import logging
from typing import Dict, Any, Optional, Sequence, Tuple, Union
from urllib.parse import quote

import aiohttp

from ..core.exceptions import ProviderError, MalformedResponseError, ProviderTransportError
from .types import CanonicalRequest, ProviderName, RequestOptions

logger = logging.getLogger(__name__)

PathPart = Union[str, int]

_MISSING = object()


def _dig(data: Any, path: Sequence[PathPart]) -> Any:
    """Follow a key/index path through decoded JSON, returning _MISSING on any gap."""
    current = data
    for part in path:
        if isinstance(part, int):
            if not isinstance(current, list) or len(current) <= part:
                return _MISSING
            current = current[part]
        else:
            if not isinstance(current, dict) or part not in current:
                return _MISSING
            current = current[part]
    return current


def _format_path(path: Sequence[PathPart]) -> str:
    rendered = ""
    for part in path:
        rendered += f"[{part}]" if isinstance(part, int) else (f".{part}" if rendered else part)
    return rendered


class ProviderAdapter:
    """Base class for a single provider wire protocol."""

    provider: ProviderName
    label: str = ""
    endpoint: str = ""
    default_model: str = ""
    requires_key: bool = True
    # Candidate paths to the response text, tried in order
    text_paths: Tuple[Tuple[PathPart, ...], ...] = ()

    def resolve_model(self, request: CanonicalRequest) -> str:
        return request.model or self.default_model

    def resolve_url(self, key: Optional[str], model: str, options: RequestOptions) -> str:
        template = options.base_url or self.endpoint
        return template.replace("{model}", quote(model, safe="/:._-"))

    def build_headers(self, key: Optional[str]) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {key}",
            "Content-Type": "application/json",
        }

    def build_body(self, request: CanonicalRequest, model: str) -> Dict[str, Any]:
        raise NotImplementedError

    def extract_text(self, data: Any, status: Optional[int] = None, raw: Optional[str] = None) -> str:
        """Pull the response text out of a decoded body, failing loudly when absent."""
        for path in self.text_paths:
            value = _dig(data, path)
            if isinstance(value, str):
                return value
        expected = " or ".join(_format_path(p) for p in self.text_paths)
        raise MalformedResponseError(
            f"Invalid response structure from {self.label} API: missing {expected}",
            provider=self.provider.value,
            status_code=status,
            body=raw,
            field_path=expected,
        )

    async def send(
        self,
        session: aiohttp.ClientSession,
        request: CanonicalRequest,
        key: Optional[str],
        options: Optional[RequestOptions] = None,
    ) -> str:
        """
        Perform one HTTP call against the provider.

        Args:
            session: Open aiohttp session used for the POST
            request: Canonical request to translate
            key: Credential for this attempt (None for keyless providers)
            options: Per-request base URL and timeout

        Returns:
            The response text

        Raises:
            ProviderError: Non-2xx HTTP status
            MalformedResponseError: 2xx body without the expected text field
            ProviderTransportError: Timeout or network failure
        """
        options = options or RequestOptions()
        model = self.resolve_model(request)
        url = self.resolve_url(key, model, options)
        body = self.build_body(request, model)
        headers = self.build_headers(key)

        logger.debug(f"POST {self.label} model={model} timeout={options.timeout}s")

        try:
            async with session.post(
                url,
                json=body,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=options.timeout),
            ) as response:
                status = response.status
                raw = await response.text()
        except asyncio.TimeoutError as e:
            raise ProviderTransportError(
                f"{self.label} API request timeout after {options.timeout}s",
                provider=self.provider.value,
                reason="timeout",
            ) from e
        except aiohttp.ClientError as e:
            raise ProviderTransportError(
                f"{self.label} API network error: {e}",
                provider=self.provider.value,
                reason="network",
            ) from e

        if not 200 <= status < 300:
            raise ProviderError(
                f"{self.label} API error ({status}): {raw}",
                provider=self.provider.value,
                status_code=status,
                body=raw,
            )

        try:
            data = json.loads(raw)
        except ValueError as e:
            raise MalformedResponseError(
                f"{self.label} API returned a non-JSON body",
                provider=self.provider.value,
                status_code=status,
                body=raw,
            ) from e

        return self.extract_text(data, status=status, raw=raw)


class GoogleAdapter(ProviderAdapter):
    """Gemini generateContent; the only adapter that forwards an inline image."""

    provider = ProviderName.GOOGLE
    label = "Gemini"
    endpoint = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
    default_model = "gemini-1.5-flash"
    text_paths = (("candidates", 0, "content", "parts", 0, "text"),)

    def resolve_url(self, key: Optional[str], model: str, options: RequestOptions) -> str:
        url = super().resolve_url(key, model, options)
        separator = "&" if "?" in url else "?"
        return f"{url}{separator}key={quote(key or '', safe='')}"

    def build_headers(self, key: Optional[str]) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    def build_body(self, request: CanonicalRequest, model: str) -> Dict[str, Any]:
        parts = [{"text": request.prompt}]
        if request.image is not None:
            parts.append(
                {
                    "inline_data": {
                        "mime_type": request.image.mime_type,
                        "data": request.image.base64_data,
                    }
                }
            )
        return {
            "contents": [{"parts": parts}],
            "generationConfig": {
                "temperature": request.temperature,
                "maxOutputTokens": request.max_tokens,
            },
        }


class ChatCompletionsAdapter(ProviderAdapter):
    """OpenAI-style chat completions body, shared by OpenAI, Groq and local servers."""

    text_paths = (("choices", 0, "message", "content"),)

    def build_body(self, request: CanonicalRequest, model: str) -> Dict[str, Any]:
        return {
            "model": model,
            "messages": [{"role": "user", "content": request.prompt}],
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }


class OpenAIAdapter(ChatCompletionsAdapter):
    provider = ProviderName.OPENAI
    label = "OpenAI"
    endpoint = "https://api.openai.com/v1/chat/completions"
    default_model = "gpt-4"


class GroqAdapter(ChatCompletionsAdapter):
    provider = ProviderName.GROQ
    label = "Groq"
    endpoint = "https://api.groq.com/openai/v1/chat/completions"
    default_model = "mixtral-8x7b-32768"


class LocalAdapter(ChatCompletionsAdapter):
    """OpenAI-compatible local server (LM Studio and similar)."""

    provider = ProviderName.LOCAL
    label = "Local"
    endpoint = "http://localhost:1234/v1/chat/completions"
    default_model = "local-model"
    requires_key = False

    def build_headers(self, key: Optional[str]) -> Dict[str, str]:
        return super().build_headers(key or "local")


class ClaudeAdapter(ProviderAdapter):
    provider = ProviderName.CLAUDE
    label = "Claude"
    endpoint = "https://api.anthropic.com/v1/messages"
    default_model = "claude-3-sonnet-20240229"
    text_paths = (("content", 0, "text"),)

    def build_headers(self, key: Optional[str]) -> Dict[str, str]:
        return {
            "x-api-key": key or "",
            "Content-Type": "application/json",
            "anthropic-version": "2023-06-01",
        }

    def build_body(self, request: CanonicalRequest, model: str) -> Dict[str, Any]:
        return {
            "model": model,
            "max_tokens": request.max_tokens,
            "messages": [{"role": "user", "content": request.prompt}],
        }


class CohereAdapter(ProviderAdapter):
    provider = ProviderName.COHERE
    label = "Cohere"
    endpoint = "https://api.cohere.ai/v1/generate"
    default_model = "command-light"
    text_paths = (("generations", 0, "text"),)

    def build_body(self, request: CanonicalRequest, model: str) -> Dict[str, Any]:
        return {
            "model": model,
            "prompt": request.prompt,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "truncate": "END",
        }


class HuggingFaceAdapter(ProviderAdapter):
    provider = ProviderName.HUGGINGFACE
    label = "Hugging Face"
    endpoint = "https://api-inference.huggingface.co/models/{model}"
    default_model = "microsoft/DialoGPT-medium"
    # The inference API answers with a list for text-generation models and a bare object otherwise
    text_paths = ((0, "generated_text"), ("generated_text",))

    def build_body(self, request: CanonicalRequest, model: str) -> Dict[str, Any]:
        return {
            "inputs": request.prompt,
            "parameters": {
                "max_length": request.max_tokens,
                "temperature": request.temperature,
                "return_full_text": False,
            },
        }


class TogetherAdapter(ProviderAdapter):
    provider = ProviderName.TOGETHER
    label = "Together"
    endpoint = "https://api.together.xyz/inference"
    default_model = "togethercomputer/llama-2-7b-chat"
    text_paths = (("output", "choices", 0, "text"), ("choices", 0, "text"))

    def build_body(self, request: CanonicalRequest, model: str) -> Dict[str, Any]:
        return {
            "model": model,
            "prompt": request.prompt,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "stop": ["</s>", "[INST]"],
        }


class OllamaAdapter(ProviderAdapter):
    provider = ProviderName.OLLAMA
    label = "Ollama"
    endpoint = "http://localhost:11434/api/generate"
    default_model = "llama2"
    requires_key = False
    text_paths = (("response",),)

    def build_headers(self, key: Optional[str]) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    def build_body(self, request: CanonicalRequest, model: str) -> Dict[str, Any]:
        return {
            "model": model,
            "prompt": request.prompt,
            "stream": False,
        }


ADAPTERS: Dict[ProviderName, ProviderAdapter] = {
    adapter.provider: adapter
    for adapter in (
        GoogleAdapter(),
        OpenAIAdapter(),
        GroqAdapter(),
        ClaudeAdapter(),
        CohereAdapter(),
        HuggingFaceAdapter(),
        TogetherAdapter(),
        LocalAdapter(),
        OllamaAdapter(),
    )
}


def get_adapter(provider: ProviderName) -> ProviderAdapter:
    """Look up the adapter registered for a provider."""
    return ADAPTERS[provider]
