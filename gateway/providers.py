"""Upstream provider adapters.

Every adapter turns a normalized conversation into one provider's streaming
request and yields the assistant text fragments it finds in that provider's
wire format. Adapters hold no per-request state; credentials are looked up
when a request is actually dispatched.
"""

import re
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Type
from urllib.parse import quote

import httpx

from .credentials import CredentialSource
from .errors import (
    ImageTooLargeError,
    NoContentError,
    UnsupportedParameterError,
    UpstreamError,
    UpstreamParseError,
    UpstreamStatusError,
    UpstreamTimeoutError,
)
from .normalizer import flatten_content
from .schemas import ChatMessage, ImagePart, ModelDescriptor, Provider
from .sse import (
    DONE_SENTINEL,
    LineDecoder,
    SSEFrameDecoder,
    frame_data_lines,
    frame_event_data,
    parse_json,
)


DEFAULT_MAX_IMAGE_CHARS = 50_000_000
MIN_MAX_IMAGE_CHARS = 10_000
ANTHROPIC_DEFAULT_MAX_TOKENS = 1024
ANTHROPIC_VERSION = "2023-06-01"
ERROR_BODY_MAX_CHARS = 2000

_UNSUPPORTED_RE = re.compile(r"unsupported parameter|not supported", re.IGNORECASE)
_OPENAI_NO_TEMPERATURE_RE = re.compile(r"(?:^|-)o1|nano")
_OPENAI_NO_TOKENS_RE = re.compile(r"nano")
_OPENAI_COMPLETION_TOKENS_RE = re.compile(r"gpt-5|gpt-4\.1|(?:^|-)o1", re.IGNORECASE)
_FIXED_TEMPERATURE_RE = re.compile(r"gpt-5", re.IGNORECASE)


class ProviderAdapter:
    provider: Provider
    label: str = ""
    credential_key: str = ""
    accepts_images = False

    def __init__(self, credentials: CredentialSource, client: httpx.AsyncClient, timeout: float = 60.0):
        self.credentials = credentials
        self.client = client
        self.timeout = timeout

    @classmethod
    def from_registry(cls, registry: "ProviderRegistry") -> "ProviderAdapter":
        return cls(registry.credentials, registry.client, registry.timeout)

    def validate_messages(self, messages: List[ChatMessage]) -> None:
        """Reject input this provider can never accept. Runs before anything is sent."""

    def adjust_parameters(
        self,
        model: str,
        messages: List[ChatMessage],
        temperature: Optional[float],
        max_tokens: Optional[int],
    ) -> Tuple[Optional[float], Optional[int]]:
        """Drop parameters this provider rejects for the given model."""
        return temperature, max_tokens

    def stream(
        self,
        model: str,
        messages: List[ChatMessage],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[str]:
        raise NotImplementedError

    def _status_error(self, status: int, body: str) -> UpstreamError:
        detail = (body or "").strip()[:ERROR_BODY_MAX_CHARS]
        message = f"{self.label} error {status}: {detail or httpx.codes.get_reason_phrase(status)}"
        if _UNSUPPORTED_RE.search(detail):
            return UnsupportedParameterError(message, provider=self.provider.value, status_code=status)
        return UpstreamStatusError(message, provider=self.provider.value, status_code=status)

    @asynccontextmanager
    async def _open(
        self,
        url: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> AsyncIterator[httpx.Response]:
        """POST ``payload`` and hold the streaming response open.

        Transport failures anywhere inside the block, including reads made by
        the caller, are mapped to the upstream error taxonomy.
        """
        try:
            async with self.client.stream(
                "POST",
                url,
                json=payload,
                headers=headers,
                params=params,
                timeout=self.timeout,
            ) as resp:
                if resp.status_code >= 400:
                    body = (await resp.aread()).decode("utf-8", errors="replace")
                    raise self._status_error(resp.status_code, body)
                yield resp
        except httpx.TimeoutException as exc:
            raise UpstreamTimeoutError(f"{self.label} request timed out", provider=self.provider.value) from exc
        except httpx.RequestError as exc:
            raise UpstreamError(f"{self.label} request failed: {exc}", provider=self.provider.value) from exc

    async def _iter_sse_payloads(self, resp: httpx.Response) -> AsyncIterator[str]:
        """Yield ``data:`` payloads of chat-completion frames until ``[DONE]``."""
        decoder = SSEFrameDecoder()
        async for chunk in resp.aiter_bytes():
            for frame in decoder.feed(chunk):
                for data in frame_data_lines(frame):
                    if data == DONE_SENTINEL:
                        return
                    yield data
        leftover = decoder.flush()
        if leftover:
            for data in frame_data_lines(leftover):
                if data == DONE_SENTINEL:
                    return
                yield data


def _content_text(value: Any) -> str:
    """Text from OpenAI content that may be a string, block list, or block object."""
    if not value:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "".join(_content_text(item) for item in value)
    if isinstance(value, dict):
        return _content_text(value.get("text")) or _content_text(value.get("value")) or _content_text(
            value.get("content")
        )
    return ""


def _first_choice(obj: Any) -> Dict[str, Any]:
    if not isinstance(obj, dict):
        return {}
    choices = obj.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return {}
    return choices[0]


class OpenAIAdapter(ProviderAdapter):
    provider = Provider.OPENAI
    label = "OpenAI"
    credential_key = "OPENAI_API_KEY"
    accepts_images = True
    url = "https://api.openai.com/v1/chat/completions"

    def __init__(
        self,
        credentials: CredentialSource,
        client: httpx.AsyncClient,
        timeout: float = 60.0,
        max_image_chars: Optional[int] = None,
    ):
        super().__init__(credentials, client, timeout)
        self.max_image_chars = max(MIN_MAX_IMAGE_CHARS, max_image_chars or DEFAULT_MAX_IMAGE_CHARS)

    @classmethod
    def from_registry(cls, registry: "ProviderRegistry") -> "OpenAIAdapter":
        return cls(registry.credentials, registry.client, registry.timeout, max_image_chars=registry.max_image_chars)

    def adjust_parameters(self, model, messages, temperature, max_tokens):
        name = (model or "").lower()
        has_image = any(msg.has_images() for msg in messages)
        if has_image or _OPENAI_NO_TEMPERATURE_RE.search(name):
            temperature = None
        if _OPENAI_NO_TOKENS_RE.search(name):
            max_tokens = None
        return temperature, max_tokens

    def validate_messages(self, messages: List[ChatMessage]) -> None:
        for msg in messages:
            if isinstance(msg.content, str):
                continue
            for part in msg.content:
                if isinstance(part, ImagePart) and len(part.image_url.url) > self.max_image_chars:
                    raise ImageTooLargeError(
                        "Image is too large for this model. "
                        f"Max size is ~{self.max_image_chars // 1024}KB base64."
                    )

    def build_payload(
        self,
        model: str,
        messages: List[ChatMessage],
        temperature: Optional[float],
        max_tokens: Optional[int],
    ) -> Dict[str, Any]:
        self.validate_messages(messages)
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [msg.model_dump() for msg in messages],
            "stream": True,
        }
        if temperature is not None:
            payload["temperature"] = temperature
        if max_tokens:
            # Newer model families only accept max_completion_tokens.
            field = "max_completion_tokens" if _OPENAI_COMPLETION_TOKENS_RE.search(model) else "max_tokens"
            payload[field] = max_tokens
        return payload

    @staticmethod
    def extract_piece(obj: Any) -> str:
        choice = _first_choice(obj)
        delta = choice.get("delta") or {}
        message = choice.get("message") or {}
        return (
            _content_text(delta.get("content"))
            or _content_text(delta.get("reasoning_content"))
            or _content_text(message.get("content"))
        )

    async def stream(self, model, messages, temperature=None, max_tokens=None):
        payload = self.build_payload(model, messages, temperature, max_tokens)
        api_key = self.credentials.require(self.credential_key)
        headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
        yielded = False
        async with self._open(self.url, payload, headers=headers) as resp:
            async for data in self._iter_sse_payloads(resp):
                piece = self.extract_piece(parse_json(data))
                if piece:
                    yielded = True
                    yield piece
        if not yielded:
            raise NoContentError(
                f"OpenAI stream returned no content for model {model}", provider=self.provider.value
            )


class OpenAICompatibleAdapter(ProviderAdapter):
    """Third-party chat-completion APIs that mirror OpenAI's frame shape."""

    base_url_key = ""
    default_base_url = ""

    def _url(self) -> str:
        base = self.credentials.get(self.base_url_key) or self.default_base_url
        return f"{base.rstrip('/')}/chat/completions"

    def build_payload(self, model, messages, temperature, max_tokens) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [{"role": msg.role, "content": flatten_content(msg.content)} for msg in messages],
            "temperature": 0.7 if temperature is None else temperature,
            "stream": True,
        }
        if max_tokens:
            payload["max_tokens"] = max_tokens
        return payload

    @staticmethod
    def extract_piece(obj: Any) -> str:
        piece = (_first_choice(obj).get("delta") or {}).get("content")
        return piece if isinstance(piece, str) else ""

    async def stream(self, model, messages, temperature=None, max_tokens=None):
        api_key = self.credentials.require(self.credential_key)
        payload = self.build_payload(model, messages, temperature, max_tokens)
        headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
        async with self._open(self._url(), payload, headers=headers) as resp:
            async for data in self._iter_sse_payloads(resp):
                piece = self.extract_piece(parse_json(data))
                if piece:
                    yield piece


class MistralAdapter(OpenAICompatibleAdapter):
    provider = Provider.MISTRAL
    label = "Mistral"
    credential_key = "MISTRAL_API_KEY"
    base_url_key = "MISTRAL_BASE_URL"
    default_base_url = "https://api.mistral.ai/v1"


class DeepSeekAdapter(OpenAICompatibleAdapter):
    provider = Provider.DEEPSEEK
    label = "DeepSeek"
    credential_key = "DEEPSEEK_API_KEY"
    base_url_key = "DEEPSEEK_BASE_URL"
    default_base_url = "https://api.deepseek.com/v1"


class TogetherAdapter(OpenAICompatibleAdapter):
    provider = Provider.TOGETHER
    label = "Together"
    credential_key = "TOGETHER_API_KEY"
    base_url_key = "TOGETHER_BASE_URL"
    default_base_url = "https://api.together.xyz/v1"


def _split_system(messages: List[ChatMessage]) -> Tuple[str, List[ChatMessage]]:
    system = ""
    rest: List[ChatMessage] = []
    for msg in messages:
        if msg.role == "system":
            text = flatten_content(msg.content)
            system = f"{system}\n\n{text}" if system else text
        else:
            rest.append(msg)
    return system, rest


class GeminiAdapter(ProviderAdapter):
    """Google Gemini ``streamGenerateContent``.

    Frames carry no end sentinel. Lines are parsed as they arrive; when that
    produces nothing (the API answered with one pretty-printed JSON document
    or array) the whole accumulated body is parsed once the stream has ended.
    """

    provider = Provider.GOOGLE
    label = "Gemini"
    credential_key = "GOOGLE_API_KEY"
    base_url = "https://generativelanguage.googleapis.com/v1beta/models"

    def build_payload(self, model, messages, temperature, max_tokens) -> Dict[str, Any]:
        system, rest = _split_system(messages)
        contents = [
            {
                "role": "model" if msg.role == "assistant" else "user",
                "parts": [{"text": flatten_content(msg.content)}],
            }
            for msg in rest
        ]
        generation_config: Dict[str, Any] = {"temperature": 0.7 if temperature is None else temperature}
        if max_tokens:
            generation_config["maxOutputTokens"] = max_tokens
        payload: Dict[str, Any] = {"contents": contents, "generationConfig": generation_config}
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        return payload

    @staticmethod
    def extract_text(obj: Any) -> str:
        if not isinstance(obj, dict):
            return ""
        candidates = obj.get("candidates")
        if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
            return ""
        parts = (candidates[0].get("content") or {}).get("parts")
        if not isinstance(parts, list):
            return ""
        return "".join(
            part["text"] for part in parts if isinstance(part, dict) and isinstance(part.get("text"), str)
        )

    def parse_whole_body(self, raw: str) -> List[str]:
        """Texts from a finished body that yielded nothing line by line.

        The body is tried as one JSON document first, then as SSE/NDJSON lines.
        A body where nothing parses is an error; parsed frames without text
        (blocked candidates, usage-only frames) are simply empty.
        """
        parsed = parse_json(raw.strip())
        if parsed is not None:
            frames = parsed if isinstance(parsed, list) else [parsed]
        else:
            frames = []
            for line in raw.splitlines():
                line = line.strip()
                if line.startswith("data:"):
                    line = line[5:].strip()
                if not line:
                    continue
                frame = parse_json(line)
                if frame is not None:
                    frames.append(frame)
            if not frames:
                raise UpstreamParseError("Gemini stream parse failed", provider=self.provider.value)
        return [text for text in (self.extract_text(frame) for frame in frames) if text]

    def _line_text(self, line: str) -> str:
        if line.startswith("data:"):
            line = line[5:].strip()
        return self.extract_text(parse_json(line))

    async def stream(self, model, messages, temperature=None, max_tokens=None):
        api_key = self.credentials.require(self.credential_key)
        payload = self.build_payload(model, messages, temperature, max_tokens)
        url = f"{self.base_url}/{quote(model, safe='')}:streamGenerateContent"
        params = {"alt": "sse", "key": api_key}
        decoder = LineDecoder()
        raw = bytearray()
        yielded = False
        async with self._open(url, payload, headers={"Content-Type": "application/json"}, params=params) as resp:
            async for chunk in resp.aiter_bytes():
                if not yielded:
                    raw.extend(chunk)
                for line in decoder.feed(chunk):
                    text = self._line_text(line)
                    if text:
                        yielded = True
                        raw.clear()
                        yield text
            leftover = decoder.flush()
            if leftover:
                text = self._line_text(leftover)
                if text:
                    yielded = True
                    yield text
        if yielded:
            return
        for text in self.parse_whole_body(raw.decode("utf-8", errors="replace")):
            yield text


class AnthropicAdapter(ProviderAdapter):
    provider = Provider.ANTHROPIC
    label = "Anthropic"
    credential_key = "ANTHROPIC_API_KEY"
    url = "https://api.anthropic.com/v1/messages"

    def build_payload(self, model, messages, temperature, max_tokens) -> Dict[str, Any]:
        system, rest = _split_system(messages)
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [{"role": msg.role, "content": flatten_content(msg.content)} for msg in rest],
            "temperature": 0.7 if temperature is None else temperature,
            "max_tokens": max_tokens or ANTHROPIC_DEFAULT_MAX_TOKENS,
            "stream": True,
        }
        if system:
            payload["system"] = system
        return payload

    @staticmethod
    def extract_text(obj: Any) -> str:
        if not isinstance(obj, dict) or obj.get("type") != "content_block_delta":
            return ""
        delta = obj.get("delta") or {}
        if delta.get("type") != "text_delta":
            return ""
        text = delta.get("text")
        return text if isinstance(text, str) else ""

    async def stream(self, model, messages, temperature=None, max_tokens=None):
        api_key = self.credentials.require(self.credential_key)
        payload = self.build_payload(model, messages, temperature, max_tokens)
        headers = {
            "x-api-key": api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        decoder = SSEFrameDecoder()
        async with self._open(self.url, payload, headers=headers) as resp:
            async for chunk in resp.aiter_bytes():
                for frame in decoder.feed(chunk):
                    text = self._frame_text(frame)
                    if text:
                        yield text
            leftover = decoder.flush()
            if leftover:
                text = self._frame_text(leftover)
                if text:
                    yield text

    def _frame_text(self, frame: str) -> str:
        data = frame_event_data(frame)
        if not data or data == DONE_SENTINEL:
            return ""
        return self.extract_text(parse_json(data))


ADAPTERS: Dict[Provider, Type[ProviderAdapter]] = {
    Provider.OPENAI: OpenAIAdapter,
    Provider.GOOGLE: GeminiAdapter,
    Provider.ANTHROPIC: AnthropicAdapter,
    Provider.MISTRAL: MistralAdapter,
    Provider.DEEPSEEK: DeepSeekAdapter,
    Provider.TOGETHER: TogetherAdapter,
}


class ProviderRegistry:
    """Hands out one adapter per provider, built on first dispatch."""

    def __init__(
        self,
        credentials: CredentialSource,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 60.0,
        max_image_chars: Optional[int] = None,
    ):
        self.credentials = credentials
        self.client = client or httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=64, max_keepalive_connections=16),
        )
        self.timeout = timeout
        self.max_image_chars = max_image_chars
        self._adapters: Dict[Provider, ProviderAdapter] = {}

    def get(self, provider: Provider) -> ProviderAdapter:
        adapter = self._adapters.get(provider)
        if adapter is not None:
            return adapter
        adapter = ADAPTERS[provider].from_registry(self)
        self._adapters[provider] = adapter
        return adapter

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


def resolve_parameters(
    descriptor: ModelDescriptor,
    adapter: ProviderAdapter,
    messages: List[ChatMessage],
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
    default_temperature: float = 0.7,
) -> Tuple[Optional[float], Optional[int]]:
    """Sampling parameters for one dispatch: request, then model default, then global default."""
    if _FIXED_TEMPERATURE_RE.search(descriptor.provider_model):
        # These models only accept their built-in temperature.
        resolved_temperature = None
    elif temperature is not None:
        resolved_temperature = temperature
    elif descriptor.temperature_default is not None:
        resolved_temperature = descriptor.temperature_default
    else:
        resolved_temperature = default_temperature
    resolved_tokens = max_tokens or descriptor.max_tokens_default or None
    return adapter.adjust_parameters(descriptor.provider_model, messages, resolved_temperature, resolved_tokens)
