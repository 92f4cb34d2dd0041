"""Drives one chat request from normalized input to a finished fragment stream.

The fallback supervisor is a plain loop over model descriptors. Each pass
streams one descriptor; an eligible failure swaps in the fallback descriptor
and starts over, anything else ends the request. A per-request ``tried`` set
bounds the loop by the number of distinct model keys.
"""

import logging
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Set

from .augment import SearchAugmenter
from .errors import FallbackLoopError, GatewayError, InputValidationError, is_fallback_eligible
from .models import ModelResolver, normalize_key
from .normalizer import flatten_messages, normalize_messages
from .providers import ProviderRegistry, resolve_parameters
from .schemas import ChatMessage, GenerationRequest, ModelDescriptor, StreamFragment


logger = logging.getLogger("uvicorn.error")


@dataclass
class PreparedChat:
    request: GenerationRequest
    messages: List[ChatMessage]
    descriptor: ModelDescriptor


class ChatOrchestrator:
    def __init__(
        self,
        resolver: ModelResolver,
        providers: ProviderRegistry,
        augmenter: Optional[SearchAugmenter] = None,
        default_fallback_model: Optional[str] = None,
        default_temperature: float = 0.7,
    ):
        self.resolver = resolver
        self.providers = providers
        self.augmenter = augmenter
        self.default_fallback_model = normalize_key(default_fallback_model) or None
        self.default_temperature = default_temperature

    async def prepare(self, request: GenerationRequest) -> PreparedChat:
        """Everything that can fail before the first byte goes out.

        Raises ``InputValidationError`` or ``ConfigurationError``; augmentation
        problems never surface here.
        """
        messages = normalize_messages(request.messages)
        if not messages:
            raise InputValidationError("messages must contain at least one non-empty message")
        if self.augmenter is not None:
            messages = await self.augmenter.augment(messages, request.search_mode)
        descriptor = await self.resolver.resolve(request.model)
        self.providers.get(descriptor.provider).validate_messages(messages)
        return PreparedChat(request=request, messages=messages, descriptor=descriptor)

    def fallback_key(self, descriptor: ModelDescriptor) -> Optional[str]:
        if descriptor.fallback_model:
            return descriptor.fallback_model
        if self.default_fallback_model and self.default_fallback_model != descriptor.model_key:
            return self.default_fallback_model
        return None

    async def _next_descriptor(
        self, descriptor: ModelDescriptor, exc: BaseException, tried: Set[str]
    ) -> Optional[ModelDescriptor]:
        if not is_fallback_eligible(exc):
            return None
        key = self.fallback_key(descriptor)
        if not key or key in tried:
            return None
        try:
            return await self.resolver.resolve(key)
        except GatewayError as resolve_exc:
            logger.warning("Fallback model %s could not be resolved: %s", key, resolve_exc)
            return None

    async def stream_prepared(self, prepared: PreparedChat) -> AsyncIterator[StreamFragment]:
        request = prepared.request
        descriptor = prepared.descriptor
        tried: Set[str] = set()
        while True:
            if descriptor.model_key in tried or descriptor.fallback_model == descriptor.model_key:
                raise FallbackLoopError(
                    f"Fallback loop detected for model {descriptor.model_key}",
                    provider=descriptor.provider.value,
                )
            tried.add(descriptor.model_key)

            adapter = self.providers.get(descriptor.provider)
            messages = prepared.messages if adapter.accepts_images else flatten_messages(prepared.messages)
            temperature, max_tokens = resolve_parameters(
                descriptor,
                adapter,
                messages,
                temperature=request.temperature,
                max_tokens=request.max_tokens,
                default_temperature=self.default_temperature,
            )
            pieces = adapter.stream(descriptor.provider_model, messages, temperature, max_tokens)
            try:
                async for piece in pieces:
                    yield StreamFragment.of_text(piece)
            except GatewayError as exc:
                fallback = await self._next_descriptor(descriptor, exc, tried)
                if fallback is None:
                    raise
                logger.warning(
                    "Falling back from %s to %s: %s", descriptor.model_key, fallback.model_key, exc.message
                )
                descriptor = fallback
                continue
            finally:
                await pieces.aclose()
            yield StreamFragment.done()
            return

    async def stream(self, request: GenerationRequest) -> AsyncIterator[StreamFragment]:
        prepared = await self.prepare(request)
        fragments = self.stream_prepared(prepared)
        try:
            async for fragment in fragments:
                yield fragment
        finally:
            await fragments.aclose()
