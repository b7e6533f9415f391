"""LiteLLM-backed ``generate`` and ``embed`` callables."""

from __future__ import annotations

from typing import Any

import litellm
from litellm import acompletion, aembedding

from chatmemory.errors import EmptyResultError, GenerationError
from chatmemory.logging import get_logger, mask_secret
from chatmemory.memory.types import GenerationOptions

logger = get_logger("chatmemory.providers.litellm")


def _value(obj: Any, key: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


class _LiteLLMBase:
    def __init__(
        self,
        model: str,
        *,
        api_key: str | None = None,
        api_base: str | None = None,
        extra_headers: dict[str, str] | None = None,
        request_extras: dict[str, Any] | None = None,
    ) -> None:
        self.model = model
        self.api_key = api_key
        self.api_base = api_base
        self.extra_headers = extra_headers or {}
        self.request_extras = request_extras or {}

        # Disable LiteLLM logging noise
        litellm.suppress_debug_info = True
        # Drop unsupported parameters for providers
        litellm.drop_params = True

        if api_key:
            logger.info("provider_initialized", model=model, api_key=mask_secret(api_key))

    def _base_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"model": self.model}
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.extra_headers:
            kwargs["extra_headers"] = self.extra_headers
        for key, value in self.request_extras.items():
            kwargs.setdefault(key, value)
        return kwargs

    def _masked_error(self, error: Exception) -> str:
        error_msg = str(error)
        # Mask any API keys that may appear in exception messages
        if self.api_key and self.api_key in error_msg:
            error_msg = error_msg.replace(self.api_key, mask_secret(self.api_key))
        return error_msg


class LiteLLMGenerator(_LiteLLMBase):
    """
    ``generate(prompt, options)`` over ``litellm.acompletion``.

    The prompt is sent as a single user message. Provider failures are raised as
    GenerationError so the engine can abort without touching memory.
    """

    async def __call__(self, prompt: str, options: GenerationOptions) -> str:
        kwargs = self._base_kwargs()
        kwargs.update({
            "messages": [{"role": "user", "content": prompt}],
            # Clamp max_tokens to at least 1; LiteLLM rejects lower values.
            "max_tokens": max(1, options.max_tokens),
            "temperature": options.temperature,
        })
        if options.stop_sequences:
            kwargs["stop"] = list(options.stop_sequences)

        try:
            response = await acompletion(**kwargs)
        except Exception as e:
            error_msg = self._masked_error(e)
            logger.error("llm_call_failed", model=self.model, error=error_msg)
            raise GenerationError(error_msg) from e

        choices = _value(response, "choices") or []
        if not choices:
            raise EmptyResultError("completion returned no choices")
        message = _value(choices[0], "message")
        content = _value(message, "content")
        if isinstance(content, list):
            content = "".join(
                part for part in (_value(item, "text") for item in content) if isinstance(part, str)
            )
        usage = _value(response, "usage")
        if usage:
            logger.debug(
                "llm_call_done",
                model=self.model,
                prompt_tokens=_value(usage, "prompt_tokens"),
                completion_tokens=_value(usage, "completion_tokens"),
            )
        return content if isinstance(content, str) else ""


class LiteLLMEmbedder(_LiteLLMBase):
    """``embed(text)`` over ``litellm.aembedding``."""

    async def __call__(self, text: str) -> list[float]:
        kwargs = self._base_kwargs()
        kwargs["input"] = [text]
        try:
            response = await aembedding(**kwargs)
        except Exception as e:
            error_msg = self._masked_error(e)
            logger.error("embedding_call_failed", model=self.model, error=error_msg)
            raise GenerationError(error_msg) from e

        data = _value(response, "data") or []
        if not data:
            return []
        vector = _value(data[0], "embedding") or []
        return [float(x) for x in vector]
