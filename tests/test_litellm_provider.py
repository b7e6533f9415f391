from types import SimpleNamespace
from unittest.mock import patch

import pytest

from chatmemory.errors import EmptyResultError, GenerationError
from chatmemory.memory.types import GenerationOptions
from chatmemory.providers.litellm_provider import LiteLLMEmbedder, LiteLLMGenerator


def _completion(content):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content), finish_reason="stop")],
        usage=SimpleNamespace(prompt_tokens=10, completion_tokens=5, total_tokens=15),
    )


@pytest.mark.asyncio
async def test_generator_sends_prompt_and_options() -> None:
    generator = LiteLLMGenerator("openai/gpt-4o-mini", api_key="sk-test-key-1234567890", api_base="http://local")
    captured = {}

    async def fake_acompletion(**kwargs):
        captured.update(kwargs)
        return _completion("Updated memory.")

    with patch("chatmemory.providers.litellm_provider.acompletion", side_effect=fake_acompletion):
        text = await generator("Summarize this", GenerationOptions(max_tokens=0, temperature=0.2, stop_sequences=("###",)))

    assert text == "Updated memory."
    assert captured["model"] == "openai/gpt-4o-mini"
    assert captured["messages"] == [{"role": "user", "content": "Summarize this"}]
    assert captured["max_tokens"] == 1
    assert captured["temperature"] == 0.2
    assert captured["stop"] == ["###"]
    assert captured["api_key"] == "sk-test-key-1234567890"
    assert captured["api_base"] == "http://local"


@pytest.mark.asyncio
async def test_generator_joins_content_parts_and_handles_missing_content() -> None:
    generator = LiteLLMGenerator("m")

    async def parts(**kwargs):
        return _completion([{"type": "text", "text": "Hello "}, {"type": "text", "text": "world"}])

    with patch("chatmemory.providers.litellm_provider.acompletion", side_effect=parts):
        assert await generator("p", GenerationOptions(max_tokens=10, temperature=0.0)) == "Hello world"

    async def empty(**kwargs):
        return _completion(None)

    with patch("chatmemory.providers.litellm_provider.acompletion", side_effect=empty):
        assert await generator("p", GenerationOptions(max_tokens=10, temperature=0.0)) == ""


@pytest.mark.asyncio
async def test_generator_without_choices_is_empty_result() -> None:
    generator = LiteLLMGenerator("m")

    async def no_choices(**kwargs):
        return SimpleNamespace(choices=[], usage=None)

    with patch("chatmemory.providers.litellm_provider.acompletion", side_effect=no_choices):
        with pytest.raises(EmptyResultError):
            await generator("p", GenerationOptions(max_tokens=10, temperature=0.0))


@pytest.mark.asyncio
async def test_generator_masks_api_key_in_errors() -> None:
    key = "sk-secret-abcdefghijklmnop"
    generator = LiteLLMGenerator("m", api_key=key)

    async def boom(**kwargs):
        raise RuntimeError(f"401 invalid key {key}")

    with patch("chatmemory.providers.litellm_provider.acompletion", side_effect=boom):
        with pytest.raises(GenerationError) as excinfo:
            await generator("p", GenerationOptions(max_tokens=10, temperature=0.0))

    assert key not in str(excinfo.value)
    assert "****" in str(excinfo.value)


@pytest.mark.asyncio
async def test_embedder_returns_first_vector() -> None:
    embedder = LiteLLMEmbedder("text-embedding-3-small")
    captured = {}

    async def fake_aembedding(**kwargs):
        captured.update(kwargs)
        return SimpleNamespace(data=[{"embedding": [0.1, 0.2, 0.3], "index": 0}])

    with patch("chatmemory.providers.litellm_provider.aembedding", side_effect=fake_aembedding):
        vector = await embedder("a dragon")

    assert vector == [0.1, 0.2, 0.3]
    assert captured["input"] == ["a dragon"]
    assert captured["model"] == "text-embedding-3-small"


@pytest.mark.asyncio
async def test_embedder_failure_raises_generation_error() -> None:
    embedder = LiteLLMEmbedder("m")

    async def boom(**kwargs):
        raise ConnectionError("offline")

    with patch("chatmemory.providers.litellm_provider.aembedding", side_effect=boom):
        with pytest.raises(GenerationError):
            await embedder("x")
