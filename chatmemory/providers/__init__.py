"""Generation and embedding adapters."""

from chatmemory.providers.litellm_provider import LiteLLMEmbedder, LiteLLMGenerator

__all__ = ["LiteLLMEmbedder", "LiteLLMGenerator"]
