"""Configuration models and loader."""

from chatmemory.config.loader import load_config
from chatmemory.config.schema import (
    AnnotationConfig,
    ArchiveConfig,
    ConsolidationConfig,
    GenerationConfig,
    InjectionConfig,
    MemoryConfig,
    RetentionConfig,
)

__all__ = [
    "AnnotationConfig",
    "ArchiveConfig",
    "ConsolidationConfig",
    "GenerationConfig",
    "InjectionConfig",
    "MemoryConfig",
    "RetentionConfig",
    "load_config",
]
