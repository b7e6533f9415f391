"""Load MemoryConfig from JSON, applying named profiles."""

from __future__ import annotations

import json
from copy import deepcopy
from pathlib import Path
from typing import Any

from chatmemory.config.schema import MemoryConfig
from chatmemory.logging import get_logger

logger = get_logger(__name__)


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    merged = deepcopy(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = deepcopy(value)
    return merged


def apply_profile(data: dict[str, Any], profile: str | None = None) -> dict[str, Any]:
    """Overlay the named (or active) profile onto the base config dict.

    Profiles hold partial config dicts. Unknown profile names are logged and ignored.
    """
    name = profile or data.get("active_profile")
    profiles = data.get("profiles") or {}
    if not name:
        return data
    overlay = profiles.get(name)
    if overlay is None:
        logger.warning("Unknown config profile, using base config", profile=name)
        return data
    merged = _deep_merge(data, overlay)
    merged["active_profile"] = name
    return merged


def load_config(path: Path | None = None, profile: str | None = None) -> MemoryConfig:
    """Load config from *path*; missing file yields defaults."""
    if path is None or not path.exists():
        return MemoryConfig()
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Config root must be an object: {path}")
    return MemoryConfig.model_validate(apply_profile(data, profile))
