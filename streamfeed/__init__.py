"""StreamFeed recommendation core package."""

from __future__ import annotations

from importlib import import_module
from typing import Any

__all__ = ["Services", "create_services"]


def __getattr__(name: str) -> Any:
    if name in __all__:
        module = import_module("streamfeed.main")
        return getattr(module, name)
    raise AttributeError(f"module 'streamfeed' has no attribute {name}")
