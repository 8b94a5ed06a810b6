"""
Bridge package.

Keep imports lightweight so modules like `src.bridge.audio` or `src.bridge.vad` can be
used without requiring the full runtime dependency set (e.g., dotenv) at import time.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.bridge.config import BridgeConfig

__all__ = ["BridgeConfig", "get_config"]


def __getattr__(name: str) -> Any:
    if name in __all__:
        from src.bridge.config import BridgeConfig, get_config

        return {"BridgeConfig": BridgeConfig, "get_config": get_config}[name]
    raise AttributeError(name)
