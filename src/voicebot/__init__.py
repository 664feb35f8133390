"""
Voice bot package.

Keep imports lightweight so modules like `src.voicebot.channel` can be used
without pulling in the provider clients at import time.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.voicebot.config import Config
    from src.voicebot.session import CallSession

__all__ = ["CallSession", "Config", "get_config"]


def __getattr__(name: str) -> Any:
    if name == "CallSession":
        from src.voicebot.session import CallSession

        return CallSession
    if name in __all__:
        from src.voicebot.config import Config, get_config

        return {"Config": Config, "get_config": get_config}[name]
    raise AttributeError(name)
