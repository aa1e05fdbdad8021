"""
Turnloop package.

Keep imports lightweight so modules like `src.turnloop.sentences` can be used
without pulling in the provider SDKs at import time.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.turnloop.config import Config
    from src.turnloop.session import VoiceSession

__all__ = ["Config", "VoiceSession", "create_session", "get_config"]


def __getattr__(name: str) -> Any:
    if name in ("Config", "get_config"):
        from src.turnloop.config import Config, get_config

        return {"Config": Config, "get_config": get_config}[name]
    if name in ("VoiceSession", "create_session"):
        from src.turnloop.session import VoiceSession, create_session

        return {"VoiceSession": VoiceSession, "create_session": create_session}[name]
    raise AttributeError(name)
