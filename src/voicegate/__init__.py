"""
Twilio voice gateway.

Only configuration is re-exported here, and lazily: the codec and protocol
modules stay importable without python-dotenv or the SDKs installed.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.voicegate.config import Config, get_config

__all__ = ["Config", "get_config"]


def __getattr__(name: str) -> Any:
    if name not in __all__:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

    from src.voicegate import config

    return getattr(config, name)
