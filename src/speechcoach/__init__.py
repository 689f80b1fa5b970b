"""
Speech-practice agent package.

Keep imports lightweight so pure modules like `src.speechcoach.audio` can be
used without pulling in the full runtime dependency set (e.g., dotenv) at
import time.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.speechcoach.config import Config

__all__ = ["Config", "get_config"]


def __getattr__(name: str) -> Any:
    if name in __all__:
        from src.speechcoach.config import Config, get_config

        return {"Config": Config, "get_config": get_config}[name]
    raise AttributeError(name)
