from __future__ import annotations

from typing import TYPE_CHECKING

__all__ = [
    "__version__",
    "BeadleConfig",
    "BeadleError",
    "Tracker",
]

__version__ = "0.1.0"

if TYPE_CHECKING:
    from .config import BeadleConfig
    from .errors import BeadleError
    from .tracker import Tracker


def __getattr__(name: str):
    if name == "Tracker":
        from .tracker import Tracker

        return Tracker
    if name == "BeadleConfig":
        from .config import BeadleConfig

        return BeadleConfig
    if name == "BeadleError":
        from .errors import BeadleError

        return BeadleError
    raise AttributeError(f"module 'beadle' has no attribute {name!r}")
