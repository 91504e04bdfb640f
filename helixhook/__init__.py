"""helixhook package initialization."""

from typing import TYPE_CHECKING

__version__ = "0.1.0"

if TYPE_CHECKING:  # pragma: no cover - import-time convenience for type checkers
    from .webhook import HelixWebhook as HelixWebhook

__all__ = ["HelixWebhook", "__version__"]


def __getattr__(name: str):
    if name == "HelixWebhook":
        from .webhook import HelixWebhook as _HelixWebhook
        return _HelixWebhook
    raise AttributeError(f"module 'helixhook' has no attribute {name!r}")
