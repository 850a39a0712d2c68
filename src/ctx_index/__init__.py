"""ctx-index - local code-context indexing with hybrid semantic and keyword search."""

__version__ = "0.3.0"

from .core.exceptions import CtxIndexError

__all__ = ["CtxIndexError", "__version__"]
