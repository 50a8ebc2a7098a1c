from .media import media_router
from .torrentio import torrentio_router

__all__ = ["media_router", "torrentio_router"]
