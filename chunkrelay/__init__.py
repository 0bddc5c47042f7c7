"""aiohttp relay server for chunked file transfer and WebSocket node messaging."""

__version__ = "0.1.0"
__all__ = ["__version__"]