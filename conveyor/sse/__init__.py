"""Server-Sent Events (SSE) infrastructure for real-time updates."""

from .stream import GLOBAL_STREAM, SSEManager, SSEConnection

__all__ = ["GLOBAL_STREAM", "SSEManager", "SSEConnection"]
