"""Server-Sent Events (SSE) streaming of run events."""

from .stream import TERMINAL_EVENTS, SSEManager, SSEConnection, format_sse_message, format_keepalive

__all__ = ["TERMINAL_EVENTS", "SSEManager", "SSEConnection", "format_sse_message", "format_keepalive"]
