"""Stdio and SSE transports that carry JSON-RPC messages between MCP servers and clients."""

__all__ = ["base", "sse", "stdio"]