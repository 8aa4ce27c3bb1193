"""Registry of tools, prompts and resources that an MCP server offers."""

__all__ = ["registry"]