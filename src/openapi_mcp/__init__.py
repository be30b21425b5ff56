"""Compile OpenAPI descriptions into MCP tools and run them under a safety envelope."""

__version__ = "0.1.0"
