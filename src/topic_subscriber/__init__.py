"""
Top-level package for the Genesys Cloud notification topic subscriber.

This package provides PKCE authentication with a local token cache and a
WebSocket engine that streams notification topics to a consumer callback.
"""

__all__: list[str] = []
