"""
livemd: live markdown preview server.

Watches a markdown tree, renders changed files to HTML, keeps the
results in a versioned in-memory store and tells connected browsers
to reload once the new version is servable.

    livemd doc/            # serve ./doc on http://127.0.0.1:3000/
"""

from .engine import LiveServer, ServerConfig

__version__ = "0.1.0"

__all__ = ["LiveServer", "ServerConfig", "__version__"]
