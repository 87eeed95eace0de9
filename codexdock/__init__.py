"""CodexDock: relay per-repository Codex app-server sessions to WebSocket subscribers."""

__version__ = "0.1.0"
