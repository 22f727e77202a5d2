"""Chat backend building blocks: a websocket event hub, an authenticated user HTTP API and structured errors."""

__version__ = "0.1.0"