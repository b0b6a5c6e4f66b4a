"""chessduel: play chess against a UCI engine over a websocket."""

__version__ = "0.1.0"
