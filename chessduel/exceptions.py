"""Errors raised across the chessduel layers."""


class ChessDuelError(Exception):
    """Base class for all chessduel errors."""


class EngineProcessError(ChessDuelError):
    """Raised when the analysis process cannot be started or written to."""


class InvalidIntentError(ChessDuelError):
    """Raised when a client message cannot be turned into a game intent."""


class ConfigError(ChessDuelError):
    """Raised when settings cannot be loaded or validated."""
