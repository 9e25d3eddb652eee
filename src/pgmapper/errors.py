"""Exceptions raised by pgmapper."""


class MapperError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(MapperError):
    """The mapper is missing configuration an operation needs."""


class MapperConnectionError(MapperError):
    """Opening the data connection failed."""


class StatementError(MapperError):
    """The server rejected or failed to execute a statement."""


class InvalidIdentifierError(MapperError, ValueError):
    """A table or column name is not a plain SQL identifier."""


class ListenError(MapperError):
    """Subscribing to a notification channel failed."""
