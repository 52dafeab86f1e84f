from enum import Enum


class ErrorKind(str, Enum):
    STORAGE_ERROR = "storage_error"
    UNSUPPORTED_FORMAT = "unsupported_format"
    ENGINE_FAILURE = "engine_failure"
    TIMEOUT = "timeout"


class BotError(Exception):
    """Base class for all errors raised by pandoc_bot."""


class ConfigError(BotError):
    """A required setting is missing or invalid. Fatal at startup."""

    def __init__(self, setting: str, message: str) -> None:
        super().__init__(f"{setting}: {message}")
        self.setting = setting


class StorageError(BotError):
    """State or staged-file I/O failed."""

    kind = ErrorKind.STORAGE_ERROR


class ConversionError(BotError):
    kind: ErrorKind = ErrorKind.ENGINE_FAILURE

    def __init__(self, message: str, *, diagnostic: str | None = None) -> None:
        super().__init__(message)
        self.diagnostic = diagnostic


class UnsupportedFormat(ConversionError):
    kind = ErrorKind.UNSUPPORTED_FORMAT


class EngineFailure(ConversionError):
    kind = ErrorKind.ENGINE_FAILURE


class ConversionTimeout(ConversionError):
    kind = ErrorKind.TIMEOUT


class TelegramError(BotError):
    """The Bot API returned an error or could not be reached."""
