"""Common exception hierarchy for object storage providers."""

from enum import Enum


class StorageErrorCode(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    INVALID_KEY = "INVALID_KEY"
    UPLOAD_FAILED = "UPLOAD_FAILED"
    DOWNLOAD_FAILED = "DOWNLOAD_FAILED"
    DELETE_FAILED = "DELETE_FAILED"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"


class StorageError(Exception):
    """Base exception for all storage operations.

    Carries the offending key (when there is one) and the display name of
    the provider that raised it so failures can be attributed in logs.
    """

    code: StorageErrorCode = StorageErrorCode.CONNECTION_ERROR

    def __init__(
        self,
        message: str,
        key: str | None = None,
        provider: str | None = None,
        cause: Exception | None = None,
    ):
        self.message = message
        self.key = key
        self.provider = provider
        self.cause = cause
        super().__init__(message)

    def __str__(self) -> str:
        if self.provider:
            return f"[{self.provider}] {self.message}"
        return self.message

    @staticmethod
    def from_code(
        code: StorageErrorCode,
        message: str,
        key: str | None = None,
        provider: str | None = None,
        cause: Exception | None = None,
    ) -> "StorageError":
        exc_cls = _ERRORS_BY_CODE[StorageErrorCode(code)]
        return exc_cls(message, key=key, provider=provider, cause=cause)


class StorageNotFoundError(StorageError):
    """Raised when a requested key does not exist."""

    code = StorageErrorCode.NOT_FOUND


class StoragePermissionError(StorageError):
    """Raised when access is denied or an operation is not permitted by the provider."""

    code = StorageErrorCode.PERMISSION_DENIED


class StorageInvalidKeyError(StorageError):
    """Raised when a key cannot be mapped onto the backend."""

    code = StorageErrorCode.INVALID_KEY


class StorageUploadError(StorageError):
    code = StorageErrorCode.UPLOAD_FAILED


class StorageDownloadError(StorageError):
    code = StorageErrorCode.DOWNLOAD_FAILED


class StorageDeleteError(StorageError):
    code = StorageErrorCode.DELETE_FAILED


class StorageConnectionError(StorageError):
    """Raised when the storage backend is unreachable."""

    code = StorageErrorCode.CONNECTION_ERROR


class StorageConfigurationError(StorageError):
    """Raised for missing credentials, bad settings or an uninitialized provider."""

    code = StorageErrorCode.CONFIGURATION_ERROR


class StorageProviderUnavailableError(StorageError):
    """Raised when a provider fails its startup health check."""

    code = StorageErrorCode.PROVIDER_UNAVAILABLE


_ERRORS_BY_CODE: dict[StorageErrorCode, type[StorageError]] = {
    StorageErrorCode.NOT_FOUND: StorageNotFoundError,
    StorageErrorCode.PERMISSION_DENIED: StoragePermissionError,
    StorageErrorCode.INVALID_KEY: StorageInvalidKeyError,
    StorageErrorCode.UPLOAD_FAILED: StorageUploadError,
    StorageErrorCode.DOWNLOAD_FAILED: StorageDownloadError,
    StorageErrorCode.DELETE_FAILED: StorageDeleteError,
    StorageErrorCode.CONNECTION_ERROR: StorageConnectionError,
    StorageErrorCode.CONFIGURATION_ERROR: StorageConfigurationError,
    StorageErrorCode.PROVIDER_UNAVAILABLE: StorageProviderUnavailableError,
}
