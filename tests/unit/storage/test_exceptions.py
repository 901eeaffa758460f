"""Tests for the storage exception hierarchy."""

import pytest

from evidence_storage.exceptions import (
    StorageConfigurationError,
    StorageConnectionError,
    StorageDeleteError,
    StorageDownloadError,
    StorageError,
    StorageErrorCode,
    StorageInvalidKeyError,
    StorageNotFoundError,
    StoragePermissionError,
    StorageProviderUnavailableError,
    StorageUploadError,
)


class TestStorageError:
    def test_carries_context(self):
        cause = OSError("disk full")
        error = StorageUploadError("write failed", key=".private/a", provider="Local", cause=cause)

        assert error.message == "write failed"
        assert error.key == ".private/a"
        assert error.provider == "Local"
        assert error.cause is cause
        assert error.code is StorageErrorCode.UPLOAD_FAILED

    def test_str_includes_provider(self):
        assert str(StorageNotFoundError("missing", provider="AWS S3")) == "[AWS S3] missing"
        assert str(StorageNotFoundError("missing")) == "missing"

    @pytest.mark.parametrize(
        ("code", "expected"),
        [
            (StorageErrorCode.NOT_FOUND, StorageNotFoundError),
            (StorageErrorCode.PERMISSION_DENIED, StoragePermissionError),
            (StorageErrorCode.INVALID_KEY, StorageInvalidKeyError),
            (StorageErrorCode.UPLOAD_FAILED, StorageUploadError),
            (StorageErrorCode.DOWNLOAD_FAILED, StorageDownloadError),
            (StorageErrorCode.DELETE_FAILED, StorageDeleteError),
            (StorageErrorCode.CONNECTION_ERROR, StorageConnectionError),
            (StorageErrorCode.CONFIGURATION_ERROR, StorageConfigurationError),
            (StorageErrorCode.PROVIDER_UNAVAILABLE, StorageProviderUnavailableError),
        ],
    )
    def test_from_code_picks_subclass(self, code, expected):
        error = StorageError.from_code(code, "msg", key="k")

        assert type(error) is expected
        assert error.code is code
        assert isinstance(error, StorageError)

    def test_from_code_accepts_string(self):
        assert isinstance(StorageError.from_code("NOT_FOUND", "msg"), StorageNotFoundError)

    def test_errors_can_be_caught_as_storage_error(self):
        with pytest.raises(StorageError):
            raise StoragePermissionError("denied")
