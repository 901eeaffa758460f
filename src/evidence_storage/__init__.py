"""Backend-agnostic object storage for local disk, S3, Azure Blob, GCS and Replit."""

from .acl import AclOverlay, evaluate_access, policy_for_destination
from .base import StorageProvider
from .config import (
    AnyStorageConfig,
    AzureBlobStorageConfig,
    GcsStorageConfig,
    LocalStorageConfig,
    ReplitStorageConfig,
    S3StorageConfig,
    load_storage_config,
    parse_storage_config,
)
from .exceptions import (
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
from .keys import PRIVATE_PREFIX, PUBLIC_PREFIX, Namespace
from .models import (
    DownloadOptions,
    DownloadResult,
    ListOptions,
    ListResult,
    ObjectAclPolicy,
    ObjectPermission,
    ObjectVisibility,
    SignedUrlMethod,
    SignedUrlOptions,
    StorageMetadata,
    StorageObject,
    StorageProviderType,
    UploadOptions,
    UploadUrl,
)
from .registry import ProviderRegistry, ProviderState, create_storage_provider, default_registry

__all__ = [
    "AclOverlay",
    "AnyStorageConfig",
    "AzureBlobStorageConfig",
    "DownloadOptions",
    "DownloadResult",
    "GcsStorageConfig",
    "ListOptions",
    "ListResult",
    "LocalStorageConfig",
    "Namespace",
    "ObjectAclPolicy",
    "ObjectPermission",
    "ObjectVisibility",
    "PRIVATE_PREFIX",
    "PUBLIC_PREFIX",
    "ProviderRegistry",
    "ProviderState",
    "ReplitStorageConfig",
    "S3StorageConfig",
    "SignedUrlMethod",
    "SignedUrlOptions",
    "StorageConfigurationError",
    "StorageConnectionError",
    "StorageDeleteError",
    "StorageDownloadError",
    "StorageError",
    "StorageErrorCode",
    "StorageInvalidKeyError",
    "StorageMetadata",
    "StorageNotFoundError",
    "StorageObject",
    "StoragePermissionError",
    "StorageProvider",
    "StorageProviderType",
    "StorageProviderUnavailableError",
    "StorageUploadError",
    "UploadOptions",
    "UploadUrl",
    "create_storage_provider",
    "default_registry",
    "evaluate_access",
    "load_storage_config",
    "parse_storage_config",
    "policy_for_destination",
]
