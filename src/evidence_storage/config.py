"""
Storage provider configuration.

Provider selection and credentials come from a discriminated configuration
model. ``load_storage_config`` builds one from environment variables so a
deployment can switch backends without any caller code change.
"""

import logging
import os
from collections.abc import Mapping
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from .exceptions import StorageConfigurationError
from .models import StorageProviderType

log = logging.getLogger(__name__)

DEFAULT_PUBLIC_BUCKET = "public"
DEFAULT_PRIVATE_BUCKET = "private"
DEFAULT_LOCAL_PRIVATE_DIR = ".private"
DEFAULT_SIDECAR_ENDPOINT = "http://127.0.0.1:1106"


class BaseStorageConfig(BaseModel):
    """Fields shared by every provider configuration."""

    model_config = ConfigDict(extra="forbid")

    public_bucket: Optional[str] = Field(
        default=None, description="Bucket, container or directory for the public namespace"
    )
    private_bucket: Optional[str] = Field(
        default=None, description="Bucket, container or directory for the private namespace"
    )

    @property
    def provider_type(self) -> StorageProviderType:
        return StorageProviderType(getattr(self, "type"))


class LocalStorageConfig(BaseStorageConfig):
    type: Literal["local"] = "local"
    base_path: str = Field(default="./data/storage", description="Root directory for stored objects")
    public_url_base: Optional[str] = Field(
        default=None, description="Base URL under which the local storage router is mounted"
    )
    signing_secret: Optional[str] = Field(
        default=None, description="HMAC secret for signed URLs; random per process when unset"
    )


class S3StorageConfig(BaseStorageConfig):
    type: Literal["s3"] = "s3"
    region: str = "us-east-1"
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    endpoint: Optional[str] = Field(default=None, description="Custom endpoint for S3-compatible services")
    force_path_style: bool = False


class AzureBlobStorageConfig(BaseStorageConfig):
    type: Literal["azure_blob"] = "azure_blob"
    account_name: str = ""
    account_key: Optional[str] = None
    connection_string: Optional[str] = None

    @model_validator(mode="after")
    def _check_credentials(self):
        if not self.connection_string and not (self.account_name and self.account_key):
            raise ValueError(
                "Azure Blob Storage requires either connection_string or account_name + account_key"
            )
        return self


class GcsStorageConfig(BaseStorageConfig):
    type: Literal["gcs"] = "gcs"
    project_id: Optional[str] = None
    key_filename: Optional[str] = Field(default=None, description="Path to a service account key file")


class ReplitStorageConfig(BaseStorageConfig):
    type: Literal["replit"] = "replit"
    public_search_paths: list[str] = Field(
        default_factory=list, description="Absolute /<bucket>/<dir> roots searched for public objects"
    )
    private_object_dir: str = Field(default="", description="Absolute /<bucket>/<dir> root for private objects")
    sidecar_endpoint: str = DEFAULT_SIDECAR_ENDPOINT


AnyStorageConfig = Annotated[
    Union[
        LocalStorageConfig,
        S3StorageConfig,
        AzureBlobStorageConfig,
        GcsStorageConfig,
        ReplitStorageConfig,
    ],
    Field(discriminator="type"),
]

_config_adapter: TypeAdapter = TypeAdapter(AnyStorageConfig)

_PROVIDER_ALIASES = {
    "azure": StorageProviderType.AZURE_BLOB,
}


def parse_storage_config(data: Mapping) -> AnyStorageConfig:
    """Validate a plain mapping into the matching provider configuration."""
    try:
        return _config_adapter.validate_python(dict(data))
    except ValidationError as e:
        raise StorageConfigurationError(
            f"Invalid storage configuration: {e}", provider=str(data.get("type"))
        ) from e


def _split_paths(value: str | None) -> list[str]:
    paths: list[str] = []
    for path in (value or "").split(","):
        path = path.strip()
        if path and path not in paths:
            paths.append(path)
    return paths


def resolve_provider_type(value: str | None) -> StorageProviderType:
    raw = (value or StorageProviderType.LOCAL.value).strip().lower()
    if raw in _PROVIDER_ALIASES:
        return _PROVIDER_ALIASES[raw]
    try:
        return StorageProviderType(raw)
    except ValueError:
        supported = ", ".join(t.value for t in StorageProviderType)
        raise StorageConfigurationError(
            f"Unsupported storage provider: {raw!r}. Supported: {supported}"
        ) from None


def load_storage_config(environ: Mapping[str, str] | None = None) -> AnyStorageConfig:
    """Build the provider configuration from environment variables.

    Args:
        environ: Mapping to read instead of ``os.environ``.

    Raises:
        StorageConfigurationError: If the provider type is unknown or required
            settings are missing.
    """
    env = os.environ if environ is None else environ
    provider_type = resolve_provider_type(env.get("STORAGE_PROVIDER"))
    log.debug("Resolving storage configuration for provider %s", provider_type.value)

    data: dict = {"type": provider_type.value}
    if provider_type is StorageProviderType.LOCAL:
        data.update(
            base_path=env.get("LOCAL_STORAGE_PATH") or "./data/storage",
            public_url_base=env.get("LOCAL_STORAGE_PUBLIC_URL") or None,
            signing_secret=env.get("LOCAL_STORAGE_SIGNING_SECRET") or None,
            public_bucket=DEFAULT_PUBLIC_BUCKET,
            private_bucket=DEFAULT_LOCAL_PRIVATE_DIR,
        )
    elif provider_type is StorageProviderType.S3:
        data.update(
            region=env.get("AWS_REGION") or "us-east-1",
            access_key_id=env.get("AWS_ACCESS_KEY_ID") or None,
            secret_access_key=env.get("AWS_SECRET_ACCESS_KEY") or None,
            endpoint=env.get("S3_ENDPOINT") or None,
            force_path_style=(env.get("S3_FORCE_PATH_STYLE", "").lower() == "true"),
            public_bucket=env.get("S3_PUBLIC_BUCKET") or None,
            private_bucket=env.get("S3_PRIVATE_BUCKET") or None,
        )
    elif provider_type is StorageProviderType.AZURE_BLOB:
        data.update(
            account_name=env.get("AZURE_STORAGE_ACCOUNT_NAME") or "",
            account_key=env.get("AZURE_STORAGE_ACCOUNT_KEY") or None,
            connection_string=env.get("AZURE_STORAGE_CONNECTION_STRING") or None,
            public_bucket=env.get("AZURE_PUBLIC_CONTAINER") or None,
            private_bucket=env.get("AZURE_PRIVATE_CONTAINER") or None,
        )
    elif provider_type is StorageProviderType.GCS:
        data.update(
            project_id=env.get("GCP_PROJECT_ID") or None,
            key_filename=env.get("GOOGLE_APPLICATION_CREDENTIALS") or None,
            public_bucket=env.get("GCS_PUBLIC_BUCKET") or None,
            private_bucket=env.get("GCS_PRIVATE_BUCKET") or None,
        )
    elif provider_type is StorageProviderType.REPLIT:
        search_paths = _split_paths(env.get("PUBLIC_OBJECT_SEARCH_PATHS"))
        data.update(
            public_search_paths=search_paths,
            private_object_dir=env.get("PRIVATE_OBJECT_DIR") or "",
            public_bucket=search_paths[0] if search_paths else None,
            private_bucket=env.get("PRIVATE_OBJECT_DIR") or None,
        )

    return parse_storage_config(data)
