"""Azure Blob Storage provider."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from azure.core.exceptions import (
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
    ServiceRequestError,
)
from azure.storage.blob import (
    BlobSasPermissions,
    BlobServiceClient,
    ContentSettings,
    generate_blob_sas,
)

from ..base import StorageProvider
from ..config import DEFAULT_PRIVATE_BUCKET, DEFAULT_PUBLIC_BUCKET, AzureBlobStorageConfig
from ..exceptions import (
    StorageConfigurationError,
    StorageConnectionError,
    StorageDeleteError,
    StorageDownloadError,
    StorageError,
    StorageInvalidKeyError,
    StorageNotFoundError,
    StoragePermissionError,
    StorageUploadError,
)
from ..keys import Namespace, namespace_of, strip_namespace, validate_key, with_namespace
from ..models import (
    DownloadResult,
    ListOptions,
    ListResult,
    SignedUrlMethod,
    SignedUrlOptions,
    StorageMetadata,
    StorageObject,
    StorageProviderType,
    UploadOptions,
)
from ..streams import DEFAULT_CONTENT_TYPE, UploadSource, iter_blocking_iterator, spool_upload_source

log = logging.getLogger(__name__)

COPY_POLL_INTERVAL_SEC = 0.5
DEFAULT_PAGE_SIZE = 1000


class AzureBlobStorageProvider(StorageProvider):
    """Azure Blob Storage provider with one container per namespace.

    Visibility is a property of the container, so an object changes visibility
    only by being copied to the other namespace.
    """

    name = "Azure Blob Storage"
    provider_type = StorageProviderType.AZURE_BLOB
    supports_in_place_visibility_change = False

    def __init__(
        self,
        account_name: str = "",
        account_key: str | None = None,
        connection_string: str | None = None,
        public_bucket: str | None = None,
        private_bucket: str | None = None,
    ):
        super().__init__()
        self._account_name = account_name
        self._account_key = account_key
        self._connection_string = connection_string
        self._container_names = {
            Namespace.PUBLIC: public_bucket or DEFAULT_PUBLIC_BUCKET,
            Namespace.PRIVATE: private_bucket or DEFAULT_PRIVATE_BUCKET,
        }
        self._service_client = None
        self._containers = {}

    @classmethod
    def from_config(cls, config: AzureBlobStorageConfig) -> "AzureBlobStorageProvider":
        return cls(
            account_name=config.account_name,
            account_key=config.account_key,
            connection_string=config.connection_string,
            public_bucket=config.public_bucket,
            private_bucket=config.private_bucket,
        )

    async def _initialize(self) -> None:
        if self._connection_string:
            self._service_client = BlobServiceClient.from_connection_string(self._connection_string)
            if not self._account_key:
                self._account_key = self._extract_key_from_connection_string(self._connection_string)
        elif self._account_name and self._account_key:
            account_url = f"https://{self._account_name}.blob.core.windows.net"
            self._service_client = BlobServiceClient(account_url=account_url, credential=self._account_key)
        else:
            raise self._error(
                StorageConfigurationError,
                "Azure Blob Storage requires either connection_string or account_name + account_key",
            )

        if not self._account_name:
            self._account_name = self._service_client.account_name

        for namespace, container_name in self._container_names.items():
            container = self._service_client.get_container_client(container_name)
            self._containers[namespace] = container
            public_access = "blob" if namespace is Namespace.PUBLIC else None
            await asyncio.to_thread(self._ensure_container, container, public_access)

    def _ensure_container(self, container, public_access: str | None) -> None:
        try:
            container.create_container(public_access=public_access)
            log.info("[%s] Created container %s", self.name, container.container_name)
        except ResourceExistsError:
            pass
        except Exception as e:
            raise self._error(
                StorageConfigurationError,
                f"Cannot create container '{container.container_name}': {e}",
                cause=e,
            ) from e

    async def health_check(self) -> bool:
        if self._service_client is None:
            return False
        try:
            await asyncio.to_thread(self._containers[Namespace.PUBLIC].get_container_properties)
            return True
        except Exception as e:
            log.warning("[%s] Health check failed: %s", self.name, e)
            return False

    def _blob_client(self, key: str):
        validate_key(key, self.name)
        blob_name = strip_namespace(key)
        if not blob_name:
            raise self._error(StorageInvalidKeyError, f"Key has no blob name: {key!r}", key=key)
        return self._containers[namespace_of(key, self.default_namespace)].get_blob_client(blob_name)

    async def upload(self, key: str, data: UploadSource, options: UploadOptions | None = None) -> str:
        self._require_initialized(key)
        options = options or UploadOptions()
        blob_client = self._blob_client(key)

        body = await spool_upload_source(data)
        try:
            await asyncio.to_thread(
                blob_client.upload_blob,
                body,
                overwrite=True,
                content_settings=ContentSettings(content_type=options.content_type or DEFAULT_CONTENT_TYPE),
                metadata=options.metadata,
            )
        except Exception as e:
            raise self._translate_error(e, key, StorageUploadError, passthrough=()) from e
        finally:
            if body is not data:
                body.close()
        return key

    async def download(self, key: str) -> DownloadResult:
        self._require_initialized(key)
        blob_client = self._blob_client(key)
        try:
            downloader = await asyncio.to_thread(blob_client.download_blob)
        except Exception as e:
            raise self._translate_error(e, key, StorageDownloadError) from e
        return DownloadResult(
            stream=iter_blocking_iterator(downloader.chunks()),
            metadata=_metadata_from_properties(downloader.properties),
        )

    async def delete(self, key: str) -> None:
        self._require_initialized(key)
        blob_client = self._blob_client(key)
        try:
            await asyncio.to_thread(blob_client.delete_blob)
        except ResourceNotFoundError:
            pass
        except Exception as e:
            raise self._translate_error(e, key, StorageDeleteError, passthrough=()) from e
        self._acl.discard(key)

    async def exists(self, key: str) -> bool:
        self._require_initialized(key)
        try:
            return await asyncio.to_thread(self._blob_client(key).exists)
        except Exception as e:
            return self._exists_failure(e, key)

    async def get_metadata(self, key: str) -> StorageMetadata:
        self._require_initialized(key)
        blob_client = self._blob_client(key)
        try:
            properties = await asyncio.to_thread(blob_client.get_blob_properties)
        except Exception as e:
            raise self._translate_error(e, key, StorageDownloadError) from e
        return _metadata_from_properties(properties)

    async def get_signed_url(self, key: str, options: SignedUrlOptions) -> str:
        self._require_initialized(key)
        if not self._account_key:
            raise self._error(
                StorageConfigurationError,
                "Account key is required to generate SAS URLs",
                key=key,
            )
        blob_client = self._blob_client(key)
        method = options.method
        permission = BlobSasPermissions(
            read=method in (SignedUrlMethod.GET, SignedUrlMethod.HEAD),
            write=method is SignedUrlMethod.PUT,
            create=method is SignedUrlMethod.PUT,
            delete=method is SignedUrlMethod.DELETE,
        )
        try:
            sas_token = generate_blob_sas(
                account_name=self._account_name,
                container_name=blob_client.container_name,
                blob_name=blob_client.blob_name,
                account_key=self._account_key,
                permission=permission,
                expiry=datetime.now(timezone.utc) + timedelta(seconds=options.ttl_sec),
            )
        except Exception as e:
            raise self._translate_error(e, key, StorageConfigurationError, passthrough=()) from e
        return f"{blob_client.url}?{sas_token}"

    async def list(self, options: ListOptions | None = None) -> ListResult:
        self._require_initialized()
        options = options or ListOptions()
        namespace = namespace_of(options.prefix, self.default_namespace)
        container = self._containers[namespace]
        name_prefix = strip_namespace(options.prefix) or None

        def _list_page():
            pages = container.list_blobs(
                name_starts_with=name_prefix,
                results_per_page=options.max_results or DEFAULT_PAGE_SIZE,
            ).by_page(continuation_token=options.cursor)
            page = next(pages, None)
            return list(page or []), pages.continuation_token

        try:
            blobs, continuation_token = await asyncio.to_thread(_list_page)
        except Exception as e:
            raise self._translate_error(
                e, options.prefix, StorageConnectionError, passthrough=(StorageNotFoundError, StoragePermissionError)
            ) from e

        objects = [
            StorageObject(
                key=with_namespace(namespace, blob.name),
                metadata=StorageMetadata(
                    content_type=blob.content_settings.content_type if blob.content_settings else None,
                    size=blob.size,
                    last_modified=blob.last_modified,
                    etag=blob.etag,
                ),
            )
            for blob in blobs
        ]
        return ListResult(objects=objects, next_cursor=continuation_token or None)

    async def copy(self, source_key: str, destination_key: str) -> None:
        self._require_initialized(source_key)
        source_blob = self._blob_client(source_key)
        destination_blob = self._blob_client(destination_key)

        try:
            result = await asyncio.to_thread(destination_blob.start_copy_from_url, source_blob.url)
            status = result.get("copy_status")
            while status == "pending":
                await asyncio.sleep(COPY_POLL_INTERVAL_SEC)
                properties = await asyncio.to_thread(destination_blob.get_blob_properties)
                status = properties.copy.status
        except Exception as e:
            raise self._translate_error(e, source_key, StorageUploadError) from e

        if status != "success":
            raise self._error(
                StorageUploadError,
                f"Copy from {source_key} finished with status {status}",
                key=destination_key,
            )
        self._acl.copy(source_key, destination_key)

    def get_public_url(self, key: str) -> str | None:
        if namespace_of(key, self.default_namespace) is not Namespace.PUBLIC:
            return None
        name = strip_namespace(key)
        container = self._containers.get(Namespace.PUBLIC)
        if container is not None:
            return f"{container.url}/{name}"
        return f"https://{self._account_name}.blob.core.windows.net/{self._container_names[Namespace.PUBLIC]}/{name}"

    def _entity_roots(self) -> list[tuple[str, Namespace]]:
        return [(f"{container.url}/", namespace) for namespace, container in self._containers.items()]

    @staticmethod
    def _extract_key_from_connection_string(connection_string: str) -> str | None:
        for part in connection_string.split(";"):
            if part.strip().lower().startswith("accountkey="):
                return part.split("=", 1)[1]
        return None

    def _classify_error(self, error: Exception) -> type[StorageError] | None:
        if isinstance(error, ResourceNotFoundError):
            return StorageNotFoundError
        if isinstance(error, HttpResponseError) and error.status_code == 403:
            return StoragePermissionError
        if isinstance(error, (ServiceRequestError, ConnectionError)):
            return StorageConnectionError
        return None


def _metadata_from_properties(properties) -> StorageMetadata:
    content_settings = properties.content_settings
    return StorageMetadata(
        content_type=(content_settings.content_type if content_settings else None) or DEFAULT_CONTENT_TYPE,
        size=properties.size,
        last_modified=properties.last_modified,
        etag=properties.etag,
        custom_metadata=dict(properties.metadata or {}),
    )
