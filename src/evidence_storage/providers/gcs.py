"""Google Cloud Storage provider."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from google.api_core.exceptions import Conflict, Forbidden, NotFound
from google.auth.exceptions import TransportError
from google.cloud import storage as gcs
from google.oauth2 import service_account

from ..base import StorageProvider
from ..config import DEFAULT_PRIVATE_BUCKET, DEFAULT_PUBLIC_BUCKET, GcsStorageConfig
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
    ObjectAclPolicy,
    ObjectVisibility,
    SignedUrlMethod,
    SignedUrlOptions,
    StorageMetadata,
    StorageObject,
    StorageProviderType,
    UploadOptions,
)
from ..streams import DEFAULT_CONTENT_TYPE, UploadSource, iter_file_chunks, spool_upload_source

log = logging.getLogger(__name__)

GCS_PUBLIC_URL_BASE = "https://storage.googleapis.com"


class GcsStorageProvider(StorageProvider):
    """Google Cloud Storage provider with one bucket per namespace."""

    name = "Google Cloud Storage"
    provider_type = StorageProviderType.GCS
    supports_in_place_visibility_change = True

    def __init__(
        self,
        project_id: str | None = None,
        key_filename: str | None = None,
        public_bucket: str | None = None,
        private_bucket: str | None = None,
    ):
        super().__init__()
        self._project_id = project_id
        self._key_filename = key_filename
        self._bucket_names = {
            Namespace.PUBLIC: public_bucket or DEFAULT_PUBLIC_BUCKET,
            Namespace.PRIVATE: private_bucket or DEFAULT_PRIVATE_BUCKET,
        }
        self._credentials = None
        self._gcs_client = None
        self._buckets = {}

    @classmethod
    def from_config(cls, config: GcsStorageConfig) -> "GcsStorageProvider":
        return cls(
            project_id=config.project_id,
            key_filename=config.key_filename,
            public_bucket=config.public_bucket,
            private_bucket=config.private_bucket,
        )

    async def _initialize(self) -> None:
        kwargs: dict = {}
        if self._project_id:
            kwargs["project"] = self._project_id
        if self._key_filename:
            try:
                self._credentials = service_account.Credentials.from_service_account_file(self._key_filename)
            except (OSError, ValueError) as e:
                raise self._error(
                    StorageConfigurationError, f"Cannot load credentials from {self._key_filename}: {e}", cause=e
                ) from e
            kwargs["credentials"] = self._credentials

        self._gcs_client = gcs.Client(**kwargs)
        for namespace, bucket_name in self._bucket_names.items():
            bucket = self._gcs_client.bucket(bucket_name)
            self._buckets[namespace] = bucket
            await asyncio.to_thread(self._ensure_bucket, bucket)

    def _ensure_bucket(self, bucket) -> None:
        try:
            if bucket.exists():
                return
            self._gcs_client.create_bucket(bucket.name)
            log.info("[%s] Created bucket %s", self.name, bucket.name)
        except Conflict:
            pass
        except Exception as e:
            raise self._error(
                StorageConfigurationError, f"Cannot create bucket '{bucket.name}': {e}", cause=e
            ) from e

    async def health_check(self) -> bool:
        if self._gcs_client is None:
            return False
        try:
            return bool(await asyncio.to_thread(self._buckets[Namespace.PUBLIC].exists))
        except Exception as e:
            log.warning("[%s] Health check failed: %s", self.name, e)
            return False

    def _locate(self, key: str):
        validate_key(key, self.name)
        blob_name = strip_namespace(key)
        if not blob_name:
            raise self._error(StorageInvalidKeyError, f"Key has no object name: {key!r}", key=key)
        return self._buckets[namespace_of(key, self.default_namespace)], blob_name

    async def upload(self, key: str, data: UploadSource, options: UploadOptions | None = None) -> str:
        self._require_initialized(key)
        options = options or UploadOptions()
        bucket, blob_name = self._locate(key)
        blob = bucket.blob(blob_name)
        if options.metadata:
            blob.metadata = options.metadata

        upload_kwargs: dict = {"content_type": options.content_type or DEFAULT_CONTENT_TYPE}
        if options.is_public or namespace_of(key, self.default_namespace) is Namespace.PUBLIC:
            upload_kwargs["predefined_acl"] = "publicRead"

        body = await spool_upload_source(data)
        try:
            await asyncio.to_thread(blob.upload_from_file, body, **upload_kwargs)
        except Exception as e:
            raise self._translate_error(e, key, StorageUploadError, passthrough=()) from e
        finally:
            if body is not data:
                body.close()
        return key

    async def download(self, key: str) -> DownloadResult:
        self._require_initialized(key)
        bucket, blob_name = self._locate(key)
        try:
            blob = await asyncio.to_thread(bucket.get_blob, blob_name)
            if blob is None:
                raise self._error(StorageNotFoundError, f"Object not found: {key}", key=key)
            reader = await asyncio.to_thread(blob.open, "rb")
        except Exception as e:
            raise self._translate_error(e, key, StorageDownloadError) from e
        return DownloadResult(stream=iter_file_chunks(reader), metadata=metadata_from_blob(blob))

    async def delete(self, key: str) -> None:
        self._require_initialized(key)
        bucket, blob_name = self._locate(key)
        try:
            await asyncio.to_thread(bucket.blob(blob_name).delete)
        except NotFound:
            pass
        except Exception as e:
            raise self._translate_error(e, key, StorageDeleteError, passthrough=()) from e
        self._acl.discard(key)

    async def exists(self, key: str) -> bool:
        self._require_initialized(key)
        try:
            bucket, blob_name = self._locate(key)
            return bool(await asyncio.to_thread(bucket.blob(blob_name).exists))
        except Exception as e:
            return self._exists_failure(e, key)

    async def get_metadata(self, key: str) -> StorageMetadata:
        self._require_initialized(key)
        bucket, blob_name = self._locate(key)
        try:
            blob = await asyncio.to_thread(bucket.get_blob, blob_name)
        except Exception as e:
            raise self._translate_error(e, key, StorageDownloadError) from e
        if blob is None:
            raise self._error(StorageNotFoundError, f"Object not found: {key}", key=key)
        return metadata_from_blob(blob)

    async def get_signed_url(self, key: str, options: SignedUrlOptions) -> str:
        self._require_initialized(key)
        bucket, blob_name = self._locate(key)
        kwargs: dict = {
            "version": "v4",
            "expiration": timedelta(seconds=options.ttl_sec),
            "method": options.method.value,
        }
        if options.method is SignedUrlMethod.PUT and options.content_type:
            kwargs["content_type"] = options.content_type
        if self._credentials is not None:
            kwargs["credentials"] = self._credentials
        try:
            return bucket.blob(blob_name).generate_signed_url(**kwargs)
        except Exception as e:
            raise self._translate_error(e, key, StorageConfigurationError, passthrough=()) from e

    async def list(self, options: ListOptions | None = None) -> ListResult:
        self._require_initialized()
        options = options or ListOptions()
        namespace = namespace_of(options.prefix, self.default_namespace)
        bucket = self._buckets[namespace]
        blobs, next_cursor = await self._list_page(bucket, strip_namespace(options.prefix), options)
        objects = [
            StorageObject(key=with_namespace(namespace, blob.name), metadata=metadata_from_blob(blob))
            for blob in blobs
        ]
        return ListResult(objects=objects, next_cursor=next_cursor)

    async def _list_page(self, bucket, prefix: str, options: ListOptions):
        def _first_page():
            iterator = self._gcs_client.list_blobs(
                bucket,
                prefix=prefix or None,
                max_results=options.max_results,
                page_token=options.cursor,
            )
            page = next(iterator.pages, None)
            return list(page or []), iterator.next_page_token

        try:
            return await asyncio.to_thread(_first_page)
        except Exception as e:
            raise self._translate_error(
                e, options.prefix, StorageConnectionError, passthrough=(StorageNotFoundError, StoragePermissionError)
            ) from e

    async def copy(self, source_key: str, destination_key: str) -> None:
        self._require_initialized(source_key)
        source_bucket, source_name = self._locate(source_key)
        destination_bucket, destination_name = self._locate(destination_key)
        is_destination_public = namespace_of(destination_key, self.default_namespace) is Namespace.PUBLIC
        try:
            copied = await asyncio.to_thread(
                source_bucket.copy_blob,
                source_bucket.blob(source_name),
                destination_bucket,
                destination_name,
            )
            await asyncio.to_thread(copied.make_public if is_destination_public else copied.make_private)
        except Exception as e:
            raise self._translate_error(e, source_key, StorageUploadError) from e
        self._acl.copy(source_key, destination_key)

    async def _apply_visibility(self, key: str, visibility: ObjectVisibility) -> None:
        bucket, blob_name = self._locate(key)
        blob = bucket.blob(blob_name)
        try:
            if visibility is ObjectVisibility.PUBLIC:
                await asyncio.to_thread(blob.make_public)
            else:
                await asyncio.to_thread(blob.make_private)
        except Exception as e:
            raise self._translate_error(e, key, StoragePermissionError) from e
        self._acl.set_visibility(key, visibility)

    async def set_acl_policy(self, key: str, policy: ObjectAclPolicy) -> None:
        self._require_initialized(key)
        await self._apply_visibility(key, policy.visibility)
        self._acl.set(key, policy)

    def get_public_url(self, key: str) -> str | None:
        if namespace_of(key, self.default_namespace) is not Namespace.PUBLIC:
            return None
        return f"{GCS_PUBLIC_URL_BASE}/{self._bucket_names[Namespace.PUBLIC]}/{strip_namespace(key)}"

    def _entity_roots(self) -> list[tuple[str, Namespace]]:
        return [(f"{GCS_PUBLIC_URL_BASE}/{name}/", namespace) for namespace, name in self._bucket_names.items()]

    def _classify_error(self, error: Exception) -> type[StorageError] | None:
        return classify_gcs_error(error)


def classify_gcs_error(error: Exception) -> type[StorageError] | None:
    if isinstance(error, NotFound):
        return StorageNotFoundError
    if isinstance(error, Forbidden):
        return StoragePermissionError
    if isinstance(error, ValueError) and "credentials" in str(error).lower():
        return StoragePermissionError
    if isinstance(error, (TransportError, ConnectionError)):
        return StorageConnectionError
    return None


def metadata_from_blob(blob) -> StorageMetadata:
    return StorageMetadata(
        content_type=blob.content_type or DEFAULT_CONTENT_TYPE,
        size=blob.size,
        last_modified=blob.updated,
        etag=blob.etag,
        custom_metadata=dict(blob.metadata or {}),
    )
