"""Replit Object Storage provider.

Objects live in Google Cloud Storage buckets that are reached through the
Replit sidecar: credentials come from an external-account token exchange
against the sidecar and signed URLs are minted by it. Buckets and
directories are provisioned by the platform, so nothing is created here.

Keys are resolved against ``private_object_dir`` (``.private/`` and
unprefixed keys) or the first of ``public_search_paths`` (``public/`` keys).
Absolute ``/<bucket>/<object>`` paths are accepted as-is.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone

import httpx
from google.api_core.exceptions import NotFound
from google.auth import identity_pool
from google.cloud import storage as gcs

from ..acl import policy_for_destination
from ..base import StorageProvider
from ..config import DEFAULT_SIDECAR_ENDPOINT, ReplitStorageConfig
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
from ..keys import Namespace, explicit_namespace, strip_namespace, validate_key, with_namespace
from ..models import (
    DownloadResult,
    ListOptions,
    ListResult,
    ObjectAclPolicy,
    ObjectVisibility,
    SignedUrlOptions,
    StorageMetadata,
    StorageObject,
    StorageProviderType,
    UploadOptions,
)
from ..streams import DEFAULT_CONTENT_TYPE, UploadSource, iter_file_chunks, spool_upload_source
from .gcs import GCS_PUBLIC_URL_BASE, classify_gcs_error, metadata_from_blob

log = logging.getLogger(__name__)

ACL_POLICY_METADATA_KEY = "custom:aclPolicy"
HEALTH_CHECK_TIMEOUT_SEC = 5.0


class ReplitStorageProvider(StorageProvider):
    name = "Replit Object Storage"
    provider_type = StorageProviderType.REPLIT
    supports_in_place_visibility_change = True

    def __init__(
        self,
        public_search_paths: list[str] | None = None,
        private_object_dir: str = "",
        sidecar_endpoint: str = DEFAULT_SIDECAR_ENDPOINT,
        http_client: httpx.AsyncClient | None = None,
    ):
        super().__init__()
        self._public_search_paths = [p.rstrip("/") for p in (public_search_paths or []) if p.strip()]
        self._private_object_dir = private_object_dir.rstrip("/")
        self._sidecar_endpoint = sidecar_endpoint.rstrip("/")
        self._http = http_client
        self._owns_http = http_client is None
        self._gcs_client = None

    @classmethod
    def from_config(cls, config: ReplitStorageConfig) -> "ReplitStorageProvider":
        return cls(
            public_search_paths=config.public_search_paths,
            private_object_dir=config.private_object_dir,
            sidecar_endpoint=config.sidecar_endpoint,
        )

    def _credential_info(self) -> dict:
        return {
            "type": "external_account",
            "audience": "replit",
            "subject_token_type": "access_token",
            "token_url": f"{self._sidecar_endpoint}/token",
            "credential_source": {
                "url": f"{self._sidecar_endpoint}/credential",
                "format": {"type": "json", "subject_token_field_name": "access_token"},
            },
            "universe_domain": "googleapis.com",
        }

    async def _initialize(self) -> None:
        try:
            credentials = identity_pool.Credentials.from_info(self._credential_info())
            self._gcs_client = gcs.Client(project=None, credentials=credentials)
        except Exception as e:
            raise self._error(StorageConfigurationError, f"Cannot create storage client: {e}", cause=e) from e
        if self._http is None:
            self._http = httpx.AsyncClient()

        if not self._private_object_dir:
            log.warning("[%s] PRIVATE_OBJECT_DIR is not set; private uploads will fail", self.name)
        if not self._public_search_paths:
            log.warning("[%s] PUBLIC_OBJECT_SEARCH_PATHS is not set; public objects are unreachable", self.name)

    async def close(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    async def health_check(self) -> bool:
        if self._http is None:
            return False
        try:
            response = await self._http.get(f"{self._sidecar_endpoint}/health", timeout=HEALTH_CHECK_TIMEOUT_SEC)
            if response.is_success:
                return True
        except httpx.HTTPError as e:
            log.debug("[%s] Sidecar health endpoint unreachable: %s", self.name, e)
        # Older sidecars have no health endpoint; configured directories are the best signal left.
        return bool(self._private_object_dir or self._public_search_paths)

    def _root_dir(self, namespace: Namespace, key: str | None = None) -> str:
        if namespace is Namespace.PUBLIC:
            if not self._public_search_paths:
                raise self._error(StorageConfigurationError, "PUBLIC_OBJECT_SEARCH_PATHS is not configured", key=key)
            return self._public_search_paths[0]
        if not self._private_object_dir:
            raise self._error(StorageConfigurationError, "PRIVATE_OBJECT_DIR is not configured", key=key)
        return self._private_object_dir

    def _object_path(self, key: str) -> str:
        if key.startswith("/"):
            return key
        namespace = explicit_namespace(key) or self.default_namespace
        return f"{self._root_dir(namespace, key)}/{strip_namespace(key)}"

    def _split_path(self, path: str, key: str | None = None) -> tuple[str, str]:
        if not path.startswith("/"):
            path = f"/{path}"
        bucket_name, _, object_name = path[1:].partition("/")
        if not bucket_name or not object_name:
            raise self._error(StorageInvalidKeyError, f"Invalid object path: {path!r}", key=key)
        return bucket_name, object_name

    def _locate(self, key: str):
        validate_key(key, self.name)
        bucket_name, object_name = self._split_path(self._object_path(key), key)
        return self._gcs_client.bucket(bucket_name), object_name

    async def _get_blob(self, key: str):
        bucket, object_name = self._locate(key)
        blob = await asyncio.to_thread(bucket.get_blob, object_name)
        if blob is None:
            raise self._error(StorageNotFoundError, f"Object not found: {key}", key=key)
        return blob

    async def upload(self, key: str, data: UploadSource, options: UploadOptions | None = None) -> str:
        self._require_initialized(key)
        options = options or UploadOptions()
        bucket, object_name = self._locate(key)
        blob = bucket.blob(object_name)
        if options.metadata:
            blob.metadata = options.metadata

        body = await spool_upload_source(data)
        try:
            await asyncio.to_thread(
                blob.upload_from_file, body, content_type=options.content_type or DEFAULT_CONTENT_TYPE
            )
        except Exception as e:
            raise self._translate_error(e, key, StorageUploadError, passthrough=()) from e
        finally:
            if body is not data:
                body.close()
        return key

    async def download(self, key: str) -> DownloadResult:
        self._require_initialized(key)
        try:
            blob = await self._get_blob(key)
            reader = await asyncio.to_thread(blob.open, "rb")
        except Exception as e:
            raise self._translate_error(e, key, StorageDownloadError) from e
        return DownloadResult(stream=iter_file_chunks(reader), metadata=metadata_from_blob(blob))

    async def delete(self, key: str) -> None:
        self._require_initialized(key)
        bucket, object_name = self._locate(key)
        try:
            await asyncio.to_thread(bucket.blob(object_name).delete)
        except NotFound:
            pass
        except Exception as e:
            raise self._translate_error(e, key, StorageDeleteError, passthrough=()) from e

    async def exists(self, key: str) -> bool:
        self._require_initialized(key)
        try:
            bucket, object_name = self._locate(key)
            return bool(await asyncio.to_thread(bucket.blob(object_name).exists))
        except Exception as e:
            return self._exists_failure(e, key)

    async def get_metadata(self, key: str) -> StorageMetadata:
        self._require_initialized(key)
        try:
            blob = await self._get_blob(key)
        except Exception as e:
            raise self._translate_error(e, key, StorageDownloadError) from e
        return metadata_from_blob(blob)

    async def get_signed_url(self, key: str, options: SignedUrlOptions) -> str:
        self._require_initialized(key)
        bucket_name, object_name = self._split_path(self._object_path(validate_key(key, self.name)), key)
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=options.ttl_sec)
        request = {
            "bucket_name": bucket_name,
            "object_name": object_name,
            "method": options.method.value,
            "expires_at": expires_at.isoformat(),
        }
        try:
            response = await self._http.post(
                f"{self._sidecar_endpoint}/object-storage/signed-object-url", json=request
            )
        except httpx.HTTPError as e:
            raise self._error(StorageConnectionError, f"Failed to reach storage sidecar: {e}", key=key, cause=e) from e

        if not response.is_success:
            raise self._error(
                StorageConnectionError,
                f"Failed to sign object URL, errorcode: {response.status_code}",
                key=key,
            )
        try:
            return response.json()["signed_url"]
        except (ValueError, KeyError) as e:
            raise self._error(
                StorageConnectionError, "Storage sidecar returned an invalid signing response", key=key, cause=e
            ) from e

    async def list(self, options: ListOptions | None = None) -> ListResult:
        self._require_initialized()
        options = options or ListOptions()
        prefix = options.prefix

        if prefix.startswith("/"):
            bucket_name, _, object_prefix = prefix[1:].partition("/")
            root_prefix = None
            namespace = None
        else:
            namespace = explicit_namespace(prefix) or self.default_namespace
            bucket_name, _, root_dir = self._root_dir(namespace, prefix)[1:].partition("/")
            root_prefix = f"{root_dir}/" if root_dir else ""
            object_prefix = f"{root_prefix}{strip_namespace(prefix)}"

        def _first_page():
            iterator = self._gcs_client.list_blobs(
                bucket_name,
                prefix=object_prefix or None,
                max_results=options.max_results,
                page_token=options.cursor,
            )
            page = next(iterator.pages, None)
            return list(page or []), iterator.next_page_token

        try:
            blobs, next_cursor = await asyncio.to_thread(_first_page)
        except Exception as e:
            raise self._translate_error(
                e, prefix, StorageConnectionError, passthrough=(StorageNotFoundError, StoragePermissionError)
            ) from e

        objects = []
        for blob in blobs:
            if namespace is None:
                key = f"/{bucket_name}/{blob.name}"
            else:
                key = with_namespace(namespace, blob.name[len(root_prefix):])
            objects.append(StorageObject(key=key, metadata=metadata_from_blob(blob)))
        return ListResult(objects=objects, next_cursor=next_cursor)

    async def copy(self, source_key: str, destination_key: str) -> None:
        self._require_initialized(source_key)
        source_bucket, source_name = self._locate(source_key)
        destination_bucket, destination_name = self._locate(destination_key)
        try:
            copied = await asyncio.to_thread(
                source_bucket.copy_blob,
                source_bucket.blob(source_name),
                destination_bucket,
                destination_name,
            )
            policy = _policy_from_blob(copied)
            if policy is not None:
                await asyncio.to_thread(
                    _write_policy, copied, policy_for_destination(policy, destination_key)
                )
        except Exception as e:
            raise self._translate_error(e, source_key, StorageUploadError) from e

    async def _apply_visibility(self, key: str, visibility: ObjectVisibility) -> None:
        try:
            blob = await self._get_blob(key)
            policy = _policy_from_blob(blob) or ObjectAclPolicy()
            policy.visibility = visibility
            await asyncio.to_thread(_write_policy, blob, policy)
        except Exception as e:
            raise self._translate_error(e, key, StoragePermissionError) from e

    async def get_acl_policy(self, key: str) -> ObjectAclPolicy | None:
        self._require_initialized(key)
        try:
            blob = await self._get_blob(key)
        except StorageNotFoundError:
            return None
        except Exception as e:
            raise self._translate_error(e, key, StorageDownloadError) from e
        return _policy_from_blob(blob)

    async def set_acl_policy(self, key: str, policy: ObjectAclPolicy) -> None:
        self._require_initialized(key)
        try:
            blob = await self._get_blob(key)
            await asyncio.to_thread(_write_policy, blob, policy)
        except Exception as e:
            raise self._translate_error(e, key, StoragePermissionError) from e

    def get_public_url(self, key: str) -> str | None:
        # Buckets are never publicly readable; objects are served through signed URLs.
        return None

    def normalize_entity_path(self, raw_path: str) -> str:
        path = raw_path
        if path.startswith(f"{GCS_PUBLIC_URL_BASE}/"):
            path = path[len(GCS_PUBLIC_URL_BASE):].split("?", 1)[0]
        if not path.startswith("/"):
            return path

        if self._private_object_dir and path.startswith(f"{self._private_object_dir}/"):
            return with_namespace(Namespace.PRIVATE, path[len(self._private_object_dir) + 1:])
        if self._public_search_paths and path.startswith(f"{self._public_search_paths[0]}/"):
            return with_namespace(Namespace.PUBLIC, path[len(self._public_search_paths[0]) + 1:])
        return path

    async def search_public_object(self, file_path: str) -> StorageObject | None:
        self._require_initialized(file_path)
        name = strip_namespace(file_path).lstrip("/")
        for index, search_path in enumerate(self._public_search_paths):
            full_path = f"{search_path}/{name}"
            bucket_name, object_name = self._split_path(full_path, file_path)
            try:
                blob = await asyncio.to_thread(self._gcs_client.bucket(bucket_name).get_blob, object_name)
            except Exception as e:
                raise self._translate_error(e, file_path, StorageDownloadError) from e
            if blob is None:
                continue
            key = with_namespace(Namespace.PUBLIC, name) if index == 0 else full_path
            return StorageObject(key=key, metadata=metadata_from_blob(blob))
        return None

    def _classify_error(self, error: Exception) -> type[StorageError] | None:
        return classify_gcs_error(error)


def _policy_from_blob(blob) -> ObjectAclPolicy | None:
    raw = (blob.metadata or {}).get(ACL_POLICY_METADATA_KEY)
    if not raw:
        return None
    try:
        data = json.loads(raw)
        if "owner" in data and "allowedUsers" not in data:
            data["allowedUsers"] = [data["owner"]]
        return ObjectAclPolicy.from_dict(data)
    except (ValueError, TypeError, AttributeError) as e:
        log.warning("[%s] Ignoring unreadable ACL policy on %s: %s", ReplitStorageProvider.name, blob.name, e)
        return None


def _write_policy(blob, policy: ObjectAclPolicy) -> None:
    metadata = dict(blob.metadata or {})
    metadata[ACL_POLICY_METADATA_KEY] = json.dumps(policy.to_dict())
    blob.metadata = metadata
    blob.patch()
