"""S3-compatible storage provider (AWS S3, MinIO, SeaweedFS)."""

from __future__ import annotations

import asyncio
import logging

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError

from ..base import StorageProvider
from ..config import DEFAULT_PRIVATE_BUCKET, DEFAULT_PUBLIC_BUCKET, S3StorageConfig
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

_ERROR_CODE_MAP = {
    "NoSuchKey": StorageNotFoundError,
    "NoSuchBucket": StorageNotFoundError,
    "NotFound": StorageNotFoundError,
    "404": StorageNotFoundError,
    "AccessDenied": StoragePermissionError,
    "403": StoragePermissionError,
    "InvalidAccessKeyId": StoragePermissionError,
    "SignatureDoesNotMatch": StoragePermissionError,
    "EndpointConnectionError": StorageConnectionError,
}

_PRESIGN_CLIENT_METHODS = {
    SignedUrlMethod.GET: "get_object",
    SignedUrlMethod.PUT: "put_object",
    SignedUrlMethod.DELETE: "delete_object",
    SignedUrlMethod.HEAD: "head_object",
}

_ACL_PUBLIC = "public-read"
_ACL_PRIVATE = "private"


class S3StorageProvider(StorageProvider):
    """S3-compatible provider with one bucket per namespace.

    Visibility is applied through native object ACLs; user allow-lists are an
    in-process overlay the backend never sees.
    """

    name = "AWS S3"
    provider_type = StorageProviderType.S3
    supports_in_place_visibility_change = True

    def __init__(
        self,
        region: str = "us-east-1",
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        endpoint: str | None = None,
        force_path_style: bool = False,
        public_bucket: str | None = None,
        private_bucket: str | None = None,
    ):
        super().__init__()
        self._region = region
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self._endpoint_url = endpoint
        self._force_path_style = force_path_style
        self._buckets = {
            Namespace.PUBLIC: public_bucket or DEFAULT_PUBLIC_BUCKET,
            Namespace.PRIVATE: private_bucket or DEFAULT_PRIVATE_BUCKET,
        }
        self._client = None

    @classmethod
    def from_config(cls, config: S3StorageConfig) -> "S3StorageProvider":
        return cls(
            region=config.region,
            access_key_id=config.access_key_id,
            secret_access_key=config.secret_access_key,
            endpoint=config.endpoint,
            force_path_style=config.force_path_style,
            public_bucket=config.public_bucket,
            private_bucket=config.private_bucket,
        )

    async def _initialize(self) -> None:
        client_config = {
            "region_name": self._region,
            "signature_version": "s3v4",
            "retries": {"max_attempts": 3, "mode": "standard"},
        }
        if self._force_path_style:
            client_config["s3"] = {"addressing_style": "path"}

        kwargs: dict = {"config": Config(**client_config)}
        if self._access_key_id and self._secret_access_key:
            kwargs["aws_access_key_id"] = self._access_key_id
            kwargs["aws_secret_access_key"] = self._secret_access_key
        if self._endpoint_url:
            kwargs["endpoint_url"] = self._endpoint_url

        self._client = boto3.client("s3", **kwargs)
        for bucket in self._buckets.values():
            await asyncio.to_thread(self._ensure_bucket, bucket)

    def _ensure_bucket(self, bucket: str) -> None:
        try:
            self._client.head_bucket(Bucket=bucket)
            return
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code not in ("404", "NoSuchBucket", "NotFound"):
                raise self._error(
                    StorageConfigurationError, f"Cannot access bucket '{bucket}': {e}", cause=e
                ) from e
        except (EndpointConnectionError, NoCredentialsError) as e:
            raise self._error(StorageConfigurationError, f"Cannot reach bucket '{bucket}': {e}", cause=e) from e

        params: dict = {"Bucket": bucket}
        if self._region and self._region != "us-east-1" and not self._endpoint_url:
            params["CreateBucketConfiguration"] = {"LocationConstraint": self._region}
        try:
            self._client.create_bucket(**params)
            log.info("[%s] Created bucket %s", self.name, bucket)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code not in ("BucketAlreadyOwnedByYou", "BucketAlreadyExists"):
                raise self._error(
                    StorageConfigurationError, f"Cannot create bucket '{bucket}': {e}", cause=e
                ) from e

    async def health_check(self) -> bool:
        if self._client is None:
            return False
        try:
            await asyncio.to_thread(
                self._client.list_objects_v2, Bucket=self._buckets[Namespace.PUBLIC], MaxKeys=1
            )
            return True
        except Exception as e:
            log.warning("[%s] Health check failed: %s", self.name, e)
            return False

    def _locate(self, key: str) -> tuple[str, str]:
        validate_key(key, self.name)
        object_key = strip_namespace(key)
        if not object_key:
            raise self._error(StorageInvalidKeyError, f"Key has no object name: {key!r}", key=key)
        return self._buckets[namespace_of(key, self.default_namespace)], object_key

    async def upload(self, key: str, data: UploadSource, options: UploadOptions | None = None) -> str:
        self._require_initialized(key)
        options = options or UploadOptions()
        bucket, object_key = self._locate(key)
        is_public = options.is_public or namespace_of(key, self.default_namespace) is Namespace.PUBLIC

        body = await spool_upload_source(data)
        try:
            params: dict = {
                "Bucket": bucket,
                "Key": object_key,
                "Body": body,
                "ContentType": options.content_type or DEFAULT_CONTENT_TYPE,
                "ACL": _ACL_PUBLIC if is_public else _ACL_PRIVATE,
            }
            if options.metadata:
                params["Metadata"] = options.metadata
            await asyncio.to_thread(self._client.put_object, **params)
        except Exception as e:
            raise self._translate_error(e, key, StorageUploadError, passthrough=()) from e
        finally:
            if body is not data:
                body.close()

        log.debug("[%s] Uploaded %s to %s/%s", self.name, key, bucket, object_key)
        return key

    async def download(self, key: str) -> DownloadResult:
        self._require_initialized(key)
        bucket, object_key = self._locate(key)
        try:
            response = await asyncio.to_thread(self._client.get_object, Bucket=bucket, Key=object_key)
        except Exception as e:
            raise self._translate_error(e, key, StorageDownloadError) from e

        body = response.get("Body")
        if body is None:
            raise self._error(StorageDownloadError, "Empty response body", key=key)
        return DownloadResult(stream=iter_file_chunks(body), metadata=_metadata_from_response(response))

    async def delete(self, key: str) -> None:
        self._require_initialized(key)
        bucket, object_key = self._locate(key)
        try:
            await asyncio.to_thread(self._client.delete_object, Bucket=bucket, Key=object_key)
        except Exception as e:
            translated = self._translate_error(e, key, StorageDeleteError)
            if not isinstance(translated, StorageNotFoundError):
                raise self._error(StorageDeleteError, translated.message, key=key, cause=e) from e
        self._acl.discard(key)

    async def exists(self, key: str) -> bool:
        self._require_initialized(key)
        try:
            bucket, object_key = self._locate(key)
            await asyncio.to_thread(self._client.head_object, Bucket=bucket, Key=object_key)
            return True
        except Exception as e:
            return self._exists_failure(e, key)

    async def get_metadata(self, key: str) -> StorageMetadata:
        self._require_initialized(key)
        bucket, object_key = self._locate(key)
        try:
            response = await asyncio.to_thread(self._client.head_object, Bucket=bucket, Key=object_key)
        except Exception as e:
            raise self._translate_error(e, key, StorageDownloadError) from e
        return _metadata_from_response(response)

    async def get_signed_url(self, key: str, options: SignedUrlOptions) -> str:
        self._require_initialized(key)
        bucket, object_key = self._locate(key)
        params: dict = {"Bucket": bucket, "Key": object_key}
        if options.method is SignedUrlMethod.PUT and options.content_type:
            params["ContentType"] = options.content_type
        try:
            return self._client.generate_presigned_url(
                ClientMethod=_PRESIGN_CLIENT_METHODS[options.method],
                Params=params,
                ExpiresIn=options.ttl_sec,
            )
        except Exception as e:
            raise self._translate_error(e, key, StorageConfigurationError, passthrough=()) from e

    async def list(self, options: ListOptions | None = None) -> ListResult:
        self._require_initialized()
        options = options or ListOptions()
        namespace = namespace_of(options.prefix, self.default_namespace)
        params: dict = {"Bucket": self._buckets[namespace]}
        object_prefix = strip_namespace(options.prefix)
        if object_prefix:
            params["Prefix"] = object_prefix
        if options.max_results:
            params["MaxKeys"] = options.max_results
        if options.cursor:
            params["ContinuationToken"] = options.cursor

        try:
            response = await asyncio.to_thread(self._client.list_objects_v2, **params)
        except Exception as e:
            raise self._translate_error(
                e, options.prefix, StorageConnectionError, passthrough=(StorageNotFoundError, StoragePermissionError)
            ) from e

        objects = [
            StorageObject(
                key=with_namespace(namespace, obj["Key"]),
                metadata=StorageMetadata(
                    size=obj.get("Size"),
                    last_modified=obj.get("LastModified"),
                    etag=obj.get("ETag"),
                ),
            )
            for obj in response.get("Contents", [])
        ]
        next_cursor = response.get("NextContinuationToken") if response.get("IsTruncated", True) else None
        return ListResult(objects=objects, next_cursor=next_cursor)

    async def copy(self, source_key: str, destination_key: str) -> None:
        self._require_initialized(source_key)
        source_bucket, source_object = self._locate(source_key)
        destination_bucket, destination_object = self._locate(destination_key)
        is_destination_public = namespace_of(destination_key, self.default_namespace) is Namespace.PUBLIC

        try:
            await asyncio.to_thread(
                self._client.copy_object,
                Bucket=destination_bucket,
                Key=destination_object,
                CopySource={"Bucket": source_bucket, "Key": source_object},
                ACL=_ACL_PUBLIC if is_destination_public else _ACL_PRIVATE,
            )
        except Exception as e:
            raise self._translate_error(e, source_key, StorageUploadError) from e

        self._acl.copy(source_key, destination_key)
        log.debug("[%s] Copied %s to %s", self.name, source_key, destination_key)

    async def _apply_visibility(self, key: str, visibility: ObjectVisibility) -> None:
        bucket, object_key = self._locate(key)
        try:
            await asyncio.to_thread(
                self._client.put_object_acl,
                Bucket=bucket,
                Key=object_key,
                ACL=_ACL_PUBLIC if visibility is ObjectVisibility.PUBLIC else _ACL_PRIVATE,
            )
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
        return f"{self._bucket_url(Namespace.PUBLIC)}/{strip_namespace(key)}"

    def _bucket_url(self, namespace: Namespace) -> str:
        bucket = self._buckets[namespace]
        if self._endpoint_url:
            return f"{self._endpoint_url.rstrip('/')}/{bucket}"
        return f"https://{bucket}.s3.{self._region}.amazonaws.com"

    def _entity_roots(self) -> list[tuple[str, Namespace]]:
        return [(f"{self._bucket_url(namespace)}/", namespace) for namespace in Namespace]

    def _classify_error(self, error: Exception) -> type[StorageError] | None:
        if isinstance(error, ClientError):
            code = error.response.get("Error", {}).get("Code", "")
            return _ERROR_CODE_MAP.get(code)
        if isinstance(error, (EndpointConnectionError, ConnectionError)):
            return StorageConnectionError
        if isinstance(error, NoCredentialsError):
            return StoragePermissionError
        return None


def _metadata_from_response(response: dict) -> StorageMetadata:
    return StorageMetadata(
        content_type=response.get("ContentType", DEFAULT_CONTENT_TYPE),
        size=response.get("ContentLength"),
        last_modified=response.get("LastModified"),
        etag=response.get("ETag"),
        custom_metadata=response.get("Metadata", {}),
    )
