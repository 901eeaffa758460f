"""
Local filesystem storage provider.

Objects live under ``<base_path>/<public_bucket>/`` or
``<base_path>/<private_bucket>/``. Every object file ``<name>`` has a sidecar
``<name>.meta.json`` holding its content type, custom metadata, upload time
and ACL policy; the sidecar is the only source of visibility for this
provider. Intended for development and self-hosted deployments.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import os
import secrets
import shutil
import uuid
from datetime import datetime, timedelta, timezone
from urllib.parse import quote

import jwt

from ..acl import policy_for_destination
from ..base import StorageProvider
from ..config import DEFAULT_LOCAL_PRIVATE_DIR, DEFAULT_PUBLIC_BUCKET, LocalStorageConfig
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
from ..keys import Namespace, explicit_namespace, safe_relative_path, strip_namespace, validate_key, with_namespace
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
from ..streams import DEFAULT_CONTENT_TYPE, UploadSource, iter_file_chunks, iter_upload_source

log = logging.getLogger(__name__)

SIDECAR_SUFFIX = ".meta.json"
PARTIAL_SUFFIX = ".partial"
TOKEN_ALGORITHM = "HS256"


class LocalStorageProvider(StorageProvider):
    """Storage provider backed by a directory tree."""

    name = "Local Filesystem Storage"
    provider_type = StorageProviderType.LOCAL
    supports_in_place_visibility_change = True

    def __init__(
        self,
        base_path: str = "./data/storage",
        public_url_base: str | None = None,
        public_bucket: str | None = None,
        private_bucket: str | None = None,
        signing_secret: str | None = None,
    ):
        super().__init__()
        if not base_path:
            raise StorageConfigurationError("base_path cannot be empty", provider=self.name)
        self._base_path = os.path.abspath(base_path)
        self._public_url_base = public_url_base.rstrip("/") if public_url_base else None
        self._public_bucket = public_bucket or DEFAULT_PUBLIC_BUCKET
        self._private_bucket = private_bucket or DEFAULT_LOCAL_PRIVATE_DIR
        self._signing_secret = signing_secret or secrets.token_urlsafe(32)

    @classmethod
    def from_config(cls, config: LocalStorageConfig) -> "LocalStorageProvider":
        return cls(
            base_path=config.base_path,
            public_url_base=config.public_url_base,
            public_bucket=config.public_bucket,
            private_bucket=config.private_bucket,
            signing_secret=config.signing_secret,
        )

    @property
    def base_path(self) -> str:
        return self._base_path

    @property
    def public_bucket(self) -> str:
        return self._public_bucket

    async def _initialize(self) -> None:
        for namespace in Namespace:
            root = self._root(namespace)
            try:
                await asyncio.to_thread(os.makedirs, root, exist_ok=True)
            except OSError as e:
                raise self._error(
                    StorageConfigurationError, f"Could not create storage directory '{root}': {e}", cause=e
                ) from e
        log.info("[%s] Storing objects under %s", self.name, self._base_path)

    async def health_check(self) -> bool:
        try:
            return await asyncio.to_thread(os.access, self._base_path, os.R_OK | os.W_OK)
        except OSError as e:
            log.warning("[%s] Health check failed: %s", self.name, e)
            return False

    def _root(self, namespace: Namespace) -> str:
        bucket = self._public_bucket if namespace is Namespace.PUBLIC else self._private_bucket
        return os.path.join(self._base_path, bucket)

    def _resolve(self, namespace: Namespace, name: str, key: str | None = None) -> str:
        relative = safe_relative_path(name)
        if not relative or relative.endswith(SIDECAR_SUFFIX) or relative.endswith(PARTIAL_SUFFIX):
            raise self._error(StorageInvalidKeyError, f"Invalid object key: {key or name!r}", key=key or name)
        root = self._root(namespace)
        path = os.path.join(root, *relative.split("/"))
        if not path.startswith(root + os.sep):
            raise self._error(StorageInvalidKeyError, f"Key escapes storage root: {key or name!r}", key=key or name)
        return path

    def _locate(self, key: str) -> tuple[Namespace, str]:
        """Find the file for a key; unprefixed keys are looked up privately first."""
        validate_key(key, self.name)
        namespace = explicit_namespace(key)
        name = strip_namespace(key)
        if namespace is not None:
            return namespace, self._resolve(namespace, name, key)
        private_path = self._resolve(Namespace.PRIVATE, name, key)
        public_path = self._resolve(Namespace.PUBLIC, name, key)
        if not os.path.isfile(private_path) and os.path.isfile(public_path):
            return Namespace.PUBLIC, public_path
        return Namespace.PRIVATE, private_path

    @staticmethod
    def _sidecar_path(path: str) -> str:
        return f"{path}{SIDECAR_SUFFIX}"

    def _load_sidecar(self, path: str) -> dict:
        try:
            with open(self._sidecar_path(path), "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            log.warning("[%s] Unreadable metadata file for %s: %s", self.name, path, e)
            return {}

    def _sidecar_allows_public(self, path: str) -> bool:
        """Objects without a recorded visibility follow their namespace."""
        visibility = self._load_sidecar(path).get("visibility")
        return not visibility or visibility == ObjectVisibility.PUBLIC.value

    def _write_sidecar(self, path: str, data: dict) -> None:
        sidecar = self._sidecar_path(path)
        partial = f"{sidecar}.{uuid.uuid4().hex}{PARTIAL_SUFFIX}"
        with open(partial, "w", encoding="utf-8") as f:
            json.dump(data, f)
        os.replace(partial, sidecar)

    def _stat_metadata(self, path: str, fd: int | None = None) -> StorageMetadata:
        stat = os.fstat(fd) if fd is not None else os.stat(path)
        sidecar = self._load_sidecar(path)
        return StorageMetadata(
            content_type=sidecar.get("contentType") or DEFAULT_CONTENT_TYPE,
            size=stat.st_size,
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            etag=f'"{stat.st_mtime_ns:x}-{stat.st_size:x}"',
            custom_metadata=dict(sidecar.get("metadata") or {}),
        )

    async def upload(self, key: str, data: UploadSource, options: UploadOptions | None = None) -> str:
        self._require_initialized(key)
        options = options or UploadOptions()
        validate_key(key, self.name)
        # An explicit prefix wins over is_public.
        namespace = explicit_namespace(key) or (Namespace.PUBLIC if options.is_public else Namespace.PRIVATE)
        path = self._resolve(namespace, strip_namespace(key), key)
        visibility = namespace.visibility
        partial = f"{path}.{uuid.uuid4().hex}{PARTIAL_SUFFIX}"

        try:
            await asyncio.to_thread(os.makedirs, os.path.dirname(path), exist_ok=True)
            handle = await asyncio.to_thread(open, partial, "wb")
            try:
                async for chunk in iter_upload_source(data):
                    await asyncio.to_thread(handle.write, chunk)
            finally:
                await asyncio.to_thread(handle.close)
            await asyncio.to_thread(os.replace, partial, path)

            previous = await asyncio.to_thread(self._load_sidecar, path)
            sidecar = {
                "contentType": options.content_type or DEFAULT_CONTENT_TYPE,
                "metadata": options.metadata or {},
                "uploadedAt": datetime.now(timezone.utc).isoformat(),
                "visibility": visibility.value,
                "allowedUsers": previous.get("allowedUsers") or [],
                "allowedRoles": previous.get("allowedRoles") or [],
            }
            await asyncio.to_thread(self._write_sidecar, path, sidecar)
        except Exception as e:
            await asyncio.to_thread(_remove_quietly, partial)
            raise self._translate_error(e, key, StorageUploadError, passthrough=()) from e

        log.debug("[%s] Uploaded %s to %s", self.name, key, path)
        return key

    async def download(self, key: str) -> DownloadResult:
        self._require_initialized(key)
        _, path = await asyncio.to_thread(self._locate, key)
        try:
            handle = await asyncio.to_thread(open, path, "rb")
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError) as e:
            raise self._error(StorageNotFoundError, f"Object not found: {key}", key=key, cause=e) from e
        except OSError as e:
            raise self._translate_error(e, key, StorageDownloadError) from e

        try:
            metadata = await asyncio.to_thread(self._stat_metadata, path, handle.fileno())
        except OSError as e:
            await asyncio.to_thread(handle.close)
            raise self._translate_error(e, key, StorageDownloadError) from e
        return DownloadResult(stream=iter_file_chunks(handle), metadata=metadata)

    async def delete(self, key: str) -> None:
        self._require_initialized(key)
        _, path = await asyncio.to_thread(self._locate, key)
        try:
            await asyncio.to_thread(_remove_if_exists, path)
            await asyncio.to_thread(_remove_if_exists, self._sidecar_path(path))
        except OSError as e:
            raise self._translate_error(e, key, StorageDeleteError, passthrough=()) from e
        log.debug("[%s] Deleted %s", self.name, key)

    async def exists(self, key: str) -> bool:
        self._require_initialized(key)
        try:
            _, path = await asyncio.to_thread(self._locate, key)
            return await asyncio.to_thread(os.path.isfile, path)
        except (StorageInvalidKeyError, OSError) as e:
            return self._exists_failure(e, key)

    async def get_metadata(self, key: str) -> StorageMetadata:
        self._require_initialized(key)
        _, path = await asyncio.to_thread(self._locate, key)
        try:
            return await asyncio.to_thread(self._stat_metadata, path)
        except FileNotFoundError as e:
            raise self._error(StorageNotFoundError, f"Object not found: {key}", key=key, cause=e) from e
        except OSError as e:
            raise self._translate_error(e, key, StorageDownloadError) from e

    async def list(self, options: ListOptions | None = None) -> ListResult:
        self._require_initialized()
        options = options or ListOptions()
        prefix = options.prefix or ""
        namespace = explicit_namespace(prefix) or Namespace.PRIVATE
        name_prefix = strip_namespace(prefix).lstrip("/")
        after = _decode_cursor(options.cursor) if options.cursor else None

        try:
            names = await asyncio.to_thread(self._scan, namespace, name_prefix)
        except OSError as e:
            raise self._translate_error(e, prefix, StorageConnectionError) from e

        if after is not None:
            names = [name for name in names if name > after]
        page = names
        next_cursor = None
        if options.max_results and len(names) > options.max_results:
            page = names[: options.max_results]
            next_cursor = _encode_cursor(page[-1])

        objects = []
        for name in page:
            path = self._resolve(namespace, name)
            try:
                metadata = await asyncio.to_thread(self._stat_metadata, path)
            except FileNotFoundError:
                continue
            objects.append(StorageObject(key=with_namespace(namespace, name), metadata=metadata))
        return ListResult(objects=objects, next_cursor=next_cursor)

    def _scan(self, namespace: Namespace, name_prefix: str) -> list[str]:
        root = self._root(namespace)
        start_dir = os.path.join(root, *[p for p in os.path.dirname(name_prefix).split("/") if p])
        if not os.path.isdir(start_dir):
            return []
        names = []
        for directory, _, files in os.walk(start_dir):
            for filename in files:
                if filename.endswith(SIDECAR_SUFFIX) or filename.endswith(PARTIAL_SUFFIX):
                    continue
                relative = os.path.relpath(os.path.join(directory, filename), root).replace(os.sep, "/")
                if relative.startswith(name_prefix):
                    names.append(relative)
        return sorted(names)

    async def copy(self, source_key: str, destination_key: str) -> None:
        self._require_initialized(source_key)
        source_namespace, source_path = await asyncio.to_thread(self._locate, source_key)
        validate_key(destination_key, self.name)
        destination_namespace = explicit_namespace(destination_key) or source_namespace
        destination_path = self._resolve(destination_namespace, strip_namespace(destination_key), destination_key)

        if not await asyncio.to_thread(os.path.isfile, source_path):
            raise self._error(StorageNotFoundError, f"Object not found: {source_key}", key=source_key)

        partial = f"{destination_path}.{uuid.uuid4().hex}{PARTIAL_SUFFIX}"
        try:
            await asyncio.to_thread(os.makedirs, os.path.dirname(destination_path), exist_ok=True)
            await asyncio.to_thread(shutil.copyfile, source_path, partial)
            await asyncio.to_thread(os.replace, partial, destination_path)

            sidecar = await asyncio.to_thread(self._load_sidecar, source_path)
            source_policy = _policy_from_sidecar(sidecar)
            if source_policy is not None:
                sidecar.update(policy_for_destination(source_policy, destination_key).to_dict())
            sidecar.setdefault("contentType", DEFAULT_CONTENT_TYPE)
            await asyncio.to_thread(self._write_sidecar, destination_path, sidecar)
        except Exception as e:
            await asyncio.to_thread(_remove_quietly, partial)
            raise self._translate_error(e, source_key, StorageUploadError) from e
        log.debug("[%s] Copied %s to %s", self.name, source_key, destination_key)

    async def _existing_path(self, key: str) -> str:
        _, path = await asyncio.to_thread(self._locate, key)
        if not await asyncio.to_thread(os.path.isfile, path):
            raise self._error(StorageNotFoundError, f"Object not found: {key}", key=key)
        return path

    async def _apply_visibility(self, key: str, visibility: ObjectVisibility) -> None:
        path = await self._existing_path(key)
        sidecar = await asyncio.to_thread(self._load_sidecar, path)
        sidecar["visibility"] = ObjectVisibility(visibility).value
        await asyncio.to_thread(self._write_sidecar, path, sidecar)

    async def get_acl_policy(self, key: str) -> ObjectAclPolicy | None:
        self._require_initialized(key)
        try:
            _, path = await asyncio.to_thread(self._locate, key)
        except StorageInvalidKeyError:
            return None
        sidecar = await asyncio.to_thread(self._load_sidecar, path)
        return _policy_from_sidecar(sidecar)

    async def set_acl_policy(self, key: str, policy: ObjectAclPolicy) -> None:
        self._require_initialized(key)
        path = await self._existing_path(key)
        sidecar = await asyncio.to_thread(self._load_sidecar, path)
        sidecar.update(policy.to_dict())
        await asyncio.to_thread(self._write_sidecar, path, sidecar)

    async def get_signed_url(self, key: str, options: SignedUrlOptions) -> str:
        self._require_initialized(key)
        if not self._public_url_base:
            raise self._error(
                StorageConfigurationError,
                "Signed URLs are not supported without a public URL base (LOCAL_STORAGE_PUBLIC_URL)",
                key=key,
            )
        validate_key(key, self.name)
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=options.ttl_sec)
        payload = {"key": key, "method": options.method.value, "exp": expires_at}
        if options.method is SignedUrlMethod.PUT and options.content_type:
            payload["contentType"] = options.content_type
        token = jwt.encode(payload, self._signing_secret, algorithm=TOKEN_ALGORITHM)
        return f"{self._public_url_base}/objects/{quote(key, safe='/')}?token={token}"

    def verify_signed_token(
        self,
        key: str,
        method: SignedUrlMethod,
        token: str | None,
        content_type: str | None = None,
    ) -> None:
        """Validate a token issued by get_signed_url for this key and method.

        Raises:
            StoragePermissionError: If the token is missing, expired, forged or
                issued for a different key, method or content type.
        """
        if not token:
            raise self._error(StoragePermissionError, "Missing signed URL token", key=key)
        try:
            payload = jwt.decode(token, self._signing_secret, algorithms=[TOKEN_ALGORITHM])
        except jwt.ExpiredSignatureError as e:
            raise self._error(StoragePermissionError, "Signed URL has expired", key=key, cause=e) from e
        except jwt.InvalidTokenError as e:
            raise self._error(StoragePermissionError, "Invalid signed URL token", key=key, cause=e) from e

        allowed_methods = {payload.get("method")}
        if payload.get("method") == SignedUrlMethod.GET.value:
            allowed_methods.add(SignedUrlMethod.HEAD.value)
        if payload.get("key") != key or SignedUrlMethod(method).value not in allowed_methods:
            raise self._error(StoragePermissionError, "Signed URL does not grant this operation", key=key)

        expected_type = payload.get("contentType")
        if expected_type and (content_type or "").split(";")[0].strip() != expected_type:
            raise self._error(
                StoragePermissionError, f"Signed URL requires Content-Type {expected_type}", key=key
            )

    def get_public_url(self, key: str) -> str | None:
        if not self._public_url_base:
            return None
        try:
            validate_key(key, self.name)
            namespace = explicit_namespace(key)
            if namespace is Namespace.PRIVATE:
                return None
            name = safe_relative_path(strip_namespace(key))
            path = self._resolve(Namespace.PUBLIC, name, key)
            if namespace is None and not os.path.isfile(path):
                return None
            if not self._sidecar_allows_public(path):
                return None
        except (StorageError, OSError):
            return None
        return f"{self._public_url_base}/{self._public_bucket}/{quote(name, safe='/')}"

    def _entity_roots(self) -> list[tuple[str, Namespace]]:
        roots = [
            (self._root(Namespace.PUBLIC) + os.sep, Namespace.PUBLIC),
            (self._root(Namespace.PRIVATE) + os.sep, Namespace.PRIVATE),
        ]
        if self._public_url_base:
            roots.append((f"{self._public_url_base}/{self._public_bucket}/", Namespace.PUBLIC))
        return roots

    def normalize_entity_path(self, raw_path: str) -> str:
        return super().normalize_entity_path(raw_path).replace(os.sep, "/")

    def _normalize_unknown_path(self, raw_path: str) -> str:
        return raw_path

    def _classify_error(self, error: Exception) -> type[StorageError] | None:
        if isinstance(error, FileNotFoundError):
            return StorageNotFoundError
        if isinstance(error, PermissionError):
            return StoragePermissionError
        return None


def _policy_from_sidecar(sidecar: dict) -> ObjectAclPolicy | None:
    if not sidecar.get("visibility"):
        return None
    return ObjectAclPolicy.from_dict(sidecar)


def _encode_cursor(name: str) -> str:
    return base64.urlsafe_b64encode(name.encode("utf-8")).decode("ascii")


def _decode_cursor(cursor: str) -> str:
    try:
        return base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise StorageInvalidKeyError(f"Invalid list cursor: {cursor!r}", provider=LocalStorageProvider.name) from e


def _remove_if_exists(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


def _remove_quietly(path: str) -> None:
    try:
        os.unlink(path)
    except OSError:
        pass
