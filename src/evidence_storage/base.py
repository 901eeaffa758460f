"""Abstract base class for object storage providers."""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod

from .acl import AclOverlay, evaluate_access
from .exceptions import (
    StorageConfigurationError,
    StorageConnectionError,
    StorageError,
    StorageNotFoundError,
    StoragePermissionError,
)
from .keys import Namespace, counterpart_key, namespace_of, slugify_path, strip_namespace, with_namespace
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
from .streams import ResponseSink, UploadSource, response_headers

log = logging.getLogger(__name__)

DEFAULT_UPLOAD_URL_TTL_SEC = 900


class StorageProvider(ABC):
    """Backend-agnostic contract for object storage.

    Keys are logical paths. ``.private/`` and ``public/`` select the namespace
    and therefore the backend bucket or container; providers strip the prefix
    before talking to the backend and add it back to every key they return.
    ``initialize()`` must complete before any other operation.
    """

    name: str = "Storage"
    provider_type: StorageProviderType
    supports_in_place_visibility_change: bool = True
    default_namespace: Namespace = Namespace.PRIVATE

    def __init__(self):
        self._initialized = False
        self._acl = AclOverlay()

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Create clients and missing buckets. A failure leaves the provider unusable."""
        await self._initialize()
        self._initialized = True
        log.info("[%s] Initialized", self.name)

    @abstractmethod
    async def _initialize(self) -> None:
        """Backend-specific setup, called once by initialize()."""

    @abstractmethod
    async def health_check(self) -> bool:
        """Cheap read-only backend probe. Never raises."""

    @abstractmethod
    async def upload(self, key: str, data: UploadSource, options: UploadOptions | None = None) -> str:
        """Store bytes, a file object or a chunk iterator in one write. Returns the key."""

    @abstractmethod
    async def download(self, key: str) -> DownloadResult:
        """Open a chunk stream. Raises StorageNotFoundError if missing."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete a single object. No-op if the key doesn't exist."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Presence check. Connection and permission failures raise, anything else is False."""

    @abstractmethod
    async def get_metadata(self, key: str) -> StorageMetadata:
        """Raises StorageNotFoundError if missing."""

    @abstractmethod
    async def get_signed_url(self, key: str, options: SignedUrlOptions) -> str:
        """Return a time-limited URL for one operation on the key."""

    @abstractmethod
    async def list(self, options: ListOptions | None = None) -> ListResult:
        """List one page of keys under a prefix."""

    @abstractmethod
    async def copy(self, source_key: str, destination_key: str) -> None:
        """Backend-native copy that also carries the source's ACL policy."""

    @abstractmethod
    def get_public_url(self, key: str) -> str | None:
        """Stable unsigned URL for public objects, None otherwise. Never raises."""

    async def close(self) -> None:
        """Release clients held by the provider."""

    async def stream_to_response(
        self,
        key: str,
        sink: ResponseSink,
        options: DownloadOptions | None = None,
    ) -> None:
        result = await self.download(key)
        try:
            for header, value in response_headers(result.metadata, options).items():
                sink.set_header(header, value)
            async for chunk in result.stream:
                await sink.write(chunk)
        finally:
            await result.aclose()

    async def get_upload_url(self, prefix: str | None = None, ttl_sec: int = DEFAULT_UPLOAD_URL_TTL_SEC) -> UploadUrl:
        object_id = uuid.uuid4().hex
        sub_prefix = strip_namespace(prefix).strip("/") if prefix else ""
        name = f"{sub_prefix}/{object_id}" if sub_prefix else object_id
        object_key = with_namespace(Namespace.PRIVATE, name)
        upload_url = await self.get_signed_url(
            object_key,
            SignedUrlOptions(method=SignedUrlMethod.PUT, ttl_sec=ttl_sec),
        )
        return UploadUrl(upload_url=upload_url, object_key=object_key)

    async def set_visibility(self, key: str, visibility: ObjectVisibility) -> None:
        self._require_initialized(key)
        visibility = ObjectVisibility(visibility)
        if not self.supports_in_place_visibility_change:
            current = namespace_of(key, self.default_namespace)
            target = Namespace.for_visibility(visibility)
            if current is not target:
                new_key = counterpart_key(key, target)
                raise self._error(
                    StoragePermissionError,
                    f"{self.name} requires a key change for visibility transitions. "
                    f"Use copy('{key}', '{new_key}') then delete('{key}') to change visibility.",
                    key=key,
                )
        await self._apply_visibility(key, visibility)

    async def _apply_visibility(self, key: str, visibility: ObjectVisibility) -> None:
        self._acl.set_visibility(key, visibility)

    async def get_acl_policy(self, key: str) -> ObjectAclPolicy | None:
        self._require_initialized(key)
        return self._acl.get(key)

    async def set_acl_policy(self, key: str, policy: ObjectAclPolicy) -> None:
        self._require_initialized(key)
        self._acl.set(key, policy)

    async def can_access(self, key: str, user_id: str | None, permission: ObjectPermission) -> bool:
        policy = await self.get_acl_policy(key)
        return evaluate_access(key, policy, user_id, permission)

    def normalize_entity_path(self, raw_path: str) -> str:
        """Translate an absolute backend reference back into a logical key."""
        for root, namespace in self._entity_roots():
            if root and raw_path.startswith(root):
                return with_namespace(namespace, raw_path[len(root):])
        return self._normalize_unknown_path(raw_path)

    def _entity_roots(self) -> list[tuple[str, Namespace]]:
        return []

    def _normalize_unknown_path(self, raw_path: str) -> str:
        return slugify_path(raw_path)

    async def search_public_object(self, file_path: str) -> StorageObject | None:
        public_key = counterpart_key(self.normalize_entity_path(file_path), Namespace.PUBLIC)
        if not await self.exists(public_key):
            return None
        try:
            return StorageObject(key=public_key, metadata=await self.get_metadata(public_key))
        except StorageNotFoundError:
            return None

    def _require_initialized(self, key: str | None = None) -> None:
        if not self._initialized:
            raise self._error(
                StorageConfigurationError,
                f"{self.name} is not initialized. Call initialize() first.",
                key=key,
            )

    def _error(
        self,
        exc_cls: type[StorageError],
        message: str,
        key: str | None = None,
        cause: Exception | None = None,
    ) -> StorageError:
        return exc_cls(message, key=key, provider=self.name, cause=cause)

    def _classify_error(self, error: Exception) -> type[StorageError] | None:
        """Map a backend exception onto the taxonomy, or None when unrecognized."""
        return None

    def _translate_error(
        self,
        error: Exception,
        key: str | None,
        fallback: type[StorageError],
        passthrough: tuple[type[StorageError], ...] = (StorageNotFoundError,),
    ) -> StorageError:
        if isinstance(error, StorageError):
            return error
        exc_cls = self._classify_error(error)
        if exc_cls is None or exc_cls not in passthrough:
            exc_cls = fallback
        level = logging.WARNING if exc_cls is StorageNotFoundError else logging.ERROR
        log.log(level, "[%s] %s for %s: %s", self.name, exc_cls.__name__, key, error)
        return self._error(exc_cls, str(error) or type(error).__name__, key=key, cause=error)

    def _exists_failure(self, error: Exception, key: str) -> bool:
        """Missing objects probe as False; unreachable or unauthorized backends raise."""
        exc_cls = self._classify_error(error)
        if exc_cls in (StorageConnectionError, StoragePermissionError):
            raise self._translate_error(error, key, exc_cls, passthrough=()) from error
        if exc_cls is not StorageNotFoundError:
            log.warning("[%s] Existence check failed for %s: %s", self.name, key, error)
        return False
