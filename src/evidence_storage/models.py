"""Value types shared by every storage provider and its callers."""

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class StorageProviderType(str, Enum):
    LOCAL = "local"
    S3 = "s3"
    AZURE_BLOB = "azure_blob"
    GCS = "gcs"
    REPLIT = "replit"


class ObjectVisibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


class ObjectPermission(str, Enum):
    READ = "read"
    WRITE = "write"
    DELETE = "delete"


class SignedUrlMethod(str, Enum):
    GET = "GET"
    PUT = "PUT"
    DELETE = "DELETE"
    HEAD = "HEAD"


@dataclass
class StorageMetadata:
    """Backend-reported descriptor of a stored object.

    ``size`` and ``last_modified`` always come from the backend; they are never
    computed or cached by this package.
    """

    content_type: str | None = None
    size: int | None = None
    last_modified: datetime | None = None
    etag: str | None = None
    custom_metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class StorageObject:
    """A logical key paired with its metadata, as returned by list and search."""

    key: str
    metadata: StorageMetadata = field(default_factory=StorageMetadata)


@dataclass
class UploadOptions:
    content_type: str | None = None
    metadata: dict[str, str] | None = None
    is_public: bool = False


@dataclass
class DownloadOptions:
    cache_ttl_sec: int | None = None


@dataclass
class SignedUrlOptions:
    method: SignedUrlMethod = SignedUrlMethod.GET
    ttl_sec: int = 900
    # Only enforced for PUT.
    content_type: str | None = None

    def __post_init__(self):
        self.method = SignedUrlMethod(self.method)
        if self.ttl_sec <= 0:
            raise ValueError("ttl_sec must be positive")


@dataclass
class ListOptions:
    prefix: str = ""
    max_results: int | None = None
    cursor: str | None = None


@dataclass
class ListResult:
    objects: list[StorageObject] = field(default_factory=list)
    # None means the listing is complete.
    next_cursor: str | None = None


@dataclass
class ObjectAclPolicy:
    """Access policy for a single object.

    Visibility is the coarse gate; the allow-lists only narrow access for
    private objects.
    """

    visibility: ObjectVisibility = ObjectVisibility.PRIVATE
    allowed_users: list[str] = field(default_factory=list)
    allowed_roles: list[str] = field(default_factory=list)

    def __post_init__(self):
        self.visibility = ObjectVisibility(self.visibility)

    def to_dict(self) -> dict[str, Any]:
        return {
            "visibility": self.visibility.value,
            "allowedUsers": list(self.allowed_users),
            "allowedRoles": list(self.allowed_roles),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ObjectAclPolicy":
        return cls(
            visibility=ObjectVisibility(data.get("visibility", ObjectVisibility.PRIVATE.value)),
            allowed_users=list(data.get("allowedUsers") or []),
            allowed_roles=list(data.get("allowedRoles") or []),
        )

    def copy(self) -> "ObjectAclPolicy":
        return ObjectAclPolicy(
            visibility=self.visibility,
            allowed_users=list(self.allowed_users),
            allowed_roles=list(self.allowed_roles),
        )


@dataclass
class UploadUrl:
    upload_url: str
    object_key: str


@dataclass
class DownloadResult:
    """An open download: a chunk stream plus the object's metadata.

    The stream must be consumed (or closed) by the caller; it holds an open
    backend response until then.
    """

    stream: AsyncIterator[bytes]
    metadata: StorageMetadata

    async def read(self) -> bytes:
        """Drain the stream into memory. Only for objects known to be small."""
        return b"".join([chunk async for chunk in self.stream])

    async def aclose(self) -> None:
        aclose = getattr(self.stream, "aclose", None)
        if aclose is not None:
            await aclose()
