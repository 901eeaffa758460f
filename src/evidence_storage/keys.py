"""Logical key namespaces and their mapping onto backend object names."""

import posixpath
import re
from enum import Enum

from .exceptions import StorageInvalidKeyError
from .models import ObjectVisibility

PRIVATE_PREFIX = ".private/"
PUBLIC_PREFIX = "public/"

_SLUG_INVALID = re.compile(r"[^a-z0-9\-_/.]")
_REPEATED_SLASHES = re.compile(r"/+")


class Namespace(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"

    @property
    def prefix(self) -> str:
        return PUBLIC_PREFIX if self is Namespace.PUBLIC else PRIVATE_PREFIX

    @property
    def visibility(self) -> ObjectVisibility:
        return ObjectVisibility.PUBLIC if self is Namespace.PUBLIC else ObjectVisibility.PRIVATE

    @property
    def other(self) -> "Namespace":
        return Namespace.PRIVATE if self is Namespace.PUBLIC else Namespace.PUBLIC

    @classmethod
    def for_visibility(cls, visibility: ObjectVisibility) -> "Namespace":
        return cls.PUBLIC if ObjectVisibility(visibility) is ObjectVisibility.PUBLIC else cls.PRIVATE


def explicit_namespace(key: str) -> Namespace | None:
    """Return the namespace named by the key's prefix, or None for unprefixed keys."""
    if key.startswith(PRIVATE_PREFIX):
        return Namespace.PRIVATE
    if key.startswith(PUBLIC_PREFIX):
        return Namespace.PUBLIC
    return None


def namespace_of(key: str, default: Namespace = Namespace.PRIVATE) -> Namespace:
    return explicit_namespace(key) or default


def strip_namespace(key: str) -> str:
    if key.startswith(PRIVATE_PREFIX):
        return key[len(PRIVATE_PREFIX):]
    if key.startswith(PUBLIC_PREFIX):
        return key[len(PUBLIC_PREFIX):]
    return key


def with_namespace(namespace: Namespace, name: str) -> str:
    return f"{namespace.prefix}{name.lstrip('/')}"


def counterpart_key(key: str, target: Namespace) -> str:
    """The key the same object would have in *target*'s namespace."""
    return with_namespace(target, strip_namespace(key))


def validate_key(key: str, provider: str | None = None) -> str:
    """Reject keys that cannot safely address an object."""
    if not key or not key.strip():
        raise StorageInvalidKeyError("Object key must not be empty", key=key, provider=provider)
    if "\x00" in key:
        raise StorageInvalidKeyError("Object key must not contain NUL bytes", key=key, provider=provider)
    if ".." in key.replace("\\", "/").split("/"):
        raise StorageInvalidKeyError("Object key must not contain '..' segments", key=key, provider=provider)
    return key


def safe_relative_path(name: str) -> str:
    """Normalize a backend object name for use under a filesystem root."""
    normalized = posixpath.normpath("/" + name.replace("\\", "/")).lstrip("/")
    return "" if normalized == "." else normalized


def slugify_path(raw_path: str) -> str:
    """Lowercase a path and replace characters outside ``[a-z0-9-_/.]``."""
    path = _SLUG_INVALID.sub("-", raw_path.lower())
    path = _REPEATED_SLASHES.sub("/", path)
    return path.strip("/")
