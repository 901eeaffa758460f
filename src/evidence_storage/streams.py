"""Bridges between caller byte sources, blocking SDK file objects and async streams."""

import asyncio
import io
import tempfile
from collections.abc import AsyncIterable, AsyncIterator, Iterable, Iterator
from typing import BinaryIO, Protocol, Union, runtime_checkable

from .models import DownloadOptions, StorageMetadata

DEFAULT_CHUNK_SIZE = 64 * 1024
SPOOL_MAX_MEMORY = 8 * 1024 * 1024
DEFAULT_CONTENT_TYPE = "application/octet-stream"

UploadSource = Union[bytes, bytearray, memoryview, BinaryIO, Iterable[bytes], AsyncIterable[bytes]]


@runtime_checkable
class ResponseSink(Protocol):
    """Transport-level destination for stream_to_response."""

    def set_header(self, name: str, value: str) -> None: ...

    async def write(self, chunk: bytes) -> None: ...


def _is_bytes_like(data) -> bool:
    return isinstance(data, (bytes, bytearray, memoryview))


def _is_file_like(data) -> bool:
    return hasattr(data, "read") and callable(data.read)


async def iter_upload_source(data: UploadSource, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncIterator[bytes]:
    """Present any supported upload source as one async chunk stream."""
    if _is_bytes_like(data):
        view = memoryview(data)
        for offset in range(0, len(view), chunk_size):
            yield bytes(view[offset:offset + chunk_size])
        return

    if _is_file_like(data):
        while True:
            chunk = await asyncio.to_thread(data.read, chunk_size)
            if not chunk:
                return
            yield bytes(chunk)

    if isinstance(data, AsyncIterable):
        async for chunk in data:
            if chunk:
                yield bytes(chunk)
        return

    if isinstance(data, Iterable):
        for chunk in data:
            if chunk:
                yield bytes(chunk)
        return

    raise TypeError(f"Unsupported upload source: {type(data).__name__}")


async def spool_upload_source(data: UploadSource) -> BinaryIO:
    """Return a readable file object positioned at the start of the payload.

    Bytes are wrapped, file objects pass through untouched and iterators are
    drained into a temporary file that moves to disk past SPOOL_MAX_MEMORY.
    """
    if _is_bytes_like(data):
        return io.BytesIO(bytes(data))
    if _is_file_like(data):
        return data

    spool = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_MEMORY)
    try:
        async for chunk in iter_upload_source(data):
            await asyncio.to_thread(spool.write, chunk)
        await asyncio.to_thread(spool.seek, 0)
    except BaseException:
        spool.close()
        raise
    return spool


async def iter_file_chunks(fileobj, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncIterator[bytes]:
    """Read a blocking file object chunk by chunk in worker threads, closing it at the end."""
    try:
        while True:
            chunk = await asyncio.to_thread(fileobj.read, chunk_size)
            if not chunk:
                break
            yield chunk
    finally:
        close = getattr(fileobj, "close", None)
        if close is not None:
            await asyncio.to_thread(close)


async def iter_blocking_iterator(iterator: Iterator[bytes]) -> AsyncIterator[bytes]:
    """Pull from a blocking iterator one item at a time in worker threads."""
    sentinel = object()
    while True:
        chunk = await asyncio.to_thread(next, iterator, sentinel)
        if chunk is sentinel:
            break
        if chunk:
            yield chunk


def response_headers(metadata: StorageMetadata, options: DownloadOptions | None = None) -> dict[str, str]:
    headers = {"Content-Type": metadata.content_type or DEFAULT_CONTENT_TYPE}
    if metadata.size is not None:
        headers["Content-Length"] = str(metadata.size)
    if options is not None and options.cache_ttl_sec is not None:
        headers["Cache-Control"] = f"private, max-age={options.cache_ttl_sec}"
    else:
        headers["Cache-Control"] = "no-store"
    return headers
