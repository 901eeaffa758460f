"""Tests for upload source adapters, download streams and response headers."""

import io

import pytest

from evidence_storage.models import DownloadOptions, SignedUrlOptions, StorageMetadata
from evidence_storage.streams import (
    iter_blocking_iterator,
    iter_file_chunks,
    iter_upload_source,
    response_headers,
    spool_upload_source,
)


async def _collect(stream) -> list[bytes]:
    return [chunk async for chunk in stream]


async def _agen(chunks):
    for chunk in chunks:
        yield chunk


class TestIterUploadSource:
    @pytest.mark.asyncio
    async def test_bytes_are_chunked(self):
        assert await _collect(iter_upload_source(b"abcdefg", chunk_size=3)) == [b"abc", b"def", b"g"]

    @pytest.mark.asyncio
    async def test_file_objects_are_read_in_chunks(self):
        assert await _collect(iter_upload_source(io.BytesIO(b"abcd"), chunk_size=2)) == [b"ab", b"cd"]

    @pytest.mark.asyncio
    async def test_sync_and_async_iterables_skip_empty_chunks(self):
        assert await _collect(iter_upload_source([b"a", b"", b"b"])) == [b"a", b"b"]
        assert await _collect(iter_upload_source(_agen([b"a", b"", bytearray(b"b")]))) == [b"a", b"b"]

    @pytest.mark.asyncio
    async def test_unsupported_source(self):
        with pytest.raises(TypeError):
            await _collect(iter_upload_source(42))


class TestSpoolUploadSource:
    @pytest.mark.asyncio
    async def test_file_objects_pass_through(self):
        source = io.BytesIO(b"data")

        assert await spool_upload_source(source) is source

    @pytest.mark.asyncio
    async def test_iterators_are_spooled_and_rewound(self):
        spool = await spool_upload_source(_agen([b"part-1,", b"part-2"]))
        try:
            assert spool.read() == b"part-1,part-2"
        finally:
            spool.close()

    @pytest.mark.asyncio
    async def test_bytes_are_wrapped(self):
        assert (await spool_upload_source(memoryview(b"xyz"))).read() == b"xyz"


class TestDownloadStreams:
    @pytest.mark.asyncio
    async def test_iter_file_chunks_closes_file(self):
        source = io.BytesIO(b"abcde")

        assert await _collect(iter_file_chunks(source, chunk_size=2)) == [b"ab", b"cd", b"e"]
        assert source.closed

    @pytest.mark.asyncio
    async def test_iter_blocking_iterator(self):
        assert await _collect(iter_blocking_iterator(iter([b"a", b"", b"b"]))) == [b"a", b"b"]


class TestResponseHeaders:
    def test_defaults_to_no_store(self):
        headers = response_headers(StorageMetadata(size=3))

        assert headers == {
            "Content-Type": "application/octet-stream",
            "Content-Length": "3",
            "Cache-Control": "no-store",
        }

    def test_cache_ttl_is_private(self):
        headers = response_headers(StorageMetadata(content_type="image/png"), DownloadOptions(cache_ttl_sec=60))

        assert headers["Cache-Control"] == "private, max-age=60"
        assert headers["Content-Type"] == "image/png"
        assert "Content-Length" not in headers

    def test_zero_ttl_is_still_explicit(self):
        headers = response_headers(StorageMetadata(), DownloadOptions(cache_ttl_sec=0))

        assert headers["Cache-Control"] == "private, max-age=0"


class TestSignedUrlOptions:
    def test_rejects_non_positive_ttl(self):
        with pytest.raises(ValueError):
            SignedUrlOptions(ttl_sec=0)

    def test_method_is_coerced(self):
        assert SignedUrlOptions(method="PUT").method.value == "PUT"
