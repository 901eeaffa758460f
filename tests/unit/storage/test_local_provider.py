"""Unit tests for the local filesystem storage provider."""

import io
import json
import os

import pytest
import pytest_asyncio

from evidence_storage.exceptions import (
    StorageConfigurationError,
    StorageInvalidKeyError,
    StorageNotFoundError,
    StoragePermissionError,
)
from evidence_storage.models import (
    DownloadOptions,
    ListOptions,
    ObjectAclPolicy,
    ObjectPermission,
    ObjectVisibility,
    SignedUrlMethod,
    SignedUrlOptions,
    UploadOptions,
)
from evidence_storage.providers.local import LocalStorageProvider

PUBLIC_URL_BASE = "http://testserver/storage"


@pytest_asyncio.fixture()
async def provider(tmp_path):
    local = LocalStorageProvider(
        base_path=str(tmp_path / "storage"),
        public_url_base=PUBLIC_URL_BASE,
        signing_secret="test-secret",
    )
    await local.initialize()
    return local


class RecordingSink:
    def __init__(self):
        self.headers = {}
        self.chunks = []

    def set_header(self, name, value):
        self.headers[name] = value

    async def write(self, chunk):
        self.chunks.append(chunk)


class TestInitialization:
    @pytest.mark.asyncio
    async def test_creates_namespace_directories(self, tmp_path):
        local = LocalStorageProvider(base_path=str(tmp_path / "root"))
        await local.initialize()

        assert os.path.isdir(tmp_path / "root" / "public")
        assert os.path.isdir(tmp_path / "root" / ".private")
        assert local.initialized

    @pytest.mark.asyncio
    async def test_operations_before_initialize_raise_configuration_error(self, tmp_path):
        local = LocalStorageProvider(base_path=str(tmp_path))

        with pytest.raises(StorageConfigurationError) as exc_info:
            await local.upload(".private/a.txt", b"data")

        assert exc_info.value.provider == "Local Filesystem Storage"

    @pytest.mark.asyncio
    async def test_health_check_passes_for_writable_directory(self, provider):
        assert await provider.health_check() is True

    def test_empty_base_path_is_rejected(self):
        with pytest.raises(StorageConfigurationError):
            LocalStorageProvider(base_path="")


class TestRoundTrip:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("key", "payload", "content_type"),
        [
            (".private/reports/r1.json", b'{"ok": true}', "application/json"),
            ("public/images/logo.png", b"\x89PNG\r\n\x1a\n", "image/png"),
            ("notes/plain.txt", b"", "text/plain"),
        ],
    )
    async def test_download_returns_uploaded_bytes_and_content_type(self, provider, key, payload, content_type):
        await provider.upload(key, payload, UploadOptions(content_type=content_type))
        result = await provider.download(key)

        assert await result.read() == payload
        assert result.metadata.content_type == content_type
        assert result.metadata.size == len(payload)

    @pytest.mark.asyncio
    async def test_upload_accepts_file_objects_and_iterators(self, provider):
        await provider.upload(".private/file.bin", io.BytesIO(b"from-file"))
        await provider.upload(".private/iter.bin", iter([b"from-", b"iterator"]))

        async def chunks():
            yield b"from-"
            yield b"async"

        await provider.upload(".private/async.bin", chunks())

        assert await (await provider.download(".private/file.bin")).read() == b"from-file"
        assert await (await provider.download(".private/iter.bin")).read() == b"from-iterator"
        assert await (await provider.download(".private/async.bin")).read() == b"from-async"

    @pytest.mark.asyncio
    async def test_upload_overwrites_existing_object(self, provider):
        await provider.upload(".private/doc", b"v1")
        await provider.upload(".private/doc", b"version-2")

        assert await (await provider.download(".private/doc")).read() == b"version-2"

    @pytest.mark.asyncio
    async def test_custom_metadata_is_preserved(self, provider):
        await provider.upload(".private/doc", b"x", UploadOptions(metadata={"case": "42"}))

        metadata = await provider.get_metadata(".private/doc")
        assert metadata.custom_metadata == {"case": "42"}
        assert metadata.last_modified is not None
        assert metadata.etag

    @pytest.mark.asyncio
    async def test_unprefixed_keys_default_to_private_namespace(self, provider):
        await provider.upload("loose.txt", b"data")

        assert os.path.isfile(os.path.join(provider.base_path, ".private", "loose.txt"))
        assert provider.get_public_url("loose.txt") is None

    @pytest.mark.asyncio
    async def test_download_missing_key_raises_not_found(self, provider):
        with pytest.raises(StorageNotFoundError) as exc_info:
            await provider.download(".private/missing")

        assert exc_info.value.key == ".private/missing"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("key", ["", ".private/../escape", "public/a\x00b", ".private/doc.meta.json"])
    async def test_invalid_keys_are_rejected(self, provider, key):
        with pytest.raises(StorageInvalidKeyError):
            await provider.upload(key, b"data")


class TestStreamToResponse:
    @pytest.mark.asyncio
    async def test_writes_chunks_and_headers(self, provider):
        payload = os.urandom(200 * 1024)
        await provider.upload(".private/big.bin", payload, UploadOptions(content_type="application/pdf"))
        sink = RecordingSink()

        await provider.stream_to_response(".private/big.bin", sink, DownloadOptions(cache_ttl_sec=60))

        assert b"".join(sink.chunks) == payload
        assert len(sink.chunks) > 1
        assert sink.headers["Content-Type"] == "application/pdf"
        assert sink.headers["Content-Length"] == str(len(payload))
        assert sink.headers["Cache-Control"] == "private, max-age=60"

    @pytest.mark.asyncio
    async def test_defaults_to_no_store(self, provider):
        await provider.upload(".private/doc", b"data")
        sink = RecordingSink()

        await provider.stream_to_response(".private/doc", sink)

        assert sink.headers["Cache-Control"] == "no-store"


class TestDeleteAndExists:
    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, provider):
        await provider.upload(".private/doc", b"data")

        await provider.delete(".private/doc")
        assert await provider.exists(".private/doc") is False
        await provider.delete(".private/doc")
        assert await provider.exists(".private/doc") is False

    @pytest.mark.asyncio
    async def test_delete_removes_metadata_file(self, provider):
        await provider.upload(".private/doc", b"data")
        path = os.path.join(provider.base_path, ".private", "doc")

        await provider.delete(".private/doc")

        assert not os.path.exists(path + ".meta.json")

    @pytest.mark.asyncio
    async def test_exists_is_false_for_invalid_key(self, provider):
        assert await provider.exists(".private/../etc/passwd") is False


class TestListing:
    @pytest.mark.asyncio
    async def test_pages_through_all_objects_without_repeats(self, provider):
        expected = set()
        for i in range(250):
            key = f".private/batch/item-{i:03d}"
            await provider.upload(key, b"x")
            expected.add(key)
        await provider.upload(".private/other/outside", b"x")

        seen = []
        pages = 0
        cursor = None
        while True:
            result = await provider.list(ListOptions(prefix=".private/batch/", max_results=50, cursor=cursor))
            pages += 1
            seen.extend(obj.key for obj in result.objects)
            cursor = result.next_cursor
            if cursor is None:
                break

        assert pages == 5
        assert len(seen) == len(set(seen)) == 250
        assert set(seen) == expected

    @pytest.mark.asyncio
    async def test_lists_public_namespace_with_prefix_restored(self, provider):
        await provider.upload("public/a.txt", b"a")
        await provider.upload(".private/b.txt", b"b")

        result = await provider.list(ListOptions(prefix="public/"))

        assert [obj.key for obj in result.objects] == ["public/a.txt"]
        assert result.next_cursor is None
        assert result.objects[0].metadata.size == 1

    @pytest.mark.asyncio
    async def test_missing_prefix_directory_lists_nothing(self, provider):
        result = await provider.list(ListOptions(prefix=".private/nothing-here/"))
        assert result.objects == []

    @pytest.mark.asyncio
    async def test_garbage_cursor_is_rejected(self, provider):
        with pytest.raises(StorageInvalidKeyError):
            await provider.list(ListOptions(prefix=".private/", cursor="abc"))


class TestCopyAndVisibility:
    @pytest.mark.asyncio
    async def test_cross_namespace_copy_flips_visibility(self, provider):
        await provider.upload(".private/doc-1", b"hello")

        await provider.copy(".private/doc-1", "public/doc-1")

        assert await provider.exists("public/doc-1") is True
        assert provider.get_public_url("public/doc-1") == f"{PUBLIC_URL_BASE}/public/doc-1"
        assert await provider.exists(".private/doc-1") is True
        assert await (await provider.download(".private/doc-1")).read() == b"hello"
        policy = await provider.get_acl_policy("public/doc-1")
        assert policy.visibility is ObjectVisibility.PUBLIC

    @pytest.mark.asyncio
    async def test_copy_carries_allow_lists(self, provider):
        await provider.upload(".private/doc", b"data")
        await provider.set_acl_policy(
            ".private/doc", ObjectAclPolicy(visibility=ObjectVisibility.PRIVATE, allowed_users=["u1"])
        )

        await provider.copy(".private/doc", ".private/doc-copy")

        copied = await provider.get_acl_policy(".private/doc-copy")
        assert copied.allowed_users == ["u1"]
        assert copied.visibility is ObjectVisibility.PRIVATE

    @pytest.mark.asyncio
    async def test_copy_of_missing_source_raises_not_found(self, provider):
        with pytest.raises(StorageNotFoundError):
            await provider.copy(".private/missing", "public/missing")

    @pytest.mark.asyncio
    async def test_set_visibility_updates_policy_in_place(self, provider):
        await provider.upload(".private/doc", b"data")

        await provider.set_visibility(".private/doc", ObjectVisibility.PUBLIC)

        policy = await provider.get_acl_policy(".private/doc")
        assert policy.visibility is ObjectVisibility.PUBLIC

    @pytest.mark.asyncio
    async def test_set_visibility_on_missing_object_raises_not_found(self, provider):
        with pytest.raises(StorageNotFoundError):
            await provider.set_visibility(".private/missing", ObjectVisibility.PUBLIC)

    @pytest.mark.asyncio
    async def test_policy_survives_reupload(self, provider):
        await provider.upload(".private/doc", b"v1")
        await provider.set_acl_policy(".private/doc", ObjectAclPolicy(allowed_users=["owner"]))

        await provider.upload(".private/doc", b"v2")

        policy = await provider.get_acl_policy(".private/doc")
        assert policy.allowed_users == ["owner"]

    @pytest.mark.asyncio
    async def test_sidecar_holds_camel_case_policy(self, provider):
        await provider.upload(".private/doc", b"data")
        await provider.set_acl_policy(".private/doc", ObjectAclPolicy(allowed_users=["u1"], allowed_roles=["r"]))

        path = os.path.join(provider.base_path, ".private", "doc.meta.json")
        with open(path, encoding="utf-8") as f:
            sidecar = json.load(f)

        assert sidecar["allowedUsers"] == ["u1"]
        assert sidecar["allowedRoles"] == ["r"]
        assert sidecar["visibility"] == "private"


class TestAccessControl:
    @pytest.mark.asyncio
    async def test_private_object_without_policy_is_denied(self, provider):
        assert await provider.can_access(".private/never-uploaded", None, ObjectPermission.READ) is False

    @pytest.mark.asyncio
    async def test_public_upload_is_readable_by_anyone(self, provider):
        await provider.upload("public/logo.png", b"png")

        assert await provider.can_access("public/logo.png", None, ObjectPermission.READ) is True
        assert await provider.can_access("public/logo.png", None, ObjectPermission.WRITE) is False

    @pytest.mark.asyncio
    async def test_private_prefix_wins_over_is_public(self, provider):
        await provider.upload(".private/x", b"data", UploadOptions(is_public=True))

        policy = await provider.get_acl_policy(".private/x")
        assert policy.visibility is ObjectVisibility.PRIVATE
        assert await provider.can_access(".private/x", None, ObjectPermission.READ) is False
        assert await provider.exists(".private/x") is True

    @pytest.mark.asyncio
    async def test_allowed_user_can_write_private_object(self, provider):
        await provider.upload(".private/doc", b"data")
        await provider.set_acl_policy(".private/doc", ObjectAclPolicy(allowed_users=["alice"]))

        assert await provider.can_access(".private/doc", "alice", ObjectPermission.WRITE) is True
        assert await provider.can_access(".private/doc", "bob", ObjectPermission.READ) is False


class TestUrls:
    @pytest.mark.asyncio
    async def test_private_keys_have_no_public_url(self, provider):
        await provider.upload(".private/doc", b"data")
        assert provider.get_public_url(".private/doc") is None

    @pytest.mark.asyncio
    async def test_public_object_made_private_loses_its_public_url(self, provider):
        await provider.upload("public/report.pdf", b"secret")
        assert provider.get_public_url("public/report.pdf") == f"{PUBLIC_URL_BASE}/public/report.pdf"

        await provider.set_visibility("public/report.pdf", ObjectVisibility.PRIVATE)

        assert provider.get_public_url("public/report.pdf") is None
        assert await provider.can_access("public/report.pdf", None, ObjectPermission.READ) is False

    @pytest.mark.asyncio
    async def test_public_url_requires_configured_base(self, tmp_path):
        local = LocalStorageProvider(base_path=str(tmp_path))
        await local.initialize()
        await local.upload("public/a.txt", b"a")

        assert local.get_public_url("public/a.txt") is None
        with pytest.raises(StorageConfigurationError):
            await local.get_signed_url("public/a.txt", SignedUrlOptions())

    @pytest.mark.asyncio
    async def test_signed_url_token_is_bound_to_key_and_method(self, provider):
        url = await provider.get_signed_url(".private/doc", SignedUrlOptions(method=SignedUrlMethod.PUT))
        token = url.split("token=", 1)[1]

        assert url.startswith(f"{PUBLIC_URL_BASE}/objects/.private/doc?token=")
        provider.verify_signed_token(".private/doc", SignedUrlMethod.PUT, token)
        with pytest.raises(StoragePermissionError):
            provider.verify_signed_token(".private/other", SignedUrlMethod.PUT, token)
        with pytest.raises(StoragePermissionError):
            provider.verify_signed_token(".private/doc", SignedUrlMethod.DELETE, token)

    @pytest.mark.asyncio
    async def test_get_token_also_allows_head(self, provider):
        url = await provider.get_signed_url(".private/doc", SignedUrlOptions(method=SignedUrlMethod.GET))
        token = url.split("token=", 1)[1]

        provider.verify_signed_token(".private/doc", SignedUrlMethod.HEAD, token)

    @pytest.mark.asyncio
    async def test_forged_token_is_rejected(self, provider):
        with pytest.raises(StoragePermissionError):
            provider.verify_signed_token(".private/doc", SignedUrlMethod.GET, "not-a-token")
        with pytest.raises(StoragePermissionError):
            provider.verify_signed_token(".private/doc", SignedUrlMethod.GET, None)

    @pytest.mark.asyncio
    async def test_put_token_enforces_content_type(self, provider):
        url = await provider.get_signed_url(
            ".private/doc", SignedUrlOptions(method=SignedUrlMethod.PUT, content_type="image/png")
        )
        token = url.split("token=", 1)[1]

        provider.verify_signed_token(".private/doc", SignedUrlMethod.PUT, token, "image/png")
        with pytest.raises(StoragePermissionError):
            provider.verify_signed_token(".private/doc", SignedUrlMethod.PUT, token, "text/plain")

    @pytest.mark.asyncio
    async def test_upload_url_lives_under_private_prefix(self, provider):
        upload = await provider.get_upload_url("batch-42")

        assert upload.object_key.startswith(".private/batch-42/")
        assert "/objects/.private/batch-42/" in upload.upload_url


class TestEntityPaths:
    @pytest.mark.asyncio
    async def test_filesystem_path_maps_back_to_key(self, provider):
        raw = os.path.join(provider.base_path, ".private", "dir", "doc.txt")
        assert provider.normalize_entity_path(raw) == ".private/dir/doc.txt"

    @pytest.mark.asyncio
    async def test_public_url_maps_back_to_key(self, provider):
        assert provider.normalize_entity_path(f"{PUBLIC_URL_BASE}/public/img/a.png") == "public/img/a.png"

    @pytest.mark.asyncio
    async def test_search_public_object(self, provider):
        await provider.upload("public/img/a.png", b"png")

        found = await provider.search_public_object("img/a.png")
        missing = await provider.search_public_object("img/b.png")

        assert found.key == "public/img/a.png"
        assert found.metadata.size == 3
        assert missing is None
