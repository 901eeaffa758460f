"""
FastAPI integration: provider dependency, streaming responses and the router
that serves signed URLs and public objects for the local filesystem provider.
"""

import logging

from fastapi import APIRouter, HTTPException, Query, Request, Response, status
from fastapi.responses import StreamingResponse

from .base import StorageProvider
from .exceptions import StorageError, StorageErrorCode, StorageNotFoundError
from .keys import Namespace, with_namespace
from .models import DownloadOptions, ObjectPermission, SignedUrlMethod, UploadOptions
from .providers.local import LocalStorageProvider
from .streams import response_headers

log = logging.getLogger(__name__)

PUBLIC_OBJECT_CACHE_TTL_SEC = 3600

_STATUS_BY_CODE = {
    StorageErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    StorageErrorCode.PERMISSION_DENIED: status.HTTP_403_FORBIDDEN,
    StorageErrorCode.INVALID_KEY: status.HTTP_400_BAD_REQUEST,
    StorageErrorCode.UPLOAD_FAILED: status.HTTP_502_BAD_GATEWAY,
    StorageErrorCode.DOWNLOAD_FAILED: status.HTTP_502_BAD_GATEWAY,
    StorageErrorCode.DELETE_FAILED: status.HTTP_502_BAD_GATEWAY,
    StorageErrorCode.CONNECTION_ERROR: status.HTTP_503_SERVICE_UNAVAILABLE,
    StorageErrorCode.CONFIGURATION_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
    StorageErrorCode.PROVIDER_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def storage_error_status(error: StorageError) -> int:
    return _STATUS_BY_CODE.get(error.code, status.HTTP_500_INTERNAL_SERVER_ERROR)


def get_storage_provider(request: Request) -> StorageProvider:
    """FastAPI dependency returning the provider stored on ``app.state``."""
    provider = getattr(request.app.state, "storage_provider", None)
    if provider is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Storage provider not initialized",
        )
    return provider


async def streaming_response(
    provider: StorageProvider,
    key: str,
    options: DownloadOptions | None = None,
) -> StreamingResponse:
    """Stream an object to the client with content and cache headers set."""
    result = await provider.download(key)
    headers = response_headers(result.metadata, options)
    media_type = headers.pop("Content-Type")
    return StreamingResponse(result.stream, media_type=media_type, headers=headers)


def _http_error(error: StorageError) -> HTTPException:
    return HTTPException(status_code=storage_error_status(error), detail=error.message)


def create_local_storage_router(provider: LocalStorageProvider) -> APIRouter:
    """Router that turns local signed URLs and public URLs into real endpoints.

    Mount it at the path configured as the provider's ``public_url_base``.
    """
    router = APIRouter()

    @router.put("/objects/{key:path}")
    async def put_object(key: str, request: Request, token: str | None = Query(None)):
        content_type = request.headers.get("content-type")
        try:
            provider.verify_signed_token(key, SignedUrlMethod.PUT, token, content_type)
            await provider.upload(key, request.stream(), UploadOptions(content_type=content_type))
        except StorageError as e:
            log.warning("[LocalStorageRouter] PUT %s rejected: %s", key, e)
            raise _http_error(e) from e
        return Response(status_code=status.HTTP_200_OK)

    @router.head("/objects/{key:path}")
    async def head_object(key: str, token: str | None = Query(None)):
        try:
            provider.verify_signed_token(key, SignedUrlMethod.HEAD, token)
            metadata = await provider.get_metadata(key)
        except StorageError as e:
            raise _http_error(e) from e
        return Response(status_code=status.HTTP_200_OK, headers=response_headers(metadata))

    @router.get("/objects/{key:path}")
    async def get_object(key: str, token: str | None = Query(None)):
        try:
            provider.verify_signed_token(key, SignedUrlMethod.GET, token)
            return await streaming_response(provider, key)
        except StorageError as e:
            log.warning("[LocalStorageRouter] GET %s rejected: %s", key, e)
            raise _http_error(e) from e

    @router.delete("/objects/{key:path}")
    async def delete_object(key: str, token: str | None = Query(None)):
        try:
            provider.verify_signed_token(key, SignedUrlMethod.DELETE, token)
            await provider.delete(key)
        except StorageError as e:
            log.warning("[LocalStorageRouter] DELETE %s rejected: %s", key, e)
            raise _http_error(e) from e
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @router.get(f"/{provider.public_bucket}/{{name:path}}")
    async def get_public_object(name: str):
        key = with_namespace(Namespace.PUBLIC, name)
        try:
            # Private objects are reported as missing to anonymous callers.
            if not await provider.can_access(key, None, ObjectPermission.READ):
                raise StorageNotFoundError(f"Object not found: {key}", key=key, provider=provider.name)
            return await streaming_response(
                provider, key, DownloadOptions(cache_ttl_sec=PUBLIC_OBJECT_CACHE_TTL_SEC)
            )
        except StorageError as e:
            raise _http_error(e) from e

    return router
