"""Upload lifecycle API routes."""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query

from reelvault.common.models import (
    AbortUploadRequest,
    CompleteUploadRequest,
    DuplicateCheckResponse,
    ErrorResponse,
    FinalizeUploadRequest,
    FinalizeUploadResponse,
    InitUploadRequest,
    InitUploadResponse,
    PartTarget,
    PartTargetRequest,
)
from reelvault.server.middleware.auth import get_user_id
from reelvault.server.services.container import Services

logger = logging.getLogger("reelvault.server.uploads")


def create_uploads_router(services: Services) -> APIRouter:
    """Create upload router.

    Args:
        services: Service container (usually a lazy proxy)

    Returns:
        FastAPI router
    """
    router = APIRouter(prefix="/api/uploads", tags=["Uploads"])
    errors: dict[int | str, dict[str, Any]] = {
        400: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    }

    @router.post("/init", response_model=InitUploadResponse, responses={**errors, 507: {"model": ErrorResponse}})
    async def init_upload(body: InitUploadRequest, user_id: str = Depends(get_user_id)) -> InitUploadResponse:
        """Reserve quota and open a multi-part upload.

        Content that is already in the library is rejected with 409 and
        ``duplicate: true`` before any bytes are transferred.
        """
        session = await services.uploads.init_upload(
            user_id,
            file_name=body.file_name,
            declared_size=body.size,
            fingerprint=body.fingerprint,
            content_type=body.content_type,
        )
        return InitUploadResponse(
            video_id=session.video_id,
            key=session.object_key,
            bucket=session.bucket,
            upload_id=session.upload_id,
            expires_at=session.expires_at,  # type: ignore[arg-type]
        )

    @router.get("/check", response_model=DuplicateCheckResponse)
    async def check_duplicate(
        fingerprint: str = Query(..., min_length=1, description="Content fingerprint"),
        user_id: str = Depends(get_user_id),
    ) -> DuplicateCheckResponse:
        """Advisory duplicate check; uniqueness is enforced at finalize."""
        lock = await services.dedup.get(user_id, fingerprint)
        return DuplicateCheckResponse(duplicate=lock is not None, video_id=lock.video_id if lock else None)

    @router.post("/part", response_model=PartTarget, responses=errors)
    async def part_target(body: PartTargetRequest, user_id: str = Depends(get_user_id)) -> PartTarget:
        """Signed URL for uploading one part directly to storage."""
        return await services.uploads.get_part_upload_target(user_id, body.key, body.upload_id, body.part_number)

    @router.post("/complete", responses=errors)
    async def complete_upload(body: CompleteUploadRequest, user_id: str = Depends(get_user_id)) -> dict[str, Any]:
        """Assemble uploaded parts. Quota is settled by /finalize."""
        etag = await services.uploads.complete_upload(user_id, body.key, body.upload_id, body.parts)
        return {"ok": True, "key": body.key, "etag": etag}

    @router.post("/abort", responses=errors)
    async def abort_upload(body: AbortUploadRequest, user_id: str = Depends(get_user_id)) -> dict[str, Any]:
        """Cancel an upload and release its reservation. Idempotent."""
        session = await services.uploads.abort_upload(user_id, body.key, body.upload_id)
        return {"ok": True, "state": session.state.value, "released_bytes": session.size_bytes}

    @router.post("/finalize", response_model=FinalizeUploadResponse, responses=errors)
    async def finalize_upload(
        body: FinalizeUploadRequest, user_id: str = Depends(get_user_id)
    ) -> FinalizeUploadResponse:
        """Commit the upload into the library."""
        session = await services.uploads.finalize_upload(
            user_id,
            body.key,
            fingerprint=body.fingerprint,
            original_name=body.original_name,
            content_type=body.content_type,
        )
        return FinalizeUploadResponse(video_id=session.video_id)

    return router
