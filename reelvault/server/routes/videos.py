"""Video library and quota API routes."""

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query

from reelvault.common.models import (
    DeleteVideosRequest,
    DeleteVideosResponse,
    ErrorResponse,
    MetadataUpdateRequest,
    QuotaInfo,
)
from reelvault.server.errors import ValidationError
from reelvault.server.middleware.auth import get_user_id
from reelvault.server.quota.models import VideoRecord, VideoStatus
from reelvault.server.services.container import Services


def create_videos_router(services: Services) -> APIRouter:
    """Create video library router.

    Args:
        services: Service container (usually a lazy proxy)

    Returns:
        FastAPI router
    """
    router = APIRouter(prefix="/api", tags=["Videos"])

    @router.get("/videos")
    async def list_videos(
        status: Optional[VideoStatus] = Query(None, description="Filter by status"),
        page: int = Query(1, ge=1, description="Page number"),
        page_size: int = Query(50, ge=1, le=500, description="Page size"),
        user_id: str = Depends(get_user_id),
    ) -> dict[str, Any]:
        """List the caller's videos, newest first."""
        videos = await services.records.list_videos(user_id, status=status)
        start = (page - 1) * page_size
        return {
            "videos": [v.model_dump(mode="json") for v in videos[start : start + page_size]],
            "total": len(videos),
            "page": page,
            "page_size": page_size,
        }

    @router.get("/videos/{video_id}", response_model=VideoRecord, responses={404: {"model": ErrorResponse}})
    async def get_video(video_id: str, user_id: str = Depends(get_user_id)) -> VideoRecord:
        return await services.records.require(user_id, video_id)

    @router.patch(
        "/videos/{video_id}/metadata",
        response_model=VideoRecord,
        responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    )
    async def update_metadata(
        video_id: str, body: MetadataUpdateRequest, user_id: str = Depends(get_user_id)
    ) -> VideoRecord:
        """Merge enrichment results (capture metadata, thumbnail) into a video."""
        return await services.records.update_metadata(
            user_id,
            video_id,
            body.metadata,
            thumbnail_bucket=body.thumbnail_bucket,
            thumbnail_key=body.thumbnail_key,
        )

    @router.post(
        "/videos/delete",
        response_model=DeleteVideosResponse,
        responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    )
    async def delete_videos(body: DeleteVideosRequest, user_id: str = Depends(get_user_id)) -> DeleteVideosResponse:
        """Mark videos for deletion; storage and quota are freed asynchronously.

        A request naming one ``video_id`` fails with 404 if it does not
        exist. Batch requests report missing ids instead.
        """
        ids = body.unique_ids()
        if not ids:
            raise ValidationError("Missing videoId")
        single = bool(body.video_id) and not body.video_ids
        return await services.deletions.delete_videos(user_id, ids, single=single)

    @router.get("/quota", response_model=QuotaInfo)
    async def get_quota(user_id: str = Depends(get_user_id)) -> QuotaInfo:
        """Current quota, usage and reservations of the caller."""
        profile = await services.ledger.ensure_profile(user_id)
        return QuotaInfo(
            quota_bytes=profile.quota_bytes,
            used_bytes=profile.used_bytes,
            reserved_bytes=profile.reserved_bytes,
            videos_count=profile.videos_count,
            available_bytes=profile.available_bytes,
            usage_percent=profile.usage_percent,
            created_at=profile.created_at,
        )

    return router
