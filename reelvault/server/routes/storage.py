"""Part upload endpoint of the local object store.

Signed part URLs handed out by ``/api/uploads/part`` point here when the
server runs with the file system object store. The signature is the only
credential; the request carries no API token.
"""

import json
import logging

from fastapi import APIRouter, HTTPException, Query, Request, Response

from reelvault.server.objectstore.local import LocalObjectStore
from reelvault.server.services.container import Services

logger = logging.getLogger("reelvault.server.storage")


def create_storage_router(services: Services) -> APIRouter:
    """Create the signed part upload router."""
    router = APIRouter(prefix="/api/storage", tags=["Storage"])

    @router.put("/parts/{upload_id}/{part_number}")
    async def upload_part(
        upload_id: str,
        part_number: int,
        request: Request,
        key: str = Query(..., description="Object key"),
        expires: int = Query(..., description="Unix deadline of the signature"),
        signature: str = Query(..., description="HMAC signature"),
    ) -> Response:
        store = services.store
        if not isinstance(store, LocalObjectStore):
            raise HTTPException(404, "Part uploads go directly to the object store")
        if not store.verify_part_signature(key, upload_id, part_number, expires, signature):
            raise HTTPException(403, "Invalid or expired signature")

        etag = await store.write_part(key, upload_id, part_number, request.stream())
        logger.debug("Stored part %d of %s", part_number, upload_id)
        return Response(
            content=json.dumps({"part_number": part_number, "etag": etag}),
            media_type="application/json",
            headers={"ETag": etag, "Access-Control-Expose-Headers": "ETag"},
        )

    return router
