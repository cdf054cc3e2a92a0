"""S3-compatible object store (AWS S3, MinIO, DigitalOcean Spaces, ...)."""

import asyncio
import logging
from functools import partial
from typing import Any, AsyncIterator, Callable, Optional

import boto3.session
from botocore.client import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from reelvault.server.errors import UpstreamStorageError
from reelvault.server.io_pool import io_pool
from reelvault.server.objectstore.interface import ObjectStore

logger = logging.getLogger("reelvault.server.objectstore")


class S3ObjectStore(ObjectStore):
    """Object storage in an S3-compatible service.

    boto3 is synchronous, so every call runs in the shared I/O pool. Part
    URLs are regular presigned ``upload_part`` URLs; the client uploads
    straight to the bucket.
    """

    def __init__(
        self,
        bucket: str,
        thumbnail_bucket: Optional[str] = None,
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
    ) -> None:
        super().__init__(bucket, thumbnail_bucket)
        self.region = region
        self.endpoint_url = endpoint_url
        session = boto3.session.Session()
        self._s3 = session.client(
            "s3",
            region_name=region,
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            config=BotoConfig(signature_version="s3v4"),
        )

    async def _call(self, fn: Callable[..., Any], **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(io_pool, partial(fn, **kwargs))
        except (ClientError, BotoCoreError) as e:
            raise UpstreamStorageError(f"S3 {fn.__name__} failed: {e}") from e

    async def initialize(self) -> None:
        await self._call(self._s3.head_bucket, Bucket=self.bucket)
        logger.info("%s: using bucket %s (%s)", self.name, self.bucket, self.endpoint_url or "aws")

    async def create_multipart_upload(self, key: str, content_type: str) -> str:
        upload = await self._call(
            self._s3.create_multipart_upload,
            Bucket=self.bucket,
            Key=key,
            ContentType=content_type,
        )
        return upload["UploadId"]  # type: ignore[no-any-return]

    async def presign_upload_part(self, key: str, upload_id: str, part_number: int, expires_in: int) -> str:
        return await self._call(  # type: ignore[no-any-return]
            self._s3.generate_presigned_url,
            ClientMethod="upload_part",
            Params={
                "Bucket": self.bucket,
                "Key": key,
                "UploadId": upload_id,
                "PartNumber": int(part_number),
            },
            ExpiresIn=expires_in,
            HttpMethod="PUT",
        )

    async def complete_multipart_upload(self, key: str, upload_id: str, parts: list[tuple[int, str]]) -> str:
        result = await self._call(
            self._s3.complete_multipart_upload,
            Bucket=self.bucket,
            Key=key,
            UploadId=upload_id,
            MultipartUpload={"Parts": [{"ETag": etag, "PartNumber": number} for number, etag in parts]},
        )
        return result.get("ETag", "")  # type: ignore[no-any-return]

    async def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        await self._call(self._s3.abort_multipart_upload, Bucket=self.bucket, Key=key, UploadId=upload_id)

    async def delete_object(self, key: str, bucket: Optional[str] = None) -> None:
        await self._call(self._s3.delete_object, Bucket=bucket or self.bucket, Key=key)

    async def object_exists(self, key: str, bucket: Optional[str] = None) -> bool:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(io_pool, partial(self._s3.head_object, Bucket=bucket or self.bucket, Key=key))
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise UpstreamStorageError(f"S3 head_object failed: {e}") from e

    async def list_objects(self, prefix: str, page_size: int = 1000) -> AsyncIterator[list[str]]:  # type: ignore[override]
        token: Optional[str] = None
        while True:
            kwargs: dict[str, Any] = {"Bucket": self.bucket, "Prefix": prefix, "MaxKeys": page_size}
            if token:
                kwargs["ContinuationToken"] = token
            page = await self._call(self._s3.list_objects_v2, **kwargs)
            keys = [item["Key"] for item in page.get("Contents", [])]
            if keys:
                yield keys
            if not page.get("IsTruncated"):
                break
            token = page.get("NextContinuationToken")
