"""Abstract interface for object storage backends."""

from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional


class ObjectStore(ABC):
    """Abstract base class for object storage backends.

    Implementations provide S3-style multi-part uploads where the client
    sends each part directly to a short-lived signed URL, plus the listing
    and deletion primitives the reconciler and deletion worker need.

    Available implementations:
    - LocalObjectStore: File system storage (default, single node)
    - S3ObjectStore: Any S3-compatible service via boto3
    """

    def __init__(self, bucket: str, thumbnail_bucket: Optional[str] = None) -> None:
        self.bucket = bucket
        self.thumbnail_bucket = thumbnail_bucket or bucket

    async def initialize(self) -> None:
        """Prepare the backend (create directories, check credentials)."""
        pass

    async def close(self) -> None:
        pass

    @abstractmethod
    async def create_multipart_upload(self, key: str, content_type: str) -> str:
        """Open a multi-part session for ``key``.

        Returns:
            The upload id
        """
        pass

    @abstractmethod
    async def presign_upload_part(self, key: str, upload_id: str, part_number: int, expires_in: int) -> str:
        """Return a URL that accepts exactly one ``PUT`` of the given part."""
        pass

    @abstractmethod
    async def complete_multipart_upload(self, key: str, upload_id: str, parts: list[tuple[int, str]]) -> str:
        """Assemble the object from ``(part_number, etag)`` pairs (ascending).

        Returns:
            ETag of the assembled object
        """
        pass

    @abstractmethod
    async def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        """Discard a multi-part session and its uploaded parts."""
        pass

    @abstractmethod
    async def delete_object(self, key: str, bucket: Optional[str] = None) -> None:
        """Delete an object; deleting a missing object is not an error."""
        pass

    @abstractmethod
    async def object_exists(self, key: str, bucket: Optional[str] = None) -> bool:
        pass

    @abstractmethod
    def list_objects(self, prefix: str, page_size: int = 1000) -> AsyncIterator[list[str]]:
        """Yield pages of object keys under ``prefix`` in the primary bucket."""
        pass

    @property
    def name(self) -> str:
        """Get backend name for logging."""
        return self.__class__.__name__
