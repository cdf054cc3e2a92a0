"""Multi-threaded video uploader driving the init / parts / complete / finalize flow."""

import mimetypes
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Optional, Union

import httpx

from reelvault.client.api import ReelVaultAPIError, ReelVaultClient
from reelvault.common.constants import DEFAULT_PART_SIZE, MAX_PART_NUMBER
from reelvault.common.fileutil import compute_fingerprint, pread
from reelvault.common.models import FinalizeUploadResponse, UploadedPart


def plan_parts(file_size: int, part_size: int = DEFAULT_PART_SIZE) -> list[tuple[int, int, int]]:
    """Return ``(part_number, offset, length)`` covering the file.

    The part size grows when the file would otherwise need more than
    ``MAX_PART_NUMBER`` parts.
    """
    part_size = max(part_size, -(-file_size // MAX_PART_NUMBER))
    parts = []
    offset = 0
    number = 1
    while offset < file_size:
        length = min(part_size, file_size - offset)
        parts.append((number, offset, length))
        offset += length
        number += 1
    return parts


class VideoUploader:
    """Upload one local video file.

    Parts are read with positional reads and sent concurrently to the
    signed URLs the server hands out; the server never sees the bytes
    unless it is also the object store. Any failure before finalize aborts
    the session so the reservation is released immediately instead of
    waiting for the reconciler.
    """

    def __init__(
        self,
        client: ReelVaultClient,
        file_path: Union[str, Path],
        part_size: int = DEFAULT_PART_SIZE,
        max_concurrent: int = 4,
        retries: int = 3,
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ) -> None:
        self.client = client
        self.file_path = Path(file_path)
        self.file_size = self.file_path.stat().st_size
        self.part_size = part_size
        self.max_concurrent = max_concurrent
        self.retries = retries
        self.progress_callback = progress_callback
        self.content_type = mimetypes.guess_type(self.file_path.name)[0] or "application/octet-stream"
        self.fingerprint: Optional[str] = None
        self._uploaded_bytes = 0
        self._lock = threading.Lock()

    def _report(self, length: int) -> None:
        with self._lock:
            self._uploaded_bytes += length
            if self.progress_callback:
                self.progress_callback(self._uploaded_bytes, self.file_size)

    def _upload_part(
        self, http: httpx.Client, fd: int, key: str, upload_id: str, part: tuple[int, int, int]
    ) -> UploadedPart:
        number, offset, length = part
        data = pread(fd, length, offset)
        last_exc: Optional[Exception] = None
        for _ in range(self.retries):
            try:
                # Signed URLs are short-lived; fetch a fresh one per attempt
                target = self.client.part_target(key, upload_id, number)
                resp = http.request(target.method, target.url, content=data)
                resp.raise_for_status()
                etag = resp.headers.get("ETag") or resp.json().get("etag")
                if not etag:
                    raise RuntimeError(f"Part {number}: storage returned no ETag")
                self._report(length)
                return UploadedPart(part_number=number, etag=etag)
            except ReelVaultAPIError as e:
                if not e.retryable:
                    raise
                last_exc = e
            except (httpx.HTTPError, RuntimeError) as e:
                last_exc = e
        raise RuntimeError(f"Part {number} failed after {self.retries} retries") from last_exc

    def upload(self) -> FinalizeUploadResponse:
        """Run the full flow.

        Raises:
            ReelVaultAPIError: the server rejected the upload (duplicate,
                quota, validation); ``duplicate`` tells the first apart.
        """
        self.fingerprint = compute_fingerprint(self.file_path)
        session = self.client.init_upload(self.file_path.name, self.file_size, self.fingerprint, self.content_type)

        finalized = False
        try:
            fd = os.open(str(self.file_path), os.O_RDONLY | getattr(os, "O_BINARY", 0))
            try:
                with httpx.Client(timeout=120.0) as http:
                    with ThreadPoolExecutor(max_workers=self.max_concurrent) as executor:
                        futures = [
                            executor.submit(self._upload_part, http, fd, session.key, session.upload_id, part)
                            for part in plan_parts(self.file_size, self.part_size)
                        ]
                        parts = [f.result() for f in futures]
            finally:
                os.close(fd)

            self.client.complete_upload(session.key, session.upload_id, parts)
            result = self.client.finalize_upload(
                session.key, self.fingerprint, original_name=self.file_path.name, content_type=self.content_type
            )
            finalized = True
            return result
        finally:
            if not finalized:
                try:
                    self.client.abort_upload(session.key, session.upload_id)
                except (ReelVaultAPIError, httpx.HTTPError):
                    pass
