"""File system object store with HMAC-signed part URLs."""

import asyncio
import hashlib
import hmac
import json
import logging
import os
import shutil
import time
import uuid
from pathlib import Path
from typing import AsyncIterator, Optional
from urllib.parse import quote, urlencode

import aiofiles  # type: ignore[import-untyped]
import aiofiles.os  # type: ignore[import-untyped]

from reelvault.server.errors import UpstreamStorageError, ValidationError
from reelvault.server.io_pool import io_pool
from reelvault.server.objectstore.interface import ObjectStore

logger = logging.getLogger("reelvault.server.objectstore")

_COPY_BUFFER = 1024 * 1024


def sign_part(secret: str, key: str, upload_id: str, part_number: int, expires: int) -> str:
    """Signature binding method, key, upload, part and deadline."""
    message = f"PUT\n{key}\n{upload_id}\n{part_number}\n{expires}"
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


class LocalObjectStore(ObjectStore):
    """Object storage on the local file system (DEFAULT).

    Layout under ``root``:
    - ``{bucket}/{key}``: completed objects
    - ``.multipart/{upload_id}/``: session metadata and received parts

    Part URLs point at the server's own ``/api/storage/parts`` route and
    carry an HMAC signature, so clients use the same direct-to-storage flow
    they would use against S3.

    Limitations:
    - Single node only; parts are written through the API process
    """

    def __init__(
        self,
        root: Path,
        signing_secret: str,
        public_url: str,
        bucket: str = "videos",
        thumbnail_bucket: Optional[str] = None,
    ) -> None:
        super().__init__(bucket, thumbnail_bucket or "thumbnails")
        self.root = Path(root)
        self.signing_secret = signing_secret
        self.public_url = public_url.rstrip("/")
        self.multipart_path = self.root / ".multipart"

    async def initialize(self) -> None:
        for path in (self.root / self.bucket, self.root / self.thumbnail_bucket, self.multipart_path):
            path.mkdir(parents=True, exist_ok=True)
        logger.info("%s: storing objects under %s", self.name, self.root)

    # ── Paths ──────────────────────────────────────────────────

    def object_path(self, key: str, bucket: Optional[str] = None) -> Path:
        base = (self.root / (bucket or self.bucket)).resolve()
        path = (base / key).resolve()
        if base not in path.parents:
            raise ValidationError(f"Invalid object key: {key}")
        return path

    def _session_dir(self, upload_id: str) -> Path:
        if not upload_id or "/" in upload_id or "\\" in upload_id or upload_id.startswith("."):
            raise ValidationError("Invalid upload id")
        return self.multipart_path / upload_id

    def _part_path(self, upload_id: str, part_number: int) -> Path:
        return self._session_dir(upload_id) / f"part_{part_number:05d}"

    async def _load_session(self, upload_id: str) -> dict:
        meta_file = self._session_dir(upload_id) / "upload.json"
        try:
            async with aiofiles.open(meta_file, "r") as f:
                return json.loads(await f.read())  # type: ignore[no-any-return]
        except FileNotFoundError:
            raise UpstreamStorageError(f"No such upload: {upload_id}")

    # ── Multi-part ─────────────────────────────────────────────

    async def create_multipart_upload(self, key: str, content_type: str) -> str:
        self.object_path(key)  # validates the key
        upload_id = uuid.uuid4().hex
        session_dir = self._session_dir(upload_id)
        await aiofiles.os.makedirs(session_dir, exist_ok=True)
        meta = {"key": key, "content_type": content_type, "created_at": time.time()}
        async with aiofiles.open(session_dir / "upload.json", "w") as f:
            await f.write(json.dumps(meta))
        return upload_id

    async def presign_upload_part(self, key: str, upload_id: str, part_number: int, expires_in: int) -> str:
        expires = int(time.time()) + expires_in
        signature = sign_part(self.signing_secret, key, upload_id, part_number, expires)
        query = urlencode({"key": key, "expires": expires, "signature": signature})
        return f"{self.public_url}/api/storage/parts/{quote(upload_id)}/{part_number}?{query}"

    def verify_part_signature(self, key: str, upload_id: str, part_number: int, expires: int, signature: str) -> bool:
        """Check a signed part URL; expired or tampered URLs are rejected."""
        if expires < int(time.time()):
            return False
        expected = sign_part(self.signing_secret, key, upload_id, part_number, expires)
        return hmac.compare_digest(expected, signature)

    async def write_part(self, key: str, upload_id: str, part_number: int, body: AsyncIterator[bytes]) -> str:
        """Store one part streamed from a request body.

        Returns:
            The part ETag (MD5 of its bytes, quoted as S3 does)
        """
        meta = await self._load_session(upload_id)
        if meta["key"] != key:
            raise ValidationError("Key does not belong to this upload")

        part_path = self._part_path(upload_id, part_number)
        tmp_path = part_path.with_suffix(".tmp")
        digest = hashlib.md5()
        async with aiofiles.open(tmp_path, "wb") as f:
            async for chunk in body:
                if chunk:
                    digest.update(chunk)
                    await f.write(chunk)
        etag = f'"{digest.hexdigest()}"'
        async with aiofiles.open(part_path.with_suffix(".etag"), "w") as f:
            await f.write(etag)
        await aiofiles.os.replace(tmp_path, part_path)
        return etag

    async def complete_multipart_upload(self, key: str, upload_id: str, parts: list[tuple[int, str]]) -> str:
        meta = await self._load_session(upload_id)
        if meta["key"] != key:
            raise ValidationError("Key does not belong to this upload")

        part_paths = []
        md5s = []
        for part_number, etag in parts:
            part_path = self._part_path(upload_id, part_number)
            try:
                async with aiofiles.open(part_path.with_suffix(".etag"), "r") as f:
                    stored = await f.read()
            except FileNotFoundError:
                raise ValidationError(f"Part {part_number} was never uploaded")
            if stored.strip('"') != etag.strip('"'):
                raise ValidationError(f"ETag mismatch for part {part_number}")
            part_paths.append(part_path)
            md5s.append(bytes.fromhex(stored.strip('"')))

        target = self.object_path(key)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(io_pool, self._assemble, part_paths, target)
        await loop.run_in_executor(io_pool, shutil.rmtree, str(self._session_dir(upload_id)), True)

        etag = f'"{hashlib.md5(b"".join(md5s)).hexdigest()}-{len(parts)}"'
        logger.debug("%s: assembled %s from %d parts", self.name, key, len(parts))
        return etag

    @staticmethod
    def _assemble(part_paths: list[Path], target: Path) -> None:
        """Concatenate parts into ``target`` (runs in thread pool)."""
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".assembling")
        with open(tmp, "wb") as out:
            for part_path in part_paths:
                with open(part_path, "rb") as src:
                    shutil.copyfileobj(src, out, _COPY_BUFFER)
        os.replace(tmp, target)

    async def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        meta = await self._load_session(upload_id)
        if meta["key"] != key:
            raise ValidationError("Key does not belong to this upload")
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(io_pool, shutil.rmtree, str(self._session_dir(upload_id)), True)

    # ── Objects ────────────────────────────────────────────────

    async def delete_object(self, key: str, bucket: Optional[str] = None) -> None:
        try:
            await aiofiles.os.remove(self.object_path(key, bucket))
        except FileNotFoundError:
            pass

    async def object_exists(self, key: str, bucket: Optional[str] = None) -> bool:
        return self.object_path(key, bucket).is_file()

    async def list_objects(self, prefix: str, page_size: int = 1000) -> AsyncIterator[list[str]]:  # type: ignore[override]
        base = self.root / self.bucket
        loop = asyncio.get_running_loop()
        keys = await loop.run_in_executor(io_pool, self._walk_keys, base, prefix)
        for start in range(0, len(keys), page_size):
            yield keys[start : start + page_size]

    @staticmethod
    def _walk_keys(base: Path, prefix: str) -> list[str]:
        keys = []
        for dirpath, _dirnames, filenames in os.walk(base):
            for filename in filenames:
                if filename.endswith(".assembling"):
                    continue
                key = Path(dirpath, filename).relative_to(base).as_posix()
                if key.startswith(prefix):
                    keys.append(key)
        keys.sort()
        return keys
