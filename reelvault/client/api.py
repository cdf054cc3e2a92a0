"""Synchronous HTTP client for the ReelVault API."""

from typing import Any, Optional

import httpx

from reelvault.common.constants import AUTH_HEADER, USER_HEADER
from reelvault.common.models import (
    DeleteVideosResponse,
    DuplicateCheckResponse,
    FinalizeUploadResponse,
    InitUploadResponse,
    PartTarget,
    QuotaInfo,
    ReconcileReport,
    ServerInfo,
    UploadedPart,
)


class ReelVaultAPIError(Exception):
    """Non-2xx response from the server."""

    def __init__(self, status_code: int, payload: dict[str, Any]) -> None:
        self.status_code = status_code
        self.payload = payload
        self.error = payload.get("error", "http_error")
        self.message = payload.get("message") or payload.get("detail") or f"HTTP {status_code}"
        super().__init__(f"{self.error}: {self.message}")

    @property
    def duplicate(self) -> bool:
        return bool(self.payload.get("duplicate"))

    @property
    def retryable(self) -> bool:
        """Transient conflicts and contention are worth one more try."""
        return self.error == "transaction_conflict" or bool(self.payload.get("retry"))


class ReelVaultClient:
    """Thin wrapper over the REST API.

    Usage:
        with ReelVaultClient("http://localhost:8780", token, "alice") as client:
            print(client.get_quota())
    """

    def __init__(
        self,
        server_url: str,
        token: Optional[str] = None,
        user_id: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        self.headers: dict[str, str] = {}
        if token:
            self.headers[AUTH_HEADER] = token
        if user_id:
            self.headers[USER_HEADER] = user_id
        self._http = httpx.Client(base_url=self.server_url, headers=self.headers, timeout=timeout)

    def __enter__(self) -> "ReelVaultClient":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        resp = self._http.request(method, path, **kwargs)
        if resp.status_code >= 400:
            try:
                payload = resp.json()
            except ValueError:
                payload = {"message": resp.text[:200]}
            if not isinstance(payload, dict):
                payload = {"message": str(payload)}
            raise ReelVaultAPIError(resp.status_code, payload)
        return resp.json()

    # ── Server ───────────────────────────────────────────────

    def get_info(self) -> ServerInfo:
        return ServerInfo(**self._request("GET", "/api/info"))

    def health(self) -> dict[str, Any]:
        return self._request("GET", "/api/health")  # type: ignore[no-any-return]

    # ── Uploads ──────────────────────────────────────────────

    def check_duplicate(self, fingerprint: str) -> DuplicateCheckResponse:
        data = self._request("GET", "/api/uploads/check", params={"fingerprint": fingerprint})
        return DuplicateCheckResponse(**data)

    def init_upload(
        self, file_name: str, size: int, fingerprint: str, content_type: str = "application/octet-stream"
    ) -> InitUploadResponse:
        body = {"file_name": file_name, "size": size, "fingerprint": fingerprint, "content_type": content_type}
        return InitUploadResponse(**self._request("POST", "/api/uploads/init", json=body))

    def part_target(self, key: str, upload_id: str, part_number: int) -> PartTarget:
        body = {"key": key, "upload_id": upload_id, "part_number": part_number}
        return PartTarget(**self._request("POST", "/api/uploads/part", json=body))

    def complete_upload(self, key: str, upload_id: str, parts: list[UploadedPart]) -> dict[str, Any]:
        body = {"key": key, "upload_id": upload_id, "parts": [p.model_dump() for p in parts]}
        return self._request("POST", "/api/uploads/complete", json=body)  # type: ignore[no-any-return]

    def finalize_upload(
        self,
        key: str,
        fingerprint: str,
        original_name: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> FinalizeUploadResponse:
        body = {"key": key, "fingerprint": fingerprint, "original_name": original_name, "content_type": content_type}
        return FinalizeUploadResponse(**self._request("POST", "/api/uploads/finalize", json=body))

    def abort_upload(self, key: str, upload_id: str) -> dict[str, Any]:
        body = {"key": key, "upload_id": upload_id}
        return self._request("POST", "/api/uploads/abort", json=body)  # type: ignore[no-any-return]

    # ── Library ──────────────────────────────────────────────

    def get_quota(self) -> QuotaInfo:
        return QuotaInfo(**self._request("GET", "/api/quota"))

    def list_videos(self, page: int = 1, page_size: int = 50, status: Optional[str] = None) -> dict[str, Any]:
        params: dict[str, Any] = {"page": page, "page_size": page_size}
        if status:
            params["status"] = status
        return self._request("GET", "/api/videos", params=params)  # type: ignore[no-any-return]

    def get_video(self, video_id: str) -> dict[str, Any]:
        return self._request("GET", f"/api/videos/{video_id}")  # type: ignore[no-any-return]

    def delete_videos(self, video_ids: list[str]) -> DeleteVideosResponse:
        body: dict[str, Any] = {"video_id": video_ids[0]} if len(video_ids) == 1 else {"video_ids": video_ids}
        return DeleteVideosResponse(**self._request("POST", "/api/videos/delete", json=body))

    # ── Admin ────────────────────────────────────────────────

    def reconcile(self, user_id: Optional[str] = None) -> ReconcileReport:
        params = {"user_id": user_id} if user_id else None
        return ReconcileReport(**self._request("POST", "/api/admin/reconcile", params=params))

    def set_quota(self, user_id: str, quota_bytes: int) -> dict[str, Any]:
        return self._request(  # type: ignore[no-any-return]
            "PUT", f"/api/admin/users/{user_id}/quota", json={"quota_bytes": quota_bytes}
        )
