import logging
from typing import List, Optional, Protocol

import httpx

from ..config import Settings
from ..errors import DeliveryError, SessionNotFound
from ..models.detection_models import IntegrityReport, ProctorEvent, SessionData, SessionMetrics

logger = logging.getLogger(__name__)


class StorageClient(Protocol):
    """Operations the proctoring pipeline needs from session storage"""

    async def create_session(self, candidate_name: str, candidate_id: Optional[str] = None) -> str: ...

    async def append_events(self, session_id: str, events: List[ProctorEvent]) -> None: ...

    async def end_session(self, session_id: str, metrics: Optional[SessionMetrics] = None) -> None: ...

    async def upload_video(self, session_id: str, data: bytes, filename: Optional[str] = None) -> str: ...

    async def get_session(self, session_id: str) -> SessionData: ...

    async def get_report(self, session_id: str) -> IntegrityReport: ...


class HttpStorageClient:
    """StorageClient backed by the Focus Proctor REST API"""

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        headers = {}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def close(self):
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()

    async def _request(self, method: str, url: str, session_id: Optional[str] = None,
                       action: str = "request", **kwargs) -> httpx.Response:
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise DeliveryError(f"Failed to {action}: {e}") from e

        if response.status_code == 404 and session_id is not None:
            raise SessionNotFound(session_id)
        if response.is_error:
            raise DeliveryError(f"Failed to {action} ({response.status_code})")
        return response

    async def create_session(self, candidate_name: str, candidate_id: Optional[str] = None) -> str:
        body = {"candidateName": candidate_name}
        if candidate_id:
            body["candidateId"] = candidate_id
        response = await self._request("POST", "/api/sessions", action="create session", json=body)
        return response.json()["_id"]

    async def append_events(self, session_id: str, events: List[ProctorEvent]) -> None:
        if not events:
            return
        payload = {"events": [e.model_dump(mode="json", by_alias=True, exclude_none=True) for e in events]}
        await self._request("POST", f"/api/sessions/{session_id}/events", session_id,
                            action="append events", json=payload)

    async def end_session(self, session_id: str, metrics: Optional[SessionMetrics] = None) -> None:
        body = metrics.model_dump(by_alias=True) if metrics is not None else None
        await self._request("PATCH", f"/api/sessions/{session_id}/end", session_id,
                            action="end session", json=body)

    async def upload_video(self, session_id: str, data: bytes, filename: Optional[str] = None) -> str:
        filename = filename or f"focus-proctor-{session_id}.webm"
        response = await self._request(
            "POST", "/api/uploads/video", session_id,
            action="upload video",
            data={"sessionId": session_id},
            files={"file": (filename, data, "video/webm")},
        )
        return response.json()["url"]

    async def get_session(self, session_id: str) -> SessionData:
        response = await self._request("GET", f"/api/sessions/{session_id}", session_id, action="fetch session")
        return SessionData.model_validate(response.json())

    async def get_report(self, session_id: str) -> IntegrityReport:
        response = await self._request("GET", f"/api/reports/{session_id}", session_id, action="fetch report")
        return IntegrityReport.model_validate(response.json())


def build_storage(settings: Settings, local_store: StorageClient) -> StorageClient:
    """Remote API storage when STORAGE_API_URL is set, the local store otherwise"""
    if settings.STORAGE_API_URL:
        logger.info(f"🌐 Delivering session data to {settings.STORAGE_API_URL}")
        return HttpStorageClient(settings.STORAGE_API_URL, token=settings.STORAGE_API_TOKEN or None)
    return local_store
