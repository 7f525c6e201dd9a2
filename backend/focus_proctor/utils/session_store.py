import asyncio
import json
import logging
import re
import uuid
from pathlib import Path
from typing import Dict, List, Optional

import aiofiles

from ..errors import SessionNotFound
from ..models.detection_models import (
    IntegrityReport,
    ProctorEvent,
    SessionData,
    SessionMetrics,
    SessionVideoReference,
)
from .scoring import build_integrity_report
from .video import now_ms

logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


class FileSessionStore:
    """Sessions, event logs and uploaded recordings kept as local files"""

    def __init__(self, base_dir: str = "logs"):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

        # Create subdirectories
        (self.base_dir / "sessions").mkdir(exist_ok=True)
        (self.base_dir / "uploads").mkdir(exist_ok=True)

        self._lock = asyncio.Lock()

    def _session_file(self, session_id: str) -> Path:
        if not session_id or _SAFE_NAME.search(session_id):
            raise SessionNotFound(session_id)
        return self.base_dir / "sessions" / f"{session_id}.json"

    async def _load(self, session_id: str) -> SessionData:
        session_file = self._session_file(session_id)
        if not session_file.exists():
            raise SessionNotFound(session_id)

        async with aiofiles.open(session_file, 'r') as f:
            content = await f.read()
        return SessionData.model_validate_json(content)

    async def _save(self, session: SessionData):
        session_file = self._session_file(session.id)
        tmp_file = session_file.with_suffix(".json.tmp")
        async with aiofiles.open(tmp_file, 'w') as f:
            await f.write(session.model_dump_json(by_alias=True, exclude_none=True, indent=2))
        tmp_file.replace(session_file)

    async def create_session(self, candidate_name: str, candidate_id: Optional[str] = None) -> str:
        """Start a new session and return its id"""
        session = SessionData(
            id=uuid.uuid4().hex,
            candidate_name=candidate_name,
            candidate_id=candidate_id,
            started_at=now_ms(),
        )
        async with self._lock:
            await self._save(session)

        logger.info(f"📝 Started session {session.id} for {candidate_name}")
        return session.id

    async def append_events(self, session_id: str, events: List[ProctorEvent]):
        if not events:
            return
        async with self._lock:
            session = await self._load(session_id)
            session.events.extend(events)
            await self._save(session)

    async def end_session(self, session_id: str, metrics: Optional[SessionMetrics] = None):
        async with self._lock:
            session = await self._load(session_id)
            session.ended_at = now_ms()
            if metrics is not None:
                session.metrics = metrics
            await self._save(session)

        logger.info(f"📝 Ended session {session_id} ({len(session.events)} events)")

    async def upload_video(self, session_id: str, data: bytes, filename: Optional[str] = None) -> str:
        """Store a recording for the session and return its URL path"""
        filename = _SAFE_NAME.sub("_", filename or f"focus-proctor-{session_id}.webm")
        async with self._lock:
            session = await self._load(session_id)
            target = self.base_dir / "uploads" / f"{session_id}_{filename}"
            async with aiofiles.open(target, 'wb') as f:
                await f.write(data)

            url = f"/uploads/{target.name}"
            session.video_ref = SessionVideoReference(url=url, bytes=len(data))
            await self._save(session)

        logger.info(f"🎞️ Stored recording for session {session_id} ({len(data)} bytes)")
        return url

    async def get_session(self, session_id: str) -> SessionData:
        return await self._load(session_id)

    async def get_report(self, session_id: str) -> IntegrityReport:
        session = await self._load(session_id)
        ended_at = session.ended_at if session.ended_at is not None else now_ms()
        report = build_integrity_report(session.id, session.events, session.started_at, ended_at)
        logger.info(f"📊 Built report for session {session_id}: score {report.integrity_score}")
        return report

    async def list_sessions(self, limit: int = 50) -> List[Dict]:
        """Summaries of stored sessions, most recent first"""
        summaries = []
        for session_file in (self.base_dir / "sessions").glob("*.json"):
            try:
                async with aiofiles.open(session_file, 'r') as f:
                    data = json.loads(await f.read())
            except (OSError, ValueError) as e:
                logger.warning(f"Error reading session file {session_file}: {e}")
                continue
            summaries.append({
                "_id": data.get("_id"),
                "candidateName": data.get("candidateName"),
                "startedAt": data.get("startedAt"),
                "endedAt": data.get("endedAt"),
                "eventCount": len(data.get("events", [])),
            })

        summaries.sort(key=lambda s: s.get("startedAt") or 0, reverse=True)
        return summaries[:limit]

    def upload_path(self, name: str) -> Optional[Path]:
        if not name or _SAFE_NAME.search(name):
            return None
        path = self.base_dir / "uploads" / name
        return path if path.exists() else None
