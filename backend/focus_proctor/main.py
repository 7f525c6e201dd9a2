from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, Response
import asyncio
import csv
import io
import json
from datetime import datetime
from typing import Dict, Optional, Set
import logging

from .config import get_settings
from .errors import DeliveryError, SessionNotFound
from .models.detection_models import AppendEventsRequest, CreateSessionRequest, SessionMetrics
from .models.messages import ErrorMessage, ErrorPayload, to_wire
from .pipeline.session import ProctoringSession
from .pipeline.video_source import FrameBufferSource
from .utils.auth import require_auth
from .utils.logger import setup_logging
from .utils.scoring import segment_episodes
from .utils.session_store import FileSessionStore
from .utils.storage_client import StorageClient, build_storage
from .utils.video import decode_base64_image

# Configure logging
setup_logging()
logger = logging.getLogger(__name__)

settings = get_settings()

# Initialize FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    description="Focus and integrity proctoring for video interviews",
    version="1.0.0"
)

# CORS middleware for frontend communication
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Live WebSocket sessions
active_sessions: Dict[str, ProctoringSession] = {}


@app.on_event("startup")
async def startup_event():
    """Open the session store on startup"""
    logger.info("🚀 Starting Focus Proctor Backend...")
    app.state.store = FileSessionStore(settings.STORAGE_DIR)
    logger.info(f"✅ Session store ready at {settings.STORAGE_DIR}")


@app.on_event("shutdown")
async def shutdown_event():
    for session in list(active_sessions.values()):
        await session.stop()
    active_sessions.clear()

    live_storage = getattr(app.state, "live_storage", None)
    app.state.live_storage = None
    if live_storage is not None and hasattr(live_storage, "close"):
        await live_storage.close()


def get_store() -> FileSessionStore:
    store = getattr(app.state, "store", None)
    if store is None:
        store = app.state.store = FileSessionStore(settings.STORAGE_DIR)
    return store


def get_live_storage() -> StorageClient:
    """Storage that live sessions report to"""
    storage = getattr(app.state, "live_storage", None)
    if storage is None:
        storage = app.state.live_storage = build_storage(settings, get_store())
    return storage


def build_proctoring_session(session_id: str, storage: StorageClient, source: FrameBufferSource,
                             on_message, on_error) -> ProctoringSession:
    return ProctoringSession(session_id, storage, source, settings, on_message=on_message, on_error=on_error)


@app.exception_handler(SessionNotFound)
async def session_not_found_handler(request: Request, exc: SessionNotFound):
    return JSONResponse(status_code=404, content={"error": "Not found", "detail": str(exc)})


@app.get("/")
async def root():
    return {
        "message": settings.APP_NAME,
        "status": "running",
        "detection": {
            "fps": settings.effective_fps,
            "object_detection": settings.OBJECT_ENABLED,
            "auth_required": settings.AUTH_REQUIRED
        }
    }


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "active_sessions": len(active_sessions)
    }


@app.post("/api/sessions", status_code=201)
async def create_session(body: CreateSessionRequest, store: FileSessionStore = Depends(get_store),
                         _auth=Depends(require_auth)):
    session_id = await store.create_session(body.candidate_name, body.candidate_id)
    return {"_id": session_id}


@app.get("/api/sessions")
async def list_sessions(limit: int = 50, store: FileSessionStore = Depends(get_store)):
    """Stored sessions, most recent first"""
    sessions = await store.list_sessions(limit)
    return {"count": len(sessions), "sessions": sessions}


@app.patch("/api/sessions/{session_id}/end")
async def end_session(session_id: str, metrics: Optional[SessionMetrics] = None,
                      store: FileSessionStore = Depends(get_store), _auth=Depends(require_auth)):
    await store.end_session(session_id, metrics)
    return {"ok": True}


@app.get("/api/sessions/{session_id}")
async def get_session(session_id: str, store: FileSessionStore = Depends(get_store)):
    session = await store.get_session(session_id)
    return session.model_dump(mode="json", by_alias=True, exclude_none=True)


@app.post("/api/sessions/{session_id}/events")
async def append_events(session_id: str, body: AppendEventsRequest, store: FileSessionStore = Depends(get_store),
                        _auth=Depends(require_auth)):
    await store.append_events(session_id, body.events)
    return {"ok": True}


@app.post("/api/uploads/video")
async def upload_video(session_id: str = Form(..., alias="sessionId"), file: UploadFile = File(...),
                       store: FileSessionStore = Depends(get_store), _auth=Depends(require_auth)):
    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Empty upload")
    url = await store.upload_video(session_id, data, file.filename)
    return {"url": url}


@app.get("/uploads/{name}")
async def get_upload(name: str, store: FileSessionStore = Depends(get_store)):
    path = store.upload_path(name)
    if path is None:
        raise HTTPException(status_code=404, detail="Upload not found")
    return FileResponse(path)


@app.get("/api/reports/{session_id}")
async def get_report(session_id: str, store: FileSessionStore = Depends(get_store)):
    """Integrity report for a session"""
    report = await store.get_report(session_id)
    return report.model_dump(mode="json", by_alias=True)


@app.get("/sessions")
async def get_active_sessions():
    """Get list of live WebSocket sessions"""
    return {
        "active_sessions": len(active_sessions),
        "sessions": [
            {
                "session_id": session_id,
                "focus_state": session.focus_state,
                "avg_fps": round(session.scheduler.avg_fps, 2),
                "dropped_frames": session.scheduler.dropped_frames
            }
            for session_id, session in active_sessions.items()
        ]
    }


@app.get("/export/{session_id}/json")
async def export_session_json(session_id: str, store: FileSessionStore = Depends(get_store)):
    """Export session data and report as JSON file"""
    session = await store.get_session(session_id)
    report = await store.get_report(session_id)

    json_content = json.dumps({
        "session": session.model_dump(mode="json", by_alias=True, exclude_none=True),
        "report": report.model_dump(mode="json", by_alias=True),
        "episodes": [
            episode.model_dump(mode="json", by_alias=True)
            for episode in segment_episodes(session.events, settings.COOLDOWN_MS)
        ]
    }, indent=2)
    filename = f"session_report_{session_id}.json"

    return Response(
        content=json_content,
        media_type="application/json",
        headers={"Content-Disposition": f"attachment; filename={filename}"}
    )


@app.get("/export/{session_id}/csv")
async def export_session_csv(session_id: str, store: FileSessionStore = Depends(get_store)):
    """Export session events as CSV file"""
    session = await store.get_session(session_id)

    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(['Timestamp', 'Event Type', 'Duration (ms)', 'Details'])

    for event in sorted(session.events, key=lambda e: e.ts):
        writer.writerow([
            datetime.fromtimestamp(event.ts / 1000).isoformat(),
            event.type.value,
            event.duration if event.duration is not None else '',
            json.dumps(event.meta) if event.meta else ''
        ])

    filename = f"session_events_{session_id}.csv"
    return Response(
        content=output.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"}
    )


@app.websocket("/ws/{session_id}")
async def websocket_endpoint(websocket: WebSocket, session_id: str):
    """WebSocket endpoint for real-time frame analysis"""
    await websocket.accept()

    storage = get_live_storage()
    try:
        await storage.get_session(session_id)
    except SessionNotFound:
        await websocket.send_text(to_wire(ErrorMessage(payload=ErrorPayload(message="Session not found", fatal=True))))
        await websocket.close(code=4404)
        return
    except DeliveryError as e:
        logger.error(f"Session lookup failed for {session_id}: {e}")
        await websocket.send_text(to_wire(ErrorMessage(payload=ErrorPayload(message=str(e), fatal=True))))
        await websocket.close(code=1011)
        return

    pending_sends: Set[asyncio.Task] = set()

    async def forward(message):
        await websocket.send_text(to_wire(message))

    def report_error(message: str):
        task = asyncio.create_task(forward(ErrorMessage(payload=ErrorPayload(message=message))))
        pending_sends.add(task)
        task.add_done_callback(pending_sends.discard)

    source = FrameBufferSource()
    session = build_proctoring_session(session_id, storage, source, on_message=forward, on_error=report_error)
    active_sessions[session_id] = session
    await session.start()

    logger.info(f"🔌 New WebSocket connection: {session_id}")

    try:
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except ValueError:
                await forward(ErrorMessage(payload=ErrorPayload(message="Invalid message")))
                continue

            if message.get('type') == 'frame':
                frame = decode_base64_image(message.get('image', ''))
                if frame is not None:
                    source.push(frame)
                else:
                    await forward(ErrorMessage(payload=ErrorPayload(message="Failed to decode image")))

            elif message.get('type') == 'reset':
                session.reset()

            elif message.get('type') == 'visibility':
                await session.set_analysis_enabled(bool(message.get('visible', True)))

    except WebSocketDisconnect:
        logger.info(f"🔌 WebSocket disconnected: {session_id}")

    except Exception as e:
        logger.error(f"WebSocket error for {session_id}: {e}")
        await websocket.close()

    finally:
        await session.stop()
        active_sessions.pop(session_id, None)


def run():
    import uvicorn
    uvicorn.run(
        "focus_proctor.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=True,
        log_level="info"
    )


if __name__ == "__main__":
    run()
