from fastapi import APIRouter, Depends, WebSocket

from app.api.deps import get_push_job_store
from app.core.auth import require_ws_auth
from app.queue.push_jobs import PushJobStore
from app.realtime.hub import JobStatusHub, get_hub

router = APIRouter()

AUTH_REQUIRED_CLOSE_CODE = 4401


@router.websocket("/ws")
async def job_status_socket(
    websocket: WebSocket,
    hub: JobStatusHub = Depends(get_hub),
    jobs: PushJobStore = Depends(get_push_job_store),
):
    """Real-time push job status. Closes with 4401 when the Access session is missing or expired."""
    user = await require_ws_auth(websocket)
    await websocket.accept()
    if user is None:
        await websocket.close(code=AUTH_REQUIRED_CLOSE_CODE, reason="auth_required")
        return
    await hub.serve(websocket, jobs, user=user.email)
