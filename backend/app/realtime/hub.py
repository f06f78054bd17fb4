"""JobStatusHub: WebSocket fan-out of push job state.

Redis owns the truth (see PushJobStore); the hub only delivers it. A late
or reconnecting subscriber pulls current state with ``subscribe`` instead
of depending on having seen every transition.

Message envelope (both directions)::

    {"type": ..., "jobId": ..., "data": ..., "message": ..., "timestamp": ...}
"""

import asyncio
import json
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any

import structlog
from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from redis.asyncio import Redis

from app.core.config import get_settings
from app.queue.push_jobs import PushJobStore
from app.queue.schemas import EVENTS_CHANNEL, PushJob

logger = structlog.get_logger(__name__)

WILDCARD = "all"
IDLE_CLOSE_CODE = 1001
SLOW_CLIENT_CLOSE_CODE = 1013


def envelope(
    msg_type: str,
    job_id: str | None = None,
    data: Any = None,
    message: str | None = None,
) -> dict[str, Any]:
    msg: dict[str, Any] = {"type": msg_type, "timestamp": datetime.now(UTC).isoformat()}
    if job_id is not None:
        msg["jobId"] = job_id
    if data is not None:
        msg["data"] = data
    if message is not None:
        msg["message"] = message
    return msg


class Connection:
    """One connected observer and the job ids it follows."""

    def __init__(self, websocket: WebSocket, user: str | None = None):
        self.websocket = websocket
        self.user = user
        self.subscriptions: set[str] = set()
        self._send_lock = asyncio.Lock()

    async def send(self, msg: dict[str, Any]) -> None:
        # Listener task and receive loop may both write to the same socket
        async with self._send_lock:
            await self.websocket.send_json(msg)


class JobStatusHub:
    def __init__(self, idle_timeout: float = 90.0, send_timeout: float = 5.0):
        self.idle_timeout = idle_timeout
        self.send_timeout = send_timeout
        self.connections: set[Connection] = set()
        self._listener: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def serve(self, websocket: WebSocket, jobs: PushJobStore, user: str | None = None) -> None:
        """Run one connection until it closes, goes idle, or fails. The socket must already be accepted."""
        conn = Connection(websocket, user)
        self.connections.add(conn)
        log = logger.bind(user=user)
        log.info("ws_client_connected", connections=len(self.connections))

        try:
            await conn.send(envelope("connected", message="Connected to job status channel"))
            while True:
                try:
                    raw = await asyncio.wait_for(websocket.receive_text(), timeout=self.idle_timeout)
                except TimeoutError:
                    log.info("ws_client_reaped", idle_seconds=self.idle_timeout)
                    await websocket.close(code=IDLE_CLOSE_CODE)
                    return
                await self.handle_message(conn, raw, jobs)
        except WebSocketDisconnect as exc:
            log.info("ws_client_disconnected", code=exc.code)
        except Exception:
            log.exception("ws_connection_error")
        finally:
            self.connections.discard(conn)

    async def handle_message(self, conn: Connection, raw: str, jobs: PushJobStore) -> None:
        try:
            msg = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            await conn.send(envelope("error", message="Invalid JSON"))
            return
        if not isinstance(msg, dict):
            await conn.send(envelope("error", message="Message must be a JSON object"))
            return

        msg_type = msg.get("type")
        job_id = msg.get("jobId")

        if msg_type == "ping":
            await conn.send(envelope("pong"))
        elif msg_type == "subscribe":
            if not job_id:
                await conn.send(envelope("error", message="subscribe requires jobId"))
                return
            await self._subscribe(conn, str(job_id), jobs)
        elif msg_type == "unsubscribe":
            if job_id:
                conn.subscriptions.discard(str(job_id))
        elif msg_type == "list-active":
            await self._send_active(conn, jobs)
        else:
            await conn.send(envelope("error", message=f"Unknown message type: {msg_type}"))

    async def _subscribe(self, conn: Connection, job_id: str, jobs: PushJobStore) -> None:
        if job_id == WILDCARD:
            conn.subscriptions.add(WILDCARD)
            await self._send_active(conn, jobs)
            return

        job = await jobs.get_job(job_id)
        if job is None:
            await conn.send(envelope("error", job_id=job_id, message=f"Job {job_id} not found"))
            return
        conn.subscriptions.add(job_id)
        # Current state right away, terminal or not
        await conn.send(envelope("status", job_id=job_id, data=job.to_wire()))

    async def _send_active(self, conn: Connection, jobs: PushJobStore) -> None:
        active = await jobs.list_active()
        await conn.send(envelope("active-jobs", data=[j.to_wire() for j in active]))

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def broadcast(self, job: PushJob) -> int:
        """Send a job's state to its subscribers and wildcard subscribers. Returns deliveries.

        Sends run concurrently, each bounded by ``send_timeout``; a
        subscriber that errors or stalls is dropped and closed, and it can
        pull current state again after reconnecting.
        """
        msg = envelope("status", job_id=job.job_id, data=job.to_wire())
        targets = [
            conn
            for conn in list(self.connections)
            if job.job_id in conn.subscriptions or WILDCARD in conn.subscriptions
        ]
        results = await asyncio.gather(*(self._deliver(conn, job.job_id, msg) for conn in targets))
        return sum(results)

    async def _deliver(self, conn: Connection, job_id: str, msg: dict[str, Any]) -> bool:
        try:
            await asyncio.wait_for(conn.send(msg), timeout=self.send_timeout)
            return True
        except Exception as exc:
            logger.warning("ws_send_failed", job_id=job_id, user=conn.user, error=str(exc) or type(exc).__name__)
            self.connections.discard(conn)

        try:
            await asyncio.wait_for(conn.websocket.close(code=SLOW_CLIENT_CLOSE_CODE), timeout=self.send_timeout)
        except Exception as exc:
            logger.info("ws_close_failed", user=conn.user, error=str(exc) or type(exc).__name__)
        return False

    async def run_listener(self, redis: Redis) -> None:
        """Forward ``push:events`` to local subscribers until cancelled."""
        pubsub = redis.pubsub()
        await pubsub.subscribe(EVENTS_CHANNEL)
        logger.info("ws_listener_started", channel=EVENTS_CHANNEL)
        try:
            while True:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if not message or message["type"] != "message":
                    continue
                try:
                    job = PushJob.model_validate_json(message["data"])
                except ValidationError:
                    logger.warning("ws_event_malformed", data=str(message["data"])[:200])
                    continue
                await self.broadcast(job)
        finally:
            await pubsub.unsubscribe(EVENTS_CHANNEL)
            await pubsub.aclose()

    @property
    def listening(self) -> bool:
        """True while the ``push:events`` listener task is alive."""
        return self._listener is not None and not self._listener.done()

    def start(self, redis: Redis) -> None:
        if self._listener is None or self._listener.done():
            self._listener = asyncio.create_task(self.run_listener(redis))

    async def stop(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        logger.info("ws_listener_stopped")


@lru_cache
def get_hub() -> JobStatusHub:
    """Process-wide hub (FastAPI dependency)."""
    settings = get_settings()
    return JobStatusHub(
        idle_timeout=settings.ws_idle_timeout_seconds,
        send_timeout=settings.ws_send_timeout_seconds,
    )
