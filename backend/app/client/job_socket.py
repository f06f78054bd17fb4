"""JobSocket: persistent connection to the /v2/ws job status channel.

Reconnect policy: after an abnormal close, wait ``reconnect_delay`` seconds
and reconnect, forever. A normal close (1000) ends the loop. A 4401 close
or a 401/403 handshake means the Access session is gone; the loop stops
and raises ``AuthRequired``.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosedError, InvalidStatus

from app.client.errors import AuthRequired
from app.domain.workflow import is_job_terminal

logger = structlog.get_logger(__name__)

NORMAL_CLOSE = 1000
AUTH_REQUIRED_CLOSE = 4401
PING_INTERVAL_SECONDS = 30.0
RECONNECT_DELAY_SECONDS = 5.0

Listener = Callable[[dict[str, Any]], Awaitable[None] | None]


class JobSocket:
    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        connect=ws_connect,
        reconnect_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        ping_interval: float = PING_INTERVAL_SECONDS,
        reconnect_delay: float = RECONNECT_DELAY_SECONDS,
    ):
        self.url = url
        self.headers = headers or {}
        self._connect = connect
        self._reconnect_sleep = reconnect_sleep
        self.ping_interval = ping_interval
        self.reconnect_delay = reconnect_delay

        self.subscriptions: set[str] = set()
        self.statuses: dict[str, dict[str, Any]] = {}
        self.active_jobs: list[dict[str, Any]] = []
        self.connected = False
        self.auth_required = False
        self.last_error: str | None = None
        self.connect_count = 0

        self._ws = None
        self._closing = False
        self._listeners: list[Listener] = []

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def subscribe(self, job_id: str) -> None:
        """Track ``job_id``; it is re-subscribed after every reconnect."""
        self.subscriptions.add(job_id)
        await self._send({"type": "subscribe", "jobId": job_id})

    async def unsubscribe(self, job_id: str) -> None:
        self.subscriptions.discard(job_id)
        self.statuses.pop(job_id, None)
        await self._send({"type": "unsubscribe", "jobId": job_id})

    async def request_active_jobs(self) -> None:
        await self._send({"type": "list-active"})

    async def _send(self, msg: dict[str, Any]) -> None:
        if self._ws is None:
            return  # sent on the next (re)connect
        await self._ws.send(json.dumps(msg))

    # ------------------------------------------------------------------
    # Connection loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Connect and process messages until closed normally or auth is lost."""
        while not self._closing:
            code = await self._run_once()

            if self._closing or code == NORMAL_CLOSE:
                logger.info("job_socket_closed", code=code)
                return
            if code == AUTH_REQUIRED_CLOSE:
                self.auth_required = True
                logger.warning("job_socket_auth_required")
                raise AuthRequired("Job status channel rejected the session")

            logger.info("job_socket_reconnecting", code=code, delay=self.reconnect_delay)
            await self._reconnect_sleep(self.reconnect_delay)

    async def _run_once(self) -> int | None:
        """One connection lifetime. Returns the close code (None when connecting failed)."""
        try:
            async with self._connect(self.url, additional_headers=self.headers, ping_interval=None) as ws:
                self._ws = ws
                self.connected = True
                self.connect_count += 1
                for job_id in sorted(self.subscriptions):
                    await ws.send(json.dumps({"type": "subscribe", "jobId": job_id}))

                pinger = asyncio.create_task(self._ping_loop(ws))
                try:
                    async for raw in ws:
                        await self._handle(raw)
                finally:
                    pinger.cancel()
                return ws.close_code
        except InvalidStatus as exc:
            if exc.response.status_code in (401, 403):
                return AUTH_REQUIRED_CLOSE
            logger.warning("job_socket_handshake_failed", status=exc.response.status_code)
            return None
        except ConnectionClosedError as exc:
            return exc.rcvd.code if exc.rcvd is not None else None
        except OSError as exc:
            logger.warning("job_socket_connect_failed", error=str(exc))
            return None
        finally:
            self._ws = None
            self.connected = False

    async def _ping_loop(self, ws) -> None:
        while True:
            await asyncio.sleep(self.ping_interval)
            await ws.send(json.dumps({"type": "ping"}))

    async def _handle(self, raw: str | bytes) -> None:
        try:
            msg = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("job_socket_bad_message")
            return

        msg_type = msg.get("type")
        if msg_type == "status" and msg.get("jobId") and isinstance(msg.get("data"), dict):
            job_id = msg["jobId"]
            if job_id in self.subscriptions or not _is_finished(msg["data"]):
                self.statuses[job_id] = msg["data"]
            else:
                # Finished job nobody tracks (wildcard traffic); keep nothing for it
                self.statuses.pop(job_id, None)
        elif msg_type == "active-jobs" and isinstance(msg.get("data"), list):
            self.active_jobs = msg["data"]
        elif msg_type == "error":
            self.last_error = msg.get("message") or "Unknown error"

        for listener in self._listeners:
            result = listener(msg)
            if asyncio.iscoroutine(result):
                await result

    async def close(self) -> None:
        """Close normally; ``run`` returns without reconnecting."""
        self._closing = True
        if self._ws is not None:
            await self._ws.close(code=NORMAL_CLOSE, reason="client disconnect")


def _is_finished(job: dict[str, Any]) -> bool:
    portfolio, enrichment = job.get("portfolioStatus"), job.get("enrichmentStatus")
    return bool(portfolio and enrichment) and is_job_terminal(portfolio, enrichment)
