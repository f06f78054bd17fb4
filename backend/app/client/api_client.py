"""ApiClient: typed async wrapper over the /v2 REST surface."""

from typing import Any

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.client.errors import ApiError, AuthRequired, NetworkError, RequestTimeout

logger = structlog.get_logger(__name__)

REQUEST_TIMEOUT_SECONDS = 30.0
ACCESS_LOGIN_MARKER = "cloudflareaccess"


def _error_from_response(response: httpx.Response) -> ApiError:
    try:
        body = response.json()
    except ValueError:
        body = {}

    detail = body.get("detail") if isinstance(body, dict) else None
    debug_id = body.get("debug_id") if isinstance(body, dict) else None
    if isinstance(detail, dict):
        message = detail.get("message") or f"HTTP {response.status_code}"
        code = detail.get("code")
    elif isinstance(detail, str):
        message, code = detail, None
    elif isinstance(detail, list):
        # FastAPI request validation errors
        message = "; ".join(str(e.get("msg", e)) for e in detail if isinstance(e, dict)) or "Invalid request"
        code = "invalid_argument"
    else:
        message, code = f"HTTP {response.status_code}", None

    if response.status_code in (401, 403):
        return AuthRequired(message, status=response.status_code, code=code or "auth_required")

    error = ApiError(message, response.status_code, code)
    error.debug_id = debug_id
    return error


class ApiClient:
    """Async client for the curation backend.

    Authentication rides on the Cloudflare Access cookie or service token
    headers supplied by the caller; a redirect to the Access login page is
    reported as ``AuthRequired``. Idempotent GETs retry on timeouts and
    network errors.
    """

    def __init__(
        self,
        base_url: str,
        cookies: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_attempts: int = 3,
        retry_wait=None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            cookies=cookies,
            headers={"Content-Type": "application/json", **(headers or {})},
            timeout=timeout,
            transport=transport,
            follow_redirects=False,
        )
        self.retry_attempts = retry_attempts
        self.retry_wait = retry_wait if retry_wait is not None else wait_exponential(multiplier=1, min=1, max=8)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _send(self, method: str, path: str, json: Any = None, params: dict | None = None) -> Any:
        try:
            response = await self._client.request(method, path, json=json, params=params)
        except httpx.TimeoutException as exc:
            raise RequestTimeout() from exc
        except httpx.RequestError as exc:
            raise NetworkError(str(exc) or type(exc).__name__) from exc

        if response.is_redirect:
            location = response.headers.get("location", "")
            if ACCESS_LOGIN_MARKER in location:
                raise AuthRequired("Access session expired; login required", status=response.status_code)
            raise ApiError(f"Unexpected redirect to {location}", response.status_code)

        if response.is_error:
            raise _error_from_response(response)

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def _get(self, path: str, params: dict | None = None) -> Any:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type((RequestTimeout, NetworkError)),
            stop=stop_after_attempt(self.retry_attempts),
            wait=self.retry_wait,
            reraise=True,
            before_sleep=lambda rs: logger.warning(
                "api_get_retrying",
                path=path,
                attempt=rs.attempt_number,
                error=repr(rs.outcome.exception()),
            ),
        ):
            with attempt:
                return await self._send("GET", path, params=params)

    # ------------------------------------------------------------------
    # Staging
    # ------------------------------------------------------------------

    async def list_staged(self) -> dict[str, Any]:
        return await self._get("/v2/staged")

    async def stage(
        self,
        entity_type: str,
        action: str,
        target: str,
        payload: dict[str, Any] | None = None,
        entity_id: str | None = None,
        stable_id: str | None = None,
    ) -> dict[str, Any]:
        body = {
            "entity_type": entity_type,
            "action": action,
            "target": target,
            "payload": payload or {},
            "entity_id": entity_id,
            "stable_id": stable_id,
        }
        return await self._send("POST", "/v2/stage", json=body)

    async def get_staged(self, change_id: str) -> dict[str, Any]:
        return await self._get(f"/v2/staged/{change_id}")

    async def amend_staged(
        self, change_id: str, payload: dict[str, Any] | None = None, target: str | None = None
    ) -> dict[str, Any]:
        body = {k: v for k, v in (("payload", payload), ("target", target)) if v is not None}
        return await self._send("PATCH", f"/v2/staged/{change_id}", json=body)

    async def delete_staged(self, change_id: str) -> None:
        await self._send("DELETE", f"/v2/staged/{change_id}")

    async def clear_staged(self) -> int:
        data = await self._send("DELETE", "/v2/staged")
        return data["deleted"]

    async def stats(self) -> dict[str, int]:
        return await self._get("/v2/stats")

    # ------------------------------------------------------------------
    # Commits and pushes
    # ------------------------------------------------------------------

    async def list_commits(self, status: str | None = None) -> list[dict[str, Any]]:
        return await self._get("/v2/commits", params={"status": status} if status else None)

    async def get_commit(self, commit_id: str) -> dict[str, Any]:
        return await self._get(f"/v2/commits/{commit_id}")

    async def create_commit(self, message: str, change_ids: list[str] | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {"message": message}
        if change_ids is not None:
            body["change_ids"] = change_ids
        return await self._send("POST", "/v2/commit", json=body)

    async def push_portfolio(self, commit_id: str) -> dict[str, Any]:
        return await self._send("POST", "/v2/push/d1cv", json={"commit_id": commit_id})

    async def push_enrichment(self, commit_id: str) -> dict[str, Any]:
        return await self._send("POST", "/v2/push/ai", json={"commit_id": commit_id})

    async def push_all(self, commit_id: str) -> dict[str, Any]:
        return await self._send("POST", "/v2/push/all", json={"commit_id": commit_id})

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> dict[str, Any]:
        return await self._get(f"/v2/jobs/{job_id}")

    async def list_active_jobs(self) -> list[dict[str, Any]]:
        data = await self._get("/v2/jobs", params={"active": "true"})
        return data["jobs"]

    async def list_commit_jobs(self, commit_id: str) -> list[dict[str, Any]]:
        data = await self._get(f"/v2/commits/{commit_id}/jobs")
        return data["jobs"]
