"""Backend adapters: apply a commit's changes to the portfolio or enrichment service.

Both services are external HTTP APIs. Every call carries a bounded timeout so
a hung backend fails the leg instead of leaving the job in-progress forever.
Errors of any kind are raised as ``BackendFailure``.
"""

from typing import Any, Protocol

import httpx
import structlog

from app.core.config import get_settings
from app.core.exceptions import BackendFailure
from app.domain.workflow import Target

logger = structlog.get_logger(__name__)


class BackendAdapter(Protocol):
    """Applies a commit's changes to one backend."""

    target: Target

    async def apply_changes(self, commit_id: str, changes: list[dict[str, Any]]) -> dict[str, Any]: ...


class _HttpBackend:
    """Shared POST /v2/commits/{id}/apply plumbing for both backends."""

    target: Target

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout_seconds: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def _post_changes(self, commit_id: str, changes: list[dict[str, Any]]) -> dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout_seconds, connect=10.0),
                transport=self._transport,
            ) as client:
                response = await client.post(
                    f"/v2/commits/{commit_id}/apply",
                    headers=headers,
                    json={"commit_id": commit_id, "changes": changes},
                )
                response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise BackendFailure(
                self.target.value, f"{self.target.value} backend timed out after {self.timeout_seconds:.0f}s"
            ) from exc
        except httpx.HTTPStatusError as exc:
            body = exc.response.text[:500]
            raise BackendFailure(
                self.target.value, f"{self.target.value} backend returned HTTP {exc.response.status_code}: {body}"
            ) from exc
        except httpx.RequestError as exc:
            raise BackendFailure(self.target.value, f"{self.target.value} backend unreachable: {exc}") from exc

        try:
            return response.json()
        except ValueError as exc:
            raise BackendFailure(self.target.value, f"{self.target.value} backend returned invalid JSON") from exc


class PortfolioBackend(_HttpBackend):
    """Portfolio (D1CV) database API. Returns inserted/updated/deleted counts."""

    target = Target.PORTFOLIO

    async def apply_changes(self, commit_id: str, changes: list[dict[str, Any]]) -> dict[str, Any]:
        data = await self._post_changes(commit_id, changes)
        if data.get("success") is False or data.get("error"):
            raise BackendFailure(self.target.value, data.get("error") or data.get("message") or "Portfolio apply failed")

        counts = {key: int(data.get(key, 0) or 0) for key in ("inserted", "updated", "deleted")}
        logger.info("portfolio_changes_applied", commit_id=commit_id, changes=len(changes), **counts)
        return {"message": f"Applied {len(changes)} change(s) to portfolio", "counts": counts}


class EnrichmentBackend(_HttpBackend):
    """AI agent enrichment API. The service re-indexes embeddings after a successful apply."""

    target = Target.ENRICHMENT

    async def apply_changes(self, commit_id: str, changes: list[dict[str, Any]]) -> dict[str, Any]:
        data = await self._post_changes(commit_id, changes)
        if not data.get("success"):
            raise BackendFailure(self.target.value, data.get("message") or data.get("error") or "Enrichment apply failed")

        logger.info("enrichment_changes_applied", commit_id=commit_id, changes=len(changes))
        return {"message": data.get("message") or f"Applied {len(changes)} change(s) to enrichment", "counts": {}}


def get_portfolio_backend() -> PortfolioBackend:
    settings = get_settings()
    return PortfolioBackend(
        base_url=settings.portfolio_api_url,
        token=settings.portfolio_api_token,
        timeout_seconds=settings.portfolio_timeout_seconds,
    )


def get_enrichment_backend() -> EnrichmentBackend:
    settings = get_settings()
    return EnrichmentBackend(
        base_url=settings.enrichment_api_url,
        token=settings.enrichment_api_token,
        timeout_seconds=settings.enrichment_timeout_seconds,
    )
