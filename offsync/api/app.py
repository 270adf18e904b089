"""FastAPI application exposing the sync service."""

import logging
from datetime import datetime
from typing import Any

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from ..clock import utcnow
from ..config import Config
from ..errors import (
    DrainInProgressError,
    InvalidChangeError,
    InvalidStrategyError,
    RecordNotFoundError,
    StaleRecordError,
    SyncError,
)
from ..service import SyncService
from ..sync import SyncResult

logger = logging.getLogger(__name__)


class EnqueueRequest(BaseModel):
    """A single offline mutation reported by a reconnecting client."""

    resource_type: str
    action: str
    payload: dict[str, Any] = Field(default_factory=dict)
    client_id: str
    enqueued_at: datetime | None = None


class ResolveRequest(BaseModel):
    """A reviewer's decision on conflicts kept by a manual-strategy drain."""

    values: dict[str, Any] | None = None
    note: str | None = None


def _results(results: list[SyncResult]) -> dict[str, Any]:
    return {
        "count": len(results),
        "succeeded": sum(1 for r in results if r.success),
        "results": [r.to_dict() for r in results],
    }


def _http_error(exc: SyncError) -> HTTPException:
    if isinstance(exc, DrainInProgressError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (InvalidStrategyError, InvalidChangeError)):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, RecordNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, StaleRecordError):
        return HTTPException(status_code=409, detail=str(exc))
    logger.error(f"Sync request failed: {exc}")
    return HTTPException(status_code=500, detail=str(exc))


def create_app(config: Config, service: SyncService) -> FastAPI:
    """Create the FastAPI sync application.

    Handlers are plain functions so FastAPI runs them on its worker
    thread pool; store and adapter calls block.

    Args:
        config: Application configuration.
        service: Sync service to expose.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="offsync",
        description="Offline change replay and conflict resolution",
        version="0.1.0",
    )

    app.state.config = config
    app.state.service = service

    @app.post("/api/sync/{user_id}/changes", status_code=201)
    def enqueue_change(user_id: str, body: EnqueueRequest) -> dict[str, Any]:
        """Queue an offline mutation."""
        try:
            change_id = service.enqueue(
                user_id,
                body.resource_type,
                body.action,
                body.payload,
                body.client_id,
                body.enqueued_at,
            )
        except SyncError as e:
            raise _http_error(e) from e
        return {"id": change_id, "status": "pending"}

    @app.get("/api/sync/{user_id}/changes")
    def list_changes(
        user_id: str,
        status: str | None = None,
        limit: int = Query(50, ge=1, le=1000),
    ) -> dict[str, Any]:
        """List a user's queued changes."""
        try:
            changes = service.list_changes(user_id, status=status, limit=limit)
        except ValueError:
            raise HTTPException(
                status_code=400, detail=f"Unknown status: {status}"
            ) from None
        return {
            "count": len(changes),
            "changes": [c.to_dict() for c in changes],
        }

    @app.post("/api/sync/{user_id}/drain")
    def drain(user_id: str, strategy: str) -> dict[str, Any]:
        """Apply every pending change for the user."""
        try:
            return _results(service.drain(user_id, strategy))
        except SyncError as e:
            raise _http_error(e) from e

    @app.post("/api/sync/{user_id}/retry")
    def retry(user_id: str, strategy: str) -> dict[str, Any]:
        """Re-queue failed changes and drain."""
        try:
            return _results(service.retry(user_id, strategy))
        except SyncError as e:
            raise _http_error(e) from e

    @app.get("/api/sync/{user_id}/status")
    def status(user_id: str) -> dict[str, Any]:
        """Change counts by status."""
        return {"user_id": user_id, **service.status(user_id)}

    @app.get("/api/sync/{user_id}/conflicts")
    def list_conflicts(user_id: str) -> dict[str, Any]:
        """Completed changes whose conflicts await review."""
        changes = service.list_unresolved(user_id)
        return {
            "count": len(changes),
            "changes": [c.to_dict() for c in changes],
        }

    @app.post("/api/sync/{user_id}/conflicts/{change_id}/resolve")
    def resolve_conflicts(
        user_id: str, change_id: int, body: ResolveRequest
    ) -> dict[str, Any]:
        """Record the review outcome, writing any chosen values to the record."""
        try:
            change = service.resolve_conflicts(
                user_id, change_id, values=body.values, note=body.note
            )
        except SyncError as e:
            raise _http_error(e) from e
        return change.to_dict()

    @app.delete("/api/sync/{user_id}/completed")
    def purge_completed(
        user_id: str, older_than: datetime | None = None
    ) -> dict[str, Any]:
        """Delete completed changes, optionally only those processed before a time."""
        return {"deleted": service.purge_completed(user_id, older_than)}

    @app.get("/api/health")
    def api_health() -> dict[str, Any]:
        """Health check endpoint for monitoring and load balancers."""
        return {
            "status": "ok",
            "timestamp": utcnow().isoformat(),
            "node_name": config.node.name,
            "resource_types": service.registry.resource_types,
        }

    return app
