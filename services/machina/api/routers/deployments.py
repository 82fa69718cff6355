"""Deployment read, log streaming and lifecycle endpoints.

Endpoints:
    GET    /api/v1/deployments                       (list, team-scoped)
    GET    /api/v1/deployments/{id}                  (show)
    GET    /api/v1/deployments/{id}/logs             (durable log lines)
    GET    /api/v1/deployments/{id}/logs?stream=true (server-sent events)
    POST   /api/v1/deployments/{id}/cancel           (cancel before apply)
    POST   /api/v1/deployments/{id}/approve          (apply a reviewed plan)
"""

import asyncio
import json
from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse

from machina.api.dependencies import TeamContext, get_orchestrator, get_store, get_team_context
from machina.db.models import Deployment
from machina.logging_config import get_logger
from machina.services import deployment_service
from machina.services.deployment_orchestrator import DeploymentOrchestrator
from machina.services.deployment_service import (
    DeploymentNotFoundError,
    InvalidTransitionError,
    is_terminal,
)
from machina.services.log_broadcast import LogEvent
from machina.store.protocol import RecordStore

router = APIRouter(prefix="/deployments", tags=["deployments"])
logger = get_logger(__name__)

SSE_KEEPALIVE_SECONDS = 15.0
SSE_QUEUE_SIZE = 1000


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt is not None else None


def deployment_json(deployment: Deployment, include_logs: bool = False) -> dict[str, Any]:
    data: dict[str, Any] = {
        "deployment_id": deployment.id,
        "machine_id": deployment.machine_id,
        "team_id": deployment.team_id,
        "type": deployment.type,
        "state": deployment.state,
        "require_approval": deployment.require_approval,
        "plan_summary": deployment.plan_summary,
        "error_message": deployment.error_message,
        "initiated_by": deployment.initiated_by,
        "created_at": _iso(deployment.created_at),
        "started_at": _iso(deployment.started_at),
        "finished_at": _iso(deployment.finished_at),
    }
    if include_logs:
        data["logs"] = list(deployment.logs or [])
    return data


async def _get_deployment(store: RecordStore, deployment_id: str, team_id: str) -> Deployment:
    try:
        return await deployment_service.get_deployment(store, deployment_id, team_id)
    except DeploymentNotFoundError:
        raise HTTPException(status_code=404, detail="Deployment not found") from None


@router.get("")
async def list_deployments(
    machine_id: str | None = Query(default=None),
    type: str | None = Query(default=None),
    state: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    team: TeamContext = Depends(get_team_context),
    store: RecordStore = Depends(get_store),
) -> dict[str, Any]:
    deployments = await deployment_service.list_deployments(
        store,
        team.team_id,
        machine_id=machine_id,
        deployment_type=type,
        state=state,
        page_number=page,
        page_size=page_size,
    )
    return {"data": [deployment_json(d) for d in deployments], "page": page}


@router.get("/{deployment_id}")
async def show_deployment(
    deployment_id: str,
    team: TeamContext = Depends(get_team_context),
    store: RecordStore = Depends(get_store),
) -> dict[str, Any]:
    deployment = await _get_deployment(store, deployment_id, team.team_id)
    return {"data": deployment_json(deployment, include_logs=True)}


def _sse(event: str, payload: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(payload, ensure_ascii=True)}\n\n"


async def _log_stream(
    deployment_id: str, store: RecordStore, orchestrator: DeploymentOrchestrator
) -> AsyncIterator[str]:
    """Replay persisted lines, then relay live ones until the deployment ends."""
    queue: asyncio.Queue[LogEvent] = asyncio.Queue(maxsize=SSE_QUEUE_SIZE)

    def on_event(event: LogEvent) -> None:
        # Drop lines for a viewer that cannot keep up
        if not queue.full():
            queue.put_nowait(event)

    # Register before the replay read so no line falls between the two
    orchestrator.registry.register(deployment_id, on_event)
    try:
        deployment = await store.get_deployment(deployment_id)
        replayed: set[tuple[str, str]] = set()
        for entry in (deployment.logs if deployment else None) or []:
            replayed.add((entry.get("timestamp", ""), entry.get("message", "")))
            yield _sse("log", entry)

        while deployment is not None and not is_terminal(deployment.state):
            try:
                event = await asyncio.wait_for(queue.get(), timeout=SSE_KEEPALIVE_SECONDS)
            except TimeoutError:
                yield ": keep-alive\n\n"
                deployment = await store.get_deployment(deployment_id)
                continue

            entry = event.to_dict()
            if (entry["timestamp"], entry["message"]) in replayed:
                continue
            yield _sse("log", entry)
            # Check for a terminal state once the burst is drained
            if queue.empty():
                deployment = await store.get_deployment(deployment_id)

        if deployment is not None:
            yield _sse("end", {"state": deployment.state})
    finally:
        orchestrator.registry.unregister(deployment_id, on_event)


@router.get("/{deployment_id}/logs", response_model=None)
async def deployment_logs(
    deployment_id: str,
    stream: bool = Query(default=False),
    team: TeamContext = Depends(get_team_context),
    store: RecordStore = Depends(get_store),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any] | StreamingResponse:
    deployment = await _get_deployment(store, deployment_id, team.team_id)
    if not stream:
        return {"data": list(deployment.logs or [])}

    return StreamingResponse(
        _log_stream(deployment_id, store, orchestrator),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("/{deployment_id}/cancel")
async def cancel_deployment(
    deployment_id: str,
    team: TeamContext = Depends(get_team_context),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    try:
        deployment = await orchestrator.cancel(deployment_id, team.team_id)
    except DeploymentNotFoundError:
        raise HTTPException(status_code=404, detail="Deployment not found") from None
    except InvalidTransitionError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Deployment cannot be cancelled while {e.current}",
        ) from None
    logger.info("Deployment cancelled", deployment_id=deployment_id, user_id=team.user_id)
    return {"data": deployment_json(deployment)}


@router.post("/{deployment_id}/approve")
async def approve_deployment(
    deployment_id: str,
    team: TeamContext = Depends(get_team_context),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    try:
        deployment = await orchestrator.approve(deployment_id, team.team_id)
    except DeploymentNotFoundError:
        raise HTTPException(status_code=404, detail="Deployment not found") from None
    except InvalidTransitionError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Deployment is not awaiting approval (state: {e.current})",
        ) from None
    logger.info("Deployment approved", deployment_id=deployment_id, user_id=team.user_id)
    return {"data": deployment_json(deployment)}
