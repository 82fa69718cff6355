"""Machine endpoints.

Endpoints:
    POST   /api/v1/machines                          (create, queues a create deployment)
    GET    /api/v1/machines/{id}                     (show)
    POST   /api/v1/machines/{id}/destroy
    POST   /api/v1/machines/{id}/reboot
    POST   /api/v1/machines/{id}/update
    POST   /api/v1/machines/{id}/restart-service
    POST   /api/v1/machines/{id}/refresh
    POST   /api/v1/machines/sync                     (one reconciliation sweep)
"""

from collections.abc import Awaitable
from datetime import datetime
from typing import Any, TypeVar

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from machina.api.dependencies import TeamContext, get_orchestrator, get_store, get_team_context
from machina.api.routers.deployments import deployment_json
from machina.db.models import Machine
from machina.logging_config import get_logger
from machina.services import machine_service
from machina.services.credential_service import CredentialCorruptedError, CredentialsNotFoundError
from machina.services.deployment_orchestrator import DeploymentOrchestrator
from machina.services.deployment_service import DeploymentConflictError
from machina.services.machine_service import (
    MachineNotFoundError,
    MachineStateError,
    ProfileNotFoundError,
    ProviderAccountNotFoundError,
)
from machina.services.provider_client import UnsupportedProviderError
from machina.services.reconciler import CHANGING_ACTIONS, ProviderReconciler
from machina.store.protocol import RecordStore

router = APIRouter(prefix="/machines", tags=["machines"])
logger = get_logger(__name__)

T = TypeVar("T")


class MachineCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    provider_account_id: str
    region: str
    size: str
    image: str
    tags: dict[str, str] = Field(default_factory=dict)
    firewall_profile_id: str | None = None
    bootstrap_profile_id: str | None = None
    ssh_key_ids: list[str] = Field(default_factory=list)
    require_approval: bool = False


class MachineUpdateRequest(BaseModel):
    size: str | None = None
    tags: dict[str, str] | None = None
    firewall_profile_id: str | None = None
    require_approval: bool = False


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt is not None else None


def _machine_json(machine: Machine) -> dict[str, Any]:
    return {
        "machine_id": machine.id,
        "team_id": machine.team_id,
        "name": machine.name,
        "provider": machine.provider_type,
        "provider_account_id": machine.provider_account_id,
        "provider_resource_id": machine.provider_resource_id,
        "region": machine.region,
        "size": machine.size,
        "image": machine.image,
        "tags": machine.tags,
        "desired_status": machine.desired_status,
        "actual_status": machine.actual_status,
        "public_ip": machine.public_ip,
        "private_ip": machine.private_ip,
        "terraform_workspace": machine.terraform_workspace,
        "terraform_state_status": machine.terraform_state_status,
        "firewall_profile_id": machine.firewall_profile_id,
        "bootstrap_profile_id": machine.bootstrap_profile_id,
        "ssh_key_ids": machine.ssh_key_ids,
        "created_at": _iso(machine.created_at),
        "updated_at": _iso(machine.updated_at),
    }


async def _admit(call: Awaitable[T]) -> T:
    """Await a machine_service request, mapping domain errors to HTTP errors."""
    try:
        return await call
    except (MachineNotFoundError, ProviderAccountNotFoundError, ProfileNotFoundError) as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from None
    except CredentialsNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No credentials found for this provider account. "
            "Please add your API token in Provider settings.",
        ) from None
    except CredentialCorruptedError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from None
    except UnsupportedProviderError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from None
    except MachineStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from None
    except DeploymentConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from None


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_machine(
    body: MachineCreateRequest,
    team: TeamContext = Depends(get_team_context),
    store: RecordStore = Depends(get_store),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    machine, deployment = await _admit(
        machine_service.request_create(
            store,
            orchestrator,
            team.team_id,
            team.user_id,
            **body.model_dump(),
        )
    )
    return {"data": {"machine": _machine_json(machine), "deployment": deployment_json(deployment)}}


@router.post("/sync")
async def sync_machines(
    team: TeamContext = Depends(get_team_context),
    store: RecordStore = Depends(get_store),
) -> dict[str, Any]:
    """Run one reconciliation sweep and report this team's machines."""
    result = await ProviderReconciler(store).reconcile()
    team_results = [diff.to_dict() for diff in result.results if diff.team_id == team.team_id]
    changed = sum(1 for diff in team_results if diff["action"] in CHANGING_ACTIONS)
    return {"data": {"synced": changed, "results": team_results}}


@router.get("/{machine_id}")
async def show_machine(
    machine_id: str,
    team: TeamContext = Depends(get_team_context),
    store: RecordStore = Depends(get_store),
) -> dict[str, Any]:
    machine = await _admit(machine_service.get_machine(store, machine_id, team.team_id))
    return {"data": _machine_json(machine)}


@router.post("/{machine_id}/destroy", status_code=status.HTTP_202_ACCEPTED)
async def destroy_machine(
    machine_id: str,
    team: TeamContext = Depends(get_team_context),
    store: RecordStore = Depends(get_store),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    deployment = await _admit(
        machine_service.request_destroy(
            store, orchestrator, team.team_id, machine_id, team.user_id
        )
    )
    return {"data": {"deployment": deployment_json(deployment)}}


@router.post("/{machine_id}/reboot", status_code=status.HTTP_202_ACCEPTED)
async def reboot_machine(
    machine_id: str,
    team: TeamContext = Depends(get_team_context),
    store: RecordStore = Depends(get_store),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    deployment = await _admit(
        machine_service.request_reboot(store, orchestrator, team.team_id, machine_id, team.user_id)
    )
    return {"data": {"deployment": deployment_json(deployment)}}


@router.post("/{machine_id}/update", status_code=status.HTTP_202_ACCEPTED)
async def update_machine(
    machine_id: str,
    body: MachineUpdateRequest,
    team: TeamContext = Depends(get_team_context),
    store: RecordStore = Depends(get_store),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    deployment = await _admit(
        machine_service.request_update(
            store,
            orchestrator,
            team.team_id,
            machine_id,
            team.user_id,
            **body.model_dump(),
        )
    )
    return {"data": {"deployment": deployment_json(deployment)}}


@router.post("/{machine_id}/restart-service", status_code=status.HTTP_202_ACCEPTED)
async def restart_machine_service(
    machine_id: str,
    team: TeamContext = Depends(get_team_context),
    store: RecordStore = Depends(get_store),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    deployment = await _admit(
        machine_service.request_restart_service(
            store, orchestrator, team.team_id, machine_id, team.user_id
        )
    )
    return {"data": {"deployment": deployment_json(deployment)}}


@router.post("/{machine_id}/refresh", status_code=status.HTTP_202_ACCEPTED)
async def refresh_machine(
    machine_id: str,
    team: TeamContext = Depends(get_team_context),
    store: RecordStore = Depends(get_store),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    deployment = await _admit(
        machine_service.request_refresh(store, orchestrator, team.team_id, machine_id, team.user_id)
    )
    return {"data": {"deployment": deployment_json(deployment)}}
