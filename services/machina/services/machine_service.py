"""Machine admission: validate a caller's request and queue its deployment.

Callers never write actual_status; they record intent (desired_status and
configuration) and hand the queued deployment to the orchestrator. Every
request goes through create_deployment, so a machine with a deployment
still in flight rejects a second one with DeploymentConflictError.
"""

from typing import Any

from machina.db.models import (
    Deployment,
    DeploymentType,
    Machine,
    MachineStatus,
    ProviderAccount,
    TerraformStateStatus,
    new_id,
    utc_now,
)
from machina.logging_config import get_logger
from machina.services import credential_service
from machina.services.credential_vault import CredentialVault
from machina.services.deployment_orchestrator import DeploymentOrchestrator
from machina.services.deployment_service import create_deployment
from machina.services.provider_client import SUPPORTED_PROVIDERS, UnsupportedProviderError
from machina.store.protocol import RecordStore

logger = get_logger(__name__)

_GONE_STATUSES = frozenset({MachineStatus.TERMINATED, MachineStatus.TERMINATING})


class MachineNotFoundError(LookupError):
    pass


class ProviderAccountNotFoundError(LookupError):
    pass


class ProfileNotFoundError(LookupError):
    pass


class MachineStateError(ValueError):
    """The machine is not in a state that allows the requested action."""


async def get_machine(store: RecordStore, machine_id: str, team_id: str) -> Machine:
    machine = await store.get_machine(machine_id)
    if machine is None or machine.team_id != team_id:
        raise MachineNotFoundError(f"Machine {machine_id} not found")
    return machine


async def _team_account(store: RecordStore, account_id: str, team_id: str) -> ProviderAccount:
    account = await store.get_provider_account(account_id)
    if account is None or account.team_id != team_id:
        raise ProviderAccountNotFoundError("Provider account not found")
    return account


async def _require_credentials(
    store: RecordStore, account_id: str, team_id: str, vault: CredentialVault | None
) -> ProviderAccount:
    account = await _team_account(store, account_id, team_id)
    # Decrypting here surfaces a corrupt record before anything is queued
    await credential_service.get_credentials(store, account, vault)
    return account


async def _queue(
    store: RecordStore,
    orchestrator: DeploymentOrchestrator,
    machine: Machine,
    deployment_type: DeploymentType,
    initiated_by: str,
    require_approval: bool = False,
) -> Deployment:
    deployment = await create_deployment(
        store,
        machine,
        deployment_type,
        initiated_by=initiated_by,
        require_approval=require_approval,
    )
    orchestrator.start(deployment.id)
    return deployment


def _require_live(machine: Machine, action: str) -> None:
    if machine.actual_status in _GONE_STATUSES:
        raise MachineStateError(f"Cannot {action} a {machine.actual_status} machine")


async def request_create(
    store: RecordStore,
    orchestrator: DeploymentOrchestrator,
    team_id: str,
    initiated_by: str,
    *,
    name: str,
    provider_account_id: str,
    region: str,
    size: str,
    image: str,
    tags: dict[str, Any] | None = None,
    firewall_profile_id: str | None = None,
    bootstrap_profile_id: str | None = None,
    ssh_key_ids: list[str] | None = None,
    require_approval: bool = False,
    vault: CredentialVault | None = None,
) -> tuple[Machine, Deployment]:
    """Create a pending machine and queue its create deployment."""
    account = await _require_credentials(store, provider_account_id, team_id, vault)
    if account.provider_type not in SUPPORTED_PROVIDERS:
        raise UnsupportedProviderError(f"Unsupported provider: {account.provider_type}")

    if firewall_profile_id:
        firewall = await store.get_firewall_profile(firewall_profile_id)
        if firewall is None or firewall.team_id != team_id:
            raise ProfileNotFoundError(f"Firewall profile {firewall_profile_id} not found")
    if bootstrap_profile_id:
        bootstrap = await store.get_bootstrap_profile(bootstrap_profile_id)
        if bootstrap is None or bootstrap.team_id != team_id:
            raise ProfileNotFoundError(f"Bootstrap profile {bootstrap_profile_id} not found")

    machine_id = new_id("mach")
    now = utc_now()
    machine = Machine(
        id=machine_id,
        team_id=team_id,
        name=name,
        provider_type=account.provider_type,
        provider_account_id=account.id,
        provider_resource_id=None,
        region=region,
        size=size,
        image=image,
        tags=dict(tags or {}),
        desired_status=MachineStatus.RUNNING,
        actual_status=MachineStatus.PENDING,
        public_ip=None,
        private_ip=None,
        terraform_workspace=f"machine-{machine_id}",
        terraform_state_status=TerraformStateStatus.PENDING,
        firewall_profile_id=firewall_profile_id,
        bootstrap_profile_id=bootstrap_profile_id,
        ssh_key_ids=list(ssh_key_ids or []),
        created_at=now,
        updated_at=now,
    )
    await store.insert_machine(machine)
    logger.info("Machine registered", machine_id=machine_id, team_id=team_id, region=region)

    deployment = await _queue(
        store, orchestrator, machine, DeploymentType.CREATE, initiated_by, require_approval
    )
    return machine, deployment


async def request_destroy(
    store: RecordStore,
    orchestrator: DeploymentOrchestrator,
    team_id: str,
    machine_id: str,
    initiated_by: str,
    vault: CredentialVault | None = None,
) -> Deployment:
    machine = await get_machine(store, machine_id, team_id)
    if machine.actual_status == MachineStatus.TERMINATED:
        raise MachineStateError("Machine is already terminated")
    await _require_credentials(store, machine.provider_account_id, team_id, vault)

    deployment = await create_deployment(
        store, machine, DeploymentType.DESTROY, initiated_by=initiated_by
    )
    await store.update_machine(machine.id, desired_status=MachineStatus.TERMINATED)
    orchestrator.start(deployment.id)
    return deployment


async def request_reboot(
    store: RecordStore,
    orchestrator: DeploymentOrchestrator,
    team_id: str,
    machine_id: str,
    initiated_by: str,
    vault: CredentialVault | None = None,
) -> Deployment:
    machine = await get_machine(store, machine_id, team_id)
    if machine.actual_status != MachineStatus.RUNNING:
        raise MachineStateError("Machine must be running to reboot")
    if not machine.provider_resource_id:
        raise MachineStateError("Machine has no provider resource ID")
    await _require_credentials(store, machine.provider_account_id, team_id, vault)

    return await _queue(store, orchestrator, machine, DeploymentType.REBOOT, initiated_by)


async def request_update(
    store: RecordStore,
    orchestrator: DeploymentOrchestrator,
    team_id: str,
    machine_id: str,
    initiated_by: str,
    *,
    size: str | None = None,
    tags: dict[str, Any] | None = None,
    firewall_profile_id: str | None = None,
    require_approval: bool = False,
    vault: CredentialVault | None = None,
) -> Deployment:
    """Record configuration changes and queue a plan/apply for them."""
    machine = await get_machine(store, machine_id, team_id)
    _require_live(machine, "update")
    await _require_credentials(store, machine.provider_account_id, team_id, vault)

    if firewall_profile_id:
        firewall = await store.get_firewall_profile(firewall_profile_id)
        if firewall is None or firewall.team_id != team_id:
            raise ProfileNotFoundError(f"Firewall profile {firewall_profile_id} not found")

    deployment = await create_deployment(
        store,
        machine,
        DeploymentType.UPDATE,
        initiated_by=initiated_by,
        require_approval=require_approval,
    )

    changes: dict[str, Any] = {}
    if size is not None:
        changes["size"] = size
    if tags is not None:
        changes["tags"] = dict(tags)
    if firewall_profile_id is not None:
        changes["firewall_profile_id"] = firewall_profile_id
    if changes:
        await store.update_machine(machine.id, **changes)
    # Start only after the new configuration is recorded
    orchestrator.start(deployment.id)
    return deployment


async def request_restart_service(
    store: RecordStore,
    orchestrator: DeploymentOrchestrator,
    team_id: str,
    machine_id: str,
    initiated_by: str,
    vault: CredentialVault | None = None,
) -> Deployment:
    machine = await get_machine(store, machine_id, team_id)
    _require_live(machine, "restart services on")
    await _require_credentials(store, machine.provider_account_id, team_id, vault)
    return await _queue(
        store, orchestrator, machine, DeploymentType.RESTART_SERVICE, initiated_by
    )


async def request_refresh(
    store: RecordStore,
    orchestrator: DeploymentOrchestrator,
    team_id: str,
    machine_id: str,
    initiated_by: str,
    vault: CredentialVault | None = None,
) -> Deployment:
    machine = await get_machine(store, machine_id, team_id)
    _require_live(machine, "refresh")
    await _require_credentials(store, machine.provider_account_id, team_id, vault)
    return await _queue(store, orchestrator, machine, DeploymentType.REFRESH, initiated_by)
