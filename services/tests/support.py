"""In-memory RecordStore and model row factories shared by the tests."""

import copy
from typing import Any

from machina.db.models import (
    BootstrapProfile,
    Deployment,
    DeploymentState,
    FirewallProfile,
    Machine,
    MachineStatus,
    ProviderAccount,
    SSHKey,
    TerraformStateStatus,
    utc_now,
)
from machina.store.protocol import (
    DeploymentFilter,
    RecordConflictError,
    RecordNotFoundError,
)

_TERMINAL = {DeploymentState.SUCCEEDED, DeploymentState.FAILED, DeploymentState.CANCELLED}

TEAM_ID = "team-1"
OTHER_TEAM_ID = "team-2"


def _snapshot(row: Any) -> Any:
    """Detached copy of a model row, like a row read in a fresh session."""
    values = {c.key: copy.deepcopy(getattr(row, c.key)) for c in row.__table__.columns}
    return type(row)(**values)


class InMemoryRecordStore:
    """RecordStore backed by dicts. Records every deployment state change."""

    def __init__(self) -> None:
        self.machines: dict[str, Machine] = {}
        self.deployments: dict[str, Deployment] = {}
        self.accounts: dict[str, ProviderAccount] = {}
        self.credentials: dict[str, str] = {}
        self.ssh_key_secrets: dict[str, str] = {}
        self.firewall_profiles: dict[str, FirewallProfile] = {}
        self.bootstrap_profiles: dict[str, BootstrapProfile] = {}
        self.ssh_keys: dict[str, SSHKey] = {}
        self.state_history: dict[str, list[str]] = {}
        self.machine_updates: list[tuple[str, dict[str, Any]]] = []

    # Seeding helpers

    def add(self, row: Any) -> Any:
        table = {
            Machine: self.machines,
            Deployment: self.deployments,
            ProviderAccount: self.accounts,
            FirewallProfile: self.firewall_profiles,
            BootstrapProfile: self.bootstrap_profiles,
            SSHKey: self.ssh_keys,
        }[type(row)]
        table[row.id] = _snapshot(row)
        if isinstance(row, Deployment):
            self.state_history[row.id] = [row.state]
        return row

    # Machines

    async def get_machine(self, machine_id: str) -> Machine | None:
        row = self.machines.get(machine_id)
        return _snapshot(row) if row is not None else None

    async def insert_machine(self, machine: Machine) -> Machine:
        self.machines[machine.id] = _snapshot(machine)
        return _snapshot(machine)

    async def update_machine(self, machine_id: str, **fields: Any) -> Machine:
        row = self.machines.get(machine_id)
        if row is None:
            raise RecordNotFoundError("Machine", machine_id)
        for key, value in fields.items():
            setattr(row, key, value)
        row.updated_at = utc_now()
        self.machine_updates.append((machine_id, dict(fields)))
        return _snapshot(row)

    async def list_unterminated_machines(self) -> list[Machine]:
        return [
            _snapshot(m)
            for m in self.machines.values()
            if m.actual_status != MachineStatus.TERMINATED
        ]

    # Deployments

    async def get_deployment(self, deployment_id: str) -> Deployment | None:
        row = self.deployments.get(deployment_id)
        return _snapshot(row) if row is not None else None

    async def insert_deployment(self, deployment: Deployment) -> Deployment:
        if await self.find_active_deployment(deployment.machine_id) is not None:
            raise RecordConflictError(f"Machine {deployment.machine_id} has an active deployment")
        self.add(deployment)
        return _snapshot(deployment)

    async def update_deployment(self, deployment_id: str, **fields: Any) -> Deployment:
        row = self.deployments.get(deployment_id)
        if row is None:
            raise RecordNotFoundError("Deployment", deployment_id)
        for key, value in fields.items():
            setattr(row, key, value)
        if "state" in fields:
            self.state_history[deployment_id].append(fields["state"])
        return _snapshot(row)

    async def update_deployment_if_state(
        self, deployment_id: str, expected_state: str, **fields: Any
    ) -> Deployment | None:
        row = self.deployments.get(deployment_id)
        if row is None:
            raise RecordNotFoundError("Deployment", deployment_id)
        if row.state != expected_state:
            return None
        return await self.update_deployment(deployment_id, **fields)

    async def append_deployment_log(self, deployment_id: str, entry: dict[str, Any]) -> None:
        row = self.deployments.get(deployment_id)
        if row is None:
            raise RecordNotFoundError("Deployment", deployment_id)
        row.logs = [*row.logs, entry]

    async def list_deployments(
        self, filters: DeploymentFilter, page_number: int = 1, page_size: int = 20
    ) -> list[Deployment]:
        rows = [
            d
            for d in self.deployments.values()
            if (filters.team_id is None or d.team_id == filters.team_id)
            and (filters.machine_id is None or d.machine_id == filters.machine_id)
            and (filters.type is None or d.type == filters.type)
            and (filters.state is None or d.state == filters.state)
        ]
        rows.sort(key=lambda d: d.created_at, reverse=True)
        start = (page_number - 1) * page_size
        return [_snapshot(d) for d in rows[start : start + page_size]]

    async def find_active_deployment(self, machine_id: str) -> Deployment | None:
        for d in self.deployments.values():
            if d.machine_id == machine_id and d.state not in _TERMINAL:
                return _snapshot(d)
        return None

    # Provider accounts and secrets

    async def get_provider_account(self, account_id: str) -> ProviderAccount | None:
        row = self.accounts.get(account_id)
        return _snapshot(row) if row is not None else None

    async def get_encrypted_credential(self, account_id: str) -> str | None:
        return self.credentials.get(account_id)

    async def put_encrypted_credential(self, account_id: str, encrypted_data: str) -> None:
        self.credentials[account_id] = encrypted_data

    async def delete_encrypted_credential(self, account_id: str) -> None:
        self.credentials.pop(account_id, None)

    async def get_ssh_key_secret(self, ssh_key_id: str) -> str | None:
        return self.ssh_key_secrets.get(ssh_key_id)

    async def put_ssh_key_secret(self, ssh_key_id: str, encrypted_private_key: str) -> None:
        self.ssh_key_secrets[ssh_key_id] = encrypted_private_key

    async def delete_ssh_key_secret(self, ssh_key_id: str) -> None:
        self.ssh_key_secrets.pop(ssh_key_id, None)

    # Provisioning inputs

    async def get_firewall_profile(self, profile_id: str) -> FirewallProfile | None:
        row = self.firewall_profiles.get(profile_id)
        return _snapshot(row) if row is not None else None

    async def get_bootstrap_profile(self, profile_id: str) -> BootstrapProfile | None:
        row = self.bootstrap_profiles.get(profile_id)
        return _snapshot(row) if row is not None else None

    async def get_ssh_keys(self, ssh_key_ids: list[str]) -> list[SSHKey]:
        return [_snapshot(self.ssh_keys[i]) for i in ssh_key_ids if i in self.ssh_keys]


# --- Factories ---


def make_account(
    account_id: str = "pa-1", team_id: str = TEAM_ID, **overrides: Any
) -> ProviderAccount:
    now = utc_now()
    values: dict[str, Any] = {
        "id": account_id,
        "team_id": team_id,
        "provider_type": "digitalocean",
        "label": "Production",
        "credential_status": "valid",
        "created_at": now,
        "updated_at": now,
    }
    values.update(overrides)
    return ProviderAccount(**values)


def make_machine(machine_id: str = "mach-1", team_id: str = TEAM_ID, **overrides: Any) -> Machine:
    now = utc_now()
    values: dict[str, Any] = {
        "id": machine_id,
        "team_id": team_id,
        "name": "web-1",
        "provider_type": "digitalocean",
        "provider_account_id": "pa-1",
        "provider_resource_id": None,
        "region": "nyc3",
        "size": "s-1vcpu-1gb",
        "image": "ubuntu-24-04-x64",
        "tags": {"env": "prod"},
        "desired_status": MachineStatus.RUNNING,
        "actual_status": MachineStatus.PENDING,
        "public_ip": None,
        "private_ip": None,
        "terraform_workspace": f"machine-{machine_id}",
        "terraform_state_status": TerraformStateStatus.PENDING,
        "firewall_profile_id": None,
        "bootstrap_profile_id": None,
        "ssh_key_ids": [],
        "created_at": now,
        "updated_at": now,
    }
    values.update(overrides)
    return Machine(**values)


def make_deployment(
    deployment_id: str = "deploy-1", machine_id: str = "mach-1", **overrides: Any
) -> Deployment:
    values: dict[str, Any] = {
        "id": deployment_id,
        "team_id": TEAM_ID,
        "machine_id": machine_id,
        "type": "create",
        "state": DeploymentState.QUEUED,
        "terraform_workspace": f"machine-{machine_id}",
        "require_approval": False,
        "plan_summary": None,
        "plan_artifact": None,
        "outputs": None,
        "logs": [],
        "error_message": "",
        "initiated_by": "user-1",
        "created_at": utc_now(),
        "started_at": None,
        "finished_at": None,
    }
    values.update(overrides)
    return Deployment(**values)

