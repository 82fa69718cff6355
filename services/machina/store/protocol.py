"""
Record store protocol for Machina.

Defines the RecordStore Protocol that the orchestrator, reconciler and
credential service depend on. The SQL implementation lives in
machina.store.sql; tests use an in-memory implementation.
"""

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from machina.db.models import (
    BootstrapProfile,
    Deployment,
    FirewallProfile,
    Machine,
    ProviderAccount,
    SSHKey,
)

# --- Data Types ---


@dataclass(frozen=True)
class DeploymentFilter:
    """Optional filters for listing deployments."""

    team_id: str | None = None
    machine_id: str | None = None
    type: str | None = None
    state: str | None = None


# --- Exceptions ---


class RecordStoreError(Exception):
    """Base exception for record store operations."""


class RecordNotFoundError(RecordStoreError):
    """Raised when an update targets a record that does not exist."""

    def __init__(self, kind: str, record_id: str) -> None:
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} not found: {record_id}")


class RecordConflictError(RecordStoreError):
    """Raised when an insert would violate a uniqueness rule."""


# --- Protocol ---


@runtime_checkable
class RecordStore(Protocol):
    """Durable read/write contract for machines, deployments and credentials.

    All methods are async. Each update is atomic per record. Returned model
    instances are detached snapshots; mutate records only via update_*.
    """

    # Machines

    async def get_machine(self, machine_id: str) -> Machine | None: ...

    async def insert_machine(self, machine: Machine) -> Machine: ...

    async def update_machine(self, machine_id: str, **fields: Any) -> Machine:
        """Apply fields to one machine. Raises RecordNotFoundError."""
        ...

    async def list_unterminated_machines(self) -> list[Machine]:
        """All machines whose actual_status is not terminated."""
        ...

    # Deployments

    async def get_deployment(self, deployment_id: str) -> Deployment | None: ...

    async def insert_deployment(self, deployment: Deployment) -> Deployment:
        """Insert a deployment. Raises RecordConflictError if the machine has
        another non-terminal deployment."""
        ...

    async def update_deployment(self, deployment_id: str, **fields: Any) -> Deployment:
        """Apply fields to one deployment. Raises RecordNotFoundError."""
        ...

    async def update_deployment_if_state(
        self, deployment_id: str, expected_state: str, **fields: Any
    ) -> Deployment | None:
        """Apply fields only while the deployment is in expected_state.

        Returns None, writing nothing, when the state has moved on.
        Raises RecordNotFoundError.
        """
        ...

    async def append_deployment_log(self, deployment_id: str, entry: dict[str, Any]) -> None:
        """Append one log line to the deployment's durable log list."""
        ...

    async def list_deployments(
        self, filters: DeploymentFilter, page_number: int = 1, page_size: int = 20
    ) -> list[Deployment]:
        """Deployments matching filters, newest first."""
        ...

    async def find_active_deployment(self, machine_id: str) -> Deployment | None:
        """The machine's non-terminal deployment, if any."""
        ...

    # Provider accounts and secrets

    async def get_provider_account(self, account_id: str) -> ProviderAccount | None: ...

    async def get_encrypted_credential(self, account_id: str) -> str | None: ...

    async def put_encrypted_credential(self, account_id: str, encrypted_data: str) -> None: ...

    async def delete_encrypted_credential(self, account_id: str) -> None: ...

    async def get_ssh_key_secret(self, ssh_key_id: str) -> str | None: ...

    async def put_ssh_key_secret(self, ssh_key_id: str, encrypted_private_key: str) -> None: ...

    async def delete_ssh_key_secret(self, ssh_key_id: str) -> None: ...

    # Provisioning inputs

    async def get_firewall_profile(self, profile_id: str) -> FirewallProfile | None: ...

    async def get_bootstrap_profile(self, profile_id: str) -> BootstrapProfile | None: ...

    async def get_ssh_keys(self, ssh_key_ids: list[str]) -> list[SSHKey]:
        """Keys that exist among ssh_key_ids, in the requested order."""
        ...
