"""PostgreSQL record store backed by the async SQLAlchemy session factory.

Every method opens its own short session, so a deployment that waits on
terraform for minutes never pins a connection. Row updates use
SELECT ... FOR UPDATE to keep read-modify-write atomic per record.
"""

from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from machina.db.models import (
    BootstrapProfile,
    Credential,
    Deployment,
    FirewallProfile,
    Machine,
    MachineStatus,
    ProviderAccount,
    SSHKey,
    SSHKeySecret,
)
from machina.db.session import get_db_session
from machina.logging_config import get_logger
from machina.store.protocol import DeploymentFilter, RecordConflictError, RecordNotFoundError

logger = get_logger(__name__)

# Terminal deployment states (duplicated from deployment_service to avoid an import cycle)
_TERMINAL_STATES = ("succeeded", "failed", "cancelled")


class SqlRecordStore:
    """RecordStore implementation over PostgreSQL."""

    # --- Machines ---

    async def get_machine(self, machine_id: str) -> Machine | None:
        async with get_db_session() as db:
            return await db.get(Machine, machine_id)

    async def insert_machine(self, machine: Machine) -> Machine:
        async with get_db_session() as db:
            db.add(machine)
            await db.flush()
        return machine

    async def update_machine(self, machine_id: str, **fields: Any) -> Machine:
        async with get_db_session() as db:
            machine = await db.get(Machine, machine_id, with_for_update=True)
            if machine is None:
                raise RecordNotFoundError("Machine", machine_id)
            for name, value in fields.items():
                setattr(machine, name, value)
            await db.flush()
        return machine

    async def list_unterminated_machines(self) -> list[Machine]:
        async with get_db_session() as db:
            result = await db.execute(
                select(Machine)
                .where(Machine.actual_status != MachineStatus.TERMINATED)
                .order_by(Machine.created_at.asc())
            )
            return list(result.scalars().all())

    # --- Deployments ---

    async def get_deployment(self, deployment_id: str) -> Deployment | None:
        async with get_db_session() as db:
            return await db.get(Deployment, deployment_id)

    async def insert_deployment(self, deployment: Deployment) -> Deployment:
        try:
            async with get_db_session() as db:
                db.add(deployment)
                await db.flush()
        except IntegrityError as e:
            raise RecordConflictError(
                f"Machine {deployment.machine_id} already has an active deployment"
            ) from e
        return deployment

    async def update_deployment(self, deployment_id: str, **fields: Any) -> Deployment:
        async with get_db_session() as db:
            deployment = await db.get(Deployment, deployment_id, with_for_update=True)
            if deployment is None:
                raise RecordNotFoundError("Deployment", deployment_id)
            for name, value in fields.items():
                setattr(deployment, name, value)
            await db.flush()
        return deployment

    async def update_deployment_if_state(
        self, deployment_id: str, expected_state: str, **fields: Any
    ) -> Deployment | None:
        async with get_db_session() as db:
            deployment = await db.get(Deployment, deployment_id, with_for_update=True)
            if deployment is None:
                raise RecordNotFoundError("Deployment", deployment_id)
            if deployment.state != expected_state:
                return None
            for name, value in fields.items():
                setattr(deployment, name, value)
            await db.flush()
        return deployment

    async def append_deployment_log(self, deployment_id: str, entry: dict[str, Any]) -> None:
        async with get_db_session() as db:
            deployment = await db.get(Deployment, deployment_id, with_for_update=True)
            if deployment is None:
                raise RecordNotFoundError("Deployment", deployment_id)
            # Reassign so the JSONB column is marked dirty
            deployment.logs = [*(deployment.logs or []), entry]

    async def list_deployments(
        self, filters: DeploymentFilter, page_number: int = 1, page_size: int = 20
    ) -> list[Deployment]:
        query = select(Deployment)
        if filters.team_id:
            query = query.where(Deployment.team_id == filters.team_id)
        if filters.machine_id:
            query = query.where(Deployment.machine_id == filters.machine_id)
        if filters.type:
            query = query.where(Deployment.type == filters.type)
        if filters.state:
            query = query.where(Deployment.state == filters.state)

        async with get_db_session() as db:
            result = await db.execute(
                query.order_by(Deployment.created_at.desc())
                .offset((page_number - 1) * page_size)
                .limit(page_size)
            )
            return list(result.scalars().all())

    async def find_active_deployment(self, machine_id: str) -> Deployment | None:
        async with get_db_session() as db:
            result = await db.execute(
                select(Deployment)
                .where(
                    Deployment.machine_id == machine_id,
                    Deployment.state.not_in(_TERMINAL_STATES),
                )
                .order_by(Deployment.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    # --- Provider accounts and secrets ---

    async def get_provider_account(self, account_id: str) -> ProviderAccount | None:
        async with get_db_session() as db:
            return await db.get(ProviderAccount, account_id)

    async def get_encrypted_credential(self, account_id: str) -> str | None:
        async with get_db_session() as db:
            row = await db.get(Credential, account_id)
            return row.encrypted_data if row else None

    async def put_encrypted_credential(self, account_id: str, encrypted_data: str) -> None:
        async with get_db_session() as db:
            await db.execute(delete(Credential).where(Credential.provider_account_id == account_id))
            db.add(Credential(provider_account_id=account_id, encrypted_data=encrypted_data))

    async def delete_encrypted_credential(self, account_id: str) -> None:
        async with get_db_session() as db:
            await db.execute(delete(Credential).where(Credential.provider_account_id == account_id))

    async def get_ssh_key_secret(self, ssh_key_id: str) -> str | None:
        async with get_db_session() as db:
            row = await db.get(SSHKeySecret, ssh_key_id)
            return row.encrypted_private_key if row else None

    async def put_ssh_key_secret(self, ssh_key_id: str, encrypted_private_key: str) -> None:
        async with get_db_session() as db:
            await db.execute(delete(SSHKeySecret).where(SSHKeySecret.ssh_key_id == ssh_key_id))
            db.add(SSHKeySecret(ssh_key_id=ssh_key_id, encrypted_private_key=encrypted_private_key))

    async def delete_ssh_key_secret(self, ssh_key_id: str) -> None:
        async with get_db_session() as db:
            await db.execute(delete(SSHKeySecret).where(SSHKeySecret.ssh_key_id == ssh_key_id))

    # --- Provisioning inputs ---

    async def get_firewall_profile(self, profile_id: str) -> FirewallProfile | None:
        async with get_db_session() as db:
            return await db.get(FirewallProfile, profile_id)

    async def get_bootstrap_profile(self, profile_id: str) -> BootstrapProfile | None:
        async with get_db_session() as db:
            return await db.get(BootstrapProfile, profile_id)

    async def get_ssh_keys(self, ssh_key_ids: list[str]) -> list[SSHKey]:
        if not ssh_key_ids:
            return []
        async with get_db_session() as db:
            result = await db.execute(select(SSHKey).where(SSHKey.id.in_(ssh_key_ids)))
            by_id = {key.id: key for key in result.scalars().all()}
        return [by_id[key_id] for key_id in ssh_key_ids if key_id in by_id]
