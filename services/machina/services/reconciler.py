"""Provider reconciler: converges machine records with provider ground truth.

Each sweep loads every machine that is not terminated, groups them by
provider account, fetches the account's full resource listing once and
corrects status and IP fields. Failures are isolated per account: a
machine whose account cannot be read is recorded as skipped and the sweep
moves on.

A sweep only writes when something differs, so running it twice against an
unchanged provider yields no_change for every machine the second time.
"""

import asyncio
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any

from machina.config import settings
from machina.db.models import Machine, MachineStatus, TerraformStateStatus
from machina.logging_config import get_logger
from machina.services import credential_service
from machina.services.credential_service import CredentialCorruptedError, CredentialsNotFoundError
from machina.services.credential_vault import CredentialVault, VaultError, VaultNotConfiguredError
from machina.services.provider_client import (
    DigitalOceanClient,
    ProviderAPIError,
    ProviderResource,
    UnsupportedProviderError,
    get_provider_client,
)
from machina.store.protocol import RecordStore

logger = get_logger(__name__)

ProviderClientFactory = Callable[[str, dict[str, Any]], DigitalOceanClient]


class ReconcileAction(StrEnum):
    NO_CHANGE = "no_change"
    STATUS_UPDATED = "status_updated"
    IP_UPDATED = "ip_updated"
    MARKED_TERMINATED_NOT_FOUND = "marked_terminated_not_found"
    MARKED_ERROR_NO_RESOURCE_ID = "marked_error_no_resource_id"
    SKIPPED_NO_CREDENTIALS = "skipped_no_credentials"
    SKIPPED_PROVIDER_ERROR = "skipped_provider_error"
    SKIPPED_UNSUPPORTED_PROVIDER = "skipped_unsupported_provider"


CHANGING_ACTIONS = frozenset(
    {
        ReconcileAction.STATUS_UPDATED,
        ReconcileAction.IP_UPDATED,
        ReconcileAction.MARKED_TERMINATED_NOT_FOUND,
        ReconcileAction.MARKED_ERROR_NO_RESOURCE_ID,
    }
)

# Native DigitalOcean droplet status → machine status; others keep the current value
PROVIDER_STATUS_MAP: dict[str, MachineStatus] = {
    "active": MachineStatus.RUNNING,
    "off": MachineStatus.STOPPED,
    "new": MachineStatus.PROVISIONING,
}

_UNCREATED_STATUSES = frozenset({MachineStatus.PENDING, MachineStatus.PROVISIONING})


def map_provider_status(native_status: str, current: str) -> str:
    return PROVIDER_STATUS_MAP.get(native_status, current)


@dataclass
class MachineDiff:
    machine_id: str
    team_id: str
    name: str
    previous_status: str
    new_status: str
    action: ReconcileAction
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["action"] = str(self.action)
        return data


@dataclass
class ReconcileResult:
    changed: int = 0
    results: list[MachineDiff] = field(default_factory=list)


def _error_text(error: Exception) -> str:
    return str(error) or type(error).__name__


def _unchanged(machine: Machine, action: ReconcileAction, error: str = "") -> MachineDiff:
    return MachineDiff(
        machine_id=machine.id,
        team_id=machine.team_id,
        name=machine.name,
        previous_status=machine.actual_status,
        new_status=machine.actual_status,
        action=action,
        error=error,
    )


def _changed(
    machine: Machine, previous: str, new_status: str, action: ReconcileAction
) -> MachineDiff:
    return MachineDiff(
        machine_id=machine.id,
        team_id=machine.team_id,
        name=machine.name,
        previous_status=previous,
        new_status=new_status,
        action=action,
    )


class ProviderReconciler:
    """One reconciliation sweep over all tracked, non-terminated machines."""

    def __init__(
        self,
        store: RecordStore,
        vault: CredentialVault | None = None,
        provider_client_factory: ProviderClientFactory | None = None,
    ) -> None:
        self._store = store
        self._vault = vault
        self._provider_client_factory: ProviderClientFactory = (
            provider_client_factory or get_provider_client
        )

    async def reconcile(self) -> ReconcileResult:
        machines = await self._store.list_unterminated_machines()

        by_account: dict[str, list[Machine]] = {}
        for machine in machines:
            by_account.setdefault(machine.provider_account_id, []).append(machine)

        results: list[MachineDiff] = []
        for account_id, account_machines in by_account.items():
            try:
                results.extend(await self._reconcile_account(account_id, account_machines))
            except Exception as e:
                logger.error(
                    "Account reconciliation failed",
                    account_id=account_id,
                    error=str(e),
                    exc_info=e,
                )
                results.extend(
                    _unchanged(m, ReconcileAction.SKIPPED_PROVIDER_ERROR, _error_text(e))
                    for m in account_machines
                )

        changed = sum(1 for diff in results if diff.action in CHANGING_ACTIONS)
        logger.info(
            "Reconciliation sweep complete",
            machines=len(machines),
            accounts=len(by_account),
            changed=changed,
        )
        return ReconcileResult(changed=changed, results=results)

    async def _reconcile_account(
        self, account_id: str, machines: list[Machine]
    ) -> list[MachineDiff]:
        def skip_all(action: ReconcileAction, error: str = "") -> list[MachineDiff]:
            return [_unchanged(m, action, error) for m in machines]

        account = await self._store.get_provider_account(account_id)
        if account is None:
            logger.warning("Provider account missing, skipping machines", account_id=account_id)
            return skip_all(ReconcileAction.SKIPPED_NO_CREDENTIALS)

        try:
            credentials = await credential_service.get_credentials(
                self._store, account, self._vault
            )
            client = self._provider_client_factory(account.provider_type, credentials)
        except UnsupportedProviderError:
            return skip_all(ReconcileAction.SKIPPED_UNSUPPORTED_PROVIDER)
        except (
            CredentialsNotFoundError,
            CredentialCorruptedError,
            VaultError,
            VaultNotConfiguredError,
            ProviderAPIError,
        ) as e:
            logger.warning(
                "No usable credentials, skipping machines",
                account_id=account_id,
                error_type=type(e).__name__,
            )
            return skip_all(ReconcileAction.SKIPPED_NO_CREDENTIALS)

        try:
            listing = await client.list_droplets()
        except ProviderAPIError as e:
            logger.warning(
                "Provider listing failed, skipping machines",
                account_id=account_id,
                error=str(e),
            )
            return skip_all(ReconcileAction.SKIPPED_PROVIDER_ERROR, str(e))

        results: list[MachineDiff] = []
        for machine in machines:
            try:
                results.append(await self._reconcile_machine(machine, listing))
            except Exception as e:
                logger.error(
                    "Machine reconciliation failed",
                    machine_id=machine.id,
                    error=str(e),
                    exc_info=e,
                )
                results.append(
                    _unchanged(machine, ReconcileAction.SKIPPED_PROVIDER_ERROR, _error_text(e))
                )
        return results

    async def _reconcile_machine(
        self, machine: Machine, listing: dict[str, ProviderResource]
    ) -> MachineDiff:
        previous = machine.actual_status

        if not machine.provider_resource_id:
            if previous not in _UNCREATED_STATUSES:
                return _unchanged(machine, ReconcileAction.NO_CHANGE)
            # Creation was abandoned before a resource existed
            await self._store.update_machine(
                machine.id,
                actual_status=MachineStatus.ERROR,
                terraform_state_status=TerraformStateStatus.UNKNOWN,
            )
            return _changed(
                machine, previous, MachineStatus.ERROR, ReconcileAction.MARKED_ERROR_NO_RESOURCE_ID
            )

        resource = listing.get(machine.provider_resource_id)
        if resource is None:
            await self._store.update_machine(
                machine.id,
                actual_status=MachineStatus.TERMINATED,
                terraform_state_status=TerraformStateStatus.DRIFTED,
            )
            logger.info(
                "Machine resource gone at provider",
                machine_id=machine.id,
                resource_id=machine.provider_resource_id,
            )
            return _changed(
                machine,
                previous,
                MachineStatus.TERMINATED,
                ReconcileAction.MARKED_TERMINATED_NOT_FOUND,
            )

        new_status = map_provider_status(resource.status, previous)
        # A missing provider IP keeps the recorded one
        public_ip = resource.public_ip or machine.public_ip
        private_ip = resource.private_ip or machine.private_ip

        if (
            new_status == previous
            and public_ip == machine.public_ip
            and private_ip == machine.private_ip
        ):
            return _unchanged(machine, ReconcileAction.NO_CHANGE)

        await self._store.update_machine(
            machine.id,
            actual_status=new_status,
            public_ip=public_ip,
            private_ip=private_ip,
            terraform_state_status=TerraformStateStatus.IN_SYNC,
        )
        action = (
            ReconcileAction.STATUS_UPDATED if new_status != previous else ReconcileAction.IP_UPDATED
        )
        return _changed(machine, previous, new_status, action)


async def run_reconciler(reconciler: ProviderReconciler) -> None:
    """Periodic reconciliation loop, run as a background task."""
    interval = settings.reconciler.interval_seconds
    logger.info("Provider reconciler started", interval_seconds=interval)

    while True:
        try:
            await reconciler.reconcile()
        except Exception as e:
            logger.error("Reconciliation sweep failed", error=str(e), exc_info=e)

        try:
            await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.info("Provider reconciler stopping")
            return
