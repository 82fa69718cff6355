"""Deployment orchestrator.

Drives one deployment from queued to a terminal state:

- create, update, restart_service, refresh: decrypt credentials, build the
  module variables, terraform init → planning → plan → (awaiting_approval)
  → applying → apply, then record IPs and the resource id on the machine.
- destroy: queued → applying → terraform destroy, machine terminated, and
  the workspace removed.
- reboot: queued → applying → provider reboot action, then poll the
  provider until the instance reports active or the attempt budget runs out.

Every log line is appended to the deployment record, then published to the
orchestrator's LogBroadcastRegistry. Any failure marks the deployment failed
and the machine error. Only task cancellation propagates, after the
same bookkeeping. A deployment cancelled while planning stops before apply.
"""

import asyncio
from collections.abc import Callable
from typing import Any

from machina.config import settings
from machina.db.models import (
    Deployment,
    DeploymentState,
    DeploymentType,
    LogLevel,
    LogSource,
    Machine,
    MachineStatus,
    TerraformStateStatus,
)
from machina.logging_config import get_logger
from machina.services import credential_service, deployment_service
from machina.services.credential_vault import CredentialVault
from machina.services.deployment_service import (
    DeploymentNotFoundError,
    InvalidTransitionError,
)
from machina.services.log_broadcast import LogBroadcastRegistry, LogEvent
from machina.services.provider_client import DigitalOceanClient, get_provider_client
from machina.services.terraform_runner import (
    LogCallback,
    PlanResult,
    TerraformRunner,
    summarize_plan_json,
)
from machina.services.terraform_vars import build_variables, known_additions_summary
from machina.store.protocol import RecordStore

logger = get_logger(__name__)

RunnerFactory = Callable[[str, LogCallback], TerraformRunner]
ProviderClientFactory = Callable[[str, dict[str, Any]], DigitalOceanClient]

TERRAFORM_TYPES = frozenset(
    {
        DeploymentType.CREATE,
        DeploymentType.UPDATE,
        DeploymentType.RESTART_SERVICE,
        DeploymentType.REFRESH,
    }
)

# Terraform output names carrying the provider resource id
RESOURCE_ID_OUTPUTS = ("droplet_id", "resource_id", "instance_id")

INTERRUPTED_MESSAGE = "Interrupted by shutdown"


class DeploymentError(Exception):
    """A deployment step failed; the message is recorded on the deployment."""


class DeploymentCancelled(Exception):
    """The deployment was cancelled by another caller mid-pipeline."""


def resource_id_from_outputs(outputs: dict[str, Any]) -> str | None:
    for name in RESOURCE_ID_OUTPUTS:
        value = outputs.get(name)
        if value not in (None, ""):
            return str(value)
    return None


def _empty_summary() -> dict[str, Any]:
    return {
        "resources_to_add": 0,
        "resources_to_change": 0,
        "resources_to_destroy": 0,
        "resource_changes": [],
    }


class DeploymentOrchestrator:
    """Runs deployments and fans their log lines out to live subscribers."""

    def __init__(
        self,
        store: RecordStore,
        registry: LogBroadcastRegistry | None = None,
        vault: CredentialVault | None = None,
        runner_factory: RunnerFactory | None = None,
        provider_client_factory: ProviderClientFactory | None = None,
        reboot_poll_interval: float | None = None,
        reboot_max_attempts: int | None = None,
    ) -> None:
        self._store = store
        self.registry = registry or LogBroadcastRegistry()
        self._vault = vault
        self._runner_factory: RunnerFactory = runner_factory or TerraformRunner
        self._provider_client_factory: ProviderClientFactory = (
            provider_client_factory or get_provider_client
        )
        self._reboot_poll_interval = (
            settings.provisioning.reboot_poll_interval_seconds
            if reboot_poll_interval is None
            else reboot_poll_interval
        )
        self._reboot_max_attempts = (
            settings.provisioning.reboot_max_attempts
            if reboot_max_attempts is None
            else reboot_max_attempts
        )
        self._tasks: dict[str, asyncio.Task[Any]] = {}

    # --- Logging ---

    async def log(
        self, deployment_id: str, level: LogLevel, source: LogSource, message: str
    ) -> None:
        """Persist one log line on the deployment, then publish it live."""
        event = LogEvent.now(deployment_id, level, source, message)
        try:
            await self._store.append_deployment_log(deployment_id, event.to_dict())
        except Exception as e:
            logger.warning(
                "Failed to persist deployment log line",
                deployment_id=deployment_id,
                error=str(e),
            )
        self.registry.publish(deployment_id, event)

    def _log_callback(self, deployment_id: str) -> LogCallback:
        async def on_log(level: LogLevel, source: LogSource, message: str) -> None:
            await self.log(deployment_id, level, source, message)

        return on_log

    async def _system(self, deployment_id: str, message: str, level: LogLevel = LogLevel.INFO) -> None:
        await self.log(deployment_id, level, LogSource.SYSTEM, message)

    # --- Background tasks ---

    def start(self, deployment_id: str) -> asyncio.Task[Any]:
        """Run execute() as a tracked background task."""
        return self._track(deployment_id, self.execute(deployment_id))

    def _track(self, deployment_id: str, coro: Any) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=f"deployment-{deployment_id}")
        self._tasks[deployment_id] = task

        def _done(t: asyncio.Task[Any]) -> None:
            if self._tasks.get(deployment_id) is t:
                del self._tasks[deployment_id]
            if not t.cancelled() and t.exception() is not None:
                logger.error(
                    "Deployment task crashed",
                    deployment_id=deployment_id,
                    error=str(t.exception()),
                )

        task.add_done_callback(_done)
        return task

    def is_running(self, deployment_id: str) -> bool:
        return deployment_id in self._tasks

    async def shutdown(self) -> None:
        """Cancel in-flight deployment tasks.

        Each interrupted deployment is marked failed and its machine error, so
        the machine accepts a new deployment after restart.
        """
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.warning("Interrupted in-flight deployments", count=len(tasks))

    # --- Entry points ---

    async def execute(self, deployment_id: str) -> Deployment:
        """Drive a queued deployment to a terminal (or awaiting_approval) state."""
        deployment = await self._store.get_deployment(deployment_id)
        if deployment is None:
            raise DeploymentNotFoundError(f"Deployment {deployment_id} not found")
        if deployment.state != DeploymentState.QUEUED:
            logger.warning(
                "Deployment not queued, skipping",
                deployment_id=deployment_id,
                state=deployment.state,
            )
            return deployment

        machine = await self._store.get_machine(deployment.machine_id)
        logger.info(
            "Executing deployment",
            deployment_id=deployment_id,
            machine_id=deployment.machine_id,
            type=deployment.type,
        )

        try:
            if machine is None:
                raise DeploymentError(f"Machine {deployment.machine_id} not found")
            if deployment.type == DeploymentType.DESTROY:
                await self._run_destroy(deployment, machine)
            elif deployment.type == DeploymentType.REBOOT:
                await self._run_reboot(deployment, machine)
            elif deployment.type in TERRAFORM_TYPES:
                await self._run_terraform(deployment, machine)
            else:
                raise DeploymentError(f"Unknown deployment type: {deployment.type}")
        except DeploymentCancelled:
            await self._system(deployment_id, "Deployment was cancelled, stopping before apply")
            await self._release_cancelled_machine(deployment)
        except asyncio.CancelledError:
            await self._interrupted(deployment, machine)
            raise
        except Exception as e:
            await self._fail(deployment, machine, e)

        return await self._store.get_deployment(deployment_id) or deployment

    async def approve(self, deployment_id: str, team_id: str | None = None) -> Deployment:
        """Accept a reviewed plan and apply it in the background."""
        deployment = await deployment_service.approve_deployment(self._store, deployment_id, team_id)
        await self._system(deployment_id, "Plan approved")
        self._track(deployment_id, self._apply_approved(deployment))
        return deployment

    async def cancel(self, deployment_id: str, team_id: str | None = None) -> Deployment:
        """Cancel a deployment that has not started applying."""
        deployment = await deployment_service.cancel_deployment(self._store, deployment_id, team_id)
        await self._system(deployment_id, "Deployment cancelled")
        await self._release_cancelled_machine(deployment)
        return deployment

    # --- State helpers ---

    async def _advance(
        self, deployment_id: str, target: DeploymentState, **fields: Any
    ) -> Deployment:
        try:
            return await deployment_service.transition_deployment(
                self._store, deployment_id, target, **fields
            )
        except InvalidTransitionError as e:
            if e.current == DeploymentState.CANCELLED:
                raise DeploymentCancelled(deployment_id) from e
            raise

    async def _release_cancelled_machine(self, deployment: Deployment) -> None:
        """A cancelled create never produced a resource; retire its machine."""
        if deployment.type != DeploymentType.CREATE:
            return
        machine = await self._store.get_machine(deployment.machine_id)
        if machine is None or machine.provider_resource_id:
            return
        if machine.actual_status in (MachineStatus.PENDING, MachineStatus.PROVISIONING):
            await self._store.update_machine(
                machine.id,
                actual_status=MachineStatus.TERMINATED,
                terraform_state_status=TerraformStateStatus.IN_SYNC,
            )

    async def _fail(self, deployment: Deployment, machine: Machine | None, error: Exception) -> None:
        message = str(error) or type(error).__name__
        logger.error(
            "Deployment failed",
            deployment_id=deployment.id,
            machine_id=deployment.machine_id,
            type=deployment.type,
            error=message,
        )

        try:
            await deployment_service.transition_deployment(
                self._store, deployment.id, DeploymentState.FAILED, error_message=message
            )
        except InvalidTransitionError as e:
            if e.current == DeploymentState.CANCELLED:
                await self._release_cancelled_machine(deployment)
            else:
                logger.warning(
                    "Could not mark deployment failed",
                    deployment_id=deployment.id,
                    state=e.current,
                )
            return

        if machine is not None:
            fields: dict[str, Any] = {"actual_status": MachineStatus.ERROR}
            if deployment.type != DeploymentType.REBOOT:
                fields["terraform_state_status"] = TerraformStateStatus.UNKNOWN
            await self._store.update_machine(machine.id, **fields)

        await self._system(deployment.id, f"Deployment failed: {message}", LogLevel.ERROR)

    async def _interrupted(self, deployment: Deployment, machine: Machine | None) -> None:
        # The task is being cancelled; finish the bookkeeping regardless
        await asyncio.shield(
            self._fail(deployment, machine, DeploymentError(INTERRUPTED_MESSAGE))
        )

    # --- Credentials and inputs ---

    async def _credentials(self, machine: Machine) -> tuple[str, dict[str, Any]]:
        account = await self._store.get_provider_account(machine.provider_account_id)
        if account is None:
            raise DeploymentError(f"Provider account {machine.provider_account_id} not found")
        credentials = await credential_service.get_credentials(self._store, account, self._vault)
        return account.provider_type, credentials

    async def _provisioning_inputs(self, machine: Machine) -> dict[str, Any]:
        firewall = (
            await self._store.get_firewall_profile(machine.firewall_profile_id)
            if machine.firewall_profile_id
            else None
        )
        bootstrap = (
            await self._store.get_bootstrap_profile(machine.bootstrap_profile_id)
            if machine.bootstrap_profile_id
            else None
        )
        ssh_keys = await self._store.get_ssh_keys(list(machine.ssh_key_ids or []))
        return {"firewall_profile": firewall, "ssh_keys": ssh_keys, "bootstrap_profile": bootstrap}

    # --- Terraform pipeline ---

    async def _run_terraform(self, deployment: Deployment, machine: Machine) -> None:
        deployment_id = deployment.id
        provider_type, credentials = await self._credentials(machine)
        inputs = await self._provisioning_inputs(machine)

        varset = build_variables(provider_type, machine, credentials, **inputs)
        if deployment.type == DeploymentType.RESTART_SERVICE:
            varset.variables["restart_trigger"] = deployment_id
        for level, note in varset.notes:
            await self._system(deployment_id, note, level)

        runner = self._runner_factory(machine.terraform_workspace, self._log_callback(deployment_id))

        await self._system(deployment_id, "Initializing Terraform...")
        if not await runner.init(varset.module):
            raise DeploymentError("Terraform init failed")

        await self._advance(deployment_id, DeploymentState.PLANNING)
        if deployment.type == DeploymentType.CREATE:
            await self._store.update_machine(machine.id, actual_status=MachineStatus.PROVISIONING)

        await self._system(deployment_id, "Creating execution plan...")
        plan = await runner.plan(
            varset.variables, refresh_only=deployment.type == DeploymentType.REFRESH
        )
        if not plan.success or not plan.plan_artifact:
            raise DeploymentError(plan.error or "Terraform plan failed")

        summary = await self._plan_summary(runner, plan, provider_type, deployment.type)
        await self._system(
            deployment_id,
            f"Plan: {summary['resources_to_add']} to add, "
            f"{summary['resources_to_change']} to change, "
            f"{summary['resources_to_destroy']} to destroy",
        )

        if deployment.require_approval:
            await self._advance(
                deployment_id,
                DeploymentState.AWAITING_APPROVAL,
                plan_summary=summary,
                plan_artifact=plan.plan_artifact,
            )
            await self._system(deployment_id, "Plan ready, waiting for approval")
            return

        await self._advance(
            deployment_id,
            DeploymentState.APPLYING,
            plan_summary=summary,
            plan_artifact=plan.plan_artifact,
        )
        await self._apply(deployment, machine, runner, plan.plan_artifact)

    async def _plan_summary(
        self,
        runner: TerraformRunner,
        plan: PlanResult,
        provider_type: str,
        deployment_type: str,
    ) -> dict[str, Any]:
        plan_json = await runner.show_plan(plan.plan_artifact or "")
        if plan_json is not None:
            return summarize_plan_json(plan_json)
        if deployment_type == DeploymentType.CREATE:
            return known_additions_summary(provider_type)
        return _empty_summary()

    async def _apply(
        self,
        deployment: Deployment,
        machine: Machine,
        runner: TerraformRunner,
        plan_artifact: str,
    ) -> None:
        await self._system(deployment.id, "Applying changes...")
        result = await runner.apply(plan_artifact)

        resource_id = resource_id_from_outputs(result.outputs)
        if not result.success:
            # Keep any partially created resource discoverable by the reconciler
            if resource_id and resource_id != machine.provider_resource_id:
                await self._store.update_machine(machine.id, provider_resource_id=resource_id)
            raise DeploymentError(result.error or "Apply failed")

        fields: dict[str, Any] = {
            "actual_status": MachineStatus.RUNNING,
            "terraform_state_status": TerraformStateStatus.IN_SYNC,
        }
        if resource_id:
            fields["provider_resource_id"] = resource_id
        if isinstance(result.outputs.get("public_ip"), str):
            fields["public_ip"] = result.outputs["public_ip"]
        if isinstance(result.outputs.get("private_ip"), str):
            fields["private_ip"] = result.outputs["private_ip"]
        await self._store.update_machine(machine.id, **fields)

        await self._advance(deployment.id, DeploymentState.SUCCEEDED, outputs=result.outputs)

        if deployment.type == DeploymentType.CREATE:
            ip = fields.get("public_ip") or "unknown"
            await self._system(deployment.id, f"Machine created successfully! IP: {ip}")
        else:
            await self._system(deployment.id, "Changes applied successfully")

    async def _apply_approved(self, deployment: Deployment) -> None:
        machine = await self._store.get_machine(deployment.machine_id)
        try:
            if machine is None:
                raise DeploymentError(f"Machine {deployment.machine_id} not found")
            if not deployment.plan_artifact:
                raise DeploymentError("Approved deployment has no saved plan")
            runner = self._runner_factory(
                machine.terraform_workspace, self._log_callback(deployment.id)
            )
            await self._apply(deployment, machine, runner, deployment.plan_artifact)
        except asyncio.CancelledError:
            await self._interrupted(deployment, machine)
            raise
        except Exception as e:
            await self._fail(deployment, machine, e)

    # --- Destroy ---

    async def _run_destroy(self, deployment: Deployment, machine: Machine) -> None:
        await self._advance(deployment.id, DeploymentState.APPLYING)
        await self._store.update_machine(machine.id, actual_status=MachineStatus.TERMINATING)

        runner = self._runner_factory(machine.terraform_workspace, self._log_callback(deployment.id))
        result = await runner.destroy()
        if not result.success:
            raise DeploymentError(result.error or "Destroy failed")

        await self._store.update_machine(
            machine.id,
            actual_status=MachineStatus.TERMINATED,
            terraform_state_status=TerraformStateStatus.IN_SYNC,
        )
        await self._advance(deployment.id, DeploymentState.SUCCEEDED)
        await runner.cleanup()
        await self._system(deployment.id, "Machine destroyed")

    # --- Reboot ---

    async def _run_reboot(self, deployment: Deployment, machine: Machine) -> None:
        await self._advance(deployment.id, DeploymentState.APPLYING)

        resource_id = machine.provider_resource_id
        if not resource_id:
            raise DeploymentError("Machine has no provider resource ID")

        provider_type, credentials = await self._credentials(machine)
        client = self._provider_client_factory(provider_type, credentials)

        await self._store.update_machine(machine.id, actual_status=MachineStatus.REBOOTING)
        await self._system(deployment.id, "Sending reboot request to provider...")
        await client.reboot(resource_id)

        for attempt in range(1, self._reboot_max_attempts + 1):
            await asyncio.sleep(self._reboot_poll_interval)
            status = await client.get_droplet_status(resource_id)
            await self.log(
                deployment.id,
                LogLevel.DEBUG,
                LogSource.PROVIDER,
                f"Instance status: {status} (attempt {attempt}/{self._reboot_max_attempts})",
            )
            if status == "active":
                await self._store.update_machine(machine.id, actual_status=MachineStatus.RUNNING)
                await self._advance(deployment.id, DeploymentState.SUCCEEDED)
                await self._system(deployment.id, "Machine rebooted successfully")
                return

        raise DeploymentError("Reboot timed out")


# --- Process-wide instance ---

_orchestrator: DeploymentOrchestrator | None = None


def init_orchestrator(store: RecordStore, **kwargs: Any) -> DeploymentOrchestrator:
    global _orchestrator  # noqa: PLW0603
    _orchestrator = DeploymentOrchestrator(store, **kwargs)
    return _orchestrator


def get_orchestrator() -> DeploymentOrchestrator:
    """Return the orchestrator. Raises if not initialized."""
    if _orchestrator is None:
        raise RuntimeError("Orchestrator not initialized; call init_orchestrator() first")
    return _orchestrator
