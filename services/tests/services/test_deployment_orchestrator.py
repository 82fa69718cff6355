"""Tests for the deployment orchestrator, with fake terraform and provider clients."""

import asyncio
from typing import Any

import pytest

from machina.db.models import (
    DeploymentState,
    DeploymentType,
    LogLevel,
    LogSource,
    MachineStatus,
    TerraformStateStatus,
)
from machina.services import deployment_service
from machina.services.deployment_orchestrator import (
    INTERRUPTED_MESSAGE,
    DeploymentOrchestrator,
    resource_id_from_outputs,
)
from machina.services.deployment_service import can_transition
from machina.services.log_broadcast import LogEvent
from machina.services.provider_client import ProviderAPIError
from machina.services.terraform_runner import ApplyResult, PlanResult
from support import TEAM_ID, make_account, make_deployment, make_machine

TOKEN = "dop_v1_secret_token"

CREATE_PLAN = {
    "resource_changes": [
        {"address": "digitalocean_droplet.this", "change": {"actions": ["create"]}},
        {"address": "digitalocean_firewall.this", "change": {"actions": ["create"]}},
    ]
}


class FakeRunner:
    """Stands in for TerraformRunner; records calls and replays canned results."""

    def __init__(
        self,
        init_ok: bool = True,
        plan_ok: bool = True,
        apply_ok: bool = True,
        destroy_ok: bool = True,
        outputs: dict[str, Any] | None = None,
        plan_json: dict[str, Any] | None = None,
        during_plan: Any = None,
        during_apply: Any = None,
    ) -> None:
        self.init_ok = init_ok
        self.plan_ok = plan_ok
        self.apply_ok = apply_ok
        self.destroy_ok = destroy_ok
        self.outputs = outputs if outputs is not None else {}
        self.plan_json = plan_json
        self.during_plan = during_plan
        self.during_apply = during_apply
        self.calls: list[str] = []
        self.variables: dict[str, Any] = {}
        self.refresh_only = False
        self.workspace_name = ""
        self.on_log: Any = None

    def factory(self, workspace_name: str, on_log: Any) -> "FakeRunner":
        self.workspace_name = workspace_name
        self.on_log = on_log
        return self

    async def init(self, module_name: str) -> bool:
        self.calls.append("init")
        await self.on_log(LogLevel.INFO, LogSource.TERRAFORM, "Terraform initialized")
        return self.init_ok

    async def plan(self, variables: dict[str, Any], refresh_only: bool = False) -> PlanResult:
        self.calls.append("plan")
        self.variables = variables
        self.refresh_only = refresh_only
        if self.during_plan is not None:
            await self.during_plan()
        if not self.plan_ok:
            await self.on_log(LogLevel.ERROR, LogSource.TERRAFORM, "Error: invalid region")
            return PlanResult(success=False, error="Error: invalid region")
        return PlanResult(success=True, plan_artifact=f"/work/{self.workspace_name}/tfplan")

    async def show_plan(self, plan_artifact: str) -> dict[str, Any] | None:
        return self.plan_json

    async def apply(self, plan_artifact: str) -> ApplyResult:
        self.calls.append("apply")
        if self.during_apply is not None:
            await self.during_apply()
        if not self.apply_ok:
            return ApplyResult(success=False, outputs=self.outputs, error="Error: quota exceeded")
        return ApplyResult(success=True, outputs=self.outputs)

    async def destroy(self) -> ApplyResult:
        self.calls.append("destroy")
        if not self.destroy_ok:
            return ApplyResult(success=False, error="Error: droplet locked")
        return ApplyResult(success=True)

    async def cleanup(self) -> None:
        self.calls.append("cleanup")


class FakeProviderClient:
    def __init__(self, statuses: list[str] | None = None, fail_reboot: bool = False) -> None:
        self.statuses = list(statuses or [])
        self.fail_reboot = fail_reboot
        self.reboots: list[str] = []

    def factory(self, provider_type: str, credentials: dict[str, Any]) -> "FakeProviderClient":
        assert credentials == {"api_token": TOKEN}
        return self

    async def reboot(self, resource_id: str) -> None:
        if self.fail_reboot:
            raise ProviderAPIError("Droplet is locked", status_code=422)
        self.reboots.append(resource_id)

    async def get_droplet_status(self, resource_id: str) -> str:
        return self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]


@pytest.fixture
def seeded(store, vault):
    store.add(make_account())
    store.credentials["pa-1"] = vault.encrypt(TEAM_ID, "pa-1", {"api_token": TOKEN})
    return store


def _orchestrator(
    store, vault, runner: FakeRunner | None = None, client: FakeProviderClient | None = None
) -> DeploymentOrchestrator:
    return DeploymentOrchestrator(
        store,
        vault=vault,
        runner_factory=(runner or FakeRunner()).factory,
        provider_client_factory=(client or FakeProviderClient(["active"])).factory,
        reboot_poll_interval=0,
        reboot_max_attempts=3,
    )


def _messages(store, deployment_id: str = "deploy-1") -> list[str]:
    return [entry["message"] for entry in store.deployments[deployment_id].logs]


def _assert_valid_history(store, deployment_id: str = "deploy-1") -> None:
    history = store.state_history[deployment_id]
    for current, target in zip(history, history[1:]):
        assert can_transition(current, target), f"{current} -> {target}"
    if DeploymentState.APPLYING in history:
        assert DeploymentState.PLANNING not in history[history.index(DeploymentState.APPLYING) :]


class TestCreate:
    async def test_create_succeeds(self, seeded, vault):
        seeded.add(make_machine())
        seeded.add(make_deployment())
        runner = FakeRunner(
            plan_json=CREATE_PLAN,
            outputs={"droplet_id": 4242, "public_ip": "203.0.113.5", "private_ip": "10.10.0.5"},
        )

        result = await _orchestrator(seeded, vault, runner).execute("deploy-1")

        assert result.state == DeploymentState.SUCCEEDED
        assert seeded.state_history["deploy-1"] == [
            "queued",
            "planning",
            "applying",
            "succeeded",
        ]
        _assert_valid_history(seeded)
        machine = seeded.machines["mach-1"]
        assert machine.actual_status == MachineStatus.RUNNING
        assert machine.provider_resource_id == "4242"
        assert machine.public_ip == "203.0.113.5"
        assert machine.private_ip == "10.10.0.5"
        assert machine.terraform_state_status == TerraformStateStatus.IN_SYNC
        assert result.plan_summary["resources_to_add"] == 2
        assert result.started_at is not None
        assert result.finished_at is not None
        assert runner.calls == ["init", "plan", "apply"]
        assert runner.variables["do_token"] == TOKEN
        assert runner.workspace_name == "machine-mach-1"

        messages = _messages(seeded)
        assert "Plan: 2 to add, 0 to change, 0 to destroy" in messages
        assert messages[-1] == "Machine created successfully! IP: 203.0.113.5"
        assert "Terraform initialized" in messages
        assert all(TOKEN not in m for m in messages)

    async def test_machine_provisioning_while_planning(self, seeded, vault):
        seeded.add(make_machine())
        seeded.add(make_deployment())
        seen: dict[str, str] = {}

        async def during_plan() -> None:
            seen["status"] = seeded.machines["mach-1"].actual_status

        runner = FakeRunner(outputs={"droplet_id": "d-1"}, during_plan=during_plan)
        await _orchestrator(seeded, vault, runner).execute("deploy-1")

        assert seen["status"] == MachineStatus.PROVISIONING

    async def test_plan_summary_falls_back_for_create(self, seeded, vault):
        seeded.add(make_machine())
        seeded.add(make_deployment())

        result = await _orchestrator(seeded, vault, FakeRunner(plan_json=None)).execute(
            "deploy-1"
        )

        assert result.plan_summary["resources_to_add"] == 2
        assert result.machine_id == "mach-1"

    async def test_init_failure(self, seeded, vault):
        seeded.add(make_machine())
        seeded.add(make_deployment())
        runner = FakeRunner(init_ok=False)

        result = await _orchestrator(seeded, vault, runner).execute("deploy-1")

        assert result.state == DeploymentState.FAILED
        assert result.error_message == "Terraform init failed"
        assert seeded.state_history["deploy-1"] == ["queued", "failed"]
        assert seeded.machines["mach-1"].actual_status == MachineStatus.ERROR
        assert seeded.machines["mach-1"].terraform_state_status == TerraformStateStatus.UNKNOWN
        assert runner.calls == ["init"]
        assert _messages(seeded)[-1] == "Deployment failed: Terraform init failed"

    async def test_plan_failure(self, seeded, vault):
        seeded.add(make_machine())
        seeded.add(make_deployment())

        result = await _orchestrator(seeded, vault, FakeRunner(plan_ok=False)).execute("deploy-1")

        assert result.state == DeploymentState.FAILED
        assert result.error_message == "Error: invalid region"
        assert seeded.state_history["deploy-1"] == ["queued", "planning", "failed"]
        assert seeded.machines["mach-1"].actual_status == MachineStatus.ERROR

    async def test_apply_failure_keeps_partial_resource(self, seeded, vault):
        seeded.add(make_machine())
        seeded.add(make_deployment())
        runner = FakeRunner(apply_ok=False, outputs={"droplet_id": "d-99"})

        result = await _orchestrator(seeded, vault, runner).execute("deploy-1")

        assert result.state == DeploymentState.FAILED
        assert result.error_message == "Error: quota exceeded"
        machine = seeded.machines["mach-1"]
        assert machine.provider_resource_id == "d-99"
        assert machine.actual_status == MachineStatus.ERROR
        assert machine.terraform_state_status == TerraformStateStatus.UNKNOWN
        _assert_valid_history(seeded)

    async def test_missing_credentials(self, store, vault):
        store.add(make_account())
        store.add(make_machine())
        store.add(make_deployment())

        result = await _orchestrator(store, vault).execute("deploy-1")

        assert result.state == DeploymentState.FAILED
        assert "No credentials" in result.error_message

    async def test_live_subscriber_sees_persisted_lines(self, seeded, vault):
        seeded.add(make_machine())
        seeded.add(make_deployment())
        orchestrator = _orchestrator(seeded, vault, FakeRunner(outputs={"droplet_id": "d-1"}))
        live: list[LogEvent] = []
        orchestrator.registry.register("deploy-1", live.append)

        await orchestrator.execute("deploy-1")

        assert [e.message for e in live] == _messages(seeded)
        assert {e.source for e in live} >= {LogSource.SYSTEM, LogSource.TERRAFORM}

    async def test_not_queued_is_skipped(self, seeded, vault):
        seeded.add(make_machine())
        seeded.add(make_deployment(state=DeploymentState.SUCCEEDED))
        runner = FakeRunner()

        result = await _orchestrator(seeded, vault, runner).execute("deploy-1")

        assert result.state == DeploymentState.SUCCEEDED
        assert runner.calls == []


class TestApprovalAndCancel:
    async def test_waits_for_approval_then_applies(self, seeded, vault):
        seeded.add(make_machine())
        seeded.add(make_deployment(require_approval=True))
        runner = FakeRunner(plan_json=CREATE_PLAN, outputs={"droplet_id": "d-7"})
        orchestrator = _orchestrator(seeded, vault, runner)

        waiting = await orchestrator.execute("deploy-1")

        assert waiting.state == DeploymentState.AWAITING_APPROVAL
        assert waiting.plan_summary["resources_to_add"] == 2
        assert waiting.plan_artifact == "/work/machine-mach-1/tfplan"
        assert "apply" not in runner.calls

        approved = await orchestrator.approve("deploy-1", TEAM_ID)
        assert approved.state == DeploymentState.APPLYING
        while orchestrator.is_running("deploy-1"):
            await asyncio.sleep(0)

        assert seeded.deployments["deploy-1"].state == DeploymentState.SUCCEEDED
        assert seeded.machines["mach-1"].provider_resource_id == "d-7"
        assert "Plan approved" in _messages(seeded)
        _assert_valid_history(seeded)

    async def test_cancel_while_planning_stops_before_apply(self, seeded, vault):
        seeded.add(make_machine())
        seeded.add(make_deployment())

        async def cancel_now() -> None:
            await deployment_service.cancel_deployment(seeded, "deploy-1", TEAM_ID)

        runner = FakeRunner(during_plan=cancel_now)
        result = await _orchestrator(seeded, vault, runner).execute("deploy-1")

        assert result.state == DeploymentState.CANCELLED
        assert seeded.state_history["deploy-1"] == ["queued", "planning", "cancelled"]
        assert "apply" not in runner.calls
        assert seeded.machines["mach-1"].actual_status == MachineStatus.TERMINATED
        assert "Deployment was cancelled, stopping before apply" in _messages(seeded)

    async def test_cancel_queued_create_retires_machine(self, seeded, vault):
        seeded.add(make_machine())
        seeded.add(make_deployment())

        cancelled = await _orchestrator(seeded, vault).cancel("deploy-1", TEAM_ID)

        assert cancelled.state == DeploymentState.CANCELLED
        assert seeded.machines["mach-1"].actual_status == MachineStatus.TERMINATED

    async def test_cancel_update_leaves_machine(self, seeded, vault):
        seeded.add(make_machine(actual_status=MachineStatus.RUNNING, provider_resource_id="d-1"))
        seeded.add(make_deployment(type=DeploymentType.UPDATE))

        await _orchestrator(seeded, vault).cancel("deploy-1", TEAM_ID)

        assert seeded.machines["mach-1"].actual_status == MachineStatus.RUNNING


class TestOtherTypes:
    async def test_refresh_plans_refresh_only(self, seeded, vault):
        seeded.add(make_machine(actual_status=MachineStatus.RUNNING, provider_resource_id="d-1"))
        seeded.add(make_deployment(type=DeploymentType.REFRESH))
        runner = FakeRunner(outputs={"droplet_id": "d-1"})

        result = await _orchestrator(seeded, vault, runner).execute("deploy-1")

        assert result.state == DeploymentState.SUCCEEDED
        assert runner.refresh_only is True
        assert result.plan_summary["resources_to_add"] == 0
        assert _messages(seeded)[-1] == "Changes applied successfully"

    async def test_restart_service_sets_trigger(self, seeded, vault):
        seeded.add(make_machine(actual_status=MachineStatus.RUNNING, provider_resource_id="d-1"))
        seeded.add(make_deployment(type=DeploymentType.RESTART_SERVICE))
        runner = FakeRunner(outputs={"droplet_id": "d-1"})

        await _orchestrator(seeded, vault, runner).execute("deploy-1")

        assert runner.variables["restart_trigger"] == "deploy-1"

    async def test_destroy(self, seeded, vault):
        seeded.add(make_machine(actual_status=MachineStatus.RUNNING, provider_resource_id="d-1"))
        seeded.add(make_deployment(type=DeploymentType.DESTROY))
        runner = FakeRunner()

        result = await _orchestrator(seeded, vault, runner).execute("deploy-1")

        assert result.state == DeploymentState.SUCCEEDED
        assert seeded.state_history["deploy-1"] == ["queued", "applying", "succeeded"]
        assert seeded.machines["mach-1"].actual_status == MachineStatus.TERMINATED
        assert runner.calls == ["destroy", "cleanup"]
        assert _messages(seeded)[-1] == "Machine destroyed"

    async def test_destroy_failure(self, seeded, vault):
        seeded.add(make_machine(actual_status=MachineStatus.RUNNING, provider_resource_id="d-1"))
        seeded.add(make_deployment(type=DeploymentType.DESTROY))

        result = await _orchestrator(seeded, vault, FakeRunner(destroy_ok=False)).execute(
            "deploy-1"
        )

        assert result.state == DeploymentState.FAILED
        assert seeded.machines["mach-1"].actual_status == MachineStatus.ERROR


class TestReboot:
    async def test_reboot_until_active(self, seeded, vault):
        seeded.add(
            make_machine(
                actual_status=MachineStatus.RUNNING,
                provider_resource_id="d-42",
                terraform_state_status=TerraformStateStatus.IN_SYNC,
            )
        )
        seeded.add(make_deployment(type=DeploymentType.REBOOT))
        client = FakeProviderClient(["off", "active"])

        result = await _orchestrator(seeded, vault, client=client).execute("deploy-1")

        assert result.state == DeploymentState.SUCCEEDED
        assert client.reboots == ["d-42"]
        assert seeded.machines["mach-1"].actual_status == MachineStatus.RUNNING
        assert {"actual_status": MachineStatus.REBOOTING} in [
            fields for _, fields in seeded.machine_updates
        ]
        assert _messages(seeded)[-1] == "Machine rebooted successfully"

    async def test_reboot_times_out(self, seeded, vault):
        seeded.add(
            make_machine(
                actual_status=MachineStatus.RUNNING,
                provider_resource_id="d-42",
                terraform_state_status=TerraformStateStatus.IN_SYNC,
            )
        )
        seeded.add(make_deployment(type=DeploymentType.REBOOT))

        result = await _orchestrator(
            seeded, vault, client=FakeProviderClient(["off"])
        ).execute("deploy-1")

        assert result.state == DeploymentState.FAILED
        assert result.error_message == "Reboot timed out"
        machine = seeded.machines["mach-1"]
        assert machine.actual_status == MachineStatus.ERROR
        assert machine.terraform_state_status == TerraformStateStatus.IN_SYNC
        polls = [m for m in _messages(seeded) if m.startswith("Instance status")]
        assert polls[-1] == "Instance status: off (attempt 3/3)"

    async def test_reboot_provider_error(self, seeded, vault):
        seeded.add(make_machine(actual_status=MachineStatus.RUNNING, provider_resource_id="d-42"))
        seeded.add(make_deployment(type=DeploymentType.REBOOT))

        result = await _orchestrator(
            seeded, vault, client=FakeProviderClient(["active"], fail_reboot=True)
        ).execute("deploy-1")

        assert result.state == DeploymentState.FAILED
        assert result.error_message == "Droplet is locked"

    async def test_reboot_without_resource_id(self, seeded, vault):
        seeded.add(make_machine(actual_status=MachineStatus.RUNNING))
        seeded.add(make_deployment(type=DeploymentType.REBOOT))

        result = await _orchestrator(seeded, vault).execute("deploy-1")

        assert result.state == DeploymentState.FAILED
        assert result.error_message == "Machine has no provider resource ID"

    async def test_zero_attempts_times_out_without_polling(self, seeded, vault):
        seeded.add(make_machine(actual_status=MachineStatus.RUNNING, provider_resource_id="d-42"))
        seeded.add(make_deployment(type=DeploymentType.REBOOT))
        orchestrator = DeploymentOrchestrator(
            seeded,
            vault=vault,
            runner_factory=FakeRunner().factory,
            provider_client_factory=FakeProviderClient(["active"]).factory,
            reboot_poll_interval=0,
            reboot_max_attempts=0,
        )

        result = await orchestrator.execute("deploy-1")

        assert result.state == DeploymentState.FAILED
        assert result.error_message == "Reboot timed out"
        assert not [m for m in _messages(seeded) if m.startswith("Instance status")]


class TestHelpers:
    def test_resource_id_from_outputs(self):
        assert resource_id_from_outputs({"droplet_id": 42}) == "42"
        assert resource_id_from_outputs({"instance_id": "i-1"}) == "i-1"
        assert resource_id_from_outputs({"droplet_id": ""}) is None
        assert resource_id_from_outputs({}) is None

    async def test_start_runs_in_background(self, seeded, vault):
        seeded.add(make_machine())
        seeded.add(make_deployment())
        orchestrator = _orchestrator(seeded, vault, FakeRunner(outputs={"droplet_id": "d-1"}))

        task = orchestrator.start("deploy-1")
        await task

        assert seeded.deployments["deploy-1"].state == DeploymentState.SUCCEEDED


class TestShutdown:
    async def test_shutdown_fails_interrupted_deployment(self, seeded, vault):
        seeded.add(make_machine())
        seeded.add(make_deployment())
        applying = asyncio.Event()

        async def hang() -> None:
            applying.set()
            await asyncio.Event().wait()

        orchestrator = _orchestrator(seeded, vault, FakeRunner(during_apply=hang))
        orchestrator.start("deploy-1")
        await asyncio.wait_for(applying.wait(), timeout=5)

        await orchestrator.shutdown()

        deployment = seeded.deployments["deploy-1"]
        assert deployment.state == DeploymentState.FAILED
        assert deployment.error_message == INTERRUPTED_MESSAGE
        assert deployment.finished_at is not None
        _assert_valid_history(seeded)
        machine = seeded.machines["mach-1"]
        assert machine.actual_status == MachineStatus.ERROR
        assert machine.terraform_state_status == TerraformStateStatus.UNKNOWN
        assert not orchestrator.is_running("deploy-1")

        follow_up = await deployment_service.create_deployment(
            seeded, machine, DeploymentType.DESTROY, initiated_by="user-1"
        )
        assert follow_up.state == DeploymentState.QUEUED

    async def test_shutdown_fails_interrupted_approved_apply(self, seeded, vault):
        seeded.add(make_machine(provider_resource_id="d-42"))
        seeded.add(
            make_deployment(
                type=DeploymentType.UPDATE,
                state=DeploymentState.AWAITING_APPROVAL,
                plan_artifact="/work/machine-mach-1/tfplan",
            )
        )
        applying = asyncio.Event()

        async def hang() -> None:
            applying.set()
            await asyncio.Event().wait()

        orchestrator = _orchestrator(seeded, vault, FakeRunner(during_apply=hang))
        await orchestrator.approve("deploy-1", TEAM_ID)
        await asyncio.wait_for(applying.wait(), timeout=5)

        await orchestrator.shutdown()

        deployment = seeded.deployments["deploy-1"]
        assert deployment.state == DeploymentState.FAILED
        assert deployment.error_message == INTERRUPTED_MESSAGE
        assert seeded.machines["mach-1"].actual_status == MachineStatus.ERROR
