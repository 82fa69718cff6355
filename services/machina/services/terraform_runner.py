"""Terraform process runner bound to one machine's workspace.

Each machine owns a directory under terraform.workspaces_dir named by its
terraform_workspace. The runner copies the provider module into it, writes
variables to terraform.tfvars.json (mode 0600, it holds the provider token)
and runs terraform as a child process, streaming every output line through
the on_log callback while the process runs.

Failures are reported as results, never raised: init and plan failures
touch no cloud resources, apply failures may leave partial resources and
report whatever outputs terraform can still read.
"""

import asyncio
import contextlib
import json
import os
import shutil
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import aiofiles

from machina.config import settings
from machina.db.models import LogLevel, LogSource
from machina.logging_config import get_logger

logger = get_logger(__name__)

LogCallback = Callable[[LogLevel, LogSource, str], Awaitable[None]]

VARS_FILE = "terraform.tfvars.json"
PLAN_FILE = "tfplan"

# asyncio.StreamReader line limit; provider errors can be long single lines
_STREAM_LIMIT = 1024 * 1024
_MAX_ERROR_CHARS = 4000


@dataclass
class CommandResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass
class PlanResult:
    success: bool
    plan_artifact: str | None = None
    error: str = ""


@dataclass
class ApplyResult:
    success: bool
    outputs: dict[str, Any] = field(default_factory=dict)
    error: str = ""


class WorkspaceError(ValueError):
    """Workspace name would escape the workspaces directory."""


def classify_stdout_line(line: str) -> LogLevel:
    if "Error" in line:
        return LogLevel.ERROR
    if "Warning" in line:
        return LogLevel.WARN
    return LogLevel.INFO


def summarize_plan_json(plan: dict[str, Any]) -> dict[str, Any]:
    """Count resource changes in `terraform show -json` output.

    Only addresses and actions are kept; before/after values may hold secrets.
    """
    to_add = to_change = to_destroy = 0
    changes = []
    for rc in plan.get("resource_changes") or []:
        actions = (rc.get("change") or {}).get("actions") or []
        if actions == ["no-op"] or actions == ["read"]:
            continue
        if "create" in actions:
            to_add += 1
        if "delete" in actions:
            to_destroy += 1
        if actions == ["update"]:
            to_change += 1
        changes.append(
            {
                "address": rc.get("address", ""),
                "type": rc.get("type", ""),
                "name": rc.get("name", ""),
                "actions": actions,
            }
        )
    return {
        "resources_to_add": to_add,
        "resources_to_change": to_change,
        "resources_to_destroy": to_destroy,
        "resource_changes": changes,
    }


class TerraformRunner:
    """Runs terraform commands inside one isolated workspace directory."""

    def __init__(
        self,
        workspace_name: str,
        on_log: LogCallback,
        binary: str | None = None,
        workspaces_dir: str | None = None,
        modules_dir: str | None = None,
    ) -> None:
        root = Path(workspaces_dir or settings.terraform.workspaces_dir)
        name = Path(workspace_name)
        if not workspace_name or name.is_absolute() or len(name.parts) != 1 or ".." in name.parts:
            raise WorkspaceError(f"Invalid workspace name: {workspace_name}")

        self.workspace_dir = root / name
        self._on_log = on_log
        self._binary = binary or settings.terraform.binary
        self._modules_dir = Path(modules_dir or settings.terraform.modules_dir)

    async def _emit(self, level: LogLevel, source: LogSource, message: str) -> None:
        await self._on_log(level, source, message)

    async def _system(self, level: LogLevel, message: str) -> None:
        await self._emit(level, LogSource.SYSTEM, message)

    # --- Process handling ---

    async def _pump(self, reader: asyncio.StreamReader, is_stderr: bool, sink: list[str]) -> None:
        async for raw in reader:
            line = raw.decode(errors="replace").rstrip("\r\n")
            sink.append(line)
            if not line.strip():
                continue
            level = LogLevel.ERROR if is_stderr else classify_stdout_line(line)
            await self._emit(level, LogSource.TERRAFORM, line)

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        """Kill a child whose caller was cancelled and reap it."""
        if proc.returncode is None:
            logger.warning(
                "Killing interrupted terraform process",
                workspace=self.workspace_dir.name,
                pid=proc.pid,
            )
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
        await asyncio.shield(proc.wait())

    async def _run(self, *args: str, stream: bool = True) -> CommandResult:
        """Run terraform with args in the workspace. Never raises on process failure."""
        env = {**os.environ, "TF_IN_AUTOMATION": "1", "TF_INPUT": "0"}
        logger.debug("Running terraform", workspace=self.workspace_dir.name, command=args[0])
        try:
            proc = await asyncio.create_subprocess_exec(
                self._binary,
                *args,
                cwd=self.workspace_dir,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_STREAM_LIMIT,
            )
        except (FileNotFoundError, PermissionError) as e:
            await self._system(LogLevel.ERROR, f"Terraform is not installed or not executable: {e}")
            return CommandResult(returncode=127, stderr=str(e))

        try:
            if not stream:
                stdout, stderr = await proc.communicate()
                return CommandResult(
                    returncode=proc.returncode or 0,
                    stdout=stdout.decode(errors="replace"),
                    stderr=stderr.decode(errors="replace"),
                )

            out_lines: list[str] = []
            err_lines: list[str] = []
            assert proc.stdout is not None and proc.stderr is not None
            await asyncio.gather(
                self._pump(proc.stdout, False, out_lines),
                self._pump(proc.stderr, True, err_lines),
            )
            returncode = await proc.wait()
        except asyncio.CancelledError:
            await self._terminate(proc)
            raise
        return CommandResult(
            returncode=returncode,
            stdout="\n".join(out_lines),
            stderr="\n".join(err_lines),
        )

    @staticmethod
    def _error_text(result: CommandResult, fallback: str) -> str:
        text = result.stderr.strip()
        return text[-_MAX_ERROR_CHARS:] if text else fallback

    # --- Operations ---

    async def init(self, module_name: str) -> bool:
        """Copy the provider module into the workspace and run terraform init."""
        await self._system(LogLevel.INFO, "Initializing Terraform workspace...")

        module_dir = self._modules_dir / module_name
        if not module_dir.is_dir():
            await self._system(LogLevel.ERROR, f"Module not found: {module_name}")
            return False

        self.workspace_dir.mkdir(parents=True, exist_ok=True)
        for tf_file in sorted(module_dir.glob("*.tf")):
            shutil.copyfile(tf_file, self.workspace_dir / tf_file.name)

        result = await self._run("init", "-no-color", "-input=false")
        if not result.ok:
            await self._system(LogLevel.ERROR, "Terraform init failed")
        return result.ok

    async def write_variables(self, variables: dict[str, Any]) -> None:
        self.workspace_dir.mkdir(parents=True, exist_ok=True)
        path = self.workspace_dir / VARS_FILE
        async with aiofiles.open(
            path, "w", opener=lambda p, flags: os.open(p, flags, 0o600)
        ) as f:
            await f.write(json.dumps(variables, indent=2))

    async def plan(self, variables: dict[str, Any], refresh_only: bool = False) -> PlanResult:
        """Write variables and produce a saved plan artifact."""
        await self._system(LogLevel.INFO, "Creating Terraform plan...")
        await self.write_variables(variables)

        args = ["plan", "-no-color", "-input=false", f"-var-file={VARS_FILE}", f"-out={PLAN_FILE}"]
        if refresh_only:
            args.append("-refresh-only")

        result = await self._run(*args)
        if not result.ok:
            return PlanResult(success=False, error=self._error_text(result, "Plan failed"))
        return PlanResult(success=True, plan_artifact=str(self.workspace_dir / PLAN_FILE))

    async def show_plan(self, plan_artifact: str) -> dict[str, Any] | None:
        """Return the plan as JSON, or None if terraform cannot render it."""
        result = await self._run("show", "-json", "-no-color", plan_artifact, stream=False)
        if not result.ok:
            return None
        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    async def apply(self, plan_artifact: str) -> ApplyResult:
        await self._system(LogLevel.INFO, "Applying Terraform changes...")
        result = await self._run("apply", "-no-color", "-input=false", "-auto-approve", plan_artifact)

        # Partial applies still leave readable outputs
        outputs = await self.outputs()
        if not result.ok:
            return ApplyResult(
                success=False, outputs=outputs, error=self._error_text(result, "Apply failed")
            )
        return ApplyResult(success=True, outputs=outputs)

    async def destroy(self) -> ApplyResult:
        if not self.workspace_dir.is_dir():
            await self._system(LogLevel.WARN, "No Terraform workspace found, nothing to destroy")
            return ApplyResult(success=True)

        await self._system(LogLevel.INFO, "Destroying Terraform resources...")
        args = ["destroy", "-no-color", "-input=false", "-auto-approve"]
        if (self.workspace_dir / VARS_FILE).exists():
            args.append(f"-var-file={VARS_FILE}")

        result = await self._run(*args)
        if not result.ok:
            return ApplyResult(success=False, error=self._error_text(result, "Destroy failed"))
        return ApplyResult(success=True)

    async def outputs(self) -> dict[str, Any]:
        """Read terraform outputs as {name: value}. Empty when unavailable."""
        if not self.workspace_dir.is_dir():
            return {}
        result = await self._run("output", "-json", "-no-color", stream=False)
        if not result.ok or not result.stdout.strip():
            return {}
        try:
            raw = json.loads(result.stdout)
        except json.JSONDecodeError:
            return {}
        if not isinstance(raw, dict):
            return {}
        return {name: item.get("value") for name, item in raw.items() if isinstance(item, dict)}

    async def cleanup(self) -> None:
        """Remove the workspace directory after a terminal destroy."""
        if not self.workspace_dir.exists():
            return
        try:
            await asyncio.to_thread(shutil.rmtree, self.workspace_dir)
        except OSError as e:
            logger.warning(
                "Failed to remove terraform workspace",
                workspace=self.workspace_dir.name,
                error=str(e),
            )
            return
        logger.info("Removed terraform workspace", workspace=self.workspace_dir.name)
