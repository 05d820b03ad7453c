"""
Terraform sandbox.

Each deployment runs in its own workspace directory under
<tmp>/<app>-deploy/<deployment_id>. The workspace holds the user's
configuration (main.tf) and an orchestrator-owned provider_override.tf with
the short-lived credentials; it is removed when the operation finishes.

Terraform runs as a child process with a fixed timeout (the process is
killed on expiry) and its combined output is capped at
TERRAFORM_MAX_OUTPUT_BYTES.
"""
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field
from pathlib import Path
import asyncio
import json
import logging
import os
import re

from iac_engine.core.config import config
from iac_engine.core.errors import AppError
from iac_engine.domain.cloud_models import AWSCredentials
from iac_engine.domain.deployment_models import PlanSummary
from iac_engine.utils.fs import (
    create_exclusive_dir,
    read_text_if_exists,
    remove_tree,
    workspace_root,
    write_private_file,
)


logger = logging.getLogger(__name__)


PLAN_SUMMARY_RE = re.compile(r"Plan:\s*(\d+)\s*to add,\s*(\d+)\s*to change,\s*(\d+)\s*to destroy")
WORKSPACE_ID_RE = re.compile(r"^[A-Za-z0-9_\-]+$")
PLAN_FILE = "tfplan"
STATE_FILE = "terraform.tfstate"
READ_CHUNK_BYTES = 64 * 1024

# Host credentials must not leak into the child; the provider block carries the assumed-role keys
STRIPPED_ENV_VARS = (
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
    "AWS_SESSION_TOKEN",
    "AWS_PROFILE",
    "STATE_ENCRYPTION_KEY",
    "MISTRAL_API_KEY",
)


class TerraformSandboxError(AppError):
    """The workspace could not be prepared or terraform could not be started."""
    status_code = 500
    code = "SANDBOX_ERROR"


@dataclass
class CommandResult:
    success: bool
    output: str
    returncode: Optional[int] = None
    error: Optional[str] = None
    timed_out: bool = False
    truncated: bool = False


@dataclass
class PlanResult(CommandResult):
    summary: PlanSummary = field(default_factory=PlanSummary)


@dataclass
class ApplyResult(CommandResult):
    state_content: Optional[str] = None


def parse_plan_summary(output: str) -> PlanSummary:
    """
    Counts from the "Plan: X to add, Y to change, Z to destroy" line.

    "No changes" output, and anything unrecognized, yields zeros.
    """
    match = PLAN_SUMMARY_RE.search(output or "")
    if match:
        return PlanSummary(add=int(match.group(1)), change=int(match.group(2)), destroy=int(match.group(3)))
    return PlanSummary()


def _hcl_string(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"').replace("${", "$${") + '"'


def provider_override(credentials: AWSCredentials, region: str) -> str:
    """Local backend plus an aws provider pinned to the given credentials."""
    lines = [
        "terraform {",
        '  backend "local" {',
        f"    path = {_hcl_string(STATE_FILE)}",
        "  }",
        "}",
        "",
        'provider "aws" {',
        f"  region     = {_hcl_string(region)}",
        f"  access_key = {_hcl_string(credentials.access_key_id)}",
        f"  secret_key = {_hcl_string(credentials.secret_access_key)}",
    ]
    if credentials.session_token:
        lines.append(f"  token      = {_hcl_string(credentials.session_token)}")
    lines.extend([
        "",
        "  default_tags {",
        "    tags = {",
        f"      ManagedBy = {_hcl_string(config.APP_NAME)}",
        "    }",
        "  }",
        "}",
        "",
    ])
    return "\n".join(lines)


class TerraformSandbox:
    """Workspace management and terraform invocations."""

    def __init__(
        self,
        binary: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
        max_output_bytes: Optional[int] = None,
        root: Optional[Path] = None
    ):
        self.binary = binary or config.TERRAFORM_BIN
        self.timeout_seconds = timeout_seconds or config.TERRAFORM_TIMEOUT_SECONDS
        self.max_output_bytes = max_output_bytes or config.TERRAFORM_MAX_OUTPUT_BYTES
        self.root = Path(root) if root else workspace_root(config.APP_NAME)

    def workspace_path(self, workspace_id: str) -> Path:
        if not WORKSPACE_ID_RE.match(workspace_id or ""):
            raise TerraformSandboxError(f"Invalid workspace id: {workspace_id!r}")
        return self.root / workspace_id

    async def create_workspace(self, workspace_id: str) -> Path:
        """
        Create the workspace for one operation.

        Raises:
            TerraformSandboxError: If it already exists (another operation owns it)
        """
        path = self.workspace_path(workspace_id)
        try:
            return await asyncio.to_thread(create_exclusive_dir, path)
        except FileExistsError as error:
            raise TerraformSandboxError(f"Workspace for {workspace_id} is already in use") from error

    async def write_template_files(
        self,
        workdir: Path,
        content: str,
        credentials: AWSCredentials,
        region: str
    ) -> None:
        await asyncio.to_thread(write_private_file, workdir / "main.tf", content)
        await asyncio.to_thread(write_private_file, workdir / "provider_override.tf", provider_override(credentials, region))

    async def cleanup_workspace(self, workdir: Optional[Path]) -> None:
        """Remove a workspace. Never raises: failures are logged."""
        if workdir is None:
            return
        try:
            await asyncio.to_thread(remove_tree, Path(workdir))
        except OSError as error:
            logger.error(f"Failed to remove workspace {workdir}: {error}")

    async def init(self, workdir: Path) -> CommandResult:
        return await self._run(workdir, ["init", "-input=false", "-no-color"])

    async def plan(self, workdir: Path) -> PlanResult:
        """terraform plan into the tfplan artifact. Exit 0 (no changes) and 2 (changes) are success."""
        result = await self._run(
            workdir,
            ["plan", "-input=false", "-no-color", "-detailed-exitcode", f"-out={PLAN_FILE}"],
            success_codes=(0, 2),
        )
        return PlanResult(
            success=result.success,
            output=result.output,
            returncode=result.returncode,
            error=result.error,
            timed_out=result.timed_out,
            truncated=result.truncated,
            summary=parse_plan_summary(result.output),
        )

    async def apply(self, workdir: Path) -> ApplyResult:
        """
        Apply the saved plan and read back the resulting state.

        State is read whatever the exit code: a partial apply leaves state for
        the resources it did create.
        """
        result = await self._run(workdir, ["apply", "-input=false", "-no-color", "-auto-approve", PLAN_FILE])
        state_content = await asyncio.to_thread(read_text_if_exists, workdir / STATE_FILE)
        return ApplyResult(
            success=result.success,
            output=result.output,
            returncode=result.returncode,
            error=result.error,
            timed_out=result.timed_out,
            truncated=result.truncated,
            state_content=state_content,
        )

    async def destroy(self, workdir: Path, state_content: Optional[str] = None) -> CommandResult:
        """Destroy, after restoring the given state into the workspace."""
        if state_content:
            await asyncio.to_thread(write_private_file, workdir / STATE_FILE, state_content)
        return await self._run(workdir, ["destroy", "-input=false", "-no-color", "-auto-approve"])

    async def check_terraform_available(self) -> Dict[str, Any]:
        """Whether the binary runs, and its version."""
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary, "version", "-json",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=10)
        except (OSError, asyncio.TimeoutError) as error:
            logger.warning(f"Terraform not available: {error}")
            return {"available": False, "version": None}

        if process.returncode != 0:
            return {"available": False, "version": None}
        text = stdout.decode("utf-8", errors="replace")
        try:
            version = json.loads(text).get("terraform_version")
        except ValueError:
            version = text.strip().splitlines()[0] if text.strip() else None
        return {"available": True, "version": version}

    def _child_env(self) -> Dict[str, str]:
        env = {key: value for key, value in os.environ.items() if key not in STRIPPED_ENV_VARS}
        env.update({"TF_IN_AUTOMATION": "1", "TF_INPUT": "0", "NO_COLOR": "1", "CHECKPOINT_DISABLE": "1"})
        return env

    async def _read_capped(self, stream: asyncio.StreamReader, buffer: bytearray) -> bool:
        """Drain the stream, keeping at most max_output_bytes. Returns True if anything was dropped."""
        dropped = False
        while True:
            chunk = await stream.read(READ_CHUNK_BYTES)
            if not chunk:
                return dropped
            room = self.max_output_bytes - len(buffer)
            if room > 0:
                buffer.extend(chunk[:room])
            if len(chunk) > max(room, 0):
                dropped = True

    async def _run(self, workdir: Path, args: List[str], success_codes=(0,)) -> CommandResult:
        command = args[0]
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary, *args,
                cwd=str(workdir),
                env=self._child_env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as error:
            raise TerraformSandboxError(f"Could not start terraform: {error}") from error

        buffer = bytearray()

        async def collect() -> bool:
            dropped = await self._read_capped(process.stdout, buffer)
            await process.wait()
            return dropped

        try:
            truncated = await asyncio.wait_for(collect(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                pass  # exited between the timeout and the kill
            try:
                await asyncio.wait_for(process.wait(), timeout=10)
            except asyncio.TimeoutError:
                logger.error(f"terraform {command} did not exit after kill")
            logger.error(f"terraform {command} timed out after {self.timeout_seconds}s in {workdir}")
            return CommandResult(
                success=False,
                output=buffer.decode("utf-8", errors="replace"),
                returncode=process.returncode,
                error=f"terraform {command} timed out after {self.timeout_seconds}s",
                timed_out=True,
            )

        output = buffer.decode("utf-8", errors="replace")
        success = process.returncode in success_codes
        if not success:
            logger.warning(f"terraform {command} exited with {process.returncode}")
        return CommandResult(
            success=success,
            output=output,
            returncode=process.returncode,
            error=None if success else f"terraform {command} exited with code {process.returncode}",
            truncated=truncated,
        )
