"""OpenTofu/Terraform runner for Strata.

This module builds and runs commands of the wrapped tool in a unit directory,
with the unit's inputs passed as ``TF_VAR_*`` environment variables.
"""

import json
import logging
import os
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from strata.options import RunOptions
from strata.remote_state import backend_config_args
from strata.schema import ConfigDocument

logger = logging.getLogger(__name__)

DEFAULT_BINARIES = ("tofu", "terraform")
DETAILED_EXIT_CODE_FLAG = "-detailed-exitcode"


class OrchestratorError(Exception):
    """Base exception for orchestrator errors."""

    pass


class TaskExecutionError(OrchestratorError):
    """Raised when the wrapped tool exits with a failure."""

    def __init__(self, message: str, exit_code: int = 1, output: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.output = output


@dataclass
class RunResult:
    """Outcome of one run of the wrapped tool."""

    args: List[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)

    def succeeded(self) -> bool:
        """Exit code 2 only reports pending changes under ``-detailed-exitcode``."""
        if self.exit_code == 0:
            return True
        return self.exit_code == 2 and DETAILED_EXIT_CODE_FLAG in self.args


def to_tf_var(value: Any) -> str:
    """Encode an input value the way the wrapped tool reads ``TF_VAR_*``."""
    if isinstance(value, str):
        return value
    return json.dumps(value, separators=(",", ":"))


class TofuRunner:
    """Builds and runs commands of the wrapped tool."""

    def __init__(self, options: Optional[RunOptions] = None, credentials_loader=None):
        """Initialize the runner.

        Args:
            options: Run options. If None, uses defaults.
            credentials_loader: Callable ``(command, unit_dir, env)`` returning
                extra environment variables, usually
                ``credentials.load_credentials``. Only called when an auth
                provider command is configured.
        """
        self.options = options or RunOptions()
        self.credentials_loader = credentials_loader

    def binary(self, config: Optional[ConfigDocument] = None) -> str:
        """Return the wrapped tool binary.

        ``terraform_binary`` in the configuration wins over the ``tf_path``
        option; otherwise ``tofu`` is used if installed, then ``terraform``.
        """
        if config is not None and config.attributes.get("terraform_binary"):
            return str(config.attributes["terraform_binary"])
        if self.options.tf_path:
            return self.options.tf_path
        for name in DEFAULT_BINARIES:
            if shutil.which(name, path=self.options.env.get("PATH")):
                return name
        return DEFAULT_BINARIES[-1]

    def _extra_arguments(self, config: ConfigDocument, command: str) -> List[str]:
        args: List[str] = []
        for extra in (config.terraform.get("extra_arguments") or {}).values():
            if command not in (extra.get("commands") or []):
                continue
            args.extend(str(a) for a in extra.get("arguments") or [])
            for var_file in extra.get("required_var_files") or []:
                args.append(f"-var-file={var_file}")
            for var_file in extra.get("optional_var_files") or []:
                if os.path.isfile(os.path.join(config.directory, var_file)):
                    args.append(f"-var-file={var_file}")
        return args

    def build_command(
        self, config: ConfigDocument, command: str, args: Optional[List[str]] = None
    ) -> List[str]:
        """Generate the command line for a unit.

        Args:
            config: Resolved unit configuration.
            command: Wrapped tool command (``plan``, ``apply``...).
            args: Extra arguments from the command line.

        Returns:
            List of command arguments (suitable for subprocess.run).

        Raises:
            OrchestratorError: If no command is given.
        """
        if not command:
            raise OrchestratorError("Cannot build command: no command specified")

        cmd = [self.binary(config), command]
        cmd.extend(self._extra_arguments(config, command))

        remote_state = config.remote_state
        if command == "init" and remote_state is not None:
            cmd.extend(backend_config_args(remote_state))

        cmd.extend(args or [])
        return cmd

    def load_credentials(self, config: ConfigDocument) -> Dict[str, str]:
        """Run the auth provider command for a unit.

        Returns an empty mapping when no auth provider is configured.
        """
        if not self.options.auth_provider_cmd or self.credentials_loader is None:
            return {}
        return self.credentials_loader(
            self.options.auth_provider_cmd, config.directory, dict(self.options.env)
        )

    def build_env(
        self,
        config: ConfigDocument,
        command: str = "",
        credentials: Optional[Dict[str, str]] = None,
    ) -> Dict[str, str]:
        """Environment of the wrapped tool for a unit.

        Inputs are exported as ``TF_VAR_<name>``; an existing environment
        variable of the same name wins. Extra argument ``env_vars`` and
        auth provider credentials are added last. Credentials already loaded
        for the task are passed in; otherwise the auth provider is run.
        """
        env = dict(self.options.env)
        for name, value in config.inputs.items():
            env.setdefault(f"TF_VAR_{name}", to_tf_var(value))

        for extra in (config.terraform.get("extra_arguments") or {}).values():
            if command and command in (extra.get("commands") or []):
                env.update({k: str(v) for k, v in (extra.get("env_vars") or {}).items()})

        if credentials is None:
            credentials = self.load_credentials(config)
        env.update(credentials)
        return env

    def run(
        self,
        config: ConfigDocument,
        command: str,
        args: Optional[List[str]] = None,
        capture: bool = True,
        input_data: Optional[str] = None,
        credentials: Optional[Dict[str, str]] = None,
    ) -> RunResult:
        """Run the wrapped tool in the unit directory.

        Raises:
            OrchestratorError: If the binary cannot be started.
        """
        cmd = self.build_command(config, command, args)
        env = self.build_env(config, command, credentials)
        logger.debug(f"Running {self.generate_command_string(cmd)} in {config.directory}")
        try:
            completed = subprocess.run(
                cmd,
                cwd=config.directory,
                env=env,
                input=input_data,
                capture_output=capture,
                text=True,
                check=False,
            )
        except OSError as e:
            raise OrchestratorError(f"Failed to run {cmd[0]}: {e}")
        return RunResult(
            args=cmd,
            exit_code=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )

    def run_hooks(
        self,
        config: ConfigDocument,
        hook_type: str,
        command: str,
        failed: bool = False,
        credentials: Optional[Dict[str, str]] = None,
    ) -> None:
        """Run ``before_hook``/``after_hook``/``error_hook`` entries for a command.

        Raises:
            TaskExecutionError: If a hook exits non-zero.
        """
        hooks = config.terraform.get(hook_type) or {}
        env = None
        for name in hooks:
            hook = hooks[name]
            if command not in (hook.get("commands") or []):
                continue
            if failed and hook_type != "error_hook" and not hook.get("run_on_error", False):
                continue
            execute = [str(a) for a in hook.get("execute") or []]
            if not execute:
                continue
            working_dir = hook.get("working_dir") or config.directory
            if env is None:
                env = self.build_env(config, command, credentials)
            logger.info(f"Running {hook_type} '{name}': {self.generate_command_string(execute)}")
            try:
                completed = subprocess.run(
                    execute,
                    cwd=working_dir,
                    env=env,
                    check=False,
                )
            except OSError as e:
                raise TaskExecutionError(f"Failed to run {hook_type} '{name}': {e}")
            if completed.returncode != 0:
                raise TaskExecutionError(
                    f"{hook_type} '{name}' exited with {completed.returncode}",
                    exit_code=completed.returncode,
                )

    def output_json(self, config: ConfigDocument) -> Dict[str, Any]:
        """Run ``output -json`` and return output name to value.

        Raises:
            TaskExecutionError: If the command fails.
            OrchestratorError: If the output is not valid JSON.
        """
        result = self.run(config, "output", ["-json"])
        if result.exit_code != 0:
            raise TaskExecutionError(
                f"output -json failed in {config.directory}: {result.stderr.strip()}",
                exit_code=result.exit_code,
                output=result.output,
            )
        text = result.stdout.strip()
        if not text:
            return {}
        try:
            outputs = json.loads(text)
        except json.JSONDecodeError as e:
            raise OrchestratorError(f"Invalid output -json from {config.directory}: {e}")
        return {name: output.get("value") for name, output in outputs.items()}

    def state_pull(self, config: ConfigDocument) -> bytes:
        result = self.run(config, "state", ["pull"])
        if result.exit_code != 0:
            raise TaskExecutionError(
                f"state pull failed in {config.directory}: {result.stderr.strip()}",
                exit_code=result.exit_code,
                output=result.output,
            )
        return result.stdout.encode("utf-8")

    def state_push(self, config: ConfigDocument, data: bytes, force: bool = False) -> None:
        args = ["push"]
        if force:
            args.append("-force")
        args.append("-")
        result = self.run(config, "state", args, input_data=data.decode("utf-8"))
        if result.exit_code != 0:
            raise TaskExecutionError(
                f"state push failed in {config.directory}: {result.stderr.strip()}",
                exit_code=result.exit_code,
                output=result.output,
            )

    def generate_command_string(self, cmd: List[str]) -> str:
        """Return a command as a shell-escaped string."""
        return " ".join(shlex.quote(arg) for arg in cmd)

    def format_execution_plan(
        self,
        order: List[str],
        command: str,
        working_dir: str,
        excluded: Optional[Dict[str, str]] = None,
    ) -> str:
        """Format a human-readable execution plan.

        Args:
            order: Unit paths in execution order.
            command: Wrapped tool command.
            working_dir: Directory unit paths are shown relative to.
            excluded: Unit path to exclusion reason.

        Returns:
            Formatted string describing the execution plan.
        """
        lines = []
        lines.append("=" * 70)
        lines.append(f"Strata Execution Plan: {command}")
        lines.append("=" * 70)

        if order:
            lines.append(f"\nUnits to run ({len(order)}):")
            for i, path in enumerate(order, start=1):
                lines.append(f"   {i:2d}. {os.path.relpath(path, working_dir)}")

        if excluded:
            lines.append(f"\nExcluded units ({len(excluded)}):")
            for path in sorted(excluded):
                lines.append(f"   - {os.path.relpath(path, working_dir)} ({excluded[path]})")

        lines.append("\n" + "=" * 70)
        return "\n".join(lines)

    def format_json_output(
        self,
        order: List[str],
        command: str,
        excluded: Optional[Dict[str, str]] = None,
    ) -> Dict:
        """Format an execution plan as a JSON-serializable dictionary."""
        output = {
            "execution_plan": {
                "command": command,
                "total_units": len(order),
                "units": order,
            }
        }
        if excluded:
            output["excluded"] = {path: excluded[path] for path in sorted(excluded)}
        return output
