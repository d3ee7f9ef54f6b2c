"""Run options shared by the parser, scheduler and CLI.

Every CLI flag maps onto a field of ``RunOptions``. The CLI resolves flag and
environment variable precedence through click; ``RunOptions.from_env`` gives
library callers the same environment mapping.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

DEFAULT_CONFIG_FILENAME = "terragrunt.hcl"
DEFAULT_STACK_FILENAME = "terragrunt.stack.hcl"

# Commands that walk the graph in reverse order.
DESTROY_COMMAND = "destroy"

ENV_PREFIX = "TG_"


def parse_bool(value: Optional[str]) -> bool:
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def parse_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def parse_features(items: List[str]) -> Dict[str, str]:
    """Parse ``name=value`` feature overrides.

    Raises:
        ValueError: If an item has no ``=``.
    """
    features = {}
    for item in items:
        if "=" not in item:
            raise ValueError(f"Invalid feature override '{item}', expected name=value")
        name, value = item.split("=", 1)
        features[name.strip()] = value.strip()
    return features


def is_destroy_command(command: str, args: Optional[List[str]] = None) -> bool:
    """Return True for ``destroy``, ``apply -destroy`` and ``plan -destroy``."""
    if command == DESTROY_COMMAND:
        return True
    return command in ("apply", "plan") and "-destroy" in (args or [])


@dataclass
class RunOptions:
    """Options for one top-level invocation.

    Attributes:
        working_dir: Root directory for discovery and relative log prefixes.
        config_filename: Unit configuration file name.
        command: Wrapped tool command (``plan``, ``apply``...).
        command_args: Extra arguments passed to the wrapped tool.
        parallelism: Maximum number of units run at once.
        ignore_errors: Keep running unrelated units after a failure.
        include_dirs: Globs of unit directories to include.
        exclude_dirs: Globs of unit directories to exclude.
        strict_include: Only run units matching ``include_dirs``.
        include_external: Include dependencies outside ``working_dir``.
        include_hidden: Walk hidden directories during discovery.
        fetch_outputs_from_state: Read dependency outputs from stored state.
        feature_overrides: Feature flag overrides as raw strings.
        auth_provider_cmd: Command printing credentials as JSON.
        tf_path: Wrapped tool binary.
        plugin_cache_safe: The provider plugin cache tolerates concurrent use.
        changed_since: Git ref selecting units with files changed since it.
        log_level: Logging level name.
        env: Environment passed to functions and subprocesses.
    """

    working_dir: str = field(default_factory=os.getcwd)
    config_filename: str = DEFAULT_CONFIG_FILENAME
    command: str = ""
    command_args: List[str] = field(default_factory=list)
    parallelism: int = field(default_factory=lambda: os.cpu_count() or 1)
    ignore_errors: bool = False
    include_dirs: List[str] = field(default_factory=list)
    exclude_dirs: List[str] = field(default_factory=list)
    strict_include: bool = False
    include_external: bool = False
    include_hidden: bool = False
    fetch_outputs_from_state: bool = False
    feature_overrides: Dict[str, str] = field(default_factory=dict)
    auth_provider_cmd: Optional[str] = None
    tf_path: Optional[str] = None
    plugin_cache_safe: bool = False
    changed_since: Optional[str] = None
    log_level: str = "info"
    env: Dict[str, str] = field(default_factory=lambda: dict(os.environ))

    def __post_init__(self):
        self.working_dir = os.path.abspath(self.working_dir)
        if self.parallelism < 1:
            raise ValueError(f"parallelism must be >= 1, got {self.parallelism}")

    @property
    def destroy(self) -> bool:
        return is_destroy_command(self.command, self.command_args)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, **overrides) -> "RunOptions":
        """Build options from ``TG_*`` environment variables.

        Keyword overrides win over the environment, matching CLI precedence.
        """
        env = dict(os.environ if env is None else env)
        values = {"env": env}

        def get(name: str) -> Optional[str]:
            return env.get(ENV_PREFIX + name)

        if get("WORKING_DIR"):
            values["working_dir"] = get("WORKING_DIR")
        if get("CONFIG"):
            values["config_filename"] = os.path.basename(get("CONFIG"))
        if get("PARALLELISM"):
            values["parallelism"] = int(get("PARALLELISM"))
        if get("QUEUE_IGNORE_ERRORS") is not None:
            values["ignore_errors"] = parse_bool(get("QUEUE_IGNORE_ERRORS"))
        if get("QUEUE_INCLUDE_DIR"):
            values["include_dirs"] = parse_list(get("QUEUE_INCLUDE_DIR"))
        if get("QUEUE_EXCLUDE_DIR"):
            values["exclude_dirs"] = parse_list(get("QUEUE_EXCLUDE_DIR"))
        if get("QUEUE_STRICT_INCLUDE") is not None:
            values["strict_include"] = parse_bool(get("QUEUE_STRICT_INCLUDE"))
        if get("QUEUE_INCLUDE_EXTERNAL") is not None:
            values["include_external"] = parse_bool(get("QUEUE_INCLUDE_EXTERNAL"))
        if get("DEPENDENCY_FETCH_OUTPUT_FROM_STATE") is not None:
            values["fetch_outputs_from_state"] = parse_bool(
                get("DEPENDENCY_FETCH_OUTPUT_FROM_STATE")
            )
        if get("FEATURE"):
            values["feature_overrides"] = parse_features(parse_list(get("FEATURE")))
        if get("AUTH_PROVIDER_CMD"):
            values["auth_provider_cmd"] = get("AUTH_PROVIDER_CMD")
        if get("TF_PATH"):
            values["tf_path"] = get("TF_PATH")
        if get("LOG_LEVEL"):
            values["log_level"] = get("LOG_LEVEL")

        values.update(overrides)
        return cls(**values)
