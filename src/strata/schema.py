"""Data models for parsed unit configuration.

This module defines the immutable document model produced by the parser and the
typed views (dependency blocks, remote state, exclude and error rules) that the
rest of the engine reads from it.
"""

import os
import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Union


class SchemaError(Exception):
    """Base exception for schema validation errors."""

    pass


NO_MERGE = "no_merge"
SHALLOW = "shallow"
DEEP = "deep"
DEEP_MAP_ONLY = "deep_map_only"

MERGE_STRATEGIES = (NO_MERGE, SHALLOW, DEEP)
MOCK_MERGE_STRATEGIES = (NO_MERGE, SHALLOW, DEEP_MAP_ONLY)

FeatureValue = Union[str, int, bool]


@dataclass(frozen=True)
class Block:
    """A configuration block.

    Attributes:
        type: Block type (``dependency``, ``remote_state``...).
        labels: Block labels, empty for unlabeled blocks.
        body: Attribute mapping. Nested labeled blocks are keyed by label.
    """

    type: str
    labels: Tuple[str, ...] = ()
    body: Dict[str, Any] = field(default_factory=dict)

    @property
    def label(self) -> str:
        return self.labels[0] if self.labels else ""


@dataclass(frozen=True)
class IncludeDeclaration:
    """An ``include`` block of a child configuration.

    Attributes:
        label: Include label, empty for the legacy unlabeled form.
        path: Absolute path of the parent configuration file.
        expose: Whether the parent is readable as ``include.<label>``.
        merge_strategy: One of ``no_merge``, ``shallow`` or ``deep``.
    """

    label: str
    path: str
    expose: bool = False
    merge_strategy: str = SHALLOW

    def __post_init__(self):
        if not self.path or not isinstance(self.path, str):
            raise SchemaError(f"Include '{self.label}' must set a non-empty 'path'")
        if self.merge_strategy not in MERGE_STRATEGIES:
            raise SchemaError(
                f"Include '{self.label}' has invalid merge_strategy "
                f"'{self.merge_strategy}'. Valid values: {', '.join(MERGE_STRATEGIES)}"
            )


@dataclass(frozen=True)
class DependencyBlock:
    """A ``dependency`` block: an edge that also consumes the target's outputs.

    Attributes:
        name: Block label, used as ``dependency.<name>``.
        config_path: Path to the dependency unit as written in the config.
        base_dir: Directory that ``config_path`` is relative to.
        enabled: Disabled blocks do not create edges and cannot be read.
        skip_outputs: Never fetch real outputs; use mocks or an empty map.
        mock_outputs: Placeholder outputs.
        mock_outputs_allowed_terraform_commands: Commands for which mocks may be
            used. Empty means every command.
        mock_outputs_merge_strategy_with_state: How mocks combine with real
            outputs (``no_merge``, ``shallow``, ``deep_map_only``).
    """

    name: str
    config_path: str
    base_dir: str = ""
    enabled: bool = True
    skip_outputs: bool = False
    mock_outputs: Optional[Dict[str, Any]] = None
    mock_outputs_allowed_terraform_commands: Tuple[str, ...] = ()
    mock_outputs_merge_strategy_with_state: str = NO_MERGE

    def __post_init__(self):
        if not self.name:
            raise SchemaError("Dependency block must have a label")
        if not self.config_path or not isinstance(self.config_path, str):
            raise SchemaError(
                f"Dependency '{self.name}' must set a non-empty 'config_path'"
            )
        if self.mock_outputs_merge_strategy_with_state not in MOCK_MERGE_STRATEGIES:
            raise SchemaError(
                f"Dependency '{self.name}' has invalid "
                f"mock_outputs_merge_strategy_with_state "
                f"'{self.mock_outputs_merge_strategy_with_state}'"
            )

    @property
    def path(self) -> str:
        """Absolute directory of the dependency unit."""
        return os.path.normpath(os.path.join(self.base_dir, self.config_path))

    def mocks_allowed_for(self, command: str) -> bool:
        if self.mock_outputs is None:
            return False
        allowed = self.mock_outputs_allowed_terraform_commands
        return not allowed or command in allowed

    @classmethod
    def from_block(cls, block: Block, base_dir: str) -> "DependencyBlock":
        body = block.body
        strategy = body.get("mock_outputs_merge_strategy_with_state")
        if strategy is None:
            strategy = SHALLOW if body.get("mock_outputs_merge_with_state") else NO_MERGE
        mock_outputs = body.get("mock_outputs")
        if mock_outputs is not None and not isinstance(mock_outputs, dict):
            raise SchemaError(f"Dependency '{block.label}' mock_outputs must be a map")
        allowed = body.get("mock_outputs_allowed_terraform_commands") or []
        if not isinstance(allowed, list):
            raise SchemaError(
                f"Dependency '{block.label}' mock_outputs_allowed_terraform_commands "
                "must be a list"
            )
        return cls(
            name=block.label,
            config_path=body.get("config_path", ""),
            base_dir=base_dir,
            enabled=as_bool(body.get("enabled", True)),
            skip_outputs=as_bool(body.get("skip_outputs", False)),
            mock_outputs=mock_outputs,
            mock_outputs_allowed_terraform_commands=tuple(str(c) for c in allowed),
            mock_outputs_merge_strategy_with_state=strategy,
        )


@dataclass(frozen=True)
class RemoteStateConfig:
    """A ``remote_state`` block.

    Attributes:
        backend: Backend kind (``s3``, ``gcs``, ``local``...).
        config: Backend configuration map.
        generate: Optional ``{path, if_exists}`` for a generated backend file.
        disable_init: Skip bootstrap during ``init``.
        disable_dependency_optimization: Never read dependency outputs from state.
    """

    backend: str
    config: Dict[str, Any] = field(default_factory=dict)
    generate: Optional[Dict[str, Any]] = None
    disable_init: bool = False
    disable_dependency_optimization: bool = False

    def __post_init__(self):
        if not self.backend or not isinstance(self.backend, str):
            raise SchemaError("remote_state must set a non-empty 'backend'")
        if not isinstance(self.config, dict):
            raise SchemaError("remote_state 'config' must be a map")

    def flag(self, name: str) -> bool:
        return as_bool(self.config.get(name, False))

    @classmethod
    def from_block(cls, block: Block) -> "RemoteStateConfig":
        body = block.body
        return cls(
            backend=body.get("backend", ""),
            config=dict(body.get("config") or {}),
            generate=body.get("generate"),
            disable_init=as_bool(body.get("disable_init", False)),
            disable_dependency_optimization=as_bool(
                body.get("disable_dependency_optimization", False)
            ),
        )


@dataclass(frozen=True)
class ExcludeConfig:
    """An ``exclude`` block.

    Attributes:
        condition: Value of the ``if`` attribute.
        actions: Commands the exclusion applies to (``all``,
            ``all_except_output`` or command names).
        exclude_dependencies: Also exclude the unit's dependencies.
        no_run: Prevent the unit from running when the command is listed.
    """

    condition: bool
    actions: Tuple[str, ...] = ()
    exclude_dependencies: bool = False
    no_run: bool = False

    @classmethod
    def from_block(cls, block: Block) -> "ExcludeConfig":
        body = block.body
        if "if" not in body:
            raise SchemaError("exclude block must set 'if'")
        actions = body.get("actions") or []
        if not isinstance(actions, list):
            raise SchemaError("exclude 'actions' must be a list")
        return cls(
            condition=as_bool(body["if"]),
            actions=tuple(str(a) for a in actions),
            exclude_dependencies=as_bool(body.get("exclude_dependencies", False)),
            no_run=as_bool(body.get("no_run", False)),
        )


@dataclass(frozen=True)
class ErrorPattern:
    """A compiled error pattern. A leading ``!`` negates it."""

    source: str
    negative: bool
    regex: "re.Pattern"

    @classmethod
    def compile(cls, source: str) -> "ErrorPattern":
        negative = source.startswith("!")
        expression = source[1:] if negative else source
        try:
            regex = re.compile(expression)
        except re.error as e:
            raise SchemaError(f"Invalid error pattern '{source}': {e}")
        return cls(source=source, negative=negative, regex=regex)

    def matches(self, text: str) -> bool:
        return self.regex.search(text) is not None


@dataclass(frozen=True)
class RetryRule:
    """A retry rule of an ``errors`` block."""

    name: str
    patterns: Tuple[ErrorPattern, ...]
    max_attempts: int
    sleep_interval_sec: int

    def __post_init__(self):
        if self.max_attempts < 1:
            raise SchemaError(
                f"Retry rule '{self.name}' max_attempts must be >= 1, got {self.max_attempts}"
            )
        if self.sleep_interval_sec < 0:
            raise SchemaError(
                f"Retry rule '{self.name}' sleep_interval_sec must be >= 0"
            )


@dataclass(frozen=True)
class IgnoreRule:
    """An ignore rule of an ``errors`` block."""

    name: str
    patterns: Tuple[ErrorPattern, ...]
    message: str = ""
    signals: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FeatureFlag:
    name: str
    default: Optional[FeatureValue] = None


@dataclass(frozen=True)
class ConfigDocument:
    """A parsed configuration file.

    Attributes:
        path: Absolute path of the configuration file.
        blocks: Block type to evaluated blocks, in document order.
        attributes: Top-level attributes other than ``inputs``.
        locals: Resolved locals.
        inputs: Resolved inputs.
        includes: Include declarations of the file.
        included: Parsed parent documents keyed by include label.
        features: Resolved feature flag values.
        partial: Block types evaluated, or None for a full parse.
    """

    path: str
    blocks: Dict[str, List[Block]] = field(default_factory=dict)
    attributes: Dict[str, Any] = field(default_factory=dict)
    locals: Dict[str, Any] = field(default_factory=dict)
    inputs: Dict[str, Any] = field(default_factory=dict)
    includes: Tuple[IncludeDeclaration, ...] = ()
    included: Dict[str, "ConfigDocument"] = field(default_factory=dict)
    features: Dict[str, FeatureValue] = field(default_factory=dict)
    partial: Optional[FrozenSet[str]] = None

    @property
    def directory(self) -> str:
        return os.path.dirname(self.path)

    def get_blocks(self, block_type: str) -> List[Block]:
        return list(self.blocks.get(block_type, []))

    def get_block(self, block_type: str) -> Optional[Block]:
        blocks = self.blocks.get(block_type)
        return blocks[0] if blocks else None

    def replace(self, **changes) -> "ConfigDocument":
        return replace(self, **changes)

    @property
    def dependency_blocks(self) -> List[DependencyBlock]:
        try:
            return [
                DependencyBlock.from_block(block, self.directory)
                for block in self.get_blocks("dependency")
            ]
        except SchemaError as e:
            raise SchemaError(f"{self.path}: {e}")

    @property
    def dependencies_paths(self) -> List[str]:
        """Absolute paths listed in the ``dependencies`` block."""
        block = self.get_block("dependencies")
        if block is None:
            return []
        paths = block.body.get("paths") or []
        if not isinstance(paths, list):
            raise SchemaError(f"{self.path}: dependencies 'paths' must be a list")
        return [os.path.normpath(os.path.join(self.directory, p)) for p in paths]

    def dependency_paths(self) -> List[str]:
        """Every unit this configuration depends on, without duplicates."""
        paths = [dep.path for dep in self.dependency_blocks if dep.enabled]
        paths.extend(self.dependencies_paths)
        return list(dict.fromkeys(paths))

    @property
    def remote_state(self) -> Optional[RemoteStateConfig]:
        block = self.get_block("remote_state")
        return RemoteStateConfig.from_block(block) if block else None

    @property
    def exclude(self) -> Optional[ExcludeConfig]:
        block = self.get_block("exclude")
        return ExcludeConfig.from_block(block) if block else None

    @property
    def skip(self) -> bool:
        return as_bool(self.attributes.get("skip", False))

    @property
    def terraform(self) -> Dict[str, Any]:
        block = self.get_block("terraform")
        return dict(block.body) if block else {}

    def to_exposed(self) -> Dict[str, Any]:
        """Render the document as the value of ``include.<label>``."""
        exposed: Dict[str, Any] = dict(self.attributes)
        exposed["locals"] = dict(self.locals)
        exposed["inputs"] = dict(self.inputs)
        for block_type, blocks in self.blocks.items():
            if blocks and blocks[0].labels:
                exposed[block_type] = {block.label: dict(block.body) for block in blocks}
            elif blocks:
                exposed[block_type] = dict(blocks[0].body)
        if self.features:
            exposed["feature"] = {
                name: {"value": value} for name, value in self.features.items()
            }
        return exposed


def as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    if value is None:
        return False
    raise SchemaError(f"Expected a bool, got {value!r}")


def validate_merge_strategy(value: Any, label: str) -> str:
    if value is None:
        return SHALLOW
    if not isinstance(value, str) or value not in MERGE_STRATEGIES:
        raise SchemaError(
            f"Include '{label}' has invalid merge_strategy '{value}'. "
            f"Valid values: {', '.join(MERGE_STRATEGIES)}"
        )
    return value


def validate_feature_value(name: str, value: Any) -> FeatureValue:
    """Check that a feature flag value is a string, number or bool.

    Raises:
        SchemaError: If the value has any other type.
    """
    if isinstance(value, (str, bool, int)):
        return value
    if isinstance(value, float) and value == int(value):
        return int(value)
    raise SchemaError(
        f"Feature flag '{name}' must be a string, number or bool, "
        f"got {type(value).__name__}"
    )


def coerce_feature_override(raw: str, default: Optional[FeatureValue]) -> FeatureValue:
    """Convert a CLI/env override string to the type of the flag's default.

    When the default is not known yet, ``true``/``false`` become bools and
    integer strings become numbers.
    """
    if default is None:
        lowered = raw.strip().lower()
        if lowered in ("true", "false"):
            return lowered == "true"
        try:
            return int(raw)
        except ValueError:
            return raw
    if isinstance(default, bool):
        lowered = raw.strip().lower()
        if lowered not in ("true", "false"):
            raise SchemaError(f"Feature override '{raw}' is not a bool")
        return lowered == "true"
    if isinstance(default, int):
        try:
            return int(raw)
        except ValueError:
            raise SchemaError(f"Feature override '{raw}' is not a number")
    return raw
