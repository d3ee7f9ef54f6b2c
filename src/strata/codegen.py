"""Code generation for ``generate`` blocks and generated backends.

Files are written into the unit directory before the wrapped tool runs. A
generated file starts with a signature comment so that later runs can tell it
apart from a file written by hand.
"""

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from strata.remote_state import STRATA_ONLY_CONFIG_KEYS
from strata.schema import ConfigDocument, RemoteStateConfig, SchemaError, as_bool

logger = logging.getLogger(__name__)

GENERATED_SIGNATURE = "Generated by Strata. Sig: nIlQXj57tbuaRZEa"
DEFAULT_COMMENT_PREFIX = "# "

IF_EXISTS_ERROR = "error"
IF_EXISTS_SKIP = "skip"
IF_EXISTS_OVERWRITE = "overwrite"
IF_EXISTS_OVERWRITE_GENERATED = "overwrite_terragrunt"
IF_EXISTS_VALUES = (
    IF_EXISTS_ERROR,
    IF_EXISTS_SKIP,
    IF_EXISTS_OVERWRITE,
    IF_EXISTS_OVERWRITE_GENERATED,
)

IF_DISABLED_SKIP = "skip"
IF_DISABLED_REMOVE = "remove"
IF_DISABLED_REMOVE_GENERATED = "remove_terragrunt"
IF_DISABLED_VALUES = (IF_DISABLED_SKIP, IF_DISABLED_REMOVE, IF_DISABLED_REMOVE_GENERATED)


class CodegenError(Exception):
    """Base exception for code generation errors."""

    pass


@dataclass(frozen=True)
class GenerateConfig:
    """A file to generate into a unit directory."""

    name: str
    path: str
    if_exists: str
    contents: str
    comment_prefix: str = DEFAULT_COMMENT_PREFIX
    disable_signature: bool = False
    disable: bool = False
    if_disabled: str = IF_DISABLED_SKIP

    def __post_init__(self):
        if not self.path:
            raise SchemaError(f"generate '{self.name}' must set 'path'")
        if self.if_exists not in IF_EXISTS_VALUES:
            raise SchemaError(
                f"generate '{self.name}' has invalid if_exists '{self.if_exists}'. "
                f"Valid values: {', '.join(IF_EXISTS_VALUES)}"
            )
        if self.if_disabled not in IF_DISABLED_VALUES:
            raise SchemaError(
                f"generate '{self.name}' has invalid if_disabled '{self.if_disabled}'. "
                f"Valid values: {', '.join(IF_DISABLED_VALUES)}"
            )

    @classmethod
    def from_body(cls, name: str, body: Dict[str, Any]) -> "GenerateConfig":
        return cls(
            name=name,
            path=str(body.get("path") or ""),
            if_exists=str(body.get("if_exists") or ""),
            contents=str(body.get("contents") or ""),
            comment_prefix=str(body.get("comment_prefix", DEFAULT_COMMENT_PREFIX)),
            disable_signature=as_bool(body.get("disable_signature", False)),
            disable=as_bool(body.get("disable", False)),
            if_disabled=str(body.get("if_disabled") or IF_DISABLED_SKIP),
        )


def was_generated(path: str) -> bool:
    """Return True if the first line of ``path`` carries the signature."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            first_line = f.readline()
    except (OSError, UnicodeDecodeError) as e:
        raise CodegenError(f"Failed to read {path}: {e}")
    return first_line.strip().endswith(GENERATED_SIGNATURE)


def _should_write(path: str, config: GenerateConfig) -> bool:
    if not os.path.exists(path):
        return True
    if config.if_exists == IF_EXISTS_ERROR:
        raise CodegenError(
            f"Cannot generate '{config.name}': {path} already exists and if_exists is 'error'"
        )
    if config.if_exists == IF_EXISTS_SKIP:
        logger.debug(f"Not generating {path}: file exists")
        return False
    if config.if_exists == IF_EXISTS_OVERWRITE:
        return True
    if not was_generated(path):
        raise CodegenError(
            f"Cannot generate '{config.name}': {path} exists and was not generated"
        )
    return True


def _should_remove(path: str, config: GenerateConfig) -> bool:
    if not os.path.exists(path) or config.if_disabled == IF_DISABLED_SKIP:
        return False
    if config.if_disabled == IF_DISABLED_REMOVE:
        return True
    return was_generated(path)


def write_generated_file(unit_dir: str, config: GenerateConfig) -> Optional[str]:
    """Write one generated file.

    Returns:
        The path written, or None when nothing was written.

    Raises:
        CodegenError: If the target exists and may not be replaced.
    """
    path = config.path if os.path.isabs(config.path) else os.path.join(unit_dir, config.path)

    if config.disable:
        if _should_remove(path, config):
            logger.debug(f"Removing disabled generated file {path}")
            os.remove(path)
        return None

    if not _should_write(path, config):
        return None

    contents = config.contents
    if not config.disable_signature:
        contents = f"{config.comment_prefix}{GENERATED_SIGNATURE}\n{contents}"
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(contents)
    except OSError as e:
        raise CodegenError(f"Failed to write generated file {path}: {e}")
    logger.debug(f"Generated {path}")
    return path


def render_hcl_value(value: Any, indent: int = 0) -> str:
    """Render a plain value as an HCL expression."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return json.dumps(value)
    if isinstance(value, str):
        return json.dumps(value).replace("${", "$${").replace("%{", "%%{")
    pad = "  " * (indent + 1)
    if isinstance(value, (list, tuple)):
        if not value:
            return "[]"
        items = [f"{pad}{render_hcl_value(item, indent + 1)}," for item in value]
        return "[\n" + "\n".join(items) + "\n" + "  " * indent + "]"
    if isinstance(value, dict):
        if not value:
            return "{}"
        items = [
            f"{pad}{json.dumps(str(key))} = {render_hcl_value(item, indent + 1)}"
            for key, item in sorted(value.items())
        ]
        return "{\n" + "\n".join(items) + "\n" + "  " * indent + "}"
    raise CodegenError(f"Cannot render {type(value).__name__} as HCL")


def render_backend(remote_state: RemoteStateConfig) -> str:
    """Render a ``terraform { backend ... }`` block for a remote_state config."""
    lines = ["terraform {", f"  backend {json.dumps(remote_state.backend)} {{"]
    for key in sorted(remote_state.config):
        if key in STRATA_ONLY_CONFIG_KEYS:
            continue
        lines.append(f"    {key} = {render_hcl_value(remote_state.config[key], 2)}")
    lines.extend(["  }", "}", ""])
    return "\n".join(lines)


def generate_configs(config: ConfigDocument) -> List[GenerateConfig]:
    """Every file a resolved configuration asks to generate.

    Raises:
        SchemaError: If a generate block is malformed.
    """
    generated = [
        GenerateConfig.from_body(block.label, block.body)
        for block in config.get_blocks("generate")
    ]
    remote_state = config.remote_state
    if remote_state is not None and remote_state.generate:
        settings = remote_state.generate
        if not isinstance(settings, dict):
            raise SchemaError("remote_state 'generate' must be a map")
        generated.append(
            GenerateConfig(
                name="remote_state",
                path=str(settings.get("path") or ""),
                if_exists=str(settings.get("if_exists") or ""),
                contents=render_backend(remote_state),
            )
        )
    return generated


def write_generated_files(config: ConfigDocument) -> List[str]:
    """Write every generated file of a resolved configuration into its unit directory.

    Returns:
        Paths written.

    Raises:
        CodegenError: If a block is malformed or a file may not be written.
    """
    try:
        configs = generate_configs(config)
    except SchemaError as e:
        raise CodegenError(f"{config.path}: {e}")
    written = []
    for generate in configs:
        path = write_generated_file(config.directory, generate)
        if path:
            written.append(path)
    return written
