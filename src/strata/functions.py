"""Built-in configuration functions and their memoisation cache.

Functions are bound to a ``FunctionContext`` describing the unit being parsed
(its directory, includes and run options). Side-effecting functions
(``run_cmd``, ``sops_decrypt_file``) go through a ``FunctionCache`` that is
created once per top-level invocation and shared by every parse.
"""

import base64
import hashlib
import json
import logging
import os
import re
import subprocess
import sys
import threading
import uuid
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import hcl2
import yaml

from strata.expressions import FunctionCallError, Scope, evaluate_value
from strata.git_detector import GitDetectorError, find_repo_root
from strata.options import RunOptions
from strata.policy import DEFAULT_RETRYABLE_ERRORS

logger = logging.getLogger(__name__)

DEFAULT_PARENT_CONFIG = "root.hcl"
MAX_PARENT_FOLDERS_TO_CHECK = 100

COMMANDS_THAT_NEED_VARS = ["apply", "console", "destroy", "import", "plan", "push", "refresh"]
COMMANDS_THAT_NEED_LOCKING = ["apply", "destroy", "import", "init", "plan", "refresh", "taint", "untaint"]
COMMANDS_THAT_NEED_INPUT = ["apply", "import", "init", "plan", "refresh"]
COMMANDS_THAT_NEED_PARALLELISM = ["apply", "plan", "destroy"]

RUN_CMD_QUIET = "--terragrunt-quiet"
RUN_CMD_GLOBAL_CACHE = "--terragrunt-global-cache"
RUN_CMD_NO_CACHE = "--terragrunt-no-cache"

NO_DEFAULT = object()


class FunctionCache:
    """Memoises side-effecting function calls for one top-level invocation.

    Keys are ``(directory or "global", function name, argument tuple)``.
    Concurrent callers of the same key share a single invocation; a failed
    invocation is not cached.
    """

    def __init__(self):
        self._entries: Dict[Tuple, Future] = {}
        self._lock = threading.Lock()
        self.invocations = 0

    def get_or_call(self, key: Tuple, compute: Callable[[], Any]) -> Any:
        with self._lock:
            future = self._entries.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._entries[key] = future
                self.invocations += 1

        if owner:
            try:
                future.set_result(compute())
            except BaseException as e:
                with self._lock:
                    self._entries.pop(key, None)
                future.set_exception(e)
                raise
        return future.result()

    def __contains__(self, key: Tuple) -> bool:
        with self._lock:
            return key in self._entries

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


@dataclass
class FunctionContext:
    """What built-in functions know about the configuration being parsed.

    Attributes:
        terragrunt_dir: Directory of the unit being parsed.
        original_terragrunt_dir: Directory of the unit that started the parse,
            which differs inside ``read_terragrunt_config``.
        include_paths: Parent configuration paths keyed by include label.
        active_include: Label of the include whose parent is being parsed.
        options: Run options.
        cache: Function cache for the invocation.
        read_config: Callback implementing ``read_terragrunt_config``.
        read_files: Files recorded by ``mark_as_read``.
    """

    terragrunt_dir: str
    original_terragrunt_dir: str = ""
    include_paths: Dict[str, str] = field(default_factory=dict)
    active_include: Optional[str] = None
    options: RunOptions = field(default_factory=RunOptions)
    cache: FunctionCache = field(default_factory=FunctionCache)
    read_config: Optional[Callable[[str, Any], Any]] = None
    read_files: Set[str] = field(default_factory=set)

    def __post_init__(self):
        if not self.original_terragrunt_dir:
            self.original_terragrunt_dir = self.terragrunt_dir

    def resolve(self, path: str) -> str:
        path = os.path.expanduser(path)
        if not os.path.isabs(path):
            path = os.path.join(self.terragrunt_dir, path)
        return os.path.normpath(path)

    def include_path(self, label: Optional[str]) -> Optional[str]:
        if label:
            if label not in self.include_paths:
                raise FunctionCallError(f"No include block with label '{label}'")
            return self.include_paths[label]
        if self.active_include is not None and self.active_include in self.include_paths:
            return self.include_paths[self.active_include]
        if self.include_paths:
            return next(iter(self.include_paths.values()))
        return None


def _to_slash(path: str) -> str:
    return path.replace(os.sep, "/")


# ---------------------------------------------------------------------------
# Configuration helpers
# ---------------------------------------------------------------------------


def find_in_parent_folders(ctx: FunctionContext, name: str = DEFAULT_PARENT_CONFIG, fallback: Any = NO_DEFAULT) -> Any:
    """Search the parent directories of the unit for ``name``.

    Returns:
        Absolute path of the first match.

    Raises:
        FunctionCallError: If nothing is found and no fallback was given.
    """
    current = ctx.terragrunt_dir
    for _ in range(MAX_PARENT_FOLDERS_TO_CHECK):
        parent = os.path.dirname(current)
        if parent == current:
            break
        candidate = os.path.join(parent, name)
        if os.path.isfile(candidate):
            return _to_slash(candidate)
        current = parent
    if fallback is not NO_DEFAULT:
        return fallback
    raise FunctionCallError(
        f"Could not find a {name} in any of the parent folders of {ctx.terragrunt_dir}"
    )


def path_relative_to_include(ctx: FunctionContext, label: Optional[str] = None) -> str:
    include_path = ctx.include_path(label)
    if include_path is None:
        return "."
    return _to_slash(os.path.relpath(ctx.terragrunt_dir, os.path.dirname(include_path)))


def path_relative_from_include(ctx: FunctionContext, label: Optional[str] = None) -> str:
    include_path = ctx.include_path(label)
    if include_path is None:
        return "."
    return _to_slash(os.path.relpath(os.path.dirname(include_path), ctx.terragrunt_dir))


def get_parent_terragrunt_dir(ctx: FunctionContext, label: Optional[str] = None) -> str:
    include_path = ctx.include_path(label)
    if include_path is None:
        return _to_slash(ctx.terragrunt_dir)
    return _to_slash(os.path.dirname(include_path))


def get_env(ctx: FunctionContext, name: str, default: Optional[str] = None) -> str:
    value = ctx.options.env.get(name)
    if value is None or value == "":
        return default if default is not None else ""
    return value


def get_platform() -> str:
    if sys.platform.startswith("win"):
        return "windows"
    return sys.platform.rstrip("0123456789")


def get_repo_root(ctx: FunctionContext) -> str:
    try:
        return _to_slash(find_repo_root(ctx.terragrunt_dir))
    except GitDetectorError as e:
        raise FunctionCallError(f"get_repo_root(): {e}")


def get_path_from_repo_root(ctx: FunctionContext) -> str:
    root = get_repo_root(ctx)
    return _to_slash(os.path.relpath(ctx.terragrunt_dir, root))


def get_path_to_repo_root(ctx: FunctionContext) -> str:
    root = get_repo_root(ctx)
    return _to_slash(os.path.relpath(root, ctx.terragrunt_dir))


def run_cmd(ctx: FunctionContext, *args: str) -> str:
    """Run an external command and return its stdout without the trailing newline.

    Leading ``--terragrunt-quiet``, ``--terragrunt-global-cache`` and
    ``--terragrunt-no-cache`` flags control output redaction and caching.

    Raises:
        FunctionCallError: If no command is given or it exits non-zero.
    """
    quiet = global_cache = no_cache = False
    args = [str(a) for a in args]
    while args and args[0] in (RUN_CMD_QUIET, RUN_CMD_GLOBAL_CACHE, RUN_CMD_NO_CACHE):
        flag = args.pop(0)
        if flag == RUN_CMD_QUIET:
            quiet = True
        elif flag == RUN_CMD_GLOBAL_CACHE:
            global_cache = True
        else:
            no_cache = True
    if not args:
        raise FunctionCallError("run_cmd() requires a command to run")

    def execute() -> str:
        try:
            result = subprocess.run(
                args,
                cwd=ctx.terragrunt_dir,
                env=ctx.options.env,
                capture_output=True,
                text=True,
            )
        except OSError as e:
            raise FunctionCallError(f"run_cmd(): failed to execute {args[0]}: {e}")
        if result.returncode != 0:
            raise FunctionCallError(
                f"run_cmd(): command {' '.join(args)} exited with code "
                f"{result.returncode}: {result.stderr.strip()}"
            )
        output = result.stdout[:-1] if result.stdout.endswith("\n") else result.stdout
        logger.debug(
            "run_cmd output: [%s]", "REDACTED" if quiet else output
        )
        return output

    if no_cache:
        return execute()
    scope = "global" if global_cache else ctx.terragrunt_dir
    return ctx.cache.get_or_call((scope, "run_cmd", tuple(args)), execute)


def sops_decrypt_file(ctx: FunctionContext, path: str) -> str:
    """Decrypt a sops-encrypted file with the external ``sops`` binary."""
    path = ctx.resolve(path)
    extension = os.path.splitext(path)[1].lstrip(".").lower()
    file_format = {"yml": "yaml", "yaml": "yaml", "json": "json", "env": "dotenv"}.get(
        extension, "binary"
    )

    def decrypt() -> str:
        command = ["sops", "--input-type", file_format, "--output-type", file_format, "-d", path]
        try:
            result = subprocess.run(
                command, env=ctx.options.env, capture_output=True, text=True
            )
        except OSError as e:
            raise FunctionCallError(f"sops_decrypt_file(): failed to run sops: {e}")
        if result.returncode != 0:
            raise FunctionCallError(
                f"sops_decrypt_file(): could not decrypt {path}: {result.stderr.strip()}"
            )
        return result.stdout

    return ctx.cache.get_or_call(("global", "sops_decrypt_file", (path,)), decrypt)


def read_terragrunt_config(ctx: FunctionContext, path: str, default: Any = NO_DEFAULT) -> Any:
    if ctx.read_config is None:
        raise FunctionCallError("read_terragrunt_config() is not available here")
    return ctx.read_config(ctx.resolve(path), default)


def read_tfvars_file(ctx: FunctionContext, path: str) -> Dict[str, Any]:
    """Read a ``.tfvars`` or ``.tfvars.json`` file into a map."""
    path = ctx.resolve(path)
    if not os.path.isfile(path):
        raise FunctionCallError(f"read_tfvars_file(): file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            if path.endswith(".json"):
                return json.load(f)
            raw = hcl2.load(f)
    except Exception as e:
        # hcl2 reports syntax errors with lark exception types
        raise FunctionCallError(f"read_tfvars_file(): could not parse {path}: {e}")
    return evaluate_value(raw, Scope(functions=TERRAFORM_FUNCTIONS))


def mark_as_read(ctx: FunctionContext, path: str) -> str:
    path = ctx.resolve(path)
    ctx.read_files.add(path)
    return _to_slash(path)


# ---------------------------------------------------------------------------
# Terraform functions
# ---------------------------------------------------------------------------

_FORMAT_VERB = re.compile(r"%(?:%|([-+# 0]*)(\d*)(?:\.(\d+))?([sdvqft]))")


def tf_format(spec: str, *args: Any) -> str:
    values = list(args)
    position = 0

    def substitute(match: "re.Match") -> str:
        nonlocal position
        if match.group(0) == "%%":
            return "%"
        if position >= len(values):
            raise FunctionCallError(f"format(): not enough arguments for {spec!r}")
        value = values[position]
        position += 1
        flags, width, precision, verb = match.groups()
        if verb == "d":
            text = f"%{flags}{width}d" % int(value)
        elif verb == "f":
            text = f"%{flags}{width}.{precision or 6}f" % float(value)
        elif verb == "q":
            text = json.dumps(tostring(value))
        elif verb == "t":
            text = "true" if value else "false"
        elif verb == "v" and not isinstance(value, (str, int, float, bool)) and value is not None:
            text = jsonencode(value)
        else:
            text = f"%{flags}{width}s" % tostring(value)
        return text

    return _FORMAT_VERB.sub(substitute, spec)


def jsonencode(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=True)


def yamlencode(value: Any) -> str:
    return yaml.safe_dump(value, default_flow_style=False, sort_keys=True)


def merge(*maps: Any) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for item in maps:
        if item is None:
            continue
        if not isinstance(item, dict):
            raise FunctionCallError(f"merge(): arguments must be maps, got {type(item).__name__}")
        result.update(item)
    return result


def concat(*lists: Any) -> List[Any]:
    result: List[Any] = []
    for item in lists:
        if not isinstance(item, list):
            raise FunctionCallError("concat(): all arguments must be lists")
        result.extend(item)
    return result


def flatten(value: List[Any]) -> List[Any]:
    result: List[Any] = []
    for item in value:
        if isinstance(item, list):
            result.extend(flatten(item))
        else:
            result.append(item)
    return result


def tf_replace(value: str, substring: str, replacement: str) -> str:
    if len(substring) > 1 and substring.startswith("/") and substring.endswith("/"):
        pattern = substring[1:-1]
        return re.sub(pattern, re.sub(r"\$(\d+)", r"\\\1", replacement), value)
    return value.replace(substring, replacement)


def substr(value: str, offset: int, length: int) -> str:
    offset = int(offset)
    length = int(length)
    if offset < 0:
        offset = max(len(value) + offset, 0)
    if length < 0:
        return value[offset:]
    return value[offset:offset + length]


def lookup(mapping: Dict[str, Any], key: str, default: Any = NO_DEFAULT) -> Any:
    if key in mapping:
        return mapping[key]
    if default is NO_DEFAULT:
        raise FunctionCallError(f"lookup(): the given key \"{key}\" does not exist")
    return default


def element(values: List[Any], index: int) -> Any:
    if not values:
        raise FunctionCallError("element(): cannot use element function with an empty list")
    return values[int(index) % len(values)]


def coalesce(*values: Any) -> Any:
    for value in values:
        if value is not None and value != "":
            return value
    raise FunctionCallError("coalesce(): no non-null, non-empty-string arguments")


def distinct(values: List[Any]) -> List[Any]:
    result: List[Any] = []
    for value in values:
        if value not in result:
            result.append(value)
    return result


def tostring(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value == int(value):
        return str(int(value))
    if isinstance(value, (str, int, float)):
        return str(value)
    raise FunctionCallError(f"tostring(): cannot convert {type(value).__name__} to string")


def tonumber(value: Any) -> Any:
    if value is None or (isinstance(value, (int, float)) and not isinstance(value, bool)):
        return value
    try:
        return int(value)
    except (TypeError, ValueError):
        try:
            return float(value)
        except (TypeError, ValueError):
            raise FunctionCallError(f"tonumber(): cannot convert {value!r} to number")


def tobool(value: Any) -> Optional[bool]:
    if value is None or isinstance(value, bool):
        return value
    if value in ("true", "false"):
        return value == "true"
    raise FunctionCallError(f"tobool(): cannot convert {value!r} to bool")


def toset(values: List[Any]) -> List[Any]:
    unique = distinct(values)
    try:
        return sorted(unique)
    except TypeError:
        return unique


def tf_range(*args: Any) -> List[Any]:
    numbers = [int(a) for a in args]
    if len(numbers) == 1:
        return list(range(numbers[0]))
    if len(numbers) in (2, 3):
        return list(range(*numbers))
    raise FunctionCallError("range(): expected 1 to 3 arguments")


def title(value: str) -> str:
    return re.sub(r"\b([a-z])", lambda m: m.group(1).upper(), value)


def timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


TERRAFORM_FUNCTIONS: Dict[str, Callable] = {
    "jsonencode": jsonencode,
    "jsondecode": json.loads,
    "yamlencode": yamlencode,
    "yamldecode": yaml.safe_load,
    "merge": merge,
    "concat": concat,
    "flatten": flatten,
    "format": tf_format,
    "lower": lambda s: s.lower(),
    "upper": lambda s: s.upper(),
    "title": title,
    "join": lambda sep, *lists: sep.join(tostring(v) for lst in lists for v in lst),
    "split": lambda sep, s: s.split(sep),
    "replace": tf_replace,
    "trimspace": lambda s: s.strip(),
    "trimprefix": lambda s, prefix: s[len(prefix):] if prefix and s.startswith(prefix) else s,
    "trimsuffix": lambda s, suffix: s[:-len(suffix)] if suffix and s.endswith(suffix) else s,
    "substr": substr,
    "startswith": lambda s, prefix: s.startswith(prefix),
    "endswith": lambda s, suffix: s.endswith(suffix),
    "length": len,
    "lookup": lookup,
    "contains": lambda values, value: value in values,
    "keys": lambda m: sorted(m),
    "values": lambda m: [m[k] for k in sorted(m)],
    "element": element,
    "coalesce": coalesce,
    "compact": lambda values: [v for v in values if v is not None and v != ""],
    "distinct": distinct,
    "tostring": tostring,
    "tonumber": tonumber,
    "tobool": tobool,
    "tolist": lambda values: list(values),
    "tomap": lambda m: dict(m),
    "toset": toset,
    "basename": lambda p: os.path.basename(p.rstrip("/")),
    "dirname": lambda p: _to_slash(os.path.dirname(p)) or ".",
    "pathexpand": os.path.expanduser,
    "max": lambda *n: max(n),
    "min": lambda *n: min(n),
    "abs": abs,
    "range": tf_range,
    "base64encode": lambda s: base64.b64encode(s.encode("utf-8")).decode("ascii"),
    "base64decode": lambda s: base64.b64decode(s).decode("utf-8"),
    "sha256": lambda s: hashlib.sha256(s.encode("utf-8")).hexdigest(),
    "md5": lambda s: hashlib.md5(s.encode("utf-8")).hexdigest(),
    "uuid": lambda: str(uuid.uuid4()),
    "timestamp": timestamp,
}


def _read_file(ctx: FunctionContext, path: str) -> str:
    resolved = ctx.resolve(path)
    try:
        with open(resolved, "r", encoding="utf-8") as f:
            return f.read()
    except OSError as e:
        raise FunctionCallError(f"file(): could not read {resolved}: {e}")


def build_functions(ctx: FunctionContext) -> Dict[str, Callable]:
    """Return every built-in function bound to ``ctx``."""
    functions = dict(TERRAFORM_FUNCTIONS)
    functions.update(
        {
            "file": lambda path: _read_file(ctx, path),
            "fileexists": lambda path: os.path.isfile(ctx.resolve(path)),
            "abspath": lambda path: _to_slash(ctx.resolve(path)),
            "find_in_parent_folders": lambda *a: find_in_parent_folders(ctx, *a),
            "path_relative_to_include": lambda *a: path_relative_to_include(ctx, *a),
            "path_relative_from_include": lambda *a: path_relative_from_include(ctx, *a),
            "get_parent_terragrunt_dir": lambda *a: get_parent_terragrunt_dir(ctx, *a),
            "get_env": lambda *a: get_env(ctx, *a),
            "get_platform": get_platform,
            "get_repo_root": lambda: get_repo_root(ctx),
            "get_path_from_repo_root": lambda: get_path_from_repo_root(ctx),
            "get_path_to_repo_root": lambda: get_path_to_repo_root(ctx),
            "get_terragrunt_dir": lambda: _to_slash(ctx.terragrunt_dir),
            "get_original_terragrunt_dir": lambda: _to_slash(ctx.original_terragrunt_dir),
            "get_working_dir": lambda: _to_slash(ctx.options.working_dir),
            "run_cmd": lambda *a: run_cmd(ctx, *a),
            "read_terragrunt_config": lambda *a: read_terragrunt_config(ctx, *a),
            "read_tfvars_file": lambda path: read_tfvars_file(ctx, path),
            "sops_decrypt_file": lambda path: sops_decrypt_file(ctx, path),
            "mark_as_read": lambda path: mark_as_read(ctx, path),
            "get_terraform_command": lambda: ctx.options.command,
            "get_terraform_cli_args": lambda: list(ctx.options.command_args),
            "get_terraform_commands_that_need_vars": lambda: list(COMMANDS_THAT_NEED_VARS),
            "get_terraform_commands_that_need_locking": lambda: list(COMMANDS_THAT_NEED_LOCKING),
            "get_terraform_commands_that_need_input": lambda: list(COMMANDS_THAT_NEED_INPUT),
            "get_terraform_commands_that_need_parallelism": lambda: list(COMMANDS_THAT_NEED_PARALLELISM),
            "get_default_retryable_errors": lambda: list(DEFAULT_RETRYABLE_ERRORS),
        }
    )
    return functions
