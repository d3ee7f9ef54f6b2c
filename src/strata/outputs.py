"""Dependency output cache.

Outputs of dependency units are fetched at most once per ``(unit path,
command)`` for the whole invocation. The fast path reads them from the
dependency's stored state through the storage client; the slow path runs
``output -json`` in the dependency directory. Mock outputs fill in when real
outputs are unavailable and the dependency allows mocks for the command.
"""

import logging
import os
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from strata.expressions import references
from strata.options import RunOptions
from strata.orchestrator import OrchestratorError
from strata.parser import ConfigParser, ParseError
from strata.remote_state import RemoteStateError, StorageRegistry, read_state_outputs
from strata.schema import DEEP_MAP_ONLY, NO_MERGE, SHALLOW, DependencyBlock

logger = logging.getLogger(__name__)

# What the dependency configuration is parsed for when fetching its outputs.
OUTPUT_BLOCKS = frozenset({"remote_state", "terraform", "terraform_binary"})


class MissingDependencyOutputError(Exception):
    """Raised when a dependency has no outputs and mocks are not allowed."""

    def __init__(self, message: str, dependency: str = "", unit: str = ""):
        super().__init__(message)
        self.dependency = dependency
        self.unit = unit


@dataclass(frozen=True)
class OutputCacheEntry:
    outputs: Dict[str, Any]
    mocked: bool = False
    timestamp: float = field(default_factory=time.time)


def deep_merge_maps(mocks: Dict[str, Any], real: Dict[str, Any]) -> Dict[str, Any]:
    """Merge real outputs over mocks, recursing into maps only.

    Lists and scalars from the real outputs replace the mocks as a whole.
    """
    result = dict(mocks)
    for key, value in real.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge_maps(result[key], value)
        else:
            result[key] = value
    return result


def merge_with_mocks(dependency: DependencyBlock, real: Dict[str, Any]) -> Dict[str, Any]:
    strategy = dependency.mock_outputs_merge_strategy_with_state
    mocks = dependency.mock_outputs or {}
    if strategy == NO_MERGE:
        return real
    if strategy == SHALLOW:
        merged = dict(mocks)
        merged.update(real)
        return merged
    if strategy == DEEP_MAP_ONLY:
        return deep_merge_maps(mocks, real)
    raise ValueError(f"Unknown mock merge strategy '{strategy}'")


class DependencyOutputCache:
    """Fetches and caches dependency outputs for one top-level invocation."""

    def __init__(
        self,
        parser: ConfigParser,
        runner,
        registry: Optional[StorageRegistry] = None,
        options: Optional[RunOptions] = None,
    ):
        """Initialize the cache.

        Args:
            parser: Parser used to read dependency configurations.
            runner: TofuRunner used for ``output -json``.
            registry: Storage clients for the fast path. If None, the fast
                path is never taken.
            options: Run options. If None, uses the parser's options.
        """
        self.parser = parser
        self.runner = runner
        self.registry = registry
        self.options = options or parser.options
        self._entries: Dict[Tuple[str, str], Future] = {}
        self._lock = threading.Lock()
        self.fetches = 0

    def get_entry(self, dependency: DependencyBlock, command: str) -> OutputCacheEntry:
        """Return the cache entry for a dependency, fetching it on first use.

        Concurrent callers for the same ``(unit path, command)`` wait on a
        single fetch and share its result. A failed fetch is not cached.

        Raises:
            ParseError: If the dependency is disabled.
            MissingDependencyOutputError: If outputs are unavailable and mocks
                are not allowed for ``command``.
        """
        if not dependency.enabled:
            raise ParseError(
                f"Dependency '{dependency.name}' is disabled and its outputs cannot be read"
            )

        key = (dependency.path, command)
        with self._lock:
            future = self._entries.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._entries[key] = future

        if not owner:
            return future.result()

        try:
            entry = self._resolve(dependency, command)
        except BaseException as e:
            with self._lock:
                del self._entries[key]
            future.set_exception(e)
            raise
        future.set_result(entry)
        return entry

    def get_outputs(self, dependency: DependencyBlock, command: str) -> Dict[str, Any]:
        return self.get_entry(dependency, command).outputs

    def _resolve(self, dependency: DependencyBlock, command: str) -> OutputCacheEntry:
        mocks_allowed = dependency.mocks_allowed_for(command)

        if dependency.skip_outputs:
            if mocks_allowed:
                return OutputCacheEntry(dict(dependency.mock_outputs), mocked=True)
            return OutputCacheEntry({})

        try:
            real = self._fetch(dependency)
        except (OrchestratorError, RemoteStateError) as e:
            if not mocks_allowed:
                raise MissingDependencyOutputError(
                    f"Could not read outputs of dependency '{dependency.name}' "
                    f"({dependency.path}): {e}",
                    dependency=dependency.name,
                    unit=dependency.path,
                )
            logger.debug(f"Using mock outputs for '{dependency.name}': {e}")
            real = {}

        if real:
            if mocks_allowed:
                return OutputCacheEntry(merge_with_mocks(dependency, real), mocked=False)
            return OutputCacheEntry(real)

        if mocks_allowed:
            logger.debug(
                f"Dependency '{dependency.name}' ({dependency.path}) has no outputs; "
                f"using mock outputs for '{command}'"
            )
            return OutputCacheEntry(dict(dependency.mock_outputs), mocked=True)

        raise MissingDependencyOutputError(
            f"Dependency '{dependency.name}' ({dependency.path}) has no outputs and "
            f"mock outputs are not allowed for '{command}'. Apply the dependency first, "
            "or set mock_outputs and mock_outputs_allowed_terraform_commands.",
            dependency=dependency.name,
            unit=dependency.path,
        )

    def _config_path(self, dependency: DependencyBlock) -> str:
        return os.path.join(dependency.path, self.options.config_filename)

    def _fetch(self, dependency: DependencyBlock) -> Dict[str, Any]:
        config_path = self._config_path(dependency)
        if not os.path.isfile(config_path):
            raise MissingDependencyOutputError(
                f"Dependency '{dependency.name}' points to {dependency.path}, "
                "which has no configuration file",
                dependency=dependency.name,
                unit=dependency.path,
            )
        with self._lock:
            self.fetches += 1

        config = self.parser.parse(config_path, blocks=OUTPUT_BLOCKS)
        if self._can_read_state(config_path, config):
            try:
                outputs = read_state_outputs(config.remote_state, config.directory, self.registry)
            except RemoteStateError as e:
                logger.debug(f"Reading state of {dependency.path} failed, running output: {e}")
                outputs = None
            if outputs is not None:
                logger.debug(f"Read outputs of {dependency.path} from stored state")
                return outputs

        logger.debug(f"Running output -json for {dependency.path}")
        return self.runner.output_json(config)

    def _can_read_state(self, config_path: str, config) -> bool:
        if not self.options.fetch_outputs_from_state or self.registry is None:
            return False
        remote_state = config.remote_state
        if remote_state is None or remote_state.disable_dependency_optimization:
            return False
        if not self.registry.has(remote_state.backend):
            return False
        # Backends computed from other dependencies are not self-contained.
        raw = self.parser.load_raw(config_path)
        for block in raw.blocks_of("remote_state"):
            if any(ref.split(".")[0] == "dependency" for ref in references(block.body)):
                return False
        return True
