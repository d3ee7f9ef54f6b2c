"""Unit and stack discovery.

This module walks a directory tree, finds unit configuration files and stack
files, and partially parses every unit to learn its dependencies. Dependency
units outside the root directory are discovered too and flagged as external.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from strata.options import DEFAULT_STACK_FILENAME, RunOptions
from strata.parser import GRAPH_BLOCKS, ConfigParser
from strata.schema import ConfigDocument, SchemaError

logger = logging.getLogger(__name__)

# Directories holding downloaded or generated files, never units.
CACHE_DIRS = {".terragrunt-cache", ".terraform", ".git"}


class DiscoveryError(Exception):
    """Base exception for discovery errors."""

    pass


@dataclass
class UnitFilters:
    """Which units of a discovery take part in a run.

    Attributes:
        include_dirs: Globs of unit directories to run, with their dependencies.
        exclude_dirs: Globs of unit directories never to run.
        strict_include: Only run units matching ``include_dirs``.
        include_external: Run dependencies outside the discovery root.
        include_hidden: Walk hidden directories.
        changed_since: Git ref; only units with files changed since it run,
            with their dependencies.
    """

    include_dirs: List[str] = field(default_factory=list)
    exclude_dirs: List[str] = field(default_factory=list)
    strict_include: bool = False
    include_external: bool = False
    include_hidden: bool = False
    changed_since: Optional[str] = None

    @classmethod
    def from_options(cls, options: RunOptions) -> "UnitFilters":
        return cls(
            include_dirs=list(options.include_dirs),
            exclude_dirs=list(options.exclude_dirs),
            strict_include=options.strict_include,
            include_external=options.include_external,
            include_hidden=options.include_hidden,
            changed_since=options.changed_since,
        )


@dataclass
class Unit:
    """A discovered unit.

    Attributes:
        path: Absolute unit directory. Unique key of the unit.
        config: Configuration parsed with the graph blocks only.
        dependencies: Paths of the units this unit depends on.
        skip: The configuration sets ``skip = true``.
        external: The unit lies outside the discovery root.
        excluded: The unit is excluded from the run.
        exclude_reason: Why the unit is excluded.
    """

    path: str
    config: ConfigDocument
    dependencies: Set[str] = field(default_factory=set)
    skip: bool = False
    external: bool = False
    excluded: bool = False
    exclude_reason: Optional[str] = None

    def relative_path(self, working_dir: str) -> str:
        return os.path.relpath(self.path, working_dir)


@dataclass
class DiscoveryResult:
    """Units and stacks found under a root directory."""

    root_dir: str
    units: Dict[str, Unit] = field(default_factory=dict)
    stacks: List[str] = field(default_factory=list)

    def sorted_paths(self) -> List[str]:
        return sorted(self.units)


def is_within(path: str, root: str) -> bool:
    path = os.path.normpath(path)
    root = os.path.normpath(root)
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)


def find_config_dirs(root_dir: str, config_filename: str, include_hidden: bool = False):
    """Find unit and stack directories under ``root_dir``.

    Returns:
        Tuple of (unit directories, stack directories), both sorted.
    """
    unit_dirs = []
    stack_dirs = []
    for dirpath, dirnames, filenames in os.walk(root_dir):
        dirnames[:] = sorted(
            name
            for name in dirnames
            if name not in CACHE_DIRS and (include_hidden or not name.startswith("."))
        )
        if config_filename in filenames:
            unit_dirs.append(os.path.abspath(dirpath))
        if DEFAULT_STACK_FILENAME in filenames:
            stack_dirs.append(os.path.abspath(dirpath))
    return sorted(unit_dirs), sorted(stack_dirs)


class UnitDiscovery:
    """Discovers units and their dependencies."""

    def __init__(self, parser: ConfigParser, filters: Optional[UnitFilters] = None):
        """Initialize discovery.

        Args:
            parser: Parser used for the partial parse of every unit.
            filters: Unit filters. If None, built from the parser's options.
        """
        self.parser = parser
        self.options = parser.options
        self.filters = filters or UnitFilters.from_options(parser.options)

    def load_unit(self, path: str, root_dir: str) -> Unit:
        config_path = os.path.join(path, self.options.config_filename)
        config = self.parser.parse(config_path, blocks=GRAPH_BLOCKS)
        try:
            dependencies = set(config.dependency_paths())
            skip = config.skip
        except SchemaError as e:
            raise DiscoveryError(f"Invalid configuration {config_path}: {e}")
        return Unit(
            path=path,
            config=config,
            dependencies=dependencies,
            skip=skip,
            external=not is_within(path, root_dir),
        )

    def discover(self, root_dir: Optional[str] = None) -> DiscoveryResult:
        """Discover every unit under ``root_dir`` and every unit they depend on.

        Args:
            root_dir: Directory to walk. Defaults to the working directory.

        Returns:
            DiscoveryResult.

        Raises:
            DiscoveryError: If the root does not exist or a dependency has no
                configuration file.
            ParseError: If a configuration cannot be parsed.
            MergeError: If an include cannot be merged.
        """
        root_dir = os.path.abspath(root_dir or self.options.working_dir)
        if not os.path.isdir(root_dir):
            raise DiscoveryError(f"Directory not found: {root_dir}")

        unit_dirs, stack_dirs = find_config_dirs(
            root_dir, self.options.config_filename, self.filters.include_hidden
        )
        result = DiscoveryResult(root_dir=root_dir, stacks=stack_dirs)
        logger.debug(f"Found {len(unit_dirs)} units and {len(stack_dirs)} stacks under {root_dir}")

        queue = list(unit_dirs)
        while queue:
            path = queue.pop(0)
            if path in result.units:
                continue
            unit = self.load_unit(path, root_dir)
            result.units[path] = unit
            for dependency in sorted(unit.dependencies):
                if dependency in result.units or dependency in queue:
                    continue
                config_path = os.path.join(dependency, self.options.config_filename)
                if not os.path.isfile(config_path):
                    raise DiscoveryError(
                        f"Unit {path} depends on {dependency}, which has no "
                        f"{self.options.config_filename}"
                    )
                if not is_within(dependency, root_dir):
                    logger.debug(f"Discovered external dependency {dependency} of {path}")
                queue.append(dependency)

        return result


def discover(
    root_dir: str, filters: Optional[UnitFilters] = None, parser: Optional[ConfigParser] = None
) -> DiscoveryResult:
    """Discover units under ``root_dir``.

    Args:
        root_dir: Directory to walk.
        filters: Unit filters. If None, uses defaults.
        parser: Parser to use. If None, creates one for ``root_dir``.
    """
    parser = parser or ConfigParser(RunOptions(working_dir=root_dir))
    return UnitDiscovery(parser, filters or UnitFilters()).discover(root_dir)
