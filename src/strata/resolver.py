"""Run planning: unit filters, exclusion and execution order.

This module narrows a discovered dependency graph down to the units a command
should run, applying directory globs, external dependency rules and
``exclude`` blocks, and orders the result for the command's direction.
"""

import fnmatch
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

from strata.dag_builder import DAGError, DependencyGraph
from strata.discovery import UnitFilters, is_within
from strata.options import is_destroy_command
from strata.policy import should_exclude
from strata.schema import SchemaError

logger = logging.getLogger(__name__)

REASON_NOT_INCLUDED = "not included"
REASON_UNCHANGED = "no changes"
REASON_EXCLUDE_DIR = "excluded directory"
REASON_EXTERNAL = "external dependency"
REASON_EXCLUDE_BLOCK = "exclude block"
REASON_EXCLUDED_DEPENDENCY = "dependency of excluded unit"


class ResolverError(Exception):
    """Base exception for resolver errors."""

    pass


def matches_glob(path: str, pattern: str, working_dir: str) -> bool:
    """Check if a unit directory matches a directory glob.

    Patterns are matched against the path relative to ``working_dir`` and
    against the absolute path. A pattern naming a directory also matches
    every unit below it.

    Args:
        path: Absolute unit directory.
        pattern: Glob pattern (relative or absolute).
        working_dir: Directory relative patterns are based on.

    Returns:
        True if the unit matches the pattern.
    """
    pattern_str = Path(pattern).as_posix().rstrip("/")
    if not pattern_str:
        return False
    if os.path.isabs(pattern):
        candidate = Path(path).as_posix()
        pattern_str = Path(os.path.normpath(pattern)).as_posix()
    else:
        candidate = Path(os.path.relpath(path, working_dir)).as_posix()
        pattern_str = Path(os.path.normpath(pattern_str)).as_posix()

    if candidate == pattern_str or fnmatch.fnmatch(candidate, pattern_str):
        return True

    # A pattern matching a parent directory covers the units below it.
    parts = Path(candidate).parts
    for i in range(1, len(parts)):
        if fnmatch.fnmatch(Path(*parts[:i]).as_posix(), pattern_str):
            return True
    return False


def matches_any(path: str, patterns: Iterable[str], working_dir: str) -> bool:
    return any(matches_glob(path, pattern, working_dir) for pattern in patterns)


@dataclass
class RunPlan:
    """Units a command runs and the order they run in.

    Attributes:
        command: Wrapped tool command.
        graph: Graph of the units taking part, including units excluded by an
            ``exclude`` block, which the scheduler marks as skipped.
        order: Unit paths in execution order.
        reverse: Whether dependents run before their dependencies.
        filtered: Units left out of the run entirely, with the reason.
    """

    command: str
    graph: DependencyGraph
    order: List[str]
    reverse: bool = False
    filtered: Dict[str, str] = field(default_factory=dict)

    @property
    def excluded(self) -> Dict[str, str]:
        """Every unit that will not run, with the reason."""
        excluded = dict(self.filtered)
        for path in self.graph.get_all_units():
            unit = self.graph.get_unit(path)
            if unit.excluded:
                excluded[path] = unit.exclude_reason or REASON_EXCLUDE_BLOCK
        return excluded


class UnitResolver:
    """Plans which units of a dependency graph run for a command."""

    def __init__(
        self,
        graph: DependencyGraph,
        working_dir: str,
        filters: Optional[UnitFilters] = None,
        changed_files: Optional[Iterable[str]] = None,
    ):
        """Initialize the resolver.

        Args:
            graph: Graph of every discovered unit.
            working_dir: Directory relative globs are based on.
            filters: Unit filters. If None, every non-external unit runs.
            changed_files: Absolute paths of changed files. If given, only
                units containing one of them run, with their dependencies.
        """
        self.graph = graph
        self.working_dir = os.path.abspath(working_dir)
        self.filters = filters or UnitFilters()
        self.changed_files = None if changed_files is None else sorted(changed_files)

    def _select(self) -> Dict[str, str]:
        """Compute the units left out of the run, with the reason."""
        filters = self.filters
        all_units = self.graph.get_all_units()
        filtered: Dict[str, str] = {}

        if filters.include_dirs:
            matched = {
                path for path in all_units
                if matches_any(path, filters.include_dirs, self.working_dir)
            }
            selected = set(matched)
            if not filters.strict_include:
                for path in matched:
                    selected.update(self.graph.get_all_dependencies(path))
            for path in all_units - selected:
                filtered[path] = REASON_NOT_INCLUDED

        if self.changed_files is not None:
            changed = {
                path for path in all_units
                if any(is_within(changed_file, path) for changed_file in self.changed_files)
            }
            selected = set(changed)
            for path in changed:
                selected.update(self.graph.get_all_dependencies(path))
            for path in sorted(all_units - selected):
                filtered.setdefault(path, REASON_UNCHANGED)

        for path in all_units:
            if path in filtered:
                continue
            if filters.exclude_dirs and matches_any(path, filters.exclude_dirs, self.working_dir):
                filtered[path] = REASON_EXCLUDE_DIR
            elif self.graph.get_unit(path).external and not filters.include_external:
                filtered[path] = REASON_EXTERNAL
        return filtered

    def _apply_exclude_blocks(self, paths: Set[str], command: str) -> None:
        for path in sorted(paths):
            unit = self.graph.get_unit(path)
            try:
                exclude = unit.config.exclude
            except SchemaError as e:
                raise ResolverError(f"Invalid exclude block in {path}: {e}")
            if not should_exclude(exclude, command):
                continue
            unit.excluded = True
            unit.exclude_reason = REASON_EXCLUDE_BLOCK
            logger.debug(f"Unit {path} excluded by its exclude block")
            if exclude.exclude_dependencies:
                for dependency in self.graph.get_all_dependencies(path):
                    dependency_unit = self.graph.get_unit(dependency)
                    if not dependency_unit.excluded:
                        dependency_unit.excluded = True
                        dependency_unit.exclude_reason = REASON_EXCLUDED_DEPENDENCY

    def resolve(self, command: str, args: Optional[List[str]] = None) -> RunPlan:
        """Plan a run of ``command``.

        Args:
            command: Wrapped tool command.
            args: Extra arguments; ``-destroy`` reverses the order.

        Returns:
            RunPlan.

        Raises:
            ResolverError: If an exclude block is invalid or the plan cannot
                be ordered.
        """
        filtered = self._select()
        selected = self.graph.get_all_units() - set(filtered)
        self._apply_exclude_blocks(selected, command)

        reverse = is_destroy_command(command, args)
        try:
            graph = self.graph.subgraph(selected)
            order = graph.topological_sort(reverse=reverse)
        except DAGError as e:
            raise ResolverError(f"Failed to determine execution order: {e}")

        return RunPlan(
            command=command,
            graph=graph,
            order=order,
            reverse=reverse,
            filtered=filtered,
        )
