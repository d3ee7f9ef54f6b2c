"""Main workflow coordinator for Strata.

This module wires the engine together for one top-level invocation:
1. Discover units and stacks under the working directory
2. Build the dependency graph
3. Plan the run (filters, exclude blocks, order)
4. Schedule the wrapped tool across the plan
5. Report the outcome

It also serves the single-unit commands (``run``, ``render``) and the remote
state backend commands.
"""

import logging
import os
from typing import Any, Dict, List, Optional

from strata.credentials import CredentialsError, load_credentials
from strata.dag_builder import DAGError, DependencyGraph, format_unit_list, to_dot
from strata.discovery import DiscoveryError, DiscoveryResult, UnitDiscovery, UnitFilters
from strata.expressions import EvaluationError
from strata.functions import FunctionCache
from strata.git_detector import GitDetector, GitDetectorError
from strata.include import MergeError
from strata.options import RunOptions, is_destroy_command
from strata.orchestrator import OrchestratorError, TofuRunner
from strata.outputs import DependencyOutputCache, MissingDependencyOutputError
from strata.parser import ConfigParser, ParseError
from strata.remote_state import (
    BootstrapResult,
    MigrationResult,
    RemoteStateError,
    RemoteStateManager,
    StorageRegistry,
    default_registry,
)
from strata.report import RunReport, build_report
from strata.resolver import ResolverError, RunPlan, UnitResolver
from strata.scheduler import Scheduler, UnitExecutor
from strata.schema import ConfigDocument, SchemaError

# Errors that abort an invocation before or outside of task execution.
ENGINE_ERRORS = (
    ParseError,
    EvaluationError,
    MergeError,
    SchemaError,
    DiscoveryError,
    DAGError,
    ResolverError,
    MissingDependencyOutputError,
    RemoteStateError,
    OrchestratorError,
    CredentialsError,
    GitDetectorError,
)


class CoordinatorError(Exception):
    """Base exception for coordinator errors."""

    pass


class RunCoordinator:
    """Coordinates discovery, planning and execution for one invocation."""

    def __init__(
        self,
        options: Optional[RunOptions] = None,
        registry: Optional[StorageRegistry] = None,
        runner: Optional[TofuRunner] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize the run coordinator.

        Args:
            options: Run options. If None, uses defaults for the current
                directory.
            registry: Storage clients by backend kind. If None, only the
                ``local`` backend is available.
            runner: Wrapped tool runner. If None, creates a TofuRunner that
                loads credentials from the auth provider command.
            logger: Logger instance. If None, configures the ``strata`` logger.
        """
        self.options = options or RunOptions()

        # Initialize logger
        if logger is None:
            self.logger = logging.getLogger("strata")
            if not self.logger.handlers:
                handler = logging.StreamHandler()
                formatter = logging.Formatter(
                    "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
                )
                handler.setFormatter(formatter)
                self.logger.addHandler(handler)
            self.logger.setLevel(
                getattr(logging, self.options.log_level.upper(), logging.INFO)
            )
        else:
            self.logger = logger

        # One function cache and one output cache per invocation
        self.function_cache = FunctionCache()
        self.registry = registry or default_registry()
        self.runner = runner or TofuRunner(self.options, credentials_loader=load_credentials)
        self.parser = ConfigParser(self.options, self.function_cache)
        self.output_cache = DependencyOutputCache(
            self.parser, self.runner, self.registry, self.options
        )
        self.parser.output_fetcher = self.output_cache.get_outputs
        self.remote_state = RemoteStateManager(self.registry, self.runner)
        self.filters = UnitFilters.from_options(self.options)

        # Will be initialized when units are discovered
        self.discovery: Optional[DiscoveryResult] = None
        self.graph: Optional[DependencyGraph] = None

    @property
    def working_dir(self) -> str:
        return self.options.working_dir

    def _unit_dir(self, path: Optional[str]) -> str:
        if path is None:
            return self.working_dir
        if os.path.isabs(path):
            return os.path.normpath(path)
        return os.path.normpath(os.path.join(self.working_dir, path))

    def discover(self) -> DiscoveryResult:
        """Discover every unit under the working directory.

        Raises:
            CoordinatorError: If a configuration cannot be parsed or a
                dependency cannot be found.
        """
        try:
            self.discovery = UnitDiscovery(self.parser, self.filters).discover(self.working_dir)
        except ENGINE_ERRORS as e:
            raise CoordinatorError(f"Failed to discover units: {e}")
        self.logger.info(
            f"Discovered {len(self.discovery.units)} units and "
            f"{len(self.discovery.stacks)} stacks"
        )
        return self.discovery

    def build_graph(self) -> DependencyGraph:
        """Build the dependency graph of the discovered units.

        Raises:
            CoordinatorError: If the graph has a cycle.
        """
        if self.discovery is None:
            self.discover()
        try:
            self.graph = DependencyGraph(self.discovery.units)
        except DAGError as e:
            raise CoordinatorError(f"Failed to build dependency graph: {e}")
        return self.graph

    def get_changed_files(self) -> Optional[List[str]]:
        """Files changed since ``changed_since``, or None when not filtering.

        Raises:
            CoordinatorError: If the working directory is not in a git
                repository or the ref is unknown.
        """
        if not self.filters.changed_since:
            return None
        try:
            detector = GitDetector(self.working_dir)
            changed = detector.get_changed_files(self.filters.changed_since)
        except GitDetectorError as e:
            raise CoordinatorError(f"Failed to get changed files: {e}")
        self.logger.info(f"Found {len(changed)} files changed since {self.filters.changed_since}")
        return changed

    def plan(self, command: Optional[str] = None, args: Optional[List[str]] = None) -> RunPlan:
        """Plan a run of ``command`` across the discovered units.

        Args:
            command: Wrapped tool command. Defaults to the options' command.
            args: Extra arguments. Defaults to the options' command arguments.

        Returns:
            RunPlan.

        Raises:
            CoordinatorError: If discovery or planning fails.
        """
        command = command or self.options.command
        args = self.options.command_args if args is None else args
        graph = self.graph or self.build_graph()
        resolver = UnitResolver(graph, self.working_dir, self.filters, self.get_changed_files())
        try:
            plan = resolver.resolve(command, args)
        except ResolverError as e:
            raise CoordinatorError(f"Failed to plan run: {e}")

        for path, reason in sorted(plan.filtered.items()):
            self.logger.debug(f"Unit {os.path.relpath(path, self.working_dir)} left out: {reason}")
        return plan

    def _execute(self, plan: RunPlan, args: List[str]) -> RunReport:
        executor = UnitExecutor(self.parser, self.runner, self.options)
        scheduler = Scheduler(
            plan,
            executor,
            parallelism=self.options.parallelism,
            ignore_errors=self.options.ignore_errors,
            args=args,
        )
        tasks = scheduler.run()
        report = build_report(plan.command, tasks, self.working_dir, scheduler.cancelled)
        self.logger.info(f"Run of {plan.command} finished with exit code {report.exit_code}")
        return report

    def run_all(self, command: Optional[str] = None, args: Optional[List[str]] = None) -> RunReport:
        """Run ``command`` across every unit of the plan.

        Returns:
            RunReport with every task in a terminal state.

        Raises:
            CoordinatorError: If discovery or planning fails. Failures of
                individual units are reported, not raised.
        """
        command = command or self.options.command
        args = self.options.command_args if args is None else args
        if not command:
            raise CoordinatorError("No command given")
        plan = self.plan(command, args)
        self.logger.info(f"Running {command} in {len(plan.order)} units")
        return self._execute(plan, args)

    def run_unit(
        self,
        path: Optional[str] = None,
        command: Optional[str] = None,
        args: Optional[List[str]] = None,
    ) -> RunReport:
        """Run ``command`` in a single unit.

        Args:
            path: Unit directory. Defaults to the working directory.
            command: Wrapped tool command.
            args: Extra arguments.

        Raises:
            CoordinatorError: If the unit cannot be loaded.
        """
        command = command or self.options.command
        args = self.options.command_args if args is None else args
        if not command:
            raise CoordinatorError("No command given")
        unit_dir = self._unit_dir(path)
        try:
            unit = UnitDiscovery(self.parser, self.filters).load_unit(unit_dir, self.working_dir)
            graph = DependencyGraph({unit.path: unit})
        except ENGINE_ERRORS as e:
            raise CoordinatorError(f"Failed to load unit {unit_dir}: {e}")
        plan = RunPlan(
            command=command,
            graph=graph,
            order=[unit.path],
            reverse=is_destroy_command(command, args),
        )
        return self._execute(plan, args)

    def render(self, path: Optional[str] = None) -> Dict[str, Any]:
        """Fully resolve a unit's configuration.

        Returns:
            The resolved configuration as plain data.

        Raises:
            CoordinatorError: If the configuration cannot be resolved.
        """
        try:
            return self.load_config(path).to_exposed()
        except SchemaError as e:
            raise CoordinatorError(f"Failed to render configuration: {e}")

    def load_config(self, path: Optional[str] = None) -> ConfigDocument:
        unit_dir = self._unit_dir(path)
        try:
            return self.parser.parse(unit_dir)
        except ENGINE_ERRORS as e:
            raise CoordinatorError(f"Failed to parse configuration in {unit_dir}: {e}")

    def list_units(self, dag_order: bool = False) -> List[str]:
        """Discovered unit paths, sorted or in execution order.

        External dependencies are only listed when they are included.
        """
        if dag_order:
            return self.plan(self.options.command or "plan", []).order
        discovery = self.discovery or self.discover()
        return [
            path
            for path in discovery.sorted_paths()
            if self.filters.include_external or not discovery.units[path].external
        ]

    def format_units(self, paths: List[str]) -> str:
        return format_unit_list(paths, self.working_dir)

    def graph_dot(self) -> str:
        """Render the dependency graph as DOT."""
        return to_dot(self.graph or self.build_graph(), self.working_dir)

    def format_plan(self, plan: RunPlan) -> str:
        return self.runner.format_execution_plan(
            plan.order, plan.command, self.working_dir, plan.excluded
        )

    def backend_bootstrap(self, path: Optional[str] = None) -> BootstrapResult:
        """Create the state bucket and lock table of a unit if missing."""
        config = self.load_config(path)
        try:
            return self.remote_state.bootstrap(config)
        except RemoteStateError as e:
            raise CoordinatorError(f"Failed to bootstrap backend: {e}")

    def backend_delete(
        self, path: Optional[str] = None, force: bool = False, delete_bucket: bool = False
    ) -> None:
        """Delete a unit's state, and optionally its bucket."""
        config = self.load_config(path)
        try:
            self.remote_state.delete(config, force=force, delete_bucket=delete_bucket)
        except RemoteStateError as e:
            raise CoordinatorError(f"Failed to delete backend state: {e}")

    def backend_migrate(self, source: str, destination: str, force: bool = False) -> MigrationResult:
        """Move state from one unit's backend to another's."""
        source_config = self.load_config(source)
        destination_config = self.load_config(destination)
        try:
            return self.remote_state.migrate(source_config, destination_config, force=force)
        except (RemoteStateError, OrchestratorError) as e:
            raise CoordinatorError(f"Failed to migrate state: {e}")
