"""Strata - configuration and dependency engine for OpenTofu/Terraform.

Resolves hierarchical HCL unit configurations, builds the dependency graph of
every unit under a directory and runs the wrapped tool across it with bounded
concurrency.
"""

__version__ = "0.1.0"

from strata.schema import ConfigDocument, DependencyBlock, SchemaError
from strata.options import RunOptions
from strata.expressions import EvaluationError
from strata.parser import ConfigParser, ParseError, parse_config
from strata.include import MergeError
from strata.discovery import DiscoveryError, DiscoveryResult, Unit, UnitFilters, discover
from strata.dag_builder import CycleError, DAGError, DependencyGraph
from strata.resolver import ResolverError, RunPlan, UnitResolver
from strata.policy import FailureAction, PolicyEngine, PolicyError
from strata.remote_state import (
    BackendPreconditionError,
    FileStorageClient,
    RemoteStateError,
    RemoteStateManager,
    StorageClient,
    StorageRegistry,
)
from strata.orchestrator import OrchestratorError, TaskExecutionError, TofuRunner
from strata.outputs import DependencyOutputCache, MissingDependencyOutputError
from strata.scheduler import ExecutionTask, Scheduler, TaskStatus, UnitExecutor
from strata.report import AggregationError, RunReport, build_report
from strata.coordinator import CoordinatorError, RunCoordinator

__all__ = [
    "__version__",
    # Schema
    "ConfigDocument",
    "DependencyBlock",
    "SchemaError",
    # Options
    "RunOptions",
    # Parser
    "ConfigParser",
    "ParseError",
    "EvaluationError",
    "parse_config",
    "MergeError",
    # Discovery and DAG builder
    "DiscoveryError",
    "DiscoveryResult",
    "Unit",
    "UnitFilters",
    "discover",
    "DependencyGraph",
    "DAGError",
    "CycleError",
    # Resolver
    "UnitResolver",
    "RunPlan",
    "ResolverError",
    # Policy
    "PolicyEngine",
    "PolicyError",
    "FailureAction",
    # Remote state
    "RemoteStateManager",
    "RemoteStateError",
    "BackendPreconditionError",
    "StorageClient",
    "StorageRegistry",
    "FileStorageClient",
    # Orchestrator
    "TofuRunner",
    "OrchestratorError",
    "TaskExecutionError",
    # Outputs
    "DependencyOutputCache",
    "MissingDependencyOutputError",
    # Scheduler
    "Scheduler",
    "UnitExecutor",
    "ExecutionTask",
    "TaskStatus",
    # Report
    "RunReport",
    "AggregationError",
    "build_report",
    # Coordinator
    "RunCoordinator",
    "CoordinatorError",
]
