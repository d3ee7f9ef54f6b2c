"""Execution scheduler.

Runs a command across the units of a run plan with bounded concurrency. A
unit starts only when all of its prerequisites (dependencies, or dependents
for destroy commands) have finished with an acceptable outcome. Failed runs
are offered to the unit's ignore and retry rules before they count as
failures.
"""

import logging
import os
import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from strata.codegen import CodegenError, write_generated_files
from strata.credentials import CredentialsError
from strata.discovery import Unit
from strata.include import MergeError
from strata.options import RunOptions
from strata.orchestrator import OrchestratorError, RunResult, TaskExecutionError
from strata.outputs import MissingDependencyOutputError
from strata.parser import ConfigParser, ParseError
from strata.policy import (
    FailureAction,
    PolicyEngine,
    PolicyError,
    prevents_run,
    write_error_signals,
)
from strata.resolver import RunPlan
from strata.schema import ConfigDocument, SchemaError

logger = logging.getLogger(__name__)

PLUGIN_CACHE_ENV = "TF_PLUGIN_CACHE_DIR"
# Commands that install providers into the plugin cache.
PLUGIN_CACHE_COMMANDS = {"init", "providers"}


class TaskStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.SKIPPED)


class SkipReason:
    SKIP = "skip"
    EXCLUDED = "excluded"
    BLOCKED = "blocked-by-failed-dependency"
    EARLY_EXIT = "early-exit"
    CANCELLED = "cancelled"


# Skipped prerequisites that do not hold back the units after them.
ACCEPTABLE_SKIPS = {SkipReason.SKIP, SkipReason.EXCLUDED}


@dataclass
class ExecutionTask:
    """One unit's run of a command.

    Attributes:
        unit: The unit.
        command: Wrapped tool command.
        args: Extra command arguments.
        status: Task state.
        exit_code: Exit code of the last attempt, None if never run.
        retry_count: Retries made after the first attempt.
        skip_reason: Why the task was skipped.
        ignored: A failure was absorbed by an ignore rule.
        error: Error message of a failed task.
        duration: Seconds spent running.
    """

    unit: Unit
    command: str
    args: List[str] = field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING
    exit_code: Optional[int] = None
    retry_count: int = 0
    skip_reason: Optional[str] = None
    ignored: bool = False
    error: Optional[str] = None
    duration: float = 0.0

    @property
    def path(self) -> str:
        return self.unit.path

    def skip(self, reason: str) -> None:
        self.status = TaskStatus.SKIPPED
        self.skip_reason = reason

    def fail(self, error: str, exit_code: int = 1) -> None:
        self.status = TaskStatus.FAILED
        self.error = error
        self.exit_code = exit_code

    @property
    def acceptable(self) -> bool:
        """Whether units waiting on this task may start."""
        if self.status is TaskStatus.SUCCEEDED:
            return True
        return self.status is TaskStatus.SKIPPED and self.skip_reason in ACCEPTABLE_SKIPS


def aggregate_exit_code(exit_codes: List[Optional[int]]) -> int:
    """Combine task exit codes into one.

    Any code other than 0 and 2 gives 1; otherwise any 2 gives 2; otherwise 0.
    Tasks that never ran (None) do not count.
    """
    codes = [code for code in exit_codes if code is not None]
    if any(code not in (0, 2) for code in codes):
        return 1
    if any(code == 2 for code in codes):
        return 2
    return 0


class UnitLogAdapter(logging.LoggerAdapter):
    """Prefixes log lines with the unit path."""

    def process(self, msg, kwargs):
        return f"[{self.extra['unit']}] {msg}", kwargs


class UnitExecutor:
    """Runs the command of one task, applying the unit's error rules."""

    def __init__(
        self,
        parser: ConfigParser,
        runner,
        options: Optional[RunOptions] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the executor.

        Args:
            parser: Parser for the full configuration of each unit.
            runner: TofuRunner.
            options: Run options. If None, uses the parser's options.
            sleep: Called between retry attempts.
        """
        self.parser = parser
        self.runner = runner
        self.options = options or parser.options
        self.sleep = sleep
        self.plugin_cache_lock = threading.Lock()

    def _needs_plugin_cache_lock(self, command: str) -> bool:
        if self.options.plugin_cache_safe:
            return False
        return bool(self.options.env.get(PLUGIN_CACHE_ENV)) and command in PLUGIN_CACHE_COMMANDS

    def _run_once(self, config: ConfigDocument, task: ExecutionTask, credentials, log) -> RunResult:
        try:
            self.runner.run_hooks(config, "before_hook", task.command, credentials=credentials)
            if self._needs_plugin_cache_lock(task.command):
                with self.plugin_cache_lock:
                    result = self.runner.run(config, task.command, task.args, credentials=credentials)
            else:
                result = self.runner.run(config, task.command, task.args, credentials=credentials)
            if not result.succeeded():
                self.runner.run_hooks(
                    config, "error_hook", task.command, failed=True, credentials=credentials
                )
            self.runner.run_hooks(
                config,
                "after_hook",
                task.command,
                failed=not result.succeeded(),
                credentials=credentials,
            )
        except TaskExecutionError as e:
            return RunResult(args=[task.command], exit_code=e.exit_code or 1, stderr=str(e))

        for line in result.output.splitlines():
            log.info(line)
        return result

    def __call__(self, task: ExecutionTask) -> None:
        """Run a task and record its outcome on it."""
        log = UnitLogAdapter(
            logger, {"unit": task.unit.relative_path(self.options.working_dir)}
        )
        try:
            config = self.parser.parse(task.path)
            if prevents_run(config.exclude, task.command):
                log.info("Not running: prevented by exclude block")
                task.skip(SkipReason.EXCLUDED)
                return
            if config.skip:
                log.info("Not running: skip = true")
                task.skip(SkipReason.SKIP)
                return
            policy = PolicyEngine.from_config(config)
            write_generated_files(config)
            credentials = self.runner.load_credentials(config)
        except (
            ParseError,
            MergeError,
            SchemaError,
            MissingDependencyOutputError,
            PolicyError,
            CodegenError,
            CredentialsError,
        ) as e:
            log.error(str(e))
            task.fail(str(e))
            return

        attempt = 0
        while True:
            attempt += 1
            try:
                result = self._run_once(config, task, credentials, log)
            except OrchestratorError as e:
                log.error(str(e))
                task.fail(str(e))
                return

            if result.succeeded():
                task.status = TaskStatus.SUCCEEDED
                task.exit_code = result.exit_code
                return

            decision = policy.evaluate_failure(result.output, attempt)
            if decision.action is FailureAction.IGNORE:
                log.warning(
                    decision.message
                    or f"Ignoring error matched by ignore rule '{decision.rule}'"
                )
                try:
                    write_error_signals(task.path, decision)
                except PolicyError as e:
                    log.error(str(e))
                task.status = TaskStatus.SUCCEEDED
                task.exit_code = 0
                task.ignored = True
                return

            if decision.action is FailureAction.RETRY:
                task.retry_count += 1
                log.info(
                    f"Retrying after error matched by rule '{decision.rule}' "
                    f"(attempt {attempt + 1}) in {decision.sleep_interval_sec}s"
                )
                self.sleep(decision.sleep_interval_sec)
                continue

            message = f"{task.command} exited with {result.exit_code}"
            log.error(message)
            task.fail(str(TaskExecutionError(message, result.exit_code, result.output)), result.exit_code)
            return


class Scheduler:
    """Runs a command across a run plan with bounded concurrency."""

    def __init__(
        self,
        plan: RunPlan,
        execute: Callable[[ExecutionTask], None],
        parallelism: Optional[int] = None,
        ignore_errors: bool = False,
        args: Optional[List[str]] = None,
    ):
        """Initialize the scheduler.

        Args:
            plan: Units to run and their order.
            execute: Runs one task and records its outcome on it.
            parallelism: Maximum number of tasks run at once. Defaults to the
                number of CPUs.
            ignore_errors: Keep running units that do not depend on a failure.
            args: Extra command arguments.
        """
        self.plan = plan
        self.execute = execute
        self.parallelism = parallelism or os.cpu_count() or 1
        self.ignore_errors = ignore_errors
        self.tasks: Dict[str, ExecutionTask] = {
            path: ExecutionTask(
                unit=plan.graph.get_unit(path), command=plan.command, args=list(args or [])
            )
            for path in plan.order
        }
        self._cancelled = threading.Event()
        self._early_exit = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Stop starting new tasks. Tasks already running finish."""
        if not self._cancelled.is_set():
            logger.warning("Cancelling run: no new units will be started")
        self._cancelled.set()

    def _prerequisites(self, path: str) -> Set[str]:
        if self.plan.reverse:
            return self.plan.graph.get_dependents(path)
        return self.plan.graph.get_dependencies(path)

    def _followers(self, path: str) -> Set[str]:
        if self.plan.reverse:
            return self.plan.graph.get_all_dependencies(path)
        return self.plan.graph.get_all_dependents(path)

    def _ready(self, task: ExecutionTask) -> bool:
        if task.status is not TaskStatus.PENDING:
            return False
        return all(
            self.tasks[prereq].status.terminal and self.tasks[prereq].acceptable
            for prereq in self._prerequisites(task.path)
            if prereq in self.tasks
        )

    def _block_followers(self, path: str) -> None:
        for follower in sorted(self._followers(path)):
            task = self.tasks.get(follower)
            if task is None or task.status is not TaskStatus.PENDING:
                continue
            exclude = task.unit.config.exclude
            if exclude is not None and exclude.no_run and prevents_run(exclude, task.command):
                task.skip(SkipReason.EXCLUDED)
            else:
                task.skip(SkipReason.BLOCKED)
            logger.info(f"Skipping {follower}: {task.skip_reason} ({path})")

    def _mark_initial(self) -> None:
        for task in self.tasks.values():
            if task.unit.excluded:
                task.skip(SkipReason.EXCLUDED)
            elif task.unit.skip:
                task.skip(SkipReason.SKIP)

    def _run_task(self, task: ExecutionTask) -> None:
        start = time.monotonic()
        try:
            self.execute(task)
        except Exception as e:
            logger.error(f"Unexpected error running {task.path}: {e}")
            task.fail(str(e))
        finally:
            task.duration = time.monotonic() - start
        if task.status is TaskStatus.RUNNING:
            task.fail("Task finished without an outcome")

    def _stopping(self) -> bool:
        return self._cancelled.is_set() or self._early_exit

    def _finished(self, task: ExecutionTask) -> None:
        if task.status is not TaskStatus.FAILED:
            return
        if self.ignore_errors:
            self._block_followers(task.path)
        else:
            if not self._early_exit:
                logger.error(f"Unit {task.path} failed; not starting any further units")
            self._early_exit = True

    def run(self) -> List[ExecutionTask]:
        """Run every task of the plan.

        Returns:
            Tasks in plan order, each in a terminal state.
        """
        self._mark_initial()
        running = {}
        with ThreadPoolExecutor(max_workers=self.parallelism) as pool:
            while True:
                try:
                    if not self._stopping():
                        for path in self.plan.order:
                            task = self.tasks[path]
                            if self._ready(task):
                                task.status = TaskStatus.RUNNING
                                running[pool.submit(self._run_task, task)] = path
                    if not running:
                        break
                    done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    self.cancel()
                    continue
                for future in done:
                    self._finished(self.tasks[running.pop(future)])

        for task in self.tasks.values():
            if task.status is TaskStatus.PENDING:
                if self._cancelled.is_set():
                    task.skip(SkipReason.CANCELLED)
                elif self._early_exit:
                    task.skip(SkipReason.EARLY_EXIT)
                else:
                    task.skip(SkipReason.BLOCKED)
        return [self.tasks[path] for path in self.plan.order]
