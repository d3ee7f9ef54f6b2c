"""Command-line interface for Strata."""

import dataclasses
import json
import os
import sys
import traceback
from pathlib import Path
from typing import List, Optional, Tuple

import click
import yaml

from strata.coordinator import CoordinatorError, RunCoordinator
from strata.options import RunOptions, parse_features, parse_list


def echo_if_not_json(message: str, json_mode: bool = False, **kwargs):
    """Echo a message only if JSON mode is not enabled.

    Args:
        message: Message to output.
        json_mode: If True, suppress output (JSON mode is active).
        **kwargs: Additional arguments to pass to click.echo.
    """
    if not json_mode:
        click.echo(message, **kwargs)


def error_report(error_type: str, error: Exception, with_traceback: bool = False) -> str:
    """Render an error as a JSON error report."""
    details = {"error_class": type(error).__name__}
    if with_traceback:
        details["traceback"] = traceback.format_exc()
    return json.dumps(
        {
            "errors": [{"error_type": error_type, "message": str(error), "details": details}],
            "total_errors": 1,
            "error_summary": {error_type: 1},
        },
        indent=2,
    )


def fail(error: Exception, json_mode: bool, error_type: str = "coordinator_error") -> None:
    if json_mode:
        click.echo(error_report(error_type, error, with_traceback=error_type == "unexpected_error"))
    elif error_type == "unexpected_error":
        click.echo(f"Unexpected error: {error}", err=True)
    else:
        click.echo(f"Error: {error}", err=True)
    sys.exit(1)


def _split(values: Tuple[str, ...]) -> List[str]:
    """Flatten repeated and comma-separated option values."""
    items: List[str] = []
    for value in values:
        items.extend(parse_list(value))
    return items


@click.group()
@click.version_option(version="0.1.0", prog_name="strata")
@click.option(
    "--working-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    envvar="TG_WORKING_DIR",
    help="Directory to run in. Defaults to the current directory.",
)
@click.option(
    "--config",
    "config_path",
    type=str,
    envvar="TG_CONFIG",
    help="Unit configuration file name. Defaults to terragrunt.hcl.",
)
@click.option(
    "--parallelism",
    type=int,
    envvar="TG_PARALLELISM",
    help="Maximum number of units run at once. Defaults to the number of CPUs.",
)
@click.option(
    "--queue-ignore-errors",
    is_flag=True,
    envvar="TG_QUEUE_IGNORE_ERRORS",
    help="Keep running units that do not depend on a failed unit.",
)
@click.option(
    "--queue-include-dir",
    multiple=True,
    envvar="TG_QUEUE_INCLUDE_DIR",
    help="Glob of unit directories to include, with their dependencies.",
)
@click.option(
    "--queue-exclude-dir",
    multiple=True,
    envvar="TG_QUEUE_EXCLUDE_DIR",
    help="Glob of unit directories to exclude.",
)
@click.option(
    "--queue-strict-include",
    is_flag=True,
    envvar="TG_QUEUE_STRICT_INCLUDE",
    help="Only run units matching --queue-include-dir.",
)
@click.option(
    "--queue-include-external",
    is_flag=True,
    envvar="TG_QUEUE_INCLUDE_EXTERNAL",
    help="Also run dependencies outside the working directory.",
)
@click.option(
    "--queue-include-hidden",
    is_flag=True,
    help="Discover units in hidden directories.",
)
@click.option(
    "--changed-since",
    type=str,
    help="Only run units with files changed since this commit, branch or tag.",
)
@click.option(
    "--dependency-fetch-output-from-state",
    is_flag=True,
    envvar="TG_DEPENDENCY_FETCH_OUTPUT_FROM_STATE",
    help="Read dependency outputs from stored state instead of the wrapped tool.",
)
@click.option(
    "--feature",
    multiple=True,
    envvar="TG_FEATURE",
    help="Feature flag override as name=value. May be repeated.",
)
@click.option(
    "--auth-provider-cmd",
    type=str,
    envvar="TG_AUTH_PROVIDER_CMD",
    help="Command printing credentials as JSON before each run.",
)
@click.option(
    "--tf-path",
    type=str,
    envvar="TG_TF_PATH",
    help="Wrapped tool binary. Defaults to tofu, then terraform.",
)
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="info",
    envvar="TG_LOG_LEVEL",
    help="Logging level. Defaults to info.",
)
@click.pass_context
def cli(
    ctx: click.Context,
    working_dir: Optional[Path],
    config_path: Optional[str],
    parallelism: Optional[int],
    queue_ignore_errors: bool,
    queue_include_dir: Tuple[str, ...],
    queue_exclude_dir: Tuple[str, ...],
    queue_strict_include: bool,
    queue_include_external: bool,
    queue_include_hidden: bool,
    changed_since: Optional[str],
    dependency_fetch_output_from_state: bool,
    feature: Tuple[str, ...],
    auth_provider_cmd: Optional[str],
    tf_path: Optional[str],
    log_level: str,
):
    """Strata - configuration and dependency engine for OpenTofu/Terraform.

    Resolves hierarchical unit configurations, builds the dependency graph of
    every unit under a directory and runs the wrapped tool across it.
    """
    values = {
        "working_dir": str(working_dir) if working_dir else os.getcwd(),
        "ignore_errors": queue_ignore_errors,
        "include_dirs": _split(queue_include_dir),
        "exclude_dirs": _split(queue_exclude_dir),
        "strict_include": queue_strict_include,
        "include_external": queue_include_external,
        "include_hidden": queue_include_hidden,
        "changed_since": changed_since,
        "fetch_outputs_from_state": dependency_fetch_output_from_state,
        "auth_provider_cmd": auth_provider_cmd,
        "tf_path": tf_path,
        "log_level": log_level.lower(),
    }
    if config_path:
        values["config_filename"] = os.path.basename(config_path)
    if parallelism is not None:
        values["parallelism"] = parallelism

    try:
        values["feature_overrides"] = parse_features(_split(feature))
        ctx.obj = RunOptions(**values)
    except ValueError as e:
        raise click.UsageError(str(e))


def _coordinator(options: RunOptions, command: str = "", args: Optional[List[str]] = None) -> RunCoordinator:
    return RunCoordinator(
        dataclasses.replace(options, command=command, command_args=list(args or []))
    )


@cli.command(context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False})
@click.option(
    "--all",
    "run_all",
    is_flag=True,
    help="Run the command in every unit under the working directory.",
)
@click.option(
    "--dry-run",
    is_flag=True,
    help="Show the execution plan without running it (with --all).",
)
@click.option(
    "--json",
    "output_json",
    is_flag=True,
    help="Output the run report in JSON format.",
)
@click.argument("command")
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
@click.pass_obj
def run(
    options: RunOptions,
    run_all: bool,
    dry_run: bool,
    output_json: bool,
    command: str,
    args: Tuple[str, ...],
):
    """Run a command of the wrapped tool.

    Without --all, runs COMMAND in the unit of the working directory. With
    --all, runs it across every unit in dependency order (reverse order for
    destroy). Extra ARGS are passed to the wrapped tool.
    """
    try:
        coordinator = _coordinator(options, command, list(args))

        if run_all:
            plan = coordinator.plan(command, list(args))
            if dry_run:
                if output_json:
                    click.echo(
                        json.dumps(
                            coordinator.runner.format_json_output(plan.order, command, plan.excluded),
                            indent=2,
                        )
                    )
                else:
                    click.echo(coordinator.format_plan(plan))
                    click.echo("\n[DRY RUN MODE - Command will not be executed]")
                return
            echo_if_not_json(coordinator.format_plan(plan), output_json, err=True)
            report = coordinator.run_all(command, list(args))
        else:
            report = coordinator.run_unit(None, command, list(args))

        if output_json:
            click.echo(report.to_json())
        elif run_all:
            click.echo(report.format_text(), err=True)

        if report.exit_code != 0:
            sys.exit(report.exit_code)

    except CoordinatorError as e:
        fail(e, output_json)
    except Exception as e:
        fail(e, output_json, error_type="unexpected_error")


@cli.command(name="list")
@click.option(
    "--dag",
    is_flag=True,
    help="List units in execution order instead of alphabetically.",
)
@click.option(
    "--json",
    "output_json",
    is_flag=True,
    help="Output in JSON format.",
)
@click.pass_obj
def list_units(options: RunOptions, dag: bool, output_json: bool):
    """List the units under the working directory."""
    try:
        coordinator = _coordinator(options)
        paths = coordinator.list_units(dag_order=dag)
        if output_json:
            click.echo(
                json.dumps(
                    {
                        "units": [os.path.relpath(p, options.working_dir) for p in paths],
                        "stacks": [
                            os.path.relpath(p, options.working_dir)
                            for p in coordinator.discovery.stacks
                        ],
                    },
                    indent=2,
                )
            )
        elif paths:
            click.echo(coordinator.format_units(paths))
    except CoordinatorError as e:
        fail(e, output_json)


@cli.command()
@click.pass_obj
def graph(options: RunOptions):
    """Print the dependency graph in DOT format."""
    try:
        click.echo(_coordinator(options).graph_dot())
    except CoordinatorError as e:
        fail(e, False)


@cli.command()
@click.argument("unit_dir", required=False, type=click.Path(file_okay=False))
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["json", "yaml"]),
    default="json",
    help="Output format. Defaults to json.",
)
@click.pass_obj
def render(options: RunOptions, unit_dir: Optional[str], output_format: str):
    """Print the fully resolved configuration of a unit."""
    try:
        rendered = _coordinator(options).render(unit_dir)
    except CoordinatorError as e:
        fail(e, output_format == "json")
        return
    if output_format == "yaml":
        click.echo(yaml.safe_dump(rendered, sort_keys=True, default_flow_style=False), nl=False)
    else:
        click.echo(json.dumps(rendered, indent=2, sort_keys=True, default=str))


@cli.group()
def backend():
    """Manage the remote state backend of units."""
    pass


@backend.command()
@click.argument("unit_dir", required=False, type=click.Path(file_okay=False))
@click.option("--json", "output_json", is_flag=True, help="Output in JSON format.")
@click.pass_obj
def bootstrap(options: RunOptions, unit_dir: Optional[str], output_json: bool):
    """Create the state bucket and lock table of a unit if they are missing."""
    try:
        result = _coordinator(options).backend_bootstrap(unit_dir)
    except CoordinatorError as e:
        fail(e, output_json)
        return

    if output_json:
        click.echo(json.dumps(dataclasses.asdict(result), indent=2))
        return
    for warning in result.warnings:
        click.echo(f"Warning: {warning}", err=True)
    if result.bucket_created or result.lock_table_created:
        click.echo("Backend bootstrapped.")
    else:
        click.echo("Backend already exists.")


@backend.command()
@click.argument("unit_dir", required=False, type=click.Path(file_okay=False))
@click.option("--force", is_flag=True, help="Delete even if the bucket is not versioned.")
@click.option("--bucket", "delete_bucket", is_flag=True, help="Also delete the bucket.")
@click.option("--json", "output_json", is_flag=True, help="Output errors in JSON format.")
@click.pass_obj
def delete(options: RunOptions, unit_dir: Optional[str], force: bool, delete_bucket: bool, output_json: bool):
    """Delete the state of a unit."""
    try:
        _coordinator(options).backend_delete(unit_dir, force=force, delete_bucket=delete_bucket)
    except CoordinatorError as e:
        fail(e, output_json)
        return
    echo_if_not_json("State deleted.", output_json)


@backend.command()
@click.argument("source", type=click.Path(file_okay=False))
@click.argument("destination", type=click.Path(file_okay=False))
@click.option("--force", is_flag=True, help="Overwrite state at the destination.")
@click.option("--json", "output_json", is_flag=True, help="Output in JSON format.")
@click.pass_obj
def migrate(options: RunOptions, source: str, destination: str, force: bool, output_json: bool):
    """Move state from the SOURCE unit's backend to the DESTINATION unit's."""
    try:
        result = _coordinator(options).backend_migrate(source, destination, force=force)
    except CoordinatorError as e:
        fail(e, output_json)
        return

    if output_json:
        click.echo(json.dumps(dataclasses.asdict(result), indent=2))
        return
    click.echo(f"State migrated ({result.method}).")
    if not result.source_deleted:
        click.echo(
            f"Source state in {source} was left in place; remove it once the "
            "migration is verified.",
            err=True,
        )


if __name__ == "__main__":
    cli()
