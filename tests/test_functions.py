"""Unit tests for functions module."""

import os
from unittest.mock import MagicMock, patch

import pytest

from strata.expressions import FunctionCallError
from strata.functions import (
    FunctionCache,
    FunctionContext,
    build_functions,
    find_in_parent_folders,
    get_env,
    path_relative_from_include,
    path_relative_to_include,
    read_tfvars_file,
    run_cmd,
    substr,
    tf_format,
    tf_replace,
    toset,
)
from strata.options import RunOptions


def _completed(stdout="", returncode=0, stderr=""):
    result = MagicMock()
    result.stdout = stdout
    result.stderr = stderr
    result.returncode = returncode
    return result


@pytest.fixture
def ctx(tmp_path):
    unit = tmp_path / "live" / "prod" / "app"
    unit.mkdir(parents=True)
    options = RunOptions(working_dir=str(tmp_path), env={"REGION": "eu-west-1"})
    return FunctionContext(terragrunt_dir=str(unit), options=options)


class TestFunctionCache:
    """Test cases for FunctionCache class."""

    def test_same_key_computed_once(self):
        """Test that a key is only computed once."""
        cache = FunctionCache()
        compute = MagicMock(return_value="value")

        assert cache.get_or_call(("dir", "run_cmd", ("echo",)), compute) == "value"
        assert cache.get_or_call(("dir", "run_cmd", ("echo",)), compute) == "value"
        assert compute.call_count == 1
        assert cache.invocations == 1

    def test_failure_not_cached(self):
        """Test that a failed computation is retried on the next call."""
        cache = FunctionCache()
        compute = MagicMock(side_effect=[RuntimeError("boom"), "ok"])
        key = ("dir", "run_cmd", ("flaky",))

        with pytest.raises(RuntimeError):
            cache.get_or_call(key, compute)
        assert key not in cache
        assert cache.get_or_call(key, compute) == "ok"


class TestPathFunctions:
    """Test cases for path related functions."""

    def test_find_in_parent_folders(self, ctx, tmp_path):
        """Test that the nearest parent root.hcl is found."""
        (tmp_path / "live" / "root.hcl").write_text("")
        found = find_in_parent_folders(ctx)
        assert found == str(tmp_path / "live" / "root.hcl").replace(os.sep, "/")

    def test_find_in_parent_folders_named(self, ctx, tmp_path):
        """Test searching for a specific file name."""
        (tmp_path / "live" / "prod" / "env.hcl").write_text("")
        assert find_in_parent_folders(ctx, "env.hcl").endswith("live/prod/env.hcl")

    def test_find_in_parent_folders_fallback(self, ctx):
        """Test that the fallback is returned when nothing is found."""
        assert find_in_parent_folders(ctx, "missing.hcl", "none") == "none"

    def test_find_in_parent_folders_not_found(self, ctx):
        """Test that a missing file without fallback raises."""
        with pytest.raises(FunctionCallError) as exc_info:
            find_in_parent_folders(ctx, "missing.hcl")
        assert "missing.hcl" in str(exc_info.value)

    def test_path_relative_to_include(self, ctx, tmp_path):
        """Test relative paths between a unit and its include."""
        ctx.include_paths = {"root": str(tmp_path / "live" / "root.hcl")}
        assert path_relative_to_include(ctx) == "prod/app"
        assert path_relative_from_include(ctx) == "../.."

    def test_path_relative_without_include(self, ctx):
        """Test that a unit without includes is relative to itself."""
        assert path_relative_to_include(ctx) == "."

    def test_unknown_include_label(self, ctx):
        """Test that an unknown include label raises."""
        with pytest.raises(FunctionCallError):
            path_relative_to_include(ctx, "other")


class TestEnvironment:
    """Test cases for get_env function."""

    def test_get_env_reads_options_env(self, ctx):
        """Test that variables come from the run options."""
        assert get_env(ctx, "REGION") == "eu-west-1"

    def test_get_env_default(self, ctx):
        """Test defaults for unset variables."""
        assert get_env(ctx, "UNSET", "fallback") == "fallback"
        assert get_env(ctx, "UNSET") == ""


class TestRunCmd:
    """Test cases for run_cmd function."""

    @patch("strata.functions.subprocess.run")
    def test_output_trailing_newline_stripped(self, mock_run, ctx):
        """Test that one trailing newline is removed."""
        mock_run.return_value = _completed("value\n")
        assert run_cmd(ctx, "echo", "value") == "value"
        mock_run.assert_called_once()
        assert mock_run.call_args[0][0] == ["echo", "value"]
        assert mock_run.call_args[1]["cwd"] == ctx.terragrunt_dir

    @patch("strata.functions.subprocess.run")
    def test_cached_per_directory(self, mock_run, ctx):
        """Test that the same command in the same directory runs once."""
        mock_run.return_value = _completed("x\n")
        run_cmd(ctx, "echo", "x")
        run_cmd(ctx, "echo", "x")
        assert mock_run.call_count == 1

        other = FunctionContext(
            terragrunt_dir=os.path.dirname(ctx.terragrunt_dir),
            options=ctx.options,
            cache=ctx.cache,
        )
        run_cmd(other, "echo", "x")
        assert mock_run.call_count == 2

    @patch("strata.functions.subprocess.run")
    def test_global_cache(self, mock_run, ctx):
        """Test that --terragrunt-global-cache shares results across directories."""
        mock_run.return_value = _completed("x\n")
        run_cmd(ctx, "--terragrunt-global-cache", "echo", "x")
        other = FunctionContext(terragrunt_dir="/elsewhere", options=ctx.options, cache=ctx.cache)
        run_cmd(other, "--terragrunt-global-cache", "echo", "x")
        assert mock_run.call_count == 1
        assert ("global", "run_cmd", ("echo", "x")) in ctx.cache

    @patch("strata.functions.subprocess.run")
    def test_no_cache(self, mock_run, ctx):
        """Test that --terragrunt-no-cache always runs the command."""
        mock_run.return_value = _completed("x")
        run_cmd(ctx, "--terragrunt-no-cache", "date")
        run_cmd(ctx, "--terragrunt-no-cache", "date")
        assert mock_run.call_count == 2

    @patch("strata.functions.subprocess.run")
    def test_quiet_flag_not_passed(self, mock_run, ctx):
        """Test that control flags are not part of the command."""
        mock_run.return_value = _completed("secret\n")
        assert run_cmd(ctx, "--terragrunt-quiet", "cat", "token") == "secret"
        assert mock_run.call_args[0][0] == ["cat", "token"]

    @patch("strata.functions.subprocess.run")
    def test_failure(self, mock_run, ctx):
        """Test that a non-zero exit raises FunctionCallError."""
        mock_run.return_value = _completed("", returncode=2, stderr="nope")
        with pytest.raises(FunctionCallError) as exc_info:
            run_cmd(ctx, "false")
        assert "exited with code 2" in str(exc_info.value)

    def test_requires_command(self, ctx):
        """Test that flags alone are rejected."""
        with pytest.raises(FunctionCallError):
            run_cmd(ctx, "--terragrunt-quiet")


class TestTerraformFunctions:
    """Test cases for the Terraform-compatible functions."""

    def test_format(self):
        """Test format verbs."""
        assert tf_format("%s-%d", "app", 3) == "app-3"
        assert tf_format("%q", "x") == '"x"'
        assert tf_format("%t", True) == "true"
        assert tf_format("%.2f", 1.5) == "1.50"
        assert tf_format("%v", {"a": 1}) == '{"a":1}'
        assert tf_format("100%%") == "100%"

    def test_format_missing_argument(self):
        """Test that too few arguments raise."""
        with pytest.raises(FunctionCallError):
            tf_format("%s %s", "one")

    def test_replace(self):
        """Test plain and regex replacement."""
        assert tf_replace("a-b-c", "-", "_") == "a_b_c"
        assert tf_replace("v1.2.3", "/v(\\d+).*/", "major-$1") == "major-1"

    def test_substr(self):
        """Test substr with negative offsets and lengths."""
        assert substr("hello world", 0, 5) == "hello"
        assert substr("hello world", -5, -1) == "world"

    def test_toset(self):
        """Test that toset removes duplicates and sorts."""
        assert toset(["b", "a", "b"]) == ["a", "b"]

    def test_collection_functions(self, ctx):
        """Test a sample of collection functions through build_functions."""
        functions = build_functions(ctx)
        assert functions["merge"]({"a": 1}, {"b": 2}, {"a": 3}) == {"a": 3, "b": 2}
        assert functions["concat"]([1], [2, 3]) == [1, 2, 3]
        assert functions["flatten"]([1, [2, [3]]]) == [1, 2, 3]
        assert functions["lookup"]({"a": 1}, "b", 0) == 0
        assert functions["element"](["a", "b"], 3) == "b"
        assert functions["coalesce"](None, "", "x") == "x"
        assert functions["keys"]({"b": 1, "a": 2}) == ["a", "b"]
        assert functions["join"]("-", ["a", "b"]) == "a-b"
        assert functions["range"](3) == [0, 1, 2]

    def test_merge_rejects_non_maps(self, ctx):
        """Test that merge() rejects lists."""
        functions = build_functions(ctx)
        with pytest.raises(FunctionCallError):
            functions["merge"]({"a": 1}, [1])

    def test_jsonencode_sorted(self, ctx):
        """Test that jsonencode is deterministic."""
        functions = build_functions(ctx)
        assert functions["jsonencode"]({"b": 1, "a": [True]}) == '{"a":[true],"b":1}'

    def test_context_functions(self, ctx):
        """Test functions bound to the unit context."""
        ctx.options.command = "plan"
        functions = build_functions(ctx)
        assert functions["get_terragrunt_dir"]() == ctx.terragrunt_dir.replace(os.sep, "/")
        assert functions["get_terraform_command"]() == "plan"
        assert "plan" in functions["get_terraform_commands_that_need_vars"]()


class TestFileFunctions:
    """Test cases for file reading functions."""

    def test_read_tfvars_json(self, ctx):
        """Test reading a .tfvars.json file."""
        path = os.path.join(ctx.terragrunt_dir, "common.tfvars.json")
        with open(path, "w") as f:
            f.write('{"region": "us-east-1", "count": 2}')
        assert read_tfvars_file(ctx, "common.tfvars.json") == {"region": "us-east-1", "count": 2}

    def test_read_tfvars_missing(self, ctx):
        """Test that a missing file raises."""
        with pytest.raises(FunctionCallError):
            read_tfvars_file(ctx, "missing.tfvars")

    def test_file_and_fileexists(self, ctx):
        """Test file() and fileexists() relative to the unit."""
        with open(os.path.join(ctx.terragrunt_dir, "policy.json"), "w") as f:
            f.write("{}")
        functions = build_functions(ctx)
        assert functions["fileexists"]("policy.json") is True
        assert functions["fileexists"]("other.json") is False
        assert functions["file"]("policy.json") == "{}"

    def test_mark_as_read(self, ctx):
        """Test that mark_as_read records the absolute path."""
        functions = build_functions(ctx)
        functions["mark_as_read"]("vars.yaml")
        assert os.path.join(ctx.terragrunt_dir, "vars.yaml") in ctx.read_files
