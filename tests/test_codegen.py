"""Unit tests for codegen module."""

import pytest

from strata.codegen import (
    GENERATED_SIGNATURE,
    CodegenError,
    GenerateConfig,
    generate_configs,
    render_backend,
    render_hcl_value,
    was_generated,
    write_generated_file,
    write_generated_files,
)
from strata.schema import Block, ConfigDocument, RemoteStateConfig, SchemaError


def _generate(if_exists="overwrite_terragrunt", **kwargs):
    values = {"name": "provider", "path": "provider.tf", "if_exists": if_exists, "contents": "x = 1\n"}
    values.update(kwargs)
    return GenerateConfig(**values)


class TestGenerateConfig:
    """Test cases for GenerateConfig class."""

    def test_from_body(self):
        """Test building a generate config from a block body."""
        config = GenerateConfig.from_body(
            "provider",
            {"path": "provider.tf", "if_exists": "skip", "contents": "c", "comment_prefix": "// "},
        )
        assert config.if_exists == "skip"
        assert config.comment_prefix == "// "
        assert config.if_disabled == "skip"

    def test_invalid_if_exists(self):
        """Test that unknown if_exists values are rejected."""
        with pytest.raises(SchemaError):
            _generate(if_exists="replace")

    def test_missing_path(self):
        """Test that path is required."""
        with pytest.raises(SchemaError):
            _generate(path="")


class TestWriteGeneratedFile:
    """Test cases for write_generated_file function."""

    def test_writes_signature(self, tmp_path):
        """Test that new files carry the signature."""
        path = write_generated_file(str(tmp_path), _generate())
        content = (tmp_path / "provider.tf").read_text()
        assert path == str(tmp_path / "provider.tf")
        assert content == f"# {GENERATED_SIGNATURE}\nx = 1\n"
        assert was_generated(path)

    def test_disable_signature(self, tmp_path):
        """Test writing without the signature."""
        write_generated_file(str(tmp_path), _generate(disable_signature=True))
        assert (tmp_path / "provider.tf").read_text() == "x = 1\n"

    def test_if_exists_error(self, tmp_path):
        """Test that an existing file is an error."""
        (tmp_path / "provider.tf").write_text("mine")
        with pytest.raises(CodegenError):
            write_generated_file(str(tmp_path), _generate(if_exists="error"))

    def test_if_exists_skip(self, tmp_path):
        """Test that an existing file is left alone."""
        (tmp_path / "provider.tf").write_text("mine")
        assert write_generated_file(str(tmp_path), _generate(if_exists="skip")) is None
        assert (tmp_path / "provider.tf").read_text() == "mine"

    def test_if_exists_overwrite(self, tmp_path):
        """Test that an existing file is replaced."""
        (tmp_path / "provider.tf").write_text("mine")
        write_generated_file(str(tmp_path), _generate(if_exists="overwrite"))
        assert was_generated(str(tmp_path / "provider.tf"))

    def test_overwrite_generated_only(self, tmp_path):
        """Test that only generated files are replaced."""
        (tmp_path / "provider.tf").write_text("mine")
        with pytest.raises(CodegenError):
            write_generated_file(str(tmp_path), _generate())

        write_generated_file(str(tmp_path), _generate(if_exists="overwrite"))
        write_generated_file(str(tmp_path), _generate(contents="y = 2\n"))
        assert (tmp_path / "provider.tf").read_text().endswith("y = 2\n")

    def test_disabled_remove_generated(self, tmp_path):
        """Test that disabled blocks remove their generated file only."""
        write_generated_file(str(tmp_path), _generate())
        disabled = _generate(disable=True, if_disabled="remove_terragrunt")
        assert write_generated_file(str(tmp_path), disabled) is None
        assert not (tmp_path / "provider.tf").exists()

        (tmp_path / "provider.tf").write_text("mine")
        write_generated_file(str(tmp_path), disabled)
        assert (tmp_path / "provider.tf").exists()

    def test_disabled_skip(self, tmp_path):
        """Test that disabled blocks leave files by default."""
        write_generated_file(str(tmp_path), _generate())
        write_generated_file(str(tmp_path), _generate(disable=True))
        assert (tmp_path / "provider.tf").exists()

    def test_subdirectory(self, tmp_path):
        """Test generating into a subdirectory."""
        write_generated_file(str(tmp_path), _generate(path="gen/provider.tf"))
        assert (tmp_path / "gen" / "provider.tf").is_file()


class TestRendering:
    """Test cases for HCL rendering."""

    def test_render_values(self):
        """Test scalar and collection rendering."""
        assert render_hcl_value(None) == "null"
        assert render_hcl_value(True) == "true"
        assert render_hcl_value(3) == "3"
        assert render_hcl_value("a${b}") == '"a$${b}"'
        assert render_hcl_value([]) == "[]"
        assert render_hcl_value({"b": 1, "a": "x"}) == '{\n  "a" = "x"\n  "b" = 1\n}'

    def test_render_backend(self):
        """Test that bootstrap-only keys are left out of the backend block."""
        remote_state = RemoteStateConfig(
            "s3", {"bucket": "b", "key": "k", "encrypt": True, "skip_bucket_versioning": True}
        )
        assert render_backend(remote_state) == (
            'terraform {\n  backend "s3" {\n'
            '    bucket = "b"\n    encrypt = true\n    key = "k"\n'
            "  }\n}\n"
        )


class TestWriteGeneratedFiles:
    """Test cases for write_generated_files function."""

    def test_blocks_and_backend(self, tmp_path):
        """Test generate blocks and a generated backend together."""
        config = ConfigDocument(
            path=str(tmp_path / "terragrunt.hcl"),
            blocks={
                "generate": [
                    Block("generate", ("provider",), {"path": "provider.tf", "if_exists": "overwrite", "contents": "p"})
                ],
                "remote_state": [
                    Block(
                        "remote_state",
                        (),
                        {
                            "backend": "s3",
                            "config": {"bucket": "b", "key": "k"},
                            "generate": {"path": "backend.tf", "if_exists": "overwrite_terragrunt"},
                        },
                    )
                ],
            },
        )
        assert [g.name for g in generate_configs(config)] == ["provider", "remote_state"]
        written = write_generated_files(config)
        assert written == [str(tmp_path / "provider.tf"), str(tmp_path / "backend.tf")]
        assert 'backend "s3"' in (tmp_path / "backend.tf").read_text()

    def test_malformed_block(self, tmp_path):
        """Test that a malformed block is a codegen error."""
        config = ConfigDocument(
            path=str(tmp_path / "terragrunt.hcl"),
            blocks={"generate": [Block("generate", ("x",), {"path": "x.tf", "if_exists": "bad"})]},
        )
        with pytest.raises(CodegenError):
            write_generated_files(config)
