"""Unit tests for remote_state module."""

import hashlib
import json
from unittest.mock import MagicMock

import pytest

from strata.remote_state import (
    BackendPreconditionError,
    BucketSettings,
    FileStorageClient,
    RemoteStateError,
    RemoteStateManager,
    StorageRegistry,
    backend_config_args,
    default_registry,
    read_state_outputs,
    state_location,
)
from strata.schema import Block, ConfigDocument, RemoteStateConfig

STATE = json.dumps({"version": 4, "outputs": {"vpc_id": {"value": "vpc-1"}}}).encode("utf-8")


def _config(unit_dir, backend="s3", **config):
    body = {"backend": backend, "config": config}
    return ConfigDocument(
        path=f"{unit_dir}/terragrunt.hcl",
        blocks={"remote_state": [Block("remote_state", (), body)]},
    )


@pytest.fixture
def client(tmp_path):
    return FileStorageClient(str(tmp_path / "storage"))


@pytest.fixture
def registry(client):
    registry = StorageRegistry()
    registry.register("s3", lambda remote_state: client)
    return registry


class TestStateLocation:
    """Test cases for state_location function."""

    def test_s3(self):
        """Test s3 locations with a lock table."""
        remote_state = RemoteStateConfig(
            "s3", {"bucket": "b", "key": "app/tofu.tfstate", "dynamodb_table": "locks"}
        )
        location = state_location(remote_state, "/live/app")
        assert (location.bucket, location.key, location.lock_table) == ("b", "app/tofu.tfstate", "locks")

    def test_s3_requires_bucket_and_key(self):
        """Test that s3 needs bucket and key."""
        with pytest.raises(RemoteStateError):
            state_location(RemoteStateConfig("s3", {"bucket": "b"}), "/live/app")

    def test_gcs_prefix(self):
        """Test gcs state names."""
        location = state_location(RemoteStateConfig("gcs", {"bucket": "b", "prefix": "app/"}), "/x")
        assert location.key == "app/default.tfstate"

    def test_local(self):
        """Test local paths relative to the unit."""
        location = state_location(RemoteStateConfig("local", {"path": "state/app.tfstate"}), "/live/app")
        assert (location.bucket, location.key) == ("/live/app/state", "app.tfstate")

    def test_unsupported(self):
        """Test that unknown backends raise."""
        with pytest.raises(RemoteStateError):
            state_location(RemoteStateConfig("consul", {}), "/x")


class TestBackendConfigArgs:
    """Test cases for backend_config_args function."""

    def test_skips_bootstrap_only_keys(self):
        """Test that bootstrap-only settings are not passed to init."""
        remote_state = RemoteStateConfig(
            "s3", {"bucket": "b", "key": "k", "encrypt": True, "skip_bucket_versioning": True}
        )
        assert backend_config_args(remote_state) == [
            "-backend-config=bucket=b",
            "-backend-config=encrypt=true",
            "-backend-config=key=k",
        ]

    def test_generated_backend(self):
        """Test that generated backends take no arguments."""
        remote_state = RemoteStateConfig(
            "s3", {"bucket": "b"}, generate={"path": "backend.tf", "if_exists": "overwrite"}
        )
        assert backend_config_args(remote_state) == []

    def test_disable_init(self):
        """Test that disable_init turns the backend off."""
        remote_state = RemoteStateConfig("s3", {"bucket": "b"}, disable_init=True)
        assert backend_config_args(remote_state) == ["-backend=false"]


class TestFileStorageClient:
    """Test cases for FileStorageClient class."""

    def test_bucket_lifecycle(self, client):
        """Test creating and deleting a bucket."""
        assert client.bucket_exists("b") is False
        client.create_bucket("b", BucketSettings(versioning=False))
        assert client.bucket_exists("b") is True
        assert client.get_bucket_settings("b").versioning is False
        client.delete_bucket("b")
        assert client.bucket_exists("b") is False

    def test_objects_keep_versions(self, client):
        """Test that overwritten objects are kept when versioning is on."""
        client.create_bucket("b", BucketSettings())
        client.put_object("b", "app/tofu.tfstate", b"one")
        client.put_object("b", "app/tofu.tfstate", b"two")
        assert client.get_object("b", "app/tofu.tfstate") == b"two"
        assert len(client.list_versions("b", "app/tofu.tfstate")) == 1

    def test_missing_object(self, client):
        """Test that a missing object reads as None."""
        assert client.get_object("b", "nope") is None

    def test_lock_tables(self, client):
        """Test lock table creation."""
        client.create_lock_table("locks")
        assert client.lock_table_exists("locks") is True
        client.delete_lock_table("locks")
        assert client.lock_table_exists("locks") is False


class TestReadStateOutputs:
    """Test cases for read_state_outputs function."""

    def test_reads_outputs(self, client, registry):
        """Test decoding outputs from stored state."""
        client.put_object("b", "app.tfstate", STATE)
        remote_state = RemoteStateConfig("s3", {"bucket": "b", "key": "app.tfstate"})
        assert read_state_outputs(remote_state, "/live/app", registry) == {"vpc_id": "vpc-1"}

    def test_no_state(self, registry):
        """Test that missing state reads as None."""
        remote_state = RemoteStateConfig("s3", {"bucket": "b", "key": "app.tfstate"})
        assert read_state_outputs(remote_state, "/live/app", registry) is None

    def test_corrupt_state(self, client, registry):
        """Test that undecodable state raises."""
        client.put_object("b", "app.tfstate", b"not json")
        remote_state = RemoteStateConfig("s3", {"bucket": "b", "key": "app.tfstate"})
        with pytest.raises(RemoteStateError):
            read_state_outputs(remote_state, "/live/app", registry)


class TestBootstrap:
    """Test cases for RemoteStateManager.bootstrap."""

    def test_creates_missing_resources(self, client, registry):
        """Test that the bucket and lock table are created."""
        manager = RemoteStateManager(registry)
        config = _config("/live/app", bucket="b", key="k", dynamodb_table="locks")
        result = manager.bootstrap(config)
        assert result.bucket_created is True
        assert result.lock_table_created is True
        assert client.bucket_exists("b")
        assert client.lock_table_exists("locks")

    def test_idempotent(self, client, registry):
        """Test that a second bootstrap changes nothing."""
        manager = RemoteStateManager(registry)
        config = _config("/live/app", bucket="b", key="k", dynamodb_table="locks")
        manager.bootstrap(config)

        spy = MagicMock(wraps=client)
        registry.register("s3", lambda remote_state: spy)
        result = manager.bootstrap(config)
        assert result.bucket_created is False
        assert result.lock_table_created is False
        assert result.warnings == []
        spy.create_bucket.assert_not_called()
        spy.create_lock_table.assert_not_called()

    def test_drift_reported_not_fixed(self, client, registry):
        """Test that drifted settings are warnings."""
        client.create_bucket("b", BucketSettings(versioning=False))
        manager = RemoteStateManager(registry)
        result = manager.bootstrap(_config("/live/app", bucket="b", key="k"))
        assert len(result.warnings) == 1
        assert "versioning" in result.warnings[0]
        assert client.get_bucket_settings("b").versioning is False

    def test_skip_bucket_creation(self, registry):
        """Test that a missing bucket is an error when creation is skipped."""
        manager = RemoteStateManager(registry)
        config = _config("/live/app", bucket="b", key="k", skip_bucket_creation=True)
        with pytest.raises(RemoteStateError):
            manager.bootstrap(config)

    def test_no_remote_state(self, registry):
        """Test that a unit without remote_state raises."""
        with pytest.raises(RemoteStateError):
            RemoteStateManager(registry).bootstrap(ConfigDocument(path="/live/app/terragrunt.hcl"))

    def test_unregistered_backend(self):
        """Test that a backend without a client raises."""
        manager = RemoteStateManager(default_registry())
        with pytest.raises(RemoteStateError):
            manager.bootstrap(_config("/live/app", bucket="b", key="k"))

    def test_local_backend(self, tmp_path):
        """Test bootstrapping the local backend inside the unit."""
        manager = RemoteStateManager()
        result = manager.bootstrap(_config(str(tmp_path), backend="local"))
        assert result.bucket_created is True
        assert (tmp_path / FileStorageClient.METADATA_FILE).is_file()


class TestDelete:
    """Test cases for RemoteStateManager.delete."""

    def test_refuses_unversioned_bucket(self, client, registry):
        """Test that unversioned state is not deleted without force."""
        client.create_bucket("b", BucketSettings(versioning=False))
        client.put_object("b", "k", STATE)
        manager = RemoteStateManager(registry)

        with pytest.raises(BackendPreconditionError) as exc_info:
            manager.delete(_config("/live/app", bucket="b", key="k"))
        assert "does not have versioning enabled" in str(exc_info.value)
        assert client.get_object("b", "k") == STATE

        manager.delete(_config("/live/app", bucket="b", key="k"), force=True)
        assert client.get_object("b", "k") is None

    def test_versioned_bucket(self, client, registry):
        """Test deleting versioned state and the bucket."""
        client.create_bucket("b", BucketSettings())
        client.put_object("b", "k", STATE)
        RemoteStateManager(registry).delete(
            _config("/live/app", bucket="b", key="k"), delete_bucket=True
        )
        assert client.bucket_exists("b") is False

    def test_missing_bucket(self, registry):
        """Test that deleting from a missing bucket raises."""
        with pytest.raises(RemoteStateError):
            RemoteStateManager(registry).delete(_config("/live/app", bucket="b", key="k"))


class TestMigrate:
    """Test cases for RemoteStateManager.migrate."""

    def test_direct_copy(self, client, registry):
        """Test a storage-level migration with checksum."""
        client.put_object("b", "old.tfstate", STATE)
        result = RemoteStateManager(registry).migrate(
            _config("/live/old", bucket="b", key="old.tfstate"),
            _config("/live/new", bucket="b", key="new.tfstate"),
        )
        assert result.method == "direct"
        assert result.checksum == hashlib.sha256(STATE).hexdigest()
        assert result.source_deleted is True
        assert client.get_object("b", "new.tfstate") == STATE
        assert client.get_object("b", "old.tfstate") is None

    def test_destination_exists(self, client, registry):
        """Test that existing destination state needs force."""
        client.put_object("b", "old.tfstate", STATE)
        client.put_object("b", "new.tfstate", b"{}")
        manager = RemoteStateManager(registry)
        source = _config("/live/old", bucket="b", key="old.tfstate")
        destination = _config("/live/new", bucket="b", key="new.tfstate")

        with pytest.raises(BackendPreconditionError):
            manager.migrate(source, destination)
        assert manager.migrate(source, destination, force=True).source_deleted is True

    def test_same_location_refused(self, tmp_path):
        """Test that migrating state onto itself is refused and keeps the state."""
        state_file = tmp_path / "state" / "terraform.tfstate"
        state_file.parent.mkdir()
        state_file.write_bytes(STATE)
        source = _config(str(tmp_path / "a"), backend="local", path="../state/terraform.tfstate")
        destination = _config(str(tmp_path / "b"), backend="local", path="../state/terraform.tfstate")

        with pytest.raises(BackendPreconditionError) as exc_info:
            RemoteStateManager().migrate(source, destination, force=True)
        assert "same state" in str(exc_info.value)
        assert state_file.read_bytes() == STATE

    def test_missing_source(self, registry):
        """Test that migrating missing state raises."""
        with pytest.raises(RemoteStateError):
            RemoteStateManager(registry).migrate(
                _config("/live/old", bucket="b", key="old.tfstate"),
                _config("/live/new", bucket="b", key="new.tfstate"),
            )

    def test_runner_fallback(self, registry):
        """Test that different backends go through state pull and push."""
        runner = MagicMock()
        runner.state_pull.return_value = STATE
        source = _config("/live/old", bucket="b", key="old.tfstate")
        destination = _config("/live/new", backend="gcs", bucket="g")

        result = RemoteStateManager(registry, runner).migrate(source, destination, force=True)
        assert result.method == "state-push"
        assert result.source_deleted is False
        runner.state_push.assert_called_once_with(destination, STATE, force=True)

    def test_fallback_without_runner(self, registry):
        """Test that the fallback needs a runner."""
        with pytest.raises(RemoteStateError):
            RemoteStateManager(registry).migrate(
                _config("/live/old", bucket="b", key="old.tfstate"),
                _config("/live/new", backend="gcs", bucket="g"),
            )
