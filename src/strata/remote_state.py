"""Remote state backend management.

This module bootstraps, deletes and migrates the storage behind a unit's
``remote_state`` block. Storage is reached through the ``StorageClient``
abstraction; ``FileStorageClient`` keeps buckets as directories and is
registered for the ``local`` backend kind. Bucket-style backends (``s3``,
``gcs``) are served by whichever client is registered for them.
"""

import hashlib
import json
import logging
import os
import shutil
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from strata.schema import ConfigDocument, RemoteStateConfig

logger = logging.getLogger(__name__)

# Configuration keys only meaningful to bootstrap; never passed to the backend.
STRATA_ONLY_CONFIG_KEYS = {
    "s3_bucket_tags",
    "dynamodb_table_tags",
    "accesslogging_bucket_tags",
    "skip_bucket_versioning",
    "skip_bucket_ssencryption",
    "skip_bucket_accesslogging",
    "skip_bucket_root_access",
    "skip_bucket_enforced_tls",
    "skip_bucket_public_access_blocking",
    "skip_bucket_creation",
    "disable_bucket_update",
    "enable_lock_table_ssencryption",
    "accesslogging_bucket_name",
    "accesslogging_target_prefix",
    "bucket_sse_algorithm",
    "bucket_sse_kms_key_id",
    "project",
    "location",
    "gcs_bucket_labels",
    "enable_bucket_policy_only",
}

DEFAULT_GCS_STATE_NAME = "default.tfstate"
DEFAULT_LOCAL_STATE_PATH = "terraform.tfstate"


class RemoteStateError(Exception):
    """Base exception for remote state errors."""

    pass


class BackendPreconditionError(RemoteStateError):
    """Raised when a backend operation is refused for safety reasons."""

    pass


@dataclass(frozen=True)
class StateLocation:
    """Where a unit's state lives.

    Attributes:
        backend: Backend kind.
        bucket: Bucket name, or the state directory for ``local``.
        key: Object key of the state file.
        lock_table: Lock table name, if the backend uses one.
    """

    backend: str
    bucket: str
    key: str
    lock_table: Optional[str] = None


@dataclass
class BucketSettings:
    """Security settings of a bucket."""

    versioning: bool = True
    encryption: bool = True
    enforced_tls: bool = True
    public_access_blocked: bool = True
    access_log_bucket: Optional[str] = None

    @classmethod
    def from_remote_state(cls, remote_state: RemoteStateConfig) -> "BucketSettings":
        return cls(
            versioning=not remote_state.flag("skip_bucket_versioning"),
            encryption=not remote_state.flag("skip_bucket_ssencryption"),
            enforced_tls=not remote_state.flag("skip_bucket_enforced_tls"),
            public_access_blocked=not remote_state.flag("skip_bucket_public_access_blocking"),
            access_log_bucket=remote_state.config.get("accesslogging_bucket_name") or None,
        )

    def drift(self, desired: "BucketSettings") -> List[str]:
        """Names of settings that differ from ``desired``."""
        current = asdict(self)
        return sorted(name for name, value in asdict(desired).items() if current[name] != value)


@dataclass
class BootstrapResult:
    bucket_created: bool = False
    lock_table_created: bool = False
    warnings: List[str] = field(default_factory=list)


@dataclass
class MigrationResult:
    """Outcome of a state migration.

    Attributes:
        method: ``direct`` for a storage-level copy, ``state-push`` for the
            wrapped tool fallback.
        checksum: SHA-256 of the migrated state.
        source_deleted: Whether the source key was removed. The fallback never
            removes it; that is left to the caller.
    """

    method: str
    checksum: str
    source_deleted: bool


def state_location(remote_state: RemoteStateConfig, unit_dir: str) -> StateLocation:
    """Compute the state location of a backend configuration.

    Raises:
        RemoteStateError: If the backend kind is unknown or misconfigured.
    """
    config = remote_state.config
    backend = remote_state.backend
    if backend == "s3":
        if not config.get("bucket") or not config.get("key"):
            raise RemoteStateError("s3 remote_state requires 'bucket' and 'key'")
        lock_table = config.get("dynamodb_table") or config.get("lock_table")
        return StateLocation(backend, config["bucket"], config["key"], lock_table)
    if backend == "gcs":
        if not config.get("bucket"):
            raise RemoteStateError("gcs remote_state requires 'bucket'")
        prefix = str(config.get("prefix") or "").strip("/")
        key = f"{prefix}/{DEFAULT_GCS_STATE_NAME}" if prefix else DEFAULT_GCS_STATE_NAME
        return StateLocation(backend, config["bucket"], key)
    if backend == "local":
        path = config.get("path") or DEFAULT_LOCAL_STATE_PATH
        if not os.path.isabs(path):
            path = os.path.join(unit_dir, path)
        path = os.path.normpath(path)
        return StateLocation(backend, os.path.dirname(path), os.path.basename(path))
    raise RemoteStateError(f"Unsupported remote_state backend '{backend}'")


def backend_config_args(remote_state: RemoteStateConfig) -> List[str]:
    """Return the ``init`` arguments configuring the backend.

    Backends written by a ``generate`` setting take no arguments.
    """
    if remote_state.disable_init:
        return ["-backend=false"]
    if remote_state.generate:
        return []
    args = []
    for key in sorted(remote_state.config):
        if key in STRATA_ONLY_CONFIG_KEYS:
            continue
        value = remote_state.config[key]
        if isinstance(value, bool):
            value = "true" if value else "false"
        args.append(f"-backend-config={key}={value}")
    return args


class StorageClient(ABC):
    """Abstract base class for state storage backends."""

    @abstractmethod
    def bucket_exists(self, bucket: str) -> bool:
        pass

    @abstractmethod
    def create_bucket(self, bucket: str, settings: BucketSettings) -> None:
        pass

    @abstractmethod
    def get_bucket_settings(self, bucket: str) -> BucketSettings:
        pass

    @abstractmethod
    def delete_bucket(self, bucket: str) -> None:
        pass

    @abstractmethod
    def lock_table_exists(self, table: str) -> bool:
        pass

    @abstractmethod
    def create_lock_table(self, table: str) -> None:
        pass

    @abstractmethod
    def delete_lock_table(self, table: str) -> None:
        pass

    @abstractmethod
    def get_object(self, bucket: str, key: str) -> Optional[bytes]:
        """Return the object content, or None if it does not exist."""
        pass

    @abstractmethod
    def put_object(self, bucket: str, key: str, data: bytes) -> None:
        pass

    @abstractmethod
    def delete_object(self, bucket: str, key: str) -> None:
        pass


class FileStorageClient(StorageClient):
    """File-based storage client.

    Buckets are directories holding their objects, a ``.strata-bucket.json``
    metadata file and, when versioning is on, previous object versions under
    ``.strata-versions``. Lock tables are JSON files under ``.strata-locks``.
    """

    METADATA_FILE = ".strata-bucket.json"
    VERSIONS_DIR = ".strata-versions"
    LOCKS_DIR = ".strata-locks"

    def __init__(self, root: Optional[str] = None):
        """Initialize the file-based storage client.

        Args:
            root: Directory holding buckets. If None, bucket names are paths,
                which is how the ``local`` backend addresses its state directory.
        """
        self.root = Path(root).resolve() if root else None
        self._lock = threading.Lock()

    def _bucket_dir(self, bucket: str) -> Path:
        if self.root is None:
            return Path(bucket)
        return self.root / bucket

    def _locks_dir(self) -> Path:
        if self.root is None:
            raise RemoteStateError("Lock tables need a FileStorageClient root directory")
        return self.root / self.LOCKS_DIR

    def _write_atomic(self, path: Path, data: bytes) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            temp_file = path.with_name(path.name + ".tmp")
            with open(temp_file, "wb") as f:
                f.write(data)
            temp_file.replace(path)
        except OSError as e:
            raise RemoteStateError(f"Failed to write '{path}': {e}")

    def _read_json(self, path: Path) -> Dict[str, Any]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise RemoteStateError(f"Failed to parse '{path}': {e}")
        except OSError as e:
            raise RemoteStateError(f"Failed to read '{path}': {e}")

    def bucket_exists(self, bucket: str) -> bool:
        return (self._bucket_dir(bucket) / self.METADATA_FILE).is_file()

    def create_bucket(self, bucket: str, settings: BucketSettings) -> None:
        metadata = json.dumps(asdict(settings), indent=2, sort_keys=True) + "\n"
        with self._lock:
            self._write_atomic(self._bucket_dir(bucket) / self.METADATA_FILE, metadata.encode("utf-8"))

    def get_bucket_settings(self, bucket: str) -> BucketSettings:
        path = self._bucket_dir(bucket) / self.METADATA_FILE
        if not path.is_file():
            raise RemoteStateError(f"Bucket '{bucket}' does not exist")
        return BucketSettings(**self._read_json(path))

    def delete_bucket(self, bucket: str) -> None:
        directory = self._bucket_dir(bucket)
        if self.root is None:
            # Never remove a unit's own directory for the local backend.
            for name in (self.METADATA_FILE, self.VERSIONS_DIR):
                target = directory / name
                if target.is_dir():
                    shutil.rmtree(target)
                elif target.exists():
                    target.unlink()
            return
        if directory.exists():
            shutil.rmtree(directory)

    def _lock_file(self, table: str) -> Path:
        return self._locks_dir() / f"{table}.json"

    def lock_table_exists(self, table: str) -> bool:
        return self._lock_file(table).is_file()

    def create_lock_table(self, table: str) -> None:
        with self._lock:
            self._write_atomic(self._lock_file(table), b'{\n  "locks": {}\n}\n')

    def delete_lock_table(self, table: str) -> None:
        path = self._lock_file(table)
        if path.exists():
            path.unlink()

    def get_object(self, bucket: str, key: str) -> Optional[bytes]:
        path = self._bucket_dir(bucket) / key
        if not path.is_file():
            return None
        try:
            return path.read_bytes()
        except OSError as e:
            raise RemoteStateError(f"Failed to read object '{key}' in '{bucket}': {e}")

    def _versioning_enabled(self, bucket: str) -> bool:
        return self.bucket_exists(bucket) and self.get_bucket_settings(bucket).versioning

    def _keep_version(self, bucket: str, key: str) -> None:
        current = self._bucket_dir(bucket) / key
        if current.is_file() and self._versioning_enabled(bucket):
            version = self._bucket_dir(bucket) / self.VERSIONS_DIR / key / str(time.time_ns())
            self._write_atomic(version, current.read_bytes())

    def put_object(self, bucket: str, key: str, data: bytes) -> None:
        with self._lock:
            self._keep_version(bucket, key)
            self._write_atomic(self._bucket_dir(bucket) / key, data)

    def delete_object(self, bucket: str, key: str) -> None:
        with self._lock:
            self._keep_version(bucket, key)
            path = self._bucket_dir(bucket) / key
            if path.exists():
                path.unlink()

    def list_versions(self, bucket: str, key: str) -> List[str]:
        directory = self._bucket_dir(bucket) / self.VERSIONS_DIR / key
        if not directory.is_dir():
            return []
        return sorted(p.name for p in directory.iterdir())


class StorageRegistry:
    """Maps backend kinds to storage client factories."""

    def __init__(self):
        self._factories: Dict[str, Callable[[RemoteStateConfig], StorageClient]] = {}

    def register(self, backend: str, factory: Callable[[RemoteStateConfig], StorageClient]) -> None:
        self._factories[backend] = factory

    def has(self, backend: str) -> bool:
        return backend in self._factories

    def client_for(self, remote_state: RemoteStateConfig) -> StorageClient:
        factory = self._factories.get(remote_state.backend)
        if factory is None:
            raise RemoteStateError(
                f"No storage client registered for backend '{remote_state.backend}'"
            )
        return factory(remote_state)


def default_registry() -> StorageRegistry:
    registry = StorageRegistry()
    registry.register("local", lambda remote_state: FileStorageClient())
    return registry


def _require_remote_state(config: ConfigDocument) -> RemoteStateConfig:
    remote_state = config.remote_state
    if remote_state is None:
        raise RemoteStateError(f"{config.path} has no remote_state block")
    return remote_state


def read_state_outputs(
    remote_state: RemoteStateConfig, unit_dir: str, registry: StorageRegistry
) -> Optional[Dict[str, Any]]:
    """Read output values straight from a unit's stored state.

    Returns:
        Output name to value, or None if no state is stored.

    Raises:
        RemoteStateError: If the state cannot be read or decoded.
    """
    location = state_location(remote_state, unit_dir)
    data = registry.client_for(remote_state).get_object(location.bucket, location.key)
    if data is None:
        return None
    try:
        state = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise RemoteStateError(f"Failed to decode state {location.bucket}/{location.key}: {e}")
    return {name: output.get("value") for name, output in (state.get("outputs") or {}).items()}


class RemoteStateManager:
    """Bootstraps, deletes and migrates remote state backends."""

    def __init__(self, registry: Optional[StorageRegistry] = None, runner=None):
        """Initialize the manager.

        Args:
            registry: Storage clients by backend kind. If None, only ``local``
                is available.
            runner: TofuRunner used for the ``state pull``/``state push``
                migration fallback.
        """
        self.registry = registry or default_registry()
        self.runner = runner

    def bootstrap(self, config: ConfigDocument) -> BootstrapResult:
        """Create the bucket and lock table of a unit if they are missing.

        Existing resources are never reprovisioned; settings that drifted from
        the configuration are reported as warnings.

        Raises:
            RemoteStateError: If the backend cannot be reached.
        """
        remote_state = _require_remote_state(config)
        location = state_location(remote_state, config.directory)
        client = self.registry.client_for(remote_state)
        desired = BucketSettings.from_remote_state(remote_state)
        result = BootstrapResult()

        if not client.bucket_exists(location.bucket):
            if remote_state.flag("skip_bucket_creation"):
                raise RemoteStateError(
                    f"Bucket '{location.bucket}' does not exist and skip_bucket_creation is set"
                )
            logger.info(f"Creating state bucket '{location.bucket}'")
            client.create_bucket(location.bucket, desired)
            result.bucket_created = True
        else:
            drifted = client.get_bucket_settings(location.bucket).drift(desired)
            for name in drifted:
                message = (
                    f"State bucket '{location.bucket}' setting '{name}' differs from "
                    "the configuration; existing buckets are not updated"
                )
                logger.warning(message)
                result.warnings.append(message)

        if location.lock_table and not client.lock_table_exists(location.lock_table):
            logger.info(f"Creating lock table '{location.lock_table}'")
            client.create_lock_table(location.lock_table)
            result.lock_table_created = True

        return result

    def delete(self, config: ConfigDocument, force: bool = False, delete_bucket: bool = False) -> None:
        """Delete a unit's state object, and optionally its bucket and lock table.

        Raises:
            BackendPreconditionError: If the bucket is not versioned and
                ``force`` is not set.
        """
        remote_state = _require_remote_state(config)
        location = state_location(remote_state, config.directory)
        client = self.registry.client_for(remote_state)
        if not client.bucket_exists(location.bucket):
            raise RemoteStateError(f"Bucket '{location.bucket}' does not exist")

        if not client.get_bucket_settings(location.bucket).versioning and not force:
            raise BackendPreconditionError(
                f"Bucket '{location.bucket}' does not have versioning enabled; "
                "deleting state would be irreversible. Use force to delete anyway."
            )

        logger.info(f"Deleting state {location.bucket}/{location.key}")
        client.delete_object(location.bucket, location.key)
        if delete_bucket:
            logger.info(f"Deleting state bucket '{location.bucket}'")
            client.delete_bucket(location.bucket)
            if location.lock_table and client.lock_table_exists(location.lock_table):
                client.delete_lock_table(location.lock_table)

    def migrate(self, source: ConfigDocument, destination: ConfigDocument, force: bool = False) -> MigrationResult:
        """Move state from one unit's backend to another's.

        Backends of the same kind with a registered client are copied
        directly, checked with SHA-256, and the source key is deleted. Any
        other combination goes through the wrapped tool's ``state pull`` and
        ``state push``, which leaves the source key in place.

        Raises:
            BackendPreconditionError: If both units resolve to the same state,
                or the destination already holds state and ``force`` is not set.
            RemoteStateError: If the state cannot be moved.
        """
        src_state = _require_remote_state(source)
        dst_state = _require_remote_state(destination)
        src_location = state_location(src_state, source.directory)
        dst_location = state_location(dst_state, destination.directory)
        if (src_location.backend, src_location.bucket, src_location.key) == (
            dst_location.backend,
            dst_location.bucket,
            dst_location.key,
        ):
            raise BackendPreconditionError(
                f"Source and destination are the same state {src_location.bucket}/{src_location.key}"
            )

        if src_state.backend == dst_state.backend and self.registry.has(src_state.backend):
            return self._migrate_direct(src_state, src_location, dst_state, dst_location, force)
        return self._migrate_with_runner(source, destination, force)

    def _migrate_direct(self, src_state, src_location, dst_state, dst_location, force) -> MigrationResult:
        src_client = self.registry.client_for(src_state)
        dst_client = self.registry.client_for(dst_state)

        data = src_client.get_object(src_location.bucket, src_location.key)
        if data is None:
            raise RemoteStateError(
                f"No state found at {src_location.bucket}/{src_location.key}"
            )
        if dst_client.get_object(dst_location.bucket, dst_location.key) is not None and not force:
            raise BackendPreconditionError(
                f"Destination {dst_location.bucket}/{dst_location.key} already has state. "
                "Use force to overwrite it."
            )

        checksum = hashlib.sha256(data).hexdigest()
        dst_client.put_object(dst_location.bucket, dst_location.key, data)
        copied = dst_client.get_object(dst_location.bucket, dst_location.key)
        if copied is None or hashlib.sha256(copied).hexdigest() != checksum:
            raise RemoteStateError(
                f"Integrity check failed copying state to {dst_location.bucket}/{dst_location.key}"
            )

        src_client.delete_object(src_location.bucket, src_location.key)
        logger.info(
            f"Migrated state {src_location.bucket}/{src_location.key} -> "
            f"{dst_location.bucket}/{dst_location.key}"
        )
        return MigrationResult(method="direct", checksum=checksum, source_deleted=True)

    def _migrate_with_runner(self, source: ConfigDocument, destination: ConfigDocument, force: bool) -> MigrationResult:
        if self.runner is None:
            raise RemoteStateError(
                "Backends differ and no runner is available for state pull/push"
            )
        data = self.runner.state_pull(source)
        if not data:
            raise RemoteStateError(f"No state found for {source.directory}")
        self.runner.state_push(destination, data, force=force)
        logger.warning(
            f"State pushed to the backend of {destination.directory}; the source "
            f"state of {source.directory} was not deleted and must be removed manually"
        )
        return MigrationResult(
            method="state-push",
            checksum=hashlib.sha256(data).hexdigest(),
            source_deleted=False,
        )
