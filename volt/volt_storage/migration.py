"""
Live migration between storage back-ends.

A migration moves every collection from the active adapter to a new one
while the process keeps running, then makes the new adapter active.

Steps, in order:
1. backup: copy the runtime JSON directory to a timestamped folder
2. export: full snapshot of the active adapter, overlaid with sourceDir
3. configure: install the target configuration and reinitialize
4. import: write the snapshot into the target
5. verify: reinitialize again and check every collection's record count
6. distribute: lift storage_kv blobs into per-collection tables (SQL only)
7. sync-json-runtime: copy sourceDir JSON files into the runtime directory
8. final check: the active adapter must be the target

Invariants:
    - A failure at any step restores the previous configuration (and the
      persisted config file) and reinitializes; the step log records both
      the failure and the rollback
    - Distribution failures downgrade their step to warning only
    - Migrations are serialised; at most one runs at a time
    - Verification accepts observed >= expected; pre-existing records on
      the target are tolerated

How to change safely:
    - New steps go between import and final check and must raise on failure
    - Never leave the router pointing at a half-imported target
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from .adapters.base import DRIVER_PACKAGES, create_adapter, driver_available, missing_driver
from .adapters.file_tree import FileTreeAdapter
from .config import StorageConfig, StorageKind, StorageOptions
from .distribution import DistributionReport
from .errors import (
    AdapterUnavailableError,
    ConfigurationError,
    ConstraintViolationError,
    MigrationAbortedError,
    VoltStorageError,
)
from .router import StorageRouter

logger = logging.getLogger(__name__)


class StepStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    WARNING = "warning"
    FAILED = "failed"


@dataclass
class MigrationStep:
    """One entry of the migration step log.

    Attributes:
        step: Step name
        status: Outcome
        detail: Step-specific data (counts, paths, errors)
        error: Failure message
        duration_ms: Wall time of the step
    """

    step: str
    status: StepStatus = StepStatus.PENDING
    detail: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"step": self.step, "status": self.status.value, **self.detail}
        if self.error is not None:
            body["error"] = self.error
        body["durationMs"] = self.duration_ms
        return body


@dataclass
class MigrationResult:
    """Outcome of a migration.

    Attributes:
        success: Whether the target is now active with all data
        source_kind: Back-end active before the migration
        target_kind: Requested back-end
        steps: Ordered step log
        counts: Records exported per collection
        backup_path: Backup folder, if one was written
        error: First failure message
        rolled_back: Whether the previous configuration was restored
        duration_ms: Total wall time
    """

    success: bool
    source_kind: str
    target_kind: str
    steps: list[MigrationStep] = field(default_factory=list)
    counts: dict[str, int] = field(default_factory=dict)
    backup_path: str | None = None
    error: str | None = None
    rolled_back: bool = False
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "source": self.source_kind,
            "target": self.target_kind,
            "steps": [s.to_dict() for s in self.steps],
            "counts": dict(self.counts),
            "backupPath": self.backup_path,
            "error": self.error,
            "rolledBack": self.rolled_back,
            "durationMs": self.duration_ms,
        }

    def raise_for_status(self) -> None:
        """Raise MigrationAbortedError if the migration failed."""
        if not self.success:
            raise MigrationAbortedError(
                self.error or "Migration failed",
                steps=[s.to_dict() for s in self.steps],
            )


@dataclass
class ConnectionTestResult:
    """Outcome of testConnection.

    Attributes:
        success: Whether connect and ping both worked
        kind: Back-end tested
        tested: Whether a connection was actually attempted
        error: Failure message
        driver_missing: Whether the failure was a missing driver package
    """

    success: bool
    kind: str
    tested: bool
    error: str | None = None
    driver_missing: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "type": self.kind,
            "tested": self.tested,
            "error": self.error,
            "driverMissing": self.driver_missing,
        }


class MigrationEngine:
    """Runs migrations, connection tests and distribution on a router.

    Example:
        >>> engine = MigrationEngine(router, backup_root="backup")
        >>> result = await engine.migrate("row_store", {"dbPath": "data/volt.db"})
        >>> result.raise_for_status()
    """

    def __init__(
        self,
        router: StorageRouter,
        backup_root: str | Path = "backup",
        config_path: str | Path | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            router: Router whose adapter is migrated
            backup_root: Parent folder for backup_<timestamp> directories
            config_path: Persisted storage config rewritten on success
        """
        self.router = router
        self.backup_root = Path(backup_root)
        self.config_path = Path(config_path) if config_path else None
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    @asynccontextmanager
    async def _step(self, result: MigrationResult, name: str) -> AsyncIterator[MigrationStep]:
        step = MigrationStep(step=name)
        result.steps.append(step)
        start = time.time()
        logger.info(f"Migration step started: {name}", extra={"step": name})
        try:
            yield step
        except Exception as e:
            step.status = StepStatus.FAILED
            step.error = e.message if isinstance(e, VoltStorageError) else str(e)
            raise
        else:
            if step.status is StepStatus.PENDING:
                step.status = StepStatus.COMPLETED
        finally:
            step.duration_ms = int((time.time() - start) * 1000)
            logger.info(
                f"Migration step {name}: {step.status.value}",
                extra={"step": name, "status": step.status.value, "duration_ms": step.duration_ms},
            )

    async def migrate(
        self,
        target_kind: StorageKind | str,
        target_options: dict[str, Any] | None = None,
        do_backup: bool = True,
        source_dir: str | Path | None = None,
    ) -> MigrationResult:
        """Move all data to another back-end and make it active.

        Args:
            target_kind: Back-end to migrate to
            target_options: Options block for the target
            do_backup: Copy the runtime JSON directory first
            source_dir: JSON directory whose files overlay the export and
                are synced into the runtime directory afterwards

        Returns:
            MigrationResult; failures are reported, not raised

        Raises:
            ConfigurationError: If the target kind is unknown or already active
        """
        target = StorageKind.parse(target_kind)
        async with self._lock:
            source = self.router.kind
            if target is source:
                raise ConfigurationError(f"Already using {target.value} storage")
            previous = self.router.active_config or self.router.config
            desired = previous.with_kind(target, target_options)
            desired.validate()

            start = time.time()
            result = MigrationResult(success=False, source_kind=source.value, target_kind=target.value)
            logger.info(
                f"Migration started: {source.value} -> {target.value}",
                extra={"source": source.value, "target": target.value},
            )
            source_path = Path(source_dir) if source_dir else None
            previous_file: bytes | None = None
            switched = False
            try:
                async with self._step(result, "backup") as step:
                    if do_backup:
                        result.backup_path = str(self._backup(previous))
                        step.detail["backupPath"] = result.backup_path
                    else:
                        step.status = StepStatus.SKIPPED

                async with self._step(result, "export") as step:
                    snapshot = await self._export(source_path)
                    result.counts = {name: len(data) for name, data in snapshot.items()}
                    step.detail["recordCounts"] = dict(result.counts)

                async with self._step(result, "configure"):
                    previous_file = self._read_config_file()
                    switched = True
                    await self.router.reinitialize(desired)
                    if self.config_path is not None:
                        desired.save_file(self.config_path)

                async with self._step(result, "import") as step:
                    step.detail["imported"] = await self.router.import_all(snapshot)

                async with self._step(result, "verify") as step:
                    await self.router.reinitialize()
                    step.detail["observed"] = await self._verify(result.counts)

                async with self._step(result, "distribute") as step:
                    await self._distribute_step(step, target)

                async with self._step(result, "sync-json-runtime") as step:
                    synced = self._sync_json_runtime(source_path, desired)
                    if synced is None:
                        step.status = StepStatus.SKIPPED
                    else:
                        step.detail["files"] = synced

                async with self._step(result, "final-check") as step:
                    active = self.router.kind
                    step.detail["active"] = active.value
                    if active is not target:
                        raise AdapterUnavailableError(
                            f"Backend switch failed: expected {target.value} but active is {active.value}",
                            kind=target.value,
                        )
                result.success = True
            except Exception as e:
                result.error = e.message if isinstance(e, VoltStorageError) else str(e)
                logger.error(f"Migration to {target.value} failed: {result.error}", exc_info=True)
                if switched:
                    await self._rollback(result, previous, previous_file)

            result.duration_ms = int((time.time() - start) * 1000)
            logger.info(
                "Migration finished",
                extra={
                    "source": source.value,
                    "target": target.value,
                    "success": result.success,
                    "rolled_back": result.rolled_back,
                    "duration_ms": result.duration_ms,
                },
            )
            return result

    def _backup(self, config: StorageConfig) -> Path:
        data_dir = Path(config.options.data_dir)
        backup_dir = self.backup_root / f"backup_{int(time.time() * 1000)}"
        backup_dir.mkdir(parents=True, exist_ok=True)
        copied = 0
        if data_dir.is_dir():
            for path in sorted(data_dir.iterdir()):
                if path.is_file():
                    shutil.copy2(path, backup_dir / path.name)
                    copied += 1
        logger.info(f"Backed up {copied} files to {backup_dir}")
        return backup_dir

    async def _export(self, source_dir: Path | None) -> dict[str, dict[str, Any]]:
        snapshot = await self.router.export_all()
        if source_dir is None or not source_dir.is_dir():
            return snapshot
        files = FileTreeAdapter(source_dir)
        for name in files.existing_collections():
            data = await files.load(name)
            if data:
                snapshot[name] = data
        return snapshot

    async def _verify(self, expected: dict[str, int]) -> dict[str, int]:
        observed: dict[str, int] = {}
        shortfall: dict[str, dict[str, int]] = {}
        for name, count in expected.items():
            observed[name] = await self.router.cache.count(name)
            if observed[name] < count:
                shortfall[name] = {"expected": count, "observed": observed[name]}
        if shortfall:
            raise ConstraintViolationError(
                f"Verification failed for {', '.join(sorted(shortfall))}",
                details={"shortfall": shortfall},
            )
        return observed

    async def _distribute_step(self, step: MigrationStep, target: StorageKind) -> None:
        if not target.is_sql:
            step.status = StepStatus.SKIPPED
            return
        try:
            report = await self.router.distribute()
        except VoltStorageError as e:
            step.status = StepStatus.WARNING
            step.detail["errors"] = [e.message]
            return
        step.detail.update(report.to_dict())
        if not report.success:
            step.status = StepStatus.WARNING

    def _sync_json_runtime(self, source_dir: Path | None, config: StorageConfig) -> list[str] | None:
        if source_dir is None or not source_dir.is_dir():
            return None
        runtime = Path(config.options.data_dir)
        if source_dir.resolve() == runtime.resolve():
            return None
        runtime.mkdir(parents=True, exist_ok=True)
        synced = []
        for path in sorted(source_dir.glob("*.json")):
            shutil.copy2(path, runtime / path.name)
            synced.append(path.name)
        return synced

    def _read_config_file(self) -> bytes | None:
        if self.config_path is None or not self.config_path.exists():
            return None
        return self.config_path.read_bytes()

    def _restore_config_file(self, content: bytes | None) -> None:
        if self.config_path is None:
            return
        if content is None:
            self.config_path.unlink(missing_ok=True)
        else:
            self.config_path.write_bytes(content)

    async def _rollback(
        self,
        result: MigrationResult,
        previous: StorageConfig,
        previous_file: bytes | None,
    ) -> None:
        step = MigrationStep(step="rollback")
        result.steps.append(step)
        try:
            self._restore_config_file(previous_file)
            await self.router.reinitialize(previous, allow_fallback=True)
        except Exception as e:
            step.status = StepStatus.FAILED
            step.error = f"Rollback failed: {e}"
            logger.critical(step.error, exc_info=True)
            return
        step.status = StepStatus.COMPLETED
        step.detail["active"] = self.router.kind.value
        result.rolled_back = True
        logger.warning(
            f"Migration rolled back to {self.router.kind.value}",
            extra={"kind": self.router.kind.value},
        )

    async def test_connection(
        self,
        kind: StorageKind | str,
        options: dict[str, Any] | None = None,
    ) -> ConnectionTestResult:
        """Try to connect to a back-end without touching the active one.

        Raises:
            ConfigurationError: If the kind is unknown
        """
        kind = StorageKind.parse(kind)
        if not driver_available(kind):
            return ConnectionTestResult(
                success=False,
                kind=kind.value,
                tested=False,
                error=missing_driver(kind).message,
                driver_missing=True,
            )
        adapter = None
        try:
            adapter = create_adapter(kind, StorageOptions.from_dict(kind, options))
            await adapter.connect()
            await adapter.ping()
        except (AdapterUnavailableError, ConfigurationError) as e:
            return ConnectionTestResult(
                success=False,
                kind=kind.value,
                tested=adapter is not None,
                error=e.message,
                driver_missing=getattr(e, "driver_missing", False),
            )
        finally:
            if adapter is not None and adapter.is_connected:
                await adapter.close()
        return ConnectionTestResult(success=True, kind=kind.value, tested=True)

    async def distribute(self) -> DistributionReport:
        """Run the distribution pass on the active adapter."""
        async with self._lock:
            return await self.router.distribute()

    def check_dependencies(self) -> dict[str, dict[str, Any]]:
        """Report which back-end drivers are importable."""
        dependencies: dict[str, dict[str, Any]] = {}
        for kind in StorageKind:
            driver, extra = DRIVER_PACKAGES.get(kind) or (None, None)
            dependencies[kind.value] = {
                "driver": driver,
                "extra": extra,
                "available": driver_available(kind),
            }
        return dependencies
