"""File-backed dashboard provisioning.

A DashboardProvisioner is built from the provider files in
``<provisioning>/dashboards``. Each provider points at a directory of
dashboard JSON files and gets its own FileReader, which:

- saves new and changed dashboards (change detection by file checksum)
- deletes dashboards whose file vanished, or only releases them from
  provisioning when the provider sets ``disableDeletion``
- re-walks its directory every ``updateIntervalSeconds`` while polling

The provisioner object is immutable once built. Reconfiguration builds a new
one and the orchestrator swaps it in.
"""

from __future__ import annotations

import asyncio
import functools
import hashlib
import json
import logging
import time
from dataclasses import replace
from pathlib import Path

from .config import MAX_DASHBOARD_FILE_SIZE_BYTES
from .config_reader import ConfigFileError, ProvisioningFilesError, read_config_dir
from .models import DashboardProviderConfig, DashboardProvidersFile
from .polling import PollingContext
from .provenance import (
    ChangeSummary,
    ChangeType,
    Provenance,
    ReconcileRecord,
    log_entity_change,
    log_reconcile_record,
)
from .reconcile import derive_uid, get_or_create_folder
from .store import Dashboard, Store, StoreError

logger = logging.getLogger(__name__)

KIND = "dashboards"


class DashboardFileError(Exception):
    """Raised when a single dashboard file cannot be provisioned."""

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class DashboardProvisionError(Exception):
    """Raised when a provider cannot be provisioned as a whole."""

    pass


class FileReader:
    """Keeps the dashboards of one provider in sync with its directory."""

    def __init__(self, provider: DashboardProviderConfig, store: Store) -> None:
        self.provider = provider
        self._store = store
        self.resolved_path = Path(provider.options.path).expanduser().resolve()

    @property
    def name(self) -> str:
        return self.provider.name

    async def walk_disk(self) -> ChangeSummary:
        """Save new and changed dashboards and handle vanished files."""
        summary = ChangeSummary()

        files = await asyncio.to_thread(self._list_files)
        if files is None:
            # Leave existing dashboards alone; the directory may be remounted
            logger.error(
                "Cannot read dashboard directory",
                extra={"provider": self.name, "path": str(self.resolved_path)},
            )
            return summary

        existing = {
            d.source_path: d
            for d in await self._store.dashboards.list_provisioned()
            if d.provisioner == self.name
        }

        seen: set[str] = set()
        for file in files:
            source = str(file)
            seen.add(source)
            try:
                change = await self._save_dashboard(file, existing.get(source))
            except DashboardFileError as e:
                logger.error(
                    "Failed to load dashboard",
                    extra={"provider": self.name, "path": source, "error": e.reason},
                )
                continue
            summary.record(change)

        for source, dashboard in existing.items():
            if source in seen:
                continue
            stored = await self._store.dashboards.get(*dashboard.key)
            if stored is None or stored.source_path != source:
                # Taken over by a renamed file during this walk
                continue
            if self.provider.disable_deletion:
                # Keep the dashboard but hand it over to the users
                await self._store.dashboards.update(
                    replace(dashboard, provenance=Provenance.NONE, source_path="", provisioner="")
                )
                logger.info(
                    "Released dashboard whose file was removed",
                    extra={"provider": self.name, "uid": dashboard.uid, "path": source},
                )
                summary.record(ChangeType.UPDATE)
            else:
                await self._store.dashboards.delete(*dashboard.key)
                log_entity_change(KIND, dashboard.key, ChangeType.DELETE, source)
                summary.record(ChangeType.DELETE)

        return summary

    async def poll_changes(self, ctx: PollingContext) -> None:
        """Re-walk the directory every update interval until ``ctx`` is done."""
        interval = self.provider.update_interval_seconds
        while not await ctx.sleep(interval):
            started = time.monotonic()
            try:
                summary = await self.walk_disk()
            except (StoreError, OSError) as e:
                logger.error(
                    "Failed to poll dashboard changes",
                    extra={"provider": self.name, "epoch": ctx.epoch, "error": str(e)},
                )
                continue
            if summary.total_mutations:
                log_reconcile_record(
                    ReconcileRecord(
                        kind=KIND,
                        path=str(self.resolved_path),
                        summary=summary,
                        duration_seconds=time.monotonic() - started,
                    )
                )

    def _list_files(self) -> list[Path] | None:
        """Dashboard files under the provider directory, or None if it is not one."""
        if not self.resolved_path.is_dir():
            return None
        return [f for f in sorted(self.resolved_path.rglob("*.json")) if f.is_file()]

    @staticmethod
    def _read_file(file: Path) -> bytes:
        try:
            if file.stat().st_size > MAX_DASHBOARD_FILE_SIZE_BYTES:
                raise DashboardFileError(
                    file, f"file exceeds maximum size of {MAX_DASHBOARD_FILE_SIZE_BYTES} bytes"
                )
            return file.read_bytes()
        except OSError as e:
            raise DashboardFileError(file, f"cannot read file: {e}") from e

    async def _save_dashboard(self, file: Path, existing: Dashboard | None) -> ChangeType:
        raw = await asyncio.to_thread(self._read_file, file)

        checksum = hashlib.sha256(raw).hexdigest()
        if existing is not None and existing.checksum == checksum:
            return ChangeType.UNCHANGED

        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise DashboardFileError(file, f"invalid JSON: {e}") from e
        if not isinstance(data, dict) or not data.get("title"):
            raise DashboardFileError(file, "dashboard must be a JSON object with a title")

        org_id = self.provider.org_id
        relative = file.relative_to(self.resolved_path)
        uid = str(data.get("uid") or derive_uid(KIND, org_id, f"{self.name}/{relative}"))

        current = await self._store.dashboards.get(org_id, uid)
        if current is not None and current.source_path != str(file):
            if not current.provisioned:
                raise DashboardFileError(
                    file, f"uid {uid!r} belongs to a dashboard that was not provisioned"
                )
            if current.provisioner != self.name:
                raise DashboardFileError(
                    file, f"uid {uid!r} is already provisioned by {current.provisioner!r}"
                )
            if Path(current.source_path).exists():
                raise DashboardFileError(file, f"uid {uid!r} is also used by {current.source_path}")
            # Otherwise the file was renamed and takes the dashboard over

        if existing is not None and existing.uid != uid:
            # The file changed its uid; drop the dashboard stored under the old one
            await self._store.dashboards.delete(*existing.key)
            log_entity_change(KIND, existing.key, ChangeType.DELETE, str(file))

        dashboard = Dashboard(
            uid=uid,
            org_id=org_id,
            title=str(data["title"]),
            folder_uid=await self._folder_uid(file),
            data=data,
            provisioner=self.name,
            checksum=checksum,
            provenance=Provenance.FILE,
            source_path=str(file),
        )

        if current is None:
            await self._store.dashboards.create(dashboard)
            change = ChangeType.CREATE
        else:
            await self._store.dashboards.update(dashboard)
            change = ChangeType.UPDATE

        log_entity_change(KIND, dashboard.key, change, str(file))
        return change

    async def _folder_uid(self, file: Path) -> str:
        provider = self.provider
        if provider.options.folders_from_files_structure:
            if file.parent == self.resolved_path:
                return ""
            title, uid = file.parent.name, ""
        else:
            title, uid = provider.folder, provider.folder_uid
        if not title and not uid:
            return ""
        folder = await get_or_create_folder(
            self._store.folders,
            provider.org_id,
            title or uid,
            uid=uid,
            source_path=str(self.resolved_path),
        )
        return folder.uid


class DashboardProvisioner:
    """All dashboard providers of one configuration generation."""

    def __init__(self, providers: list[DashboardProviderConfig], store: Store) -> None:
        self._store = store
        self._readers = [FileReader(p, store) for p in providers]
        self._tasks: set[asyncio.Task[None]] = set()

    async def provision(self) -> ChangeSummary:
        """Run one reconciliation pass over every provider."""
        started = time.monotonic()
        summary = ChangeSummary()
        for reader in self._readers:
            try:
                summary.merge(await reader.walk_disk())
            except (StoreError, OSError) as e:
                raise DashboardProvisionError(
                    f"failed to provision config {reader.name!r}: {e}"
                ) from e
        log_reconcile_record(
            ReconcileRecord(
                kind=KIND,
                path=", ".join(str(r.resolved_path) for r in self._readers),
                summary=summary,
                duration_seconds=time.monotonic() - started,
            )
        )
        return summary

    async def clean_up_orphaned_dashboards(self) -> None:
        """Delete provisioned dashboards whose provider is no longer configured."""
        names = {r.name for r in self._readers}
        try:
            for dashboard in await self._store.dashboards.list_provisioned():
                if dashboard.provisioner in names:
                    continue
                await self._store.dashboards.delete(*dashboard.key)
                log_entity_change(KIND, dashboard.key, ChangeType.DELETE, dashboard.source_path)
        except StoreError as e:
            logger.error("Failed to clean up orphaned dashboards", extra={"error": str(e)})

    def poll_changes(self, ctx: PollingContext) -> None:
        """Start one polling task per provider and return immediately.

        The tasks stop when ``ctx`` is done. A task that crashes cancels
        ``ctx`` so that the owner can start a new epoch.
        """
        for reader in self._readers:
            task = asyncio.create_task(
                reader.poll_changes(ctx), name=f"dashboard-poll-{reader.name}-{ctx.epoch}"
            )
            self._tasks.add(task)
            task.add_done_callback(functools.partial(self._poll_task_done, ctx))

    def _poll_task_done(self, ctx: PollingContext, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None and not ctx.done:
            logger.error(
                "Dashboard polling stopped unexpectedly",
                extra={"task": task.get_name(), "epoch": ctx.epoch, "error": str(error)},
            )
            ctx.cancel()

    @property
    def polling_tasks(self) -> int:
        return len(self._tasks)

    def has_dashboard_sources(self) -> bool:
        return bool(self._readers)

    def get_provisioner_resolved_path(self, name: str) -> str:
        for reader in self._readers:
            if reader.name == name:
                return str(reader.resolved_path)
        return ""

    def get_allow_ui_updates_from_config(self, name: str) -> bool:
        for reader in self._readers:
            if reader.name == name:
                return reader.provider.allow_ui_updates
        return False


def new_dashboard_provisioner(config_path: Path, store: Store) -> DashboardProvisioner:
    """Build a DashboardProvisioner from the provider files in ``config_path``.

    Raises:
        ProvisioningFilesError: If any provider file is invalid or two
            providers share a name.
    """
    read = read_config_dir(config_path, DashboardProvidersFile)
    errors = list(read.errors)
    providers: list[DashboardProviderConfig] = []
    names: dict[str, Path] = {}

    for config_file in read.files:
        for provider in config_file.content.providers:
            if provider.name in names:
                errors.append(
                    ConfigFileError(
                        config_file.path,
                        f"duplicate dashboard provider name {provider.name!r} "
                        f"(also in {names[provider.name]})",
                    )
                )
                continue
            names[provider.name] = config_file.path
            providers.append(provider)

    if errors:
        raise ProvisioningFilesError(KIND, errors)

    logger.info(
        "Loaded dashboard providers",
        extra={"path": str(config_path), "providers": [p.name for p in providers]},
    )
    return DashboardProvisioner(providers, store)
