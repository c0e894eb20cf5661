"""Data source provisioning.

Files under ``<provisioning>/datasources`` declare data sources per org and
may list data sources to delete by name. Only one data source per org can be
the default across all files.

A data source may declare correlations to other data sources of its org. The
provisioned correlations of each data source are replaced by the declared
ones, and correlations whose source or target data source no longer exists
are deleted with it.
"""

from __future__ import annotations

import logging
from pathlib import Path

from .config_reader import ConfigFile, ConfigFileError, ProvisioningFilesError
from .models import DatasourceConfig, DatasourcesFile
from .provenance import ChangeSummary, ChangeType, Provenance, log_entity_change
from .reconcile import (
    FilePlan,
    derive_uid,
    reconcile_directory,
    resolve_org,
    secret_checksum,
    upsert_entity,
)
from .services import ProvisionerDeps
from .store import Correlation, DataSource

logger = logging.getLogger(__name__)

KIND = "datasources"
CORRELATIONS_KIND = "correlations"


class _DatasourcePlanner:
    """Plans one call.

    Default claims and correlations are collected per file while planning and
    only take effect once the file is accepted.
    """

    def __init__(self, deps: ProvisionerDeps) -> None:
        self._deps = deps
        self._defaults: dict[int, Path] = {}
        self._planned: set[tuple[int, str]] = set()
        self._claims: dict[Path, list[int]] = {}
        self._pending: dict[Path, dict[tuple[int, str], list[Correlation]]] = {}
        # Correlations of accepted data sources, by source key
        self.correlations: dict[tuple[int, str], list[Correlation]] = {}

    async def plan_file(self, config_file: ConfigFile[DatasourcesFile]) -> FilePlan[DataSource]:
        path = config_file.path
        plan: FilePlan[DataSource] = FilePlan(path)
        claimed: list[int] = []
        correlations: dict[tuple[int, str], list[Correlation]] = {}

        for ds in config_file.content.delete_datasources:
            org_id = await resolve_org(self._deps.store.orgs, ds.org_id, "", path)
            for existing in await self._deps.store.datasources.list(org_id):
                if existing.name == ds.name:
                    plan.deletes.append(existing.key)

        for ds in config_file.content.datasources:
            org_id = await resolve_org(self._deps.store.orgs, ds.org_id, "", path)
            if ds.is_default:
                if org_id in claimed:
                    raise ConfigFileError(
                        path,
                        f"only one datasource per organization can be marked as default "
                        f"(org {org_id} has several in this file)",
                    )
                claimed.append(org_id)
            entity = self._to_entity(ds, org_id, path)
            plan.entities.append(entity)
            correlations[entity.key] = self._to_correlations(ds, entity)

        self._planned.update(e.key for e in plan.entities)
        self._claims[path] = claimed
        self._pending[path] = correlations
        return plan

    async def check_plan(self, plan: FilePlan[DataSource]) -> None:
        """Cross-file checks; state is recorded only for accepted files."""
        path = plan.path
        claimed = self._claims.get(path, [])
        for org_id in claimed:
            owner = self._defaults.get(org_id)
            if owner is not None:
                raise ConfigFileError(
                    path,
                    f"only one datasource per organization can be marked as default "
                    f"(org {org_id} already has one in {owner})",
                )

        pending = self._pending.get(path, {})
        for (org_id, source_uid), correlations in pending.items():
            for correlation in correlations:
                target = (org_id, correlation.target_uid)
                if target in self._planned:
                    continue
                if await self._deps.store.datasources.get(*target) is None:
                    raise ConfigFileError(
                        path,
                        f"correlation of datasource {source_uid!r}: target datasource "
                        f"{correlation.target_uid!r} does not exist in org {org_id}",
                    )

        for org_id in claimed:
            self._defaults[org_id] = path
        self.correlations.update(pending)

    def _to_entity(self, ds: DatasourceConfig, org_id: int, path: Path) -> DataSource:
        return DataSource(
            uid=ds.uid or derive_uid(KIND, org_id, ds.name),
            org_id=org_id,
            name=ds.name,
            type=ds.type,
            access=ds.access,
            url=ds.url,
            user=ds.user,
            database=ds.database,
            basic_auth=ds.basic_auth,
            basic_auth_user=ds.basic_auth_user,
            with_credentials=ds.with_credentials,
            is_default=ds.is_default,
            editable=ds.editable,
            json_data=ds.json_data,
            secure_json_data=self._deps.services.secrets.encrypt(ds.secure_json_data),
            secure_checksum=secret_checksum(ds.secure_json_data),
            provenance=Provenance.FILE,
            source_path=str(path),
        )

    @staticmethod
    def _to_correlations(ds: DatasourceConfig, source: DataSource) -> list[Correlation]:
        return [
            Correlation(
                uid=derive_uid(CORRELATIONS_KIND, source.org_id, f"{source.uid}/{index}"),
                org_id=source.org_id,
                source_uid=source.uid,
                target_uid=c.target_uid,
                label=c.label,
                description=c.description,
                provenance=Provenance.FILE,
                source_path=source.source_path,
            )
            for index, c in enumerate(ds.correlations)
        ]


async def sync_correlations(
    deps: ProvisionerDeps, declared: dict[tuple[int, str], list[Correlation]]
) -> ChangeSummary:
    """Replace provisioned correlations by source and drop dangling ones.

    ``declared`` maps each provisioned data source key to the correlations
    its file declares, possibly none.
    """
    summary = ChangeSummary()
    correlations = deps.store.correlations
    datasources = deps.store.datasources

    for (org_id, source_uid), wanted in declared.items():
        keep: set[str] = set()
        for correlation in wanted:
            if await datasources.get(org_id, correlation.target_uid) is None:
                # Its file was accepted but the target's file was not
                logger.warning(
                    "Skipping correlation, target datasource does not exist",
                    extra={
                        "org_id": org_id,
                        "source_uid": source_uid,
                        "target_uid": correlation.target_uid,
                    },
                )
                continue
            keep.add(correlation.uid)
            change = await upsert_entity(correlations, correlation)
            summary.record(change)
            log_entity_change(CORRELATIONS_KIND, correlation.key, change, correlation.source_path)

        for existing in await correlations.list(org_id):
            if existing.provisioned and existing.source_uid == source_uid and existing.uid not in keep:
                await correlations.delete(*existing.key)
                summary.record(ChangeType.DELETE)
                log_entity_change(CORRELATIONS_KIND, existing.key, ChangeType.DELETE, existing.source_path)

    for existing in await correlations.list():
        source = await datasources.get(existing.org_id, existing.source_uid)
        target = await datasources.get(existing.org_id, existing.target_uid)
        if source is not None and target is not None:
            continue
        await correlations.delete(*existing.key)
        summary.record(ChangeType.DELETE)
        log_entity_change(CORRELATIONS_KIND, existing.key, ChangeType.DELETE, existing.source_path)

    return summary


async def provision(config_path: Path, deps: ProvisionerDeps) -> ChangeSummary:
    """Converge stored data sources and their correlations to ``config_path``."""
    planner = _DatasourcePlanner(deps)
    try:
        summary = await reconcile_directory(
            KIND,
            config_path,
            DatasourcesFile,
            deps.store.datasources,
            deps,
            planner.plan_file,
            check_plan=planner.check_plan,
        )
    except ProvisioningFilesError as e:
        if e.summary is not None:
            # Best effort: the valid files were applied, so are their correlations
            e.summary.merge(await sync_correlations(deps, planner.correlations))
        raise
    summary.merge(await sync_correlations(deps, planner.correlations))
    return summary
