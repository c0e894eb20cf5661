"""Alert rule provisioning.

Files under ``<provisioning>/alerting`` declare rule groups. A group lives in a
folder (created on demand), evaluates every ``interval`` and holds rules
identified by uid. ``deleteRules`` removes rules by uid.

Group intervals must be a positive multiple of the scheduler base interval.
New rules are subject to the org's alert rule quota.
"""

from __future__ import annotations

import logging
from pathlib import Path

from .config_reader import ConfigFile, ConfigFileError
from .models import AlertingFile, AlertRuleConfig, AlertRuleGroupConfig, parse_duration
from .provenance import ChangeSummary, Provenance
from .reconcile import FilePlan, derive_uid, find_folder_by_title, reconcile_directory
from .services import ProvisionerDeps
from .store import AlertRule, Folder

logger = logging.getLogger(__name__)

KIND = "alert_rules"
QUOTA_TARGET = "alert_rule"
FOLDER_CREATE_ACTION = "folders:create"


class _AlertRulePlanner:
    def __init__(self, deps: ProvisionerDeps) -> None:
        self._deps = deps

    async def plan_file(self, config_file: ConfigFile[AlertingFile]) -> FilePlan[AlertRule]:
        path = config_file.path
        plan: FilePlan[AlertRule] = FilePlan(path)

        for target in config_file.content.delete_rules:
            plan.deletes.append((target.org_id, target.uid))

        for group in config_file.content.groups:
            if await self._deps.store.orgs.get(group.org_id) is None:
                raise ConfigFileError(path, f"organization {group.org_id} not found")
            interval = self._group_interval(group, path)
            folder_uid = await self._resolve_folder(group, plan)
            for rule in group.rules:
                entity = self._to_entity(rule, group, folder_uid, interval, path)
                await self._check_quota(entity, path)
                plan.entities.append(entity)

        return plan

    def _group_interval(self, group: AlertRuleGroupConfig, path: Path) -> int:
        base = self._deps.alerting_base_interval_seconds
        if group.interval is None:
            return self._deps.alerting_default_rule_interval_seconds
        interval = parse_duration(group.interval)
        if interval <= 0 or interval % base != 0:
            raise ConfigFileError(
                path,
                f"rule group {group.name!r}: interval ({interval}s) should be non-zero and "
                f"divided exactly by scheduler interval: {base}s",
            )
        return interval

    async def _resolve_folder(self, group: AlertRuleGroupConfig, plan: FilePlan[AlertRule]) -> str:
        existing = await find_folder_by_title(self._deps.store.folders, group.org_id, group.folder)
        if existing is not None:
            return existing.uid

        for planned in plan.folders:
            if planned.org_id == group.org_id and planned.title == group.folder:
                return planned.uid

        scope = f"folders:title:{group.folder}"
        if not self._deps.services.access_control.is_allowed(FOLDER_CREATE_ACTION, scope):
            raise ConfigFileError(plan.path, f"not allowed to create folder {group.folder!r}")

        folder = Folder(
            uid=derive_uid("folder", group.org_id, group.folder),
            org_id=group.org_id,
            title=group.folder,
            provenance=Provenance.FILE,
            source_path=str(plan.path),
        )
        plan.folders.append(folder)
        return folder.uid

    async def _check_quota(self, rule: AlertRule, path: Path) -> None:
        if await self._deps.store.alert_rules.get(*rule.key) is not None:
            return
        if await self._deps.services.quota.quota_reached(rule.org_id, QUOTA_TARGET):
            raise ConfigFileError(
                path, f"rule {rule.uid!r}: alert rule quota reached for org {rule.org_id}"
            )

    def _to_entity(
        self,
        rule: AlertRuleConfig,
        group: AlertRuleGroupConfig,
        folder_uid: str,
        interval: int,
        path: Path,
    ) -> AlertRule:
        return AlertRule(
            uid=rule.uid,
            org_id=group.org_id,
            title=rule.title,
            rule_group=group.name,
            folder_uid=folder_uid,
            interval_seconds=interval,
            condition=rule.condition,
            data=[q.model_dump(by_alias=True) for q in rule.data],
            for_seconds=parse_duration(rule.for_),
            no_data_state=rule.no_data_state,
            exec_err_state=rule.exec_err_state,
            annotations=rule.annotations,
            labels=rule.labels,
            is_paused=rule.is_paused,
            provenance=Provenance.FILE,
            source_path=str(path),
        )


async def provision(config_path: Path, deps: ProvisionerDeps) -> ChangeSummary:
    """Converge stored alert rules to the files in ``config_path``."""
    planner = _AlertRulePlanner(deps)
    return await reconcile_directory(
        KIND, config_path, AlertingFile, deps.store.alert_rules, deps, planner.plan_file
    )
