"""Alert notification channel provisioning.

Files under ``<provisioning>/notifiers`` declare notification channels and may
list channels to delete by uid or name. Each channel type must be known and
carry the settings it needs; at most one channel per org is the default.
"""

from __future__ import annotations

from pathlib import Path

from .config_reader import ConfigFile, ConfigFileError
from .models import NotifierConfig, NotifiersFile, parse_duration
from .provenance import ChangeSummary, Provenance
from .reconcile import FilePlan, derive_uid, reconcile_directory, resolve_org, secret_checksum
from .services import ProvisionerDeps
from .store import Notifier

KIND = "notifiers"


class _NotifierPlanner:
    """Plans one call; a default claim counts once its file is accepted."""

    def __init__(self, deps: ProvisionerDeps) -> None:
        self._deps = deps
        self._defaults: dict[int, Path] = {}
        self._claims: dict[Path, list[int]] = {}

    async def plan_file(self, config_file: ConfigFile[NotifiersFile]) -> FilePlan[Notifier]:
        path = config_file.path
        plan: FilePlan[Notifier] = FilePlan(path)
        claimed: list[int] = []

        for target in config_file.content.delete_notifiers:
            org_id = await resolve_org(self._deps.store.orgs, target.org_id, target.org_name, path)
            for existing in await self._deps.store.notifiers.list(org_id):
                if (target.uid and existing.uid == target.uid) or (
                    not target.uid and existing.name == target.name
                ):
                    plan.deletes.append(existing.key)

        for notifier in config_file.content.notifiers:
            self._validate_type(notifier, path)
            org_id = await resolve_org(self._deps.store.orgs, notifier.org_id, notifier.org_name, path)
            if notifier.is_default:
                if org_id in claimed:
                    raise ConfigFileError(
                        path,
                        f"only one alert notification per organization can be marked as default "
                        f"(org {org_id} has several in this file)",
                    )
                claimed.append(org_id)
            plan.entities.append(self._to_entity(notifier, org_id, path))

        self._claims[path] = claimed
        return plan

    async def check_plan(self, plan: FilePlan[Notifier]) -> None:
        claimed = self._claims.get(plan.path, [])
        for org_id in claimed:
            owner = self._defaults.get(org_id)
            if owner is not None:
                raise ConfigFileError(
                    plan.path,
                    f"only one alert notification per organization can be marked as default "
                    f"(org {org_id} already has one in {owner})",
                )
        for org_id in claimed:
            self._defaults[org_id] = plan.path

    def _validate_type(self, notifier: NotifierConfig, path: Path) -> None:
        registry = self._deps.services.notifier_types
        if not registry.is_known(notifier.type):
            raise ConfigFileError(
                path, f"notifier {notifier.name!r}: unsupported notification type {notifier.type!r}"
            )
        provided = {k for k, v in notifier.settings.items() if v not in (None, "")}
        provided |= {k for k, v in notifier.secure_settings.items() if v}
        missing = registry.missing_settings(notifier.type, provided)
        if missing:
            raise ConfigFileError(
                path, f"notifier {notifier.name!r}: missing required settings {missing}"
            )

    def _to_entity(self, notifier: NotifierConfig, org_id: int, path: Path) -> Notifier:
        # A setting provided as secure must not also be stored in plain text
        settings = {k: v for k, v in notifier.settings.items() if k not in notifier.secure_settings}
        return Notifier(
            uid=notifier.uid or derive_uid(KIND, org_id, notifier.name),
            org_id=org_id,
            name=notifier.name,
            type=notifier.type,
            is_default=notifier.is_default,
            send_reminder=notifier.send_reminder,
            disable_resolve_message=notifier.disable_resolve_message,
            frequency_seconds=parse_duration(notifier.frequency) if notifier.send_reminder else 0,
            settings=settings,
            secure_settings=self._deps.services.secrets.encrypt(notifier.secure_settings),
            secure_checksum=secret_checksum(notifier.secure_settings),
            provenance=Provenance.FILE,
            source_path=str(path),
        )


async def provision(config_path: Path, deps: ProvisionerDeps) -> ChangeSummary:
    """Converge stored notification channels to the files in ``config_path``."""
    planner = _NotifierPlanner(deps)
    return await reconcile_directory(
        KIND,
        config_path,
        NotifiersFile,
        deps.store.notifiers,
        deps,
        planner.plan_file,
        check_plan=planner.check_plan,
    )
