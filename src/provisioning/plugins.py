"""Plugin settings provisioning.

Files under ``<provisioning>/plugins`` enable, disable and configure installed
app plugins per org. A plugin that is not installed is a configuration error.
"""

from __future__ import annotations

from pathlib import Path

from .config_reader import ConfigFile, ConfigFileError
from .models import PluginsFile
from .provenance import ChangeSummary, Provenance
from .reconcile import FilePlan, reconcile_directory, resolve_org, secret_checksum
from .services import ProvisionerDeps
from .store import PluginSetting

KIND = "plugins"


async def _plan_file(
    config_file: ConfigFile[PluginsFile], deps: ProvisionerDeps
) -> FilePlan[PluginSetting]:
    path = config_file.path
    plan: FilePlan[PluginSetting] = FilePlan(path)

    for app in config_file.content.apps:
        if not deps.services.plugins.plugin_exists(app.type):
            raise ConfigFileError(path, f"plugin not installed: {app.type!r}")
        org_id = await resolve_org(deps.store.orgs, app.org_id, app.org_name, path)
        plan.entities.append(
            PluginSetting(
                uid=app.type,
                org_id=org_id,
                enabled=not app.disabled,
                json_data=app.json_data,
                secure_json_data=deps.services.secrets.encrypt(app.secure_json_data),
                secure_checksum=secret_checksum(app.secure_json_data),
                provenance=Provenance.FILE,
                source_path=str(path),
            )
        )
    return plan


async def provision(config_path: Path, deps: ProvisionerDeps) -> ChangeSummary:
    """Converge stored plugin settings to the files in ``config_path``."""

    async def plan_file(config_file: ConfigFile[PluginsFile]) -> FilePlan[PluginSetting]:
        return await _plan_file(config_file, deps)

    return await reconcile_directory(
        KIND, config_path, PluginsFile, deps.store.plugin_settings, deps, plan_file
    )
