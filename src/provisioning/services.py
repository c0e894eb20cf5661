"""External services consumed by the provisioners.

Secret encryption, access control, quotas, search indexing and plugin
discovery belong to the host system. The provisioners only see the narrow
protocols below, bundled into ServiceHandles and injected at construction.
The concrete classes are the defaults used when the engine runs standalone.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from .config import (
    DEFAULT_ALERTING_BASE_INTERVAL_SECONDS,
    DEFAULT_ALERTING_RULE_INTERVAL_SECONDS,
    AtomicityPolicy,
    Config,
)
from .store import Store

logger = logging.getLogger(__name__)


class SecretsService(Protocol):
    def encrypt(self, values: dict[str, str]) -> dict[str, str]: ...


class AccessControl(Protocol):
    def is_allowed(self, action: str, scope: str) -> bool: ...


class QuotaService(Protocol):
    async def quota_reached(self, org_id: int, target: str) -> bool: ...


class SearchIndexer(Protocol):
    def trigger_reindex(self) -> None: ...


class PluginRegistry(Protocol):
    def plugin_exists(self, plugin_id: str) -> bool: ...


class PlaintextSecrets:
    """Keeps secure settings as given. Only suitable for local state files."""

    def encrypt(self, values: dict[str, str]) -> dict[str, str]:
        return dict(values)


class AllowAllAccessControl:
    def is_allowed(self, action: str, scope: str) -> bool:
        return True


class UnlimitedQuota:
    async def quota_reached(self, org_id: int, target: str) -> bool:
        return False


class LoggingSearchIndexer:
    """Records re-index requests in the log; the indexer itself is external."""

    def trigger_reindex(self) -> None:
        logger.info("Search re-index requested")


class DirectoryPluginRegistry:
    """Treats every subdirectory holding a plugin.json as an installed plugin."""

    def __init__(self, plugins_dir: Path | None) -> None:
        self._plugins_dir = plugins_dir

    def plugin_exists(self, plugin_id: str) -> bool:
        if self._plugins_dir is None or not plugin_id or "/" in plugin_id:
            return False
        return (self._plugins_dir / plugin_id / "plugin.json").is_file()


# Settings each notifier type cannot work without (plain or secure)
DEFAULT_NOTIFIER_REQUIRED_SETTINGS: dict[str, frozenset[str]] = {
    "email": frozenset({"addresses"}),
    "slack": frozenset({"url"}),
    "webhook": frozenset({"url"}),
    "discord": frozenset({"url"}),
    "teams": frozenset({"url"}),
    "googlechat": frozenset({"url"}),
    "pagerduty": frozenset({"integrationKey"}),
    "opsgenie": frozenset({"apiKey"}),
    "telegram": frozenset({"bottoken", "chatid"}),
    "victorops": frozenset({"url"}),
}


class NotifierTypeRegistry:
    """Known notifier types and the settings each one requires."""

    def __init__(self, required_settings: dict[str, frozenset[str]] | None = None) -> None:
        self._required = dict(required_settings or DEFAULT_NOTIFIER_REQUIRED_SETTINGS)

    def is_known(self, notifier_type: str) -> bool:
        return notifier_type in self._required

    def missing_settings(self, notifier_type: str, provided: set[str]) -> list[str]:
        return sorted(self._required.get(notifier_type, frozenset()) - provided)


@dataclass(frozen=True)
class ServiceHandles:
    """Immutable references shared read-only by all provisioners."""

    secrets: SecretsService = field(default_factory=PlaintextSecrets)
    access_control: AccessControl = field(default_factory=AllowAllAccessControl)
    quota: QuotaService = field(default_factory=UnlimitedQuota)
    search: SearchIndexer = field(default_factory=LoggingSearchIndexer)
    plugins: PluginRegistry = field(default_factory=lambda: DirectoryPluginRegistry(None))
    notifier_types: NotifierTypeRegistry = field(default_factory=NotifierTypeRegistry)

    @classmethod
    def from_config(cls, config: Config) -> ServiceHandles:
        """Defaults for a standalone process."""
        return cls(plugins=DirectoryPluginRegistry(config.plugins_dir))


@dataclass(frozen=True)
class ProvisionerDeps:
    """Everything a stateless resource provisioner receives per call."""

    store: Store
    services: ServiceHandles = field(default_factory=ServiceHandles)
    policy: AtomicityPolicy = AtomicityPolicy.ALL_OR_NOTHING
    alerting_base_interval_seconds: int = DEFAULT_ALERTING_BASE_INTERVAL_SECONDS
    alerting_default_rule_interval_seconds: int = DEFAULT_ALERTING_RULE_INTERVAL_SECONDS
