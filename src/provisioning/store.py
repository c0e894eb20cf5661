"""Entity store for provisioned resources.

The engine depends only on the EntityStore and OrgStore protocols. StateStore
is the bundled implementation: in-memory collections optionally persisted to a
JSON state file. Every single-entity mutation is flushed with a
write-then-rename, so a crash never leaves a half-written entity behind. A
mutation whose write fails is rolled back in memory.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Generic, Protocol, TypeVar

from .provenance import Provenance

logger = logging.getLogger(__name__)

DEFAULT_ORG_ID = 1
DEFAULT_ORG_NAME = "Main Org."


class StoreError(Exception):
    """Raised when a store operation fails."""

    pass


# =============================================================================
# Entities
# =============================================================================


@dataclass(kw_only=True)
class Entity:
    """Fields shared by every stored entity.

    Equality ignores the store-assigned version so that a freshly planned
    entity compares equal to its stored counterpart when nothing changed.
    """

    uid: str
    org_id: int = DEFAULT_ORG_ID
    provenance: Provenance = Provenance.NONE
    source_path: str = ""
    version: int = field(default=0, compare=False)

    def __post_init__(self) -> None:
        self.provenance = Provenance(self.provenance)

    @property
    def key(self) -> tuple[int, str]:
        return (self.org_id, self.uid)

    @property
    def provisioned(self) -> bool:
        return self.provenance is Provenance.FILE


@dataclass(kw_only=True)
class DataSource(Entity):
    name: str
    type: str
    access: str = "proxy"
    url: str = ""
    user: str = ""
    database: str = ""
    basic_auth: bool = False
    basic_auth_user: str = ""
    with_credentials: bool = False
    is_default: bool = False
    editable: bool = False
    json_data: dict[str, Any] = field(default_factory=dict)
    # Ciphertext differs on every encryption; compare the plaintext checksum instead
    secure_json_data: dict[str, str] = field(default_factory=dict, compare=False)
    secure_checksum: str = ""


@dataclass(kw_only=True)
class Correlation(Entity):
    """Link from a source data source to a target data source in one org."""

    source_uid: str
    target_uid: str
    label: str = ""
    description: str = ""


@dataclass(kw_only=True)
class PluginSetting(Entity):
    """Per-org settings of an installed plugin; uid is the plugin id."""

    enabled: bool = True
    json_data: dict[str, Any] = field(default_factory=dict)
    secure_json_data: dict[str, str] = field(default_factory=dict, compare=False)
    secure_checksum: str = ""


@dataclass(kw_only=True)
class Notifier(Entity):
    name: str
    type: str
    is_default: bool = False
    send_reminder: bool = False
    disable_resolve_message: bool = False
    frequency_seconds: int = 0
    settings: dict[str, Any] = field(default_factory=dict)
    secure_settings: dict[str, str] = field(default_factory=dict, compare=False)
    secure_checksum: str = ""


@dataclass(kw_only=True)
class AlertRule(Entity):
    title: str
    rule_group: str
    folder_uid: str
    interval_seconds: int
    condition: str
    data: list[dict[str, Any]] = field(default_factory=list)
    for_seconds: int = 0
    no_data_state: str = "NoData"
    exec_err_state: str = "Alerting"
    annotations: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    is_paused: bool = False


@dataclass(kw_only=True)
class Dashboard(Entity):
    title: str
    folder_uid: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    # Name of the dashboard provider that owns this dashboard
    provisioner: str = ""
    checksum: str = ""


@dataclass(kw_only=True)
class Folder(Entity):
    title: str


@dataclass(frozen=True)
class Org:
    id: int
    name: str


E = TypeVar("E", bound=Entity)


# =============================================================================
# Protocols
# =============================================================================


class EntityStore(Protocol[E]):
    """Operations the provisioners need on one entity kind."""

    async def get(self, org_id: int, uid: str) -> E | None: ...

    async def list(self, org_id: int | None = None) -> list[E]: ...

    async def list_provisioned(self) -> list[E]: ...

    async def create(self, entity: E) -> E: ...

    async def update(self, entity: E) -> E: ...

    async def delete(self, org_id: int, uid: str) -> bool: ...


class OrgStore(Protocol):
    async def get(self, org_id: int) -> Org | None: ...

    async def get_by_name(self, name: str) -> Org | None: ...


class Store(Protocol):
    datasources: EntityStore[DataSource]
    correlations: EntityStore[Correlation]
    plugin_settings: EntityStore[PluginSetting]
    notifiers: EntityStore[Notifier]
    alert_rules: EntityStore[AlertRule]
    dashboards: EntityStore[Dashboard]
    folders: EntityStore[Folder]
    orgs: OrgStore


# =============================================================================
# Bundled implementation
# =============================================================================
class EntityCollection(Generic[E]):
    """One entity kind held by a StateStore.

    A mutation is only kept in memory once the owner has persisted it, so a
    failed write leaves the collection as it was and the next pass retries.
    """

    def __init__(self, kind: str, entity_type: type[E], owner: StateStore) -> None:
        self.kind = kind
        self._entity_type = entity_type
        self._owner = owner
        self._items: dict[tuple[int, str], E] = {}

    async def get(self, org_id: int, uid: str) -> E | None:
        return self._items.get((org_id, uid))

    async def list(self, org_id: int | None = None) -> list[E]:
        return [e for e in self._items.values() if org_id is None or e.org_id == org_id]

    async def list_provisioned(self) -> list[E]:
        return [e for e in self._items.values() if e.provisioned]

    async def create(self, entity: E) -> E:
        if not entity.uid:
            raise StoreError(f"{self.kind}: cannot create entity without uid")
        if entity.key in self._items:
            raise StoreError(f"{self.kind}: {entity.uid!r} already exists in org {entity.org_id}")
        entity.version = 1
        await self._commit(entity.key, entity)
        return entity

    async def update(self, entity: E) -> E:
        current = self._items.get(entity.key)
        if current is None:
            raise StoreError(f"{self.kind}: {entity.uid!r} not found in org {entity.org_id}")
        entity.version = current.version + 1
        await self._commit(entity.key, entity)
        return entity

    async def delete(self, org_id: int, uid: str) -> bool:
        if (org_id, uid) not in self._items:
            return False
        await self._commit((org_id, uid), None)
        return True

    async def _commit(self, key: tuple[int, str], entity: E | None) -> None:
        """Apply one change and persist it, restoring the old entry on failure."""
        previous = self._items.get(key)
        if entity is None:
            self._items.pop(key, None)
        else:
            self._items[key] = entity
        try:
            await self._owner.flush()
        except StoreError:
            if previous is None:
                self._items.pop(key, None)
            else:
                self._items[key] = previous
            raise

    def dump(self) -> list[dict[str, Any]]:
        return [asdict(e) for e in self._items.values()]

    def load(self, rows: list[dict[str, Any]]) -> None:
        known = {f.name for f in fields(self._entity_type)}
        self._items = {}
        for row in rows:
            entity = self._entity_type(**{k: v for k, v in row.items() if k in known})
            self._items[entity.key] = entity


class StaticOrgStore:
    """Organizations known to the store. The default org always exists."""

    def __init__(self, orgs: list[Org] | None = None) -> None:
        self._orgs = {DEFAULT_ORG_ID: Org(DEFAULT_ORG_ID, DEFAULT_ORG_NAME)}
        for org in orgs or []:
            self._orgs[org.id] = org

    async def get(self, org_id: int) -> Org | None:
        return self._orgs.get(org_id)

    async def get_by_name(self, name: str) -> Org | None:
        for org in self._orgs.values():
            if org.name == name:
                return org
        return None

    def all(self) -> list[Org]:
        return list(self._orgs.values())


class StateStore:
    """In-memory store, persisted to a JSON state file when one is given."""

    def __init__(self, state_file: Path | None = None, orgs: list[Org] | None = None) -> None:
        self._state_file = state_file
        self._write_lock = asyncio.Lock()
        self.datasources = EntityCollection("datasources", DataSource, self)
        self.correlations = EntityCollection("correlations", Correlation, self)
        self.plugin_settings = EntityCollection("plugin_settings", PluginSetting, self)
        self.notifiers = EntityCollection("notifiers", Notifier, self)
        self.alert_rules = EntityCollection("alert_rules", AlertRule, self)
        self.dashboards = EntityCollection("dashboards", Dashboard, self)
        self.folders = EntityCollection("folders", Folder, self)
        self.orgs = StaticOrgStore(orgs)

        if state_file is not None and state_file.exists():
            self._load(state_file)

    @property
    def collections(self) -> list[EntityCollection[Any]]:
        return [
            self.datasources,
            self.correlations,
            self.plugin_settings,
            self.notifiers,
            self.alert_rules,
            self.dashboards,
            self.folders,
        ]

    async def flush(self) -> None:
        """Persist the whole state atomically.

        The snapshot is taken on the event loop; encoding and the file write
        run in a worker thread. Writes are serialized so an older snapshot
        never replaces a newer one.
        """
        if self._state_file is None:
            return
        async with self._write_lock:
            state: dict[str, Any] = {
                "orgs": [asdict(o) for o in self.orgs.all()],
            }
            for collection in self.collections:
                state[collection.kind] = collection.dump()
            await asyncio.to_thread(self._write_state, self._state_file, state)

    @staticmethod
    def _write_state(state_file: Path, state: dict[str, Any]) -> None:
        tmp_name: str | None = None
        try:
            fd, tmp_name = tempfile.mkstemp(
                dir=state_file.parent, prefix=".state-", suffix=".json"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(state, f, indent=2, sort_keys=True)
            os.replace(tmp_name, state_file)
            tmp_name = None
        except (OSError, TypeError, ValueError) as e:
            raise StoreError(f"Failed to write state file {state_file}: {e}") from e
        finally:
            if tmp_name is not None:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_name)

    def _load(self, state_file: Path) -> None:
        try:
            state = json.loads(state_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(f"Failed to read state file {state_file}: {e}") from e

        self.orgs = StaticOrgStore([Org(**o) for o in state.get("orgs", [])])
        for collection in self.collections:
            collection.load(state.get(collection.kind, []))

        logger.info(
            "Loaded state file",
            extra={
                "state_file": str(state_file),
                "entities": sum(len(state.get(c.kind, [])) for c in self.collections),
            },
        )
