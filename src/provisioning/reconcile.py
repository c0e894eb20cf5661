"""Shared reconciliation pipeline for the stateless resource provisioners.

Each provisioner turns its files into FilePlans (what every file declares).
reconcile_directory then validates the plans against each other and the store,
applies the atomicity policy and converges the store:

1. explicit deletes requested by the files
2. create missing, update changed, leave equal entities alone
3. delete provisioned entities no file declares any more (orphans)

Orphans are found by provenance: only entities marked as file-provisioned are
candidates, and entities declared by a file that failed this pass are kept.
When the directory itself cannot be listed, no orphan is deleted at all.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Generic, TypeVar

from pydantic import BaseModel

from .config import AtomicityPolicy
from .config_reader import (
    ConfigDirError,
    ConfigFile,
    ConfigFileError,
    ProvisioningFilesError,
    read_config_dir,
)
from .provenance import (
    ChangeSummary,
    ChangeType,
    Provenance,
    ReconcileRecord,
    log_entity_change,
    log_reconcile_record,
)
from .services import ProvisionerDeps
from .store import Entity, EntityStore, Folder, OrgStore, StoreError

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Entity)
M = TypeVar("M", bound=BaseModel)


@dataclass
class FilePlan(Generic[E]):
    """Everything one provisioning file asks for."""

    path: Path
    entities: list[E] = field(default_factory=list)
    # Keys the file explicitly asks to delete
    deletes: list[tuple[int, str]] = field(default_factory=list)
    # Folders that must exist before the entities are written
    folders: list[Folder] = field(default_factory=list)


FilePlanner = Callable[[ConfigFile[M]], Awaitable[FilePlan[E]]]
PlanCheck = Callable[[FilePlan[E]], Awaitable[None]]


def derive_uid(kind: str, org_id: int, name: str) -> str:
    """Stable identifier for entities whose file does not declare one."""
    digest = hashlib.sha256(f"{kind}:{org_id}:{name}".encode()).hexdigest()
    return digest[:16]


def secret_checksum(values: dict[str, str]) -> str:
    """Checksum of plaintext secrets, used to detect changes without decrypting."""
    if not values:
        return ""
    return hashlib.sha256(json.dumps(values, sort_keys=True).encode()).hexdigest()


async def resolve_org(orgs: OrgStore, org_id: int, org_name: str, path: Path) -> int:
    """Resolve an org reference from a file; the org must exist."""
    if org_name:
        org = await orgs.get_by_name(org_name)
        if org is None:
            raise ConfigFileError(path, f"organization {org_name!r} not found")
        return org.id
    if await orgs.get(org_id) is None:
        raise ConfigFileError(path, f"organization {org_id} not found")
    return org_id


async def find_folder_by_title(folders: EntityStore[Folder], org_id: int, title: str) -> Folder | None:
    for folder in await folders.list(org_id):
        if folder.title == title:
            return folder
    return None


async def get_or_create_folder(
    folders: EntityStore[Folder],
    org_id: int,
    title: str,
    *,
    uid: str = "",
    source_path: str = "",
) -> Folder:
    """Return the folder with this title, creating it when missing."""
    if uid:
        existing = await folders.get(org_id, uid)
    else:
        existing = await find_folder_by_title(folders, org_id, title)
    if existing is not None:
        return existing

    folder = Folder(
        uid=uid or derive_uid("folder", org_id, title),
        org_id=org_id,
        title=title,
        provenance=Provenance.FILE,
        source_path=source_path,
    )
    await folders.create(folder)
    logger.info("Created folder", extra={"org_id": org_id, "uid": folder.uid, "title": title})
    return folder


async def _check_file_plan(
    kind: str,
    collection: EntityStore[E],
    plan: FilePlan[E],
    declared: dict[tuple[int, str], Path],
) -> None:
    local: set[tuple[int, str]] = set()
    for entity in plan.entities:
        if entity.key in local:
            raise ConfigFileError(plan.path, f"{kind} uid {entity.uid!r} declared twice")
        if entity.key in declared:
            raise ConfigFileError(
                plan.path,
                f"{kind} uid {entity.uid!r} in org {entity.org_id} already declared in "
                f"{declared[entity.key]}",
            )
        local.add(entity.key)

        existing = await collection.get(*entity.key)
        if existing is not None and not existing.provisioned:
            raise ConfigFileError(
                plan.path,
                f"{kind} uid {entity.uid!r} in org {entity.org_id} belongs to an entity "
                "that was not created by provisioning",
            )


async def upsert_entity(collection: EntityStore[E], entity: E) -> ChangeType:
    """Create the entity, update it if it differs, or leave it alone."""
    existing = await collection.get(*entity.key)
    if existing is None:
        await collection.create(entity)
        return ChangeType.CREATE
    if existing == entity:
        return ChangeType.UNCHANGED
    await collection.update(entity)
    return ChangeType.UPDATE


async def apply_plans(
    kind: str,
    collection: EntityStore[E],
    plans: list[FilePlan[E]],
    errors: list[ConfigFileError],
    policy: AtomicityPolicy,
    folders: EntityStore[Folder] | None = None,
    check_plan: PlanCheck[E] | None = None,
) -> ChangeSummary:
    """Validate file plans, apply the atomicity policy and converge the store.

    ``check_plan`` runs for each plan that passed the generic checks, in file
    order, and rejects the file by raising ConfigFileError. Anything it
    records is therefore only recorded for accepted files.

    Raises:
        ProvisioningFilesError: If any file failed. Under ALL_OR_NOTHING this
            happens before the first store write; under BEST_EFFORT after the
            valid files were applied.
        StoreError: If the store rejects a write.
    """
    errors = list(errors)
    accepted: list[FilePlan[E]] = []
    declared: dict[tuple[int, str], Path] = {}

    for plan in plans:
        try:
            await _check_file_plan(kind, collection, plan, declared)
            if check_plan is not None:
                await check_plan(plan)
        except ConfigFileError as e:
            errors.append(e)
            continue
        for entity in plan.entities:
            declared[entity.key] = plan.path
        accepted.append(plan)

    if errors and policy is AtomicityPolicy.ALL_OR_NOTHING:
        raise ProvisioningFilesError(kind, errors)

    summary = ChangeSummary()

    for plan in accepted:
        for key in plan.deletes:
            if key in declared:
                continue
            if await collection.delete(*key):
                summary.record(ChangeType.DELETE)
                log_entity_change(kind, key, ChangeType.DELETE, str(plan.path))

    for plan in accepted:
        if plan.folders and folders is not None:
            for folder in plan.folders:
                await get_or_create_folder(
                    folders, folder.org_id, folder.title, uid=folder.uid, source_path=folder.source_path
                )
        for entity in plan.entities:
            change = await upsert_entity(collection, entity)
            summary.record(change)
            log_entity_change(kind, entity.key, change, entity.source_path)

    if any(isinstance(e, ConfigDirError) for e in errors):
        # Without a listing nothing is known to be orphaned
        logger.error(
            "Skipping orphan deletion, provisioning directory could not be read",
            extra={"kind": kind, "paths": [str(e.path) for e in errors if isinstance(e, ConfigDirError)]},
        )
    else:
        failed_paths = {str(e.path) for e in errors}
        for entity in await collection.list_provisioned():
            if entity.key in declared or entity.source_path in failed_paths:
                continue
            await collection.delete(*entity.key)
            summary.record(ChangeType.DELETE)
            log_entity_change(kind, entity.key, ChangeType.DELETE, entity.source_path)

    if errors:
        raise ProvisioningFilesError(kind, errors, summary)
    return summary


async def reconcile_directory(
    kind: str,
    config_path: Path,
    model: type[M],
    collection: EntityStore[E],
    deps: ProvisionerDeps,
    plan_file: FilePlanner[M, E],
    check_plan: PlanCheck[E] | None = None,
) -> ChangeSummary:
    """Run the full read → plan → apply pipeline for one resource kind."""
    started = time.monotonic()
    record = ReconcileRecord(kind=kind, path=str(config_path), policy=deps.policy.value)

    try:
        read = await asyncio.to_thread(read_config_dir, config_path, model)
        errors = list(read.errors)
        plans: list[FilePlan[E]] = []
        for config_file in read.files:
            try:
                plans.append(await plan_file(config_file))
            except ConfigFileError as e:
                errors.append(e)

        record.summary = await apply_plans(
            kind,
            collection,
            plans,
            errors,
            deps.policy,
            folders=deps.store.folders,
            check_plan=check_plan,
        )
        return record.summary
    except ProvisioningFilesError as e:
        record.error = str(e)
        record.failed_files = [str(p) for p in e.paths]
        if e.summary is not None:
            record.summary = e.summary
        raise
    except StoreError as e:
        record.error = str(e)
        raise
    finally:
        record.duration_seconds = time.monotonic() - started
        log_reconcile_record(record)
