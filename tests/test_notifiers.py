"""Tests for alert notification channel provisioning."""

from __future__ import annotations

from pathlib import Path

import pytest
from store_mock import RecordingStore, write_yaml

from provisioning import notifiers
from provisioning.config import AtomicityPolicy
from provisioning.config_reader import ProvisioningFilesError
from provisioning.services import ProvisionerDeps
from provisioning.store import Notifier


def slack(name: str, **extra: object) -> dict[str, object]:
    return {"name": name, "type": "slack", "settings": {"url": "https://hooks.example/x"}, **extra}


@pytest.fixture
def store() -> RecordingStore:
    return RecordingStore()


def deps_for(store: RecordingStore, policy: AtomicityPolicy = AtomicityPolicy.ALL_OR_NOTHING) -> ProvisionerDeps:
    return ProvisionerDeps(store=store, policy=policy)


def write_valid_and_malformed(config_dir: Path) -> tuple[Path, Path]:
    valid = write_yaml(config_dir, "a-valid.yaml", {"notifiers": [slack("ops", uid="ops")]})
    malformed = config_dir / "b-malformed.yaml"
    malformed.write_text("notifiers:\n  - name: broken\n    type: [slack\n")
    return valid, malformed


class TestAtomicity:
    """One valid file next to one malformed file, under both policies."""

    @pytest.mark.asyncio
    async def test_all_or_nothing_writes_nothing(self, store: RecordingStore, tmp_path: Path) -> None:
        _, malformed = write_valid_and_malformed(tmp_path)

        with pytest.raises(ProvisioningFilesError) as exc_info:
            await notifiers.provision(tmp_path, deps_for(store))

        assert exc_info.value.paths == [malformed]
        assert str(malformed) in str(exc_info.value)
        assert store.write_count == 0

    @pytest.mark.asyncio
    async def test_best_effort_applies_valid_file(self, store: RecordingStore, tmp_path: Path) -> None:
        _, malformed = write_valid_and_malformed(tmp_path)

        with pytest.raises(ProvisioningFilesError) as exc_info:
            await notifiers.provision(tmp_path, deps_for(store, AtomicityPolicy.BEST_EFFORT))

        assert exc_info.value.paths == [malformed]
        assert await store.notifiers.get(1, "ops") is not None
        assert store.notifiers.count("create") == 1


class TestValidation:
    """Tests for notifier-specific checks."""

    @pytest.mark.asyncio
    async def test_unknown_type(self, store: RecordingStore, tmp_path: Path) -> None:
        write_yaml(tmp_path, "a.yaml", {"notifiers": [{"name": "x", "type": "carrier-pigeon"}]})

        with pytest.raises(ProvisioningFilesError) as exc_info:
            await notifiers.provision(tmp_path, deps_for(store))

        assert "unsupported notification type 'carrier-pigeon'" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_missing_required_setting(self, store: RecordingStore, tmp_path: Path) -> None:
        write_yaml(tmp_path, "a.yaml", {"notifiers": [{"name": "mail", "type": "email"}]})

        with pytest.raises(ProvisioningFilesError) as exc_info:
            await notifiers.provision(tmp_path, deps_for(store))

        assert "missing required settings ['addresses']" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_secure_setting_satisfies_requirement(self, store: RecordingStore, tmp_path: Path) -> None:
        write_yaml(
            tmp_path,
            "a.yaml",
            {"notifiers": [{"name": "pd", "type": "pagerduty", "secure_settings": {"integrationKey": "k"}}]},
        )

        summary = await notifiers.provision(tmp_path, deps_for(store))

        assert summary.create_count == 1

    @pytest.mark.asyncio
    async def test_reminder_requires_frequency(self, store: RecordingStore, tmp_path: Path) -> None:
        write_yaml(tmp_path, "a.yaml", {"notifiers": [slack("ops", send_reminder=True)]})

        with pytest.raises(ProvisioningFilesError) as exc_info:
            await notifiers.provision(tmp_path, deps_for(store))

        assert "frequency is required" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_reminder_frequency_parsed(self, store: RecordingStore, tmp_path: Path) -> None:
        write_yaml(
            tmp_path, "a.yaml", {"notifiers": [slack("ops", uid="ops", send_reminder=True, frequency="1h30m")]}
        )

        await notifiers.provision(tmp_path, deps_for(store))

        stored = await store.notifiers.get(1, "ops")
        assert stored is not None
        assert stored.frequency_seconds == 5400

    @pytest.mark.asyncio
    async def test_two_defaults_in_one_file(self, store: RecordingStore, tmp_path: Path) -> None:
        write_yaml(
            tmp_path,
            "a.yaml",
            {"notifiers": [slack("a", is_default=True), slack("b", is_default=True)]},
        )

        with pytest.raises(ProvisioningFilesError) as exc_info:
            await notifiers.provision(tmp_path, deps_for(store))

        assert "only one alert notification per organization" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_rejected_file_does_not_hold_default(self, store: RecordingStore, tmp_path: Path) -> None:
        store.notifiers.seed(Notifier(uid="manual", name="manual", type="slack"))
        rejected = write_yaml(tmp_path, "a.yaml", {"notifiers": [slack("a", uid="manual", is_default=True)]})
        write_yaml(tmp_path, "b.yaml", {"notifiers": [slack("b", uid="b", is_default=True)]})

        with pytest.raises(ProvisioningFilesError) as exc_info:
            await notifiers.provision(tmp_path, deps_for(store, AtomicityPolicy.BEST_EFFORT))

        assert exc_info.value.paths == [rejected]
        stored = await store.notifiers.get(1, "b")
        assert stored is not None
        assert stored.is_default

    @pytest.mark.asyncio
    async def test_plain_copy_of_secure_setting_dropped(self, store: RecordingStore, tmp_path: Path) -> None:
        write_yaml(
            tmp_path,
            "a.yaml",
            {
                "notifiers": [
                    {
                        "name": "ops",
                        "uid": "ops",
                        "type": "slack",
                        "settings": {"url": "plain", "channel": "#ops"},
                        "secure_settings": {"url": "https://hooks.example/secret"},
                    }
                ]
            },
        )

        await notifiers.provision(tmp_path, deps_for(store))

        stored = await store.notifiers.get(1, "ops")
        assert stored is not None
        assert stored.settings == {"channel": "#ops"}
        assert stored.secure_settings == {"url": "https://hooks.example/secret"}


class TestDeletes:
    @pytest.mark.asyncio
    async def test_delete_by_uid_and_name(self, store: RecordingStore, tmp_path: Path) -> None:
        store.notifiers.seed(Notifier(uid="n1", name="first", type="slack"))
        store.notifiers.seed(Notifier(uid="n2", name="second", type="slack"))
        write_yaml(tmp_path, "a.yaml", {"delete_notifiers": [{"uid": "n1"}, {"name": "second"}]})

        summary = await notifiers.provision(tmp_path, deps_for(store))

        assert summary.delete_count == 2
        assert await store.notifiers.list() == []

    @pytest.mark.asyncio
    async def test_delete_entry_needs_identity(self, store: RecordingStore, tmp_path: Path) -> None:
        write_yaml(tmp_path, "a.yaml", {"delete_notifiers": [{"org_id": 1}]})

        with pytest.raises(ProvisioningFilesError) as exc_info:
            await notifiers.provision(tmp_path, deps_for(store))

        assert "need a name or a uid" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_removed_notifier_is_orphan(self, store: RecordingStore, tmp_path: Path) -> None:
        write_yaml(tmp_path, "a.yaml", {"notifiers": [slack("a", uid="a"), slack("b", uid="b")]})
        await notifiers.provision(tmp_path, deps_for(store))
        write_yaml(tmp_path, "a.yaml", {"notifiers": [slack("a", uid="a")]})

        summary = await notifiers.provision(tmp_path, deps_for(store))

        assert summary.delete_count == 1
        assert [n.uid for n in await store.notifiers.list()] == ["a"]
