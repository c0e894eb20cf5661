"""Tests for the bundled state store."""

from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from provisioning.provenance import Provenance
from provisioning.store import (
    DEFAULT_ORG_ID,
    DataSource,
    Org,
    StateStore,
    StoreError,
)


def make_datasource(uid: str = "ds1", **overrides: object) -> DataSource:
    fields: dict[str, object] = {
        "uid": uid,
        "name": f"source-{uid}",
        "type": "prometheus",
        "provenance": Provenance.FILE,
        "source_path": "/p/datasources/a.yaml",
    }
    fields.update(overrides)
    return DataSource(**fields)  # type: ignore[arg-type]


class TestEntity:
    """Tests for entity equality and provenance."""

    def test_equality_ignores_version(self) -> None:
        a = make_datasource()
        b = make_datasource()
        b.version = 7
        assert a == b

    def test_equality_ignores_ciphertext(self) -> None:
        """Encrypted values differ between passes; the checksum decides."""
        a = make_datasource(secure_json_data={"password": "c1"}, secure_checksum="x")
        b = make_datasource(secure_json_data={"password": "c2"}, secure_checksum="x")
        assert a == b

    def test_provenance_coerced_from_string(self) -> None:
        ds = make_datasource(provenance="file")
        assert ds.provenance is Provenance.FILE
        assert ds.provisioned

    def test_user_created_not_provisioned(self) -> None:
        assert not make_datasource(provenance=Provenance.NONE).provisioned


class TestEntityCollection:
    """Tests for single-entity operations."""

    @pytest.mark.asyncio
    async def test_create_and_get(self) -> None:
        store = StateStore()
        created = await store.datasources.create(make_datasource())

        assert created.version == 1
        assert await store.datasources.get(DEFAULT_ORG_ID, "ds1") == created

    @pytest.mark.asyncio
    async def test_create_duplicate_rejected(self) -> None:
        store = StateStore()
        await store.datasources.create(make_datasource())

        with pytest.raises(StoreError):
            await store.datasources.create(make_datasource())

    @pytest.mark.asyncio
    async def test_create_without_uid_rejected(self) -> None:
        with pytest.raises(StoreError):
            await StateStore().datasources.create(make_datasource(uid=""))

    @pytest.mark.asyncio
    async def test_update_bumps_version(self) -> None:
        store = StateStore()
        await store.datasources.create(make_datasource())

        updated = await store.datasources.update(make_datasource(url="http://prom:9090"))

        assert updated.version == 2

    @pytest.mark.asyncio
    async def test_update_missing_rejected(self) -> None:
        with pytest.raises(StoreError):
            await StateStore().datasources.update(make_datasource())

    @pytest.mark.asyncio
    async def test_delete(self) -> None:
        store = StateStore()
        await store.datasources.create(make_datasource())

        assert await store.datasources.delete(DEFAULT_ORG_ID, "ds1") is True
        assert await store.datasources.delete(DEFAULT_ORG_ID, "ds1") is False

    @pytest.mark.asyncio
    async def test_list_provisioned_filters_by_provenance(self) -> None:
        store = StateStore()
        await store.datasources.create(make_datasource("a"))
        await store.datasources.create(make_datasource("b", provenance=Provenance.NONE))

        provisioned = await store.datasources.list_provisioned()

        assert [d.uid for d in provisioned] == ["a"]

    @pytest.mark.asyncio
    async def test_list_by_org(self) -> None:
        store = StateStore(orgs=[Org(2, "Second")])
        await store.datasources.create(make_datasource("a"))
        await store.datasources.create(make_datasource("b", org_id=2))

        assert [d.uid for d in await store.datasources.list(2)] == ["b"]
        assert len(await store.datasources.list()) == 2


class TestOrgs:
    @pytest.mark.asyncio
    async def test_default_org_always_exists(self) -> None:
        store = StateStore()
        org = await store.orgs.get(DEFAULT_ORG_ID)
        assert org is not None
        assert await store.orgs.get_by_name(org.name) == org

    @pytest.mark.asyncio
    async def test_unknown_org(self) -> None:
        store = StateStore()
        assert await store.orgs.get(42) is None
        assert await store.orgs.get_by_name("Nope") is None


class TestPersistence:
    """Tests for the JSON state file."""

    @pytest.mark.asyncio
    async def test_state_survives_reload(self, tmp_path: Path) -> None:
        state_file = tmp_path / "state.json"
        store = StateStore(state_file, orgs=[Org(2, "Second")])
        await store.datasources.create(make_datasource(json_data={"timeInterval": "15s"}))

        reloaded = StateStore(state_file)
        ds = await reloaded.datasources.get(DEFAULT_ORG_ID, "ds1")

        assert ds is not None
        assert ds.json_data == {"timeInterval": "15s"}
        assert ds.provenance is Provenance.FILE
        assert ds.version == 1
        assert await reloaded.orgs.get(2) == Org(2, "Second")

    @pytest.mark.asyncio
    async def test_no_temp_files_left_behind(self, tmp_path: Path) -> None:
        state_file = tmp_path / "state.json"
        store = StateStore(state_file)
        await store.datasources.create(make_datasource())
        await store.datasources.delete(DEFAULT_ORG_ID, "ds1")

        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]
        assert json.loads(state_file.read_text())["datasources"] == []

    def test_corrupt_state_file(self, tmp_path: Path) -> None:
        state_file = tmp_path / "state.json"
        state_file.write_text("{not json")

        with pytest.raises(StoreError):
            StateStore(state_file)

    @pytest.mark.asyncio
    async def test_failed_write_is_retried(self, tmp_path: Path) -> None:
        """A create whose flush fails is not kept, so the next attempt writes it."""
        state_dir = tmp_path / "state"
        state_dir.mkdir()
        state_file = state_dir / "state.json"
        store = StateStore(state_file)
        state_dir.rmdir()

        with pytest.raises(StoreError):
            await store.datasources.create(make_datasource())
        assert await store.datasources.get(DEFAULT_ORG_ID, "ds1") is None

        state_dir.mkdir()
        await store.datasources.create(make_datasource())

        assert [d["uid"] for d in json.loads(state_file.read_text())["datasources"]] == ["ds1"]

    @pytest.mark.asyncio
    async def test_failed_update_keeps_previous(self, tmp_path: Path) -> None:
        state_file = tmp_path / "state.json"
        store = StateStore(state_file)
        await store.datasources.create(make_datasource())

        with pytest.raises(StoreError):
            await store.datasources.update(make_datasource(json_data={"bad": object()}))

        stored = await store.datasources.get(DEFAULT_ORG_ID, "ds1")
        assert stored is not None
        assert stored.json_data == {}
        assert stored.version == 1

    @pytest.mark.asyncio
    async def test_failed_delete_keeps_entity(self, tmp_path: Path) -> None:
        state_dir = tmp_path / "state"
        state_dir.mkdir()
        store = StateStore(state_dir / "state.json")
        await store.datasources.create(make_datasource())
        (state_dir / "state.json").unlink()
        state_dir.rmdir()

        with pytest.raises(StoreError):
            await store.datasources.delete(DEFAULT_ORG_ID, "ds1")

        assert await store.datasources.get(DEFAULT_ORG_ID, "ds1") is not None

    @pytest.mark.asyncio
    async def test_temp_file_removed_when_encoding_fails(self, tmp_path: Path) -> None:
        state_file = tmp_path / "state.json"
        store = StateStore(state_file)

        with pytest.raises(StoreError):
            await store.datasources.create(make_datasource(json_data={"bad": object()}))

        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_state_written_off_event_loop(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        writer_threads: list[int] = []
        write_state = StateStore._write_state

        def recording_write(state_file: Path, state: dict[str, object]) -> None:
            writer_threads.append(threading.get_ident())
            write_state(state_file, state)

        monkeypatch.setattr(StateStore, "_write_state", staticmethod(recording_write))
        store = StateStore(tmp_path / "state.json")

        await store.datasources.create(make_datasource())

        assert len(writer_threads) == 1
        assert writer_threads[0] != threading.get_ident()
