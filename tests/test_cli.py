"""Tests for the provctl command line."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
from click.testing import CliRunner
from store_mock import write_yaml

from provisioning.cli import cli


@pytest.fixture(autouse=True)
def restore_root_logging():
    """provctl installs a stdout handler bound to the runner's stream."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def write_datasource(provisioning: Path) -> None:
    write_yaml(
        provisioning / "datasources",
        "ds.yaml",
        {"datasources": [{"name": "prom", "uid": "prom", "type": "prometheus"}]},
    )


class TestValidate:
    """Tests for provctl validate."""

    def test_valid_files(self, tmp_path: Path) -> None:
        write_datasource(tmp_path)

        result = CliRunner().invoke(cli, ["validate", "datasources", "--path", str(tmp_path)])

        assert result.exit_code == 0
        assert "datasources: 1 valid file(s), 0 invalid" in result.output

    def test_invalid_file_fails(self, tmp_path: Path) -> None:
        (tmp_path / "notifiers").mkdir()
        (tmp_path / "notifiers" / "bad.yaml").write_text("notifiers: [\n")

        result = CliRunner().invoke(cli, ["validate", "all", "--path", str(tmp_path)])

        assert result.exit_code == 1
        assert "1 invalid provisioning file(s)" in result.output


class TestProvision:
    """Tests for provctl provision."""

    def test_provision_writes_state_file(self, tmp_path: Path) -> None:
        provisioning = tmp_path / "provisioning"
        write_datasource(provisioning)
        state_file = tmp_path / "state.json"

        result = CliRunner().invoke(
            cli,
            ["provision", "datasources", "--path", str(provisioning), "--state-file", str(state_file)],
        )

        assert result.exit_code == 0, result.output
        assert "datasources: 1 created" in result.output
        state = json.loads(state_file.read_text())
        assert [d["uid"] for d in state["datasources"]] == ["prom"]

    def test_missing_provisioning_path(self, tmp_path: Path) -> None:
        result = CliRunner().invoke(cli, ["provision", "datasources", "--path", str(tmp_path / "missing")])

        assert result.exit_code == 1
        assert "Provisioning path does not exist" in result.output

    def test_stage_error_reported(self, tmp_path: Path) -> None:
        write_yaml(tmp_path / "plugins", "apps.yaml", {"apps": [{"type": "not-installed"}]})

        result = CliRunner().invoke(cli, ["provision", "plugins", "--path", str(tmp_path)])

        assert result.exit_code == 1
        assert "Plugin provisioning error" in result.output
