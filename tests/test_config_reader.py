"""Tests for provisioning file loading."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from provisioning.config_reader import (
    ConfigFileError,
    ProvisioningFilesError,
    interpolate_env,
    load_config_file,
    read_config_dir,
)
from provisioning.models import DatasourcesFile


class TestInterpolateEnv:
    """Tests for environment variable expansion."""

    def test_braced_and_bare_names(self) -> None:
        with patch.dict(os.environ, {"DB_HOST": "db", "DB_PORT": "5432"}, clear=True):
            assert interpolate_env("${DB_HOST}:$DB_PORT") == "db:5432"

    def test_unset_variable_is_empty(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            assert interpolate_env("x${MISSING}y") == "xy"

    def test_escaped_dollar(self) -> None:
        with patch.dict(os.environ, {"PASS": "secret"}, clear=True):
            assert interpolate_env("$$PASS") == "$PASS"

    def test_nested_structures(self) -> None:
        """Strings inside lists and mappings are expanded, other values kept."""
        with patch.dict(os.environ, {"TOKEN": "abc"}, clear=True):
            result = interpolate_env({"a": ["$TOKEN", 3], "b": {"c": "${TOKEN}"}, "d": True})
        assert result == {"a": ["abc", 3], "b": {"c": "abc"}, "d": True}


class TestLoadConfigFile:
    """Tests for single file loading."""

    def test_valid_file(self, tmp_path: Path) -> None:
        path = tmp_path / "ds.yaml"
        path.write_text("apiVersion: 1\ndatasources:\n  - name: prom\n    type: prometheus\n")

        content = load_config_file(path, DatasourcesFile)

        assert content is not None
        assert content.datasources[0].name == "prom"

    def test_empty_file_returns_none(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config_file(path, DatasourcesFile) is None

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("datasources: [unclosed\n")

        with pytest.raises(ConfigFileError) as exc_info:
            load_config_file(path, DatasourcesFile)

        assert exc_info.value.path == path
        assert "invalid YAML" in exc_info.value.reason

    def test_non_mapping_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ConfigFileError) as exc_info:
            load_config_file(path, DatasourcesFile)

        assert "YAML mapping" in exc_info.value.reason

    def test_validation_error_names_field(self, tmp_path: Path) -> None:
        """Pydantic errors are reported with their location."""
        path = tmp_path / "ds.yaml"
        path.write_text("datasources:\n  - name: prom\n")

        with pytest.raises(ConfigFileError) as exc_info:
            load_config_file(path, DatasourcesFile)

        assert "validation failed" in exc_info.value.reason
        assert "datasources.0.type" in exc_info.value.reason
        assert str(path) in str(exc_info.value)

    def test_oversized_file_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "big.yaml"
        path.write_text("x")

        with patch("provisioning.config_reader.MAX_CONFIG_FILE_SIZE_BYTES", 0):
            with pytest.raises(ConfigFileError) as exc_info:
                load_config_file(path, DatasourcesFile)

        assert "maximum size" in exc_info.value.reason


class TestReadConfigDir:
    """Tests for directory reading."""

    def test_missing_directory_is_empty(self, tmp_path: Path) -> None:
        result = read_config_dir(tmp_path / "missing", DatasourcesFile)
        assert result.files == []
        assert result.errors == []

    def test_file_instead_of_directory(self, tmp_path: Path) -> None:
        path = tmp_path / "datasources"
        path.write_text("")

        result = read_config_dir(path, DatasourcesFile)

        assert len(result.errors) == 1
        assert "not a directory" in result.errors[0].reason

    def test_only_yaml_files_in_name_order(self, tmp_path: Path) -> None:
        body = "datasources:\n  - name: {name}\n    type: loki\n"
        (tmp_path / "b.yml").write_text(body.format(name="b"))
        (tmp_path / "a.yaml").write_text(body.format(name="a"))
        (tmp_path / "notes.txt").write_text("not provisioning")

        result = read_config_dir(tmp_path, DatasourcesFile)

        assert [f.path.name for f in result.files] == ["a.yaml", "b.yml"]

    def test_errors_do_not_hide_other_files(self, tmp_path: Path) -> None:
        (tmp_path / "bad.yaml").write_text("datasources: [\n")
        (tmp_path / "good.yaml").write_text("datasources:\n  - name: ok\n    type: loki\n")

        result = read_config_dir(tmp_path, DatasourcesFile)

        assert [f.path.name for f in result.files] == ["good.yaml"]
        assert [e.path.name for e in result.errors] == ["bad.yaml"]


class TestProvisioningFilesError:
    """Tests for the aggregate file error."""

    def test_message_lists_every_file(self, tmp_path: Path) -> None:
        errors = [
            ConfigFileError(tmp_path / "a.yaml", "broken"),
            ConfigFileError(tmp_path / "b.yaml", "also broken"),
        ]
        error = ProvisioningFilesError("notifiers", errors)

        assert str(error).startswith("2 invalid notifiers file(s)")
        assert "a.yaml: broken" in str(error)
        assert error.paths == [tmp_path / "a.yaml", tmp_path / "b.yaml"]
        assert error.summary is None
