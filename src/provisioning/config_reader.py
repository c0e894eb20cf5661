"""Provisioning file loading with validation.

Every resource kind keeps its files in one directory. Files are read in name
order, size-checked, decoded as YAML, expanded for environment variables and
validated against the kind's pydantic model. Problems are reported per file so
that one broken file never hides the others.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Generic, TypeVar

import yaml
from pydantic import BaseModel, ValidationError

from .config import MAX_CONFIG_FILE_SIZE_BYTES
from .provenance import ChangeSummary

logger = logging.getLogger(__name__)

CONFIG_FILE_SUFFIXES = (".yaml", ".yml")

# $NAME or ${NAME}; $$ escapes a literal dollar
_ENV_PATTERN = re.compile(r"\$\$|\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)")

M = TypeVar("M", bound=BaseModel)


class ConfigFileError(Exception):
    """Raised when one provisioning file is unreadable or invalid."""

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class ConfigDirError(ConfigFileError):
    """Raised when a provisioning directory itself cannot be listed.

    No file of the directory could be read, so nothing is known about which
    entities the directory still declares.
    """

    pass


class ProvisioningFilesError(Exception):
    """Raised when one or more files of a provisioning call failed.

    Carries every per-file error and, for best-effort calls, the summary of the
    changes that were still applied.
    """

    def __init__(
        self,
        kind: str,
        errors: list[ConfigFileError],
        summary: ChangeSummary | None = None,
    ) -> None:
        details = "; ".join(str(e) for e in errors)
        super().__init__(f"{len(errors)} invalid {kind} file(s): {details}")
        self.kind = kind
        self.errors = errors
        self.summary = summary

    @property
    def paths(self) -> list[Path]:
        return [e.path for e in self.errors]


@dataclass
class ConfigFile(Generic[M]):
    path: Path
    content: M


@dataclass
class ReadResult(Generic[M]):
    files: list[ConfigFile[M]] = field(default_factory=list)
    errors: list[ConfigFileError] = field(default_factory=list)


def interpolate_env(value: Any) -> Any:
    """Replace $NAME and ${NAME} in every string of a decoded document.

    Unset variables expand to an empty string.
    """
    if isinstance(value, str):

        def replace(match: re.Match[str]) -> str:
            if match.group(0) == "$$":
                return "$"
            name = match.group(1) or match.group(2)
            return os.environ.get(name, "")

        return _ENV_PATTERN.sub(replace, value)
    if isinstance(value, dict):
        return {k: interpolate_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [interpolate_env(v) for v in value]
    return value


def load_config_file(path: Path, model: type[M]) -> M | None:
    """Load and validate one provisioning file.

    Returns:
        The validated model, or None for an empty file.

    Raises:
        ConfigFileError: If the file cannot be read or fails validation.
    """
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ConfigFileError(path, f"cannot stat file: {e}") from e

    if file_size > MAX_CONFIG_FILE_SIZE_BYTES:
        raise ConfigFileError(path, f"file exceeds maximum size of {MAX_CONFIG_FILE_SIZE_BYTES} bytes")

    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigFileError(path, f"cannot read file: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigFileError(path, f"invalid YAML: {e}") from e

    if raw_data is None:
        return None

    if not isinstance(raw_data, dict):
        raise ConfigFileError(path, "file must contain a YAML mapping")

    try:
        return model.model_validate(interpolate_env(raw_data))
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"{loc}: {error['msg']}")
        raise ConfigFileError(path, "validation failed: " + "; ".join(errors)) from e


def read_config_dir(path: Path, model: type[M]) -> ReadResult[M]:
    """Read every provisioning file in a directory.

    A missing or empty directory is a valid "nothing configured" input.
    """
    result: ReadResult[M] = ReadResult()

    if not path.exists():
        logger.debug("Provisioning directory does not exist", extra={"path": str(path)})
        return result

    if not path.is_dir():
        result.errors.append(ConfigDirError(path, "not a directory"))
        return result

    try:
        entries = sorted(path.iterdir())
    except OSError as e:
        result.errors.append(ConfigDirError(path, f"cannot list directory: {e}"))
        return result

    for entry in entries:
        if entry.suffix.lower() not in CONFIG_FILE_SUFFIXES or not entry.is_file():
            continue
        try:
            content = load_config_file(entry, model)
        except ConfigFileError as e:
            logger.warning("Invalid provisioning file", extra={"path": str(entry), "error": e.reason})
            result.errors.append(e)
            continue
        if content is not None:
            result.files.append(ConfigFile(entry, content))

    return result
