"""Pydantic models for provisioning files with validation.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. One model per file kind, mirroring the keys operators write
"""

from __future__ import annotations

import re
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, Field, field_validator, model_validator

from .config import DEFAULT_DASHBOARD_UPDATE_INTERVAL_SECONDS, MIN_DASHBOARD_UPDATE_INTERVAL_SECONDS

_DURATION_PART = re.compile(r"(\d+)(ms|s|m|h|d|w)")
_DURATION_SECONDS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}


def parse_duration(value: str) -> int:
    """Parse a duration such as "30s", "5m" or "1h30m" into whole seconds.

    A bare integer is read as seconds.

    Raises:
        ValueError: If the value is not a valid duration.
    """
    text = value.strip()
    if text.isdigit():
        return int(text)
    if not text or _DURATION_PART.sub("", text):
        raise ValueError(f"invalid duration {value!r}")
    total = sum(int(n) * _DURATION_SECONDS[unit] for n, unit in _DURATION_PART.findall(text))
    return int(total)


def _default_org(v: int) -> int:
    # orgId 0 means "not set"
    return v or 1


OrgId = Annotated[int, Field(ge=0), AfterValidator(_default_org)]


# =============================================================================
# Base Models
# =============================================================================


class BaseConfig(BaseModel):
    """Common model settings: unknown keys ignored, snake_case also accepted."""

    model_config = {"extra": "ignore", "populate_by_name": True}


# =============================================================================
# Datasources
# =============================================================================


class CorrelationConfig(BaseConfig):
    """A correlation from the enclosing data source to a target data source."""

    target_uid: Annotated[str, Field(min_length=1, alias="targetUID")]
    label: str = ""
    description: str = ""


class DatasourceConfig(BaseConfig):
    name: Annotated[str, Field(min_length=1, max_length=190)]
    type: Annotated[str, Field(min_length=1)]
    uid: Annotated[str, Field(max_length=40)] = ""
    org_id: OrgId = Field(1, alias="orgId")
    access: str = "proxy"
    url: str = ""
    user: str = ""
    database: str = ""
    basic_auth: bool = Field(False, alias="basicAuth")
    basic_auth_user: str = Field("", alias="basicAuthUser")
    with_credentials: bool = Field(False, alias="withCredentials")
    is_default: bool = Field(False, alias="isDefault")
    editable: bool = False
    json_data: dict[str, Any] = Field(default_factory=dict, alias="jsonData")
    secure_json_data: dict[str, str] = Field(default_factory=dict, alias="secureJsonData")
    correlations: list[CorrelationConfig] = Field(default_factory=list)

    @field_validator("access")
    @classmethod
    def validate_access(cls, v: str) -> str:
        v = v or "proxy"
        if v not in {"proxy", "direct"}:
            raise ValueError("access must be 'proxy' or 'direct'")
        return v


class DeleteDatasourceConfig(BaseConfig):
    name: Annotated[str, Field(min_length=1)]
    org_id: OrgId = Field(1, alias="orgId")


class DatasourcesFile(BaseConfig):
    api_version: int = Field(1, alias="apiVersion")
    datasources: list[DatasourceConfig] = Field(default_factory=list)
    delete_datasources: list[DeleteDatasourceConfig] = Field(
        default_factory=list, alias="deleteDatasources"
    )


# =============================================================================
# Plugins
# =============================================================================


class PluginAppConfig(BaseConfig):
    # The plugin id
    type: Annotated[str, Field(min_length=1)]
    org_id: OrgId = 1
    org_name: str = ""
    disabled: bool = False
    json_data: dict[str, Any] = Field(default_factory=dict, alias="jsonData")
    secure_json_data: dict[str, str] = Field(default_factory=dict, alias="secureJsonData")


class PluginsFile(BaseConfig):
    api_version: int = Field(1, alias="apiVersion")
    apps: list[PluginAppConfig] = Field(default_factory=list)


# =============================================================================
# Notifiers
# =============================================================================


class NotifierConfig(BaseConfig):
    name: Annotated[str, Field(min_length=1)]
    type: Annotated[str, Field(min_length=1)]
    uid: Annotated[str, Field(max_length=40)] = ""
    org_id: OrgId = 1
    org_name: str = ""
    is_default: bool = False
    send_reminder: bool = False
    disable_resolve_message: bool = False
    frequency: str = ""
    settings: dict[str, Any] = Field(default_factory=dict)
    secure_settings: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_reminder(self) -> NotifierConfig:
        if self.send_reminder:
            if not self.frequency:
                raise ValueError("frequency is required when send_reminder is enabled")
            parse_duration(self.frequency)
        return self


class DeleteNotifierConfig(BaseConfig):
    name: str = ""
    uid: str = ""
    org_id: OrgId = 1
    org_name: str = ""

    @model_validator(mode="after")
    def validate_identity(self) -> DeleteNotifierConfig:
        if not self.name and not self.uid:
            raise ValueError("delete_notifiers entries need a name or a uid")
        return self


class NotifiersFile(BaseConfig):
    notifiers: list[NotifierConfig] = Field(default_factory=list)
    delete_notifiers: list[DeleteNotifierConfig] = Field(default_factory=list)


# =============================================================================
# Alert rules
# =============================================================================


class AlertQueryConfig(BaseConfig):
    ref_id: Annotated[str, Field(min_length=1, alias="refId")]
    datasource_uid: str = Field("", alias="datasourceUid")
    query_type: str = Field("", alias="queryType")
    relative_time_range: dict[str, int] = Field(default_factory=dict, alias="relativeTimeRange")
    model: dict[str, Any] = Field(default_factory=dict)


class AlertRuleConfig(BaseConfig):
    uid: Annotated[str, Field(min_length=1, max_length=40)]
    title: Annotated[str, Field(min_length=1, max_length=190)]
    condition: Annotated[str, Field(min_length=1)]
    data: Annotated[list[AlertQueryConfig], Field(min_length=1)]
    for_: str = Field("0s", alias="for")
    no_data_state: str = Field("NoData", alias="noDataState")
    exec_err_state: str = Field("Alerting", alias="execErrState")
    annotations: dict[str, str] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)
    is_paused: bool = Field(False, alias="isPaused")

    @field_validator("no_data_state")
    @classmethod
    def validate_no_data_state(cls, v: str) -> str:
        if v not in {"Alerting", "NoData", "OK"}:
            raise ValueError("noDataState must be one of Alerting, NoData, OK")
        return v

    @field_validator("exec_err_state")
    @classmethod
    def validate_exec_err_state(cls, v: str) -> str:
        if v not in {"Alerting", "Error", "OK"}:
            raise ValueError("execErrState must be one of Alerting, Error, OK")
        return v

    @field_validator("for_")
    @classmethod
    def validate_for(cls, v: str) -> str:
        parse_duration(v)
        return v

    @model_validator(mode="after")
    def validate_condition(self) -> AlertRuleConfig:
        ref_ids = {q.ref_id for q in self.data}
        if self.condition not in ref_ids:
            raise ValueError(f"condition {self.condition!r} does not match any query refId")
        return self


class AlertRuleGroupConfig(BaseConfig):
    org_id: OrgId = Field(1, alias="orgId")
    name: Annotated[str, Field(min_length=1, max_length=190)]
    folder: Annotated[str, Field(min_length=1)]
    interval: str | None = None
    rules: list[AlertRuleConfig] = Field(default_factory=list)

    @field_validator("interval")
    @classmethod
    def validate_interval(cls, v: str | None) -> str | None:
        if v is not None:
            parse_duration(v)
        return v


class DeleteRuleConfig(BaseConfig):
    org_id: OrgId = Field(1, alias="orgId")
    uid: Annotated[str, Field(min_length=1)]


class AlertingFile(BaseConfig):
    api_version: int = Field(1, alias="apiVersion")
    groups: list[AlertRuleGroupConfig] = Field(default_factory=list)
    delete_rules: list[DeleteRuleConfig] = Field(default_factory=list, alias="deleteRules")


# =============================================================================
# Dashboard providers
# =============================================================================


class DashboardProviderOptions(BaseConfig):
    path: Annotated[str, Field(min_length=1)]
    folders_from_files_structure: bool = Field(False, alias="foldersFromFilesStructure")


class DashboardProviderConfig(BaseConfig):
    name: Annotated[str, Field(min_length=1)]
    org_id: OrgId = Field(1, alias="orgId")
    folder: str = ""
    folder_uid: str = Field("", alias="folderUid")
    type: str = "file"
    disable_deletion: bool = Field(False, alias="disableDeletion")
    update_interval_seconds: Annotated[
        int, Field(ge=MIN_DASHBOARD_UPDATE_INTERVAL_SECONDS, alias="updateIntervalSeconds")
    ] = DEFAULT_DASHBOARD_UPDATE_INTERVAL_SECONDS
    allow_ui_updates: bool = Field(False, alias="allowUiUpdates")
    options: DashboardProviderOptions

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if v != "file":
            raise ValueError("only 'file' dashboard providers are supported")
        return v

    @model_validator(mode="after")
    def validate_folders(self) -> DashboardProviderConfig:
        if self.options.folders_from_files_structure and (self.folder or self.folder_uid):
            raise ValueError("folder and folderUid cannot be set with foldersFromFilesStructure")
        return self


class DashboardProvidersFile(BaseConfig):
    api_version: int = Field(1, alias="apiVersion")
    providers: list[DashboardProviderConfig] = Field(default_factory=list)
