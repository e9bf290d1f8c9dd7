"""Data model for sites, ARM payloads and deployment status.

Two kinds of types live here:
1. Pydantic wire models that parse ARM JSON (camelCase aliases, unknown
   fields ignored)
2. Plain dataclasses the rest of the code passes around, chiefly the
   Site aggregate that is filled in from several ARM responses
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import AliasChoices, BaseModel, Field

T = TypeVar("T")

# =============================================================================
# ARM wire models
# =============================================================================


class ArmModel(BaseModel):
    """Base for ARM payload models."""

    model_config = {"extra": "ignore", "populate_by_name": True}


class ArmWrapper(ArmModel, Generic[T]):
    """Standard ARM envelope: id/name/type/location around `properties`."""

    id: str | None = None
    name: str | None = None
    type: str | None = None
    kind: str | None = None
    location: str | None = None
    properties: T | None = None


class ArmArrayWrapper(ArmModel, Generic[T]):
    """Paged ARM list response."""

    value: list[T] = Field(default_factory=list)
    next_link: str | None = Field(None, alias="nextLink")


class ArmGenericResource(ArmModel):
    """Entry of a generic `/resources` listing."""

    id: str
    name: str
    type: str | None = None
    kind: str | None = None
    location: str | None = None


class ArmSubscription(ArmModel):
    """Subscription as returned by `/subscriptions`."""

    subscription_id: str = Field(alias="subscriptionId")
    display_name: str | None = Field(None, alias="displayName")
    state: str | None = None


class ArmWebsiteProperties(ArmModel):
    enabled_host_names: list[str] = Field(default_factory=list, alias="enabledHostNames")
    sku: str | None = None
    state: str | None = None
    server_farm_id: str | None = Field(None, alias="serverFarmId")


class ArmWebsite(ArmWrapper[ArmWebsiteProperties]):
    """Site object (`Microsoft.Web/sites/{name}`)."""

    pass


class ArmWebsitePublishingCredentials(ArmModel):
    """Properties of `config/PublishingCredentials/list`.

    `scmUri` is deliberately not mapped: it embeds the credentials and would
    clobber the host-only SCM URI taken from the site object.
    """

    publishing_user_name: str | None = Field(None, alias="publishingUserName")
    publishing_password: str | None = Field(None, alias="publishingPassword")


class ArmWebsiteConfig(ArmModel):
    """Properties of `config/web`."""

    scm_type: str | None = Field(None, alias="scmType")
    linux_fx_version: str | None = Field(None, alias="linuxFxVersion")
    net_framework_version: str | None = Field(None, alias="netFrameworkVersion")
    java_version: str | None = Field(None, alias="javaVersion")
    power_shell_version: str | None = Field(None, alias="powerShellVersion")
    use32_bit_worker_process: bool | None = Field(None, alias="use32BitWorkerProcess")
    always_on: bool | None = Field(None, alias="alwaysOn")


class AppServiceConnectionString(ArmModel):
    """One connection string entry of `config/ConnectionStrings/list`."""

    value: str | None = None
    type: str | None = None


class ArmStorageKey(ArmModel):
    key_name: str | None = Field(None, alias="keyName")
    value: str
    permissions: str | None = None


class ArmStorageKeysArray(ArmModel):
    keys: list[ArmStorageKey] = Field(default_factory=list)


class FunctionInfo(ArmModel):
    """Function metadata returned by the host runtime admin API."""

    name: str
    invoke_url_template: str | None = Field(
        None, validation_alias=AliasChoices("invoke_url_template", "invokeUrlTemplate")
    )
    config: dict[str, Any] | None = None

    @property
    def bindings(self) -> list[dict[str, Any]]:
        if not self.config:
            return []
        bindings = self.config.get("bindings")
        return bindings if isinstance(bindings, list) else []

    @property
    def trigger_type(self) -> str | None:
        """Type of the first binding whose type mentions a trigger."""
        for binding in self.bindings:
            binding_type = binding.get("type")
            if binding_type and "trigger" in str(binding_type).lower():
                return str(binding_type)
        return None

    @property
    def auth_level(self) -> str | None:
        """authLevel of the first binding that declares one."""
        for binding in self.bindings:
            auth_level = binding.get("authLevel")
            if auth_level:
                return str(auth_level)
        return None

    @property
    def is_anonymous(self) -> bool:
        level = self.auth_level
        return level is not None and level.lower() == "anonymous"


# =============================================================================
# Site aggregate
# =============================================================================


@dataclass
class Site:
    """A Function App assembled from several ARM responses.

    Only `site_id` is known up front; everything else is filled in by the
    site loaders via merge_with() or direct assignment.
    """

    site_id: str

    # Site object
    site_name: str | None = None
    host_name: str | None = None
    scm_uri: str | None = None
    location: str | None = None
    kind: str | None = None
    sku: str | None = None

    # Publishing credentials
    publishing_user_name: str | None = None
    publishing_password: str | None = None

    # Web config
    scm_type: str | None = None
    linux_fx_version: str | None = None
    net_framework_version: str | None = None
    java_version: str | None = None
    power_shell_version: str | None = None
    use32_bit_worker_process: bool | None = None
    always_on: bool | None = None

    azure_app_settings: dict[str, str] = field(default_factory=dict)
    connection_strings: dict[str, AppServiceConnectionString] = field(default_factory=dict)

    def merge_with(self, source: BaseModel | None) -> Site:
        """Shallow-copy every same-named, non-null field of `source` onto self."""
        if source is None:
            return self
        for name, value in source:
            if value is not None and name in self.__dataclass_fields__ and name != "site_id":
                setattr(self, name, value)
        return self

    @property
    def is_linux(self) -> bool:
        return bool(self.kind) and "linux" in self.kind.lower()

    @property
    def is_dynamic(self) -> bool:
        return bool(self.sku) and self.sku.lower() == "dynamic"

    @property
    def is_elastic_premium(self) -> bool:
        return bool(self.sku) and self.sku.lower() == "elasticpremium"

    @property
    def scm_base_url(self) -> str:
        if not self.scm_uri:
            raise ValueError(f"Site {self.site_name or self.site_id} has no SCM host name")
        return f"https://{self.scm_uri}"


@dataclass(frozen=True)
class ArmResourceId:
    """Components of `/subscriptions/{s}/resourceGroups/{rg}/providers/{p}/{type}/{name}`."""

    subscription: str
    resource_group: str
    provider: str
    name: str


@dataclass(frozen=True)
class StorageAccount:
    storage_account_name: str
    storage_account_key: str

    @property
    def connection_string(self) -> str:
        return (
            "DefaultEndpointsProtocol=https;"
            f"AccountName={self.storage_account_name};"
            f"AccountKey={self.storage_account_key}"
        )


@dataclass(frozen=True)
class HttpResult(Generic[T]):
    """Outcome of a mutating call: either a result or an error message."""

    result: T | None = None
    error: str | None = None

    @property
    def is_successful(self) -> bool:
        return self.error is None


# =============================================================================
# Deployment status
# =============================================================================


class DeployStatus(str, Enum):
    """Kudu deployment status.

    Kudu reports either the name or its numeric code.
    """

    PENDING = "Pending"
    BUILDING = "Building"
    DEPLOYING = "Deploying"
    FAILED = "Failed"
    SUCCESS = "Success"

    @property
    def is_terminal(self) -> bool:
        return self in (DeployStatus.SUCCESS, DeployStatus.FAILED)

    @classmethod
    def parse(cls, value: str | int) -> DeployStatus:
        """Parse a status name (case-insensitive) or numeric code.

        Raises:
            ValueError: If the value names no known status.
        """
        text = str(value).strip()
        if text.lstrip("-").isdigit():
            code = int(text)
            if 0 <= code < len(_STATUS_BY_CODE):
                return _STATUS_BY_CODE[code]
            raise ValueError(f"Unknown deployment status code: {value}")
        for status in cls:
            if status.value.lower() == text.lower():
                return status
        raise ValueError(f"Unknown deployment status: {value}")


_STATUS_BY_CODE: tuple[DeployStatus, ...] = (
    DeployStatus.PENDING,
    DeployStatus.BUILDING,
    DeployStatus.DEPLOYING,
    DeployStatus.FAILED,
    DeployStatus.SUCCESS,
)
