"""Pydantic models for cluster objects, the collected fact-set and the endpoint reply."""

from __future__ import annotations

from types import MappingProxyType
from typing import Annotated, Any, Mapping, Union

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    PlainSerializer,
    StrictBool,
    StrictInt,
    StrictStr,
)


# ──────────────────────────── Cluster Objects ─────────────────────────────────


class ContainerSpec(BaseModel):
    """A container extracted from a workload's pod template."""

    name: str = ""
    image: str = ""
    env: dict[str, str] = Field(
        default_factory=dict, description="Literal env values; valueFrom entries are skipped"
    )

    @classmethod
    def from_manifest(cls, raw: dict[str, Any]) -> "ContainerSpec":
        env = {
            e["name"]: e["value"]
            for e in raw.get("env") or []
            if e.get("name") and isinstance(e.get("value"), str)
        }
        return cls(name=raw.get("name", ""), image=raw.get("image", ""), env=env)


class Workload(BaseModel):
    """A Deployment or DaemonSet as seen by the collector."""

    kind: str
    name: str
    namespace: str = "default"
    labels: dict[str, str] = Field(default_factory=dict)
    containers: list[ContainerSpec] = Field(default_factory=list)

    @property
    def first_image(self) -> str:
        return self.containers[0].image if self.containers else ""

    @classmethod
    def from_manifest(cls, raw: dict[str, Any], kind: str = "") -> "Workload":
        meta = raw.get("metadata", {})
        pod_spec = raw.get("spec", {}).get("template", {}).get("spec", {})
        return cls(
            kind=raw.get("kind") or kind,
            name=meta.get("name", ""),
            namespace=meta.get("namespace", "default"),
            labels=meta.get("labels") or {},
            containers=[ContainerSpec.from_manifest(c) for c in pod_spec.get("containers") or []],
        )


class NodeInfo(BaseModel):
    """The subset of a Node object the collector inspects."""

    name: str
    labels: dict[str, str] = Field(default_factory=dict)
    os_image: str = ""
    kernel_version: str = ""
    architecture: str = ""
    allocatable: dict[str, str] = Field(
        default_factory=dict, description="Resource name → quantity string"
    )

    @classmethod
    def from_manifest(cls, raw: dict[str, Any]) -> "NodeInfo":
        meta = raw.get("metadata", {})
        status = raw.get("status", {})
        info = status.get("nodeInfo", {})
        return cls(
            name=meta.get("name", ""),
            labels=meta.get("labels") or {},
            os_image=info.get("osImage", ""),
            kernel_version=info.get("kernelVersion", ""),
            architecture=info.get("architecture", ""),
            allocatable={k: str(v) for k, v in (status.get("allocatable") or {}).items()},
        )


class NamespaceInfo(BaseModel):
    name: str
    uid: str = ""

    @classmethod
    def from_manifest(cls, raw: dict[str, Any]) -> "NamespaceInfo":
        meta = raw.get("metadata", {})
        return cls(name=meta.get("name", ""), uid=meta.get("uid", ""))


class ServiceInfo(BaseModel):
    name: str
    namespace: str = "default"
    ip_families: list[str] = Field(default_factory=list)

    @classmethod
    def from_manifest(cls, raw: dict[str, Any]) -> "ServiceInfo":
        meta = raw.get("metadata", {})
        return cls(
            name=meta.get("name", ""),
            namespace=meta.get("namespace", "default"),
            ip_families=raw.get("spec", {}).get("ipFamilies") or [],
        )


# ──────────────────────────── Fact-set ────────────────────────────────────────

# Smart-mode union: a bool stays a bool and never degrades to int.
FieldValue = Union[StrictBool, StrictInt, StrictStr]


def _read_only(value: Mapping[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType(dict(value))


def _as_dict(value: Mapping[str, Any]) -> dict[str, Any]:
    return dict(value)


# Validated into read-only views, dumped as plain dicts.
TagMap = Annotated[
    Mapping[str, str],
    AfterValidator(_read_only),
    PlainSerializer(_as_dict, return_type=dict[str, str]),
]
FieldMap = Annotated[
    Mapping[str, FieldValue],
    AfterValidator(_read_only),
    PlainSerializer(_as_dict, return_type=dict[str, FieldValue]),
]


class FactSet(BaseModel):
    """Cluster fingerprint produced by one collection cycle.

    A field that was not recorded is absent from :attr:`extra_fields`; there is no
    null value.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    app_version: str = Field(alias="appVersion")
    extra_tags: TagMap = Field(default_factory=dict, alias="extraTagInfo", validate_default=True)
    extra_fields: FieldMap = Field(
        default_factory=dict, alias="extraFieldInfo", validate_default=True
    )

    def to_payload(self) -> dict[str, Any]:
        """Return the wire representation."""
        return self.model_dump(by_alias=True)

    def to_json(self, indent: int | None = None) -> str:
        return self.model_dump_json(by_alias=True, indent=indent)


# ──────────────────────────── Endpoint Reply ──────────────────────────────────


class ReleaseVersion(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    release_date: str = Field(default="", alias="releaseDate")


class DeliveryResponse(BaseModel):
    """Structured reply from the collection endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    versions: list[ReleaseVersion]
    request_interval_in_minutes: int = Field(default=0, alias="requestIntervalInMinutes")
