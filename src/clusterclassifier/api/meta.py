"""Object metadata and the base class shared by every resource kind."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import ClassVar, TypeVar


def as_dict(value: object) -> dict:
    return value if isinstance(value, dict) else {}


def as_str(value: object, default: str = "") -> str:
    return value if isinstance(value, str) else default


def as_str_map(value: object) -> dict[str, str]:
    out: dict[str, str] = {}
    for key, item in as_dict(value).items():
        if isinstance(key, str) and isinstance(item, str):
            out[key] = item
    return out


def as_list(value: object) -> list:
    return value if isinstance(value, list) else []


@dataclass
class ObjectMeta:
    name: str = ""
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    resource_version: str | None = None
    deletion_timestamp: str | None = None

    @property
    def deleting(self) -> bool:
        return bool(self.deletion_timestamp)

    @classmethod
    def from_dict(cls, data: object) -> ObjectMeta:
        meta = as_dict(data)
        resource_version = meta.get("resourceVersion")
        deletion_timestamp = meta.get("deletionTimestamp")
        return cls(
            name=as_str(meta.get("name")),
            namespace=as_str(meta.get("namespace")),
            labels=as_str_map(meta.get("labels")),
            annotations=as_str_map(meta.get("annotations")),
            finalizers=[item for item in as_list(meta.get("finalizers")) if isinstance(item, str)],
            resource_version=resource_version if isinstance(resource_version, str) else None,
            deletion_timestamp=deletion_timestamp if isinstance(deletion_timestamp, str) else None,
        )

    def to_dict(self) -> dict:
        out: dict = {"name": self.name}
        if self.namespace:
            out["namespace"] = self.namespace
        out["labels"] = dict(self.labels)
        out["annotations"] = dict(self.annotations)
        out["finalizers"] = list(self.finalizers)
        if self.resource_version is not None:
            out["resourceVersion"] = self.resource_version
        if self.deletion_timestamp is not None:
            out["deletionTimestamp"] = self.deletion_timestamp
        return out


R = TypeVar("R", bound="Resource")


@dataclass
class Resource:
    """A typed view over one API object.

    ``raw`` keeps the object exactly as it was read so that writing it back
    never drops fields this package does not model.
    """

    KIND: ClassVar[str] = ""
    API_VERSION: ClassVar[str] = ""
    # resource name as understood by kubectl
    RESOURCE: ClassVar[str] = ""
    NAMESPACED: ClassVar[bool] = True

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    raw: dict = field(default_factory=dict, repr=False, compare=False)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def deleting(self) -> bool:
        return self.metadata.deleting

    @classmethod
    def from_dict(cls: type[R], data: dict) -> R:
        obj = cls._parse(as_dict(data))
        obj.metadata = ObjectMeta.from_dict(as_dict(data).get("metadata"))
        obj.raw = copy.deepcopy(as_dict(data))
        return obj

    @classmethod
    def _parse(cls: type[R], data: dict) -> R:
        return cls()

    def to_dict(self) -> dict:
        body = copy.deepcopy(self.raw)
        body["apiVersion"] = self.API_VERSION
        body["kind"] = self.KIND
        metadata = as_dict(body.get("metadata"))
        metadata.update(self.metadata.to_dict())
        if self.metadata.resource_version is None:
            metadata.pop("resourceVersion", None)
        body["metadata"] = metadata
        self._fill(body)
        return body

    def _fill(self, body: dict) -> None:
        return None

    def key(self) -> tuple[str, str, str]:
        return (self.KIND, self.namespace, self.name)
