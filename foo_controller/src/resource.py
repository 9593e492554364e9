from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

GROUP = "clux.dev"
VERSION = "v1"
PLURAL = "foos"
KIND = "Foo"
CRD_NAME = f"{PLURAL}.{GROUP}"


@dataclass(frozen=True)
class ObjectRef:
    """Identity of a ``Foo`` object and the key used by the work queue."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def from_object(cls, obj: Mapping[str, Any]) -> ObjectRef | None:
        """Build a ref from a custom-object dict, or ``None`` when metadata is incomplete."""
        metadata = obj.get("metadata") if isinstance(obj, Mapping) else None
        if not isinstance(metadata, Mapping):
            return None
        namespace = metadata.get("namespace")
        name = metadata.get("name")
        if not namespace or not name:
            return None
        return cls(namespace=str(namespace), name=str(name))


@dataclass(frozen=True)
class FooSpec:
    """User-declared desired configuration of a ``Foo``."""

    name: str
    info: str

    @classmethod
    def from_object(cls, obj: Mapping[str, Any]) -> FooSpec:
        """Parse the ``spec`` section of a custom-object dict.

        Missing or ``None`` fields become empty strings so that the status
        derivation stays total over whatever the API server hands back.
        """
        spec = obj.get("spec") if isinstance(obj, Mapping) else None
        if not isinstance(spec, Mapping):
            spec = {}
        return cls(
            name="" if spec.get("name") is None else str(spec["name"]),
            info="" if spec.get("info") is None else str(spec["info"]),
        )


@dataclass(frozen=True)
class FooStatus:
    is_bad: bool

    def to_dict(self) -> dict[str, Any]:
        return {"is_bad": self.is_bad}


def object_generation(obj: Mapping[str, Any]) -> int | None:
    metadata = obj.get("metadata") if isinstance(obj, Mapping) else None
    if not isinstance(metadata, Mapping):
        return None
    generation = metadata.get("generation")
    return generation if isinstance(generation, int) else None
