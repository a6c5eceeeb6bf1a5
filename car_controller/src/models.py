from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from car_controller.src.errors import AlreadyOwnedError, OwnerReferenceError

CAR_KIND = "Car"
CONFIG_MAP_KIND = "ConfigMap"


@dataclass(frozen=True, order=True)
class ObjectKey:
    """Namespaced name identifying one unit of reconcile work.

    The work queue only ever carries keys, never object snapshots, so every
    reconcile has to fetch the current state from the store.
    """

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class OwnerReference:
    api_version: str
    kind: str
    name: str
    uid: str
    controller: bool = True
    block_owner_deletion: bool = True

    @property
    def group(self) -> str:
        group, _, _ = self.api_version.rpartition("/")
        return group

    def refers_to_same(self, other: OwnerReference) -> bool:
        """Return True if both references point at the same owner object.

        The API version is compared by group only, so a version bump of the
        owner's CRD does not produce a second reference.
        """
        return (
            self.group == other.group
            and self.kind == other.kind
            and self.name == other.name
        )


@dataclass
class Car:
    """Desired-state object.  The controller only ever reads it."""

    namespace: str
    name: str
    uid: str = ""
    api_version: str = "example.example.com/v1"
    labels: dict[str, str] = field(default_factory=dict)
    resource_version: str | None = None

    kind = CAR_KIND

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(self.namespace, self.name)


@dataclass
class ConfigMap:
    """Owned object whose ``data`` is projected from its owner Car's labels.

    ``labels``, ``annotations`` and ``binary_data`` are carried through
    unchanged.  ``api_object`` keeps the object as last read from the API so
    a full replace also keeps fields this model does not describe
    (finalizers, ``immutable``, managed fields).
    """

    namespace: str
    name: str
    data: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    binary_data: dict[str, str] | None = None
    owner_references: list[OwnerReference] = field(default_factory=list)
    uid: str = ""
    resource_version: str | None = None
    api_object: Any = field(default=None, repr=False, compare=False)

    kind = CONFIG_MAP_KIND

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(self.namespace, self.name)


def controller_reference_for(owner: Car) -> OwnerReference:
    return OwnerReference(
        api_version=owner.api_version,
        kind=owner.kind,
        name=owner.name,
        uid=owner.uid,
        controller=True,
        block_owner_deletion=True,
    )


def controller_owner(obj: ConfigMap) -> OwnerReference | None:
    """Return the single controller owner reference of *obj*, if any."""
    for ref in obj.owner_references:
        if ref.controller:
            return ref
    return None


def set_controller_reference(child: ConfigMap, owner: Car) -> bool:
    """Make *owner* the controller of *child*.

    Returns True when the owner references were modified and False when the
    correct reference was already present, so callers can skip a write.
    Raises :class:`AlreadyOwnedError` when another object already controls
    *child*; the store's garbage collector only honours one controller.
    """
    if child.namespace != owner.namespace:
        raise OwnerReferenceError(
            f"cross-namespace owner references are not allowed: "
            f"{owner.kind} {owner.key} cannot own {child.kind} {child.key}"
        )

    desired = controller_reference_for(owner)
    existing = controller_owner(child)
    if existing is not None and not existing.refers_to_same(desired):
        raise AlreadyOwnedError(
            f"{child.kind} {child.key} is already controlled by "
            f"{existing.kind} {existing.name}"
        )

    for index, ref in enumerate(child.owner_references):
        if ref.refers_to_same(desired):
            if ref == desired:
                return False
            child.owner_references[index] = desired
            return True

    child.owner_references.append(desired)
    return True


def owner_key_for(
    obj: ConfigMap, owner_kind: str = CAR_KIND, owner_group: str | None = None
) -> ObjectKey | None:
    """Map an owned object back to its controlling owner's key.

    Owner references are namespace-local, so the owner lives in the owned
    object's namespace.  Objects without a controller reference of
    *owner_kind* (in *owner_group*, when given) map to nothing.
    """
    ref = controller_owner(obj)
    if ref is None or ref.kind != owner_kind:
        return None
    if owner_group is not None and ref.group != owner_group:
        return None
    return ObjectKey(obj.namespace, ref.name)
