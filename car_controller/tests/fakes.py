from __future__ import annotations

import copy
import threading
from collections.abc import Callable
from typing import Any

from car_controller.src.errors import AlreadyExists, Conflict, NotFound
from car_controller.src.models import (
    CAR_KIND,
    Car,
    ConfigMap,
    ObjectKey,
    OwnerReference,
)


def make_car(
    name: str = "beetle",
    namespace: str = "garage",
    labels: dict[str, str] | None = None,
    uid: str = "uid-beetle",
) -> Car:
    return Car(
        namespace=namespace,
        name=name,
        uid=uid,
        api_version="example.example.com/v1",
        labels=dict(labels) if labels is not None else {"color": "red"},
        resource_version="1",
    )


def car_owner_reference(car: Car) -> OwnerReference:
    return OwnerReference(
        api_version=car.api_version,
        kind=CAR_KIND,
        name=car.name,
        uid=car.uid,
    )


class FakeStore:
    """In-memory object store recording every mutating call.

    Objects are deep-copied on the way in and out so callers can never
    mutate stored state without an explicit ``create``/``update``.
    ``failures`` maps an operation name (``get``, ``create``, ``update``) to a
    list of exceptions raised, in order, by the next calls of that operation.
    """

    def __init__(self) -> None:
        self.objects: dict[tuple[str, ObjectKey], Car | ConfigMap] = {}
        self.calls: list[tuple[str, str, ObjectKey]] = []
        self.timeouts: list[float | None] = []
        self.failures: dict[str, list[Exception]] = {}
        self.on_get: Callable[[str, ObjectKey], None] | None = None
        self._version = 0
        self._lock = threading.Lock()

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def _maybe_fail(self, operation: str) -> None:
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)

    def put(self, obj: Car | ConfigMap) -> None:
        """Seed or externally modify an object, bumping its resourceVersion."""
        with self._lock:
            stored = copy.deepcopy(obj)
            stored.resource_version = self._next_version()
            self.objects[(obj.kind, obj.key)] = stored

    def remove(self, kind: str, key: ObjectKey) -> None:
        with self._lock:
            self.objects.pop((kind, key), None)

    def stored(self, kind: str, key: ObjectKey) -> Any:
        with self._lock:
            return copy.deepcopy(self.objects.get((kind, key)))

    def writes(self) -> list[tuple[str, str, ObjectKey]]:
        return [call for call in self.calls if call[0] in {"create", "update"}]

    def get(self, kind: str, key: ObjectKey, *, timeout: float | None = None) -> Any:
        if self.on_get is not None:
            self.on_get(kind, key)
        with self._lock:
            self.calls.append(("get", kind, key))
            self.timeouts.append(timeout)
            self._maybe_fail("get")
            obj = self.objects.get((kind, key))
            if obj is None:
                raise NotFound(f"{kind} {key} not found", status=404)
            return copy.deepcopy(obj)

    def create(self, obj: ConfigMap, *, timeout: float | None = None) -> ConfigMap:
        with self._lock:
            self.calls.append(("create", obj.kind, obj.key))
            self.timeouts.append(timeout)
            self._maybe_fail("create")
            if (obj.kind, obj.key) in self.objects:
                raise AlreadyExists(f"{obj.kind} {obj.key} already exists", status=409)
            stored = copy.deepcopy(obj)
            stored.resource_version = self._next_version()
            self.objects[(obj.kind, obj.key)] = stored
            return copy.deepcopy(stored)

    def update(self, obj: ConfigMap, *, timeout: float | None = None) -> ConfigMap:
        with self._lock:
            self.calls.append(("update", obj.kind, obj.key))
            self.timeouts.append(timeout)
            self._maybe_fail("update")
            current = self.objects.get((obj.kind, obj.key))
            if current is None:
                raise NotFound(f"{obj.kind} {obj.key} not found", status=404)
            if current.resource_version != obj.resource_version:
                raise Conflict(f"{obj.kind} {obj.key} has a newer version", status=409)
            stored = copy.deepcopy(obj)
            stored.resource_version = self._next_version()
            self.objects[(obj.kind, obj.key)] = stored
            return copy.deepcopy(stored)

