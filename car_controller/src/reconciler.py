from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Protocol

from car_controller.src.errors import (
    DeadlineExceeded,
    NotFound,
    OwnerReferenceError,
    StoreError,
)
from car_controller.src.metrics import METRICS
from car_controller.src.models import (
    CAR_KIND,
    CONFIG_MAP_KIND,
    Car,
    ConfigMap,
    ObjectKey,
    set_controller_reference,
)

RESULT_CREATED = "created"
RESULT_UPDATED = "updated"
RESULT_UNCHANGED = "unchanged"
RESULT_DELETED = "deleted"
RESULT_MISSING_ATTRIBUTE = "missing-attribute"
RESULT_IDENTITY_MISMATCH = "identity-mismatch"


@dataclass(frozen=True)
class Done:
    """Reconcile finished; nothing to retry.  ``result`` says what happened."""

    result: str = RESULT_UNCHANGED


@dataclass(frozen=True)
class RequeueAfter:
    """Reconcile succeeded but wants to run again after ``delay_seconds``."""

    delay_seconds: float


@dataclass(frozen=True)
class Fail:
    """Reconcile failed; the driver retries the key with backoff."""

    error: BaseException


Outcome = Done | RequeueAfter | Fail

Projection = Callable[[Mapping[str, str]], dict[str, str]]


def copy_labels(labels: Mapping[str, str]) -> dict[str, str]:
    """Default projection: the owned ConfigMap's data is the owner's labels verbatim."""
    return dict(labels)


class ObjectStore(Protocol):
    def get(self, kind: str, key: ObjectKey, *, timeout: float | None = None) -> Car | ConfigMap: ...

    def create(self, obj: ConfigMap, *, timeout: float | None = None) -> ConfigMap: ...

    def update(self, obj: ConfigMap, *, timeout: float | None = None) -> ConfigMap: ...


class Deadline:
    """Time budget of one reconcile call, also tripped by a cancellation event.

    Store calls receive :meth:`remaining` as their request timeout; the
    reconciler calls :meth:`check` before each of them so a reconcile that
    ran out of time, or whose controller is shutting down, stops issuing I/O.
    """

    def __init__(
        self,
        seconds: float | None = None,
        cancelled: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._expires_at = None if seconds is None else clock() + seconds
        self._cancelled = cancelled

    def remaining(self) -> float | None:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    def check(self) -> None:
        if self._cancelled is not None and self._cancelled.is_set():
            raise DeadlineExceeded("reconcile cancelled by shutdown")
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise DeadlineExceeded("reconcile deadline exceeded")


class CarReconciler:
    """Converges the ConfigMap owned by a Car toward the Car's labels.

    The reconciler is stateless between calls and never retries: every
    call re-fetches the Car, recomputes the target from scratch and issues
    at most one ConfigMap write.  Store failures come back as :class:`Fail`
    and the driver decides when to run it again, which is always safe since
    the upsert is idempotent.

    ``identity`` is the controller colour.  A Car whose
    ``classification_label`` is missing or holds a different value is
    logged and left alone; retrying cannot change an externally set label.
    """

    def __init__(
        self,
        store: ObjectStore,
        identity: str,
        classification_label: str = "color",
        project: Projection = copy_labels,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.identity = identity
        self.classification_label = classification_label
        self.project = project
        self.logger = logger or logging.getLogger(__name__)

    def reconcile(self, key: ObjectKey, deadline: Deadline | None = None) -> Outcome:
        deadline = deadline or Deadline()
        try:
            deadline.check()
            car = self.store.get(CAR_KIND, key, timeout=deadline.remaining())
        except NotFound:
            # Deleted Cars take their ConfigMap with them through the
            # owner reference; nothing to do here.
            self.logger.debug("Car %s not found; assuming deleted", key)
            return Done(RESULT_DELETED)
        except (StoreError, DeadlineExceeded) as exc:
            return Fail(exc)

        color = car.labels.get(self.classification_label)
        if color is None:
            self.logger.info(
                "missing %s",
                self.classification_label,
                extra={"context": {"car": str(key)}},
            )
            return Done(RESULT_MISSING_ATTRIBUTE)

        self.logger.info(
            "reconciling car",
            extra={
                "context": {
                    "car": str(key),
                    "car color": color,
                    "controller color": self.identity,
                }
            },
        )
        if color != self.identity:
            self.logger.error(
                "car %s does not match controller %s",
                self.classification_label,
                self.classification_label,
                extra={
                    "context": {
                        "car": str(key),
                        "car color": color,
                        "controller color": self.identity,
                    }
                },
            )
            return Done(RESULT_IDENTITY_MISMATCH)

        try:
            result = self._create_or_update(car, deadline)
        except (StoreError, OwnerReferenceError, DeadlineExceeded) as exc:
            return Fail(exc)
        return Done(result)

    def _create_or_update(self, car: Car, deadline: Deadline) -> str:
        """Fetch-or-create the Car's ConfigMap and converge its data.

        Writes nothing when the stored data and owner reference already match
        the target, so repeated reconciles do not churn ``resourceVersion``.
        """
        desired = self.project(dict(car.labels))

        deadline.check()
        try:
            current = self.store.get(CONFIG_MAP_KIND, car.key, timeout=deadline.remaining())
        except NotFound:
            current = None

        if current is None:
            config_map = ConfigMap(namespace=car.namespace, name=car.name, data=desired)
            set_controller_reference(config_map, car)
            deadline.check()
            self.store.create(config_map, timeout=deadline.remaining())
            METRICS.owned_writes_total.labels(operation="create").inc()
            self.logger.info(
                "Created ConfigMap %s",
                car.key,
                extra={"context": {"car": str(car.key)}},
            )
            return RESULT_CREATED

        owner_changed = set_controller_reference(current, car)
        if current.data == desired and not owner_changed:
            return RESULT_UNCHANGED

        current.data = desired
        deadline.check()
        self.store.update(current, timeout=deadline.remaining())
        METRICS.owned_writes_total.labels(operation="update").inc()
        self.logger.info(
            "Updated ConfigMap %s",
            car.key,
            extra={"context": {"car": str(car.key), "owner_changed": owner_changed}},
        )
        return RESULT_UPDATED
