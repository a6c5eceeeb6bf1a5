from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Sequence
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api, CustomObjectsApi

from car_controller.src.config import CarResource, ControllerConfig
from car_controller.src.kube import KubeObjectStore
from car_controller.src.metrics import METRICS
from car_controller.src.models import CAR_KIND, CONFIG_MAP_KIND, ObjectKey, owner_key_for
from car_controller.src.predicate import LabelPredicate
from car_controller.src.reconciler import (
    CarReconciler,
    Deadline,
    Done,
    Fail,
    Outcome,
    RequeueAfter,
)
from car_controller.src.sources import (
    WatchSource,
    car_source,
    config_map_source,
    list_items_and_version,
)
from car_controller.src.workqueue import ExponentialBackoff, WorkQueue

WATCH_TIMEOUT_SECONDS = 30
_WATCH_EVENT_TYPES = frozenset({"ADDED", "MODIFIED", "DELETED"})


class CarController:
    """Drives Car reconciliation from watch events through a worker pool.

    Event intake: one list-then-watch thread per :class:`WatchSource`.  Car
    events pass through the :class:`LabelPredicate` and enqueue the Car's
    key; ConfigMap events bypass it and enqueue the key of the Car that
    controls them (via the controller owner reference), so edits or
    deletions of an owned ConfigMap are repaired.

    Execution: ``workers`` threads drain the :class:`WorkQueue`.  The queue
    guarantees a key is never held by two workers at once, whatever the pool
    size.  Outcomes are handled here and only here:

    ``Done``          -> backoff for the key is forgotten
    ``RequeueAfter``  -> backoff forgotten, key re-added after the delay
    ``Fail``          -> key re-added after ``backoff.when(key)``, unless the
                         queue is shutting down

    Every reconcile runs under a :class:`Deadline` of
    ``reconcile_timeout_seconds`` that is also tripped on shutdown.

    A controller instance runs once: :meth:`run_forever` shuts its queue
    down on exit.
    """

    def __init__(
        self,
        reconciler: CarReconciler,
        predicate: LabelPredicate,
        sources: Sequence[WatchSource],
        *,
        workers: int = 1,
        reconcile_timeout_seconds: float | None = 30.0,
        shutdown_timeout_seconds: float = 30.0,
        backoff: ExponentialBackoff[ObjectKey] | None = None,
        queue: WorkQueue[ObjectKey] | None = None,
        car_resource: CarResource | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.reconciler = reconciler
        self.predicate = predicate
        self.sources = list(sources)
        self.workers = workers
        self.reconcile_timeout_seconds = reconcile_timeout_seconds
        self.shutdown_timeout_seconds = shutdown_timeout_seconds
        self.backoff: ExponentialBackoff[ObjectKey] = backoff or ExponentialBackoff()
        self.queue: WorkQueue[ObjectKey] = queue or WorkQueue()
        self.car_resource = car_resource or CarResource()
        self.logger = logger or logging.getLogger(__name__)

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        # Tripped on shutdown so in-flight reconciles stop issuing store I/O.
        self._cancel = threading.Event()
        self._active_watchers: dict[str, watch.Watch] = {}
        self._watcher_lock = threading.Lock()
        self._synced: set[str] = set()
        self._synced_lock = threading.Lock()
        self._worker_threads: list[threading.Thread] = []
        self._source_threads: list[threading.Thread] = []

    # ------------------------------------------------------------------
    # Event intake
    # ------------------------------------------------------------------

    def handle_event(self, kind: str, event_type: str, obj: Any) -> ObjectKey | None:
        """Route one decoded watch event to the queue.

        Returns the enqueued key, or ``None`` when the event was dropped.
        """
        if event_type not in _WATCH_EVENT_TYPES:
            return None
        if kind == CAR_KIND:
            return self.handle_car_event(event_type, obj)
        if kind == CONFIG_MAP_KIND:
            return self.handle_config_map_event(event_type, obj)
        return None

    def handle_car_event(self, event_type: str, car: Any) -> ObjectKey | None:
        # Deletes are admitted on the last known state so the reconciler
        # observes NotFound and settles the key.
        if not self.predicate.admit(car):
            METRICS.events_total.labels(kind=CAR_KIND, decision="filtered").inc()
            return None
        key = car.key
        self.queue.add(key)
        METRICS.events_total.labels(kind=CAR_KIND, decision="admitted").inc()
        METRICS.queue_depth.set(len(self.queue))
        return key

    def handle_config_map_event(self, event_type: str, config_map: Any) -> ObjectKey | None:
        key = owner_key_for(config_map, CAR_KIND, self.car_resource.group)
        if key is None:
            METRICS.events_total.labels(kind=CONFIG_MAP_KIND, decision="unowned").inc()
            return None
        self.queue.add(key)
        METRICS.events_total.labels(kind=CONFIG_MAP_KIND, decision="admitted").inc()
        METRICS.queue_depth.set(len(self.queue))
        return key

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def process_next_item(self) -> bool:
        """Reconcile one key from the queue.  Returns False once the queue is shut down."""
        key = self.queue.get()
        if key is None:
            return False
        METRICS.queue_depth.set(len(self.queue))
        METRICS.active_workers.inc()
        try:
            outcome = self._reconcile(key)
            self._handle_outcome(key, outcome)
        finally:
            METRICS.active_workers.dec()
            self.queue.done(key)
        return True

    def _reconcile(self, key: ObjectKey) -> Outcome:
        deadline = Deadline(self.reconcile_timeout_seconds, cancelled=self._cancel)
        started = time.monotonic()
        try:
            return self.reconciler.reconcile(key, deadline)
        except Exception as exc:
            # A reconciler bug must not kill the worker; retry like any failure.
            self.logger.exception(
                "Unexpected error reconciling %s",
                key,
                extra={"context": {"car": str(key)}},
            )
            return Fail(exc)
        finally:
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)

    def _handle_outcome(self, key: ObjectKey, outcome: Outcome) -> None:
        if isinstance(outcome, Fail) and self.queue.shutting_down:
            # The next start re-lists every object, so nothing is rescheduled.
            METRICS.reconcile_total.labels(result="cancelled").inc()
            self.logger.info(
                "Reconcile of %s interrupted by shutdown: %s",
                key,
                outcome.error,
                extra={"context": {"car": str(key), "error_type": type(outcome.error).__name__}},
            )
            return
        if isinstance(outcome, Fail):
            delay_seconds = self.backoff.when(key)
            attempt = self.backoff.retries(key)
            METRICS.reconcile_total.labels(result="error").inc()
            METRICS.reconcile_errors_total.labels(error=type(outcome.error).__name__).inc()
            METRICS.retry_total.inc()
            self.logger.error(
                "Reconcile of %s failed: %s; scheduling retry attempt %d in %.1fs",
                key,
                outcome.error,
                attempt,
                delay_seconds,
                extra={
                    "context": {
                        "car": str(key),
                        "error_type": type(outcome.error).__name__,
                        "attempt": attempt,
                        "delay_seconds": delay_seconds,
                    }
                },
            )
            self.queue.add_after(key, delay_seconds)
            return

        self.backoff.forget(key)
        if isinstance(outcome, RequeueAfter):
            METRICS.reconcile_total.labels(result="requeue").inc()
            self.queue.add_after(key, outcome.delay_seconds)
            return
        if isinstance(outcome, Done):
            METRICS.reconcile_total.labels(result=outcome.result).inc()

    def _worker_loop(self) -> None:
        while self.process_next_item():
            pass

    def start_workers(self) -> None:
        for index in range(self.workers):
            thread = threading.Thread(
                target=self._worker_loop,
                name=f"reconcile-worker-{index}",
                daemon=True,
            )
            thread.start()
            self._worker_threads.append(thread)
        self.logger.info("Started %d reconcile worker(s)", self.workers)

    def threads_alive(self) -> bool:
        """Return False if any started worker or watch-source thread has died."""
        threads = self._worker_threads + self._source_threads
        return all(thread.is_alive() for thread in threads)

    # ------------------------------------------------------------------
    # Watch sources
    # ------------------------------------------------------------------

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active = list(self._active_watchers.values())
        for watcher in active:
            watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _mark_synced(self, kind: str) -> None:
        with self._synced_lock:
            self._synced.add(kind)
            all_synced = len(self._synced) >= len(self.sources)
        if all_synced and not self.ready.is_set():
            self.ready.set()
            self.logger.info("All watch sources synced")

    def _list_and_enqueue(self, source: WatchSource) -> str | None:
        """List every object of *source*, feed each through the event handler.

        Used at startup and after ``410 Gone``: the controller is level
        triggered, so re-enqueueing everything is a full resync rather than a
        diff against what was missed.
        """
        response = source.list_fn(**source.list_kwargs)
        items, resource_version = list_items_and_version(response)
        for raw in items:
            self.handle_event(source.kind, "ADDED", source.decode(raw))
        self.logger.info(
            "Listed %d %s object(s) at resourceVersion %s",
            len(items),
            source.kind,
            resource_version,
        )
        return resource_version

    def _access_denied(self, source: WatchSource, phase: str, status: int | None) -> None:
        self.logger.error(
            "Kubernetes API access denied during %s of %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            phase,
            source.kind,
            status,
        )
        METRICS.watch_errors_total.labels(kind=source.kind).inc()
        self.request_stop()

    def run_source(self, source: WatchSource, stop: threading.Event) -> None:
        """List-then-watch one kind until shutdown.

        1. Retries the initial list with jittered exponential backoff so
           transient API startup failures do not crash-loop the controller.
        2. Opens a watch from the list's ``resourceVersion``.
        3. On ``410 Gone`` (etcd compaction), re-lists and resumes.
        4. On transient errors, reconnects with jittered backoff capped at 30 s.

        ``401`` / ``403`` are configuration errors (RBAC/auth): the whole
        controller is stopped with a clear log message instead of retrying
        forever.
        """
        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._list_and_enqueue(source)
                self._mark_synced(source.kind)
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self._access_denied(source, "initial list", exc.status)
                    return
                self.logger.exception("Initial %s list failed", source.kind)
                METRICS.watch_errors_total.labels(kind=source.kind).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", source.kind)
                METRICS.watch_errors_total.labels(kind=source.kind).inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        # Reset to 1 on every clean watch iteration; doubled on error up to 30 s.
        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watchers[source.kind] = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=source.kind).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    source.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=WATCH_TIMEOUT_SECONDS,
                    **source.list_kwargs,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    raw = event.get("object")
                    if raw is None:
                        continue
                    obj = source.decode(raw)
                    if obj.resource_version:
                        resource_version = obj.resource_version

                    self.handle_event(source.kind, str(event.get("type", "")), obj)

                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning(
                        "%s watch resource version expired, re-listing", source.kind
                    )
                    try:
                        resource_version = self._list_and_enqueue(source)
                    except Exception as relist_exc:
                        if isinstance(relist_exc, ApiException) and relist_exc.status in {401, 403}:
                            self._access_denied(source, "410 re-list", relist_exc.status)
                            return
                        self.logger.exception("Failed to re-list %s after 410", source.kind)
                        METRICS.watch_errors_total.labels(kind=source.kind).inc()
                        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                        stop.wait(timeout=jittered)
                        backoff_seconds = min(backoff_seconds * 2, 30)
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self._access_denied(source, "watch", exc.status)
                    return

                self.logger.exception("Kubernetes API %s watch error", source.kind)
                METRICS.watch_errors_total.labels(kind=source.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected %s watch error", source.kind)
                METRICS.watch_errors_total.labels(kind=source.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watchers.get(source.kind) is watcher:
                        del self._active_watchers[source.kind]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Run workers and watch sources until shutdown.

        On shutdown the queue stops handing out keys, in-flight reconciles
        see their deadline cancelled, and workers are joined for at most
        ``shutdown_timeout_seconds``.  Pending keys are not drained: the
        initial list of the next run re-enqueues every object anyway.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        self.start_workers()
        self._source_threads = [
            threading.Thread(
                target=self.run_source,
                args=(source, stop),
                name=f"watch-{source.kind.lower()}",
                daemon=True,
            )
            for source in self.sources
        ]
        for thread in self._source_threads:
            thread.start()

        while not self._should_stop(stop):
            stop.wait(timeout=1.0)
            METRICS.queue_depth.set(len(self.queue))

        self.logger.info("Stopping controller")
        self.ready.clear()
        self.queue.shut_down()
        self._cancel.set()
        self.request_stop()

        join_deadline = time.monotonic() + self.shutdown_timeout_seconds
        for thread in self._worker_threads:
            thread.join(timeout=max(0.0, join_deadline - time.monotonic()))
        stuck = [thread.name for thread in self._worker_threads if thread.is_alive()]
        if stuck:
            self.logger.error(
                "Reconcile worker(s) did not stop within %ss: %s",
                self.shutdown_timeout_seconds,
                ", ".join(stuck),
            )
        for thread in self._source_threads:
            thread.join(timeout=max(0.0, join_deadline - time.monotonic()))


def build_controller(
    cfg: ControllerConfig,
    core_api: CoreV1Api,
    custom_api: CustomObjectsApi,
) -> CarController:
    """Wire store, predicate, reconciler and sources from a :class:`ControllerConfig`.

    The controller colour is injected into both the predicate and the
    reconciler here; nothing reads it from global state afterwards.
    """
    store = KubeObjectStore(
        core_api=core_api,
        custom_api=custom_api,
        car_resource=cfg.car_resource,
    )
    reconciler = CarReconciler(
        store=store,
        identity=cfg.color,
        classification_label=cfg.classification_label,
    )
    predicate = LabelPredicate(key=cfg.classification_label, value=cfg.color)
    sources = [
        car_source(custom_api, cfg.car_resource, cfg.namespace),
        config_map_source(core_api, cfg.namespace),
    ]
    return CarController(
        reconciler=reconciler,
        predicate=predicate,
        sources=sources,
        workers=cfg.max_concurrent_reconciles,
        reconcile_timeout_seconds=cfg.reconcile_timeout_seconds,
        shutdown_timeout_seconds=cfg.shutdown_timeout_seconds,
        backoff=ExponentialBackoff(
            base_delay=cfg.retry_base_delay_seconds,
            max_delay=cfg.retry_max_delay_seconds,
        ),
        car_resource=cfg.car_resource,
    )
