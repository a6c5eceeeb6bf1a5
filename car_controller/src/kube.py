from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Mapping
from typing import Any, TypeVar

import urllib3
from kubernetes import client, config
from kubernetes.client import (
    ApiException,
    CoreV1Api,
    CustomObjectsApi,
    V1ConfigMap,
    V1ObjectMeta,
    V1OwnerReference,
)
from kubernetes.config.config_exception import ConfigException

from car_controller.src.config import CarResource
from car_controller.src.errors import (
    AlreadyExists,
    Conflict,
    NotFound,
    StoreError,
    TransientStoreError,
)
from car_controller.src.models import (
    CAR_KIND,
    CONFIG_MAP_KIND,
    Car,
    ConfigMap,
    ObjectKey,
    OwnerReference,
)

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, CustomObjectsApi]:
    """Return CoreV1 and CustomObjects API clients using the active kube configuration."""
    return client.CoreV1Api(), client.CustomObjectsApi()


def _str_map(raw: Any) -> dict[str, str]:
    """Coerce a label/data mapping into a stable ``dict[str, str]``."""
    if not isinstance(raw, Mapping):
        return {}
    return {
        k: ("" if v is None else str(v))
        for k, v in raw.items()
        if isinstance(k, str)
    }


def car_from_api(raw: Mapping[str, Any], default_api_version: str = "") -> Car:
    """Build a :class:`Car` from a custom object dict as returned by the API.

    Watch events occasionally omit ``apiVersion``; *default_api_version*
    fills the gap so owner references built from the Car stay valid.
    """
    metadata = raw.get("metadata") or {}
    return Car(
        namespace=metadata.get("namespace") or "",
        name=metadata.get("name") or "",
        uid=metadata.get("uid") or "",
        api_version=raw.get("apiVersion") or default_api_version,
        labels=_str_map(metadata.get("labels")),
        resource_version=metadata.get("resourceVersion"),
    )


def _owner_reference_from_api(ref: Any) -> OwnerReference:
    return OwnerReference(
        api_version=getattr(ref, "api_version", "") or "",
        kind=getattr(ref, "kind", "") or "",
        name=getattr(ref, "name", "") or "",
        uid=getattr(ref, "uid", "") or "",
        controller=bool(getattr(ref, "controller", False)),
        block_owner_deletion=bool(getattr(ref, "block_owner_deletion", False)),
    )


def config_map_from_api(raw: Any) -> ConfigMap:
    """Build a :class:`ConfigMap` from a ``V1ConfigMap``-shaped object."""
    metadata = getattr(raw, "metadata", None)
    binary_data = getattr(raw, "binary_data", None)
    return ConfigMap(
        namespace=getattr(metadata, "namespace", None) or "",
        name=getattr(metadata, "name", None) or "",
        data=_str_map(getattr(raw, "data", None)),
        labels=_str_map(getattr(metadata, "labels", None)),
        annotations=_str_map(getattr(metadata, "annotations", None)),
        binary_data=_str_map(binary_data) if binary_data is not None else None,
        owner_references=[
            _owner_reference_from_api(ref)
            for ref in (getattr(metadata, "owner_references", None) or [])
        ],
        uid=getattr(metadata, "uid", None) or "",
        resource_version=getattr(metadata, "resource_version", None),
        api_object=raw if isinstance(raw, V1ConfigMap) else None,
    )


def _owner_references_to_api(refs: list[OwnerReference]) -> list[V1OwnerReference] | None:
    return [
        V1OwnerReference(
            api_version=ref.api_version,
            kind=ref.kind,
            name=ref.name,
            uid=ref.uid,
            controller=ref.controller,
            block_owner_deletion=ref.block_owner_deletion,
        )
        for ref in refs
    ] or None


def config_map_to_api(obj: ConfigMap) -> V1ConfigMap:
    """Build the request body for *obj*.

    When *obj* was read from the API, the fetched object is copied and only
    the fields the model owns are overwritten, so fields set by other
    writers survive a replace.
    """
    if isinstance(obj.api_object, V1ConfigMap) and obj.api_object.metadata is not None:
        body = copy.deepcopy(obj.api_object)
        body.metadata.labels = obj.labels or None
        body.metadata.annotations = obj.annotations or None
        body.metadata.resource_version = obj.resource_version
        body.metadata.owner_references = _owner_references_to_api(obj.owner_references)
        body.data = dict(obj.data)
        body.binary_data = obj.binary_data
        return body
    return V1ConfigMap(
        api_version="v1",
        kind=CONFIG_MAP_KIND,
        metadata=V1ObjectMeta(
            name=obj.name,
            namespace=obj.namespace,
            labels=obj.labels or None,
            annotations=obj.annotations or None,
            resource_version=obj.resource_version,
            owner_references=_owner_references_to_api(obj.owner_references),
        ),
        data=dict(obj.data),
        binary_data=obj.binary_data,
    )


class KubeObjectStore:
    """Keyed get/create/update of Cars and ConfigMaps over the Kubernetes API.

    API failures are translated into the :mod:`car_controller.src.errors`
    taxonomy so the reconciler never has to inspect HTTP status codes:

    ``404``           -> :class:`NotFound`
    ``409`` (create)  -> :class:`AlreadyExists`
    ``409`` (update)  -> :class:`Conflict` (stale ``resourceVersion``)
    anything else     -> :class:`TransientStoreError`

    Every call accepts ``timeout`` (seconds), forwarded as the client's
    ``_request_timeout`` so a reconcile deadline bounds each HTTP request.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        custom_api: CustomObjectsApi,
        car_resource: CarResource | None = None,
    ) -> None:
        self.core_api = core_api
        self.custom_api = custom_api
        self.car_resource = car_resource or CarResource()

    @staticmethod
    def _request_kwargs(timeout: float | None) -> dict[str, Any]:
        if timeout is None:
            return {}
        return {"_request_timeout": max(timeout, 0.001)}

    def _call(
        self,
        action: str,
        kind: str,
        key: ObjectKey,
        fn: Callable[[], T],
        conflict_error: type[StoreError] = Conflict,
    ) -> T:
        try:
            return fn()
        except ApiException as exc:
            message = f"{action} {kind} {key} failed: {exc.status} {exc.reason}"
            if exc.status == 404:
                raise NotFound(message, status=exc.status) from exc
            if exc.status == 409:
                raise conflict_error(message, status=exc.status) from exc
            raise TransientStoreError(message, status=exc.status) from exc
        except urllib3.exceptions.HTTPError as exc:
            raise TransientStoreError(f"{action} {kind} {key} failed: {exc}") from exc

    def get(self, kind: str, key: ObjectKey, *, timeout: float | None = None) -> Car | ConfigMap:
        if kind == CAR_KIND:
            raw = self._call(
                "get",
                kind,
                key,
                lambda: self.custom_api.get_namespaced_custom_object(
                    group=self.car_resource.group,
                    version=self.car_resource.version,
                    namespace=key.namespace,
                    plural=self.car_resource.plural,
                    name=key.name,
                    **self._request_kwargs(timeout),
                ),
            )
            return car_from_api(raw, self.car_resource.api_version)
        if kind == CONFIG_MAP_KIND:
            raw = self._call(
                "get",
                kind,
                key,
                lambda: self.core_api.read_namespaced_config_map(
                    name=key.name,
                    namespace=key.namespace,
                    **self._request_kwargs(timeout),
                ),
            )
            return config_map_from_api(raw)
        raise ValueError(f"unsupported kind: {kind}")

    def create(self, obj: ConfigMap, *, timeout: float | None = None) -> ConfigMap:
        if not isinstance(obj, ConfigMap):
            raise ValueError(f"create is only supported for {CONFIG_MAP_KIND}, got: {obj.kind}")
        body = config_map_to_api(obj)
        body.metadata.resource_version = None
        created = self._call(
            "create",
            obj.kind,
            obj.key,
            lambda: self.core_api.create_namespaced_config_map(
                namespace=obj.namespace,
                body=body,
                **self._request_kwargs(timeout),
            ),
            conflict_error=AlreadyExists,
        )
        return config_map_from_api(created)

    def update(self, obj: ConfigMap, *, timeout: float | None = None) -> ConfigMap:
        """Replace *obj*, guarded by its ``resourceVersion``.

        A replace without a version would silently clobber concurrent
        writers, so it is refused outright.
        """
        if not isinstance(obj, ConfigMap):
            raise ValueError(f"update is only supported for {CONFIG_MAP_KIND}, got: {obj.kind}")
        if not obj.resource_version:
            raise ValueError(f"update of {obj.kind} {obj.key} requires a resource_version")
        updated = self._call(
            "update",
            obj.kind,
            obj.key,
            lambda: self.core_api.replace_namespaced_config_map(
                name=obj.name,
                namespace=obj.namespace,
                body=config_map_to_api(obj),
                **self._request_kwargs(timeout),
            ),
        )
        return config_map_from_api(updated)
