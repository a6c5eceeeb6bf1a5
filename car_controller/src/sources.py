from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from kubernetes.client import CoreV1Api, CustomObjectsApi

from car_controller.src.config import CarResource
from car_controller.src.kube import car_from_api, config_map_from_api
from car_controller.src.models import CAR_KIND, CONFIG_MAP_KIND, Car, ConfigMap


@dataclass(frozen=True)
class WatchSource:
    """One watched kind: how to list/watch it and how to decode its objects.

    ``list_fn`` is a Kubernetes client list call usable both for the
    initial list and, through :class:`kubernetes.watch.Watch`, for the watch
    stream.  ``decode`` turns a raw API object (dict or ``V1*`` model) into a
    :class:`Car` or :class:`ConfigMap`.
    """

    kind: str
    list_fn: Callable[..., Any]
    decode: Callable[[Any], Car | ConfigMap]
    list_kwargs: dict[str, Any] = field(default_factory=dict)


def list_items_and_version(response: Any) -> tuple[list[Any], str | None]:
    """Return ``(items, resourceVersion)`` of a list response.

    Custom object lists come back as plain dicts, core lists as ``V1*List``
    models; both shapes are accepted.
    """
    if isinstance(response, dict):
        metadata = response.get("metadata") or {}
        return list(response.get("items") or []), metadata.get("resourceVersion")
    items = getattr(response, "items", None) or []
    metadata = getattr(response, "metadata", None)
    return list(items), getattr(metadata, "resource_version", None)


def car_source(custom_api: CustomObjectsApi, resource: CarResource, namespace: str) -> WatchSource:
    def decode(raw: Any) -> Car:
        return car_from_api(raw, resource.api_version)

    if namespace:
        return WatchSource(
            kind=CAR_KIND,
            list_fn=custom_api.list_namespaced_custom_object,
            decode=decode,
            list_kwargs={
                "group": resource.group,
                "version": resource.version,
                "namespace": namespace,
                "plural": resource.plural,
            },
        )
    return WatchSource(
        kind=CAR_KIND,
        list_fn=custom_api.list_cluster_custom_object,
        decode=decode,
        list_kwargs={
            "group": resource.group,
            "version": resource.version,
            "plural": resource.plural,
        },
    )


def config_map_source(core_api: CoreV1Api, namespace: str) -> WatchSource:
    if namespace:
        return WatchSource(
            kind=CONFIG_MAP_KIND,
            list_fn=core_api.list_namespaced_config_map,
            decode=config_map_from_api,
            list_kwargs={"namespace": namespace},
        )
    return WatchSource(
        kind=CONFIG_MAP_KIND,
        list_fn=core_api.list_config_map_for_all_namespaces,
        decode=config_map_from_api,
    )
