from __future__ import annotations

import math
import os
from collections.abc import Mapping
from dataclasses import dataclass, field


class ConfigError(ValueError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class CarResource:
    """Coordinates of the Car custom resource served by the API server."""

    group: str = "example.example.com"
    version: str = "v1"
    plural: str = "cars"
    kind: str = "Car"

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        color: The controller identity.  Only Cars whose classification
               label carries this value are reconciled.
        classification_label: Label key compared against ``color``.
        namespace: Namespace to watch; empty string watches all namespaces.
        car_resource: Group/version/plural of the Car custom resource.
        max_concurrent_reconciles: Size of the worker pool.
        reconcile_timeout_seconds: Deadline applied to every reconcile call.
        retry_base_delay_seconds: First backoff delay after a failed reconcile.
        retry_max_delay_seconds: Upper bound on the backoff delay.
        shutdown_timeout_seconds: How long to wait for in-flight workers.
        health_port: Port serving ``/healthz``, ``/readyz`` and ``/metrics``.
        log_level: Root logger level name.
    """

    color: str
    classification_label: str = "color"
    namespace: str = ""
    car_resource: CarResource = field(default_factory=CarResource)
    max_concurrent_reconciles: int = 1
    reconcile_timeout_seconds: float = 30.0
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    shutdown_timeout_seconds: float = 30.0
    health_port: int = 8080
    log_level: str = "INFO"


def env_int(
    env: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_float(
    env: Mapping[str, str],
    name: str,
    default: float,
    *,
    minimum: float | None = None,
) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = float(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be a number") from exc

    if not math.isfinite(value):
        raise ConfigError(f"{name} must be finite, got: {raw}")
    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    return value


def _env_str(env: Mapping[str, str], name: str, default: str) -> str:
    value = env.get(name)
    if value is None:
        return default
    return value.strip()


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    ``CONTROLLER_COLOR`` is mandatory: a controller without an identity
    would admit nothing, so startup fails with :class:`ConfigError` instead.
    """
    values = env if env is not None else os.environ

    color = _env_str(values, "CONTROLLER_COLOR", "")
    if not color:
        raise ConfigError("CONTROLLER_COLOR must be a non-empty string")

    classification_label = _env_str(values, "CLASSIFICATION_LABEL", "color")
    if not classification_label:
        raise ConfigError("CLASSIFICATION_LABEL must be a non-empty string")

    car_resource = CarResource(
        group=_env_str(values, "CAR_GROUP", "example.example.com"),
        version=_env_str(values, "CAR_VERSION", "v1"),
        plural=_env_str(values, "CAR_PLURAL", "cars"),
    )
    for name, value in (
        ("CAR_GROUP", car_resource.group),
        ("CAR_VERSION", car_resource.version),
        ("CAR_PLURAL", car_resource.plural),
    ):
        if not value:
            raise ConfigError(f"{name} must be a non-empty string")

    retry_base = env_float(values, "RETRY_BASE_DELAY_SECONDS", 1.0, minimum=0.001)
    retry_max = env_float(values, "RETRY_MAX_DELAY_SECONDS", 30.0, minimum=0.001)
    if retry_max < retry_base:
        raise ConfigError(
            "RETRY_MAX_DELAY_SECONDS must be >= RETRY_BASE_DELAY_SECONDS, "
            f"got: {retry_max} < {retry_base}"
        )

    return ControllerConfig(
        color=color,
        classification_label=classification_label,
        namespace=_env_str(values, "WATCH_NAMESPACE", ""),
        car_resource=car_resource,
        max_concurrent_reconciles=env_int(
            values, "MAX_CONCURRENT_RECONCILES", 1, minimum=1, maximum=64
        ),
        reconcile_timeout_seconds=env_float(
            values, "RECONCILE_TIMEOUT_SECONDS", 30.0, minimum=0.1
        ),
        retry_base_delay_seconds=retry_base,
        retry_max_delay_seconds=retry_max,
        shutdown_timeout_seconds=env_float(
            values, "SHUTDOWN_TIMEOUT_SECONDS", 30.0, minimum=0.0
        ),
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
        log_level=_env_str(values, "LOG_LEVEL", "INFO").upper() or "INFO",
    )
