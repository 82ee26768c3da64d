from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from autopilot.src.kube import SUPPORTED_KINDS


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        resource_kind:  Kind of resource to watch (``Pod`` by default).
        namespace:      Namespace to watch, or ``None`` for all namespaces.
        label_selector: Optional label selector applied to list and watch.
        workers:        Size of the reconcile worker pool.
        base_delay_seconds / backoff_factor / max_delay_seconds:
                        Exponential retry policy for failed reconciles.
        resync_period_seconds:
                        Interval for re-dispatching every cached object
                        (``0`` disables periodic resync).
        cache_sync_timeout_seconds:
                        Maximum wait for the initial list (``0`` waits forever).
        shutdown_timeout_seconds:
                        Graceful drain budget before queued work is aborted.
        health_port:    Port for ``/healthz``, ``/readyz`` and ``/metrics``.
    """

    resource_kind: str = "Pod"
    namespace: str | None = None
    label_selector: str | None = None
    workers: int = 2
    base_delay_seconds: float = 1.0
    backoff_factor: float = 2.0
    max_delay_seconds: float = 1000.0
    resync_period_seconds: float = 600.0
    cache_sync_timeout_seconds: float = 0.0
    shutdown_timeout_seconds: float = 30.0
    health_port: int = 8080


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
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
    name: str,
    default: float,
    *,
    minimum: float | None = None,
    exclusive_minimum: bool = False,
    env: Mapping[str, str] | None = None,
) -> float:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = float(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be a number") from exc

    if minimum is not None:
        if exclusive_minimum and value <= minimum:
            raise ConfigError(f"{name} must be > {minimum:g}, got: {value:g}")
        if not exclusive_minimum and value < minimum:
            raise ConfigError(f"{name} must be >= {minimum:g}, got: {value:g}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller configuration from environment variables.

    Environment variables (with defaults):
        ``RESOURCE_KIND``  : kind to watch (``Pod``).
        ``WATCH_NAMESPACE``: namespace to watch (empty: all namespaces).
        ``LABEL_SELECTOR`` : label selector for list/watch (empty: none).
        ``WORKERS``        : reconcile worker pool size (``2``).
        ``BASE_DELAY_SECONDS`` / ``BACKOFF_FACTOR`` / ``MAX_DELAY_SECONDS``
                           : retry backoff policy (``1`` / ``2`` / ``1000``).
        ``RESYNC_PERIOD_SECONDS``: periodic resync interval (``600``, 0 = off).
        ``CACHE_SYNC_TIMEOUT_SECONDS``: initial sync budget (``0`` = forever).
        ``SHUTDOWN_TIMEOUT_SECONDS``: graceful drain budget (``30``).
        ``HEALTH_PORT``    : health and metrics port (``8080``).

    Raises :class:`ConfigError` naming the offending variable.
    """
    values = env if env is not None else os.environ

    resource_kind = values.get("RESOURCE_KIND", "Pod").strip()
    if resource_kind not in SUPPORTED_KINDS:
        raise ConfigError(
            f"RESOURCE_KIND must be one of {', '.join(SUPPORTED_KINDS)}, got: {resource_kind!r}"
        )

    base_delay = env_float("BASE_DELAY_SECONDS", 1.0, minimum=0, exclusive_minimum=True, env=values)
    max_delay = env_float("MAX_DELAY_SECONDS", 1000.0, minimum=0, exclusive_minimum=True, env=values)
    if max_delay < base_delay:
        raise ConfigError(
            f"MAX_DELAY_SECONDS must be >= BASE_DELAY_SECONDS ({base_delay:g}), got: {max_delay:g}"
        )

    return ControllerConfig(
        resource_kind=resource_kind,
        namespace=values.get("WATCH_NAMESPACE", "").strip() or None,
        label_selector=values.get("LABEL_SELECTOR", "").strip() or None,
        workers=env_int("WORKERS", 2, minimum=1, env=values),
        base_delay_seconds=base_delay,
        backoff_factor=env_float("BACKOFF_FACTOR", 2.0, minimum=1, env=values),
        max_delay_seconds=max_delay,
        resync_period_seconds=env_float("RESYNC_PERIOD_SECONDS", 600.0, minimum=0, env=values),
        cache_sync_timeout_seconds=env_float(
            "CACHE_SYNC_TIMEOUT_SECONDS", 0.0, minimum=0, env=values
        ),
        shutdown_timeout_seconds=env_float(
            "SHUTDOWN_TIMEOUT_SECONDS", 30.0, minimum=0, exclusive_minimum=True, env=values
        ),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=values),
    )
