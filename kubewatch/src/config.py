from __future__ import annotations

import os
from dataclasses import dataclass, field

from kubewatch.src.kinds import ResourceKind, parse_kind

KIND_ENV_FLAGS: dict[ResourceKind, str] = {
    ResourceKind.POD: "WATCH_PODS",
    ResourceKind.SERVICE: "WATCH_SERVICES",
    ResourceKind.REPLICATION_CONTROLLER: "WATCH_REPLICATION_CONTROLLERS",
    ResourceKind.DEPLOYMENT: "WATCH_DEPLOYMENTS",
    ResourceKind.JOB: "WATCH_JOBS",
    ResourceKind.PERSISTENT_VOLUME: "WATCH_PERSISTENT_VOLUMES",
}


@dataclass(frozen=True)
class WatchConfig:
    """Process configuration resolved from environment variables."""

    enabled_kinds: tuple[ResourceKind, ...]
    resync_period_seconds: int = 1800
    backoff_ceiling_seconds: int = 30
    handler_max_attempts: int = 3
    auth_failure_fatal: bool = True
    ignore_updates_for: frozenset[ResourceKind] = field(default_factory=frozenset)
    health_port: int = 8081


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _parse_kind_list(name: str) -> frozenset[ResourceKind]:
    raw = os.getenv(name, "")
    try:
        return frozenset(parse_kind(part) for part in raw.split(",") if part.strip())
    except ValueError as exc:
        raise ValueError(f"{name}: {exc}") from exc


def load_config_from_env() -> WatchConfig:
    """Build a :class:`WatchConfig` from environment variables.

    Environment variables (with defaults):
        ``WATCH_PODS`` ... ``WATCH_PERSISTENT_VOLUMES``: per-kind switches (``true``).
        ``RESYNC_PERIOD_SECONDS``: forced full re-list interval (``1800``).
        ``BACKOFF_CEILING_SECONDS``: cap for list/watch retry backoff (``30``).
        ``HANDLER_MAX_ATTEMPTS``: deliveries tried before an event is dropped (``3``).
        ``AUTH_FAILURE_FATAL``: stop the process on 401/403 instead of retrying (``true``).
        ``IGNORE_UPDATES_FOR``: comma-separated kinds whose updates are not delivered.
        ``HEALTH_PORT``: health/metrics listener port (``8081``).
    """
    enabled_kinds = tuple(
        kind for kind, flag in KIND_ENV_FLAGS.items() if env_bool(flag, default=True)
    )
    if not enabled_kinds:
        raise ValueError(
            "At least one resource kind must be enabled "
            f"({', '.join(KIND_ENV_FLAGS.values())})"
        )

    return WatchConfig(
        enabled_kinds=enabled_kinds,
        resync_period_seconds=env_int("RESYNC_PERIOD_SECONDS", 1800, minimum=1),
        backoff_ceiling_seconds=env_int("BACKOFF_CEILING_SECONDS", 30, minimum=1),
        handler_max_attempts=env_int("HANDLER_MAX_ATTEMPTS", 3, minimum=1),
        auth_failure_fatal=env_bool("AUTH_FAILURE_FATAL", default=True),
        ignore_updates_for=_parse_kind_list("IGNORE_UPDATES_FOR"),
        health_port=env_int("HEALTH_PORT", 8081, minimum=1, maximum=65535),
    )
