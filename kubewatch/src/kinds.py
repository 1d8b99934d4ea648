from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class ResourceKind(StrEnum):
    POD = "pod"
    SERVICE = "service"
    REPLICATION_CONTROLLER = "replicationcontroller"
    DEPLOYMENT = "deployment"
    JOB = "job"
    PERSISTENT_VOLUME = "persistentvolume"


@dataclass(frozen=True)
class KindSpec:
    """Static description of how to list and watch one resource kind.

    ``api_group`` names the client attribute on :class:`kubewatch.src.kube.ApiClients`
    and ``list_function`` the cluster-wide list method on that client.  The
    watch stream reuses the same list function, so the client deserializes
    stream payloads into the matching typed model.
    """

    kind: ResourceKind
    api_group: str
    list_function: str
    namespaced: bool = True
    track_updates: bool = True


KIND_SPECS: dict[ResourceKind, KindSpec] = {
    ResourceKind.POD: KindSpec(
        kind=ResourceKind.POD,
        api_group="core",
        list_function="list_pod_for_all_namespaces",
    ),
    ResourceKind.SERVICE: KindSpec(
        kind=ResourceKind.SERVICE,
        api_group="core",
        list_function="list_service_for_all_namespaces",
    ),
    ResourceKind.REPLICATION_CONTROLLER: KindSpec(
        kind=ResourceKind.REPLICATION_CONTROLLER,
        api_group="core",
        list_function="list_replication_controller_for_all_namespaces",
    ),
    ResourceKind.DEPLOYMENT: KindSpec(
        kind=ResourceKind.DEPLOYMENT,
        api_group="apps",
        list_function="list_deployment_for_all_namespaces",
    ),
    ResourceKind.JOB: KindSpec(
        kind=ResourceKind.JOB,
        api_group="batch",
        list_function="list_job_for_all_namespaces",
    ),
    ResourceKind.PERSISTENT_VOLUME: KindSpec(
        kind=ResourceKind.PERSISTENT_VOLUME,
        api_group="core",
        list_function="list_persistent_volume",
        namespaced=False,
    ),
}


def parse_kind(value: str) -> ResourceKind:
    """Parse a kind name, accepting separators and a trailing plural ``s``.

    ``"replication-controllers"``, ``"ReplicationController"`` and
    ``"replication_controller"`` all resolve to the same kind.
    """
    normalized = value.strip().lower().replace("-", "").replace("_", "")
    for kind in ResourceKind:
        if normalized in {kind.value, f"{kind.value}s"}:
            return kind
    raise ValueError(f"Unknown resource kind: {value!r}")
