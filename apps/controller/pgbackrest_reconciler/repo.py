"""Repository lifecycle: dedicated host, repository volumes, repo status.

Also applies the shared pgBackRest configuration and, when a repository host
is configured, the SSH trust material it needs.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Iterable

from . import backrest_config, naming
from .conditions import (
    CONDITION_FALSE,
    CONDITION_REPO_HOST_READY,
    CONDITION_TRUE,
    CONDITION_UNKNOWN,
    Condition,
    set_status_condition,
)
from .errors import AggregateError, BackrestError
from .events import EVENT_NORMAL, EVENT_REPO_HOST_CREATED
from .models import (
    PostgresCluster,
    RepoHostStatus,
    RepoResources,
    RepoStatus,
    RepositoryConfig,
    repo_host_enabled,
    replica_create_repo_name,
)

logger = logging.getLogger(__name__)

# Postgres group id and "nobody" supplemental group
POSTGRES_FS_GROUP = 26
NOBODY_GROUP = 65534


def _creation_timestamp(resource: dict[str, Any]) -> str:
    # RFC 3339 timestamps in UTC sort lexicographically
    return (resource.get("metadata") or {}).get("creationTimestamp") or ""


def select_repo_host_name(cluster: PostgresCluster, resources: RepoResources) -> tuple[str, bool]:
    """Pick the canonical dedicated host.

    The oldest observed host wins; duplicates are left for a later cleanup.
    When none exists a deterministic name is synthesized.

    Returns:
        Tuple of (host name, whether the host is about to be created)
    """
    if not resources.hosts:
        return naming.repo_host_name(cluster.name), True
    resources.hosts.sort(key=_creation_timestamp)
    return resources.hosts[0]["metadata"]["name"], False


def _object_metadata(cluster: PostgresCluster, name: str, labels: dict[str, str]) -> dict[str, Any]:
    return {
        "name": name,
        "namespace": cluster.namespace,
        "labels": naming.merge(
            cluster.spec.metadata.labels,
            cluster.spec.pgbackrest_metadata.labels,
            labels,
        ),
        "annotations": naming.merge(
            cluster.spec.metadata.annotations,
            cluster.spec.pgbackrest_metadata.annotations,
        ),
    }


def repo_host_intent(cluster: PostgresCluster, name: str) -> dict[str, Any]:
    """Desired StatefulSet for the dedicated repository host."""
    metadata = _object_metadata(cluster, name, naming.dedicated_labels(cluster.name))

    security_context: dict[str, Any] = {"supplementalGroups": [NOBODY_GROUP]}
    if not cluster.spec.openshift:
        security_context["fsGroup"] = POSTGRES_FS_GROUP

    volumes = []
    mounts = []
    for repo in cluster.spec.repos:
        if repo.volume is None:
            continue
        volumes.append({
            "name": repo.name,
            "persistentVolumeClaim": {"claimName": naming.repo_volume(cluster.name, repo.name)},
        })
        mounts.append({"name": repo.name, "mountPath": f"{backrest_config.REPO_VOLUME_ROOT}/{repo.name}"})

    template = {
        "metadata": {
            "labels": dict(metadata["labels"]),
            "annotations": dict(metadata["annotations"]),
        },
        "spec": {
            "securityContext": security_context,
            "containers": [{
                "name": naming.CONTAINER_PGBACKREST,
                "image": cluster.spec.image,
                "command": ["/usr/sbin/sshd", "-D", "-e"],
                "volumeMounts": mounts,
            }],
            "volumes": volumes,
        },
    }
    backrest_config.add_ssh_to_pod(cluster, template, naming.CONTAINER_PGBACKREST)
    backrest_config.add_configs_to_pod(cluster, template, backrest_config.CM_REPO_KEY,
                                       naming.CONTAINER_PGBACKREST)

    return {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": metadata,
        "spec": {
            "replicas": 1,
            "selector": {"matchLabels": naming.dedicated_labels(cluster.name)},
            "serviceName": naming.cluster_pod_service(cluster.name),
            "template": template,
        },
    }


def repo_host_status(host: dict[str, Any]) -> RepoHostStatus:
    """Ready when every desired replica reports ready."""
    replicas = (host.get("spec") or {}).get("replicas", 1)
    ready_replicas = (host.get("status") or {}).get("readyReplicas") or 0
    return RepoHostStatus(
        api_version=host.get("apiVersion", "apps/v1"),
        kind=host.get("kind", "StatefulSet"),
        ready=ready_replicas == replicas,
    )


def _set_repo_host_condition(cluster: PostgresCluster) -> None:
    repo_host = cluster.status.pgbackrest.repo_host if cluster.status.pgbackrest else None
    condition = Condition(type=CONDITION_REPO_HOST_READY, observed_generation=cluster.generation)
    if repo_host is None:
        condition.status = CONDITION_UNKNOWN
        condition.reason = "RepoHostStatusMissing"
        condition.message = "pgBackRest dedicated repository host status is missing"
    elif repo_host.ready:
        condition.status = CONDITION_TRUE
        condition.reason = "RepoHostReady"
        condition.message = "pgBackRest dedicated repository host is ready"
    else:
        condition.status = CONDITION_FALSE
        condition.reason = "RepoHostNotReady"
        condition.message = "pgBackRest dedicated repository host is not ready"
    set_status_condition(cluster.status.conditions, condition)


def reconcile_dedicated_repo_host(applier, recorder, cluster: PostgresCluster,
                                  repo_host_name: str, is_create: bool) -> dict[str, Any]:
    """Apply the dedicated host and publish ``PGBackRestRepoHostReady``.

    The condition is written on every exit path from whatever host status is
    known at that point.

    Returns:
        The live StatefulSet

    Raises:
        BackrestError: If applying the StatefulSet failed
    """
    try:
        host = applier.apply(cluster, repo_host_intent(cluster, repo_host_name))
        cluster.status.pgbackrest.repo_host = repo_host_status(host)
        if is_create:
            recorder.record(cluster, EVENT_NORMAL, EVENT_REPO_HOST_CREATED,
                            f"created pgBackRest repository host StatefulSet/{repo_host_name}")
        return host
    finally:
        _set_repo_host_condition(cluster)


def repo_volume_intent(cluster: PostgresCluster, repo: RepositoryConfig) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": _object_metadata(cluster, naming.repo_volume(cluster.name, repo.name),
                                     naming.repo_volume_labels(cluster.name, repo.name)),
        "spec": dict(repo.volume or {}),
    }


def get_repo_volume_status(repo_status: list[RepoStatus], repo_volumes: list[dict[str, Any]],
                           config_hashes: dict[str, str], replica_create_repo: str,
                           carried: Iterable[str] = ()) -> list[RepoStatus]:
    """Fold prior status with this cycle's observations.

    Args:
        repo_status: Status entries from the previous cycle
        repo_volumes: Live repository volumes applied this cycle
        config_hashes: Options hash per external repository
        replica_create_repo: Current replica-create repository name
        carried: Repositories whose volume apply failed; their prior entry is kept
            as-is, or a default entry is added for a repository not seen before

    Returns:
        New status list, one entry per repository, sorted by name
    """
    previous = {rs.name: rs for rs in repo_status}
    updated: dict[str, RepoStatus] = {}

    def _prior(name: str) -> RepoStatus | None:
        rs = previous.get(name)
        if rs is None:
            return None
        rs = replace(rs)
        # only the current replica-create repository may claim a completed backup
        if rs.replica_create_backup_complete and rs.name != replica_create_repo:
            rs.replica_create_backup_complete = False
        return rs

    for volume in repo_volumes:
        name = volume["metadata"]["labels"][naming.LABEL_PGBACKREST_REPO]
        bound = (volume.get("status") or {}).get("phase") == "Bound"
        volume_name = (volume.get("spec") or {}).get("volumeName") or ""
        rs = _prior(name)
        if rs is None:
            rs = RepoStatus(name=name, bound=bound, volume_name=volume_name)
        else:
            rs.bound = bound
            if volume_name:
                rs.volume_name = volume_name
        updated[name] = rs

    for name, config_hash in config_hashes.items():
        rs = _prior(name)
        if rs is None:
            rs = RepoStatus(name=name, repo_options_hash=config_hash)
        elif rs.repo_options_hash != config_hash:
            # new external configuration: stanza and replica backup must be redone
            rs.repo_options_hash = config_hash
            rs.stanza_created = False
            rs.replica_create_backup_complete = False
        updated[name] = rs

    for name in carried:
        if name not in updated:
            updated[name] = _prior(name) or RepoStatus(name=name)

    return [updated[name] for name in sorted(updated)]


def reconcile_repos(applier, cluster: PostgresCluster, config_hashes: dict[str, str]) -> None:
    """Apply every volume repository and refresh ``status.pgbackrest.repos``.

    Every repository is attempted; failures are collected and raised together
    after the status has been updated.

    Raises:
        AggregateError: If one or more repository volumes failed to apply
    """
    errors: list[Exception] = []
    volumes: list[dict[str, Any]] = []
    failed: list[str] = []

    for repo in cluster.spec.repos:
        if repo.volume is None:
            continue
        try:
            volumes.append(applier.apply(cluster, repo_volume_intent(cluster, repo)))
        except BackrestError as exc:
            logger.error(f"Failed to reconcile repository volume {repo.name} for {cluster.key}: {exc}")
            errors.append(exc)
            failed.append(repo.name)

    status = cluster.status.pgbackrest
    status.repos = get_repo_volume_status(status.repos, volumes, config_hashes,
                                          replica_create_repo_name(cluster), carried=failed)

    if errors:
        raise AggregateError(errors)


def reconcile_pgbackrest_config(applier, cluster: PostgresCluster, repo_host_name: str,
                                config_hash: str, instance_names: list[str],
                                ssh_secret: dict[str, Any] | None,
                                cluster_domain: str = "cluster.local",
                                component: str = "pgbackrest-reconciler",
                                skip_ssh_secret: bool = False) -> None:
    """Apply the configuration ConfigMap, then SSH material if a repo host is set.

    With ``skip_ssh_secret`` the SSH Secret is left untouched, for cycles in
    which the live Secret could not be read and its keys would otherwise be
    regenerated.

    Raises:
        BackrestError: On the first failed apply
    """
    applier.apply(cluster, backrest_config.config_map_intent(
        cluster, repo_host_name, config_hash, instance_names, cluster_domain, component))

    if not repo_host_enabled(cluster):
        logger.debug(f"Skipping SSH reconciliation for {cluster.key}, no repo host configured")
        return

    applier.apply(cluster, backrest_config.ssh_config_map_intent(cluster))
    if skip_ssh_secret:
        logger.warning(f"Leaving SSH secret of {cluster.key} unchanged, current secret unknown")
        return
    applier.apply(cluster, backrest_config.ssh_secret_intent(cluster, ssh_secret, cluster_domain))
