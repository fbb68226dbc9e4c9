"""Discovery and cleanup of owned pgBackRest resources.

Lists every backup-related kind carrying the cluster's pgBackRest labels,
keeps only resources controlled by the cluster, deletes those that no longer
correspond to the current spec, and decodes the survivors into
``RepoResources``.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from . import naming
from .errors import AggregateError, BackrestError, NotFoundError, aggregate
from .models import (
    BACKUP_TYPES,
    PostgresCluster,
    RepoResources,
    dedicated_repo_host_enabled,
    repo_host_enabled,
)

logger = logging.getLogger(__name__)

# Kinds listed on every cycle, in this order
OWNED_KINDS = ("ConfigMap", "Job", "PersistentVolumeClaim", "Secret", "StatefulSet", "CronJob")


def is_controlled_by(resource: dict[str, Any], cluster: PostgresCluster) -> bool:
    for ref in (resource.get("metadata") or {}).get("ownerReferences") or []:
        if ref.get("controller") and ref.get("uid") == cluster.uid:
            return True
    return False


def backup_schedule_found(cluster: PostgresCluster, repo_name: str, backup_type: str) -> bool:
    """True if the repository still declares a schedule for ``backup_type``."""
    if backup_type not in BACKUP_TYPES:
        return False
    for repo in cluster.spec.repos:
        if repo.name == repo_name:
            return repo.schedules is not None and repo.schedules.for_type(backup_type) is not None
    return False


def should_retain(cluster: PostgresCluster, resource: dict[str, Any]) -> bool:
    """Classify an owned resource by its labels and decide whether it stays.

    Dedicated host resources also carry the generic repo host label, so they
    are checked first.
    """
    labels = (resource.get("metadata") or {}).get("labels") or {}
    repo_name = labels.get(naming.LABEL_PGBACKREST_REPO)

    if naming.LABEL_PGBACKREST_CONFIG in labels:
        return True
    if naming.LABEL_PGBACKREST_DEDICATED in labels:
        return dedicated_repo_host_enabled(cluster)
    if naming.LABEL_PGBACKREST_REPO_HOST in labels:
        return repo_host_enabled(cluster)
    if naming.LABEL_PGBACKREST_REPO_VOLUME in labels:
        return any(r.name == repo_name and r.volume is not None for r in cluster.spec.repos)
    if naming.LABEL_PGBACKREST_BACKUP in labels:
        return any(r.name == repo_name for r in cluster.spec.repos)
    if naming.LABEL_PGBACKREST_CRONJOB in labels:
        return backup_schedule_found(cluster, repo_name, labels[naming.LABEL_PGBACKREST_CRONJOB])
    return False


def cleanup_repo_resources(store, cluster: PostgresCluster,
                           owned: list[dict[str, Any]]) -> tuple[list[dict[str, Any]], list[Exception]]:
    """Delete owned resources that no longer match the cluster spec.

    Returns:
        Tuple of (retained resources, deletion errors)
    """
    retained: list[dict[str, Any]] = []
    errors: list[Exception] = []

    for resource in owned:
        if should_retain(cluster, resource):
            retained.append(resource)
            continue

        metadata = resource.get("metadata") or {}
        kind = resource.get("kind", "")
        logger.info(f"Deleting {kind} {metadata.get('namespace')}/{metadata.get('name')} "
                    f"no longer required by {cluster.key}")
        try:
            store.delete(kind, metadata.get("namespace", cluster.namespace),
                         metadata.get("name", ""), propagation="Background")
        except BackrestError as exc:
            logger.error(f"Failed to delete {kind} {metadata.get('name')}: {exc}")
            errors.append(exc)

    return retained, errors


# Decoders: one per listed kind, each filling its own field of RepoResources

def _decode_config_maps(cluster, items, resources: RepoResources) -> None:
    for item in items:
        if item["metadata"].get("name") == naming.ssh_config(cluster.name):
            resources.ssh_config = item
            break


def _decode_jobs(cluster, items, resources: RepoResources) -> None:
    for item in items:
        labels = item["metadata"].get("labels") or {}
        if labels.get(naming.LABEL_PGBACKREST_BACKUP) == naming.BACKUP_REPLICA_CREATE:
            resources.replica_create_backup_jobs.append(item)


def _decode_volumes(cluster, items, resources: RepoResources) -> None:
    resources.volumes.extend(items)


def _decode_secrets(cluster, items, resources: RepoResources) -> None:
    for item in items:
        if item["metadata"].get("name") == naming.ssh_secret(cluster.name):
            resources.ssh_secret = item
            break


def _decode_hosts(cluster, items, resources: RepoResources) -> None:
    resources.hosts.extend(items)


def _decode_cronjobs(cluster, items, resources: RepoResources) -> None:
    resources.cronjobs.extend(items)


DECODERS: dict[str, Callable[[PostgresCluster, list[dict[str, Any]], RepoResources], None]] = {
    "ConfigMap": _decode_config_maps,
    "Job": _decode_jobs,
    "PersistentVolumeClaim": _decode_volumes,
    "Secret": _decode_secrets,
    "StatefulSet": _decode_hosts,
    "CronJob": _decode_cronjobs,
}


def get_pgbackrest_resources(store, cluster: PostgresCluster) -> tuple[RepoResources, AggregateError | None]:
    """List, filter and clean the cluster's pgBackRest resources.

    A failed list or delete does not stop the remaining kinds from being
    processed; such failures are returned alongside the partial result and
    the kinds that could not be listed are recorded in ``unlisted``.

    Returns:
        Tuple of (still relevant owned resources, combined error or None)
    """
    resources = RepoResources()
    errors: list[Exception] = []
    selector = naming.pgbackrest_selector(cluster.name)

    for kind in OWNED_KINDS:
        try:
            items = store.list(kind, cluster.namespace, selector)
        except BackrestError as exc:
            logger.error(f"Failed to list {kind} for {cluster.key}: {exc}")
            resources.unlisted.add(kind)
            errors.append(exc)
            continue
        if not items:
            continue

        owned = [item for item in items if is_controlled_by(item, cluster)]
        retained, delete_errors = cleanup_repo_resources(store, cluster, owned)
        errors.extend(delete_errors)
        DECODERS[kind](cluster, retained, resources)

    return resources, aggregate(errors)


def get_ssh_secret(store, cluster: PostgresCluster) -> dict[str, Any] | None:
    """Read the cluster's SSH Secret by name.

    Used when the Secret list failed, so existing key material is reused
    rather than regenerated.

    Returns:
        The Secret if it exists and is controlled by the cluster, else None

    Raises:
        StoreError: If the read fails for any reason other than absence
    """
    try:
        secret = store.get("Secret", cluster.namespace, naming.ssh_secret(cluster.name))
    except NotFoundError:
        return None
    return secret if is_controlled_by(secret, cluster) else None
