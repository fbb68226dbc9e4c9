"""Labels, annotations, names and selectors for pgBackRest resources.

All identities are deterministic functions of the cluster (and repository /
backup type) so they can be regenerated on every cycle.
"""

from __future__ import annotations

import hashlib

LABEL_PREFIX = "postgres-operator.crunchydata.com"

LABEL_CLUSTER = f"{LABEL_PREFIX}/cluster"
LABEL_INSTANCE = f"{LABEL_PREFIX}/instance"
LABEL_INSTANCE_SET = f"{LABEL_PREFIX}/instance-set"
LABEL_ROLE = f"{LABEL_PREFIX}/role"

LABEL_PGBACKREST = f"{LABEL_PREFIX}/pgbackrest"
LABEL_PGBACKREST_CONFIG = f"{LABEL_PREFIX}/pgbackrest-config"
LABEL_PGBACKREST_REPO = f"{LABEL_PREFIX}/pgbackrest-repo"
LABEL_PGBACKREST_REPO_HOST = f"{LABEL_PREFIX}/pgbackrest-host"
LABEL_PGBACKREST_DEDICATED = f"{LABEL_PREFIX}/pgbackrest-dedicated"
LABEL_PGBACKREST_REPO_VOLUME = f"{LABEL_PREFIX}/pgbackrest-volume"
LABEL_PGBACKREST_BACKUP = f"{LABEL_PREFIX}/pgbackrest-backup"
LABEL_PGBACKREST_CRONJOB = f"{LABEL_PREFIX}/pgbackrest-cronjob"

ANNOTATION_CURRENT_CONFIG = f"{LABEL_PREFIX}/pgbackrest-config"
ANNOTATION_CONFIG_HASH = f"{LABEL_PREFIX}/pgbackrest-hash"

ROLE_PRIMARY = "master"

BACKUP_REPLICA_CREATE = "replica-create"

CONTAINER_DATABASE = "database"
CONTAINER_PGBACKREST = "pgbackrest"


def merge(*maps: dict[str, str] | None) -> dict[str, str]:
    """Merge label/annotation maps, later maps winning on key collisions."""
    merged: dict[str, str] = {}
    for m in maps:
        if m:
            merged.update(m)
    return merged


def selector_string(labels: dict[str, str]) -> str:
    """Render labels as an equality selector; empty values mean "key exists"."""
    parts = []
    for key in sorted(labels):
        value = labels[key]
        parts.append(f"{key}={value}" if value else key)
    return ",".join(parts)


# Label sets

def pgbackrest_labels(cluster_name: str) -> dict[str, str]:
    return {LABEL_CLUSTER: cluster_name, LABEL_PGBACKREST: ""}


def pgbackrest_config_labels(cluster_name: str) -> dict[str, str]:
    return merge(pgbackrest_labels(cluster_name), {LABEL_PGBACKREST_CONFIG: ""})


def repo_host_labels(cluster_name: str) -> dict[str, str]:
    return merge(pgbackrest_labels(cluster_name), {LABEL_PGBACKREST_REPO_HOST: ""})


def dedicated_labels(cluster_name: str) -> dict[str, str]:
    return merge(repo_host_labels(cluster_name), {LABEL_PGBACKREST_DEDICATED: ""})


def repo_volume_labels(cluster_name: str, repo_name: str) -> dict[str, str]:
    return merge(pgbackrest_labels(cluster_name), {
        LABEL_PGBACKREST_REPO: repo_name,
        LABEL_PGBACKREST_REPO_VOLUME: "",
    })


def backup_job_labels(cluster_name: str, repo_name: str, backup_type: str) -> dict[str, str]:
    return merge(pgbackrest_labels(cluster_name), {
        LABEL_PGBACKREST_REPO: repo_name,
        LABEL_PGBACKREST_BACKUP: backup_type,
    })


def cronjob_labels(cluster_name: str, repo_name: str, backup_type: str) -> dict[str, str]:
    return merge(pgbackrest_labels(cluster_name), {
        LABEL_PGBACKREST_REPO: repo_name,
        LABEL_PGBACKREST_CRONJOB: backup_type,
    })


# Selectors

def pgbackrest_selector(cluster_name: str) -> str:
    """Selector matching every pgBackRest resource of a cluster."""
    return selector_string(pgbackrest_labels(cluster_name))


def dedicated_selector(cluster_name: str) -> str:
    return selector_string(dedicated_labels(cluster_name))


def primary_selector(cluster_name: str) -> str:
    return selector_string({LABEL_CLUSTER: cluster_name, LABEL_ROLE: ROLE_PRIMARY})


def instance_selector(cluster_name: str) -> str:
    return selector_string({LABEL_CLUSTER: cluster_name, LABEL_INSTANCE_SET: ""})


# Names

def repo_host_name(cluster_name: str) -> str:
    return f"{cluster_name}-repo-host"


def cluster_pod_service(cluster_name: str) -> str:
    return f"{cluster_name}-pods"


def pgbackrest_config(cluster_name: str) -> str:
    return f"{cluster_name}-pgbackrest-config"


def ssh_config(cluster_name: str) -> str:
    return f"{cluster_name}-ssh-config"


def ssh_secret(cluster_name: str) -> str:
    return f"{cluster_name}-ssh"


def pgbackrest_rbac(cluster_name: str) -> str:
    return f"{cluster_name}-pgbackrest"


def repo_volume(cluster_name: str, repo_name: str) -> str:
    return f"{cluster_name}-{repo_name}"


def cronjob(cluster_name: str, repo_name: str, backup_type: str) -> str:
    return f"{cluster_name}-pgbackrest-{repo_name}-{backup_type}"


def backup_job(cluster_name: str, repo_name: str, config_name: str, config_hash: str) -> str:
    """Replica-create backup Job name.

    The suffix changes whenever the inputs that force a Job to be replaced
    change, so a replacement never collides with a Job still being deleted.
    """
    digest = hashlib.sha256(
        f"{repo_name}/{config_name}/{config_hash}".encode("utf-8")
    ).hexdigest()
    return f"{cluster_name}-backup-{digest[:4]}"
