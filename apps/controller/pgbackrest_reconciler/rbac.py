"""ServiceAccount, Role and RoleBinding used by pgBackRest Jobs."""

from __future__ import annotations

from typing import Any

from . import naming
from .models import PostgresCluster

# Backup Jobs find the target pod and exec the pgBackRest command in it
PERMISSIONS = [
    {"apiGroups": [""], "resources": ["pods"], "verbs": ["get", "list"]},
    {"apiGroups": [""], "resources": ["pods/exec"], "verbs": ["create"]},
]


def _metadata(cluster: PostgresCluster) -> dict[str, Any]:
    return {
        "name": naming.pgbackrest_rbac(cluster.name),
        "namespace": cluster.namespace,
        "labels": naming.merge(
            cluster.spec.metadata.labels,
            cluster.spec.pgbackrest_metadata.labels,
            naming.pgbackrest_labels(cluster.name),
        ),
        "annotations": naming.merge(
            cluster.spec.metadata.annotations,
            cluster.spec.pgbackrest_metadata.annotations,
        ),
    }


def rbac_intents(cluster: PostgresCluster) -> tuple[dict[str, Any], dict[str, Any], dict[str, Any]]:
    """Desired (ServiceAccount, Role, RoleBinding)."""
    name = naming.pgbackrest_rbac(cluster.name)
    service_account = {
        "apiVersion": "v1",
        "kind": "ServiceAccount",
        "metadata": _metadata(cluster),
    }
    role = {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "Role",
        "metadata": _metadata(cluster),
        "rules": [dict(rule) for rule in PERMISSIONS],
    }
    binding = {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "RoleBinding",
        "metadata": _metadata(cluster),
        "roleRef": {
            "apiGroup": "rbac.authorization.k8s.io",
            "kind": "Role",
            "name": name,
        },
        "subjects": [{"kind": "ServiceAccount", "name": name}],
    }
    return service_account, role, binding


def reconcile_pgbackrest_rbac(applier, cluster: PostgresCluster) -> str:
    """Apply the RBAC objects in dependency order.

    Returns:
        Name of the service account backup Jobs run as

    Raises:
        BackrestError: On the first failed apply
    """
    service_account, role, binding = rbac_intents(cluster)
    applier.apply(cluster, service_account)
    applier.apply(cluster, role)
    applier.apply(cluster, binding)
    return service_account["metadata"]["name"]
