"""Scheduled pgBackRest backups, one CronJob per repository and backup type."""

from __future__ import annotations

import logging
from typing import Any

from . import backrest_config, naming
from .errors import BackrestError
from .events import EVENT_UNABLE_TO_CREATE_CRONJOB, EVENT_WARNING
from .models import BACKUP_TYPES, PostgresCluster

logger = logging.getLogger(__name__)


def cronjob_intent(cluster: PostgresCluster, repo_name: str, backup_type: str,
                   schedule: str, service_account: str = "") -> dict[str, Any]:
    """CronJob running ``pgbackrest backup --type=<backup_type>`` on ``schedule``."""
    labels = naming.merge(
        cluster.spec.metadata.labels,
        cluster.spec.pgbackrest_metadata.labels,
        naming.cronjob_labels(cluster.name, repo_name, backup_type),
    )
    annotations = naming.merge(
        cluster.spec.metadata.annotations,
        cluster.spec.pgbackrest_metadata.annotations,
    )
    selector, container_name = backrest_config.exec_selector(cluster)
    command_opts = [
        f"--stanza={backrest_config.DEFAULT_STANZA}",
        f"--repo={backrest_config.repo_index(cluster, repo_name)}",
        f"--type={backup_type}",
    ]

    pod_spec: dict[str, Any] = {
        "restartPolicy": "OnFailure",
        "containers": [{
            "name": naming.CONTAINER_PGBACKREST,
            "image": cluster.spec.image,
            "command": [backrest_config.PGBACKREST_BINARY],
            "env": [
                {"name": "COMMAND", "value": "backup"},
                {"name": "COMMAND_OPTS", "value": " ".join(command_opts)},
                {"name": "CONTAINER", "value": container_name},
                {"name": "NAMESPACE", "value": cluster.namespace},
                {"name": "SELECTOR", "value": selector},
            ],
        }],
    }
    if service_account:
        pod_spec["serviceAccountName"] = service_account

    return {
        "apiVersion": "batch/v1",
        "kind": "CronJob",
        "metadata": {
            "name": naming.cronjob(cluster.name, repo_name, backup_type),
            "namespace": cluster.namespace,
            "labels": labels,
            "annotations": annotations,
        },
        "spec": {
            "schedule": schedule,
            "concurrencyPolicy": "Forbid",
            "jobTemplate": {
                "metadata": {"labels": dict(labels), "annotations": dict(annotations)},
                "spec": {
                    "template": {
                        "metadata": {"labels": dict(labels), "annotations": dict(annotations)},
                        "spec": pod_spec,
                    },
                },
            },
        },
    }


def reconcile_pgbackrest_cronjobs(applier, recorder, cluster: PostgresCluster,
                                  service_account: str = "") -> bool:
    """Apply a CronJob for every scheduled (repository, backup type).

    A failed apply is recorded as a warning event and does not stop the
    remaining CronJobs.

    Returns:
        True if any CronJob failed and the cluster should be requeued
    """
    requeue = False
    for repo in cluster.spec.repos:
        if repo.schedules is None:
            continue
        for backup_type in BACKUP_TYPES:
            schedule = repo.schedules.for_type(backup_type)
            if schedule is None:
                continue
            try:
                applier.apply(cluster, cronjob_intent(cluster, repo.name, backup_type,
                                                      schedule, service_account))
            except BackrestError as exc:
                logger.error(f"Failed to reconcile pgBackRest {backup_type} CronJob for "
                             f"{cluster.key} repo {repo.name}: {exc}")
                recorder.record(cluster, EVENT_WARNING, EVENT_UNABLE_TO_CREATE_CRONJOB, str(exc))
                requeue = True
    return requeue
