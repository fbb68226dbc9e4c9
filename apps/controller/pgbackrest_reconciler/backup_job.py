"""Replica-create backup Job orchestration.

The first full backup to the replica-create repository is taken by a one-shot
Job. Replicas can only be created from a repository once that Job completed.
"""

from __future__ import annotations

import logging
from typing import Any

from . import backrest_config, naming
from .conditions import (
    CONDITION_FALSE,
    CONDITION_REPLICA_CREATE,
    CONDITION_REPLICA_REPO_READY,
    CONDITION_TRUE,
    CONDITION_UNKNOWN,
    Condition,
    is_status_condition_true,
    set_status_condition,
)
from .models import (
    PostgresCluster,
    RepoStatus,
    cluster_bootstrapped,
    dedicated_repo_host_enabled,
    find_repo_status,
)
from .stanza import find_single_pod, repo_host_ready

logger = logging.getLogger(__name__)


def _job_condition(job: dict[str, Any], condition_type: str) -> bool:
    for condition in (job.get("status") or {}).get("conditions") or []:
        if condition.get("type") == condition_type and condition.get("status") == "True":
            return True
    return False


def job_completed(job: dict[str, Any]) -> bool:
    return _job_condition(job, "Complete")


def job_failed(job: dict[str, Any]) -> bool:
    return _job_condition(job, "Failed")


def backup_job_spec_intent(cluster: PostgresCluster, selector: str, container_name: str,
                           repo_name: str, service_account: str, config_name: str,
                           labels: dict[str, str]) -> dict[str, Any]:
    """Job spec running ``pgbackrest backup`` against ``repo_name``.

    The container execs the command in the pod matched by ``selector``,
    refusing to run until the pod sees the configuration hash.
    """
    command_opts = [
        f"--stanza={backrest_config.DEFAULT_STANZA}",
        f"--repo={backrest_config.repo_index(cluster, repo_name)}",
    ]
    pod_spec: dict[str, Any] = {
        "containers": [{
            "name": naming.CONTAINER_PGBACKREST,
            "image": cluster.spec.image,
            "command": [backrest_config.PGBACKREST_BINARY],
            "env": [
                {"name": "COMMAND", "value": "backup"},
                {"name": "COMMAND_OPTS", "value": " ".join(command_opts)},
                {"name": "COMPARE_HASH", "value": "true"},
                {"name": "CONTAINER", "value": container_name},
                {"name": "NAMESPACE", "value": cluster.namespace},
                {"name": "SELECTOR", "value": selector},
            ],
        }],
        "restartPolicy": "Never",
    }
    if service_account:
        pod_spec["serviceAccountName"] = service_account

    template = {"metadata": {"labels": dict(labels)}, "spec": pod_spec}
    backrest_config.add_configs_to_pod(cluster, template, config_name, naming.CONTAINER_PGBACKREST)
    return {"template": template}


def _set_replica_create_condition(cluster: PostgresCluster, repo_status: RepoStatus | None) -> None:
    condition = Condition(type=CONDITION_REPLICA_CREATE, observed_generation=cluster.generation)
    if repo_status is None:
        condition.status = CONDITION_UNKNOWN
        condition.reason = "RepoStatusMissing"
        condition.message = "Status is missing for the replica create repo"
    elif repo_status.replica_create_backup_complete:
        condition.status = CONDITION_TRUE
        condition.reason = "RepoBackupComplete"
        condition.message = "pgBackRest replica creation is now possible"
    else:
        condition.status = CONDITION_FALSE
        condition.reason = "RepoBackupNotComplete"
        condition.message = "pgBackRest replica creation is not currently possible"
    set_status_condition(cluster.status.conditions, condition)


def _delete_job(store, job: dict[str, Any], why: str) -> None:
    metadata = job["metadata"]
    logger.info(f"Deleting replica-create backup Job {metadata['namespace']}/{metadata['name']}: {why}")
    store.delete("Job", metadata["namespace"], metadata["name"], propagation="Background")


def reconcile_replica_create_backup(store, applier, cluster: PostgresCluster,
                                    jobs: list[dict[str, Any]], service_account: str,
                                    config_hash: str, repo_name: str) -> None:
    """Drive the replica-create backup Job toward completion.

    ``PGBackRestReplicaCreate`` is recomputed on every exit path.

    Raises:
        ConsistencyError: If not exactly one target pod was found
        StoreError: If a list, delete or apply failed
        ValidationError: If the Job was rejected
    """
    repo_status = find_repo_status(cluster, repo_name)
    try:
        if not cluster_bootstrapped(cluster) or repo_status is None:
            return
        if repo_status.replica_create_backup_complete:
            return

        replica_repo_ready = is_status_condition_true(cluster.status.conditions,
                                                      CONDITION_REPLICA_REPO_READY)
        dedicated_ready = repo_host_ready(cluster)

        selector, container_name = backrest_config.exec_selector(cluster)
        pod = find_single_pod(store, cluster, selector, "create replica create backup")
        primary_instance = (pod["metadata"].get("labels") or {}).get(naming.LABEL_INSTANCE, "")

        # the config file mounted into the Job
        config_name = backrest_config.instance_config_key(primary_instance)
        if dedicated_repo_host_enabled(cluster):
            config_name = backrest_config.CM_REPO_KEY

        job = jobs[0] if jobs else None
        if job is not None:
            failed = job_failed(job)
            completed = job_completed(job)
            labels = job["metadata"].get("labels") or {}
            annotations = job["metadata"].get("annotations") or {}

            if not completed and not failed and (not dedicated_ready or not replica_repo_ready):
                _delete_job(store, job, "prerequisites no longer ready")

            repo_changed = labels.get(naming.LABEL_PGBACKREST_REPO) != repo_name
            if (failed or repo_changed
                    or annotations.get(naming.ANNOTATION_CURRENT_CONFIG) != config_name
                    or annotations.get(naming.ANNOTATION_CONFIG_HASH) != config_hash):
                # recreated on a later cycle, after the deletion has propagated
                _delete_job(store, job, "failed or out of date")
                return

            if completed:
                repo_status.replica_create_backup_complete = True
                return

        if not dedicated_ready or not replica_repo_ready:
            return

        if job is not None:
            metadata = {
                "name": job["metadata"]["name"],
                "namespace": job["metadata"]["namespace"],
            }
            job_labels = naming.merge(cluster.spec.metadata.labels,
                                      cluster.spec.pgbackrest_metadata.labels,
                                      job["metadata"].get("labels"))
            job_annotations = naming.merge(cluster.spec.metadata.annotations,
                                           cluster.spec.pgbackrest_metadata.annotations,
                                           job["metadata"].get("annotations"))
        else:
            metadata = {
                "name": naming.backup_job(cluster.name, repo_name, config_name, config_hash),
                "namespace": cluster.namespace,
            }
            job_labels = naming.merge(cluster.spec.metadata.labels,
                                      cluster.spec.pgbackrest_metadata.labels,
                                      naming.backup_job_labels(cluster.name, repo_name,
                                                               naming.BACKUP_REPLICA_CREATE))
            job_annotations = naming.merge(cluster.spec.metadata.annotations,
                                           cluster.spec.pgbackrest_metadata.annotations,
                                           {
                                               naming.ANNOTATION_CURRENT_CONFIG: config_name,
                                               naming.ANNOTATION_CONFIG_HASH: config_hash,
                                           })
        metadata["labels"] = job_labels
        metadata["annotations"] = job_annotations

        backup_job = {
            "apiVersion": "batch/v1",
            "kind": "Job",
            "metadata": metadata,
            "spec": backup_job_spec_intent(cluster, selector, container_name, repo_name,
                                           service_account, config_name, job_labels),
        }
        applier.apply(cluster, backup_job)
    finally:
        _set_replica_create_condition(cluster, repo_status)
