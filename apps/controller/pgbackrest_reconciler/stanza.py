"""Stanza creation gate.

Runs ``pgbackrest stanza-create`` inside the pod selected by
``backrest_config.exec_selector`` once the cluster is bootstrapped and the
dedicated repository host (if any) is ready.
"""

from __future__ import annotations

import io
import logging
from typing import Callable

from common import PodExecError

from . import backrest_config
from .conditions import (
    CONDITION_FALSE,
    CONDITION_REPLICA_REPO_READY,
    CONDITION_REPO_HOST_READY,
    CONDITION_TRUE,
    CONDITION_UNKNOWN,
    Condition,
    find_status_condition,
    set_status_condition,
)
from .errors import ConfigPropagationPending, ConsistencyError, ExternalCommandError
from .events import EVENT_NORMAL, EVENT_STANZAS_CREATED, EVENT_UNABLE_TO_CREATE_STANZAS, EVENT_WARNING
from .models import PostgresCluster, cluster_bootstrapped, find_repo_status, replica_create_repo_name

logger = logging.getLogger(__name__)

CONFIG_HASH_MISMATCH = "postgres operator error: pgBackRest config hash mismatch"

# Refuses to run the command unless the mounted config hash matches "$1"
STANZA_SCRIPT = f"""
declare -r hash="$1" stanza="$2" message="$3" cmd="$4"
if [[ "$(< {backrest_config.CONFIG_MOUNT_PATH}/{backrest_config.CM_CONFIG_HASH_KEY})" != "${{hash}}" ]]; then
    printf >&2 "%s" "${{message}}"; exit 1;
else
    pgbackrest "${{cmd}}" --stanza="${{stanza}}"
fi
"""

# (namespace, pod, container, stdin, stdout, stderr, *command), raising PodExecError
PodExec = Callable[..., None]


class StanzaExecutor:
    """Runs pgBackRest administrative commands in one container."""

    def __init__(self, pod_exec: PodExec, namespace: str, pod_name: str, container: str):
        self.pod_exec = pod_exec
        self.namespace = namespace
        self.pod_name = pod_name
        self.container = container

    def stanza_create(self, config_hash: str) -> None:
        """Create the stanza for every configured repository.

        Raises:
            ConfigPropagationPending: If the container still sees another config hash
            ExternalCommandError: If the command failed for any other reason
        """
        stdout = io.StringIO()
        stderr = io.StringIO()
        try:
            self.pod_exec(self.namespace, self.pod_name, self.container, None, stdout, stderr,
                          "bash", "-ceu", "--", STANZA_SCRIPT, "-", config_hash,
                          backrest_config.DEFAULT_STANZA, CONFIG_HASH_MISMATCH, "stanza-create")
        except PodExecError as exc:
            output = stderr.getvalue()
            if output == CONFIG_HASH_MISMATCH:
                raise ConfigPropagationPending(CONFIG_HASH_MISMATCH) from exc
            message = f"{exc}: {output}" if output else str(exc)
            raise ExternalCommandError(message, stderr=output) from exc

        if stderr.getvalue():
            raise ExternalCommandError(stderr.getvalue(), stderr=stderr.getvalue())


def find_single_pod(store, cluster: PostgresCluster, selector: str, purpose: str) -> dict:
    """The one pod matching ``selector``.

    Raises:
        ConsistencyError: If zero or several pods match
    """
    pods = store.list("Pod", cluster.namespace, selector)
    if len(pods) != 1:
        raise ConsistencyError(f"invalid number of Pods ({len(pods)}) found when attempting to {purpose}")
    return pods[0]


def _set_replica_repo_condition(cluster: PostgresCluster) -> None:
    if not cluster.spec.repos:
        return
    repo_status = find_repo_status(cluster, replica_create_repo_name(cluster))
    condition = Condition(type=CONDITION_REPLICA_REPO_READY, observed_generation=cluster.generation)
    if repo_status is None:
        condition.status = CONDITION_UNKNOWN
        condition.reason = "RepoStatusMissing"
        condition.message = "Status is missing for the replica creation repo"
    elif repo_status.stanza_created:
        condition.status = CONDITION_TRUE
        condition.reason = "StanzaCreated"
        condition.message = "pgBackRest replica create repo is ready for backups"
    else:
        condition.status = CONDITION_FALSE
        condition.reason = "StanzaNotCreated"
        condition.message = "pgBackRest replica create repo is not ready for backups"
    set_status_condition(cluster.status.conditions, condition)


def repo_host_ready(cluster: PostgresCluster) -> bool:
    """Dedicated host readiness; true when no host condition is published."""
    condition = find_status_condition(cluster.status.conditions, CONDITION_REPO_HOST_READY)
    return condition is None or condition.status == CONDITION_TRUE


def reconcile_stanza_create(store, recorder, pod_exec: PodExec,
                            cluster: PostgresCluster, config_hash: str) -> bool:
    """Create stanzas when every precondition holds.

    ``PGBackRestReplicaRepoReady`` is recomputed on every exit path from the
    resulting ``stanzaCreated`` state of the replica-create repository.

    Returns:
        True if the container does not yet see ``config_hash`` (retry later)

    Raises:
        ConsistencyError: If not exactly one target pod was found
        ExternalCommandError: If stanza creation failed
        StoreError: If listing pods failed
    """
    try:
        repos = cluster.status.pgbackrest.repos if cluster.status.pgbackrest else []
        all_created = all(rs.stanza_created for rs in repos)

        if not cluster_bootstrapped(cluster) or not repo_host_ready(cluster) or all_created:
            return False

        selector, container = backrest_config.exec_selector(cluster)
        pod = find_single_pod(store, cluster, selector, "create stanzas")

        executor = StanzaExecutor(pod_exec, cluster.namespace, pod["metadata"]["name"], container)
        try:
            executor.stanza_create(config_hash)
        except ConfigPropagationPending:
            logger.info(f"pgBackRest config hash mismatch for {cluster.key}, stanza creation deferred")
            return True
        except ExternalCommandError as exc:
            recorder.record(cluster, EVENT_WARNING, EVENT_UNABLE_TO_CREATE_STANZAS, str(exc))
            raise

        recorder.record(cluster, EVENT_NORMAL, EVENT_STANZAS_CREATED,
                        "pgBackRest stanza creation completed successfully")
        for rs in repos:
            rs.stanza_created = True
        return False
    finally:
        _set_replica_repo_condition(cluster)
