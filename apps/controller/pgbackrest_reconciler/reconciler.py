"""The pgBackRest reconcile cycle.

Runs every sub-step in dependency order against one PostgresCluster. A failing
sub-step is logged and folded into the cycle's requeue decision; it never
prevents the sub-steps after it from running.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from .applier import IntentApplier
from .backrest_config import calculate_config_hashes
from .backup_job import reconcile_replica_create_backup
from .conditions import CONDITION_REPO_HOST_READY, remove_status_condition
from .cronjob import reconcile_pgbackrest_cronjobs
from .errors import BackrestError, CycleCancelled
from .models import (
    PGBackRestStatus,
    PostgresCluster,
    dedicated_repo_host_enabled,
    repo_host_enabled,
    replica_create_repo_name,
)
from .ownership import get_pgbackrest_resources, get_ssh_secret
from .rbac import reconcile_pgbackrest_rbac
from .repo import (
    reconcile_dedicated_repo_host,
    reconcile_pgbackrest_config,
    reconcile_repos,
    select_repo_host_name,
)
from .settings import ControllerSettings
from .stanza import PodExec, reconcile_stanza_create

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Requeue decision of one cycle."""
    requeue: bool = False
    requeue_after: float = 0.0

    @property
    def clean(self) -> bool:
        return not self.requeue and not self.requeue_after


def update_reconcile_result(current: ReconcileResult, new: ReconcileResult) -> ReconcileResult:
    """Merge two results: any immediate requeue wins, else the shortest delay."""
    requeue_after = current.requeue_after
    if new.requeue_after and (not requeue_after or new.requeue_after < requeue_after):
        requeue_after = new.requeue_after
    return ReconcileResult(requeue=current.requeue or new.requeue, requeue_after=requeue_after)


class Reconciler:
    """Holds the collaborators a cycle needs and runs cycles."""

    def __init__(self, store, recorder, pod_exec: PodExec,
                 settings: ControllerSettings | None = None, applier: IntentApplier | None = None):
        self.store = store
        self.recorder = recorder
        self.pod_exec = pod_exec
        self.settings = settings or ControllerSettings()
        self.applier = applier or IntentApplier(store)

    @staticmethod
    def _check_cancelled(cluster: PostgresCluster, stop_event: threading.Event | None) -> None:
        if stop_event is not None and stop_event.is_set():
            raise CycleCancelled(f"reconcile of {cluster.key} cancelled")

    def reconcile_pgbackrest(self, cluster: PostgresCluster, instance_names: list[str],
                             stop_event: threading.Event | None = None) -> ReconcileResult:
        """Run one pgBackRest cycle for ``cluster``.

        ``cluster.status`` is updated in place; persisting it is up to the
        caller.

        Args:
            cluster: Parsed cluster, owned by this cycle only
            instance_names: Names of the cluster's PostgreSQL instances
            stop_event: When set, the cycle stops before the next sub-step

        Returns:
            Aggregated requeue decision

        Raises:
            CycleCancelled: If ``stop_event`` was set during the cycle
        """
        if cluster.status.pgbackrest is None:
            cluster.status.pgbackrest = PGBackRestStatus()

        result = ReconcileResult()
        requeue = ReconcileResult(requeue=True)
        delayed = ReconcileResult(requeue_after=self.settings.requeue_delay_seconds)

        resources, err = get_pgbackrest_resources(self.store, cluster)
        if err is not None:
            logger.error(f"Unable to get and clean pgBackRest resources for {cluster.key}: {err}")
            result = update_reconcile_result(result, requeue)
        self._check_cancelled(cluster, stop_event)

        repo_host_name = ""
        if dedicated_repo_host_enabled(cluster):
            repo_host_name, is_create = select_repo_host_name(cluster, resources)
            if "StatefulSet" in resources.unlisted:
                # the host may well exist; only a listed absence means creation
                is_create = False
            try:
                reconcile_dedicated_repo_host(self.applier, self.recorder, cluster,
                                              repo_host_name, is_create)
            except BackrestError as exc:
                logger.error(f"Unable to reconcile pgBackRest repo host for {cluster.key}: {exc}")
                result = update_reconcile_result(result, requeue)
        else:
            remove_status_condition(cluster.status.conditions, CONDITION_REPO_HOST_READY)
        self._check_cancelled(cluster, stop_event)

        config_hashes, config_hash = calculate_config_hashes(cluster, repo_host_name)

        try:
            reconcile_repos(self.applier, cluster, config_hashes)
        except BackrestError as exc:
            logger.error(f"Unable to reconcile pgBackRest repos for {cluster.key}: {exc}")
            result = update_reconcile_result(result, requeue)
        self._check_cancelled(cluster, stop_event)

        ssh_secret, skip_ssh_secret = resources.ssh_secret, False
        if "Secret" in resources.unlisted and repo_host_enabled(cluster):
            try:
                ssh_secret = get_ssh_secret(self.store, cluster)
            except BackrestError as exc:
                logger.error(f"Unable to read SSH secret for {cluster.key}: {exc}")
                skip_ssh_secret = True

        try:
            reconcile_pgbackrest_config(self.applier, cluster, repo_host_name, config_hash,
                                        instance_names, ssh_secret,
                                        self.settings.cluster_domain, self.settings.component,
                                        skip_ssh_secret=skip_ssh_secret)
        except BackrestError as exc:
            logger.error(f"Unable to reconcile pgBackRest configuration for {cluster.key}: {exc}")
            result = update_reconcile_result(result, requeue)
        self._check_cancelled(cluster, stop_event)

        service_account = ""
        try:
            service_account = reconcile_pgbackrest_rbac(self.applier, cluster)
        except BackrestError as exc:
            logger.error(f"Unable to reconcile pgBackRest RBAC for {cluster.key}: {exc}")
            result = update_reconcile_result(result, requeue)
        self._check_cancelled(cluster, stop_event)

        try:
            config_hash_mismatch = reconcile_stanza_create(self.store, self.recorder, self.pod_exec,
                                                           cluster, config_hash)
        except BackrestError as exc:
            # delayed so a misconfiguration does not hot-loop stanza-create
            logger.error(f"Unable to create stanza for {cluster.key}: {exc}")
            result = update_reconcile_result(result, delayed)
        else:
            if config_hash_mismatch:
                logger.info(f"pgBackRest config hash mismatch detected for {cluster.key}, "
                            f"requeuing to reattempt stanza create")
                result = update_reconcile_result(result, delayed)
        self._check_cancelled(cluster, stop_event)

        if reconcile_pgbackrest_cronjobs(self.applier, self.recorder, cluster, service_account):
            result = update_reconcile_result(result, delayed)
        self._check_cancelled(cluster, stop_event)

        if "Job" in resources.unlisted:
            # an unseen backup Job could still be running
            logger.warning(f"Skipping replica creation backup for {cluster.key}, backup Jobs unknown")
            return update_reconcile_result(result, requeue)

        try:
            reconcile_replica_create_backup(self.store, self.applier, cluster,
                                            resources.replica_create_backup_jobs, service_account,
                                            config_hash, replica_create_repo_name(cluster))
        except BackrestError as exc:
            logger.error(f"Unable to create replica creation backup for {cluster.key}: {exc}")
            result = update_reconcile_result(result, requeue)

        return result
