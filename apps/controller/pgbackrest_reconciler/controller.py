"""kopf handlers running pgBackRest cycles per PostgresCluster.

PostgresCluster create/update/resume events and a periodic resync timer run a
cycle for the cluster; events on the Jobs and StatefulSets a cluster owns run
a cycle for their owner. Cycles of one cluster never overlap. A cycle that
asks to be requeued is retried by kopf through ``kopf.TemporaryError``.
"""

from __future__ import annotations

import logging
import threading
from typing import Any

import kopf

from . import naming
from .errors import BackrestError, CycleCancelled, NotFoundError, ValidationError
from .keyed_lock import KeyedLock
from .models import CLUSTER_GROUP, CLUSTER_KIND, CLUSTER_PLURAL, CLUSTER_VERSION, PostgresCluster
from .reconciler import ReconcileResult, Reconciler, update_reconcile_result
from .settings import ControllerSettings

logger = logging.getLogger(__name__)


RESYNC_INTERVAL_SECONDS = 300.0

# Immediate requeues back off exponentially between these bounds
BACKOFF_BASE_SECONDS = 0.5
BACKOFF_MAX_SECONDS = 60.0


def owner_cluster_key(obj: dict[str, Any]) -> str | None:
    """``namespace/name`` of the PostgresCluster controlling ``obj``, if any."""
    metadata = obj.get("metadata") or {}
    for ref in metadata.get("ownerReferences") or []:
        if ref.get("controller") and ref.get("kind") == CLUSTER_KIND:
            return f"{metadata.get('namespace')}/{ref.get('name')}"
    return None


def cluster_key(obj: dict[str, Any]) -> str:
    metadata = obj.get("metadata") or {}
    return f"{metadata.get('namespace')}/{metadata.get('name')}"


def requeue_delay(result: ReconcileResult, retry: int) -> float:
    """Seconds until a non-clean cycle runs again.

    An immediate requeue backs off with the number of consecutive retries;
    a delayed requeue waits its requested delay unless the backoff is shorter.
    """
    delay = result.requeue_after
    if result.requeue:
        backoff = min(BACKOFF_BASE_SECONDS * (2 ** retry), BACKOFF_MAX_SECONDS)
        delay = min(delay, backoff) if delay else backoff
    return delay


class BackrestController:
    """Runs cycles for cluster keys and persists the resulting status."""

    def __init__(self, store, reconciler: Reconciler, settings: ControllerSettings,
                 stop_event: threading.Event | None = None):
        self.store = store
        self.reconciler = reconciler
        self.settings = settings
        self.stop_event = stop_event or threading.Event()
        self._locks = KeyedLock()

    def instance_names(self, cluster: PostgresCluster) -> list[str]:
        """Names of the cluster's instances, from their StatefulSets."""
        statefulsets = self.store.list("StatefulSet", cluster.namespace,
                                       naming.instance_selector(cluster.name))
        names = []
        for sts in statefulsets:
            metadata = sts.get("metadata") or {}
            labels = metadata.get("labels") or {}
            names.append(labels.get(naming.LABEL_INSTANCE) or metadata.get("name", ""))
        return sorted(names)

    def handle(self, key: str) -> ReconcileResult | None:
        """Reconcile one cluster and persist its status.

        Concurrent calls for the same key run one after the other.

        Returns:
            Requeue decision, or None when there is nothing left to do
        """
        with self._locks.hold(key):
            return self._handle(key)

    def _handle(self, key: str) -> ReconcileResult | None:
        namespace, name = key.split("/", 1)
        try:
            obj = self.store.get_cluster(namespace, name)
        except NotFoundError:
            logger.info(f"PostgresCluster {key} no longer exists")
            return None
        except BackrestError as exc:
            logger.error(f"Failed to get PostgresCluster {key}: {exc}")
            return ReconcileResult(requeue=True)

        if (obj.get("metadata") or {}).get("deletionTimestamp"):
            logger.info(f"PostgresCluster {key} is being deleted, skipping")
            return None

        try:
            cluster = PostgresCluster.from_dict(obj)
        except ValidationError as exc:
            # nothing converges until the cluster spec changes, which triggers a new event
            logger.error(f"Invalid pgBackRest spec for {key}: {exc}")
            return None

        try:
            instance_names = self.instance_names(cluster)
        except BackrestError as exc:
            logger.error(f"Failed to list instances of {key}: {exc}")
            return ReconcileResult(requeue=True)

        try:
            result = self.reconciler.reconcile_pgbackrest(cluster, instance_names, self.stop_event)
        except CycleCancelled as exc:
            logger.info(f"{exc}")
            return None

        try:
            self.store.patch_cluster_status(namespace, name, cluster.status_patch())
        except BackrestError as exc:
            logger.error(f"Failed to update status of {key}: {exc}")
            result = update_reconcile_result(result, ReconcileResult(requeue=True))

        if result.clean:
            logger.info(f"Reconciled pgBackRest for {key}")
        return result

    def run_once(self) -> None:
        """Reconcile every cluster a single time."""
        try:
            for obj in self.store.list_clusters(self.settings.namespace or None):
                self.handle(cluster_key(obj))
        except BackrestError as exc:
            logger.error(f"Failed to list PostgresClusters: {exc}")
        finally:
            self.stop()

    def stop(self) -> None:
        self.stop_event.set()
        logger.info("pgBackRest reconciler stopped")


_controller: BackrestController | None = None


def install(controller: BackrestController) -> None:
    """Make ``controller`` the one the kopf handlers delegate to."""
    global _controller
    _controller = controller


def get_controller() -> BackrestController:
    if _controller is None:
        raise RuntimeError("BackrestController not installed")
    return _controller


def _reconcile(key: str, retry: int) -> None:
    result = get_controller().handle(key)
    if result is None or result.clean:
        return
    delay = requeue_delay(result, retry)
    raise kopf.TemporaryError(f"pgBackRest reconcile of {key} incomplete, retrying in {delay:g}s",
                              delay=delay)


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, **_: Any) -> None:
    """Configure kopf from the installed controller's settings."""
    controller_settings = get_controller().settings
    settings.posting.enabled = False
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(prefix=naming.LABEL_PREFIX)
    settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(prefix=naming.LABEL_PREFIX)
    settings.execution.max_workers = controller_settings.workers
    settings.watching.server_timeout = controller_settings.watch_timeout_seconds
    logger.info(f"Starting pgBackRest reconciler (namespace: {controller_settings.namespace or 'all'}, "
                f"workers: {controller_settings.workers})")


@kopf.on.cleanup()
def cleanup(**_: Any) -> None:
    get_controller().stop()


@kopf.on.create(CLUSTER_GROUP, CLUSTER_VERSION, CLUSTER_PLURAL)
@kopf.on.update(CLUSTER_GROUP, CLUSTER_VERSION, CLUSTER_PLURAL)
@kopf.on.resume(CLUSTER_GROUP, CLUSTER_VERSION, CLUSTER_PLURAL)
def reconcile_cluster(namespace: str, name: str, retry: int = 0, **_: Any) -> None:
    """Run a cycle for a created, changed or resumed PostgresCluster."""
    _reconcile(f"{namespace}/{name}", retry)


@kopf.timer(CLUSTER_GROUP, CLUSTER_VERSION, CLUSTER_PLURAL,
            interval=RESYNC_INTERVAL_SECONDS, initial_delay=RESYNC_INTERVAL_SECONDS)
def resync_cluster(namespace: str, name: str, retry: int = 0, **_: Any) -> None:
    """Periodic cycle picking up drift no watch event reports."""
    _reconcile(f"{namespace}/{name}", retry)


@kopf.on.event("batch", "v1", "jobs", labels={naming.LABEL_CLUSTER: kopf.PRESENT})
@kopf.on.event("apps", "v1", "statefulsets", labels={naming.LABEL_CLUSTER: kopf.PRESENT})
def owned_resource_changed(type: str | None, body: kopf.Body, **_: Any) -> None:
    """Run a cycle for the cluster owning a changed Job or StatefulSet.

    Event handlers are not retried; a cycle that still wants a requeue is
    picked up by the cluster's own retry or resync.
    """
    if type is None:
        # initial listing; resume handlers already cover every cluster
        return
    key = owner_cluster_key(body)
    if key is None:
        return
    result = get_controller().handle(key)
    if result is not None and not result.clean:
        logger.info(f"pgBackRest reconcile of {key} incomplete, waiting for the next cycle")
