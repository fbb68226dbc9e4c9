"""Fire-and-forget Kubernetes Event recording for PostgresCluster objects."""

from __future__ import annotations

import logging
from datetime import datetime, UTC

from kubernetes import client
from kubernetes.client.rest import ApiException

from .models import PostgresCluster

logger = logging.getLogger(__name__)

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"

# Event reasons
EVENT_REPO_HOST_CREATED = "RepoHostCreated"
EVENT_UNABLE_TO_CREATE_STANZAS = "UnableToCreateStanzas"
EVENT_STANZAS_CREATED = "StanzasCreated"
EVENT_UNABLE_TO_CREATE_CRONJOB = "UnableToCreatePGBackRestCronJob"


class EventRecorder:
    """Record events against a cluster; failures are logged, never raised."""

    def __init__(self, core_api: client.CoreV1Api, component: str = "pgbackrest-reconciler"):
        self.core_api = core_api
        self.component = component

    def record(self, cluster: PostgresCluster, event_type: str, reason: str, message: str) -> None:
        now = datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
        body = {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "generateName": f"{cluster.name}.",
                "namespace": cluster.namespace,
            },
            "involvedObject": {
                "apiVersion": cluster.api_version,
                "kind": cluster.kind,
                "name": cluster.name,
                "namespace": cluster.namespace,
                "uid": cluster.uid,
            },
            "type": event_type,
            "reason": reason,
            "message": message,
            "source": {"component": self.component},
            "firstTimestamp": now,
            "lastTimestamp": now,
            "count": 1,
        }
        try:
            self.core_api.create_namespaced_event(cluster.namespace, body)
        except ApiException as exc:
            logger.warning(f"Failed to record event {reason} for {cluster.key}: {exc.reason}")
