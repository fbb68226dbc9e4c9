"""Resource store adapter over the Kubernetes API.

Resources cross this boundary as plain camelCase mappings (the same shape the
manifests are written in), so intents built by the reconciler can be compared
against live objects without any model conversion.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from kubernetes import client
from kubernetes.client.rest import ApiException

from . import models
from .errors import from_api_exception

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KindInfo:
    """How to reach a resource kind through the typed client APIs."""
    api_version: str
    api: type
    suffix: str


# kind -> typed API + method suffix (e.g. list_namespaced_<suffix>)
KINDS: dict[str, KindInfo] = {
    "ConfigMap": KindInfo("v1", client.CoreV1Api, "config_map"),
    "Secret": KindInfo("v1", client.CoreV1Api, "secret"),
    "PersistentVolumeClaim": KindInfo("v1", client.CoreV1Api, "persistent_volume_claim"),
    "Pod": KindInfo("v1", client.CoreV1Api, "pod"),
    "ServiceAccount": KindInfo("v1", client.CoreV1Api, "service_account"),
    "StatefulSet": KindInfo("apps/v1", client.AppsV1Api, "stateful_set"),
    "Job": KindInfo("batch/v1", client.BatchV1Api, "job"),
    "CronJob": KindInfo("batch/v1", client.BatchV1Api, "cron_job"),
    "Role": KindInfo("rbac.authorization.k8s.io/v1", client.RbacAuthorizationV1Api, "role"),
    "RoleBinding": KindInfo("rbac.authorization.k8s.io/v1", client.RbacAuthorizationV1Api, "role_binding"),
}


def identity(resource: dict[str, Any]) -> tuple[str, str, str]:
    """(kind, namespace, name) of a resource mapping."""
    metadata = resource.get("metadata") or {}
    return resource.get("kind", ""), metadata.get("namespace", ""), metadata.get("name", "")


class KubeStore:
    """List/get/create/patch/delete for the kinds in ``KINDS``.

    Every failure is raised as a ``StoreError`` (or ``ValidationError`` for
    rejected objects) wrapping the underlying ``ApiException``.
    """

    def __init__(self, api_client: client.ApiClient):
        self.api_client = api_client
        self._apis: dict[type, Any] = {}
        self.custom_api = client.CustomObjectsApi(api_client)

    def _kind(self, kind: str) -> KindInfo:
        try:
            return KINDS[kind]
        except KeyError:
            raise ValueError(f"Unsupported resource kind: {kind}") from None

    def _method(self, kind: str, verb: str) -> Callable[..., Any]:
        info = self._kind(kind)
        api = self._apis.get(info.api)
        if api is None:
            api = info.api(self.api_client)
            self._apis[info.api] = api
        return getattr(api, f"{verb}_namespaced_{info.suffix}")

    def _to_dict(self, kind: str, obj: Any) -> dict[str, Any]:
        data = self.api_client.sanitize_for_serialization(obj)
        # list items do not carry their type metadata
        data["kind"] = kind
        data["apiVersion"] = self._kind(kind).api_version
        return data

    def list(self, kind: str, namespace: str, label_selector: str = "") -> list[dict[str, Any]]:
        try:
            result = self._method(kind, "list")(namespace, label_selector=label_selector)
        except ApiException as exc:
            raise from_api_exception(exc, f"list {kind} in {namespace}") from exc
        return [self._to_dict(kind, item) for item in result.items]

    def get(self, kind: str, namespace: str, name: str) -> dict[str, Any]:
        try:
            obj = self._method(kind, "read")(name, namespace)
        except ApiException as exc:
            raise from_api_exception(exc, f"get {kind} {namespace}/{name}") from exc
        return self._to_dict(kind, obj)

    def create(self, resource: dict[str, Any]) -> dict[str, Any]:
        kind, namespace, name = identity(resource)
        try:
            obj = self._method(kind, "create")(namespace, resource)
        except ApiException as exc:
            raise from_api_exception(exc, f"create {kind} {namespace}/{name}") from exc
        return self._to_dict(kind, obj)

    def patch(self, resource: dict[str, Any]) -> dict[str, Any]:
        kind, namespace, name = identity(resource)
        try:
            obj = self._method(kind, "patch")(name, namespace, resource)
        except ApiException as exc:
            raise from_api_exception(exc, f"patch {kind} {namespace}/{name}") from exc
        return self._to_dict(kind, obj)

    def delete(self, kind: str, namespace: str, name: str, propagation: str = "Background") -> None:
        """Delete a resource; an already missing resource is not an error."""
        body = client.V1DeleteOptions(propagation_policy=propagation)
        try:
            self._method(kind, "delete")(name, namespace, body=body)
        except ApiException as exc:
            if exc.status == 404:
                return
            raise from_api_exception(exc, f"delete {kind} {namespace}/{name}") from exc

    # PostgresCluster custom resources

    def get_cluster(self, namespace: str, name: str) -> dict[str, Any]:
        try:
            return self.custom_api.get_namespaced_custom_object(
                models.CLUSTER_GROUP, models.CLUSTER_VERSION, namespace,
                models.CLUSTER_PLURAL, name
            )
        except ApiException as exc:
            raise from_api_exception(exc, f"get PostgresCluster {namespace}/{name}") from exc

    def list_clusters(self, namespace: str | None = None) -> list[dict[str, Any]]:
        try:
            if namespace:
                result = self.custom_api.list_namespaced_custom_object(
                    models.CLUSTER_GROUP, models.CLUSTER_VERSION, namespace,
                    models.CLUSTER_PLURAL
                )
            else:
                result = self.custom_api.list_cluster_custom_object(
                    models.CLUSTER_GROUP, models.CLUSTER_VERSION, models.CLUSTER_PLURAL
                )
        except ApiException as exc:
            raise from_api_exception(exc, "list PostgresClusters") from exc
        return result.get("items", [])

    def patch_cluster_status(self, namespace: str, name: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            return self.custom_api.patch_namespaced_custom_object_status(
                models.CLUSTER_GROUP, models.CLUSTER_VERSION, namespace,
                models.CLUSTER_PLURAL, name, body
            )
        except ApiException as exc:
            raise from_api_exception(exc, f"patch PostgresCluster status {namespace}/{name}") from exc
