from __future__ import annotations

import copy
from typing import Any

import pytest

from common import PodExecError
from pgbackrest_reconciler import naming
from pgbackrest_reconciler.applier import IntentApplier
from pgbackrest_reconciler.errors import ConflictError, NotFoundError
from pgbackrest_reconciler.models import PostgresCluster

CLUSTER = "hippo"
NAMESPACE = "postgres"
CLUSTER_UID = "uid-hippo"
INSTANCE = "hippo-instance1-abcd"


def selector_matches(labels: dict[str, str], selector: str) -> bool:
    for part in filter(None, selector.split(",")):
        if "=" in part:
            key, value = part.split("=", 1)
            if labels.get(key) != value:
                return False
        elif part not in labels:
            return False
    return True


def deep_merge(base: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class FakeStore:
    """In-memory store with the KubeStore interface and a call log."""

    def __init__(self):
        self.objects: dict[tuple[str, str, str], dict[str, Any]] = {}
        self.clusters: dict[tuple[str, str], dict[str, Any]] = {}
        self.status_patches: list[tuple[str, str, dict[str, Any]]] = []
        self.calls: list[tuple[str, str, str]] = []
        self.failures: dict[tuple[str, str, str | None], Exception] = {}
        self._counter = 0

    def fail(self, verb: str, kind: str, exc: Exception, name: str | None = None) -> None:
        self.failures[(verb, kind, name)] = exc

    def _maybe_fail(self, verb: str, kind: str, name: str) -> None:
        exc = self.failures.get((verb, kind, name)) or self.failures.get((verb, kind, None))
        if exc is not None:
            raise exc

    def add(self, resource: dict[str, Any]) -> dict[str, Any]:
        """Seed an object without logging a call."""
        stored = copy.deepcopy(resource)
        metadata = stored.setdefault("metadata", {})
        metadata.setdefault("namespace", NAMESPACE)
        self._counter += 1
        metadata.setdefault("creationTimestamp", f"2024-01-01T00:00:{self._counter:02d}Z")
        self.objects[(stored["kind"], metadata["namespace"], metadata["name"])] = stored
        return copy.deepcopy(stored)

    def mutations(self) -> list[tuple[str, str, str]]:
        return [call for call in self.calls if call[0] in ("create", "patch", "delete")]

    def find(self, kind: str, name: str, namespace: str = NAMESPACE) -> dict[str, Any] | None:
        return self.objects.get((kind, namespace, name))

    def of_kind(self, kind: str) -> list[dict[str, Any]]:
        return [obj for (k, _, _), obj in sorted(self.objects.items()) if k == kind]

    # KubeStore interface

    def list(self, kind, namespace, label_selector=""):
        self.calls.append(("list", kind, label_selector))
        self._maybe_fail("list", kind, "")
        return [
            copy.deepcopy(obj)
            for (k, ns, _), obj in sorted(self.objects.items())
            if k == kind and ns == namespace
            and selector_matches((obj["metadata"].get("labels") or {}), label_selector)
        ]

    def get(self, kind, namespace, name):
        self.calls.append(("get", kind, name))
        self._maybe_fail("get", kind, name)
        obj = self.objects.get((kind, namespace, name))
        if obj is None:
            raise NotFoundError(f"get {kind} {namespace}/{name}: 404 Not Found", status=404)
        return copy.deepcopy(obj)

    def create(self, resource):
        kind = resource["kind"]
        name = resource["metadata"]["name"]
        self.calls.append(("create", kind, name))
        self._maybe_fail("create", kind, name)
        if (kind, resource["metadata"]["namespace"], name) in self.objects:
            raise ConflictError(f"create {kind} {name}: 409 AlreadyExists", status=409)
        stored = self.add(resource)
        stored["metadata"]["uid"] = f"uid-{name}"
        self.objects[(kind, stored["metadata"]["namespace"], name)] = copy.deepcopy(stored)
        return stored

    def patch(self, resource):
        kind = resource["kind"]
        namespace = resource["metadata"]["namespace"]
        name = resource["metadata"]["name"]
        self.calls.append(("patch", kind, name))
        self._maybe_fail("patch", kind, name)
        existing = self.objects.get((kind, namespace, name))
        if existing is None:
            raise NotFoundError(f"patch {kind} {name}: 404 Not Found", status=404)
        merged = deep_merge(existing, resource)
        self.objects[(kind, namespace, name)] = merged
        return copy.deepcopy(merged)

    def delete(self, kind, namespace, name, propagation="Background"):
        self.calls.append(("delete", kind, name))
        self._maybe_fail("delete", kind, name)
        self.objects.pop((kind, namespace, name), None)

    def get_cluster(self, namespace, name):
        self.calls.append(("get", "PostgresCluster", name))
        obj = self.clusters.get((namespace, name))
        if obj is None:
            raise NotFoundError(f"get PostgresCluster {namespace}/{name}: 404", status=404)
        return copy.deepcopy(obj)

    def list_clusters(self, namespace=None):
        return [copy.deepcopy(obj) for (ns, _), obj in sorted(self.clusters.items())
                if namespace is None or ns == namespace]

    def patch_cluster_status(self, namespace, name, body):
        self.calls.append(("patch-status", "PostgresCluster", name))
        self._maybe_fail("patch-status", "PostgresCluster", name)
        self.status_patches.append((namespace, name, copy.deepcopy(body)))
        return body


class FakeRecorder:
    def __init__(self):
        self.events: list[tuple[str, str, str]] = []

    def record(self, cluster, event_type, reason, message):
        self.events.append((event_type, reason, message))

    def reasons(self) -> list[str]:
        return [reason for _, reason, _ in self.events]


class ScriptedExec:
    """Exec primitive replaying (stdout, stderr, exit code) responses."""

    def __init__(self, *responses: tuple[str, str, int]):
        self.responses = list(responses) or [("", "", 0)]
        self.calls: list[dict[str, Any]] = []

    def __call__(self, namespace, pod_name, container, stdin, stdout, stderr, *command):
        self.calls.append({
            "namespace": namespace,
            "pod": pod_name,
            "container": container,
            "command": list(command),
        })
        out, err, code = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if out:
            stdout.write(out)
        if err:
            stderr.write(err)
        if code:
            raise PodExecError(f"Command failed with exit code {code}", exit_code=code)


# Cluster builders

def volume_repo(name: str, schedules: dict[str, str] | None = None) -> dict[str, Any]:
    repo: dict[str, Any] = {
        "name": name,
        "volume": {
            "volumeClaimSpec": {
                "accessModes": ["ReadWriteOnce"],
                "resources": {"requests": {"storage": "1Gi"}},
            },
        },
    }
    if schedules is not None:
        repo["schedules"] = schedules
    return repo


def s3_repo(name: str, bucket: str = "backups", **options: str) -> dict[str, Any]:
    return {"name": name, "s3": {"bucket": bucket, "endpoint": "s3.example.com",
                                 "region": "eu-west-1", **options}}


def cluster_object(repos: list[dict[str, Any]] | None = None,
                   repo_host: dict[str, Any] | None = None,
                   system_identifier: str = "",
                   status: dict[str, Any] | None = None,
                   name: str = CLUSTER) -> dict[str, Any]:
    pgbackrest: dict[str, Any] = {
        "image": "registry.example.com/pgbackrest:2.47",
        "repos": [volume_repo("repo1")] if repos is None else repos,
    }
    if repo_host is not None:
        pgbackrest["repoHost"] = repo_host

    status = copy.deepcopy(status or {})
    if system_identifier:
        status["patroni"] = {"systemIdentifier": system_identifier}

    return {
        "apiVersion": "postgres-operator.crunchydata.com/v1beta1",
        "kind": "PostgresCluster",
        "metadata": {
            "name": name,
            "namespace": NAMESPACE,
            "uid": CLUSTER_UID,
            "generation": 3,
        },
        "spec": {"postgresVersion": 16, "backups": {"pgbackrest": pgbackrest}},
        "status": status,
    }


def make_cluster(**kwargs) -> PostgresCluster:
    return PostgresCluster.from_dict(cluster_object(**kwargs))


def repo_status(name: str, **fields: Any) -> dict[str, Any]:
    return {"name": name, **fields}


def owned(cluster: PostgresCluster, resource: dict[str, Any]) -> dict[str, Any]:
    resource.setdefault("metadata", {})["ownerReferences"] = [cluster.owner_reference()]
    return resource


def resource(kind: str, name: str, labels: dict[str, str], **extra: Any) -> dict[str, Any]:
    return {
        "kind": kind,
        "metadata": {"name": name, "namespace": NAMESPACE, "labels": dict(labels)},
        **extra,
    }


def primary_pod(instance: str = INSTANCE) -> dict[str, Any]:
    return resource("Pod", f"{instance}-0", {
        naming.LABEL_CLUSTER: CLUSTER,
        naming.LABEL_ROLE: naming.ROLE_PRIMARY,
        naming.LABEL_INSTANCE: instance,
    })


def dedicated_pod() -> dict[str, Any]:
    return resource("Pod", f"{naming.repo_host_name(CLUSTER)}-0", naming.dedicated_labels(CLUSTER))


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def recorder() -> FakeRecorder:
    return FakeRecorder()


@pytest.fixture
def applier(store: FakeStore) -> IntentApplier:
    return IntentApplier(store)
