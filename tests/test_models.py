from __future__ import annotations

import pytest

from conftest import cluster_object, make_cluster, s3_repo, volume_repo
from pgbackrest_reconciler.errors import ValidationError
from pgbackrest_reconciler.models import (
    PostgresCluster,
    dedicated_repo_host_enabled,
    find_repo_status,
    repo_host_enabled,
    replica_create_repo_name,
)


def test_parses_repositories_and_schedules() -> None:
    cluster = make_cluster(repos=[
        volume_repo("repo1", schedules={"full": "0 1 * * 0", "differential": ""}),
        s3_repo("repo2", bucket="b", uriStyle="path"),
    ])

    repo1, repo2 = cluster.spec.repos
    assert repo1.volume["accessModes"] == ["ReadWriteOnce"]
    assert repo1.schedules.for_type("full") == "0 1 * * 0"
    assert repo1.schedules.for_type("diff") is None
    assert repo2.provider == "s3"
    assert repo2.options["uriStyle"] == "path"
    assert cluster.spec.postgres_version == 16


@pytest.mark.parametrize("repos", [
    [{"name": "repo1"}],
    [{"name": "repo1", "volume": {}, "s3": {"bucket": "b"}}],
    [{"name": "repo1", "gcs": {}, "s3": {}}],
    [volume_repo("repo1"), volume_repo("repo1")],
    [{"volume": {}}],
])
def test_invalid_repositories_rejected(repos) -> None:
    with pytest.raises(ValidationError):
        make_cluster(repos=repos)


def test_repo_host_flags() -> None:
    assert not repo_host_enabled(make_cluster())
    assert repo_host_enabled(make_cluster(repo_host={}))
    assert not dedicated_repo_host_enabled(make_cluster(repo_host={}))
    assert dedicated_repo_host_enabled(make_cluster(repo_host={"dedicated": {}}))


def test_replica_create_repo_is_first_repository() -> None:
    assert replica_create_repo_name(make_cluster(repos=[s3_repo("repo3"), volume_repo("repo1")])) == "repo3"
    assert replica_create_repo_name(make_cluster(repos=[])) == ""


def test_status_round_trip() -> None:
    obj = cluster_object(system_identifier="7071", status={
        "pgbackrest": {
            "repoHost": {"apiVersion": "apps/v1", "kind": "StatefulSet", "ready": True},
            "repos": [{"name": "repo1", "bound": True, "volume": "pv-1",
                       "stanzaCreated": True, "replicaCreateBackupComplete": False}],
        },
        "conditions": [{"type": "PGBackRestRepoHostReady", "status": "True", "reason": "RepoHostReady",
                        "message": "ready", "observedGeneration": 3,
                        "lastTransitionTime": "2024-01-01T00:00:00Z"}],
    })

    cluster = PostgresCluster.from_dict(obj)
    status = cluster.status_patch()["status"]

    assert cluster.status.system_identifier == "7071"
    assert find_repo_status(cluster, "repo1").volume_name == "pv-1"
    assert status["pgbackrest"] == obj["status"]["pgbackrest"]
    assert status["conditions"] == obj["status"]["conditions"]


def test_owner_reference() -> None:
    ref = make_cluster().owner_reference()

    assert ref["kind"] == "PostgresCluster"
    assert ref["controller"] is True
    assert ref["blockOwnerDeletion"] is True
