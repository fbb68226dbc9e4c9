from __future__ import annotations

from conftest import CLUSTER, make_cluster, owned, resource, volume_repo
from pgbackrest_reconciler import naming
from pgbackrest_reconciler.errors import StoreError
from pgbackrest_reconciler.ownership import backup_schedule_found, get_pgbackrest_resources, get_ssh_secret


def test_resources_without_owner_reference_are_never_deleted(store) -> None:
    cluster = make_cluster(repos=[])
    store.add(resource("PersistentVolumeClaim", "hippo-repo9",
                       naming.repo_volume_labels(CLUSTER, "repo9")))
    store.add(resource("CronJob", "foreign-cron",
                       naming.cronjob_labels(CLUSTER, "repo9", "full")))

    resources, err = get_pgbackrest_resources(store, cluster)

    assert err is None
    assert store.mutations() == []
    assert resources.volumes == []
    assert resources.cronjobs == []


def test_volume_retained_only_while_repo_declares_a_volume(store) -> None:
    cluster = make_cluster(repos=[volume_repo("repo1")])
    store.add(owned(cluster, resource("PersistentVolumeClaim", "hippo-repo1",
                                      naming.repo_volume_labels(CLUSTER, "repo1"))))
    store.add(owned(cluster, resource("PersistentVolumeClaim", "hippo-repo2",
                                      naming.repo_volume_labels(CLUSTER, "repo2"))))

    resources, err = get_pgbackrest_resources(store, cluster)

    assert err is None
    assert [v["metadata"]["name"] for v in resources.volumes] == ["hippo-repo1"]
    assert store.mutations() == [("delete", "PersistentVolumeClaim", "hippo-repo2")]


def test_cronjob_retained_only_for_scheduled_backup_type(store) -> None:
    cluster = make_cluster(repos=[volume_repo("repo1", schedules={"full": "0 1 * * 0"})])
    store.add(owned(cluster, resource("CronJob", "hippo-pgbackrest-repo1-full",
                                      naming.cronjob_labels(CLUSTER, "repo1", "full"))))
    store.add(owned(cluster, resource("CronJob", "hippo-pgbackrest-repo1-diff",
                                      naming.cronjob_labels(CLUSTER, "repo1", "diff"))))

    resources, err = get_pgbackrest_resources(store, cluster)

    assert err is None
    assert [c["metadata"]["name"] for c in resources.cronjobs] == ["hippo-pgbackrest-repo1-full"]
    assert store.mutations() == [("delete", "CronJob", "hippo-pgbackrest-repo1-diff")]


def test_dedicated_host_removed_when_only_shared_hosting_enabled(store) -> None:
    cluster = make_cluster(repo_host={})
    store.add(owned(cluster, resource("StatefulSet", "hippo-repo-host",
                                      naming.dedicated_labels(CLUSTER))))
    store.add(owned(cluster, resource("Secret", naming.ssh_secret(CLUSTER),
                                      naming.repo_host_labels(CLUSTER))))

    resources, err = get_pgbackrest_resources(store, cluster)

    assert err is None
    assert resources.hosts == []
    assert resources.ssh_secret["metadata"]["name"] == "hippo-ssh"
    assert store.mutations() == [("delete", "StatefulSet", "hippo-repo-host")]


def test_ssh_material_removed_when_no_repo_host(store) -> None:
    cluster = make_cluster()
    store.add(owned(cluster, resource("ConfigMap", naming.ssh_config(CLUSTER),
                                      naming.repo_host_labels(CLUSTER))))
    store.add(owned(cluster, resource("ConfigMap", naming.pgbackrest_config(CLUSTER),
                                      naming.pgbackrest_config_labels(CLUSTER))))

    resources, err = get_pgbackrest_resources(store, cluster)

    assert err is None
    assert resources.ssh_config is None
    assert store.mutations() == [("delete", "ConfigMap", "hippo-ssh-config")]


def test_only_replica_create_jobs_are_decoded(store) -> None:
    cluster = make_cluster()
    store.add(owned(cluster, resource("Job", "hippo-backup-abcd",
                                      naming.backup_job_labels(CLUSTER, "repo1",
                                                               naming.BACKUP_REPLICA_CREATE))))
    store.add(owned(cluster, resource("Job", "hippo-backup-manual",
                                      naming.backup_job_labels(CLUSTER, "repo1", "manual"))))

    resources, err = get_pgbackrest_resources(store, cluster)

    assert err is None
    assert [j["metadata"]["name"] for j in resources.replica_create_backup_jobs] == ["hippo-backup-abcd"]


def test_list_and_delete_failures_are_collected(store) -> None:
    cluster = make_cluster(repos=[volume_repo("repo1")])
    store.add(owned(cluster, resource("PersistentVolumeClaim", "hippo-repo1",
                                      naming.repo_volume_labels(CLUSTER, "repo1"))))
    store.add(owned(cluster, resource("CronJob", "hippo-pgbackrest-repo1-full",
                                      naming.cronjob_labels(CLUSTER, "repo1", "full"))))
    store.fail("list", "Job", StoreError("list Job: 500 Internal Server Error", status=500))
    store.fail("delete", "CronJob", StoreError("delete CronJob: 503", status=503))

    resources, err = get_pgbackrest_resources(store, cluster)

    assert err is not None
    assert len(err.errors) == 2
    # later kinds are still processed
    assert [v["metadata"]["name"] for v in resources.volumes] == ["hippo-repo1"]
    assert resources.unlisted == {"Job"}


def test_backup_schedule_found() -> None:
    cluster = make_cluster(repos=[volume_repo("repo1", schedules={"incremental": "*/30 * * * *"})])

    assert backup_schedule_found(cluster, "repo1", "incr")
    assert not backup_schedule_found(cluster, "repo1", "full")
    assert not backup_schedule_found(cluster, "repo2", "incr")
    assert not backup_schedule_found(cluster, "repo1", "weekly")


def test_get_ssh_secret_only_returns_owned_secret(store) -> None:
    cluster = make_cluster(repo_host={})
    assert get_ssh_secret(store, cluster) is None

    store.add(resource("Secret", naming.ssh_secret(CLUSTER), naming.repo_host_labels(CLUSTER)))
    assert get_ssh_secret(store, cluster) is None

    store.add(owned(cluster, resource("Secret", naming.ssh_secret(CLUSTER),
                                      naming.repo_host_labels(CLUSTER), data={"id_ecdsa": "cHJpdg=="})))
    assert get_ssh_secret(store, cluster)["data"] == {"id_ecdsa": "cHJpdg=="}
