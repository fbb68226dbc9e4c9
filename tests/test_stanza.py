from __future__ import annotations

import pytest

from conftest import INSTANCE, ScriptedExec, make_cluster, primary_pod, repo_status
from pgbackrest_reconciler import naming
from pgbackrest_reconciler.conditions import (
    CONDITION_FALSE,
    CONDITION_REPLICA_REPO_READY,
    CONDITION_TRUE,
    find_status_condition,
)
from pgbackrest_reconciler.errors import ConsistencyError, ExternalCommandError
from pgbackrest_reconciler.stanza import CONFIG_HASH_MISMATCH, reconcile_stanza_create


def _cluster(system_identifier: str = "7071", **kwargs):
    status = kwargs.pop("status", {"pgbackrest": {"repos": [repo_status("repo1", bound=True)]}})
    return make_cluster(system_identifier=system_identifier, status=status, **kwargs)


def _replica_repo_condition(cluster):
    return find_status_condition(cluster.status.conditions, CONDITION_REPLICA_REPO_READY)


def test_not_bootstrapped_runs_nothing(store, recorder) -> None:
    pod_exec = ScriptedExec()
    cluster = _cluster(system_identifier="")

    assert reconcile_stanza_create(store, recorder, pod_exec, cluster, "hash") is False

    assert pod_exec.calls == []
    assert store.calls == []
    assert _replica_repo_condition(cluster).status == CONDITION_FALSE


def test_repo_host_not_ready_runs_nothing(store, recorder) -> None:
    pod_exec = ScriptedExec()
    cluster = _cluster(status={
        "pgbackrest": {"repos": [repo_status("repo1")]},
        "conditions": [{"type": "PGBackRestRepoHostReady", "status": "False"}],
    })

    assert reconcile_stanza_create(store, recorder, pod_exec, cluster, "hash") is False
    assert pod_exec.calls == []


def test_creates_stanzas_in_primary_database_container(store, recorder) -> None:
    store.add(primary_pod())
    pod_exec = ScriptedExec()
    cluster = _cluster(repos=None, status={"pgbackrest": {"repos": [
        repo_status("repo1", bound=True), repo_status("repo2", repoOptionsHash="h"),
    ]}})

    assert reconcile_stanza_create(store, recorder, pod_exec, cluster, "abc") is False

    call = pod_exec.calls[0]
    assert call["pod"] == f"{INSTANCE}-0"
    assert call["container"] == naming.CONTAINER_DATABASE
    assert call["command"][:3] == ["bash", "-ceu", "--"]
    assert call["command"][-5:] == ["-", "abc", "db", CONFIG_HASH_MISMATCH, "stanza-create"]
    assert all(rs.stanza_created for rs in cluster.status.pgbackrest.repos)
    assert recorder.reasons() == ["StanzasCreated"]
    assert _replica_repo_condition(cluster).status == CONDITION_TRUE


def test_all_stanzas_created_runs_nothing(store, recorder) -> None:
    pod_exec = ScriptedExec()
    cluster = _cluster(status={"pgbackrest": {"repos": [repo_status("repo1", stanzaCreated=True)]}})

    assert reconcile_stanza_create(store, recorder, pod_exec, cluster, "hash") is False
    assert pod_exec.calls == []
    assert _replica_repo_condition(cluster).status == CONDITION_TRUE


def test_config_hash_mismatch_defers_without_event(store, recorder) -> None:
    store.add(primary_pod())
    pod_exec = ScriptedExec(("", CONFIG_HASH_MISMATCH, 1))
    cluster = _cluster()

    assert reconcile_stanza_create(store, recorder, pod_exec, cluster, "new") is True

    assert recorder.events == []
    assert cluster.status.pgbackrest.repos[0].stanza_created is False


def test_command_failure_records_warning(store, recorder) -> None:
    store.add(primary_pod())
    pod_exec = ScriptedExec(("", "ERROR: [055]: unable to load info file", 1))
    cluster = _cluster()

    with pytest.raises(ExternalCommandError) as exc_info:
        reconcile_stanza_create(store, recorder, pod_exec, cluster, "hash")

    assert "unable to load info file" in str(exc_info.value)
    event_type, reason, _ = recorder.events[0]
    assert (event_type, reason) == ("Warning", "UnableToCreateStanzas")
    assert _replica_repo_condition(cluster).status == CONDITION_FALSE


def test_stderr_output_on_success_is_a_failure(store, recorder) -> None:
    store.add(primary_pod())
    pod_exec = ScriptedExec(("", "WARN: something odd", 0))

    with pytest.raises(ExternalCommandError):
        reconcile_stanza_create(store, recorder, pod_exec, _cluster(), "hash")


def test_missing_pod_is_a_consistency_error(store, recorder) -> None:
    cluster = _cluster()

    with pytest.raises(ConsistencyError):
        reconcile_stanza_create(store, recorder, ScriptedExec(), cluster, "hash")

    assert _replica_repo_condition(cluster).status == CONDITION_FALSE


def test_no_repositories_publishes_no_condition(store, recorder) -> None:
    cluster = _cluster(repos=[], status={})

    assert reconcile_stanza_create(store, recorder, ScriptedExec(), cluster, "hash") is False
    assert _replica_repo_condition(cluster) is None
