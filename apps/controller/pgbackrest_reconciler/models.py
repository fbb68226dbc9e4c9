"""Typed views of the PostgresCluster object and pgBackRest resources.

The cluster object arrives as a plain mapping (from the Kubernetes API) and is
parsed once per cycle into dataclasses. Status is mutated in place by the
reconcile sub-steps and rendered back to a mapping for persistence.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .conditions import Condition
from .errors import ValidationError

CLUSTER_GROUP = "postgres-operator.crunchydata.com"
CLUSTER_VERSION = "v1beta1"
CLUSTER_PLURAL = "postgresclusters"
CLUSTER_KIND = "PostgresCluster"

# Backup types as understood by "pgbackrest backup --type"
BACKUP_FULL = "full"
BACKUP_DIFFERENTIAL = "diff"
BACKUP_INCREMENTAL = "incr"
BACKUP_TYPES = (BACKUP_FULL, BACKUP_DIFFERENTIAL, BACKUP_INCREMENTAL)

EXTERNAL_PROVIDERS = ("azure", "gcs", "s3")


@dataclass
class ObjectMetadata:
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ObjectMetadata":
        data = data or {}
        return cls(
            labels=dict(data.get("labels") or {}),
            annotations=dict(data.get("annotations") or {}),
        )


@dataclass
class BackupSchedule:
    """Cron expressions per backup type; None or empty means unscheduled."""
    full: str | None = None
    differential: str | None = None
    incremental: str | None = None

    def for_type(self, backup_type: str) -> str | None:
        schedule = {
            BACKUP_FULL: self.full,
            BACKUP_DIFFERENTIAL: self.differential,
            BACKUP_INCREMENTAL: self.incremental,
        }.get(backup_type)
        return schedule or None


@dataclass
class RepositoryConfig:
    """A configured pgBackRest repository.

    Exactly one of ``volume`` (a PersistentVolumeClaim spec) or ``provider``
    (with its opaque ``options``) is set.
    """
    name: str
    volume: dict[str, Any] | None = None
    provider: str | None = None
    options: dict[str, Any] = field(default_factory=dict)
    schedules: BackupSchedule | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RepositoryConfig":
        name = data.get("name")
        if not name:
            raise ValidationError(f"repository without a name: {data}")

        volume = None
        if data.get("volume") is not None:
            volume = dict((data["volume"] or {}).get("volumeClaimSpec") or {})

        providers = [p for p in EXTERNAL_PROVIDERS if data.get(p) is not None]
        if volume is not None and providers:
            raise ValidationError(f"repository {name} defines both a volume and {providers[0]}")
        if len(providers) > 1:
            raise ValidationError(f"repository {name} defines several providers: {providers}")
        if volume is None and not providers:
            raise ValidationError(f"repository {name} defines neither a volume nor a provider")

        provider = providers[0] if providers else None
        options = dict(data.get(provider) or {}) if provider else {}

        schedules = None
        if data.get("schedules") is not None:
            raw = data["schedules"] or {}
            schedules = BackupSchedule(
                full=raw.get("full"),
                differential=raw.get("differential"),
                incremental=raw.get("incremental"),
            )

        return cls(name=name, volume=volume, provider=provider,
                   options=options, schedules=schedules)


@dataclass
class RepoHostConfig:
    dedicated: bool = False


@dataclass
class ClusterSpec:
    repos: list[RepositoryConfig] = field(default_factory=list)
    repo_host: RepoHostConfig | None = None
    image: str = ""
    metadata: ObjectMetadata = field(default_factory=ObjectMetadata)
    pgbackrest_metadata: ObjectMetadata = field(default_factory=ObjectMetadata)
    global_options: dict[str, str] = field(default_factory=dict)
    postgres_version: int = 0
    openshift: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClusterSpec":
        pgbackrest = ((data.get("backups") or {}).get("pgbackrest")) or {}

        repos = [RepositoryConfig.from_dict(r) for r in pgbackrest.get("repos") or []]
        seen: set[str] = set()
        for repo in repos:
            if repo.name in seen:
                raise ValidationError(f"duplicate repository name: {repo.name}")
            seen.add(repo.name)

        repo_host = None
        if pgbackrest.get("repoHost") is not None:
            raw_host = pgbackrest.get("repoHost") or {}
            repo_host = RepoHostConfig(dedicated=raw_host.get("dedicated") is not None)

        return cls(
            repos=repos,
            repo_host=repo_host,
            image=pgbackrest.get("image", ""),
            metadata=ObjectMetadata.from_dict(data.get("metadata")),
            pgbackrest_metadata=ObjectMetadata.from_dict(pgbackrest.get("metadata")),
            global_options={k: str(v) for k, v in (pgbackrest.get("global") or {}).items()},
            postgres_version=int(data.get("postgresVersion", 0) or 0),
            openshift=bool(data.get("openshift", False)),
        )


@dataclass
class RepoStatus:
    name: str
    bound: bool = False
    volume_name: str = ""
    repo_options_hash: str = ""
    stanza_created: bool = False
    replica_create_backup_complete: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RepoStatus":
        return cls(
            name=data.get("name", ""),
            bound=bool(data.get("bound", False)),
            volume_name=data.get("volume", ""),
            repo_options_hash=data.get("repoOptionsHash", ""),
            stanza_created=bool(data.get("stanzaCreated", False)),
            replica_create_backup_complete=bool(data.get("replicaCreateBackupComplete", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name, "bound": self.bound}
        if self.volume_name:
            out["volume"] = self.volume_name
        if self.repo_options_hash:
            out["repoOptionsHash"] = self.repo_options_hash
        out["stanzaCreated"] = self.stanza_created
        out["replicaCreateBackupComplete"] = self.replica_create_backup_complete
        return out


@dataclass
class RepoHostStatus:
    api_version: str = "apps/v1"
    kind: str = "StatefulSet"
    ready: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"apiVersion": self.api_version, "kind": self.kind, "ready": self.ready}


@dataclass
class PGBackRestStatus:
    repo_host: RepoHostStatus | None = None
    repos: list[RepoStatus] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"repos": [r.to_dict() for r in self.repos]}
        if self.repo_host is not None:
            out["repoHost"] = self.repo_host.to_dict()
        return out


@dataclass
class ClusterStatus:
    system_identifier: str = ""
    pgbackrest: PGBackRestStatus | None = None
    conditions: list[Condition] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ClusterStatus":
        data = data or {}
        pgbackrest = None
        if data.get("pgbackrest") is not None:
            raw = data.get("pgbackrest") or {}
            repo_host = None
            if raw.get("repoHost") is not None:
                host = raw["repoHost"] or {}
                repo_host = RepoHostStatus(
                    api_version=host.get("apiVersion", "apps/v1"),
                    kind=host.get("kind", "StatefulSet"),
                    ready=bool(host.get("ready", False)),
                )
            pgbackrest = PGBackRestStatus(
                repo_host=repo_host,
                repos=[RepoStatus.from_dict(r) for r in raw.get("repos") or []],
            )
        return cls(
            system_identifier=((data.get("patroni") or {}).get("systemIdentifier")) or "",
            pgbackrest=pgbackrest,
            conditions=[Condition.from_dict(c) for c in data.get("conditions") or []],
        )


@dataclass
class PostgresCluster:
    """A PostgresCluster object: identity, parsed spec and mutable status."""
    name: str
    namespace: str
    uid: str = ""
    generation: int = 0
    spec: ClusterSpec = field(default_factory=ClusterSpec)
    status: ClusterStatus = field(default_factory=ClusterStatus)
    api_version: str = f"{CLUSTER_GROUP}/{CLUSTER_VERSION}"
    kind: str = CLUSTER_KIND

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> "PostgresCluster":
        metadata = obj.get("metadata") or {}
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            uid=metadata.get("uid", ""),
            generation=int(metadata.get("generation", 0) or 0),
            spec=ClusterSpec.from_dict(obj.get("spec") or {}),
            status=ClusterStatus.from_dict(obj.get("status")),
            api_version=obj.get("apiVersion", f"{CLUSTER_GROUP}/{CLUSTER_VERSION}"),
            kind=obj.get("kind", CLUSTER_KIND),
        )

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    def owner_reference(self) -> dict[str, Any]:
        """Controller owner reference pointing back at this cluster."""
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }

    def status_patch(self) -> dict[str, Any]:
        """Render the status fields owned by pgBackRest reconciliation."""
        status: dict[str, Any] = {
            "conditions": [c.to_dict() for c in self.status.conditions],
        }
        if self.status.pgbackrest is not None:
            status["pgbackrest"] = self.status.pgbackrest.to_dict()
        return {"status": status}


@dataclass
class RepoResources:
    """Owned pgBackRest resources observed this cycle (rebuilt every cycle)."""
    cronjobs: list[dict[str, Any]] = field(default_factory=list)
    replica_create_backup_jobs: list[dict[str, Any]] = field(default_factory=list)
    hosts: list[dict[str, Any]] = field(default_factory=list)
    volumes: list[dict[str, Any]] = field(default_factory=list)
    ssh_config: dict[str, Any] | None = None
    ssh_secret: dict[str, Any] | None = None
    # kinds whose list call failed; their fields above are incomplete
    unlisted: set[str] = field(default_factory=set)


# Spec predicates

def repo_host_enabled(cluster: PostgresCluster) -> bool:
    return cluster.spec.repo_host is not None


def dedicated_repo_host_enabled(cluster: PostgresCluster) -> bool:
    return cluster.spec.repo_host is not None and cluster.spec.repo_host.dedicated


def cluster_bootstrapped(cluster: PostgresCluster) -> bool:
    """True once Patroni has reported a system identifier for the cluster."""
    return bool(cluster.status.system_identifier)


def replica_create_repo_name(cluster: PostgresCluster) -> str:
    """The first configured repository is used to create replicas."""
    if not cluster.spec.repos:
        return ""
    return cluster.spec.repos[0].name


def find_repo_status(cluster: PostgresCluster, repo_name: str) -> RepoStatus | None:
    if cluster.status.pgbackrest is None or not repo_name:
        return None
    for repo_status in cluster.status.pgbackrest.repos:
        if repo_status.name == repo_name:
            return repo_status
    return None
