"""pgBackRest configuration: hashes, config files, SSH trust material.

The configuration files are rendered from a Jinja2 template into a single
ConfigMap that every pgBackRest container mounts. The combined config hash is
written both into that ConfigMap and onto consumers (stanza command, backup
Job) so a container can tell whether it already sees the current
configuration.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import re
from pathlib import Path
from typing import Any

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from jinja2 import Environment, FileSystemLoader

from . import naming
from .models import (
    PostgresCluster,
    dedicated_repo_host_enabled,
    repo_host_enabled,
)

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent / "templates"
CONFIG_TEMPLATE = "pgbackrest.conf.j2"

DEFAULT_STANZA = "db"
PGBACKREST_BINARY = "/opt/crunchy/bin/pgbackrest"

# ConfigMap keys
CM_REPO_KEY = "pgbackrest_repo.conf"
CM_CONFIG_HASH_KEY = "config-hash"
CM_INSTANCE_SUFFIX = ".conf"

CONFIG_MOUNT_PATH = "/etc/pgbackrest/conf.d"
CONFIG_VOLUME = "pgbackrest-config"
REPO_VOLUME_ROOT = "/pgbackrest"
SSH_MOUNT_PATH = "/etc/ssh"
SSH_VOLUME = "ssh"

# SSH secret keys
SSH_PRIVATE_KEY = "id_ecdsa"
SSH_PUBLIC_KEY = "id_ecdsa.pub"
SSH_KNOWN_HOSTS = "ssh_known_hosts"

POSTGRES_PORT = 5432

_REPO_INDEX = re.compile(r"\d+")

_env = Environment(loader=FileSystemLoader(str(TEMPLATE_DIR)))


def instance_config_key(instance_name: str) -> str:
    return f"{instance_name}{CM_INSTANCE_SUFFIX}"


def repo_index(cluster: PostgresCluster, repo_name: str) -> str:
    """Numeric pgBackRest repository index for ``repo_name``.

    Uses the digits in the name (``repo2`` -> ``2``), otherwise the 1-based
    position of the repository in the cluster spec.
    """
    match = _REPO_INDEX.search(repo_name)
    if match:
        return match.group(0)
    for position, repo in enumerate(cluster.spec.repos, start=1):
        if repo.name == repo_name:
            return str(position)
    return "1"


def _hash(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:16]


def calculate_config_hashes(cluster: PostgresCluster,
                            repo_host_name: str = "") -> tuple[dict[str, str], str]:
    """Fingerprint the external repository configuration.

    Args:
        cluster: The cluster being reconciled
        repo_host_name: Dedicated repository host name, if any

    Returns:
        Tuple of (repo name -> options hash for external repos, combined hash)
    """
    hashes: dict[str, str] = {}
    parts = [repo_host_name]
    for repo in cluster.spec.repos:
        if repo.provider is None:
            continue
        serialized = json.dumps({repo.provider: repo.options}, sort_keys=True)
        hashes[repo.name] = _hash(serialized)
        parts.append(hashes[repo.name])
    return hashes, _hash("|".join(parts))


def exec_selector(cluster: PostgresCluster) -> tuple[str, str]:
    """Selector and container of the pod pgBackRest commands run in.

    The dedicated repository host when enabled, otherwise the current primary
    (its pgBackRest sidecar if a repo host is configured, else the database
    container).
    """
    if dedicated_repo_host_enabled(cluster):
        return naming.dedicated_selector(cluster.name), naming.CONTAINER_PGBACKREST
    if repo_host_enabled(cluster):
        return naming.primary_selector(cluster.name), naming.CONTAINER_PGBACKREST
    return naming.primary_selector(cluster.name), naming.CONTAINER_DATABASE


def add_configs_to_pod(cluster: PostgresCluster, template: dict[str, Any],
                       config_name: str, container_name: str) -> None:
    """Mount ``config_name`` and the config hash into ``container_name``."""
    spec = template.setdefault("spec", {})
    spec.setdefault("volumes", []).append({
        "name": CONFIG_VOLUME,
        "projected": {
            "sources": [{
                "configMap": {
                    "name": naming.pgbackrest_config(cluster.name),
                    "items": [
                        {"key": config_name, "path": config_name},
                        {"key": CM_CONFIG_HASH_KEY, "path": CM_CONFIG_HASH_KEY},
                    ],
                },
            }],
        },
    })
    for container in spec.get("containers", []):
        if container.get("name") == container_name:
            container.setdefault("volumeMounts", []).append({
                "name": CONFIG_VOLUME,
                "mountPath": CONFIG_MOUNT_PATH,
                "readOnly": True,
            })


def add_ssh_to_pod(cluster: PostgresCluster, template: dict[str, Any], container_name: str) -> None:
    """Mount the SSH client/server configuration and key material."""
    spec = template.setdefault("spec", {})
    spec.setdefault("volumes", []).append({
        "name": SSH_VOLUME,
        "projected": {
            "sources": [
                {"configMap": {"name": naming.ssh_config(cluster.name)}},
                {"secret": {"name": naming.ssh_secret(cluster.name)}},
            ],
            "defaultMode": 0o040,
        },
    })
    for container in spec.get("containers", []):
        if container.get("name") == container_name:
            container.setdefault("volumeMounts", []).append({
                "name": SSH_VOLUME,
                "mountPath": SSH_MOUNT_PATH,
                "readOnly": True,
            })


def pod_fqdn(cluster: PostgresCluster, pod_name: str, cluster_domain: str) -> str:
    service = naming.cluster_pod_service(cluster.name)
    return f"{pod_name}.{service}.{cluster.namespace}.svc.{cluster_domain}"


def _repo_options(cluster: PostgresCluster, repo_host_fqdn: str) -> list[tuple[str, str]]:
    """Repository lines for [global].

    ``repo_host_fqdn`` is set when volume repositories are reached over SSH
    on a dedicated host.
    """
    options: list[tuple[str, str]] = []
    for repo in cluster.spec.repos:
        prefix = f"repo{repo_index(cluster, repo.name)}"
        if repo.volume is not None:
            if repo_host_fqdn:
                options.append((f"{prefix}-host", repo_host_fqdn))
                options.append((f"{prefix}-host-user", "postgres"))
            options.append((f"{prefix}-path", f"{REPO_VOLUME_ROOT}/{repo.name}"))
            continue
        options.append((f"{prefix}-type", repo.provider))
        options.append((f"{prefix}-path", f"{REPO_VOLUME_ROOT}/{repo.name}"))
        for key in sorted(repo.options):
            options.append((f"{prefix}-{repo.provider}-{key}", str(repo.options[key])))
    return options


def _render(cluster: PostgresCluster, config_hash: str,
            global_options: list[tuple[str, str]], stanza_options: list[tuple[str, str]],
            component: str) -> str:
    template = _env.get_template(CONFIG_TEMPLATE)
    return template.render(
        component=component,
        cluster_name=cluster.name,
        config_hash=config_hash,
        stanza=DEFAULT_STANZA,
        global_options=global_options,
        stanza_options=stanza_options,
    )


def render_instance_config(cluster: PostgresCluster, repo_host_name: str, config_hash: str,
                           cluster_domain: str = "cluster.local",
                           component: str = "pgbackrest-reconciler") -> str:
    """pgBackRest configuration for a PostgreSQL instance."""
    repo_host_fqdn = ""
    if repo_host_name:
        repo_host_fqdn = pod_fqdn(cluster, f"{repo_host_name}-0", cluster_domain)

    global_options = [("log-path", "/tmp")]
    global_options.extend(_repo_options(cluster, repo_host_fqdn))
    global_options.extend(sorted(cluster.spec.global_options.items()))

    stanza_options = [
        ("pg1-path", f"/pgdata/pg{cluster.spec.postgres_version}"),
        ("pg1-port", str(POSTGRES_PORT)),
        ("pg1-socket-path", "/tmp/postgres"),
    ]
    return _render(cluster, config_hash, global_options, stanza_options, component)


def render_repo_host_config(cluster: PostgresCluster, instance_names: list[str], config_hash: str,
                            cluster_domain: str = "cluster.local",
                            component: str = "pgbackrest-reconciler") -> str:
    """pgBackRest configuration for the dedicated repository host."""
    global_options = [("log-path", "/tmp")]
    global_options.extend(_repo_options(cluster, ""))
    global_options.extend(sorted(cluster.spec.global_options.items()))

    stanza_options: list[tuple[str, str]] = []
    for i, instance_name in enumerate(sorted(instance_names), start=1):
        stanza_options.extend([
            (f"pg{i}-host", pod_fqdn(cluster, f"{instance_name}-0", cluster_domain)),
            (f"pg{i}-path", f"/pgdata/pg{cluster.spec.postgres_version}"),
            (f"pg{i}-port", str(POSTGRES_PORT)),
            (f"pg{i}-socket-path", "/tmp/postgres"),
        ])
    return _render(cluster, config_hash, global_options, stanza_options, component)


def _metadata(cluster: PostgresCluster, name: str, labels: dict[str, str]) -> dict[str, Any]:
    return {
        "name": name,
        "namespace": cluster.namespace,
        "labels": naming.merge(
            cluster.spec.metadata.labels,
            cluster.spec.pgbackrest_metadata.labels,
            labels,
        ),
        "annotations": naming.merge(
            cluster.spec.metadata.annotations,
            cluster.spec.pgbackrest_metadata.annotations,
        ),
    }


def config_map_intent(cluster: PostgresCluster, repo_host_name: str, config_hash: str,
                      instance_names: list[str], cluster_domain: str = "cluster.local",
                      component: str = "pgbackrest-reconciler") -> dict[str, Any]:
    """Shared pgBackRest configuration ConfigMap.

    One ``<instance>.conf`` per instance, ``pgbackrest_repo.conf`` when a
    dedicated host is enabled, and the combined ``config-hash``.
    """
    data = {CM_CONFIG_HASH_KEY: config_hash}
    for instance_name in instance_names:
        data[instance_config_key(instance_name)] = render_instance_config(
            cluster, repo_host_name, config_hash, cluster_domain, component)
    if dedicated_repo_host_enabled(cluster):
        data[CM_REPO_KEY] = render_repo_host_config(
            cluster, instance_names, config_hash, cluster_domain, component)

    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": _metadata(cluster, naming.pgbackrest_config(cluster.name),
                              naming.pgbackrest_config_labels(cluster.name)),
        "data": data,
    }


SSHD_CONFIG = """\
AuthorizedKeysFile /etc/ssh/id_ecdsa.pub
HostKey /etc/ssh/id_ecdsa
PasswordAuthentication no
PermitRootLogin no
PidFile /tmp/sshd.pid
Port 2022
PubkeyAuthentication yes
StrictModes no
"""

SSH_CLIENT_CONFIG = """\
Host *
StrictHostKeyChecking yes
IdentityFile /etc/ssh/id_ecdsa
Port 2022
User postgres
"""


def ssh_config_map_intent(cluster: PostgresCluster) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": _metadata(cluster, naming.ssh_config(cluster.name),
                              naming.repo_host_labels(cluster.name)),
        "data": {
            "ssh_config": SSH_CLIENT_CONFIG,
            "sshd_config": SSHD_CONFIG,
        },
    }


def generate_ssh_keys() -> tuple[bytes, bytes]:
    """Generate an ECDSA P-521 key pair.

    Returns:
        Tuple of (OpenSSH private key, OpenSSH public key)
    """
    private_key = ec.generate_private_key(ec.SECP521R1())
    private_bytes = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.OpenSSH,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    )
    return private_bytes, public_bytes


def _b64(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def ssh_secret_intent(cluster: PostgresCluster, existing: dict[str, Any] | None,
                      cluster_domain: str = "cluster.local") -> dict[str, Any]:
    """SSH key pair and known-hosts for repository host trust.

    Key material already present in ``existing`` is reused so the Secret
    stays stable across cycles.
    """
    existing_data = (existing or {}).get("data") or {}
    if all(existing_data.get(k) for k in (SSH_PRIVATE_KEY, SSH_PUBLIC_KEY, SSH_KNOWN_HOSTS)):
        data = {k: existing_data[k] for k in (SSH_PRIVATE_KEY, SSH_PUBLIC_KEY, SSH_KNOWN_HOSTS)}
    else:
        logger.info(f"Generating SSH key pair for {cluster.key}")
        private_bytes, public_bytes = generate_ssh_keys()
        hosts = f"*.{naming.cluster_pod_service(cluster.name)}.{cluster.namespace}.svc.{cluster_domain}"
        known_hosts = hosts.encode("ascii") + b" " + public_bytes + b"\n"
        data = {
            SSH_PRIVATE_KEY: _b64(private_bytes),
            SSH_PUBLIC_KEY: _b64(public_bytes + b"\n"),
            SSH_KNOWN_HOSTS: _b64(known_hosts),
        }

    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": _metadata(cluster, naming.ssh_secret(cluster.name),
                              naming.repo_host_labels(cluster.name)),
        "type": "Opaque",
        "data": data,
    }
