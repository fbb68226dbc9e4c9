"""Kubernetes client bootstrap shared by the controller entrypoints."""

import logging

from kubernetes import client, config as k8s_config
from kubernetes.config.config_exception import ConfigException

logger = logging.getLogger(__name__)


def init_api_client() -> client.ApiClient:
    """Initialize a Kubernetes API client.

    Attempts in-cluster configuration first; falls back to local kubeconfig.

    Raises:
        ConfigException: If neither configuration source can be loaded
    """
    try:
        k8s_config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        k8s_config.load_kube_config()
        logger.info("Loaded local kubeconfig")
    return client.ApiClient()
