"""Common Kubernetes utilities shared between controller components."""

from .kube import init_api_client
from .pod_exec import PodExecError, execute_in_pod

__all__ = [
    'init_api_client',
    'PodExecError',
    'execute_in_pod',
]
