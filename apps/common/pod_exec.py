"""Command execution inside running pod containers.

Thin wrapper over the Kubernetes exec API (``kubernetes.stream``) exposing the
"execute command, capture stdout/stderr" primitive used by the controller.
"""

from __future__ import annotations

import time
from typing import IO, Any

from kubernetes import client
from kubernetes.stream import stream


class PodExecError(Exception):
    """Raised when a command cannot be run or exits non-zero."""

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        self.exit_code = exit_code


def execute_in_pod(
    api_client: client.ApiClient,
    namespace: str,
    pod_name: str,
    container: str | None,
    stdin: IO[str] | None,
    stdout: IO[str] | None,
    stderr: IO[str] | None,
    *command: str,
    timeout: float | None = None,
) -> None:
    """Execute command in pod via Kubernetes exec API.

    Output is copied to the provided ``stdout``/``stderr`` writers as it
    arrives. When ``stdin`` is given its full content is written to the
    process before output is read.

    Args:
        api_client: Kubernetes API client
        namespace: Namespace of the pod
        pod_name: Pod name
        container: Optional container name (for multi-container pods)
        stdin: Optional reader supplying standard input
        stdout: Optional writer receiving standard output
        stderr: Optional writer receiving standard error
        *command: Command to execute (e.g., "echo", "test")
        timeout: Seconds the command may run before the session is closed
            (None waits indefinitely)

    Raises:
        PodExecError: If the exec session cannot be opened or the command
            returns a non-zero exit code, or runs longer than ``timeout``
    """
    v1 = client.CoreV1Api(api_client)

    # Build exec parameters
    exec_kwargs: dict[str, Any] = {
        'name': pod_name,
        'namespace': namespace,
        'command': list(command),
        'stderr': True,
        'stdout': True,
        'stdin': stdin is not None,
        'tty': False,
        '_preload_content': False,
    }

    if timeout is not None:
        exec_kwargs['_request_timeout'] = timeout

    if container:
        exec_kwargs['container'] = container

    try:
        resp = stream(
            v1.connect_get_namespaced_pod_exec,
            **exec_kwargs
        )
    except Exception as e:
        raise PodExecError(
            f"Failed to execute command in pod '{pod_name}' in namespace '{namespace}': {e}"
        ) from e

    deadline = time.monotonic() + timeout if timeout is not None else None
    try:
        if stdin is not None:
            resp.write_stdin(stdin.read())

        while resp.is_open():
            if deadline is not None and time.monotonic() >= deadline:
                raise PodExecError(
                    f"Command timed out after {timeout:g}s "
                    f"(pod: {pod_name}, namespace: {namespace}, command: {' '.join(command)})"
                )
            resp.update(timeout=1)
            if resp.peek_stdout():
                chunk = resp.read_stdout()
                if stdout is not None:
                    stdout.write(chunk)
            if resp.peek_stderr():
                chunk = resp.read_stderr()
                if stderr is not None:
                    stderr.write(chunk)

        exit_code = resp.returncode
    finally:
        resp.close()

    if exit_code != 0:
        raise PodExecError(
            f"Command failed with exit code {exit_code} "
            f"(pod: {pod_name}, namespace: {namespace}, command: {' '.join(command)})",
            exit_code=exit_code,
        )
